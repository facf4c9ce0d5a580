from __future__ import annotations

import json
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any
from urllib import error, request

from selfheal.core.exceptions import IdentificationServiceError
from selfheal.llm.prompts import SYSTEM_PROMPT, build_user_prompt


@dataclass(slots=True)
class IdentificationRequest:
    """What the model sees: a description and the interactive elements on the page."""

    description: str
    page_url: str | None = None
    candidates: list[dict[str, Any]] = field(default_factory=list)
    examples: list[dict[str, str]] = field(default_factory=list)

    def to_payload(self) -> dict[str, Any]:
        return {
            "description": self.description,
            "page_url": self.page_url,
            "candidates": self.candidates,
            "confirmed_examples": self.examples,
        }


@dataclass(slots=True)
class ElementSuggestion:
    answer: str
    provider: str
    model: str


class ElementLocatorClient(ABC):
    """Asks a hosted model which candidate element matches a description.

    Providers only differ in request body, headers and where the answer text
    sits in the response.
    """

    provider_name = "unknown"
    max_answer_tokens = 128

    def __init__(self, api_key: str, model: str) -> None:
        self.api_key = api_key
        self.model = model

    def identify_element(self, identification: IdentificationRequest) -> ElementSuggestion:
        body = self.request_body(SYSTEM_PROMPT, build_user_prompt(identification.to_payload()))
        response = _post_json(self.url, body, headers={**self.headers(), "Content-Type": "application/json"})
        answer = self.answer_text(response).strip()
        if not answer:
            raise IdentificationServiceError(f"{self.provider_name} returned an empty answer")
        return ElementSuggestion(answer=answer, provider=self.provider_name, model=self.model)

    @property
    @abstractmethod
    def url(self) -> str:
        raise NotImplementedError

    @abstractmethod
    def headers(self) -> dict[str, str]:
        raise NotImplementedError

    @abstractmethod
    def request_body(self, system: str, user: str) -> dict[str, Any]:
        raise NotImplementedError

    @abstractmethod
    def answer_text(self, response: dict[str, Any]) -> str:
        raise NotImplementedError


class OpenAIElementLocatorClient(ElementLocatorClient):
    provider_name = "openai"
    url = "https://api.openai.com/v1/chat/completions"

    def __init__(self, api_key: str, model: str | None = None) -> None:
        super().__init__(api_key, model or os.getenv("OPENAI_MODEL", "gpt-4o-mini"))

    def headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.api_key}"}

    def request_body(self, system: str, user: str) -> dict[str, Any]:
        return {
            "model": self.model,
            "temperature": 0,
            "max_tokens": self.max_answer_tokens,
            "messages": [
                {"role": "system", "content": system},
                {"role": "user", "content": user},
            ],
        }

    def answer_text(self, response: dict[str, Any]) -> str:
        choices = response.get("choices") or []
        if not choices:
            raise IdentificationServiceError("openai returned no choices")
        return choices[0].get("message", {}).get("content") or ""


class AnthropicElementLocatorClient(ElementLocatorClient):
    provider_name = "anthropic"
    url = "https://api.anthropic.com/v1/messages"

    def __init__(self, api_key: str, model: str | None = None) -> None:
        super().__init__(api_key, model or os.getenv("ANTHROPIC_MODEL", "claude-3-5-sonnet-latest"))

    def headers(self) -> dict[str, str]:
        return {"x-api-key": self.api_key, "anthropic-version": "2023-06-01"}

    def request_body(self, system: str, user: str) -> dict[str, Any]:
        return {
            "model": self.model,
            "max_tokens": self.max_answer_tokens,
            "temperature": 0,
            "system": system,
            "messages": [{"role": "user", "content": user}],
        }

    def answer_text(self, response: dict[str, Any]) -> str:
        return "".join(
            block.get("text", "") for block in response.get("content", []) if block.get("type", "text") == "text"
        )


class GeminiElementLocatorClient(ElementLocatorClient):
    provider_name = "gemini"
    endpoint_template = "https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent"

    def __init__(self, api_key: str, model: str | None = None) -> None:
        super().__init__(api_key, model or os.getenv("GEMINI_MODEL", "gemini-2.5-flash"))

    @property
    def url(self) -> str:
        return self.endpoint_template.format(model=self.model)

    def headers(self) -> dict[str, str]:
        return {"x-goog-api-key": self.api_key, "x-goog-api-client": "selfheal/0.1.0"}

    def request_body(self, system: str, user: str) -> dict[str, Any]:
        return {
            "system_instruction": {"parts": [{"text": system}]},
            "contents": [{"role": "user", "parts": [{"text": user}]}],
            "generationConfig": {"temperature": 0, "maxOutputTokens": self.max_answer_tokens},
        }

    def answer_text(self, response: dict[str, Any]) -> str:
        candidates = response.get("candidates", [])
        if not candidates:
            raise IdentificationServiceError("gemini returned no candidates")
        parts = candidates[0].get("content", {}).get("parts", [])
        return "".join(part.get("text", "") for part in parts if isinstance(part, dict))


_PROVIDERS: dict[str, tuple[type[ElementLocatorClient], str]] = {
    "openai": (OpenAIElementLocatorClient, "OPENAI_API_KEY"),
    "anthropic": (AnthropicElementLocatorClient, "ANTHROPIC_API_KEY"),
    "gemini": (GeminiElementLocatorClient, "GEMINI_API_KEY"),
}


def create_element_locator_client() -> ElementLocatorClient:
    provider = os.getenv("LLM_PROVIDER", "openai").lower()
    if provider not in _PROVIDERS:
        raise RuntimeError(f"Unsupported LLM provider: {provider}")
    client_class, key_variable = _PROVIDERS[provider]
    api_key = os.getenv(key_variable)
    if not api_key:
        raise RuntimeError(f"{key_variable} is required when LLM_PROVIDER={provider}")
    return client_class(api_key)


def _post_json(url: str, payload: dict[str, Any], headers: dict[str, str]) -> dict[str, Any]:
    encoded = json.dumps(payload).encode("utf-8")
    req = request.Request(url, data=encoded, headers=headers, method="POST")
    try:
        with request.urlopen(req, timeout=30) as response:
            raw = response.read().decode("utf-8")
    except error.HTTPError as exc:
        detail = exc.read().decode("utf-8", errors="replace")
        raise IdentificationServiceError(f"Identification request failed with status {exc.code}: {detail}") from exc
    except error.URLError as exc:
        raise IdentificationServiceError(f"Identification request could not be completed: {exc.reason}") from exc
    return json.loads(raw)
