from __future__ import annotations

import asyncio
from typing import Any

from selenium import webdriver
from selenium.common.exceptions import (
    InvalidSelectorException,
    NoSuchElementException,
    StaleElementReferenceException,
    TimeoutException,
)
from selenium.webdriver import ChromeOptions, FirefoxOptions
from selenium.webdriver.common.by import By
from selenium.webdriver.remote.webelement import WebElement
from selenium.webdriver.support import expected_conditions
from selenium.webdriver.support.ui import WebDriverWait

from selfheal.config.schema import EnvironmentConfig
from selfheal.core.dom import DomSurface, FingerprintExtractor
from selfheal.core.fingerprint import BoundingBox, ElementFingerprint
from selfheal.core.locators import is_xpath
from selfheal.core.metadata import ElementDescription
from selfheal.utils.dom_extract import (
    DESCRIBE_ELEMENT_SCRIPT,
    ELEMENTS_WITH_TEXT_SCRIPT,
    FINGERPRINT_SCRIPT,
    build_description,
    build_fingerprint,
)

_ATTRIBUTES_SCRIPT = """
return Array.from(arguments[0].attributes).reduce((acc, attr) => {
  acc[attr.name] = attr.value;
  return acc;
}, {});
"""


class BrowserSession:
    """Creates browser instances using Selenium Manager."""

    def __init__(self, environment: EnvironmentConfig) -> None:
        self.environment = environment

    def start(self, browser_name: str | None = None):
        normalized = (browser_name or self.environment.browser).lower()
        if normalized == "chrome":
            options = ChromeOptions()
            if self.environment.headless:
                options.add_argument("--headless=new")
            options.add_argument("--window-size=1920,1080")
            driver = webdriver.Chrome(options=options)
        elif normalized == "firefox":
            options = FirefoxOptions()
            if self.environment.headless:
                options.add_argument("-headless")
            driver = webdriver.Firefox(options=options)
        else:
            raise ValueError(f"Unsupported browser: {browser_name}")
        driver.set_page_load_timeout(self.environment.default_timeout_seconds)
        driver.implicitly_wait(0)
        return driver


def by_for(selector: str) -> str:
    return By.XPATH if is_xpath(selector) else By.CSS_SELECTOR


class SeleniumDomSurface(DomSurface):
    """DomSurface over a WebDriver; every blocking call runs in a worker thread."""

    def __init__(self, driver) -> None:
        self.driver = driver

    async def _call(self, function, *args):
        return await asyncio.to_thread(function, *args)

    async def locate(self, selector: str) -> list[WebElement]:
        try:
            return await self._call(self.driver.find_elements, by_for(selector), selector)
        except InvalidSelectorException:
            return []

    async def elements_with_text(self, fragment: str) -> list[WebElement]:
        return await self._call(self.driver.execute_script, ELEMENTS_WITH_TEXT_SCRIPT, fragment) or []

    async def children(self, element: WebElement) -> list[WebElement]:
        return await self._call(element.find_elements, By.XPATH, "./*")

    async def parent(self, element: WebElement) -> WebElement | None:
        return await self._first(element, "..")

    async def next_sibling(self, element: WebElement) -> WebElement | None:
        return await self._first(element, "following-sibling::*[1]")

    async def _first(self, element: WebElement, xpath: str) -> WebElement | None:
        try:
            return await self._call(element.find_element, By.XPATH, xpath)
        except NoSuchElementException:
            return None

    async def tag_name(self, element: WebElement) -> str:
        return (await self._call(lambda: element.tag_name)).lower()

    async def text(self, element: WebElement) -> str:
        value = await self._call(lambda: element.text or element.get_attribute("textContent") or "")
        return " ".join(value.split())

    async def attributes(self, element: WebElement) -> dict[str, str]:
        return await self._call(self.driver.execute_script, _ATTRIBUTES_SCRIPT, element) or {}

    async def bounding_box(self, element: WebElement) -> BoundingBox:
        rect = await self._call(lambda: element.rect)
        return BoundingBox(x=rect["x"], y=rect["y"], width=rect["width"], height=rect["height"])

    async def computed_style(self, element: WebElement, prop: str) -> str:
        return await self._call(element.value_of_css_property, prop)

    async def is_visible(self, element: WebElement) -> bool:
        try:
            return await self._call(element.is_displayed)
        except StaleElementReferenceException:
            return False

    async def describe(self, element: WebElement) -> ElementDescription:
        payload = await self._call(self.driver.execute_script, DESCRIBE_ELEMENT_SCRIPT, element)
        return build_description(payload or {})

    async def wait_until_attached(self, selector: str, timeout: float) -> bool:
        wait = WebDriverWait(self.driver, timeout, poll_frequency=0.2)
        try:
            await self._call(wait.until, expected_conditions.presence_of_element_located((by_for(selector), selector)))
        except TimeoutException:
            return False
        return True

    async def current_url(self) -> str:
        return await self._call(lambda: self.driver.current_url)


class SeleniumFingerprintExtractor(FingerprintExtractor):
    def __init__(self, driver) -> None:
        self.driver = driver

    async def extract(self, element: Any) -> ElementFingerprint:
        payload = await asyncio.to_thread(self.driver.execute_script, FINGERPRINT_SCRIPT, element)
        return build_fingerprint(payload or {})
