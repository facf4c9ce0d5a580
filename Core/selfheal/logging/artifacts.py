from __future__ import annotations

import json
import os
import shutil
import tempfile
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from selfheal.core.exceptions import PersistenceError


class ArtifactManager:
    """Owns the on-disk artifacts: history document, reports and training log."""

    def __init__(self, root: str | Path = "artifacts") -> None:
        self.root = Path(root)
        self.report_root = self.root / "reports"
        self.history_path = self.root / "healing_history.json"
        self.training_path = self.root / "identifier_training.jsonl"
        self._ensure_structure()

    def _ensure_structure(self) -> None:
        self.root.mkdir(parents=True, exist_ok=True)
        self.report_root.mkdir(parents=True, exist_ok=True)

    @staticmethod
    def timestamp() -> str:
        return datetime.now(UTC).strftime("%Y%m%dT%H%M%SZ")

    def read_history(self) -> dict[str, Any] | None:
        if not self.history_path.exists():
            return None
        try:
            payload = json.loads(self.history_path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            raise PersistenceError(f"Could not read {self.history_path}: {exc}") from exc
        if not isinstance(payload, dict):
            raise PersistenceError(f"{self.history_path} does not hold a JSON object")
        return payload

    def write_history(self, payload: dict[str, Any]) -> Path:
        """Writes the history document atomically (temp file, then replace)."""

        try:
            self._ensure_structure()
            handle, temp_name = tempfile.mkstemp(dir=self.root, prefix=".healing_history.", suffix=".tmp")
            try:
                with os.fdopen(handle, "w", encoding="utf-8") as stream:
                    json.dump(payload, stream, indent=2, sort_keys=True)
                os.replace(temp_name, self.history_path)
            except BaseException:
                Path(temp_name).unlink(missing_ok=True)
                raise
        except (OSError, TypeError, ValueError) as exc:
            raise PersistenceError(f"Could not write {self.history_path}: {exc}") from exc
        return self.history_path

    def write_report(self, content: str, suffix: str = "json", timestamp: str | None = None) -> Path:
        stamp = timestamp or self.timestamp()
        path = self.report_root / f"healing_report_{stamp}.{suffix}"
        path.write_text(content, encoding="utf-8")
        return path

    def append_training(self, payload: dict[str, Any]) -> Path:
        with self.training_path.open("a", encoding="utf-8") as handle:
            handle.write(json.dumps(payload, sort_keys=True) + "\n")
        return self.training_path

    def reset(self) -> Path:
        self._ensure_structure()
        for child in self.root.iterdir():
            if child.is_file() and child.name != ".gitkeep":
                child.unlink()
        self._clear_directory(self.report_root)
        return self.root

    @staticmethod
    def _clear_directory(directory: Path) -> None:
        for child in directory.iterdir():
            if child.is_dir():
                shutil.rmtree(child)
            elif child.is_file() and child.name != ".gitkeep":
                child.unlink()
