from __future__ import annotations

import json
import time
from pathlib import Path
from typing import Any


class JsonlLogger:
    def __init__(self, path: str | None) -> None:
        self._path = Path(path) if path else None

    @property
    def path(self) -> Path | None:
        return self._path

    def write(self, payload: dict[str, Any]) -> None:
        if self._path is None:
            return
        self._path.parent.mkdir(parents=True, exist_ok=True)
        with self._path.open("a", encoding="utf-8") as f:
            f.write(json.dumps(payload, ensure_ascii=True, default=str) + "\n")

    def event(self, name: str, **fields: Any) -> None:
        self.write({"ts": time.time(), "event": name, **fields})
