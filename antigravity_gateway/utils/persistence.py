from __future__ import annotations

import contextlib
import json
import os
from pathlib import Path
from typing import Any
from uuid import uuid4

OWNER_ONLY_MODE = 0o600
_DEFAULT_FILE_MODE = 0o666


class JsonFileStore:
    """Shared JSON persistence helper with atomic writes."""

    def __init__(self, path: str | Path, *, mode: int | None = None):
        self.path = Path(path)
        self.mode = mode

    def load(self, *, default: Any = None) -> Any:
        if not self.path.exists():
            return default
        with self.path.open("r", encoding="utf-8") as handle:
            text = handle.read()
        if not text.strip():
            return default
        return json.loads(text)

    def write(self, payload: Any) -> None:
        self.write_text(json.dumps(payload, indent=2))

    def write_text(self, text: str) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        temp_path = self._temp_path()
        try:
            fd = os.open(
                temp_path,
                os.O_WRONLY | os.O_CREAT | os.O_EXCL,
                self.mode if self.mode is not None else _DEFAULT_FILE_MODE,
            )
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(text)
            if self.mode is not None:
                # Restores bits the umask cleared.
                os.chmod(temp_path, self.mode)
            temp_path.replace(self.path)
        except Exception:
            with contextlib.suppress(OSError):
                temp_path.unlink(missing_ok=True)
            raise

    def _temp_path(self) -> Path:
        token = uuid4().hex
        return self.path.with_name(f".{self.path.name}.{token}.tmp")
