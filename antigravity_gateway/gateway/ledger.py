from __future__ import annotations

import asyncio
import logging
from datetime import date
from pathlib import Path
from typing import Any, Callable

from antigravity_gateway.utils.persistence import JsonFileStore

logger = logging.getLogger("uvicorn.error")


class RequestLedger:
    """Per-day request counters keyed by account id."""

    def __init__(
        self,
        path: str | Path,
        *,
        today: Callable[[], date] | None = None,
    ) -> None:
        self._store = JsonFileStore(Path(path).expanduser())
        self._today = today or date.today
        self._lock = asyncio.Lock()

    @property
    def path(self) -> Path:
        return self._store.path

    async def increment(self, account_id: str) -> int | None:
        async with self._lock:
            return await asyncio.to_thread(self.increment_sync, account_id)

    async def snapshot(self) -> dict[str, int]:
        async with self._lock:
            payload = await asyncio.to_thread(self._load_current)
        return dict(payload["requests"])

    def increment_sync(self, account_id: str) -> int | None:
        try:
            payload = self._load_current()
        except (OSError, ValueError):
            logger.warning(
                "request_ledger_skipped account=%s reason=read_error path=%s",
                account_id,
                self.path,
            )
            return None

        requests: dict[str, int] = payload["requests"]
        count = requests.get(account_id, 0) + 1
        requests[account_id] = count
        try:
            self._store.write(payload)
        except OSError:
            logger.warning(
                "request_ledger_skipped account=%s reason=write_error path=%s",
                account_id,
                self.path,
            )
            return None
        return count

    def _load_current(self) -> dict[str, Any]:
        today = self._today().isoformat()
        raw = self._store.load(default=None)
        if not isinstance(raw, dict) or raw.get("last_reset") != today:
            return {"requests": {}, "last_reset": today}
        requests = raw.get("requests")
        if not isinstance(requests, dict):
            requests = {}
        cleaned = {
            str(key): int(value)
            for key, value in requests.items()
            if isinstance(value, int) and not isinstance(value, bool)
        }
        return {"requests": cleaned, "last_reset": today}
