from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, Sequence

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from antigravity_gateway.constants import (
    ACCOUNT_FILE_PREFIX,
    ACCOUNT_FILE_SUFFIX,
    CREDENTIAL_FIELDS,
    DEFAULT_ACCOUNT_ID,
)
from antigravity_gateway.errors import RotationError
from antigravity_gateway.runtime.single_flight import SingleFlight
from antigravity_gateway.utils.persistence import OWNER_ONLY_MODE, JsonFileStore

if TYPE_CHECKING:
    from watchdog.observers.api import BaseObserver

logger = logging.getLogger("uvicorn.error")


def account_id_for_path(path: str | Path | None) -> str:
    if path is None:
        return DEFAULT_ACCOUNT_ID
    name = Path(path).name
    if name.startswith(ACCOUNT_FILE_PREFIX):
        name = name[len(ACCOUNT_FILE_PREFIX) :]
    if name.endswith(ACCOUNT_FILE_SUFFIX):
        name = name[: -len(ACCOUNT_FILE_SUFFIX)]
    return name or DEFAULT_ACCOUNT_ID


def scan_credential_directory(directory: Path) -> list[Path]:
    if not directory.is_dir():
        return []
    return sorted(
        path
        for path in directory.iterdir()
        if path.is_file() and path.name.endswith(ACCOUNT_FILE_SUFFIX)
    )


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class RotationState:
    paths: list[Path] = field(default_factory=list)
    index: int = 0
    exhausted: bool = False
    last_reset_date: date | None = None
    directory: Path | None = None


@dataclass(slots=True)
class CredentialSetChanged:
    path: str


class _CredentialDirectoryHandler(FileSystemEventHandler):
    def __init__(
        self,
        loop: asyncio.AbstractEventLoop,
        queue: asyncio.Queue[CredentialSetChanged],
    ) -> None:
        super().__init__()
        self._loop = loop
        self._queue = queue

    def on_created(self, event: FileSystemEvent) -> None:
        self._publish(event, event.src_path)

    def on_deleted(self, event: FileSystemEvent) -> None:
        self._publish(event, event.src_path)

    def on_moved(self, event: FileSystemEvent) -> None:
        self._publish(event, event.src_path)
        self._publish(event, getattr(event, "dest_path", ""))

    def _publish(self, event: FileSystemEvent, raw_path: Any) -> None:
        if event.is_directory:
            return
        path = raw_path.decode() if isinstance(raw_path, bytes) else str(raw_path)
        if not path.endswith(ACCOUNT_FILE_SUFFIX):
            return
        if self._loop.is_closed():
            return
        self._loop.call_soon_threadsafe(
            self._queue.put_nowait, CredentialSetChanged(path=path)
        )


class CredentialRotationManager:
    """Round-robin rotation over a pool of OAuth credential files.

    The active record is always copied into ``canonical_path``; source files
    are only read. Rotation requires at least two records.
    """

    def __init__(
        self,
        canonical_path: str | Path,
        *,
        debounce_seconds: float = 1.0,
        timezone_offset_hours: float = -8.0,
        reset_hour: int = 0,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.canonical_path = Path(canonical_path).expanduser()
        self._debounce_seconds = max(0.0, debounce_seconds)
        self._timezone_offset_hours = timezone_offset_hours
        self._reset_hour = reset_hour
        self._clock = clock or _utc_now
        self._state = RotationState(last_reset_date=self._local_now().date())
        self._rotation = SingleFlight[Path | None]()
        self._observer: BaseObserver | None = None
        self._watch_task: asyncio.Task[None] | None = None
        self._changes: asyncio.Queue[CredentialSetChanged] | None = None

    @property
    def state(self) -> RotationState:
        return self._state

    @property
    def current_index(self) -> int:
        return self._state.index

    @property
    def exhausted(self) -> bool:
        return self._state.exhausted

    def initialize(self, paths: Sequence[str | Path]) -> None:
        self._stop_watcher()
        self._state.directory = None
        self._state.paths = [Path(path).expanduser() for path in paths]
        self._state.index = 0
        self._state.exhausted = False
        if not self._state.paths:
            logger.info("rotation_disabled reason=no_credential_paths")
            return
        logger.info(
            "rotation_configured accounts=%d enabled=%s",
            len(self._state.paths),
            self.is_rotation_enabled(),
        )

    async def initialize_from_directory(
        self,
        directory: str | Path,
        *,
        watch: bool = True,
    ) -> int:
        folder = Path(directory).expanduser()
        await self._stop_watcher_async()
        paths = await asyncio.to_thread(scan_credential_directory, folder)
        if not paths:
            self._state.paths = []
            self._state.index = 0
            self._state.directory = None
            logger.info(
                "rotation_disabled reason=no_credential_files directory=%s", folder
            )
            return 0

        self._state.paths = paths
        self._state.index = 0
        self._state.exhausted = False
        self._state.directory = folder
        logger.info(
            "rotation_configured accounts=%d directory=%s enabled=%s",
            len(paths),
            folder,
            self.is_rotation_enabled(),
        )
        await asyncio.to_thread(self._copy_to_canonical, paths[0])
        if watch:
            self._start_watcher(folder)
        return len(paths)

    def set_time_based_reset(self, timezone_offset_hours: float = -8.0, hour: int = 0) -> None:
        self._timezone_offset_hours = timezone_offset_hours
        self._reset_hour = hour
        logger.info(
            "rotation_time_reset_configured offset_hours=%s hour=%d",
            timezone_offset_hours,
            hour,
        )

    def is_rotation_enabled(self) -> bool:
        return len(self._state.paths) > 1

    def get_account_count(self) -> int:
        return len(self._state.paths)

    def get_current_account_path(self) -> Path | None:
        if not self._state.paths:
            return None
        return self._state.paths[self._state.index]

    def get_current_account_id(self) -> str:
        if not self.is_rotation_enabled():
            return DEFAULT_ACCOUNT_ID
        return account_id_for_path(self.get_current_account_path())

    def reset_exhaustion_state(self) -> None:
        self._state.exhausted = False

    async def rotate(self) -> Path | None:
        if not self.is_rotation_enabled():
            return None
        self.check_time_based_reset()
        return await self._rotation.run(self._perform_rotation)

    def check_time_based_reset(self) -> bool:
        local_now = self._local_now()
        if local_now.hour != self._reset_hour:
            return False
        if local_now.date() == self._state.last_reset_date:
            return False
        self._state.index = 0
        self._state.exhausted = False
        self._state.last_reset_date = local_now.date()
        logger.info(
            "rotation_time_reset index=0 hour=%d offset_hours=%s",
            self._reset_hour,
            self._timezone_offset_hours,
        )
        return True

    async def _perform_rotation(self) -> Path | None:
        state = self._state
        count = len(state.paths)
        if count < 2:
            return None
        if state.exhausted:
            logger.info("rotation_exhaustion_cleared accounts=%d", count)
            state.exhausted = False

        state.index = (state.index + 1) % count
        if state.index == 0:
            state.exhausted = True
            logger.warning(
                "rotation_exhausted accounts=%d reason=full_cycle_completed", count
            )

        target = state.paths[state.index]
        await asyncio.to_thread(self._copy_to_canonical, target)
        logger.info(
            "rotation_switch account=%s index=%d/%d",
            account_id_for_path(target),
            state.index + 1,
            count,
        )
        return target

    def _copy_to_canonical(self, source: Path) -> None:
        try:
            text = source.read_text(encoding="utf-8")
        except OSError as exc:
            raise RotationError(
                f"Credential file is unreadable: {source.name}", path=str(source)
            ) from exc
        try:
            payload = json.loads(text)
        except ValueError as exc:
            raise RotationError(
                f"Credential file is not valid JSON: {source.name}", path=str(source)
            ) from exc
        if not isinstance(payload, dict) or not any(
            payload.get(key) for key in CREDENTIAL_FIELDS
        ):
            raise RotationError(
                f"Credential file has no OAuth fields: {source.name}", path=str(source)
            )
        JsonFileStore(self.canonical_path, mode=OWNER_ONLY_MODE).write_text(text)

    def _local_now(self) -> datetime:
        return self._clock() + timedelta(hours=self._timezone_offset_hours)

    async def refresh_from_directory(self) -> bool:
        folder = self._state.directory
        if folder is None:
            return False
        paths = await asyncio.to_thread(scan_credential_directory, folder)
        if paths == self._state.paths:
            return False
        previous = len(self._state.paths)
        self._state.paths = paths
        self._state.index = 0
        self._state.exhausted = False
        logger.info(
            "rotation_pool_refreshed directory=%s accounts_before=%d accounts_after=%d",
            folder,
            previous,
            len(paths),
        )
        return True

    def _start_watcher(self, folder: Path) -> None:
        loop = asyncio.get_running_loop()
        self._changes = asyncio.Queue()
        observer = Observer()
        observer.schedule(
            _CredentialDirectoryHandler(loop, self._changes),
            str(folder),
            recursive=False,
        )
        observer.start()
        self._observer = observer
        self._watch_task = asyncio.create_task(self._watch_loop(self._changes))
        logger.info("rotation_watch_started directory=%s", folder)

    async def _watch_loop(self, changes: asyncio.Queue[CredentialSetChanged]) -> None:
        while True:
            change = await changes.get()
            logger.debug("rotation_watch_event path=%s", change.path)
            # Wait for the directory to go quiet before rescanning.
            while True:
                try:
                    await asyncio.wait_for(changes.get(), timeout=self._debounce_seconds)
                except TimeoutError:
                    break
            try:
                await self.refresh_from_directory()
            except Exception as exc:
                logger.warning(
                    "rotation_watch_refresh_failed error_type=%s error=%s",
                    exc.__class__.__name__,
                    exc,
                )

    def _detach_watcher(self) -> tuple[BaseObserver | None, asyncio.Task[None] | None]:
        observer = self._observer
        task = self._watch_task
        self._observer = None
        self._watch_task = None
        self._changes = None
        if observer is not None:
            observer.stop()
        if task is not None:
            task.cancel()
        return observer, task

    def _stop_watcher(self) -> None:
        observer, _ = self._detach_watcher()
        if observer is not None:
            observer.join()

    async def _stop_watcher_async(self) -> None:
        observer, task = self._detach_watcher()
        if observer is not None:
            await asyncio.to_thread(observer.join)
        if task is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await task

    async def close(self) -> None:
        await self._stop_watcher_async()
