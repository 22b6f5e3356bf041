from __future__ import annotations

import asyncio
import logging
import threading
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable

from cardsync.core.config import SyncConfig
from cardsync.core.errors import SyncBusyError
from cardsync.core.models import SyncLogEntry
from cardsync.providers.ankiconnect.supervisor import wait_stop_or_timeout

SCHEDULER_MIN_INTERVAL_SEC = 10
SCHEDULER_MAX_INTERVAL_SEC = 86400

logger = logging.getLogger("scheduler")


def _sanitize_poll_interval(raw: int) -> int:
    if raw <= 0:
        return 0
    return min(max(raw, SCHEDULER_MIN_INTERVAL_SEC), SCHEDULER_MAX_INTERVAL_SEC)


def _iso_from_ts(ts: float | None) -> str | None:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


class AutoSyncScheduler:
    """Interval, startup and file-change triggers funnelled into one sync call.

    Overlapping triggers are dropped and counted, never queued.
    """

    def __init__(
        self,
        service,
        supervisor=None,
        *,
        poll_interval_sec: float = 0,
        sync_on_startup: bool = False,
        startup_delay_sec: float = 2.0,
        debounce_sec: float = 5.0,
        only_when_connected: bool = True,
    ):
        self.service = service
        self.supervisor = supervisor
        self.poll_interval_sec = poll_interval_sec
        self.sync_on_startup = sync_on_startup
        self.startup_delay_sec = startup_delay_sec
        self.debounce_sec = debounce_sec
        self.only_when_connected = only_when_connected

        self._state_lock = threading.Lock()
        self._state: dict[str, object] = {
            "running": False,
            "enabled": poll_interval_sec > 0,
            "interval_sec": poll_interval_sec,
            "last_trigger": None,
            "last_started_at": None,
            "last_finished_at": None,
            "last_result": None,
            "last_error": None,
            "next_run_at": None,
            "pending_file_changes": 0,
            "run_count": 0,
            "skipped_busy_count": 0,
            "skipped_disconnected_count": 0,
        }
        self._stop_event: asyncio.Event | None = None
        self._tasks: list[asyncio.Task] = []
        self._debounce_task: asyncio.Task | None = None

    @classmethod
    def from_config(cls, service, supervisor, cfg: SyncConfig) -> "AutoSyncScheduler":
        return cls(
            service,
            supervisor,
            poll_interval_sec=_sanitize_poll_interval(cfg.poll_interval_sec),
            sync_on_startup=cfg.sync_on_startup,
            startup_delay_sec=cfg.startup_delay_sec,
            debounce_sec=cfg.debounce_sec,
            only_when_connected=cfg.only_when_connected,
        )

    def _update(self, **kwargs) -> None:
        with self._state_lock:
            self._state.update(kwargs)

    def _bump(self, key: str) -> None:
        with self._state_lock:
            self._state[key] = int(self._state.get(key) or 0) + 1

    def state(self) -> dict[str, object]:
        with self._state_lock:
            snap = dict(self._state)
        for key in ("last_started_at", "last_finished_at", "next_run_at"):
            snap[key] = _iso_from_ts(snap[key])
        return snap

    async def trigger(self, source: str, full_resync: bool = False) -> SyncLogEntry | None:
        if self.only_when_connected and self.supervisor is not None and not self.supervisor.is_connected():
            self._bump("skipped_disconnected_count")
            self._update(last_trigger=source, last_result="skipped_disconnected", last_error="anki_disconnected")
            logger.warning("sync_skipped reason=disconnected trigger=%s", source)
            return None

        self._update(last_trigger=source, last_started_at=time.time(), last_error=None)
        try:
            entry = await asyncio.to_thread(self.service.perform_incremental_sync, source, full_resync)
        except SyncBusyError:
            self._bump("skipped_busy_count")
            self._update(last_finished_at=time.time(), last_result="skipped_busy", last_error="sync_busy")
            logger.warning("sync_skipped reason=busy trigger=%s", source)
            return None
        except Exception as e:
            self._bump("run_count")
            self._update(last_finished_at=time.time(), last_result="failed", last_error=str(e))
            logger.exception("triggered_sync_failed trigger=%s", source)
            return None

        self._bump("run_count")
        self._update(last_finished_at=time.time(), last_result=entry.status, last_error=entry.error)
        return entry

    # file changes

    def notify_file_changed(self, path: str | None = None) -> None:
        """Restart the debounce window; the sync fires once the window stays quiet."""
        self._bump("pending_file_changes")
        if self._debounce_task is not None and not self._debounce_task.done():
            self._debounce_task.cancel()
        self._debounce_task = asyncio.create_task(self._debounced(), name="cardsync_debounce")
        logger.debug("file_change_queued path=%s", path or "-")

    async def _debounced(self) -> None:
        await asyncio.sleep(self.debounce_sec)
        # past the quiet window; later changes open a new window instead of cancelling this run
        task = asyncio.current_task()
        if self._debounce_task is task:
            self._debounce_task = None
            self._tasks.append(task)
            task.add_done_callback(self._forget_task)
        self._update(pending_file_changes=0)
        await self.trigger("file_change")

    def _forget_task(self, task: asyncio.Task) -> None:
        if task in self._tasks:
            self._tasks.remove(task)

    # loops

    async def _interval_loop(self, stop_event: asyncio.Event) -> None:
        while not stop_event.is_set():
            next_run_at = time.time() + self.poll_interval_sec
            self._update(next_run_at=next_run_at)
            if await wait_stop_or_timeout(stop_event, self.poll_interval_sec):
                break
            await self.trigger("interval")
        self._update(next_run_at=None)

    async def _startup(self, stop_event: asyncio.Event) -> None:
        if await wait_stop_or_timeout(stop_event, self.startup_delay_sec):
            return
        await self.trigger("startup")

    def start(self) -> None:
        if self._stop_event is not None:
            return
        self._stop_event = asyncio.Event()
        if self.poll_interval_sec > 0:
            self._tasks.append(asyncio.create_task(self._interval_loop(self._stop_event), name="cardsync_interval"))
        if self.sync_on_startup:
            self._tasks.append(asyncio.create_task(self._startup(self._stop_event), name="cardsync_startup"))
        self._update(running=True)
        logger.info("scheduler_started interval_sec=%s startup=%s", self.poll_interval_sec, self.sync_on_startup)

    async def stop(self) -> None:
        if self._stop_event is not None:
            self._stop_event.set()
        if self._debounce_task is not None and not self._debounce_task.done():
            self._debounce_task.cancel()
        pending = self._tasks + ([self._debounce_task] if self._debounce_task else [])
        for task in pending:
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception:
                logger.exception("scheduler_stop_error")
        self._tasks = []
        self._debounce_task = None
        self._stop_event = None
        self._update(running=False, next_run_at=None)
        logger.info("scheduler_stopped")


class LocalStoreWatcher:
    """Polls JSON file mtimes under the store root and reports changed paths."""

    def __init__(self, root: str | Path, on_change: Callable[[str], None], poll_sec: float = 2.0, pattern: str = "*.json"):
        self.root = Path(root)
        self.on_change = on_change
        self.poll_sec = poll_sec
        self.pattern = pattern
        self._seen: dict[str, float] = {}
        self._stop_event: asyncio.Event | None = None
        self._task: asyncio.Task | None = None

    def scan(self) -> list[str]:
        current: dict[str, float] = {}
        if self.root.is_dir():
            for p in self.root.rglob(self.pattern):
                if p.name.startswith("."):
                    continue
                try:
                    current[str(p)] = p.stat().st_mtime
                except FileNotFoundError:
                    continue
        changed = [p for p, mtime in current.items() if self._seen.get(p) != mtime]
        changed += [p for p in self._seen if p not in current]
        self._seen = current
        return sorted(changed)

    async def _run(self, stop_event: asyncio.Event) -> None:
        self.scan()
        while not await wait_stop_or_timeout(stop_event, self.poll_sec):
            for path in self.scan():
                try:
                    self.on_change(path)
                except Exception:
                    logger.exception("watcher_callback_failed path=%s", path)

    def start(self) -> None:
        if self._task and not self._task.done():
            return
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._run(self._stop_event), name="cardsync_watcher")
        logger.info("store_watcher_started root=%s", self.root)

    async def stop(self) -> None:
        if self._stop_event is not None:
            self._stop_event.set()
        if self._task is not None:
            await self._task
        self._task = None
        self._stop_event = None
