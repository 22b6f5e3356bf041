from __future__ import annotations

import asyncio
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeout
from typing import Awaitable, Callable, Literal

from pydantic import BaseModel

from cardsync.core.config import ConnectionConfig
from cardsync.providers.ankiconnect.schemas import ConnectionProbe

logger = logging.getLogger("connection")

ConnectionStatus = Literal["connected", "disconnected", "reconnecting"]


class ConnectionState(BaseModel):
    status: ConnectionStatus = "disconnected"
    last_heartbeat: float | None = None
    reconnect_attempts: int = 0
    error: str | None = None
    hint: str = ""


def backoff_schedule(base_sec: float, cap_sec: float, max_attempts: int) -> list[float]:
    """Delays before each reconnect attempt: base, 2*base, 4*base ... capped."""
    return [min(cap_sec, base_sec * (2 ** i)) for i in range(max(0, max_attempts))]


async def wait_stop_or_timeout(stop_event: asyncio.Event, timeout_sec: float) -> bool:
    if timeout_sec <= 0:
        return stop_event.is_set()
    try:
        await asyncio.wait_for(stop_event.wait(), timeout=timeout_sec)
        return True
    except asyncio.TimeoutError:
        return False


class ConnectionSupervisor:
    """Owns the connection state machine for one AnkiConnect endpoint.

    disconnected -> connected on a successful probe, connected -> disconnected
    on a failed heartbeat, then reconnecting with capped exponential backoff
    until the attempt budget is spent. Observers get every transition.
    """

    def __init__(
        self,
        client,
        *,
        heartbeat_interval_sec: float = 30.0,
        backoff_base_sec: float = 1.0,
        backoff_cap_sec: float = 30.0,
        max_reconnect_attempts: int = 3,
        sleep: Callable[[float], Awaitable[None]] | None = None,
    ):
        self.client = client
        self.heartbeat_interval_sec = heartbeat_interval_sec
        self.delays = backoff_schedule(backoff_base_sec, backoff_cap_sec, max_reconnect_attempts)
        self._sleep = sleep
        self._state = ConnectionState()
        self._state_lock = threading.Lock()
        self._subscribers: list[Callable[[ConnectionState], None]] = []
        self._notifier: ThreadPoolExecutor | None = None
        self._exhausted = False
        self._reconnect_lock: asyncio.Lock | None = None
        self._task: asyncio.Task | None = None
        self._stop_event: asyncio.Event | None = None

    @classmethod
    def from_config(cls, client, cfg: ConnectionConfig) -> "ConnectionSupervisor":
        return cls(
            client,
            heartbeat_interval_sec=cfg.heartbeat_interval_sec,
            backoff_base_sec=cfg.backoff_base_sec,
            backoff_cap_sec=cfg.backoff_cap_sec,
            max_reconnect_attempts=cfg.max_reconnect_attempts,
        )

    @property
    def state(self) -> ConnectionState:
        with self._state_lock:
            return self._state.model_copy()

    def is_connected(self) -> bool:
        return self.state.status == "connected"

    def subscribe(self, callback: Callable[[ConnectionState], None]) -> Callable[[], None]:
        self._subscribers.append(callback)
        self._deliver(callback, self.state)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    @staticmethod
    def _call_subscriber(callback, snapshot: ConnectionState) -> None:
        try:
            callback(snapshot)
        except Exception:
            logger.exception("state_subscriber_failed")

    def _deliver(self, callback, snapshot: ConnectionState) -> None:
        # One worker keeps transitions in order; the loop never waits on it.
        if self._notifier is None:
            self._notifier = ThreadPoolExecutor(max_workers=1, thread_name_prefix="cardsync-state")
        self._notifier.submit(self._call_subscriber, callback, snapshot)

    def wait_for_notifications(self, timeout: float | None = None) -> bool:
        """Block until every queued state notification has been delivered."""
        if self._notifier is None:
            return True
        marker = self._notifier.submit(lambda: None)
        try:
            marker.result(timeout=timeout)
        except FuturesTimeout:
            return False
        return True

    def _set_state(self, **changes) -> None:
        with self._state_lock:
            previous = self._state
            self._state = previous.model_copy(update=changes)
            snapshot = self._state.model_copy()
        if previous.status != snapshot.status:
            logger.info("connection_state %s -> %s attempts=%s", previous.status, snapshot.status, snapshot.reconnect_attempts)
        if previous.status != snapshot.status or previous.reconnect_attempts != snapshot.reconnect_attempts:
            for callback in list(self._subscribers):
                self._deliver(callback, snapshot)

    async def _probe(self) -> ConnectionProbe:
        return await asyncio.to_thread(self.client.check_connection)

    async def _pause(self, delay: float) -> bool:
        """Returns True when the supervisor is stopping."""
        if self._sleep is not None:
            await self._sleep(delay)
            return False
        if self._stop_event is not None:
            return await wait_stop_or_timeout(self._stop_event, delay)
        await asyncio.sleep(delay)
        return False

    def _mark_connected(self) -> None:
        self._exhausted = False
        self._set_state(status="connected", last_heartbeat=time.time(), reconnect_attempts=0, error=None, hint="")

    async def heartbeat(self) -> bool:
        probe = await self._probe()
        if probe.ok:
            self._mark_connected()
            return True

        was_connected = self.state.status == "connected"
        self._set_state(status="disconnected", error=probe.error, hint=probe.hint)
        if self._exhausted and not was_connected:
            logger.debug("heartbeat_still_disconnected error=%s", probe.error)
            return False
        logger.warning("heartbeat_failed status=%s error=%s", probe.status, probe.error)
        return await self.reconnect()

    async def reconnect(self) -> bool:
        if self._reconnect_lock is None:
            self._reconnect_lock = asyncio.Lock()
        async with self._reconnect_lock:
            if self.is_connected():
                return True
            for attempt, delay in enumerate(self.delays, start=1):
                self._set_state(status="reconnecting", reconnect_attempts=attempt)
                logger.info("reconnect_scheduled attempt=%s/%s delay_sec=%s", attempt, len(self.delays), delay)
                if await self._pause(delay):
                    break
                probe = await self._probe()
                if probe.ok:
                    self._mark_connected()
                    logger.info("reconnected attempt=%s", attempt)
                    return True
                self._set_state(error=probe.error, hint=probe.hint)

            self._exhausted = True
            self._set_state(status="disconnected")
            state = self.state
            logger.error("reconnect_gave_up attempts=%s error=%s hint=%s", state.reconnect_attempts, state.error, state.hint)
            return False

    async def manual_reconnect(self) -> bool:
        self._exhausted = False
        self._set_state(reconnect_attempts=0)
        probe = await self._probe()
        if probe.ok:
            self._mark_connected()
            return True
        self._set_state(status="disconnected", error=probe.error, hint=probe.hint)
        return await self.reconnect()

    async def _run(self, stop_event: asyncio.Event) -> None:
        logger.info("supervisor_started interval_sec=%s", self.heartbeat_interval_sec)
        while not stop_event.is_set():
            try:
                await self.heartbeat()
            except Exception:
                logger.exception("heartbeat_error")
            if await wait_stop_or_timeout(stop_event, self.heartbeat_interval_sec):
                break
        logger.info("supervisor_stopped")

    def start(self) -> None:
        if self._task and not self._task.done():
            return
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._run(self._stop_event), name="cardsync_supervisor")

    async def stop(self) -> None:
        if self._stop_event is not None:
            self._stop_event.set()
        if self._task is not None:
            try:
                await self._task
            except Exception:
                logger.exception("supervisor_stop_error")
        self._task = None
        self._stop_event = None
        if self._notifier is not None:
            # queued notifications still run; the worker exits afterwards
            self._notifier.shutdown(wait=False)
            self._notifier = None
