"""
Wake scheduling for the queue worker.

``compute_queue_wake_delay`` decides how long the worker sleeps between ticks
from the last known readiness aggregate. ``QueueWakeClient`` keeps that
aggregate current from the server-sent wake feed and tracks whether the feed
is connected, so a stale aggregate is never trusted.
"""

import asyncio
import json
import logging
import math
import random as _random
from collections.abc import AsyncIterator, Callable, Iterable, Iterator
from dataclasses import dataclass
from typing import Generic, Literal, TypeVar

from pydantic import ValidationError

from guildpass_worker.client.base import WorkerAPIError
from guildpass_worker.schemas import WakeState

logger = logging.getLogger(__name__)

WakeReason = Literal["ready_jobs", "next_due", "fallback"]


@dataclass(frozen=True)
class WakeDecision:
    delay_ms: int
    reason: WakeReason


def jitter_ms(min_ms: int, max_ms: int, random: Callable[[], float]) -> int:
    """Uniform delay in ``[min_ms, max_ms]``; ``min_ms`` when the window is empty."""
    if max_ms <= min_ms:
        return min_ms
    value = min_ms + math.floor((max_ms - min_ms) * random())
    return max(min_ms, min(max_ms, value))


def compute_queue_wake_delay(
    state: WakeState | None,
    connection_healthy: bool,
    fallback_min_ms: int,
    fallback_max_ms: int,
    random: Callable[[], float] = _random.random,
) -> WakeDecision:
    def fallback() -> WakeDecision:
        return WakeDecision(
            jitter_ms(fallback_min_ms, fallback_max_ms, random), "fallback"
        )

    if not connection_healthy or state is None:
        return fallback()

    families = state.families.values()
    if sum(family.pending_ready for family in families) > 0:
        return WakeDecision(0, "ready_jobs")

    due_times = [f.next_run_after for f in families if f.next_run_after is not None]
    if due_times:
        return WakeDecision(max(0, min(due_times) - state.server_now), "next_due")

    return fallback()


@dataclass(frozen=True)
class SSEEvent:
    event: str
    data: str


class SSEDecoder:
    """Incremental server-sent events decoder; comment lines are dropped."""

    def __init__(self):
        self._event = ""
        self._data: list[str] = []

    def decode(self, line: str) -> SSEEvent | None:
        line = line.rstrip("\r\n")
        if not line:
            if not self._data and not self._event:
                return None
            event = SSEEvent(self._event or "message", "\n".join(self._data))
            self._event = ""
            self._data = []
            return event

        if line.startswith(":"):
            return None

        field, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if field == "event":
            self._event = value
        elif field == "data":
            self._data.append(value)
        return None


def parse_sse_lines(lines: Iterable[str]) -> Iterator[SSEEvent]:
    decoder = SSEDecoder()
    for line in lines:
        event = decoder.decode(line)
        if event is not None:
            yield event


async def aiter_sse_events(lines: AsyncIterator[str]) -> AsyncIterator[SSEEvent]:
    decoder = SSEDecoder()
    async for line in lines:
        event = decoder.decode(line)
        if event is not None:
            yield event


def parse_wake_event(event: SSEEvent) -> WakeState | None:
    if event.event != "wake":
        return None
    try:
        return WakeState.model_validate(json.loads(event.data))
    except (ValueError, ValidationError):
        logger.warning("Ignoring malformed wake event", extra={"data": event.data[:200]})
        return None


class Disposer:
    """Unsubscribe handle; calling it more than once is a no-op."""

    def __init__(self, dispose: Callable[[], None]):
        self._dispose: Callable[[], None] | None = dispose

    @property
    def disposed(self) -> bool:
        return self._dispose is None

    def __call__(self) -> None:
        dispose, self._dispose = self._dispose, None
        if dispose is not None:
            dispose()


T = TypeVar("T")


class _Listeners(Generic[T]):
    def __init__(self):
        self._callbacks: list[Callable[[T], None]] = []

    def add(self, callback: Callable[[T], None]) -> Disposer:
        self._callbacks.append(callback)

        def remove() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return Disposer(remove)

    def emit(self, value: T) -> None:
        for callback in list(self._callbacks):
            callback(value)

    def __len__(self) -> int:
        return len(self._callbacks)


LineSource = Callable[[], AsyncIterator[str]]


class WakeFeed:
    """
    One reconnecting SSE connection exposed as two subscriptions.

    State listeners receive every parsed wake aggregate. Connectivity
    listeners receive True when the stream opens and False when it errors or
    closes; the connection is retried after ``reconnect_delay_ms``.
    """

    def __init__(self, open_lines: LineSource, reconnect_delay_ms: int = 2000):
        self.open_lines = open_lines
        self.reconnect_delay_ms = reconnect_delay_ms
        self._state = _Listeners[WakeState]()
        self._connectivity = _Listeners[bool]()
        self._task: asyncio.Task | None = None

    def subscribe_state(self, callback: Callable[[WakeState], None]) -> Disposer:
        return self._ensure_running(self._state.add(callback))

    def subscribe_connectivity(self, callback: Callable[[bool], None]) -> Disposer:
        return self._ensure_running(self._connectivity.add(callback))

    def _ensure_running(self, disposer: Disposer) -> Disposer:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run())

        def dispose() -> None:
            disposer()
            if not self._state and not self._connectivity and self._task is not None:
                self._task.cancel()
                self._task = None

        return Disposer(dispose)

    async def _run(self) -> None:
        while True:
            try:
                async for event in aiter_sse_events(self._opened_lines()):
                    state = parse_wake_event(event)
                    if state is not None:
                        self._state.emit(state)
                logger.info("Wake stream closed by server")
            except WorkerAPIError as e:
                logger.warning("Wake stream error", extra={"error": str(e)})
            except Exception:
                logger.exception("Wake stream failed")
            self._connectivity.emit(False)
            await asyncio.sleep(self.reconnect_delay_ms / 1000)

    async def _opened_lines(self) -> AsyncIterator[str]:
        announced = False
        async for line in self.open_lines():
            if not announced:
                announced = True
                self._connectivity.emit(True)
            yield line


class QueueWakeClient:
    """
    Merges the wake feed's state and connectivity into one ``(state, connected)``
    view and wakes the worker whenever either changes.
    """

    def __init__(
        self,
        feed: WakeFeed,
        fallback_min_ms: int,
        fallback_max_ms: int,
    ):
        self.feed = feed
        self.fallback_min_ms = fallback_min_ms
        self.fallback_max_ms = fallback_max_ms
        self.state: WakeState | None = None
        self.connected = False
        self.changed = asyncio.Event()

        self._updates: asyncio.Queue[tuple[str, WakeState | bool]] = asyncio.Queue()
        self._listeners = _Listeners[tuple[WakeState | None, bool]]()
        self._subscriptions: list[Disposer] = []
        self._dispatcher: asyncio.Task | None = None

    def start(self) -> None:
        if self._dispatcher is not None:
            return
        self._dispatcher = asyncio.create_task(self._dispatch())
        self._subscriptions = [
            self.feed.subscribe_state(
                lambda state: self._updates.put_nowait(("state", state))
            ),
            self.feed.subscribe_connectivity(
                lambda connected: self._updates.put_nowait(("connected", connected))
            ),
        ]

    def subscribe(
        self, callback: Callable[[tuple[WakeState | None, bool]], None]
    ) -> Disposer:
        return self._listeners.add(callback)

    def apply(self, kind: str, value: WakeState | bool) -> None:
        """Fold one update into the merged view and notify listeners."""
        if kind == "state" and isinstance(value, WakeState):
            self.state = value
        elif kind == "connected" and isinstance(value, bool):
            if value == self.connected:
                return
            self.connected = value
            logger.info("Wake feed connectivity changed", extra={"connected": value})
        else:
            return
        self.changed.set()
        self._listeners.emit((self.state, self.connected))

    async def _dispatch(self) -> None:
        while True:
            kind, value = await self._updates.get()
            self.apply(kind, value)

    def next_wake(self, random: Callable[[], float] = _random.random) -> WakeDecision:
        return compute_queue_wake_delay(
            self.state,
            self.connected,
            self.fallback_min_ms,
            self.fallback_max_ms,
            random=random,
        )

    async def wait(self, delay_ms: int) -> bool:
        """Sleep up to ``delay_ms``; returns True when woken early by an update."""
        self.changed.clear()
        if delay_ms <= 0:
            return False
        try:
            await asyncio.wait_for(self.changed.wait(), timeout=delay_ms / 1000)
            return True
        except TimeoutError:
            return False

    async def stop(self) -> None:
        for dispose in self._subscriptions:
            dispose()
        self._subscriptions = []
        if self._dispatcher is not None:
            self._dispatcher.cancel()
            try:
                await self._dispatcher
            except asyncio.CancelledError:
                pass
            self._dispatcher = None
