"""Status and progress events published by transfer sessions."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Union

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class StatusEvent:
    session_id: str
    state: str
    phase: str
    timestamp: float = field(default_factory=time.time)


@dataclass(frozen=True, slots=True)
class ProgressEvent:
    session_id: str
    bytes_transferred: int
    total_bytes: int
    current_file: str = ""
    timestamp: float = field(default_factory=time.time)

    @property
    def fraction(self) -> float:
        if self.total_bytes <= 0:
            return 1.0
        return min(1.0, self.bytes_transferred / self.total_bytes)


Event = Union[StatusEvent, ProgressEvent]
Listener = Callable[[Event], None]


class EventBus:
    """Fan events out to bounded queues and synchronous listeners.

    ``publish`` never blocks the publisher: a full queue loses its oldest
    event, and listeners run later through ``loop.call_soon``.
    """

    def __init__(self, default_maxsize: int = 256) -> None:
        self.default_maxsize = default_maxsize
        self._queues: list[asyncio.Queue[Event]] = []
        self._listeners: list[Listener] = []
        self.dropped = 0

    def subscribe(self, maxsize: int | None = None) -> asyncio.Queue[Event]:
        size = self.default_maxsize if maxsize is None else maxsize
        if size <= 0:
            raise ValueError("subscriber queues must be bounded")
        queue: asyncio.Queue[Event] = asyncio.Queue(maxsize=size)
        self._queues.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue[Event]) -> None:
        if queue in self._queues:
            self._queues.remove(queue)

    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def publish(self, event: Event) -> None:
        for queue in list(self._queues):
            while queue.full():
                # 慢消费者只丢最旧的事件
                queue.get_nowait()
                self.dropped += 1
            queue.put_nowait(event)
        if not self._listeners:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None
        for listener in list(self._listeners):
            if loop is None:
                self._dispatch(listener, event)
            else:
                loop.call_soon(self._dispatch, listener, event)

    @staticmethod
    def _dispatch(listener: Listener, event: Event) -> None:
        try:
            listener(event)
        except Exception:  # noqa: BLE001
            LOGGER.exception("event listener %r failed", listener)
