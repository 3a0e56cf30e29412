"""Transport registry, ranking and sequential failover."""

from __future__ import annotations

import asyncio
import logging
from collections import Counter, deque
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Iterator, Optional, Sequence, TypeVar

from ..errors import (
    AllTransportsExhaustedError,
    BackendUnavailableError,
    ReceiveFailure,
    SendFailure,
    TransportError,
)
from ..net.classifier import classify_error
from ..net.profiler import NetworkProfile
from .base import ProgressCallback, TransferMetadata, Transport

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

OUTCOME_SUCCESS = "success"
OUTCOME_FAILED = "failed"
OUTCOME_TIMEOUT = "timeout"
OUTCOME_UNAVAILABLE = "unavailable"

DEFAULT_PROBE_TIMEOUT = 2.0
SUCCESS_HISTORY = 20
LATENCY_HISTORY = 10


@dataclass(frozen=True, slots=True)
class RegistrationEntry:
    name: str
    priority: int
    transport: Transport
    index: int


class TransportRegistry:
    """Append-only list of backends, frozen once the application has started."""

    def __init__(self) -> None:
        self._entries: list[RegistrationEntry] = []
        self._names: set[str] = set()
        self._frozen = False

    def register(self, transport: Transport) -> RegistrationEntry:
        if self._frozen:
            raise RuntimeError("transport registry is frozen")
        name = transport.get_name()
        if name in self._names:
            raise ValueError(f"transport {name!r} already registered")
        entry = RegistrationEntry(
            name=name,
            priority=transport.get_priority(),
            transport=transport,
            index=len(self._entries),
        )
        self._entries.append(entry)
        self._names.add(name)
        return entry

    def freeze(self) -> None:
        self._frozen = True

    @property
    def frozen(self) -> bool:
        return self._frozen

    def entries(self) -> tuple[RegistrationEntry, ...]:
        return tuple(self._entries)

    def get(self, name: str) -> Optional[Transport]:
        for entry in self._entries:
            if entry.name == name:
                return entry.transport
        return None

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[Transport]:
        return iter([entry.transport for entry in self._entries])


@dataclass(frozen=True, slots=True)
class AttemptRecord:
    """Outcome of one backend attempt."""

    transport: str
    outcome: str
    error: Optional[str] = None
    category: Optional[str] = None
    elapsed: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.outcome == OUTCOME_SUCCESS

    def to_dict(self) -> dict:
        return {
            "transport": self.transport,
            "outcome": self.outcome,
            "error": self.error,
            "category": self.category,
            "elapsed": round(self.elapsed, 3),
        }


@dataclass(slots=True)
class TransportStats:
    """Running counters for one backend, fed from its attempt records."""

    name: str
    attempts: int = 0
    successes: int = 0
    timeouts: int = 0
    last_outcome: Optional[str] = None
    last_error: Optional[str] = None
    # 最近结果与成功耗时，窗口有上限
    history: deque = field(default_factory=lambda: deque(maxlen=SUCCESS_HISTORY))
    latencies: deque = field(default_factory=lambda: deque(maxlen=LATENCY_HISTORY))
    errors: Counter = field(default_factory=Counter)

    def record(self, rec: AttemptRecord) -> None:
        self.attempts += 1
        self.history.append(rec.succeeded)
        self.last_outcome = rec.outcome
        self.last_error = rec.error
        if rec.succeeded:
            self.successes += 1
            self.latencies.append(rec.elapsed)
        else:
            if rec.outcome == OUTCOME_TIMEOUT:
                self.timeouts += 1
            self.errors[rec.category or "unknown"] += 1

    @property
    def recent_success_rate(self) -> Optional[float]:
        if not self.history:
            return None
        return sum(self.history) / len(self.history)

    @property
    def average_latency(self) -> Optional[float]:
        if not self.latencies:
            return None
        return sum(self.latencies) / len(self.latencies)

    def to_dict(self) -> dict:
        rate = self.recent_success_rate
        latency = self.average_latency
        return {
            "name": self.name,
            "attempts": self.attempts,
            "successes": self.successes,
            "timeouts": self.timeouts,
            "recent_success_rate": round(rate, 3) if rate is not None else None,
            "average_latency": round(latency, 3) if latency is not None else None,
            "last_outcome": self.last_outcome,
            "last_error": self.last_error,
            "errors": dict(self.errors),
        }


BeforeAttempt = Callable[[Transport, int], None]
AfterAttempt = Callable[[AttemptRecord], None]


class TransportManager:
    """Rank registered backends and try them one at a time."""

    def __init__(
        self,
        registry: TransportRegistry,
        *,
        attempt_timeout: float,
        overall_timeout: float,
        probe_timeout: float = DEFAULT_PROBE_TIMEOUT,
    ) -> None:
        self.registry = registry
        self.attempt_timeout = float(attempt_timeout)
        self.overall_timeout = float(overall_timeout)
        self.probe_timeout = float(probe_timeout)
        self._stats: dict[str, TransportStats] = {}

    def timeout_for(self, transport: Transport) -> float:
        cfg = transport.config
        if cfg is not None and cfg.timeout_sec:
            return float(cfg.timeout_sec)
        return self.attempt_timeout

    def stats_for(self, name: str) -> TransportStats:
        stats = self._stats.get(name)
        if stats is None:
            stats = self._stats[name] = TransportStats(name)
        return stats

    def transport_status(self) -> dict[str, dict]:
        """Counters for every registered backend, in registration order."""

        return {entry.name: self.stats_for(entry.name).to_dict() for entry in self.registry.entries()}

    async def _probe(self, transport: Transport) -> bool:
        try:
            return bool(await asyncio.wait_for(transport.is_available(), timeout=self.probe_timeout))
        except asyncio.TimeoutError:
            LOGGER.info("availability probe for %s timed out", transport.get_name())
            return False
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001
            LOGGER.info("availability probe for %s failed: %s", transport.get_name(), exc)
            return False

    def _defer_reason(
        self,
        transport: Transport,
        available: bool,
        profile: Optional[NetworkProfile],
        payload_size: int,
    ) -> Optional[str]:
        if not available:
            return "unavailable"
        if profile is not None and transport.native_ports:
            if not set(transport.native_ports) & profile.reachable_ports:
                return "native ports unreachable"
        limit = transport.max_payload_bytes
        if limit is not None and payload_size > limit:
            return f"payload exceeds {limit} bytes"
        return None

    async def select_order(
        self,
        profile: Optional[NetworkProfile] = None,
        payload_size: int = 0,
    ) -> list[Transport]:
        """Return every registered transport, preferred ones first.

        Ordering is ascending priority with registration order breaking ties.
        Transports that look unusable are moved to the end, keeping their
        relative order, so they are still tried as a last resort.
        """

        entries = sorted(self.registry.entries(), key=lambda item: (item.priority, item.index))
        results = await asyncio.gather(*(self._probe(entry.transport) for entry in entries))
        preferred: list[Transport] = []
        deferred: list[Transport] = []
        for entry, available in zip(entries, results):
            reason = self._defer_reason(entry.transport, available, profile, payload_size)
            if reason is None:
                preferred.append(entry.transport)
            else:
                LOGGER.info("deferring transport %s: %s", entry.name, reason)
                deferred.append(entry.transport)
        return preferred + deferred

    async def _failover(
        self,
        direction: str,
        order: Sequence[Transport],
        operation: Callable[[Transport, Optional[ProgressCallback]], Awaitable[T]],
        *,
        progress: Optional[ProgressCallback],
        before_attempt: Optional[BeforeAttempt],
        after_attempt: Optional[AfterAttempt],
    ) -> tuple[T, AttemptRecord]:
        failure_cls = SendFailure if direction == "send" else ReceiveFailure
        attempts: list[AttemptRecord] = []
        loop = asyncio.get_running_loop()
        ceiling = min(self.overall_timeout, sum(self.timeout_for(t) for t in order))
        deadline = loop.time() + ceiling

        def record(rec: AttemptRecord, *, attempted: bool = True) -> None:
            attempts.append(rec)
            if attempted:
                self.stats_for(rec.transport).record(rec)
            if after_attempt is not None:
                after_attempt(rec)

        for index, transport in enumerate(order):
            name = transport.get_name()
            budget = min(self.timeout_for(transport), deadline - loop.time())
            if budget <= 0:
                record(
                    AttemptRecord(name, OUTCOME_TIMEOUT, "overall deadline exceeded", "network_throttling"),
                    attempted=False,
                )
                continue
            if before_attempt is not None:
                before_attempt(transport, index)
            LOGGER.info("%s attempt %d/%d via %s", direction, index + 1, len(order), name)
            started = loop.time()
            try:
                result = await asyncio.wait_for(operation(transport, progress), timeout=budget)
            except asyncio.CancelledError:
                LOGGER.info("%s via %s cancelled", direction, name)
                raise
            except asyncio.TimeoutError:
                error = f"{name}: timed out after {budget:.1f}s"
                record(AttemptRecord(name, OUTCOME_TIMEOUT, error, "network_throttling", loop.time() - started))
                LOGGER.warning("%s via %s timed out", direction, name)
                continue
            except BackendUnavailableError as exc:
                record(AttemptRecord(name, OUTCOME_UNAVAILABLE, str(exc), "backend_unavailable", loop.time() - started))
                LOGGER.warning("%s via %s unavailable: %s", direction, name, exc)
                continue
            except Exception as exc:  # noqa: BLE001
                failure = exc if isinstance(exc, TransportError) else failure_cls(name, str(exc) or type(exc).__name__)
                classification = classify_error(failure)
                record(
                    AttemptRecord(
                        name,
                        OUTCOME_FAILED,
                        str(failure),
                        classification.category,
                        loop.time() - started,
                    )
                )
                LOGGER.warning("%s via %s failed [%s]: %s", direction, name, classification.category, failure)
                LOGGER.debug("guidance: %s", classification.user_action)
                continue
            success = AttemptRecord(name, OUTCOME_SUCCESS, elapsed=loop.time() - started)
            record(success)
            LOGGER.info("%s via %s succeeded in %.2fs", direction, name, success.elapsed)
            return result, success
        raise AllTransportsExhaustedError(attempts, direction=direction)

    async def send_with_failover(
        self,
        data: bytes,
        metadata: TransferMetadata,
        *,
        order: Optional[Sequence[Transport]] = None,
        progress: Optional[ProgressCallback] = None,
        before_attempt: Optional[BeforeAttempt] = None,
        after_attempt: Optional[AfterAttempt] = None,
    ) -> AttemptRecord:
        if order is None:
            order = await self.select_order(None, len(data))

        async def _send(transport: Transport, callback: Optional[ProgressCallback]) -> None:
            await transport.send(data, metadata, callback)

        _, success = await self._failover(
            "send",
            order,
            _send,
            progress=progress,
            before_attempt=before_attempt,
            after_attempt=after_attempt,
        )
        return success

    async def receive_with_failover(
        self,
        metadata: TransferMetadata,
        *,
        order: Optional[Sequence[Transport]] = None,
        progress: Optional[ProgressCallback] = None,
        before_attempt: Optional[BeforeAttempt] = None,
        after_attempt: Optional[AfterAttempt] = None,
    ) -> tuple[bytes, AttemptRecord]:
        if order is None:
            order = await self.select_order(None, 0)

        async def _receive(transport: Transport, callback: Optional[ProgressCallback]) -> bytes:
            return await transport.receive(metadata, callback)

        return await self._failover(
            "receive",
            order,
            _receive,
            progress=progress,
            before_attempt=before_attempt,
            after_attempt=after_attempt,
        )

    async def close_all(self) -> None:
        for transport in self.registry:
            try:
                await transport.close()
            except Exception as exc:  # noqa: BLE001
                LOGGER.warning("closing transport %s failed: %s", transport.get_name(), exc)
