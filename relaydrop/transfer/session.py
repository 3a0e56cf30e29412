"""Per-transfer state machine tying key derivation, mode selection and failover together."""

from __future__ import annotations

import asyncio
import enum
import logging
import secrets
from dataclasses import dataclass
from typing import TYPE_CHECKING, Awaitable, Optional

from ..errors import (
    IntegrityError,
    InvalidStateTransition,
    TransferCancelledError,
)
from ..net.profiler import NetworkProfile, NetworkType
from ..security.codes import normalize_code
from ..security.engine import EncryptionMode, compute_digest
from ..transport.base import TransferMetadata, Transport
from ..transport.manager import AttemptRecord
from ..utils.pathing import sanitize_filename
from . import envelope
from .events import ProgressEvent, StatusEvent
from .payload import format_size

if TYPE_CHECKING:  # pragma: no cover
    from ..app import AppContext

LOGGER = logging.getLogger(__name__)


class SessionState(str, enum.Enum):
    IDLE = "idle"
    CODE_READY = "code_ready"
    NEGOTIATING = "negotiating"
    TRANSPORTING = "transporting"
    VERIFYING = "verifying"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset({SessionState.COMPLETED, SessionState.FAILED, SessionState.CANCELLED})

# Forward edges only; failed and cancelled are reachable from any non-terminal state.
TRANSITIONS: dict[SessionState, frozenset[SessionState]] = {
    SessionState.IDLE: frozenset({SessionState.CODE_READY}),
    SessionState.CODE_READY: frozenset({SessionState.NEGOTIATING}),
    SessionState.NEGOTIATING: frozenset({SessionState.TRANSPORTING}),
    SessionState.TRANSPORTING: frozenset({SessionState.TRANSPORTING, SessionState.VERIFYING}),
    SessionState.VERIFYING: frozenset({SessionState.COMPLETED}),
}


def can_transition(current: SessionState, target: SessionState) -> bool:
    if current.terminal:
        return False
    if target in (SessionState.FAILED, SessionState.CANCELLED):
        return True
    return target in TRANSITIONS.get(current, frozenset())


@dataclass(frozen=True, slots=True)
class SessionSnapshot:
    session_id: str
    role: str
    state: SessionState
    phase: str
    mode: Optional[EncryptionMode]
    transport: Optional[str]
    attempts: tuple[AttemptRecord, ...]
    metadata: Optional[TransferMetadata]


@dataclass(frozen=True, slots=True)
class SessionResult:
    state: SessionState
    metadata: Optional[TransferMetadata]
    transport: Optional[str]
    mode: Optional[EncryptionMode]
    attempts: tuple[AttemptRecord, ...]
    payload: Optional[bytes] = None

    @property
    def completed(self) -> bool:
        return self.state is SessionState.COMPLETED


class TransferSession:
    """One send or receive of a single payload under one transfer code.

    The session owns the runner task doing the work. :meth:`cancel` cancels
    that task and waits a bounded grace period for the backend to unwind.
    Failures move the session to ``failed`` before the error is re-raised;
    cancellation returns a result in state ``cancelled``.
    """

    def __init__(
        self,
        ctx: "AppContext",
        code: str,
        *,
        role: str = "send",
        session_id: Optional[str] = None,
    ) -> None:
        if role not in ("send", "receive"):
            raise ValueError("role must be 'send' or 'receive'")
        self.ctx = ctx
        self.code = normalize_code(code)
        self.role = role
        self.session_id = session_id or secrets.token_hex(6)
        self.state = SessionState.IDLE
        self.phase = "waiting"
        self.key: Optional[bytes] = None
        self.salt: Optional[bytes] = None
        self.transfer_id: Optional[str] = None
        self.metadata: Optional[TransferMetadata] = None
        self.mode: Optional[EncryptionMode] = None
        self.transport: Optional[str] = None
        self.profile: Optional[NetworkProfile] = None
        self._attempts: list[AttemptRecord] = []
        self._runner: Optional[asyncio.Task] = None
        self._cancel_requested = False
        self._payload: Optional[bytes] = None

    # 状态与事件

    def _transition(self, target: SessionState, phase: str = "") -> None:
        if not can_transition(self.state, target):
            raise InvalidStateTransition(f"{self.state.value} -> {target.value} is not allowed")
        LOGGER.debug("session %s: %s -> %s", self.session_id, self.state.value, target.value)
        self.state = target
        self.phase = phase or target.value.replace("_", " ")
        self.ctx.events.publish(StatusEvent(self.session_id, self.state.value, self.phase))

    def _end(self, target: SessionState, phase: str) -> None:
        if not self.state.terminal:
            self._transition(target, phase)

    def _progress(self, done: int, total: int) -> None:
        name = self.metadata.file_name if self.metadata else ""
        self.ctx.events.publish(ProgressEvent(self.session_id, done, total, name))

    def _before_attempt(self, transport: Transport, index: int) -> None:
        self.transport = transport.get_name()
        if index == 0:
            self.phase = f"transporting via {self.transport}"
            self.ctx.events.publish(StatusEvent(self.session_id, self.state.value, self.phase))
        else:
            self._transition(SessionState.TRANSPORTING, f"failing over to {self.transport}")

    def _after_attempt(self, record: AttemptRecord) -> None:
        self._attempts.append(record)

    def snapshot(self) -> SessionSnapshot:
        return SessionSnapshot(
            session_id=self.session_id,
            role=self.role,
            state=self.state,
            phase=self.phase,
            mode=self.mode,
            transport=self.transport,
            attempts=tuple(self._attempts),
            metadata=self.metadata,
        )

    def result(self) -> SessionResult:
        return SessionResult(
            state=self.state,
            metadata=self.metadata,
            transport=self.transport if self.state is SessionState.COMPLETED else None,
            mode=self.mode,
            attempts=tuple(self._attempts),
            payload=self._payload,
        )

    # 主流程

    async def prepare(self) -> None:
        """Derive key, salt and rendezvous id from the code."""

        if self.state is not SessionState.IDLE:
            return
        security = self.ctx.security
        try:
            self.key, self.salt = await asyncio.to_thread(security.strengthen_code, self.code)
            self.transfer_id = await asyncio.to_thread(security.derive_transfer_id, self.code)
        except Exception as exc:
            self._end(SessionState.FAILED, str(exc))
            raise
        self._transition(SessionState.CODE_READY, "code ready")

    async def _classify(self) -> Optional[NetworkProfile]:
        profiler = self.ctx.profiler
        if profiler is None:
            return None
        self.profile = await profiler.classify()
        return self.profile

    def _network_type(self) -> NetworkType:
        return self.profile.network_type if self.profile else NetworkType.UNKNOWN

    def _choose_mode(self, payload_size: int) -> EncryptionMode:
        configured = self.ctx.cfg.security.mode
        if configured != "auto":
            return EncryptionMode.parse(configured)
        return self.ctx.security.select_mode(payload_size, self._network_type())

    async def send(self, data: bytes, file_name: str) -> SessionResult:
        if self.role != "send":
            raise RuntimeError("session was created for receiving")
        return await self._run(self._send_flow(data, file_name))

    async def receive(self) -> SessionResult:
        if self.role != "receive":
            raise RuntimeError("session was created for sending")
        return await self._run(self._receive_flow())

    async def _send_flow(self, data: bytes, file_name: str) -> None:
        await self.prepare()
        assert self.key is not None and self.transfer_id is not None
        self._transition(SessionState.NEGOTIATING, "probing network")
        await self._classify()
        self.mode = self._choose_mode(len(data))
        self.metadata = TransferMetadata(
            transfer_id=self.transfer_id,
            file_name=sanitize_filename(file_name),
            file_size=len(data),
            digest=compute_digest(data),
            mode=self.mode.value,
        )
        LOGGER.info(
            "sending %s (%s) with %s on %s network",
            self.metadata.file_name,
            format_size(len(data)),
            self.mode.display_name,
            self._network_type().value,
        )
        header = envelope.encode_header(self.metadata)
        ciphertext = await asyncio.to_thread(self.ctx.security.encrypt, data, self.key, self.mode, header)
        blob = envelope.pack(self.metadata, ciphertext, header=header)
        order = await self.ctx.manager.select_order(self.profile, len(blob))
        self._transition(SessionState.TRANSPORTING, "transporting")
        await self.ctx.manager.send_with_failover(
            blob,
            self.metadata,
            order=order,
            progress=self._progress,
            before_attempt=self._before_attempt,
            after_attempt=self._after_attempt,
        )
        # 发送方无需解密校验，直接通过
        self._transition(SessionState.VERIFYING, "delivered")
        self._transition(SessionState.COMPLETED, f"sent via {self.transport}")

    async def _receive_flow(self) -> None:
        await self.prepare()
        assert self.key is not None and self.transfer_id is not None
        self._transition(SessionState.NEGOTIATING, "probing network")
        await self._classify()
        order = await self.ctx.manager.select_order(self.profile, 0)
        self._transition(SessionState.TRANSPORTING, "waiting for sender")
        blob, record = await self.ctx.manager.receive_with_failover(
            TransferMetadata.placeholder(self.transfer_id),
            order=order,
            progress=self._progress,
            before_attempt=self._before_attempt,
            after_attempt=self._after_attempt,
        )
        self._transition(SessionState.VERIFYING, "verifying")
        metadata, header, ciphertext = envelope.unpack(blob)
        if metadata.transfer_id != self.transfer_id:
            raise IntegrityError("envelope belongs to a different transfer")
        self.metadata = metadata
        self.mode = EncryptionMode.parse(metadata.mode or self._choose_mode(metadata.file_size))
        expected = self._choose_mode(metadata.file_size)
        if expected is not self.mode:
            LOGGER.info("sender chose %s, local table gives %s", self.mode.value, expected.value)
        if not self.mode.authenticated and not self.ctx.cfg.security.allow_unauthenticated:
            raise IntegrityError(f"refusing unauthenticated mode {self.mode.display_name}")
        plaintext = await asyncio.to_thread(
            self.ctx.security.verify_integrity,
            ciphertext,
            self.key,
            self.mode,
            associated_data=header,
            expected_digest=metadata.digest,
        )
        if len(plaintext) != metadata.file_size:
            raise IntegrityError("payload size does not match header")
        self._payload = plaintext
        self._transition(SessionState.COMPLETED, f"received via {record.transport}")
        transport = self.ctx.registry.get(record.transport)
        if transport is not None:
            await transport.discard(self.transfer_id)

    async def _run(self, flow: Awaitable[None]) -> SessionResult:
        if self._runner is not None:
            raise RuntimeError("session already started")
        if self.state is SessionState.CANCELLED:
            raise TransferCancelledError("session was cancelled before it started")
        self.ctx.claim(self)
        self._runner = asyncio.create_task(flow)
        try:
            await self._runner
        except asyncio.CancelledError:
            self._end(SessionState.CANCELLED, "cancelled")
            if not self._cancel_requested:
                raise
            LOGGER.info("session %s cancelled", self.session_id)
        except Exception as exc:
            self._end(SessionState.FAILED, str(exc))
            LOGGER.error("session %s failed: %s", self.session_id, exc)
            raise
        finally:
            self.ctx.release(self)
        return self.result()

    async def cancel(self, grace: Optional[float] = None) -> SessionState:
        """Cancel the running transfer; returns the final state."""

        runner = self._runner
        if self.state.terminal:
            if runner is not None and not runner.done():
                # 已校验完成，只中止后端收尾，结果保持 completed
                self._cancel_requested = True
                runner.cancel()
            return self.state
        self._cancel_requested = True
        if runner is None or runner.done():
            self._end(SessionState.CANCELLED, "cancelled")
            return self.state
        runner.cancel()
        wait = self.ctx.cfg.transfer.cancel_grace_sec if grace is None else grace
        done, _ = await asyncio.wait({runner}, timeout=wait)
        if not done:
            LOGGER.warning("session %s backend did not stop within %.1fs", self.session_id, wait)
        self._end(SessionState.CANCELLED, "cancelled")
        return self.state
