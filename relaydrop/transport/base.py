"""Capability contract every transport backend implements."""

from __future__ import annotations

import abc
import logging
from dataclasses import asdict, dataclass
from typing import Any, Callable, ClassVar, Optional

from ..config import TransportConfig
from ..security.engine import EncryptionMode

LOGGER = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], None]

__all__ = ["ProgressCallback", "TransferMetadata", "Transport", "TransportConfig"]


@dataclass(frozen=True, slots=True)
class TransferMetadata:
    """Describes one payload; immutable once a session starts."""

    transfer_id: str
    file_name: str
    file_size: int
    digest: str
    mode: Optional[str] = None

    def to_header(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_header(cls, header: dict[str, Any]) -> "TransferMetadata":
        try:
            return cls(
                transfer_id=str(header["transfer_id"]),
                file_name=str(header["file_name"]),
                file_size=int(header["file_size"]),
                digest=str(header["digest"]),
                mode=_header_mode(header.get("mode")),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise ValueError(f"invalid transfer header: {exc}") from exc

    @classmethod
    def placeholder(cls, transfer_id: str) -> "TransferMetadata":
        """Metadata known to a receiver before the header arrives."""

        return cls(transfer_id=transfer_id, file_name="", file_size=0, digest="")


def _header_mode(value: Any) -> Optional[str]:
    """Canonical mode value from a header; unknown modes are rejected."""

    if value is None:
        return None
    if not isinstance(value, str):
        raise ValueError(f"mode must be a string, got {type(value).__name__}")
    return EncryptionMode.parse(value).value


class Transport(abc.ABC):
    """Base class for backends that move an opaque envelope between peers.

    ``send`` and ``receive`` must be safe to call again after a failed
    attempt, and ``close`` must be safe even when ``setup`` never succeeded.
    Backends doing blocking work offload it with :func:`asyncio.to_thread`.
    """

    kind: ClassVar[str] = ""
    # Ports the backend needs; all unreachable means it is tried last.
    native_ports: tuple[int, ...] = ()
    max_payload_bytes: Optional[int] = None

    def __init__(self, name: str, priority: int) -> None:
        self._name = name
        self._priority = int(priority)
        self.config: Optional[TransportConfig] = None

    def get_name(self) -> str:
        return self._name

    def get_priority(self) -> int:
        return self._priority

    async def setup(self, config: TransportConfig) -> None:
        self.config = config

    @abc.abstractmethod
    async def send(
        self,
        payload: bytes,
        metadata: TransferMetadata,
        progress: Optional[ProgressCallback] = None,
    ) -> None:
        """Deliver ``payload`` for ``metadata.transfer_id``."""

    @abc.abstractmethod
    async def receive(
        self,
        metadata: TransferMetadata,
        progress: Optional[ProgressCallback] = None,
    ) -> bytes:
        """Fetch the payload published under ``metadata.transfer_id``."""

    async def is_available(self) -> bool:
        return True

    async def discard(self, transfer_id: str) -> None:
        """Drop anything the backend still holds for ``transfer_id``."""

        return None

    async def close(self) -> None:
        return None

    def report_progress(self, progress: Optional[ProgressCallback], done: int, total: int) -> None:
        """Forward progress to the callback passed with the current call."""

        if progress is None:
            return
        try:
            progress(done, total)
        except Exception:  # noqa: BLE001
            LOGGER.exception("progress callback failed for %s", self._name)

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self._name!r} priority={self._priority}>"
