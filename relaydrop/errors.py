"""Error taxonomy shared by the relaydrop orchestration layer."""

from __future__ import annotations

from typing import TYPE_CHECKING, Sequence

if TYPE_CHECKING:  # pragma: no cover
    from .transport.manager import AttemptRecord


class RelayDropError(Exception):
    """Base class for every error raised by relaydrop."""


class WeakCodeError(RelayDropError, ValueError):
    """Raised when a transfer code is too short to stretch into a key."""


class ProbeTimeoutError(RelayDropError, TimeoutError):
    """A single reachability probe did not finish in time."""


class BackendUnavailableError(RelayDropError):
    """A transport backend cannot be used right now."""


class TransportError(RelayDropError):
    """Failure reported by one backend during a single attempt."""

    def __init__(self, transport: str, message: str) -> None:
        super().__init__(f"{transport}: {message}")
        self.transport = transport
        self.message = message


class SendFailure(TransportError):
    """A backend failed to deliver the payload."""


class ReceiveFailure(TransportError):
    """A backend failed to fetch the payload."""


class IntegrityError(RelayDropError):
    """Ciphertext failed authentication, padding, or digest checks."""


class AllTransportsExhaustedError(RelayDropError):
    """Every registered transport was attempted and none succeeded."""

    def __init__(self, attempts: Sequence["AttemptRecord"], direction: str = "send") -> None:
        self.attempts = tuple(attempts)
        self.direction = direction
        if self.attempts:
            last = self.attempts[-1]
            detail = f"last error from {last.transport}: {last.error}"
        else:
            detail = "no transports registered"
        super().__init__(
            f"all transports exhausted for {direction} after {len(self.attempts)} attempt(s); {detail}"
        )

    @property
    def last_error(self) -> str | None:
        if not self.attempts:
            return None
        return self.attempts[-1].error


class TransferCancelledError(RelayDropError):
    """The caller cancelled the transfer."""


class TransferInProgressError(RelayDropError):
    """Another session is already active for the same transfer code."""


class InvalidStateTransition(RelayDropError):
    """A session was asked to move backwards or sideways in its state machine."""
