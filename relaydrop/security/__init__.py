"""Key derivation and payload encryption for relaydrop."""

from .codes import generate_code, normalize_code
from .engine import EncryptionMode, ModeInfo, SecurityEngine, compute_digest, describe_mode

__all__ = [
    "EncryptionMode",
    "ModeInfo",
    "SecurityEngine",
    "compute_digest",
    "describe_mode",
    "generate_code",
    "normalize_code",
]
