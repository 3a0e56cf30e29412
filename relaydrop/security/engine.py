"""Key stretching and authenticated encryption for transfer payloads.

Both peers run the same code over the same inputs and land on the same key,
salt and encryption mode without a negotiation round trip:

* the transfer code is stretched with PBKDF2-HMAC-SHA256 under a salt that is
  itself derived from the code, so no random salt has to travel;
* per-layer keys come from HKDF-SHA256 with a salt derived from the input key;
* the mode is a lookup in a fixed table keyed by payload size, which the
  sender publishes in the transfer metadata.

Ciphertext layout is ``nonce || ciphertext || tag`` for the AEAD modes and
``iv || ciphertext`` for CBC.

CBC is kept for compatibility with older peers. It provides confidentiality
only: a flipped ciphertext bit is not detected unless it happens to corrupt
the padding. Callers that configure it are warned through the log and through
:func:`describe_mode`.
"""

from __future__ import annotations

import enum
import hashlib
import hmac
import logging
import os
from dataclasses import dataclass

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives import padding as sym_padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM, ChaCha20Poly1305
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from ..constants import DEFAULT_CONTEXT, DEFAULT_KDF_ITERATIONS, MIN_CODE_LENGTH
from ..errors import IntegrityError, WeakCodeError

LOGGER = logging.getLogger(__name__)

KEY_SIZE = 32
NONCE_SIZE = 12
TAG_SIZE = 16
BLOCK_SIZE = 16

# Changing any of these breaks compatibility with every deployed peer.
APP_CONSTANT = b"relaydrop-v1-2024"
SUBKEY_SALT_CONSTANT = b"relaydrop-v1-layer-salt"
SUBKEY_INFO = b"relaydrop-v1-layer-key"
TRANSFER_ID_CONTEXT = "transfer-id"

_MIB = 1024 * 1024
LARGE_PAYLOAD_BYTES = 100 * _MIB
MEDIUM_PAYLOAD_BYTES = 10 * _MIB


class EncryptionMode(str, enum.Enum):
    """Supported payload encryption modes."""

    CBC = "cbc"
    GCM = "gcm"
    CHACHA20 = "chacha20"
    HYBRID = "hybrid"

    @property
    def display_name(self) -> str:
        return _DISPLAY_NAMES[self]

    @property
    def authenticated(self) -> bool:
        return self is not EncryptionMode.CBC

    @classmethod
    def parse(cls, value: "EncryptionMode | str") -> "EncryptionMode":
        """Accept an enum member, its value, or its display name."""

        if isinstance(value, cls):
            return value
        text = str(value).strip().lower()
        for member in cls:
            if text in (member.value, member.display_name.lower()):
                return member
        raise ValueError(f"unknown encryption mode: {value!r}")


_DISPLAY_NAMES = {
    EncryptionMode.CBC: "AES-256-CBC",
    EncryptionMode.GCM: "AES-256-GCM",
    EncryptionMode.CHACHA20: "ChaCha20-Poly1305",
    EncryptionMode.HYBRID: "Hybrid-ChaCha20-AES-GCM",
}


@dataclass(frozen=True, slots=True)
class ModeInfo:
    """Human-facing description of what a mode does and does not guarantee."""

    mode: EncryptionMode
    display_name: str
    authenticated: bool
    layers: int
    note: str


def describe_mode(mode: EncryptionMode | str) -> ModeInfo:
    resolved = EncryptionMode.parse(mode)
    if resolved is EncryptionMode.CBC:
        note = "confidentiality only; tampering is not detected, padding is the only structural check"
    elif resolved is EncryptionMode.HYBRID:
        note = "two AEAD layers with independent keys; roughly twice the CPU cost"
    else:
        note = "authenticated encryption; any modification fails decryption"
    return ModeInfo(
        mode=resolved,
        display_name=resolved.display_name,
        authenticated=resolved.authenticated,
        layers=2 if resolved is EncryptionMode.HYBRID else 1,
        note=note,
    )


# Lower payload bound (exclusive) -> mode per network class. First match wins.
MODE_TABLE: tuple[tuple[int, dict[str, EncryptionMode]], ...] = (
    (
        LARGE_PAYLOAD_BYTES,
        {"institutional": EncryptionMode.GCM, "mobile": EncryptionMode.GCM, "open": EncryptionMode.GCM},
    ),
    (
        MEDIUM_PAYLOAD_BYTES,
        {"institutional": EncryptionMode.GCM, "mobile": EncryptionMode.GCM, "open": EncryptionMode.CHACHA20},
    ),
    (
        -1,
        {"institutional": EncryptionMode.GCM, "mobile": EncryptionMode.CHACHA20, "open": EncryptionMode.CHACHA20},
    ),
)

_INSTITUTIONAL_TYPES = {"corporate", "institutional", "university", "restrictive"}


def network_class(network_type: object) -> str:
    """Collapse a network type (enum or string) into a mode-table column."""

    text = str(getattr(network_type, "value", network_type) or "").strip().lower()
    if text in _INSTITUTIONAL_TYPES:
        return "institutional"
    if text == "mobile":
        return "mobile"
    return "open"


def compute_digest(data: bytes) -> str:
    """Return the ``sha256:<hex>`` digest carried in transfer metadata."""

    return f"sha256:{hashlib.sha256(data).hexdigest()}"


def derive_subkey(key: bytes) -> bytes:
    """Derive a layer key from ``key`` with HKDF-SHA256 and a deterministic salt."""

    salt = hashlib.sha256(key + SUBKEY_SALT_CONSTANT).digest()
    hkdf = HKDF(algorithm=hashes.SHA256(), length=KEY_SIZE, salt=salt, info=SUBKEY_INFO)
    return hkdf.derive(key)


class SecurityEngine:
    """Derive transfer keys and encrypt payloads in a peer-agreed way."""

    def __init__(
        self,
        *,
        iterations: int = DEFAULT_KDF_ITERATIONS,
        context: str = DEFAULT_CONTEXT,
    ) -> None:
        if iterations <= 0:
            raise ValueError("iterations must be positive")
        self.iterations = iterations
        self.context = context

    def strengthen_code(self, code: str, context: str | None = None) -> tuple[bytes, bytes]:
        """Stretch ``code`` into ``(key, salt)``.

        Raises :class:`WeakCodeError` before doing any hashing when the code is
        shorter than eight characters. Identical inputs give byte-identical
        outputs on every machine.
        """

        if len(code) < MIN_CODE_LENGTH:
            raise WeakCodeError(
                f"transfer code too short: minimum {MIN_CODE_LENGTH} characters required"
            )
        ctx = self.context if context is None else context
        secret = (code + ctx).encode("utf-8")
        salt = hashlib.sha256(code.encode("utf-8") + ctx.encode("utf-8") + APP_CONSTANT).digest()
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=KEY_SIZE,
            salt=salt,
            iterations=self.iterations,
        )
        return kdf.derive(secret), salt

    def derive_transfer_id(self, code: str) -> str:
        """Rendezvous identifier for ``code``; safe to write on shared media."""

        key, _ = self.strengthen_code(code, TRANSFER_ID_CONTEXT)
        return key[:16].hex()

    def select_mode(self, payload_size: int, network_type: object = "open") -> EncryptionMode:
        if payload_size < 0:
            raise ValueError("payload_size must not be negative")
        column = network_class(network_type)
        for lower_bound, row in MODE_TABLE:
            if payload_size > lower_bound:
                return row[column]
        raise AssertionError("mode table must end with a catch-all row")

    def encrypt(
        self,
        data: bytes,
        key: bytes,
        mode: EncryptionMode | str,
        associated_data: bytes | None = None,
    ) -> bytes:
        resolved = EncryptionMode.parse(mode)
        _check_key(key)
        if resolved is EncryptionMode.GCM:
            return _seal(AESGCM(derive_subkey(key)), data, associated_data)
        if resolved is EncryptionMode.CHACHA20:
            return _seal(ChaCha20Poly1305(derive_subkey(key)), data, associated_data)
        if resolved is EncryptionMode.HYBRID:
            key1 = derive_subkey(key)
            key2 = derive_subkey(key1)
            inner = _seal(ChaCha20Poly1305(key1), data, associated_data)
            return _seal(AESGCM(key2), inner, associated_data)
        LOGGER.warning("encrypting with %s: payload is not authenticated", resolved.display_name)
        return _cbc_encrypt(derive_subkey(key), data)

    def decrypt(
        self,
        ciphertext: bytes,
        key: bytes,
        mode: EncryptionMode | str,
        associated_data: bytes | None = None,
    ) -> bytes:
        resolved = EncryptionMode.parse(mode)
        _check_key(key)
        if resolved is EncryptionMode.GCM:
            return _open(AESGCM(derive_subkey(key)), ciphertext, associated_data)
        if resolved is EncryptionMode.CHACHA20:
            return _open(ChaCha20Poly1305(derive_subkey(key)), ciphertext, associated_data)
        if resolved is EncryptionMode.HYBRID:
            key1 = derive_subkey(key)
            key2 = derive_subkey(key1)
            inner = _open(AESGCM(key2), ciphertext, associated_data)
            return _open(ChaCha20Poly1305(key1), inner, associated_data)
        return _cbc_decrypt(derive_subkey(key), ciphertext)

    def check_structure(self, ciphertext: bytes, mode: EncryptionMode | str) -> None:
        """Cheap shape check run before decryption."""

        resolved = EncryptionMode.parse(mode)
        if resolved is EncryptionMode.CBC:
            if len(ciphertext) < 2 * BLOCK_SIZE or len(ciphertext) % BLOCK_SIZE:
                raise IntegrityError("CBC ciphertext is not block aligned")
            return
        layers = 2 if resolved is EncryptionMode.HYBRID else 1
        if len(ciphertext) < layers * (NONCE_SIZE + TAG_SIZE):
            raise IntegrityError("ciphertext too short")

    def verify_integrity(
        self,
        ciphertext: bytes,
        key: bytes,
        mode: EncryptionMode | str,
        *,
        associated_data: bytes | None = None,
        expected_digest: str | None = None,
    ) -> bytes:
        """Decrypt and verify ``ciphertext``, returning the plaintext.

        For the AEAD modes a successful decryption is the integrity proof. For
        CBC this degrades to the structural check plus padding validation,
        which is not a cryptographic guarantee. ``expected_digest`` adds a
        plaintext digest comparison; it only catches accidents, since whoever
        can rewrite the ciphertext can usually rewrite the digest too.
        """

        self.check_structure(ciphertext, mode)
        plaintext = self.decrypt(ciphertext, key, mode, associated_data)
        if expected_digest is not None:
            actual = compute_digest(plaintext)
            if not hmac.compare_digest(actual, expected_digest):
                raise IntegrityError("payload digest mismatch")
        return plaintext


def _check_key(key: bytes) -> None:
    if len(key) != KEY_SIZE:
        raise ValueError(f"key must be {KEY_SIZE} bytes, got {len(key)}")


def _seal(aead: AESGCM | ChaCha20Poly1305, data: bytes, associated_data: bytes | None) -> bytes:
    nonce = os.urandom(NONCE_SIZE)
    return nonce + aead.encrypt(nonce, data, associated_data)


def _open(aead: AESGCM | ChaCha20Poly1305, blob: bytes, associated_data: bytes | None) -> bytes:
    if len(blob) < NONCE_SIZE + TAG_SIZE:
        raise IntegrityError("ciphertext too short")
    nonce, body = blob[:NONCE_SIZE], blob[NONCE_SIZE:]
    try:
        return aead.decrypt(nonce, body, associated_data)
    except InvalidTag as exc:
        raise IntegrityError("authentication failed: wrong key or tampered payload") from exc


def _cbc_encrypt(key: bytes, data: bytes) -> bytes:
    iv = os.urandom(BLOCK_SIZE)
    padder = sym_padding.PKCS7(BLOCK_SIZE * 8).padder()
    padded = padder.update(data) + padder.finalize()
    encryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).encryptor()
    return iv + encryptor.update(padded) + encryptor.finalize()


def _cbc_decrypt(key: bytes, blob: bytes) -> bytes:
    if len(blob) < 2 * BLOCK_SIZE or len(blob) % BLOCK_SIZE:
        raise IntegrityError("CBC ciphertext is not block aligned")
    iv, body = blob[:BLOCK_SIZE], blob[BLOCK_SIZE:]
    decryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).decryptor()
    padded = decryptor.update(body) + decryptor.finalize()
    unpadder = sym_padding.PKCS7(BLOCK_SIZE * 8).unpadder()
    try:
        return unpadder.update(padded) + unpadder.finalize()
    except ValueError as exc:
        raise IntegrityError("invalid padding") from exc
