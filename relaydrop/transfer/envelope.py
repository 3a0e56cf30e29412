"""Length-prefixed envelope carrying the transfer header and ciphertext."""

from __future__ import annotations

import json  # json 负责序列化头部
import struct  # struct 处理二进制长度

from ..constants import ENVELOPE_VERSION
from ..errors import IntegrityError
from ..transport.base import TransferMetadata

HEADER_LENGTH = struct.Struct(">I")
MAX_HEADER_SIZE = 64 * 1024


def encode_header(metadata: TransferMetadata) -> bytes:
    """序列化头部；这些字节同时作为 AEAD 关联数据。"""

    header = dict(metadata.to_header())
    header["version"] = ENVELOPE_VERSION
    # 紧凑且键有序，双方得到相同字节
    return json.dumps(header, separators=(",", ":"), sort_keys=True, ensure_ascii=False).encode("utf-8")


def pack(metadata: TransferMetadata, ciphertext: bytes, *, header: bytes | None = None) -> bytes:
    """打包为 长度头 + JSON 头部 + 密文。"""

    raw_header = header if header is not None else encode_header(metadata)
    return HEADER_LENGTH.pack(len(raw_header)) + raw_header + ciphertext


def unpack(blob: bytes) -> tuple[TransferMetadata, bytes, bytes]:
    """解析信封，返回 (元数据, 原始头部字节, 密文)。"""

    if len(blob) < HEADER_LENGTH.size:
        raise IntegrityError("envelope too short for header length")
    (length,) = HEADER_LENGTH.unpack_from(blob)
    # 长度为零或过大视为损坏
    if length <= 0 or length > MAX_HEADER_SIZE:
        raise IntegrityError(f"invalid envelope header length: {length}")
    end = HEADER_LENGTH.size + length
    if len(blob) < end:
        raise IntegrityError("envelope truncated inside header")
    raw_header = blob[HEADER_LENGTH.size : end]
    try:
        obj = json.loads(raw_header.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise IntegrityError("envelope header is not valid JSON") from exc
    if not isinstance(obj, dict):
        raise IntegrityError("envelope header must be an object")
    version = obj.pop("version", None)
    if version != ENVELOPE_VERSION:
        raise IntegrityError(f"unsupported envelope version: {version!r}")
    try:
        metadata = TransferMetadata.from_header(obj)
    except ValueError as exc:
        raise IntegrityError(str(exc)) from exc
    return metadata, raw_header, blob[end:]
