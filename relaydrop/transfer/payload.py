"""Reading and writing single-file payloads."""

from __future__ import annotations

import logging
from pathlib import Path

import aiofiles  # aiofiles 支持异步文件读写
import aiofiles.os

from ..utils.pathing import safe_output_path

LOGGER = logging.getLogger(__name__)

READ_CHUNK = 1024 * 1024
_UNITS = ("B", "KiB", "MiB", "GiB", "TiB")


async def read_payload(path: Path | str, chunk_size: int = READ_CHUNK) -> bytes:
    """按块读取单个文件。"""

    source = Path(path)
    if not source.is_file():
        raise FileNotFoundError(f"payload not found: {source}")
    chunks: list[bytes] = []
    async with aiofiles.open(source, "rb") as handle:
        while True:
            chunk = await handle.read(chunk_size)
            if not chunk:
                break
            chunks.append(chunk)
    return b"".join(chunks)


async def write_payload(dest_dir: Path | str, file_name: str, data: bytes) -> Path:
    """先写 .part 再原子替换，返回最终路径。"""

    base = Path(dest_dir)
    await aiofiles.os.makedirs(base, exist_ok=True)
    target = safe_output_path(base, file_name)
    partial = target.with_name(target.name + ".part")
    async with aiofiles.open(partial, "wb") as handle:
        await handle.write(data)
    await aiofiles.os.replace(partial, target)
    LOGGER.info("saved %s (%s)", target, format_size(len(data)))
    return target


def format_size(num_bytes: int) -> str:
    size = float(num_bytes)
    for unit in _UNITS:
        if size < 1024 or unit == _UNITS[-1]:
            if unit == "B":
                return f"{int(size)} {unit}"
            return f"{size:.1f} {unit}"
        size /= 1024
    return f"{num_bytes} B"
