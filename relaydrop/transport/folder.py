"""Shared-directory transport backend."""

from __future__ import annotations

import asyncio
import json
import logging
import os
from pathlib import Path
from typing import Optional

import aiofiles  # aiofiles 支持异步文件读写
import aiofiles.os

from ..config import TransportConfig
from ..errors import BackendUnavailableError, ReceiveFailure, SendFailure
from .base import ProgressCallback, Transport, TransferMetadata

LOGGER = logging.getLogger(__name__)

CHUNK_SIZE = 1024 * 1024
DEFAULT_POLL_INTERVAL = 0.5


class FolderTransport(Transport):
    """Hand the envelope over through a directory both peers can reach.

    The sender writes ``<id>.part``, renames it to ``<id>.bin`` and only then
    drops the ``<id>.ready`` marker, so a receiver never sees a half-written
    payload. The receiver polls for the marker until the attempt times out.
    """

    kind = "folder"

    def __init__(self, name: str, priority: int) -> None:
        super().__init__(name, priority)
        self.root: Optional[Path] = None
        self.poll_interval = DEFAULT_POLL_INTERVAL
        self.consume = True

    async def setup(self, config: TransportConfig) -> None:
        await super().setup(config)
        raw_path = config.options.get("path")
        if not raw_path:
            raise BackendUnavailableError(f"transport {self.get_name()} is not configured: options.path missing")
        self.root = Path(raw_path).expanduser()
        self.poll_interval = float(config.options.get("poll_interval_sec", DEFAULT_POLL_INTERVAL))
        self.consume = bool(config.options.get("consume", True))
        if config.options.get("create", True):
            await asyncio.to_thread(self.root.mkdir, parents=True, exist_ok=True)
        if "max_payload_mb" in config.options:
            self.max_payload_bytes = int(float(config.options["max_payload_mb"]) * 1024 * 1024)

    def _paths(self, transfer_id: str) -> tuple[Path, Path, Path]:
        if self.root is None:
            raise BackendUnavailableError(f"transport {self.get_name()} is not set up")
        base = self.root / transfer_id
        return base.with_suffix(".part"), base.with_suffix(".bin"), base.with_suffix(".ready")

    async def is_available(self) -> bool:
        if self.root is None:
            return False
        return await asyncio.to_thread(_writable_dir, self.root)

    async def send(
        self,
        payload: bytes,
        metadata: TransferMetadata,
        progress: Optional[ProgressCallback] = None,
    ) -> None:
        part, final, ready = self._paths(metadata.transfer_id)
        total = len(payload)
        try:
            # 重试时先撤掉旧的就绪标记
            if await aiofiles.os.path.exists(ready):
                await aiofiles.os.remove(ready)
            async with aiofiles.open(part, "wb") as handle:
                done = 0
                for offset in range(0, total, CHUNK_SIZE):
                    chunk = payload[offset : offset + CHUNK_SIZE]
                    await handle.write(chunk)
                    done += len(chunk)
                    self.report_progress(progress, done, total)
            await aiofiles.os.replace(part, final)
            marker = json.dumps({"size": total, "transfer_id": metadata.transfer_id})
            async with aiofiles.open(ready, "w", encoding="utf-8") as handle:
                await handle.write(marker)
        except OSError as exc:
            raise SendFailure(self.get_name(), str(exc)) from exc
        if total == 0:
            self.report_progress(progress, 0, 0)
        LOGGER.debug("%s published %d bytes at %s", self.get_name(), total, final)

    async def receive(
        self,
        metadata: TransferMetadata,
        progress: Optional[ProgressCallback] = None,
    ) -> bytes:
        _, final, ready = self._paths(metadata.transfer_id)
        while not await aiofiles.os.path.exists(ready):
            await asyncio.sleep(self.poll_interval)
        try:
            async with aiofiles.open(ready, "r", encoding="utf-8") as handle:
                marker = json.loads(await handle.read() or "{}")
            expected = int(marker.get("size", -1))
            chunks: list[bytes] = []
            done = 0
            async with aiofiles.open(final, "rb") as handle:
                while True:
                    chunk = await handle.read(CHUNK_SIZE)
                    if not chunk:
                        break
                    chunks.append(chunk)
                    done += len(chunk)
                    self.report_progress(progress, done, max(expected, done))
        except (OSError, ValueError) as exc:
            raise ReceiveFailure(self.get_name(), str(exc)) from exc
        data = b"".join(chunks)
        if expected >= 0 and len(data) != expected:
            raise ReceiveFailure(self.get_name(), f"short read: {len(data)} of {expected} bytes")
        return data

    async def discard(self, transfer_id: str) -> None:
        """Remove files for ``transfer_id`` once the payload was verified."""

        if not self.consume or self.root is None:
            return
        for path in self._paths(transfer_id):
            try:
                await aiofiles.os.remove(path)
            except FileNotFoundError:
                continue
            except OSError as exc:
                LOGGER.warning("%s could not remove %s: %s", self.get_name(), path, exc)


def _writable_dir(path: Path) -> bool:
    return path.is_dir() and os.access(path, os.W_OK | os.R_OK)
