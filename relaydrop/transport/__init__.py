"""Transport backends and the failover manager."""

from __future__ import annotations

from typing import Dict, Type

from ..config import TransportConfig
from .base import TransferMetadata, Transport
from .folder import FolderTransport
from .manager import AttemptRecord, RegistrationEntry, TransportManager, TransportRegistry, TransportStats

# 后端类型表，新增后端时在此登记
BACKENDS: Dict[str, Type[Transport]] = {
    FolderTransport.kind: FolderTransport,
}


def build_transport(config: TransportConfig) -> Transport:
    """根据配置实例化后端，setup 由调用方异步完成。"""

    backend_cls = BACKENDS.get(config.kind)
    if backend_cls is None:
        known = ", ".join(sorted(BACKENDS))
        raise ValueError(f"unknown transport kind {config.kind!r} for {config.name} (known: {known})")
    return backend_cls(config.name, config.priority)


__all__ = [
    "AttemptRecord",
    "BACKENDS",
    "FolderTransport",
    "RegistrationEntry",
    "TransferMetadata",
    "Transport",
    "TransportConfig",
    "TransportManager",
    "TransportRegistry",
    "TransportStats",
    "build_transport",
]
