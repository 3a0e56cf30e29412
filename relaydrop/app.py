"""Application context for the relaydrop runtime."""

from __future__ import annotations

import asyncio  # asyncio 用于会话取消
import logging  # logging 提供日志对象
from typing import Dict, List, Optional

from .config import RelayDropConfig
from .errors import TransferInProgressError
from .net.profiler import NetworkProfiler
from .security.codes import normalize_code
from .security.engine import SecurityEngine
from .transfer.events import EventBus
from .transfer.session import TransferSession
from .transport import TransportManager, TransportRegistry, build_transport


class AppContext:
    """封装一次运行共享的资源，会话通过它获取依赖。"""

    def __init__(
        self,
        cfg: RelayDropConfig,
        logger: Optional[logging.Logger] = None,
        *,
        profiler: Optional[NetworkProfiler] = None,
        security: Optional[SecurityEngine] = None,
        events: Optional[EventBus] = None,
    ) -> None:
        self.cfg = cfg
        self.logger = logger or logging.getLogger("relaydrop")
        self.security = security or SecurityEngine(
            iterations=cfg.security.kdf_iterations,
            context=cfg.security.context,
        )
        self.profiler = profiler if profiler is not None else NetworkProfiler(cfg.profiler)
        self.events = events or EventBus(cfg.transfer.event_queue_size)
        self.registry = TransportRegistry()
        self.manager = TransportManager(
            self.registry,
            attempt_timeout=cfg.transfer.attempt_timeout_sec,
            overall_timeout=cfg.transfer.overall_timeout_sec,
        )
        # 活跃会话表，键为规范化后的传输码
        self._active: Dict[str, TransferSession] = {}

    async def start(self) -> None:
        """按配置构建并初始化后端，之后冻结注册表。"""

        if self.registry.frozen:
            return
        for entry in self.cfg.transports:
            transport = build_transport(entry)
            try:
                await transport.setup(entry)
            except Exception as exc:  # noqa: BLE001
                # setup 失败的后端仍然登记，排序时会被推到最后
                self.logger.warning("transport %s setup failed: %s", entry.name, exc)
            self.registry.register(transport)
        self.registry.freeze()
        self.logger.debug("registered transports: %s", [t.get_name() for t in self.registry])

    def create_session(self, code: str, role: str = "send") -> TransferSession:
        """创建会话；同一传输码只允许一个活跃会话。"""

        key = normalize_code(code)
        if key in self._active:
            raise TransferInProgressError(f"a transfer is already running for this code ({key[:3]}...)")
        # 派生密钥与活跃表使用同一规范化形式
        return TransferSession(self, key, role=role)

    def claim(self, session: TransferSession) -> None:
        key = normalize_code(session.code)
        current = self._active.get(key)
        if current is not None and current is not session:
            raise TransferInProgressError(f"a transfer is already running for this code ({key[:3]}...)")
        self._active[key] = session

    def release(self, session: TransferSession) -> None:
        key = normalize_code(session.code)
        if self._active.get(key) is session:
            del self._active[key]

    def active_sessions(self) -> List[TransferSession]:
        return list(self._active.values())

    async def close(self) -> None:
        """取消所有活跃会话并关闭后端。"""

        sessions = self.active_sessions()
        if sessions:
            await asyncio.gather(*(session.cancel() for session in sessions), return_exceptions=True)
        for name, stats in self.manager.transport_status().items():
            if stats["attempts"]:
                self.logger.debug("transport %s: %s", name, stats)
        await self.manager.close_all()

    async def __aenter__(self) -> "AppContext":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()
