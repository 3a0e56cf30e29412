"""Local network classification used to bias transport ranking."""

from __future__ import annotations

import asyncio  # asyncio 驱动并发端口探测
import contextlib  # 安全关闭探测连接
import enum
import logging  # logging 输出探测日志
import os  # os.environ 用于检测代理
import socket  # socket.if_nameindex 枚举本地网卡
import time  # time 记录探测时间戳
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Iterable, Mapping

from ..config import ProfilerConfig
from ..errors import ProbeTimeoutError

LOGGER = logging.getLogger(__name__)

Connector = Callable[[str, int, float], Awaitable[bool]]

# 代理环境变量，按优先级排列
PROXY_ENV_VARS = ("ALL_PROXY", "all_proxy", "HTTPS_PROXY", "https_proxy", "HTTP_PROXY", "http_proxy")
# 移动网络网卡名称特征
MOBILE_INTERFACE_HINTS = ("wwan", "ppp", "rmnet", "cellular", "mobile", "lte", "3g", "4g", "5g")


class ProxyKind(str, enum.Enum):
    NONE = "none"
    SOCKS = "socks"
    HTTP = "http"


class NetworkType(str, enum.Enum):
    OPEN = "open"
    RESTRICTIVE = "restrictive"
    CORPORATE = "corporate"
    MOBILE = "mobile"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: "NetworkType | str") -> "NetworkType":
        """解析网络类型字符串，institutional/university 视为 corporate。"""

        if isinstance(value, cls):
            return value
        text = str(value).strip().lower()
        if text in {"institutional", "university"}:
            return cls.CORPORATE
        return cls(text)


@dataclass(frozen=True, slots=True)
class NetworkProfile:
    """单次探测得到的网络画像，每个会话重新生成。"""

    is_restrictive: bool
    reachable_ports: frozenset[int] = field(default_factory=frozenset)
    proxy_kind: ProxyKind = ProxyKind.NONE
    network_type: NetworkType = NetworkType.UNKNOWN
    probed_at: float = 0.0
    elapsed: float = 0.0

    def to_dict(self) -> dict:
        return {
            "is_restrictive": self.is_restrictive,
            "reachable_ports": sorted(self.reachable_ports),
            "proxy_kind": self.proxy_kind.value,
            "network_type": self.network_type.value,
            "probed_at": self.probed_at,
            "elapsed": round(self.elapsed, 3),
        }


async def tcp_connect(host: str, port: int, timeout: float) -> bool:
    """尝试建立 TCP 连接，成功后立即关闭。"""

    try:
        _, writer = await asyncio.wait_for(asyncio.open_connection(host=host, port=port), timeout=timeout)
    except asyncio.TimeoutError as exc:
        raise ProbeTimeoutError(f"{host}:{port} did not answer within {timeout:.1f}s") from exc
    except OSError:
        return False
    writer.close()
    with contextlib.suppress(Exception):
        await writer.wait_closed()
    return True


def list_interfaces() -> list[str]:
    """返回本地网卡名称列表，平台不支持时返回空列表。"""

    try:
        return [name for _, name in socket.if_nameindex()]
    except (AttributeError, OSError):
        return []


def detect_proxy(environ: Mapping[str, str]) -> ProxyKind:
    """根据环境变量判断代理类型。"""

    for name in PROXY_ENV_VARS:
        value = (environ.get(name) or "").strip().lower()
        if not value:
            continue
        if value.startswith("socks"):
            return ProxyKind.SOCKS
        return ProxyKind.HTTP
    return ProxyKind.NONE


def detect_mobile(interfaces: Iterable[str]) -> bool:
    for name in interfaces:
        lowered = name.lower()
        if any(hint in lowered for hint in MOBILE_INTERFACE_HINTS):
            return True
    return False


def classify_ports(
    reachable: frozenset[int],
    web_ports: Iterable[int],
    native_ports: Iterable[int],
) -> bool:
    """仅 Web 端口可达而原生端口全部不可达时视为受限网络。"""

    web = set(web_ports)
    native = set(native_ports)
    return bool(reachable & web) and not (reachable & native)


class NetworkProfiler:
    """探测本地网络的可达性并给出分类。"""

    def __init__(
        self,
        cfg: ProfilerConfig,
        *,
        connector: Connector | None = None,
        environ: Mapping[str, str] | None = None,
        interfaces: Callable[[], Iterable[str]] | None = None,
    ) -> None:
        self.cfg = cfg
        self._connector = connector or tcp_connect
        self._environ = environ if environ is not None else os.environ
        self._interfaces = interfaces or list_interfaces

    def _targets(self) -> list[tuple[str, int]]:
        ports = list(dict.fromkeys([*self.cfg.web_ports, *self.cfg.native_ports]))
        return [(host, port) for port in ports for host in self.cfg.probe_hosts]

    async def _probe(self, host: str, port: int, timeout: float) -> bool:
        """单个探测，超时或异常均视为不可达。"""

        try:
            return await self._connector(host, port, timeout)
        except ProbeTimeoutError as exc:
            LOGGER.debug("probe timeout: %s", exc)
            return False
        except Exception as exc:  # noqa: BLE001
            LOGGER.debug("probe %s:%s failed: %s", host, port, exc)
            return False

    async def classify(self, timeout: float | None = None) -> NetworkProfile:
        """并发探测所有目标，在共享截止时间内返回尽力而为的网络画像。"""

        budget = float(timeout if timeout is not None else self.cfg.timeout_sec)
        loop = asyncio.get_running_loop()
        started = loop.time()
        targets = self._targets()
        reachable: set[int] = set()
        if targets and budget > 0:
            tasks = {
                asyncio.create_task(self._probe(host, port, budget)): (host, port)
                for host, port in targets
            }
            done, pending = await asyncio.wait(tasks, timeout=budget)
            # 截止时间到达后取消尚未完成的探测，保证总延迟有界
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
            for task in done:
                if not task.cancelled() and task.exception() is None and task.result():
                    reachable.add(tasks[task][1])
            if pending:
                LOGGER.debug("%d probe(s) still pending at deadline, counted unreachable", len(pending))
        reachable_ports = frozenset(reachable)
        proxy_kind = detect_proxy(self._environ)
        is_mobile = detect_mobile(self._interfaces())
        is_restrictive = classify_ports(reachable_ports, self.cfg.web_ports, self.cfg.native_ports)
        if is_mobile:
            network_type = NetworkType.MOBILE
        elif is_restrictive and proxy_kind is not ProxyKind.NONE:
            network_type = NetworkType.CORPORATE
        elif is_restrictive:
            network_type = NetworkType.RESTRICTIVE
        elif not reachable_ports:
            network_type = NetworkType.UNKNOWN
        else:
            network_type = NetworkType.OPEN
        profile = NetworkProfile(
            is_restrictive=is_restrictive,
            reachable_ports=reachable_ports,
            proxy_kind=proxy_kind,
            network_type=network_type,
            probed_at=time.time(),
            elapsed=loop.time() - started,
        )
        LOGGER.info(
            "network classified as %s (restrictive=%s, proxy=%s, reachable=%s)",
            network_type.value,
            is_restrictive,
            proxy_kind.value,
            sorted(reachable_ports),
        )
        return profile
