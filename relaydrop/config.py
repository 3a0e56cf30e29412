"""Configuration loading and validation for relaydrop."""

from __future__ import annotations

from dataclasses import dataclass, field  # dataclass 用于定义结构化配置对象
from pathlib import Path  # Path 提供跨平台路径处理
from typing import Any, Dict, List

import yaml  # PyYAML 用于解析配置文件

from .constants import (
    DEFAULT_CONFIG_FILE,
    DEFAULT_CONTEXT,
    DEFAULT_KDF_ITERATIONS,
    DEFAULT_RECEIVE_DIR,
)
from .utils.pathing import normalize_path  # 路径归一化

MODE_CHOICES = {"auto", "cbc", "gcm", "chacha20", "hybrid"}
LEVEL_CHOICES = {"debug", "info", "warning", "error", "critical"}


@dataclass(slots=True)
class ProfilerConfig:
    """网络探测参数。"""

    timeout_sec: float = 3.0  # 全部探测共享的截止时间
    probe_hosts: List[str] = field(default_factory=lambda: ["1.1.1.1", "8.8.8.8"])  # 探测目标主机
    web_ports: List[int] = field(default_factory=lambda: [80, 443])  # Web 端口
    native_ports: List[int] = field(default_factory=lambda: [9009, 9010, 9050, 6881])  # 后端原生端口


@dataclass(slots=True)
class SecurityConfig:
    """密钥派生与加密模式配置。"""

    context: str = DEFAULT_CONTEXT  # 派生上下文，双方必须一致
    kdf_iterations: int = DEFAULT_KDF_ITERATIONS  # PBKDF2 迭代次数
    mode: str = "auto"  # auto 表示查表选择
    allow_unauthenticated: bool = False  # 是否允许 CBC 这类无认证模式


@dataclass(slots=True)
class TransferConfig:
    """传输编排行为配置。"""

    attempt_timeout_sec: float = 120.0  # 单个后端尝试的超时
    overall_timeout_sec: float = 600.0  # 整体故障转移上限
    cancel_grace_sec: float = 5.0  # 取消后等待后端退出的宽限期
    receive_dir: Path = Path(DEFAULT_RECEIVE_DIR)  # 接收文件目录
    event_queue_size: int = 256  # 事件订阅队列长度


@dataclass(slots=True)
class TransportConfig:
    """单个传输后端的注册配置。"""

    name: str  # 后端名称，全局唯一
    kind: str  # 后端类型，对应 BACKENDS 表
    priority: int  # 数值越小越先尝试
    timeout_sec: float | None = None  # 覆盖默认单次超时
    options: Dict[str, Any] = field(default_factory=dict)  # 后端私有参数


@dataclass(slots=True)
class LoggingConfig:
    """日志配置。"""

    level: str = "info"  # 日志级别
    file: Path | None = None  # 日志文件


@dataclass(slots=True)
class RelayDropConfig:
    """聚合所有配置段的顶层对象。"""

    profiler: ProfilerConfig = field(default_factory=ProfilerConfig)
    security: SecurityConfig = field(default_factory=SecurityConfig)
    transfer: TransferConfig = field(default_factory=TransferConfig)
    transports: List[TransportConfig] = field(default_factory=list)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    source: Path | None = None  # 配置文件路径，用于解析相对路径


def _load_yaml(path: Path) -> dict:
    """辅助函数：读取 YAML 文件并返回字典。"""
    with path.open("r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}  # 空文件回退为空字典
    if not isinstance(data, dict):
        raise ValueError("Configuration root must be a mapping")
    return data


def _int_list(values: Any, field_name: str) -> List[int]:
    if not isinstance(values, list):
        raise ValueError(f"{field_name} must be a list")
    result = [int(v) for v in values]
    for port in result:
        if port <= 0 or port > 65535:
            raise ValueError(f"{field_name} entries must be in 1-65535")
    return result


def _parse_transports(entries: Any, base: Path) -> List[TransportConfig]:
    """解析 transports 列表，名称必须唯一。"""
    if not isinstance(entries, list):
        raise ValueError("transports must be a list")
    result: List[TransportConfig] = []
    seen: set[str] = set()
    for entry in entries:
        if not isinstance(entry, dict):
            raise ValueError("each transport must be a mapping")
        name = (entry.get("name") or "").strip()
        if not name:
            raise ValueError("Transport name cannot be empty")
        if name in seen:
            raise ValueError(f"Duplicate transport name: {name}")
        seen.add(name)
        kind = (entry.get("kind") or "").strip().lower()
        if not kind:
            raise ValueError(f"Transport {name} is missing kind")
        timeout = entry.get("timeout_sec")
        if timeout is not None and float(timeout) <= 0:
            raise ValueError(f"Transport {name} timeout_sec must be positive")
        options = dict(entry.get("options") or {})
        if "path" in options:  # 相对路径以配置文件所在目录为基准
            options["path"] = normalize_path(base, options["path"])
        result.append(
            TransportConfig(
                name=name,
                kind=kind,
                priority=int(entry.get("priority", 100)),
                timeout_sec=float(timeout) if timeout is not None else None,
                options=options,
            )
        )
    return result


def parse_config(raw: dict, base: Path | str = ".") -> RelayDropConfig:
    """将原始字典转换为配置对象并校验。"""
    base_path = Path(base)
    profiler_raw = raw.get("profiler") or {}
    security_raw = raw.get("security") or {}
    transfer_raw = raw.get("transfer") or {}
    logging_raw = raw.get("logging") or {}
    defaults = ProfilerConfig()
    profiler = ProfilerConfig(
        timeout_sec=float(profiler_raw.get("timeout_sec", defaults.timeout_sec)),
        probe_hosts=[str(h) for h in profiler_raw.get("probe_hosts", defaults.probe_hosts)],
        web_ports=_int_list(profiler_raw.get("web_ports", defaults.web_ports), "profiler.web_ports"),
        native_ports=_int_list(profiler_raw.get("native_ports", defaults.native_ports), "profiler.native_ports"),
    )
    security = SecurityConfig(
        context=str(security_raw.get("context", DEFAULT_CONTEXT)),
        kdf_iterations=int(security_raw.get("kdf_iterations", DEFAULT_KDF_ITERATIONS)),
        mode=(security_raw.get("mode", "auto") or "auto").lower(),
        allow_unauthenticated=bool(security_raw.get("allow_unauthenticated", False)),
    )
    transfer = TransferConfig(
        attempt_timeout_sec=float(transfer_raw.get("attempt_timeout_sec", 120.0)),
        overall_timeout_sec=float(transfer_raw.get("overall_timeout_sec", 600.0)),
        cancel_grace_sec=float(transfer_raw.get("cancel_grace_sec", 5.0)),
        receive_dir=normalize_path(base_path, transfer_raw.get("receive_dir", DEFAULT_RECEIVE_DIR)),
        event_queue_size=int(transfer_raw.get("event_queue_size", 256)),
    )
    logging_config = LoggingConfig(
        level=(logging_raw.get("level", "info") or "info").lower(),
        file=normalize_path(base_path, logging_raw["file"]) if logging_raw.get("file") else None,
    )
    config = RelayDropConfig(
        profiler=profiler,
        security=security,
        transfer=transfer,
        transports=_parse_transports(raw.get("transports") or [], base_path),
        logging=logging_config,
    )
    # 校验数值范围
    if config.profiler.timeout_sec <= 0:
        raise ValueError("profiler.timeout_sec must be positive")
    if not config.profiler.probe_hosts:
        raise ValueError("profiler.probe_hosts must contain at least one host")
    if not config.security.context:
        raise ValueError("security.context cannot be empty")
    if config.security.kdf_iterations < 10_000:
        raise ValueError("security.kdf_iterations must be at least 10000")
    if config.security.mode not in MODE_CHOICES:
        raise ValueError("security.mode must be one of auto/cbc/gcm/chacha20/hybrid")
    if config.security.mode == "cbc" and not config.security.allow_unauthenticated:
        raise ValueError("security.mode cbc is unauthenticated; set allow_unauthenticated: true to use it")
    if config.transfer.attempt_timeout_sec <= 0:
        raise ValueError("transfer.attempt_timeout_sec must be positive")
    if config.transfer.overall_timeout_sec < config.transfer.attempt_timeout_sec:
        raise ValueError("transfer.overall_timeout_sec must be >= attempt_timeout_sec")
    if config.transfer.cancel_grace_sec < 0:
        raise ValueError("transfer.cancel_grace_sec must not be negative")
    if config.transfer.event_queue_size <= 0:
        raise ValueError("transfer.event_queue_size must be positive")
    if config.logging.level not in LEVEL_CHOICES:
        raise ValueError("logging.level must be one of debug/info/warning/error/critical")
    return config


def load_config(config_path: str | Path = DEFAULT_CONFIG_FILE) -> RelayDropConfig:
    """加载并校验配置文件。"""
    path = Path(config_path).expanduser().resolve()
    if not path.exists():
        raise FileNotFoundError(f"Config file {path} not found")
    config = parse_config(_load_yaml(path), path.parent)
    config.source = path
    return config
