"""Logging helper used by the relaydrop CLI."""

from __future__ import annotations

import logging  # 标准库 logging 提供日志框架
from pathlib import Path
from typing import Optional

from rich.logging import RichHandler  # RichHandler 提供彩色控制台输出

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
_VALID_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


def init_logging(level: str, logfile: Optional[str] = None, *, quiet: bool = False) -> None:
    """初始化日志系统，quiet 时控制台只显示警告及以上。"""
    resolved_level = (level or "INFO").upper()
    fallback = resolved_level not in _VALID_LEVELS
    if fallback:
        resolved_level = "INFO"
    console = RichHandler(rich_tracebacks=True, show_time=True, show_path=False)
    if quiet:
        console.setLevel(logging.WARNING)
    handlers: list[logging.Handler] = [console]
    if logfile:
        log_path = Path(logfile)
        log_path.parent.mkdir(parents=True, exist_ok=True)  # 父目录已存在时不报错
        handlers.append(logging.FileHandler(log_path, encoding="utf-8"))
    logging.basicConfig(
        level=getattr(logging, resolved_level),
        format=LOG_FORMAT,
        handlers=handlers,
        force=True,  # 多次调用时覆盖旧配置
    )
    if fallback:
        logging.getLogger(__name__).warning("Unsupported log level %r, fallback to INFO", level)
