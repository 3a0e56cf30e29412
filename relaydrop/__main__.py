"""Command line entry point for relaydrop."""

from __future__ import annotations

import sys  # sys 用于访问 argv 与退出状态

from .cli import main as cli_main  # CLI 主函数
from .config import load_config
from .constants import DEFAULT_CONFIG_FILE
from .logging_setup import init_logging  # 初始化日志


def _config_path(argv: list[str]) -> str:
    """从参数中找出 --config，未指定时使用默认路径。"""
    for index, item in enumerate(argv):
        if item == "--config" and index + 1 < len(argv):
            return argv[index + 1]
        if item.startswith("--config="):
            return item.split("=", 1)[1]
    return DEFAULT_CONFIG_FILE


def main(argv: list[str] | None = None) -> int:
    """入口函数，供 python -m relaydrop 调用。"""
    args = list(sys.argv[1:] if argv is None else argv)
    try:
        cfg = load_config(_config_path(args))  # 尝试加载配置用于日志设定
        log_level = cfg.logging.level
        log_file = str(cfg.logging.file) if cfg.logging.file else None
    except Exception:  # noqa: BLE001
        log_level = "INFO"  # 配置加载失败时使用默认日志级别
        log_file = None
    quiet = "-q" in args or "--quiet" in args
    init_logging(log_level, log_file, quiet=quiet)
    return cli_main(args)


if __name__ == "__main__":
    sys.exit(main())  # 将返回值作为进程退出码
