"""Command line interface for relaydrop."""

from __future__ import annotations

import argparse  # argparse 用于解析命令行参数
import asyncio  # asyncio 驱动会话
import json  # json 用于格式化输出
import logging  # logging 提供日志支持
import shutil  # shutil 负责复制文件
from pathlib import Path  # Path 便于处理文件系统
from typing import Iterable

from .app import AppContext
from .config import RelayDropConfig, load_config, parse_config
from .constants import DEFAULT_CONFIG_FILE, DEFAULT_CONFIG_SAMPLE
from .errors import (
    AllTransportsExhaustedError,
    IntegrityError,
    RelayDropError,
    TransferInProgressError,
    WeakCodeError,
)
from .net.classifier import guidance_for
from .net.profiler import NetworkProfile, NetworkProfiler
from .security.codes import generate_code, normalize_code
from .security.engine import describe_mode
from .transfer.events import ProgressEvent, StatusEvent
from .transfer.payload import format_size, read_payload, write_payload

LOGGER = logging.getLogger(__name__)  # 模块级日志记录器

# 退出码
EXIT_OK = 0
EXIT_CONFIG = 1
EXIT_WEAK_CODE = 2
EXIT_EXHAUSTED = 3
EXIT_INTEGRITY = 4
EXIT_CANCELLED = 130


def _load(args: argparse.Namespace) -> RelayDropConfig | None:
    """加载配置，文件不存在时回退到内置默认值。"""

    path = Path(args.config)
    try:
        if path.exists():
            return load_config(path)
        LOGGER.warning("%s not found, using built-in defaults without transports", path)
        return parse_config({})
    except Exception as exc:  # noqa: BLE001
        LOGGER.error("configuration error: %s", exc)
        return None


def _log_event(event: StatusEvent | ProgressEvent) -> None:
    if isinstance(event, StatusEvent):
        LOGGER.info("[%s] %s: %s", event.session_id, event.state, event.phase)
    elif event.total_bytes and event.bytes_transferred == event.total_bytes:
        LOGGER.info("[%s] transferred %s", event.session_id, format_size(event.total_bytes))


def _report_exhausted(exc: AllTransportsExhaustedError, profile: NetworkProfile | None) -> None:
    for record in exc.attempts:
        LOGGER.error("  %s: %s (%s)", record.transport, record.outcome, record.error or "-")
    if exc.last_error:
        network = profile.network_type if profile else None
        LOGGER.info("hint: %s", guidance_for(exc.last_error, network))


def command_init(args: argparse.Namespace) -> int:
    """处理 init 子命令。"""

    config_target = Path(DEFAULT_CONFIG_FILE)
    sample_path = Path(DEFAULT_CONFIG_SAMPLE)
    if not sample_path.exists():
        LOGGER.error("%s not found", DEFAULT_CONFIG_SAMPLE)
        return EXIT_CONFIG
    if config_target.exists() and not args.force:
        LOGGER.warning("%s already exists; use --force to overwrite", DEFAULT_CONFIG_FILE)
    else:
        shutil.copy2(sample_path, config_target)
        LOGGER.info("%s generated from sample", DEFAULT_CONFIG_FILE)
    try:
        cfg = load_config(config_target)
    except Exception as exc:  # noqa: BLE001
        LOGGER.error("failed to parse config: %s", exc)
        return EXIT_CONFIG
    cfg.transfer.receive_dir.mkdir(parents=True, exist_ok=True)
    for entry in cfg.transports:
        path = entry.options.get("path")
        if entry.kind == "folder" and path:
            Path(path).mkdir(parents=True, exist_ok=True)
            LOGGER.info("transport folder ready: %s -> %s", entry.name, path)
    return EXIT_OK


def command_check(args: argparse.Namespace) -> int:
    """校验配置并输出摘要。"""

    try:
        cfg = load_config(args.config)
    except FileNotFoundError as exc:
        LOGGER.error(str(exc))
        return EXIT_CONFIG
    except Exception as exc:  # noqa: BLE001
        LOGGER.error("configuration error: %s", exc)
        return EXIT_CONFIG
    print(f"Security context: {cfg.security.context} ({cfg.security.kdf_iterations} iterations)")
    if cfg.security.mode == "auto":
        print("Encryption mode: auto")
    else:
        info = describe_mode(cfg.security.mode)
        print(f"Encryption mode: {info.display_name} ({info.note})")
    print(f"Transports configured: {[entry.name for entry in cfg.transports]}")
    print("Configuration check passed.")
    return EXIT_OK


def command_code(args: argparse.Namespace) -> int:
    """生成一个新的传输码。"""

    print(generate_code(words=args.words))
    return EXIT_OK


async def _probe(cfg: RelayDropConfig, timeout: float | None) -> int:
    profile = await NetworkProfiler(cfg.profiler).classify(timeout)
    print(json.dumps(profile.to_dict(), indent=2, ensure_ascii=False))
    return EXIT_OK


def command_probe(args: argparse.Namespace) -> int:
    cfg = _load(args)
    if cfg is None:
        return EXIT_CONFIG
    return asyncio.run(_probe(cfg, args.timeout))


async def _list_transports(cfg: RelayDropConfig, as_json: bool = False) -> int:
    async with AppContext(cfg) as ctx:
        profile = await ctx.profiler.classify()
        order = await ctx.manager.select_order(profile)
        status = ctx.manager.transport_status()
        if as_json:
            print(json.dumps([status[t.get_name()] for t in order], indent=2, ensure_ascii=False))
            return EXIT_OK
        for rank, transport in enumerate(order, start=1):
            available = await transport.is_available()
            stats = status[transport.get_name()]
            print(
                f"{rank}. {transport.get_name()} (kind={transport.kind}, "
                f"priority={transport.get_priority()}, available={available}, "
                f"attempts={stats['attempts']}, successes={stats['successes']})"
            )
        if not order:
            print("No transports configured.")
    return EXIT_OK


def command_transports(args: argparse.Namespace) -> int:
    """按当前网络状况列出后端尝试顺序。"""

    cfg = _load(args)
    if cfg is None:
        return EXIT_CONFIG
    return asyncio.run(_list_transports(cfg, args.json))


async def _send(cfg: RelayDropConfig, source: Path, code: str) -> int:
    data = await read_payload(source)
    async with AppContext(cfg, logging.getLogger("relaydrop.app")) as ctx:
        ctx.events.add_listener(_log_event)
        session = ctx.create_session(code, role="send")
        try:
            result = await session.send(data, source.name)
        except WeakCodeError as exc:
            LOGGER.error("%s", exc)
            return EXIT_WEAK_CODE
        except AllTransportsExhaustedError as exc:
            LOGGER.error("%s", exc)
            _report_exhausted(exc, session.profile)
            return EXIT_EXHAUSTED
        if not result.completed:
            return EXIT_CANCELLED
        LOGGER.info("sent %s via %s using %s", source.name, result.transport, result.mode.display_name)
    return EXIT_OK


def command_send(args: argparse.Namespace) -> int:
    """发送单个文件。"""

    cfg = _load(args)
    if cfg is None:
        return EXIT_CONFIG
    source = Path(args.file)
    if not source.is_file():
        LOGGER.error("file not found: %s", source)
        return EXIT_CONFIG
    code = normalize_code(args.code) if args.code else generate_code()
    if not args.code:
        print(f"Transfer code: {code}")
    try:
        return asyncio.run(_send(cfg, source, code))
    except KeyboardInterrupt:
        LOGGER.info("send cancelled")
        return EXIT_CANCELLED
    except TransferInProgressError as exc:
        LOGGER.error("%s", exc)
        return EXIT_CONFIG


async def _receive(cfg: RelayDropConfig, code: str, out_dir: Path) -> int:
    async with AppContext(cfg, logging.getLogger("relaydrop.app")) as ctx:
        ctx.events.add_listener(_log_event)
        session = ctx.create_session(code, role="receive")
        try:
            result = await session.receive()
        except WeakCodeError as exc:
            LOGGER.error("%s", exc)
            return EXIT_WEAK_CODE
        except AllTransportsExhaustedError as exc:
            LOGGER.error("%s", exc)
            _report_exhausted(exc, session.profile)
            return EXIT_EXHAUSTED
        except IntegrityError as exc:
            LOGGER.error("payload rejected: %s", exc)
            return EXIT_INTEGRITY
        if not result.completed or result.payload is None or result.metadata is None:
            return EXIT_CANCELLED
        target = await write_payload(out_dir, result.metadata.file_name, result.payload)
        print(f"Saved {target}")
    return EXIT_OK


def command_receive(args: argparse.Namespace) -> int:
    """用传输码接收文件。"""

    cfg = _load(args)
    if cfg is None:
        return EXIT_CONFIG
    out_dir = Path(args.out) if args.out else cfg.transfer.receive_dir
    try:
        return asyncio.run(_receive(cfg, normalize_code(args.code), out_dir))
    except KeyboardInterrupt:
        LOGGER.info("receive cancelled")
        return EXIT_CANCELLED
    except RelayDropError as exc:
        LOGGER.error("%s", exc)
        return EXIT_CONFIG


def build_parser() -> argparse.ArgumentParser:
    """构建顶层解析器。"""

    parser = argparse.ArgumentParser(prog="relaydrop", description="Code-based secure file transfer")
    parser.add_argument("--config", default=DEFAULT_CONFIG_FILE, help="path to config file")
    parser.add_argument("-q", "--quiet", action="store_true", help="only show warnings and errors on the console")
    subparsers = parser.add_subparsers(dest="command", required=True)
    init_parser = subparsers.add_parser("init", help="create config.yaml from the sample")
    init_parser.add_argument("--force", action="store_true", help="overwrite existing config.yaml")
    init_parser.set_defaults(func=command_init)
    check_parser = subparsers.add_parser("check", help="validate config.yaml")
    check_parser.set_defaults(func=command_check)
    code_parser = subparsers.add_parser("code", help="generate a transfer code")
    code_parser.add_argument("--words", type=int, default=4, help="number of words")
    code_parser.set_defaults(func=command_code)
    probe_parser = subparsers.add_parser("probe", help="classify the local network")
    probe_parser.add_argument("--timeout", type=float, help="override probe deadline in seconds")
    probe_parser.set_defaults(func=command_probe)
    transports_parser = subparsers.add_parser("transports", help="show transport attempt order")
    transports_parser.add_argument("--json", action="store_true", help="print backend counters as JSON")
    transports_parser.set_defaults(func=command_transports)
    send_parser = subparsers.add_parser("send", help="send a file")
    send_parser.add_argument("file", help="file to send")
    send_parser.add_argument("--code", help="transfer code; generated when omitted")
    send_parser.set_defaults(func=command_send)
    receive_parser = subparsers.add_parser("receive", help="receive a file")
    receive_parser.add_argument("--code", required=True, help="transfer code from the sender")
    receive_parser.add_argument("--out", help="directory for the received file")
    receive_parser.set_defaults(func=command_receive)
    return parser


def main(argv: Iterable[str] | None = None) -> int:
    """CLI 主入口。"""

    parser = build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)
    handler = getattr(args, "func", None)
    if handler is None:
        parser.print_help()
        return 1
    return handler(args)
