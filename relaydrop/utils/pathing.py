"""Path helpers for relaydrop."""

from __future__ import annotations

import re  # 正则用于清理文件名
from pathlib import Path  # Path 提供跨平台路径操作

_UNSAFE_CHARS = re.compile(r"[\x00-\x1f<>:\"/\\|?*]")
_RESERVED_NAMES = {"", ".", ".."}


def normalize_path(base: Path | str, p: Path | str) -> Path:
    """将输入路径规范化为绝对路径，相对路径以 base 为基准。"""
    candidate = Path(p).expanduser()  # 先展开用户目录以处理 ~
    if candidate.is_absolute():
        return candidate.resolve()
    return (Path(base).expanduser().resolve() / candidate).resolve()


def sanitize_filename(name: str, fallback: str = "received.bin") -> str:
    """去掉目录部分与危险字符，只保留可安全落盘的文件名。"""
    # 对端提供的名称可能带有 ../ 或 Windows 盘符
    leaf = name.replace("\\", "/").rsplit("/", 1)[-1]
    cleaned = _UNSAFE_CHARS.sub("_", leaf).strip().strip(".")
    if cleaned in _RESERVED_NAMES:
        return fallback
    return cleaned[:255]


def safe_output_path(dest_dir: Path | str, name: str) -> Path:
    """返回 dest_dir 下的目标路径，保证不会越出目标目录。"""
    base_path = Path(dest_dir).expanduser().resolve()
    target = (base_path / sanitize_filename(name)).resolve()
    try:
        target.relative_to(base_path)  # 不在 base 下会抛出 ValueError
    except ValueError as exc:
        raise ValueError(f"Path {target} escapes base {base_path}") from exc
    return target
