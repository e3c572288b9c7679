# -*- coding: utf-8 -*-
"""
快照客户端的工具函数
"""
import hashlib
import os
import tempfile
from pathlib import Path
from typing import Optional

from loguru import logger
from pydantic import ValidationError

from workers.schemas import DownloadState


def load_record(path: Path) -> Optional[DownloadState]:
    """读取持久化的下载记录，缺失或损坏时返回 None"""
    if not path.exists():
        return None
    try:
        return DownloadState.model_validate_json(path.read_text(encoding="utf-8"))
    except (OSError, ValueError, ValidationError) as e:
        logger.warning(f"下载记录损坏，将重新下载: {e}")
        return None


def save_record(path: Path, record: DownloadState) -> None:
    """原子写入下载记录并 fsync"""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(record.model_dump_json(indent=2))
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    except BaseException:
        if os.path.exists(tmp_path):
            os.remove(tmp_path)
        raise


def clear_record(path: Path) -> None:
    path.unlink(missing_ok=True)


def file_sha256(path: Path, chunk_size: int = 1024 * 1024) -> str:
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(chunk_size), b""):
            digest.update(chunk)
    return digest.hexdigest()


def dir_size(path: Path) -> int:
    total = 0
    for root, _dirs, files in os.walk(path):
        for name in files:
            try:
                total += os.lstat(os.path.join(root, name)).st_size
            except OSError:
                continue
    return total


def human_size(num_bytes: int) -> str:
    size = float(num_bytes)
    for unit in ("B", "K", "M", "G", "T"):
        if size < 1024 or unit == "T":
            return f"{size:.0f}{unit}" if unit == "B" else f"{size:.1f}{unit}"
        size /= 1024
    return f"{size:.1f}T"
