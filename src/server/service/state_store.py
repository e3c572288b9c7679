# -*- coding: utf-8 -*-
"""
持久化状态存储

文件功能:
    - 以单个 JSON 文件保存 PersistentState（初始化标志、首次启动时间、累计运行时长、最近区块等）。
    - 每次 set/update 都在返回前完成落盘（写临时文件 -> fsync -> 原子替换），不做缓冲。
    - 写入经过单一互斥锁串行化；读取返回内存中的最新副本。

公开接口:
    - 类 StateStore
        - 方法: get(field) -> Any
        - 方法: set(field, value) -> None
        - 方法: update(**fields) -> PersistentState
        - 方法: snapshot() -> PersistentState
        - 方法: add_uptime(seconds) -> int
    - 函数 format_uptime(seconds) -> str

内部方法:
    - _load(): 读取状态文件，损坏或缺失时退回默认值
    - _flush(): 原子落盘
"""

from __future__ import annotations

import json
import os
import tempfile
import threading
from pathlib import Path
from typing import Any

from loguru import logger
from pydantic import ValidationError

from workers.schemas import PersistentState


class StateStore:
    """PersistentState 的唯一写入方"""

    def __init__(self, path: Path | str):
        self.path = Path(path)
        self._lock = threading.Lock()
        self._state = self._load()

    def _load(self) -> PersistentState:
        if not self.path.exists():
            return PersistentState()
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
            return PersistentState.model_validate(data)
        except (OSError, ValueError, ValidationError) as e:
            logger.bind(details=str(e)).warning(f"读取状态文件失败，使用默认状态: {self.path}")
            return PersistentState()

    def _flush(self, state: PersistentState) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=self.path.parent, prefix=f".{self.path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(state.model_dump_json(indent=2))
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise

    def snapshot(self) -> PersistentState:
        return self._state.model_copy()

    def get(self, field: str) -> Any:
        if field not in PersistentState.model_fields:
            raise KeyError(field)
        return getattr(self._state, field)

    def set(self, field: str, value: Any) -> None:
        self.update(**{field: value})

    def update(self, **fields: Any) -> PersistentState:
        unknown = set(fields) - set(PersistentState.model_fields)
        if unknown:
            raise KeyError(", ".join(sorted(unknown)))
        with self._lock:
            new_state = PersistentState.model_validate({**self._state.model_dump(), **fields})
            self._flush(new_state)
            # 落盘成功后才对读取方可见
            self._state = new_state
            return new_state

    def add_uptime(self, seconds: float) -> int:
        with self._lock:
            total = self._state.cumulative_uptime_seconds + max(0, int(seconds))
            new_state = self._state.model_copy(update={"cumulative_uptime_seconds": total})
            self._flush(new_state)
            self._state = new_state
            return total


def format_uptime(seconds: int) -> str:
    days = seconds // 86400
    hours = (seconds % 86400) // 3600
    minutes = (seconds % 3600) // 60
    if days > 0:
        return f"{days}d {hours}h {minutes}m"
    if hours > 0:
        return f"{hours}h {minutes}m"
    return f"{minutes}m"
