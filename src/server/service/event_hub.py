# -*- coding: utf-8 -*-
"""
事件/日志中心

文件功能:
    - 提供按事件类型划分的发布/订阅通道（EventChannel），订阅者显式注册、显式注销。
    - 提供固定容量的环形日志缓冲区（EventHub），溢出时淘汰最旧的记录。
    - 作为 loguru 的 sink 接收全部日志，并广播 log_entry 事件。

公开接口:
    - 类 Subscription
        - 方法: get(timeout) -> tuple[str, Any] | None
    - 类 EventChannel
        - 方法: attach(subscription) / detach(subscription) / publish(payload)
    - 类 EventHub
        - 方法: append(entry) / get_all() -> tuple[LogEntry, ...] / clear() / sink(message)

内部方法:
    - _level_name(): loguru 级别名到 LogEntry 级别名的映射

公开接口的 pydantic 模型:
    - 使用 workers.schemas.LogEntry
"""

from __future__ import annotations

import queue
import threading
from collections import deque
from datetime import datetime
from typing import Any, Optional

from workers.schemas import LogEntry

LOG_ENTRY_EVENT = "log_entry"
LOGS_CLEARED_EVENT = "logs_cleared"


class Subscription:
    """一个订阅者的私有缓冲队列；队列满时丢弃新事件，不阻塞发布方"""

    def __init__(self, maxsize: int = 256):
        self._queue: queue.Queue = queue.Queue(maxsize=maxsize)
        self.dropped = 0

    def offer(self, event: str, payload: Any) -> None:
        try:
            self._queue.put_nowait((event, payload))
        except queue.Full:
            self.dropped += 1

    def get(self, timeout: Optional[float] = None) -> Optional[tuple[str, Any]]:
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None


class EventChannel:
    """单一事件类型的广播通道"""

    def __init__(self, name: str):
        self.name = name
        self._lock = threading.Lock()
        self._subscribers: list[Subscription] = []

    def attach(self, subscription: Subscription) -> Subscription:
        with self._lock:
            if subscription not in self._subscribers:
                self._subscribers.append(subscription)
        return subscription

    def detach(self, subscription: Subscription) -> None:
        with self._lock:
            if subscription in self._subscribers:
                self._subscribers.remove(subscription)

    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def publish(self, payload: Any) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        for sub in subscribers:
            sub.offer(self.name, payload)


def _level_name(name: str) -> str:
    if name == "WARNING":
        return "WARN"
    if name in ("DEBUG", "INFO", "ERROR"):
        return name
    if name == "CRITICAL":
        return "ERROR"
    # TRACE / SUCCESS 等 loguru 特有级别
    return "DEBUG" if name == "TRACE" else "INFO"


class EventHub:
    """线程安全的环形日志缓冲区 + log_entry / logs_cleared 两个广播通道"""

    def __init__(self, capacity: int = 1000):
        if capacity <= 0:
            raise ValueError("capacity 必须为正数")
        self.capacity = capacity
        self._lock = threading.Lock()
        self._entries: deque[LogEntry] = deque(maxlen=capacity)
        self.log_entry = EventChannel(LOG_ENTRY_EVENT)
        self.logs_cleared = EventChannel(LOGS_CLEARED_EVENT)

    def append(self, entry: LogEntry) -> None:
        with self._lock:
            self._entries.append(entry)
            # 与 clear 共用同一把锁，订阅者看到的追加与清空顺序和缓冲区一致
            self.log_entry.publish(entry)

    def get_all(self) -> tuple[LogEntry, ...]:
        with self._lock:
            return tuple(self._entries)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            # 在锁内广播，保证不会有追加操作插在清空与通知之间
            self.logs_cleared.publish(datetime.now().isoformat(timespec="milliseconds"))

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def sink(self, message) -> None:
        """loguru sink：logger.add(hub.sink, level="DEBUG")"""
        record = message.record
        details = record["extra"].get("details")
        entry = LogEntry(
            timestamp=record["time"].strftime("%Y-%m-%d %H:%M:%S.%f")[:-3],
            level=_level_name(record["level"].name),
            message=record["message"],
            details=None if details is None else str(details),
        )
        self.append(entry)
