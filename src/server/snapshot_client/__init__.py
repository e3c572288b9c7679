# -*- coding: utf-8 -*-
"""
快照客户端

负责链数据快照的获取：查找最新快照、可续传下载、校验与解压。

公开接口:
    - 类 SnapshotAcquirer
        - 方法: acquire(url, sha256=None) -> DownloadState
        - 方法: cancel(timeout=30.0) -> bool
        - 方法: data_ready() -> bool
        - 方法: extraction_incomplete() -> bool
        - 方法: current_record() -> DownloadState | None
    - 函数 resolve_latest_snapshot_url(index_url, timeout=30) -> str
"""
from .acquirer import SnapshotAcquirer
from .index import resolve_latest_snapshot_url

__all__ = ["SnapshotAcquirer", "resolve_latest_snapshot_url"]
