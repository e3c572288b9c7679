# -*- coding: utf-8 -*-

"""
同步监控

文件功能:
    - 在节点处于 Starting/Syncing/Running 时，按固定间隔查询节点的头区块高度、目标高度与对等节点数，
      并把结果交给生命周期控制器更新状态。
    - 暂时性失败（超时、连接被拒绝）不会立刻进入 Error：连续失败达到阈值后才以最后一次错误信息进入 Error。
    - Starting 状态持续超过上限时进入 Error。

公开接口:
    - 类 SyncMonitor(PeriodicWorker)
        - 方法: tick() -> NodeStatus | None（协程）
        - 方法: reset()
"""

from __future__ import annotations

import asyncio
from typing import Optional

from loguru import logger

from service.errors import CallTimeoutError, NetworkTransientError
from workers.periodic import PeriodicWorker
from workers.schemas import ACTIVE_STATES, NodeStatus


class SyncMonitor(PeriodicWorker):
    name = "sync-monitor"

    def __init__(self, controller, query, interval: float = 5.0, failure_threshold: int = 3, query_timeout: float = 10.0):
        super().__init__(interval)
        self.controller = controller
        self.query = query
        self.failure_threshold = failure_threshold
        self.query_timeout = query_timeout
        self.consecutive_failures = 0
        self.last_error: Optional[str] = None
        self._last_target: Optional[int] = None

    def reset(self) -> None:
        self.consecutive_failures = 0
        self.last_error = None

    def _read_node(self) -> tuple[int, Optional[int], int]:
        current = self.query.get_head_block()
        peers = self.query.get_peer_count()
        try:
            target: Optional[int] = self.query.get_target_block(current)
            self._last_target = target
        except (NetworkTransientError, CallTimeoutError) as e:
            # 目标高度暂不可知时沿用上一次的结果，不计入失败次数
            logger.debug(f"获取目标高度失败: {e}")
            target = self._last_target
        return current, target, peers

    async def tick(self) -> Optional[NodeStatus]:
        status = self.controller.status
        if status.status not in ACTIVE_STATES:
            return None

        if self.controller.starting_timed_out():
            self.reset()
            return self.controller.fail(f"节点启动超过 {self.controller.starting_timeout:.0f}s 仍未就绪")

        try:
            current, target, peers = await asyncio.wait_for(
                asyncio.to_thread(self._read_node), timeout=self.query_timeout
            )
        except asyncio.TimeoutError:
            return self._on_failure(CallTimeoutError(f"节点查询超过 {self.query_timeout:.0f}s 未返回"))
        except (NetworkTransientError, CallTimeoutError) as e:
            return self._on_failure(e)

        self.reset()
        new = self.controller.apply_sync(current, target, peers)
        if new is not None:
            await asyncio.to_thread(self.controller.checkpoint, new)
        return new

    def _on_failure(self, error: Exception) -> Optional[NodeStatus]:
        self.consecutive_failures += 1
        self.last_error = str(error)
        logger.warning(
            f"节点查询失败 ({self.consecutive_failures}/{self.failure_threshold}): {error}"
        )
        if self.consecutive_failures >= self.failure_threshold:
            message = self.last_error
            self.reset()
            return self.controller.fail(message)
        return self.controller.publish_current()
