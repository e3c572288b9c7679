# -*- coding: utf-8 -*-

"""
生命周期控制器

文件功能:
    - 通过外部编排引擎启动/停止/重启整套节点服务，并持有节点状态机。
    - 状态快照（NodeStatus）只会被整体替换；读取方无锁获取最近一次计算的结果。
    - 启动/停止/重启在同一把转换锁上完全串行化；并发的重复调用直接返回当前状态，不会再次调用引擎。

状态机:
    Stopped -> Starting -> (Syncing | Running | Error)
    Syncing -> Running；Starting/Syncing/Running -> Stopping -> Stopped
    Starting/Syncing/Running -> Error（查询失败超过阈值、启动超时）；Error -> Starting（重试）

公开接口:
    - 类 LifecycleController
        - 属性: status -> NodeStatus
        - 方法: start() / stop() / restart() -> NodeStatus（协程）
        - 方法: apply_sync(current_block, target_block, peers_count) -> NodeStatus | None
        - 方法: fail(message) -> NodeStatus | None
        - 方法: checkpoint(status)：同步检查点落盘（阻塞，需在线程池中调用）
        - 方法: publish_current() / starting_timed_out() / attach_monitor(monitor)
    - 函数 compute_sync_progress(current_block, target_block) -> (progress, current, target)

内部方法:
    - _replace(): 在状态锁内按规则替换状态快照并广播
    - _start_locked() / _stop_locked(): 持有转换锁时的实际流程
"""

from __future__ import annotations

import asyncio
import threading
import time
from datetime import datetime
from typing import Callable, Optional

from loguru import logger

from service.errors import (
    CallTimeoutError,
    CorruptDataError,
    EngineFailureError,
    NodeError,
    NotInitializedError,
    RetryableError,
)
from workers.schemas import ACTIVE_STATES, NodeState, NodeStatus

ALLOWED_TRANSITIONS: dict[NodeState, frozenset[NodeState]] = {
    NodeState.STOPPED: frozenset({NodeState.STARTING}),
    NodeState.STARTING: frozenset({NodeState.SYNCING, NodeState.RUNNING, NodeState.STOPPING, NodeState.ERROR}),
    NodeState.SYNCING: frozenset({NodeState.RUNNING, NodeState.STOPPING, NodeState.ERROR}),
    NodeState.RUNNING: frozenset({NodeState.STOPPING, NodeState.ERROR}),
    NodeState.STOPPING: frozenset({NodeState.STOPPED}),
    NodeState.ERROR: frozenset({NodeState.STARTING}),
}

# 同步进度检查点：前进 100 块或进度变化 1% 时落盘
CHECKPOINT_BLOCKS = 100
CHECKPOINT_PROGRESS = 1.0


def compute_sync_progress(current_block: int, target_block: int) -> tuple[float, int, int]:
    """计算同步进度，返回 (progress, current, target)。

    目标高度短暂低于当前高度时按当前高度处理（进度记为 100，不回退）。
    """
    current = max(0, int(current_block))
    target = max(int(target_block), current)
    if target == 0:
        return 100.0, current, target
    progress = min(100.0, max(0.0, current / target * 100.0))
    return progress, current, target


def _now() -> str:
    return datetime.now().astimezone().isoformat(timespec="seconds")


class LifecycleController:
    """节点服务栈的生命周期与状态机"""

    def __init__(
        self,
        engine,
        store,
        status_channel,
        acquirer=None,
        engine_timeout: float = 120.0,
        stop_grace_period: float = 60.0,
        starting_timeout: float = 300.0,
        restart_delay: float = 2.0,
    ):
        self.engine = engine
        self.store = store
        self.status_channel = status_channel
        self.acquirer = acquirer
        self.engine_timeout = engine_timeout
        self.stop_grace_period = stop_grace_period
        self.starting_timeout = starting_timeout
        self.restart_delay = restart_delay

        saved = store.snapshot()
        self._status = NodeStatus(
            current_block=saved.last_known_block,
            sync_progress=saved.last_sync_progress,
        )
        self._status_lock = threading.Lock()
        self._transition_lock = asyncio.Lock()
        self._monitor = None
        self._starting_since: Optional[float] = None
        self._up_since: Optional[float] = None
        self._saved_block = saved.last_known_block
        self._saved_progress = saved.last_sync_progress

    # ---- 状态快照 ----

    @property
    def status(self) -> NodeStatus:
        return self._status

    def attach_monitor(self, monitor) -> None:
        self._monitor = monitor

    def _replace(self, build: Callable[[NodeStatus], Optional[NodeStatus]]) -> Optional[NodeStatus]:
        with self._status_lock:
            current = self._status
            new = build(current)
            if new is None:
                return None
            if new.status != current.status and new.status not in ALLOWED_TRANSITIONS[current.status]:
                logger.debug(f"忽略非法状态转换: {current.status.value} -> {new.status.value}")
                return None
            self._status = new
            if new.status == NodeState.STARTING and current.status != NodeState.STARTING:
                self._starting_since = time.monotonic()
        if new.status != current.status:
            logger.info(f"节点状态: {current.status.value} -> {new.status.value}")
        self.status_channel.publish(new)
        return new

    def _transition(self, new_state: NodeState, **fields) -> Optional[NodeStatus]:
        def build(current: NodeStatus) -> NodeStatus:
            data = current.model_dump()
            data["error_message"] = None
            data.update(fields, status=new_state)
            return NodeStatus(**data)
        return self._replace(build)

    def publish_current(self) -> NodeStatus:
        status = self._status
        self.status_channel.publish(status)
        return status

    # ---- 监控回调（不获取转换锁）----

    def apply_sync(self, current_block: int, target_block: Optional[int], peers_count: int) -> Optional[NodeStatus]:
        """根据一次成功的查询更新状态；target_block 为 None 表示目标高度暂不可知"""

        def build(current: NodeStatus) -> Optional[NodeStatus]:
            if current.status not in ACTIVE_STATES:
                return None
            if target_block is None:
                block = max(0, int(current_block))
                progress = current.sync_progress
                target = max(current.target_block, block)
                caught_up = False
            else:
                progress, block, target = compute_sync_progress(current_block, target_block)
                caught_up = progress >= 100.0
            if current.status == NodeState.RUNNING or caught_up:
                state = NodeState.RUNNING
            else:
                state = NodeState.SYNCING
            return NodeStatus(
                status=state,
                sync_progress=progress,
                current_block=block,
                target_block=target,
                peers_count=max(0, int(peers_count)),
            )

        return self._replace(build)

    def checkpoint(self, status: NodeStatus) -> None:
        """按区块与进度阈值持久化同步检查点；会写磁盘，调用方应在线程池中执行"""
        first_sync_done = status.sync_progress >= 100.0 and not self.store.get("first_sync_completed")
        block_diff = status.current_block - self._saved_block
        progress_diff = abs(status.sync_progress - self._saved_progress)
        if not (first_sync_done or block_diff >= CHECKPOINT_BLOCKS or progress_diff >= CHECKPOINT_PROGRESS):
            return
        fields = {
            "last_known_block": status.current_block,
            "last_sync_progress": status.sync_progress,
            "last_run_timestamp": _now(),
        }
        if first_sync_done:
            fields["first_sync_completed"] = True
            logger.info(f"首次同步完成，区块高度 {status.current_block}")
        try:
            self.store.update(**fields)
        except OSError as e:
            logger.warning(f"保存同步检查点失败: {e}")
            return
        self._saved_block = status.current_block
        self._saved_progress = status.sync_progress

    def fail(self, message: str) -> Optional[NodeStatus]:
        def build(current: NodeStatus) -> Optional[NodeStatus]:
            if current.status not in ACTIVE_STATES:
                return None
            return NodeStatus(**{**current.model_dump(), "status": NodeState.ERROR, "error_message": message})

        new = self._replace(build)
        if new is not None:
            logger.error(f"节点进入错误状态: {message}")
        return new

    def starting_timed_out(self) -> bool:
        if self._status.status != NodeState.STARTING or self._starting_since is None:
            return False
        return time.monotonic() - self._starting_since > self.starting_timeout

    # ---- 生命周期操作 ----

    async def _call_engine(self, func: Callable[[], str], timeout: float) -> str:
        try:
            return await asyncio.wait_for(asyncio.to_thread(func), timeout=timeout)
        except asyncio.TimeoutError as e:
            raise CallTimeoutError(f"引擎调用超过 {timeout:.0f}s 未返回") from e

    async def start(self) -> NodeStatus:
        current = self._status
        if current.status in ACTIVE_STATES or self._transition_lock.locked():
            logger.info(f"节点已处于 {current.status.value} 状态，忽略重复的启动请求")
            return current
        async with self._transition_lock:
            return await self._start_locked()

    async def _start_locked(self) -> NodeStatus:
        current = self._status
        if current.status in ACTIVE_STATES:
            return current
        if not self.store.get("initialized"):
            raise NotInitializedError("节点尚未初始化，请先完成初始化")
        if self.acquirer is not None and self.acquirer.busy:
            raise RetryableError("快照下载或解压正在进行，请稍后再启动节点")

        self._transition(NodeState.STARTING, peers_count=0)

        if self.acquirer is not None and self.acquirer.extraction_incomplete():
            message = "链数据目录解压未完成，请重新下载快照"
            logger.error(message)
            self._transition(NodeState.ERROR, error_message=message)
            raise CorruptDataError(message)

        try:
            output = await self._call_engine(self.engine.up, self.engine_timeout)
        except (EngineFailureError, CallTimeoutError) as e:
            raw = getattr(e, "output", "") or str(e)
            logger.bind(details=raw).error(f"启动节点失败: {e}")
            self._transition(NodeState.ERROR, error_message=f"{e}: {raw}" if raw != str(e) else str(e))
            raise
        if output:
            logger.bind(details=output).debug("引擎启动输出")

        self._up_since = time.monotonic()
        await asyncio.to_thread(self.store.set, "last_run_timestamp", _now())
        logger.info(f"节点服务已启动，从区块 {self._status.current_block} 继续同步")

        if self._monitor is not None:
            await self._monitor.tick()
        return self._status

    async def stop(self) -> NodeStatus:
        current = self._status
        if current.status in (NodeState.STOPPED, NodeState.STOPPING) or self._transition_lock.locked():
            return current
        async with self._transition_lock:
            return await self._stop_locked()

    async def _teardown(self) -> None:
        try:
            await self._call_engine(self.engine.down, self.stop_grace_period)
        except CallTimeoutError:
            logger.warning(f"引擎未在 {self.stop_grace_period:.0f}s 宽限期内完成拆除，强制标记为已停止")
        except EngineFailureError as e:
            logger.bind(details=e.output).warning(f"停止命令失败，强制标记为已停止: {e}")
        finally:
            await asyncio.to_thread(self._account_uptime)
            if self._monitor is not None:
                self._monitor.reset()

    async def _stop_locked(self) -> NodeStatus:
        current = self._status
        if current.status == NodeState.STOPPED:
            return current
        if current.status == NodeState.ERROR:
            # Error 只能通过 start 离开；这里只做尽力拆除
            await self._teardown()
            return self._status

        self._transition(NodeState.STOPPING)
        await self._teardown()
        new = self._transition(NodeState.STOPPED, sync_progress=0.0, peers_count=0)
        logger.info("节点已停止")
        return new or self._status

    async def restart(self) -> NodeStatus:
        if self._transition_lock.locked():
            return self._status
        async with self._transition_lock:
            if self._status.status != NodeState.STOPPED:
                try:
                    await self._stop_locked()
                except NodeError as e:
                    logger.warning(f"重启时停止阶段失败，仍尝试启动: {e}")
                if self.restart_delay > 0:
                    await asyncio.sleep(self.restart_delay)
            return await self._start_locked()

    def _account_uptime(self) -> None:
        if self._up_since is None:
            return
        elapsed = time.monotonic() - self._up_since
        self._up_since = None
        try:
            total = self.store.add_uptime(elapsed)
            logger.debug(f"累计运行时长: {total}s")
        except OSError as e:
            logger.warning(f"保存运行时长失败: {e}")
