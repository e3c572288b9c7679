# -*- coding: utf-8 -*-

"""
节点上下文

文件功能:
    - 持有进程内唯一的一组组件（事件中心、状态存储、编排引擎、节点查询、快照下载器、
      生命周期控制器、同步监控、资源采样），由调用方显式构造、startup() 初始化、shutdown() 拆除。
    - 对表现层提供全部请求/响应操作与事件订阅。

公开接口:
    - 类 NodeContext
        - 方法: startup() / shutdown()（协程）
        - 方法: check_system_requirements() / setup_node()（协程）
        - 方法: start_node() / stop_node() / restart_node()（协程）
        - 方法: get_node_status() / get_detailed_status() / get_resource_usage()
        - 方法: download_snapshot(url=None) / cancel_download()（协程）, snapshot_record()
        - 方法: is_initialized() / get_logs() / clear_logs()
        - 方法: subscribe(events) / unsubscribe(subscription)
"""

from __future__ import annotations

import asyncio
from typing import Iterable, Optional, Tuple

from loguru import logger

from config import Settings
from service.compose_engine import ComposeEngine
from service.event_hub import LOG_ENTRY_EVENT, LOGS_CLEARED_EVENT, EventChannel, EventHub, Subscription
from service.node_query import NodeQueryClient
from service.state_store import StateStore, format_uptime
from service.status_report import build_detailed_status
from service.system_check import check_system_requirements
from snapshot_client import SnapshotAcquirer, resolve_latest_snapshot_url
from workers.lifecycle_controller import LifecycleController
from workers.node_setup import NodeSetup
from workers.resource_sampler import ResourceSampler
from workers.schemas import DetailedStatus, DownloadState, LogEntry, NodeStatus, ResourceUsage, SystemRequirements
from workers.sync_monitor import SyncMonitor

NODE_STATUS_EVENT = "node_status_update"
DOWNLOAD_PROGRESS_EVENT = "download_progress"
ALL_EVENTS = (NODE_STATUS_EVENT, DOWNLOAD_PROGRESS_EVENT, LOG_ENTRY_EVENT, LOGS_CLEARED_EVENT)


class NodeContext:
    """管理应用程序的全部组件"""

    def __init__(self, settings: Optional[Settings] = None, engine=None, query=None):
        self.settings = settings or Settings.from_env()
        s = self.settings

        self.hub = EventHub(capacity=s.log_capacity)
        self.status_updates = EventChannel(NODE_STATUS_EVENT)
        self.download_progress = EventChannel(DOWNLOAD_PROGRESS_EVENT)

        self.store = StateStore(s.state_file)
        self.engine = engine or ComposeEngine(s.compose_dir, timeout=s.engine_timeout)
        self.query = query or NodeQueryClient(
            s.local_rpc_url,
            s.mainnet_rpc_url,
            engine=self.engine,
            local_timeout=s.local_query_timeout,
            mainnet_timeout=s.mainnet_query_timeout,
        )
        self.acquirer = SnapshotAcquirer(s, on_progress=self.download_progress.publish)
        self.controller = LifecycleController(
            self.engine,
            self.store,
            self.status_updates,
            acquirer=self.acquirer,
            engine_timeout=s.engine_timeout,
            stop_grace_period=s.stop_grace_period,
            starting_timeout=s.starting_timeout,
        )
        self.monitor = SyncMonitor(
            self.controller,
            self.query,
            interval=s.monitor_interval,
            failure_threshold=s.failure_threshold,
            # 一次监控查询包含本地、主网与日志读取
            query_timeout=s.local_query_timeout + s.mainnet_query_timeout + s.engine_timeout,
        )
        self.controller.attach_monitor(self.monitor)
        self.sampler = ResourceSampler(s.data_dir, interval=s.sampler_interval, timeout=s.sampler_timeout)
        self._sink_id: Optional[int] = None

    # ---- 初始化与拆除 ----

    async def startup(self) -> None:
        if self._sink_id is None:
            self._sink_id = logger.add(self.hub.sink, level="DEBUG")
        saved = self.store.snapshot()
        logger.info(
            f"节点管理后端已启动，数据目录: {self.settings.data_dir}，"
            f"累计运行时长: {format_uptime(saved.cumulative_uptime_seconds)}"
        )
        self.monitor.start()
        self.sampler.start()

    async def shutdown(self) -> None:
        await self.monitor.stop()
        await self.sampler.stop()
        if self.acquirer.busy:
            await asyncio.to_thread(self.acquirer.cancel)
        logger.info("节点管理后端已关闭")
        if self._sink_id is not None:
            logger.remove(self._sink_id)
            self._sink_id = None

    # ---- 初始化/系统检查 ----

    async def check_system_requirements(self) -> SystemRequirements:
        return await asyncio.to_thread(check_system_requirements, self.engine, self.settings.data_dir)

    async def setup_node(self) -> Tuple[bool, str]:
        setup = NodeSetup(self.settings, self.store)
        return await asyncio.to_thread(setup.execute_setup)

    def is_initialized(self) -> bool:
        return bool(self.store.get("initialized"))

    # ---- 生命周期 ----

    async def start_node(self) -> NodeStatus:
        return await self.controller.start()

    async def stop_node(self) -> NodeStatus:
        return await self.controller.stop()

    async def restart_node(self) -> NodeStatus:
        return await self.controller.restart()

    def get_node_status(self) -> NodeStatus:
        return self.controller.status

    async def get_detailed_status(self) -> DetailedStatus:
        return await asyncio.to_thread(
            build_detailed_status, self.engine, self.query, self.controller.status, self.settings.data_dir
        )

    def get_resource_usage(self) -> ResourceUsage:
        return self.sampler.latest

    # ---- 快照 ----

    async def download_snapshot(self, url: Optional[str] = None) -> Optional[DownloadState]:
        if self.acquirer.data_ready():
            logger.info("链数据已存在，跳过快照下载")
            self.download_progress.publish(100.0)
            return None
        record = self.acquirer.current_record()
        if url is None and record is not None:
            # 续传必须沿用中断时的地址，索引页可能已经更新
            url = record.url
            logger.info(f"沿用未完成下载的快照地址: {url}")
        if url is None:
            url = await asyncio.to_thread(
                resolve_latest_snapshot_url, self.settings.snapshot_index_url, self.settings.download_connect_timeout
            )
        logger.info(f"开始获取快照: {url}")
        return await asyncio.to_thread(self.acquirer.acquire, url)

    async def cancel_download(self) -> bool:
        return await asyncio.to_thread(self.acquirer.cancel)

    def snapshot_record(self) -> Optional[DownloadState]:
        return self.acquirer.current_record()

    # ---- 日志与事件 ----

    def get_logs(self) -> tuple[LogEntry, ...]:
        return self.hub.get_all()

    def clear_logs(self) -> None:
        self.hub.clear()

    def _channels(self) -> dict[str, EventChannel]:
        return {
            NODE_STATUS_EVENT: self.status_updates,
            DOWNLOAD_PROGRESS_EVENT: self.download_progress,
            LOG_ENTRY_EVENT: self.hub.log_entry,
            LOGS_CLEARED_EVENT: self.hub.logs_cleared,
        }

    def subscribe(self, events: Iterable[str] = ALL_EVENTS, maxsize: int = 256) -> Subscription:
        subscription = Subscription(maxsize=maxsize)
        channels = self._channels()
        for event in events:
            channels[event].attach(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        for channel in self._channels().values():
            channel.detach(subscription)
