# -*- coding: utf-8 -*-
"""
详细状态报告

文件功能:
    - 按需聚合详细状态：12 个服务的运行标志、同步数据（含剩余区块时间）、端口可达性、
      链数据目录大小、最近引擎日志中的错误统计。
    - 各部分相互独立，单个部分失败时使用默认值，不影响其它部分。

公开接口:
    - build_detailed_status(engine, query, status, data_dir) -> DetailedStatus
    - port_open(port, host="127.0.0.1", timeout=1.0) -> bool
    - summarize_errors(logs) -> ActivityDetails
"""

import socket
from pathlib import Path

from loguru import logger

from service.errors import NodeError
from snapshot_client.utils import dir_size, human_size
from workers.schemas import (
    SERVICE_NAMES,
    ActivityDetails,
    DetailedStatus,
    DiskDetails,
    NetworkDetails,
    NodeState,
    NodeStatus,
    ServiceStates,
    SyncDetails,
)

JSONRPC_PORT = 8080
GRPC_PORT = 50051
P2P_PORT = 8888


def port_open(port: int, host: str = "127.0.0.1", timeout: float = 1.0) -> bool:
    try:
        with socket.create_connection((host, port), timeout=timeout):
            return True
    except OSError:
        return False


def summarize_errors(logs: str) -> ActivityDetails:
    error_lines = [line.strip() for line in logs.splitlines() if "error" in line.lower()]
    if not error_lines:
        return ActivityDetails()
    return ActivityDetails(error_count=len(error_lines), last_error=error_lines[-1])


def _service_states(engine) -> ServiceStates:
    try:
        states = engine.service_states()
    except NodeError as e:
        logger.debug(f"查询服务状态失败: {e}")
        return ServiceStates()
    return ServiceStates(**{name: states.get(name, False) for name in SERVICE_NAMES})


def build_detailed_status(engine, query, status: NodeStatus, data_dir: Path) -> DetailedStatus:
    """阻塞调用，在线程池中执行"""
    remaining = query.get_time_remaining() if status.status in (NodeState.SYNCING, NodeState.RUNNING) else None
    sync = SyncDetails(
        current_block=status.current_block,
        target_block=status.target_block,
        percentage=status.sync_progress,
        time_remaining=remaining or "Unknown",
    )
    network = NetworkDetails(
        connected_peers=status.peers_count,
        jsonrpc_available=port_open(JSONRPC_PORT),
        grpc_available=port_open(GRPC_PORT),
        p2p_available=port_open(P2P_PORT),
    )
    disk = DiskDetails(blockchain_size=human_size(dir_size(data_dir)) if Path(data_dir).exists() else "0B")

    try:
        activity = summarize_errors(engine.logs(tail=100))
    except NodeError as e:
        logger.debug(f"读取引擎日志失败: {e}")
        activity = ActivityDetails()

    return DetailedStatus(
        services=_service_states(engine),
        sync=sync,
        network=network,
        disk=disk,
        activity=activity,
    )
