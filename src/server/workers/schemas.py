# -*- coding: utf-8 -*-

"""
通用数据模型（schemas）

文件功能:
    - 定义跨模块使用的 pydantic 模型。
    - 状态快照类模型（NodeStatus、LogEntry 等）均为不可变对象，只能整体替换。

公开接口:
    - 枚举 NodeState: 节点状态机的六种状态
    - 类 NodeStatus(BaseModel): 节点状态快照（状态、同步进度、区块高度、对等节点数、错误信息）
    - 类 ResourceUsage(BaseModel): 最近一次资源采样
    - 类 LogEntry(BaseModel): 单条日志记录
    - 类 PersistentState(BaseModel): 需要持久化的节点状态
    - 类 DownloadState(BaseModel): 可续传下载的持久化进度
    - 类 SystemRequirements(BaseModel): 系统需求检查结果
    - 类 DetailedStatus(BaseModel) 及其子模型: 按需聚合的详细状态

内部方法:
    - 无。

公开接口的 pydantic 模型:
    - 以上全部
"""

from enum import Enum
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class NodeState(str, Enum):
    """节点状态机的状态；没有终态，ERROR 可以通过 start 恢复"""
    STOPPED = "stopped"
    STARTING = "starting"
    SYNCING = "syncing"
    RUNNING = "running"
    STOPPING = "stopping"
    ERROR = "error"


ACTIVE_STATES = frozenset({NodeState.STARTING, NodeState.SYNCING, NodeState.RUNNING})


class NodeStatus(BaseModel):
    """节点状态信息模型"""
    model_config = ConfigDict(frozen=True)

    status: NodeState = NodeState.STOPPED
    sync_progress: float = Field(default=0.0, ge=0.0, le=100.0)
    current_block: int = Field(default=0, ge=0)
    target_block: int = Field(default=0, ge=0)
    peers_count: int = Field(default=0, ge=0)
    error_message: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _clamp_target(cls, data):
        # 目标高度永远不低于当前高度
        if isinstance(data, dict):
            current = data.get("current_block") or 0
            target = data.get("target_block") or 0
            if target < current:
                data = {**data, "target_block": current}
        return data


class ResourceUsage(BaseModel):
    cpu_percent: float = Field(default=0.0, ge=0.0)
    memory_mb: float = Field(default=0.0, ge=0.0)
    memory_total_mb: float = Field(default=0.0, ge=0.0)
    disk_used_gb: float = Field(default=0.0, ge=0.0)
    disk_total_gb: float = Field(default=0.0, ge=0.0)


LogLevel = Literal["DEBUG", "INFO", "WARN", "ERROR"]


class LogEntry(BaseModel):
    """日志记录，由 Event Hub 独占持有"""
    model_config = ConfigDict(frozen=True)

    timestamp: str
    level: LogLevel
    message: str
    details: Optional[str] = None


class PersistentState(BaseModel):
    """持久化的节点状态；每次修改都会立即落盘"""
    initialized: bool = False
    first_launch_timestamp: Optional[str] = None
    cumulative_uptime_seconds: int = Field(default=0, ge=0)
    last_known_block: int = Field(default=0, ge=0)
    last_sync_progress: float = Field(default=0.0, ge=0.0, le=100.0)
    first_sync_completed: bool = False
    last_run_timestamp: Optional[str] = None


class DownloadState(BaseModel):
    """可续传下载的进度记录，status 区分 partial（部分完成）与 complete（已校验完成）"""
    url: str
    destination_path: str
    total_bytes: Optional[int] = Field(default=None, ge=0)
    bytes_downloaded: int = Field(default=0, ge=0)
    status: Literal["partial", "complete"] = "partial"
    sha256: Optional[str] = None


class SystemRequirements(BaseModel):
    has_docker: bool = False
    docker_running: bool = False
    ram_gb: int = 0
    available_disk_gb: int = 0
    is_sufficient: bool = False
    missing_requirements: list[str] = Field(default_factory=list)


# --- 详细状态 ---

class ServiceStates(BaseModel):
    """固定服务集合中每个服务的运行标志"""
    chain: bool = False
    p2p: bool = False
    block_store: bool = False
    mempool: bool = False
    jsonrpc: bool = False
    grpc: bool = False
    rest: bool = False
    account_history: bool = False
    transaction_store: bool = False
    contract_meta_store: bool = False
    block_producer: bool = False
    amqp: bool = False


SERVICE_NAMES: tuple[str, ...] = tuple(ServiceStates.model_fields)


class SyncDetails(BaseModel):
    current_block: int = 0
    target_block: int = 0
    percentage: float = 0.0
    time_remaining: str = "Unknown"


class NetworkDetails(BaseModel):
    connected_peers: int = 0
    jsonrpc_available: bool = False
    grpc_available: bool = False
    p2p_available: bool = False


class DiskDetails(BaseModel):
    blockchain_size: str = "0B"


class ActivityDetails(BaseModel):
    error_count: int = 0
    last_error: str = "No recent errors"


class DetailedStatus(BaseModel):
    services: ServiceStates
    sync: SyncDetails
    network: NetworkDetails
    disk: DiskDetails
    activity: ActivityDetails
