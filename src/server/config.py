# -*- coding: utf-8 -*-
"""
全局配置

文件功能:
    - 集中定义后端使用的常量（目录、节点 RPC 地址、轮询间隔、超时、阈值等）。
    - 所有常量都可以通过 `KOINOS_*` 环境变量覆盖。
    - 提供 Settings 模型，把这些常量聚合为一个可显式传递的配置对象。

公开接口:
    - 模块级常量（API_BASE_URL、MAINNET_RPC_URL、SNAPSHOT_INDEX_URL 等）
    - 类 Settings(BaseModel)
        - 方法: from_env() -> Settings
"""

import os
from pathlib import Path

from pydantic import BaseModel, Field


def _env_str(name: str, default: str) -> str:
    return os.getenv(f"KOINOS_{name}", default)


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(f"KOINOS_{name}")
    return int(raw) if raw else default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(f"KOINOS_{name}")
    return float(raw) if raw else default


_HOME = Path.home()

# ---- 目录 ----
COMPOSE_DIR = _env_str("COMPOSE_DIR", str(_HOME / "koinos"))
DATA_DIR = _env_str("DATA_DIR", str(_HOME / ".koinos"))
STATE_FILE = _env_str("STATE_FILE", str(Path(DATA_DIR) / "node_state.json"))
SNAPSHOT_DIR = _env_str("SNAPSHOT_DIR", str(_HOME))

# ---- 外部地址 ----
API_BASE_URL = _env_str("API_BASE_URL", "http://127.0.0.1:8080")
MAINNET_RPC_URL = _env_str("MAINNET_RPC_URL", "https://api.koinos.io")
SNAPSHOT_INDEX_URL = _env_str("SNAPSHOT_INDEX_URL", "https://backup.koinosblocks.com/")
COMPOSE_REPO_URL = _env_str("COMPOSE_REPO_URL", "https://github.com/koinos/koinos")

# ---- 周期任务 ----
MONITOR_INTERVAL = _env_float("MONITOR_INTERVAL", 5.0)
SAMPLER_INTERVAL = _env_float("SAMPLER_INTERVAL", 5.0)
FAILURE_THRESHOLD = _env_int("FAILURE_THRESHOLD", 3)
STARTING_TIMEOUT = _env_float("STARTING_TIMEOUT", 300.0)

# ---- 超时（秒）----
ENGINE_TIMEOUT = _env_float("ENGINE_TIMEOUT", 120.0)
STOP_GRACE_PERIOD = _env_float("STOP_GRACE_PERIOD", 60.0)
LOCAL_QUERY_TIMEOUT = _env_float("LOCAL_QUERY_TIMEOUT", 2.0)
MAINNET_QUERY_TIMEOUT = _env_float("MAINNET_QUERY_TIMEOUT", 5.0)
SAMPLER_TIMEOUT = _env_float("SAMPLER_TIMEOUT", 3.0)
DOWNLOAD_CONNECT_TIMEOUT = _env_float("DOWNLOAD_CONNECT_TIMEOUT", 30.0)
DOWNLOAD_READ_TIMEOUT = _env_float("DOWNLOAD_READ_TIMEOUT", 60.0)

# ---- 下载 ----
DOWNLOAD_CHUNK_SIZE = _env_int("DOWNLOAD_CHUNK_SIZE", 1024 * 1024)
DOWNLOAD_CHECKPOINT_BYTES = _env_int("DOWNLOAD_CHECKPOINT_BYTES", 100_000_000)
DOWNLOAD_PROGRESS_INTERVAL = _env_float("DOWNLOAD_PROGRESS_INTERVAL", 5.0)
DOWNLOAD_CONNECT_RETRIES = _env_int("DOWNLOAD_CONNECT_RETRIES", 3)

# ---- 日志 ----
LOG_CAPACITY = _env_int("LOG_CAPACITY", 1000)


class Settings(BaseModel):
    """运行时配置，默认值取自上面的模块常量"""

    compose_dir: Path = Path(COMPOSE_DIR)
    data_dir: Path = Path(DATA_DIR)
    state_file: Path = Path(STATE_FILE)
    snapshot_dir: Path = Path(SNAPSHOT_DIR)

    local_rpc_url: str = API_BASE_URL
    mainnet_rpc_url: str = MAINNET_RPC_URL
    snapshot_index_url: str = SNAPSHOT_INDEX_URL
    compose_repo_url: str = COMPOSE_REPO_URL

    monitor_interval: float = Field(default=MONITOR_INTERVAL, gt=0)
    sampler_interval: float = Field(default=SAMPLER_INTERVAL, gt=0)
    failure_threshold: int = Field(default=FAILURE_THRESHOLD, ge=1)
    starting_timeout: float = Field(default=STARTING_TIMEOUT, gt=0)

    engine_timeout: float = ENGINE_TIMEOUT
    stop_grace_period: float = STOP_GRACE_PERIOD
    local_query_timeout: float = LOCAL_QUERY_TIMEOUT
    mainnet_query_timeout: float = MAINNET_QUERY_TIMEOUT
    sampler_timeout: float = SAMPLER_TIMEOUT
    download_connect_timeout: float = DOWNLOAD_CONNECT_TIMEOUT
    download_read_timeout: float = DOWNLOAD_READ_TIMEOUT

    download_chunk_size: int = Field(default=DOWNLOAD_CHUNK_SIZE, gt=0)
    download_checkpoint_bytes: int = Field(default=DOWNLOAD_CHECKPOINT_BYTES, gt=0)
    download_progress_interval: float = DOWNLOAD_PROGRESS_INTERVAL
    download_connect_retries: int = Field(default=DOWNLOAD_CONNECT_RETRIES, ge=1)

    log_capacity: int = Field(default=LOG_CAPACITY, gt=0)

    @classmethod
    def from_env(cls) -> "Settings":
        return cls()
