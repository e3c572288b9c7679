# -*- coding: utf-8 -*-
"""
节点查询客户端

文件功能:
    - 通过 JSON-RPC 读取本地节点的头区块高度，以及主网（检查点）高度作为同步目标。
    - 通过引擎日志统计已连接的对等节点数，并解析"剩余区块时间"。
    - 所有查询都是幂等、无副作用的，并带有显式超时。

公开接口:
    - 类 NodeQueryClient
        - 方法: get_head_block() -> int
        - 方法: get_target_block(current_block) -> int
        - 方法: get_peer_count() -> int
        - 方法: get_time_remaining() -> str | None
    - 函数 parse_time_remaining(logs) -> str | None
    - 函数 count_connected_peers(logs) -> int

内部方法:
    - _head_height(url, timeout): 发送 chain.get_head_info 并解析 head_topology.height
"""

from __future__ import annotations

import re
from typing import Optional

import requests
from loguru import logger
from requests.exceptions import ConnectionError as RequestsConnectionError
from requests.exceptions import RequestException, Timeout

from service.errors import CallTimeoutError, EngineFailureError, NetworkTransientError

HEAD_INFO_REQUEST = {"jsonrpc": "2.0", "method": "chain.get_head_info", "params": {}, "id": 1}
# 3 秒出块
BLOCKS_PER_DAY = 28_800

_REMAINING_RE = re.compile(r"\(([^()]*?)\s*block time remaining")
_DAYS_RE = re.compile(r"(\d+)d")


def parse_time_remaining(logs: str) -> Optional[str]:
    """从 chain 服务日志中取最后一条 `(122d, 09h, 25m, 09s block time remaining)`"""
    for line in reversed(logs.splitlines()):
        if "block time remaining" not in line:
            continue
        match = _REMAINING_RE.search(line)
        if match:
            return match.group(1).strip()
    return None


def count_connected_peers(logs: str) -> int:
    return logs.count("Connected to peer")


class NodeQueryClient:
    """本地节点与主网的只读查询"""

    def __init__(
        self,
        local_url: str,
        mainnet_url: str,
        engine=None,
        local_timeout: float = 2.0,
        mainnet_timeout: float = 5.0,
    ):
        self.local_url = local_url
        self.mainnet_url = mainnet_url
        self.engine = engine
        self.local_timeout = local_timeout
        self.mainnet_timeout = mainnet_timeout

    def _head_height(self, url: str, timeout: float) -> int:
        try:
            resp = requests.post(url, json=HEAD_INFO_REQUEST, timeout=timeout)
            resp.raise_for_status()
            payload = resp.json()
        except Timeout as e:
            raise CallTimeoutError(f"查询 {url} 超时: {e}") from e
        except RequestsConnectionError as e:
            raise NetworkTransientError(f"无法连接 {url}: {e}") from e
        except RequestException as e:
            raise NetworkTransientError(f"查询 {url} 失败: {e}") from e
        except ValueError as e:
            raise NetworkTransientError(f"{url} 返回了无效的 JSON: {e}") from e

        try:
            height = payload["result"]["head_topology"]["height"]
            return int(height)
        except (KeyError, TypeError, ValueError) as e:
            error = payload.get("error") if isinstance(payload, dict) else None
            raise NetworkTransientError(f"无法从 {url} 的响应中解析区块高度: {error or e}") from e

    def get_head_block(self) -> int:
        return self._head_height(self.local_url, self.local_timeout)

    def get_target_block(self, current_block: int) -> int:
        """优先使用主网高度；主网不可达时按 chain 日志中的剩余区块时间估算"""
        try:
            return self._head_height(self.mainnet_url, self.mainnet_timeout)
        except (NetworkTransientError, CallTimeoutError) as e:
            logger.debug(f"获取主网高度失败，尝试从日志估算: {e}")

        remaining = self.get_time_remaining()
        days = _DAYS_RE.search(remaining or "")
        if days is None:
            raise NetworkTransientError("无法确定目标区块高度")
        return current_block + int(days.group(1)) * BLOCKS_PER_DAY

    def _engine_logs(self, service: str, tail: int) -> str:
        if self.engine is None:
            raise NetworkTransientError("未配置编排引擎，无法读取服务日志")
        try:
            return self.engine.logs(service, tail=tail)
        except EngineFailureError as e:
            raise NetworkTransientError(f"读取 {service} 日志失败: {e.output or e}") from e

    def get_peer_count(self) -> int:
        return count_connected_peers(self._engine_logs("p2p", tail=20))

    def get_time_remaining(self) -> Optional[str]:
        try:
            return parse_time_remaining(self._engine_logs("chain", tail=10))
        except (NetworkTransientError, CallTimeoutError):
            return None
