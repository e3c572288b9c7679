# -*- coding: utf-8 -*-

"""
资源采样

文件功能:
    - 按固定间隔读取 CPU、内存以及链数据目录所在磁盘的使用情况（psutil）。
    - 采样失败或超时时返回上一次缓存的结果，不向外抛出异常。

公开接口:
    - 类 ResourceSampler(PeriodicWorker)
        - 属性: latest -> ResourceUsage
        - 方法: sample() -> ResourceUsage（协程）
"""

from __future__ import annotations

import asyncio
from pathlib import Path

import psutil
from loguru import logger

from service.paths import existing_parent
from workers.periodic import PeriodicWorker
from workers.schemas import ResourceUsage

MB = 1024 * 1024
GB = 1024 * 1024 * 1024


class ResourceSampler(PeriodicWorker):
    name = "resource-sampler"

    def __init__(self, data_dir: Path | str, interval: float = 5.0, timeout: float = 3.0):
        super().__init__(interval)
        self.data_dir = Path(data_dir)
        self.timeout = timeout
        self._latest = ResourceUsage()

    @property
    def latest(self) -> ResourceUsage:
        return self._latest

    def _read(self) -> ResourceUsage:
        memory = psutil.virtual_memory()
        disk = psutil.disk_usage(str(existing_parent(self.data_dir)))
        return ResourceUsage(
            cpu_percent=min(100.0, max(0.0, psutil.cpu_percent(interval=None))),
            memory_mb=round((memory.total - memory.available) / MB, 1),
            memory_total_mb=round(memory.total / MB, 1),
            disk_used_gb=round((disk.total - disk.free) / GB, 2),
            disk_total_gb=round(disk.total / GB, 2),
        )

    async def sample(self) -> ResourceUsage:
        try:
            usage = await asyncio.wait_for(asyncio.to_thread(self._read), timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.debug("资源采样超时，返回缓存结果")
            return self._latest
        except (OSError, psutil.Error, ValueError) as e:
            logger.debug(f"资源采样失败，返回缓存结果: {e}")
            return self._latest
        self._latest = usage
        return usage

    async def tick(self) -> None:
        await self.sample()
