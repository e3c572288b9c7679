# -*- coding: utf-8 -*-

"""
测试资源采样：正常采样、采样失败与超时时返回缓存结果
"""

import asyncio
import os
import tempfile
import time

import psutil

from workers.resource_sampler import ResourceSampler
from workers.schemas import ResourceUsage


def test_sample_reads_system_usage():
    with tempfile.TemporaryDirectory() as tmp:
        # 数据目录尚不存在时使用最近的已存在祖先目录
        sampler = ResourceSampler(os.path.join(tmp, "not", "yet"), interval=60, timeout=5)
        usage = asyncio.run(sampler.sample())
        assert usage.memory_total_mb > 0
        assert usage.disk_total_gb > 0
        assert 0.0 <= usage.cpu_percent <= 100.0
        assert sampler.latest == usage


def test_failure_returns_cached_sample(monkeypatch):
    with tempfile.TemporaryDirectory() as tmp:
        sampler = ResourceSampler(tmp, interval=60, timeout=5)
        first = asyncio.run(sampler.sample())

        def broken():
            raise OSError("permission denied")

        monkeypatch.setattr(psutil, "virtual_memory", broken)
        assert asyncio.run(sampler.sample()) == first


def test_timeout_returns_cached_sample(monkeypatch):
    with tempfile.TemporaryDirectory() as tmp:
        sampler = ResourceSampler(tmp, interval=60, timeout=0.05)

        def slow():
            time.sleep(0.3)
            return ResourceUsage(cpu_percent=99.0)

        monkeypatch.setattr(sampler, "_read", slow)
        assert asyncio.run(sampler.sample()) == ResourceUsage()
