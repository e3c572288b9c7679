# -*- coding: utf-8 -*-

"""
周期任务基类

文件功能:
    - 以固定间隔在事件循环中重复执行 tick()，单次异常只记录日志，不终止循环。

公开接口:
    - 类 PeriodicWorker
        - 方法: start() / stop() / run()
        - 抽象方法: tick()
"""

import asyncio
import contextlib
from typing import Optional

from loguru import logger


class PeriodicWorker:
    name = "periodic"

    def __init__(self, interval: float):
        self.interval = interval
        self._task: Optional[asyncio.Task] = None

    async def tick(self) -> None:
        raise NotImplementedError

    async def run(self) -> None:
        while True:
            try:
                await self.tick()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception(f"[{self.name}] 周期任务执行异常")
            await asyncio.sleep(self.interval)

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self.run(), name=self.name)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None
