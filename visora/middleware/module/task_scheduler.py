# visora/middleware/module/task_scheduler.py
"""
CycleScheduler：周期任务调度（固定周期/忙则跳过/回调分发）
- start(): 创建唯一的周期 asyncio.Task；已有则替换，不叠加
- 周期按「开始时刻」计算：第 N 次在 start + N*period 触发，不因单次耗时漂移
- 忙则跳过：上一次 tick 还没结束时，本次直接跳过并计数
- stop(): 只取消周期任务，已经发出去的 tick 继续跑完；wait_idle() 等它结束
- 回调允许 sync/async；回调异常只记日志，不影响后续周期
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Optional

from visora.common.log import get_logger

logger = get_logger("middleware.scheduler")

TickCallback = Callable[[str], Awaitable[None] | None]


class CycleScheduler:
    def __init__(self, tick: TickCallback, period_s: float = 1.4, name: str = "detect") -> None:
        self._tick = tick
        self._period = max(0.01, float(period_s))
        self._name = name
        self._task: Optional[asyncio.Task] = None
        self._inflight: Optional[asyncio.Task] = None
        self._seq = 0
        self.skipped = 0

    @property
    def handle(self) -> Optional[asyncio.Task]:
        return self._task

    @property
    def busy(self) -> bool:
        return self._inflight is not None and not self._inflight.done()

    def start(self) -> asyncio.Task:
        if self._task is not None and not self._task.done():
            self._task.cancel()
            logger.info("scheduler_replaced")
        self._task = asyncio.create_task(self._run(), name=f"CycleScheduler:{self._name}")
        logger.info("scheduler_started")
        return self._task

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("scheduler_stopped")

    async def wait_idle(self) -> None:
        """等已经发出去的那次 tick 跑完（stop 之后用）。"""
        task = self._inflight
        if task is not None and not task.done():
            await asyncio.wait({task})

    async def _run(self) -> None:
        loop = asyncio.get_running_loop()
        next_at = loop.time() + self._period
        while True:
            await asyncio.sleep(max(0.0, next_at - loop.time()))
            self._fire()
            next_at += self._period
            now = loop.time()
            # 事件循环被卡住时不补发，直接对齐到下一个周期点
            while next_at <= now:
                next_at += self._period

    def _fire(self) -> None:
        if self.busy:
            self.skipped += 1
            logger.warning("tick_skipped_busy")
            return
        self._seq += 1
        cycle_id = f"{self._name}-{self._seq}"
        self._inflight = asyncio.create_task(self._invoke(cycle_id), name=f"Cycle:{cycle_id}")

    async def _invoke(self, cycle_id: str) -> None:
        try:
            r = self._tick(cycle_id)
            if asyncio.iscoroutine(r):
                await r
        except Exception as e:
            logger.error(f"tick_exception:{e}", extra={"cycle_id": cycle_id})
