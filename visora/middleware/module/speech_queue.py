# visora/middleware/module/speech_queue.py
"""
SpeechQueue：串行播报队列
- 保证对 sink.speak 的调用严格串行：上一句没说完，下一句排队，绝不打断
- pyttsx3 引擎不是线程安全的：引擎的创建、list_voices、speak 全部经 call() 固定在同一个工作线程
- sink 方法若是协程函数则直接 await（测试用假 sink）

使用：
  q = SpeechQueue(sink)
  await q.start()            # sink 有 open() 时先在工作线程上打开引擎
  await q.push(SpeechMsg(utterance_id="u-1", text="I see a cat."))
  voices = await q.call(sink.list_voices)
"""

from __future__ import annotations

import asyncio
import functools
import inspect
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Callable, Optional

from visora.common.log import get_logger

logger = get_logger("middleware.speech_queue")


@dataclass
class SpeechMsg:
    utterance_id: str
    text: str
    voice_name: Optional[str] = None
    rate: float = 1.0


class SpeechQueue:
    def __init__(self, sink: Any, maxsize: int = 32) -> None:
        self._sink = sink
        self._q: asyncio.Queue[SpeechMsg] = asyncio.Queue(maxsize=maxsize)
        self._worker: asyncio.Task | None = None
        self._executor: ThreadPoolExecutor | None = None

    async def start(self) -> None:
        """sink.open() 抛出的异常（如 NarrationUnsupported）原样上抛，调用方负责 stop()。"""
        if self._worker is None:
            opener = getattr(self._sink, "open", None)
            if opener is not None:
                await self.call(opener)
            self._worker = asyncio.create_task(self._worker_loop(), name="SpeechQueueWorker")

    async def stop(self) -> None:
        if self._worker:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None
        if self._executor:
            self._executor.shutdown(wait=False)
            self._executor = None

    async def call(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """在播报工作线程上执行 fn。"""
        if inspect.iscoroutinefunction(fn):
            return await fn(*args, **kwargs)
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="speech")
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, functools.partial(fn, *args, **kwargs))

    async def push(self, msg: SpeechMsg) -> int:
        """入队（满则等待）。返回 0 表示受理。"""
        await self._q.put(msg)
        logger.info("enqueue", extra={"cycle_id": msg.utterance_id})
        return 0

    async def join(self) -> None:
        await self._q.join()

    async def _worker_loop(self) -> None:
        while True:
            msg = await self._q.get()
            try:
                logger.info("speak", extra={"cycle_id": msg.utterance_id})
                await self.call(self._sink.speak, msg.text, voice_name=msg.voice_name, rate=msg.rate)
            except Exception as e:
                logger.error(f"speak_exception:{e}", extra={"cycle_id": msg.utterance_id})
            finally:
                self._q.task_done()
