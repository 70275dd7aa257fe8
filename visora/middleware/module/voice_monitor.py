# voice_monitor.py：周期轮询语音目录，变化时发布 voices_changed 事件
from __future__ import annotations

import asyncio
import inspect
from typing import Any, Awaitable, Callable, Iterable, List, Optional, Sequence

from visora.app.perception.schemas import VoiceProfile
from visora.common.log import get_logger
from .event_bus import EventBus

logger = get_logger("middleware.voices")


async def _direct(fn: Callable[[], Any]) -> Any:
    r = fn()
    if inspect.isawaitable(r):
        r = await r
    return r


def filter_voices(voices: Iterable[VoiceProfile], prefixes: Sequence[str] = ("en", "hi")) -> List[VoiceProfile]:
    """只保留语言前缀匹配的；一个都不匹配时全部保留。"""
    all_voices = list(voices)
    picked = [v for v in all_voices if v.language_tag.lower().startswith(tuple(prefixes))]
    return picked or all_voices


class VoiceMonitor:
    """
    pyttsx3 没有「目录变化」回调，这里用轮询把它变成推送：
      1) 经 call 调 sink.list_voices()（有语音引擎时 call 是 SpeechQueue.call，保证和 speak 同一线程）
      2) 和上一次快照比较，不同就发布 {"name": "voices_changed", "json_ctx": {"voices": [...]}}
      3) 轮询失败只记日志，不退出

    对外：
      - start()/stop() 控制后台任务
      - poll_once() 立即检查一次（启动时用）
    """

    def __init__(
        self,
        sink: Any,
        bus: EventBus,
        period_ms: int = 5000,
        call: Optional[Callable[[Callable[[], Any]], Awaitable[Any]]] = None,
    ) -> None:
        self._sink = sink
        self._call = call or _direct
        self._bus = bus
        self._period_ms = max(200, period_ms)  # 下限 200ms
        self._task: Optional[asyncio.Task] = None
        self._stop_evt = asyncio.Event()
        self._last: Optional[List[VoiceProfile]] = None

    async def start(self) -> None:
        if self._task is None or self._task.done():
            self._stop_evt.clear()
            self._task = asyncio.create_task(self._run(), name="VoiceMonitor")
            logger.info("voice_monitor_started")

    async def stop(self) -> None:
        if self._task:
            self._stop_evt.set()
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
            logger.info("voice_monitor_stopped")

    async def poll_once(self) -> bool:
        """返回 True 表示目录有变化并已发布。"""
        try:
            voices = list(await self._call(self._sink.list_voices))
        except Exception as e:
            logger.warning(f"list_voices_fail:{e}")
            return False
        if voices == self._last:
            return False
        self._last = voices
        await self._bus.publish_event({"severity": 0, "name": "voices_changed", "json_ctx": {"voices": voices}})
        logger.info(f"voices_changed:{len(voices)}")
        return True

    async def _run(self) -> None:
        period = self._period_ms / 1000.0
        while not self._stop_evt.is_set():
            await self.poll_once()
            try:
                await asyncio.wait_for(self._stop_evt.wait(), timeout=period)
            except asyncio.TimeoutError:
                pass
