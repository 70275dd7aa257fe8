from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Callable, Iterable, Optional, Set

from visora.common.config import NarrationSettings
from visora.common.log import get_logger
from visora.middleware.module.speech_queue import SpeechMsg, SpeechQueue

logger = get_logger("app.narration")

NARRATION_DEFER_S = 0.1


@dataclass
class NarrationState:
    last_spoken_text: str = ""
    last_spoken_at: Optional[float] = None


class NarrationGate:
    """
    按内容去重的播报闸门：和上一次接受的文本（trim 后）完全相同就不说，
    不同就一定说，与间隔时间无关。接受后延迟 100ms 再交给播报队列，
    声音和语速在那一刻才从 NarrationSettings 读取。

    queue 为 None 表示没有语音引擎：照样记录，只是不出声。
    """

    def __init__(
        self,
        settings: NarrationSettings,
        queue: Optional[SpeechQueue] = None,
        voice_names: Callable[[], Iterable[str]] = lambda: (),
        defer_s: float = NARRATION_DEFER_S,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.state = NarrationState()
        self._settings = settings
        self._queue = queue
        self._voice_names = voice_names
        self._defer_s = defer_s
        self._clock = clock
        self._seq = 0
        self._pending: Set[asyncio.Task] = set()

    def should_speak(self, text: str) -> bool:
        return (text or "").strip() != self.state.last_spoken_text

    def record(self, text: str) -> None:
        self.state.last_spoken_text = (text or "").strip()
        self.state.last_spoken_at = self._clock()

    def offer(self, text: str, cycle_id: str = "-") -> bool:
        if not self.should_speak(text):
            logger.info("narration_suppressed", extra={"cycle_id": cycle_id})
            return False
        self.record(text)
        if self._queue is None:
            logger.info("narration_silent", extra={"cycle_id": cycle_id})
            return True
        self._seq += 1
        task = asyncio.create_task(self._deferred(text, f"u-{self._seq}"), name=f"Narration:u-{self._seq}")
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return True

    def detach(self) -> None:
        """语音引擎打不开时调用：之后只记录不出声。"""
        self._queue = None

    def resolve_voice(self) -> Optional[str]:
        name = self._settings.voice_name
        if name and name in set(self._voice_names()):
            return name
        return None  # 交给引擎默认声音

    async def _deferred(self, text: str, utterance_id: str) -> None:
        await asyncio.sleep(self._defer_s)
        if self._queue is None:
            return
        await self._queue.push(SpeechMsg(
            utterance_id=utterance_id,
            text=text,
            voice_name=self.resolve_voice(),
            rate=self._settings.rate,
        ))

    async def drain(self) -> None:
        """等所有已接受但还在延迟中的播报入队（测试/退出时用）。"""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
