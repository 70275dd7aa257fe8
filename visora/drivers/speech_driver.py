from __future__ import annotations

from typing import Any, List, Optional

import pyttsx3

from visora.app.perception.schemas import VoiceProfile
from visora.common.errors import NarrationUnsupported
from visora.common.log import get_logger

logger = get_logger("driver.speech")


def _language_of(voice: Any) -> str:
    # espeak 给的是 b'\x05en-us' 这种带长度前缀的字节串
    langs = getattr(voice, "languages", None) or []
    if not langs:
        return ""
    tag = langs[0]
    if isinstance(tag, bytes):
        tag = tag.decode("utf-8", errors="ignore")
    return str(tag).lstrip("\x00\x01\x02\x03\x04\x05\x06\x07\x08").strip()


class SpeechEngine:
    """
    pyttsx3 语音引擎（阻塞式）。
      open(): 创建引擎；没有可用引擎时抛 NarrationUnsupported
      speak(): 设置声音/语速后 runAndWait，说完才返回
      list_voices(): 当前可用声音的快照
    引擎在哪个线程创建就只能在哪个线程用：open/speak/list_voices 都由 SpeechQueue.call 派到同一个工作线程。
    """

    def __init__(self) -> None:
        self.engine: Any = None
        self.base_rate = 200
        self.default_voice_id: Optional[str] = None

    def open(self) -> None:
        if self.engine is not None:
            return
        try:
            self.engine = pyttsx3.init()
        except Exception as e:
            raise NarrationUnsupported(f"no speech engine: {e}") from e
        self.base_rate = int(self.engine.getProperty("rate") or 200)
        self.default_voice_id = self.engine.getProperty("voice")
        logger.info(f"speech_engine_ready:rate={self.base_rate}")

    def list_voices(self) -> List[VoiceProfile]:
        self.open()
        return [
            VoiceProfile(
                name=v.name,
                language_tag=_language_of(v),
                is_default=(v.id == self.default_voice_id),
            )
            for v in self.engine.getProperty("voices")
        ]

    def _voice_id(self, name: Optional[str]) -> Optional[str]:
        if name:
            for v in self.engine.getProperty("voices"):
                if v.name == name:
                    return v.id
        return self.default_voice_id

    def speak(self, text: str, voice_name: Optional[str] = None, rate: float = 1.0) -> None:
        self.open()
        voice_id = self._voice_id(voice_name)
        if voice_id:
            self.engine.setProperty("voice", voice_id)
        self.engine.setProperty("rate", int(self.base_rate * (rate or 1.0)))
        self.engine.say(text)
        self.engine.runAndWait()
