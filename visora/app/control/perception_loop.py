# visora/app/control/perception_loop.py
"""
PerceptionLoop：感知到播报的主循环
- 生命周期：UNINITIALIZED → LOADING（摄像头 + 模型）→ READY{Idle | Running}；失败进 FAILED
- 模式：SCENE（检测 + 摘要）/ TEXT（OCR 原文）；切换只影响下一轮，不打断在途的一轮
- 自动周期：固定 1.4s 一次，忙则跳过；手动「立即描述」等在途那一轮结束后再跑
- 单轮内的适配器异常就地恢复：记日志、更新状态、说一句抱歉，下一轮照常
"""

from __future__ import annotations

import asyncio
import inspect
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional

from visora.app.control.narration_gate import NarrationGate
from visora.app.perception import overlay
from visora.app.perception.schemas import Detection, Mode, Summary, VoiceProfile
from visora.app.planning.summarizer import summarize
from visora.common.config import NarrationSettings, Settings
from visora.common.errors import AcquisitionError, InferenceError, NarrationUnsupported, OcrError
from visora.common.log import get_logger
from visora.middleware.module.event_bus import EventBus
from visora.middleware.module.speech_queue import SpeechQueue
from visora.middleware.module.task_scheduler import CycleScheduler
from visora.middleware.module.voice_monitor import VoiceMonitor, filter_voices

logger = get_logger("app.loop")

STATUS_STARTING = "Starting Visora..."
STATUS_CAMERA_FAILED = "Camera access denied or not available."
STATUS_MODEL_LOADING = "Loading object detection model..."
STATUS_MODEL_READY = "Model loaded. Ready."
STATUS_MODEL_FAILED = "Object detection model failed to load."
STATUS_MODEL_WAIT = "Model loading - please wait..."
STATUS_PAUSED = "Detection paused."
STATUS_RESUMED = "Detection resumed."
STATUS_NO_FRAME = "Waiting for camera frame..."
STATUS_OCR_CAPTURE = "Capturing frame for OCR..."
STATUS_OCR_RUNNING = "Running OCR, please wait..."
STATUS_NO_TEXT = "No readable text found."
STATUS_DETECT_FAILED = "Detection failed. Trying again shortly."
STATUS_OCR_FAILED = "OCR failed. Try better lighting or move closer."
MODE_STATUS = {Mode.SCENE: "Mode: Scene", Mode.TEXT: "Mode: Text (OCR)"}

SPEECH_NO_TEXT = "I could not read any text in this frame."
SPEECH_DETECT_FAILED = "I could not see clearly. Trying again."
SPEECH_OCR_FAILED = "I could not read that. Try a clearer image or brighter light."


class Phase(str, Enum):
    UNINITIALIZED = "uninitialized"
    LOADING = "loading"
    READY = "ready"
    FAILED = "failed"


@dataclass
class RunState:
    running: bool = False
    mode: Mode = Mode.SCENE
    detection_interval_handle: Optional[asyncio.Task] = None


async def _call(fn, *args):
    """协程适配器直接 await；阻塞适配器丢到线程里，不卡事件循环。"""
    if inspect.iscoroutinefunction(fn):
        return await fn(*args)
    return await asyncio.to_thread(fn, *args)


class PerceptionLoop:
    def __init__(
        self,
        frame_source: Any,
        detector: Any,
        ocr_reader: Any,
        sink: Any = None,
        settings: Optional[Settings] = None,
        narration: Optional[NarrationSettings] = None,
        bus: Optional[EventBus] = None,
    ) -> None:
        self.settings = settings or Settings()
        self.narration = narration or NarrationSettings()
        self.bus = bus or EventBus()
        self.camera = frame_source
        self.detector = detector
        self.ocr = ocr_reader

        self.phase = Phase.UNINITIALIZED
        self.run_state = RunState()
        self.status = ""
        self.voices: List[VoiceProfile] = []
        self.last_detections: List[Detection] = []
        self.last_summary: Optional[Summary] = None
        self.annotated = None

        # sink 为 None：没有语音引擎，静默运行
        self._speech_queue = SpeechQueue(sink) if sink is not None else None
        self._voice_monitor = (
            VoiceMonitor(sink, self.bus, self.settings.voice_poll_ms, call=self._speech_queue.call)
            if sink is not None
            else None
        )
        self.gate = NarrationGate(
            self.narration,
            self._speech_queue,
            voice_names=lambda: [v.name for v in self.voices],
            defer_s=self.settings.narration_defer_s,
        )
        self._scheduler = CycleScheduler(self._auto_cycle, period_s=self.settings.cycle_period_s)
        self._cycle_lock = asyncio.Lock()
        self._load_task: Optional[asyncio.Task] = None
        self._voice_task: Optional[asyncio.Task] = None
        self._manual_seq = 0

    # -------- 生命周期 --------
    async def start(self) -> None:
        if self.phase is not Phase.UNINITIALIZED:
            return
        self.phase = Phase.LOADING
        await self._output(STATUS_STARTING)
        try:
            await _call(self.camera.acquire)
        except AcquisitionError as e:
            self.phase = Phase.FAILED
            logger.error(f"camera_error:{e}")
            await self._output(STATUS_CAMERA_FAILED)
            await self._emit_event("acquisition_failed", {"error": str(e)}, severity=3)
            raise

        if self._speech_queue is not None:
            await self._start_speech()

        # 预览先可用，模型在后台加载
        self._load_task = asyncio.create_task(self._load_model(), name="ModelLoad")

    async def _start_speech(self) -> None:
        try:
            await self._speech_queue.start()
        except NarrationUnsupported as e:
            # 没有语音引擎：状态照常更新，只是不出声
            logger.warning(f"narration_unsupported:{e}")
            await self._speech_queue.stop()
            self._speech_queue = None
            self._voice_monitor = None
            self.gate.detach()
            return
        self._voice_task = asyncio.create_task(
            self._follow_voices(self.bus.subscribe_event()), name="VoiceCatalog"
        )
        await self._voice_monitor.start()

    async def _load_model(self) -> None:
        await self._output(STATUS_MODEL_LOADING)
        try:
            await _call(self.detector.load)
        except Exception as e:
            self.phase = Phase.FAILED
            logger.error(f"model_load_error:{e}")
            await self._output(STATUS_MODEL_FAILED)
            await self._emit_event("model_load_failed", {"error": str(e)}, severity=2)
            return
        self.phase = Phase.READY
        await self._output(STATUS_MODEL_READY)
        self._start_auto()

    async def wait_ready(self) -> bool:
        if self._load_task is not None:
            await asyncio.shield(self._load_task)
        return self.phase is Phase.READY

    async def shutdown(self) -> None:
        await self._stop_auto()
        if self._load_task is not None and not self._load_task.done():
            self._load_task.cancel()
        # 在途的一轮跑完再关播报和总线
        await self._scheduler.wait_idle()
        async with self._cycle_lock:
            pass
        if self._voice_monitor is not None:
            await self._voice_monitor.stop()
        await self.gate.drain()
        if self._speech_queue is not None:
            await self._speech_queue.stop()
        await self.bus.shutdown()
        if self._voice_task is not None:
            await self._voice_task
            self._voice_task = None
        release = getattr(self.camera, "release", None)
        if release is not None:
            await _call(release)
        logger.info("loop_shutdown")

    # -------- 用户控制 --------
    async def pause(self) -> None:
        if not self.run_state.running:
            return
        await self._stop_auto()
        await self._output(STATUS_PAUSED)

    async def resume(self) -> None:
        if self.phase is not Phase.READY:
            await self._output(STATUS_MODEL_WAIT)
            return
        self._start_auto()
        await self._output(STATUS_RESUMED)

    async def toggle_pause(self) -> None:
        if self.run_state.running:
            await self.pause()
        else:
            await self.resume()

    async def set_mode(self, mode: Mode | str) -> None:
        mode = Mode(mode)
        self.run_state.mode = mode
        await self._output(MODE_STATUS[mode])
        await self._emit_event("mode_changed", {"mode": mode.value}, severity=0)

    def set_voice(self, name: Optional[str]) -> None:
        self.narration.voice_name = name or None
        logger.info(f"voice_selected:{self.narration.voice_name}")

    def set_rate(self, rate: float) -> float:
        value = self.narration.set_rate(rate)
        logger.info(f"rate_selected:{value}x")
        return value

    async def describe_now(self) -> bool:
        """手动单次；Idle/Running、Scene/Text 都可以，不改变运行状态。"""
        if self.phase is not Phase.READY:
            await self._output(STATUS_MODEL_WAIT)
            return False
        self._manual_seq += 1
        async with self._cycle_lock:
            await self._run_cycle(f"manual-{self._manual_seq}")
        return True

    # -------- 调度 --------
    def _start_auto(self) -> None:
        self.run_state.detection_interval_handle = self._scheduler.start()
        self.run_state.running = True

    async def _stop_auto(self) -> None:
        self.run_state.running = False
        self.run_state.detection_interval_handle = None
        await self._scheduler.stop()

    async def _auto_cycle(self, cycle_id: str) -> None:
        if self._cycle_lock.locked():
            logger.warning("cycle_skipped_busy", extra={"cycle_id": cycle_id})
            return
        if self.run_state.mode is Mode.TEXT and not self.settings.auto_ocr:
            return
        async with self._cycle_lock:
            await self._run_cycle(cycle_id)

    # -------- 单轮 --------
    async def _run_cycle(self, cycle_id: str) -> None:
        mode = self.run_state.mode  # 本轮开始时定格
        try:
            if mode is Mode.SCENE:
                await self._scene_cycle(cycle_id)
            else:
                await self._text_cycle(cycle_id)
        except InferenceError as e:
            logger.error(f"inference_error:{e}", extra={"cycle_id": cycle_id})
            await self._recover(cycle_id, "inference", e, STATUS_DETECT_FAILED, SPEECH_DETECT_FAILED)
        except OcrError as e:
            logger.error(f"ocr_error:{e}", extra={"cycle_id": cycle_id})
            await self._recover(cycle_id, "ocr", e, STATUS_OCR_FAILED, SPEECH_OCR_FAILED)
        except Exception as e:
            logger.error(f"cycle_exception:{type(e).__name__}:{e}", extra={"cycle_id": cycle_id})
            await self._emit_event(
                "cycle_error", {"cycle_id": cycle_id, "error_kind": "unexpected", "error": str(e)}, severity=2
            )

    async def _scene_cycle(self, cycle_id: str) -> None:
        frame = self.camera.current_frame()
        if frame is None:
            await self._output(STATUS_NO_FRAME)
            return
        detections = list(await _call(self.detector.detect, frame))
        self.last_detections = detections
        # 先画框，再决定播报
        self.annotated = overlay.render(frame, detections, self.settings.draw_threshold)
        summary = summarize(
            detections,
            threshold=self.settings.speech_threshold,
            max_candidates=self.settings.max_candidates,
            max_spoken=self.settings.max_spoken,
        )
        self.last_summary = summary
        await self._output(summary.display_text, cycle_id)
        self.gate.offer(summary.speech_text, cycle_id)

    async def _text_cycle(self, cycle_id: str) -> None:
        await self._output(STATUS_OCR_CAPTURE, cycle_id)
        frame = self.camera.still_frame()
        if frame is None:
            await self._output(STATUS_NO_FRAME)
            return
        await self._output(STATUS_OCR_RUNNING, cycle_id)
        text = await _call(self.ocr.recognize, frame)
        cleaned = (text or "").strip()
        if not cleaned:
            await self._output(STATUS_NO_TEXT, cycle_id)
            self.gate.offer(SPEECH_NO_TEXT, cycle_id)
            return
        await self._output(cleaned, cycle_id)
        self.gate.offer(cleaned, cycle_id)

    async def _recover(self, cycle_id: str, kind: str, err: Exception, status: str, speech: str) -> None:
        await self._output(status, cycle_id)
        await self._emit_event(
            "cycle_error", {"cycle_id": cycle_id, "error_kind": kind, "error": str(err)}, severity=1
        )
        self.gate.offer(speech, cycle_id)

    # -------- 语音目录 --------
    async def _follow_voices(self, events) -> None:
        async for e in events:
            if e.get("name") == "voices_changed":
                self.refresh_voices(e["json_ctx"]["voices"])

    def refresh_voices(self, voices: List[VoiceProfile]) -> None:
        self.voices = filter_voices(voices, self.settings.voice_lang_prefixes)
        logger.info(f"voices_refreshed:{len(self.voices)}")

    # -------- 输出 --------
    async def _output(self, text: str, cycle_id: str = "-") -> None:
        self.status = text
        logger.info(f"status:{text}", extra={"cycle_id": cycle_id})
        await self.bus.publish_status(text)

    async def _emit_event(self, name: str, ctx: Dict[str, Any], severity: int) -> None:
        await self.bus.publish_event({"severity": severity, "name": name, "json_ctx": ctx})
