# tests/test_perception_loop.py
import asyncio
import threading

import pytest

from fakes import FakeCamera, FakeDetector, FakeOcr, FakeSink, det, fast_settings
from visora.app.control import perception_loop as pl
from visora.app.control.perception_loop import Phase, PerceptionLoop
from visora.app.perception.schemas import Mode, VoiceProfile
from visora.common.errors import (
    AccessDenied,
    AcquisitionError,
    InferenceError,
    ModelLoadError,
    NarrationUnsupported,
    OcrError,
)

CAT_DOG = [det("cat", 0.9), det("cat", 0.6), det("dog", 0.7), det("chair", 0.3)]
PERIOD = 0.05


def make_loop(detector=None, ocr=None, sink="default", camera=None, **settings):
    return PerceptionLoop(
        frame_source=camera or FakeCamera(),
        detector=detector or FakeDetector([CAT_DOG]),
        ocr_reader=ocr or FakeOcr(),
        sink=FakeSink() if sink == "default" else sink,
        settings=fast_settings(**settings),
    )


async def settle(loop):
    await loop.gate.drain()
    if loop._speech_queue is not None:
        await loop._speech_queue.join()


async def ready_loop(**kw):
    loop = make_loop(**kw)
    await loop.start()
    assert await loop.wait_ready()
    return loop


def test_startup_reaches_running_scene():
    async def main():
        loop = make_loop()
        statuses = loop.bus.subscribe_status()
        await loop.start()
        assert await loop.wait_ready()
        assert loop.phase is Phase.READY
        assert loop.run_state.running
        assert loop.run_state.detection_interval_handle is not None
        assert loop.run_state.mode is Mode.SCENE
        await loop.shutdown()
        got = [s async for s in statuses]
        assert got[:3] == [pl.STATUS_STARTING, pl.STATUS_MODEL_LOADING, pl.STATUS_MODEL_READY]
        assert loop.camera.released

    asyncio.run(main())


def test_camera_failure_is_terminal():
    async def main():
        detector = FakeDetector()
        loop = make_loop(camera=FakeCamera(fail=AccessDenied("permission denied")), detector=detector)
        with pytest.raises(AcquisitionError):
            await loop.start()
        assert loop.phase is Phase.FAILED
        assert loop.status == pl.STATUS_CAMERA_FAILED
        assert not detector.loaded
        assert not loop.run_state.running
        # 不自动重试
        await loop.start()
        assert loop.phase is Phase.FAILED
        await loop.shutdown()

    asyncio.run(main())


def test_model_failure_keeps_preview():
    async def main():
        loop = make_loop(detector=FakeDetector(load_error=ModelLoadError("weights missing")))
        await loop.start()
        assert not await loop.wait_ready()
        assert loop.phase is Phase.FAILED
        assert loop.status == pl.STATUS_MODEL_FAILED
        assert not loop.run_state.running
        assert loop.run_state.detection_interval_handle is None
        assert loop.camera.current_frame() is not None
        assert not await loop.describe_now()
        await loop.shutdown()

    asyncio.run(main())


def test_preview_available_before_model_and_no_cycles():
    async def main():
        detector = FakeDetector([CAT_DOG])
        detector.load_gate = asyncio.Event()
        loop = make_loop(detector=detector)
        await loop.start()
        await asyncio.sleep(PERIOD * 3)
        assert loop.phase is Phase.LOADING
        assert loop.camera.current_frame() is not None
        assert not await loop.describe_now()
        assert loop.status == pl.STATUS_MODEL_WAIT
        assert detector.calls == 0
        detector.load_gate.set()
        assert await loop.wait_ready()
        await loop.shutdown()

    asyncio.run(main())


def test_auto_cycles_summarize_and_speak_once():
    async def main():
        loop = await ready_loop()
        await asyncio.sleep(PERIOD * 5.5)
        await settle(loop)
        assert loop.detector.calls >= 3
        assert loop.status == "I see cat, dog"
        assert loop.annotated is not None and loop.annotated.shape == loop.camera.frame.shape
        sink = loop._speech_queue._sink
        assert sink.texts == ["I see a cat and a dog."]
        await loop.shutdown()

    asyncio.run(main())


def test_pause_stops_cycles_and_resume_restarts():
    async def main():
        loop = await ready_loop()
        await asyncio.sleep(PERIOD * 3.5)
        await loop.pause()
        assert not loop.run_state.running
        assert loop.run_state.detection_interval_handle is None
        assert loop.status == pl.STATUS_PAUSED
        calls = loop.detector.calls
        await asyncio.sleep(PERIOD * 4)
        assert loop.detector.calls == calls

        await loop.resume()
        assert loop.run_state.running
        assert loop.run_state.detection_interval_handle is not None
        assert loop.status == pl.STATUS_RESUMED
        await asyncio.sleep(PERIOD * 3.5)
        assert loop.detector.calls > calls
        await loop.shutdown()

    asyncio.run(main())


def test_resume_twice_does_not_stack_timers():
    async def main():
        loop = await ready_loop()
        await loop.pause()
        await loop.resume()
        await loop.resume()
        calls = loop.detector.calls
        await asyncio.sleep(PERIOD * 6.5)
        assert loop.detector.calls - calls <= 7
        await loop.shutdown()

    asyncio.run(main())


def test_mode_switch_does_not_interrupt_inflight_cycle():
    async def main():
        # 周期很长，只测手动那一轮
        loop = await ready_loop(cycle_period_s=30)
        loop.detector.hold()
        task = asyncio.create_task(loop.describe_now())
        await loop.detector.entered.wait()
        await loop.set_mode(Mode.TEXT)
        loop.detector.release()
        assert await task
        await settle(loop)
        assert loop.ocr.calls == 0
        assert loop.last_summary.speech_text == "I see a cat and a dog."
        assert loop._speech_queue._sink.texts == ["I see a cat and a dog."]
        assert loop.run_state.mode is Mode.TEXT
        await loop.shutdown()

    asyncio.run(main())


def test_pause_lets_inflight_cycle_finish_and_show():
    async def main():
        loop = await ready_loop()
        loop.detector.hold()
        await loop.detector.entered.wait()
        await loop.pause()
        loop.detector.release()
        await asyncio.sleep(0.02)
        await settle(loop)
        assert loop.status == "I see cat, dog"
        assert loop._speech_queue._sink.texts == ["I see a cat and a dog."]
        await loop.shutdown()

    asyncio.run(main())


def test_busy_cycle_skips_automatic_ticks():
    async def main():
        loop = await ready_loop()
        loop.detector.hold()
        await loop.detector.entered.wait()
        await asyncio.sleep(PERIOD * 5)
        assert loop.detector.calls == 1
        loop.detector.release()
        await loop.shutdown()

    asyncio.run(main())


def test_manual_trigger_waits_for_inflight_cycle():
    async def main():
        loop = await ready_loop()
        loop.detector.hold()
        await loop.detector.entered.wait()
        await loop.pause()
        task = asyncio.create_task(loop.describe_now())
        await asyncio.sleep(PERIOD)
        assert not task.done()
        assert loop.detector.calls == 1
        loop.detector.release()
        assert await task
        assert loop.detector.calls == 2
        assert not loop.run_state.running
        await loop.shutdown()

    asyncio.run(main())


def test_manual_text_read_while_idle():
    async def main():
        loop = await ready_loop(ocr=FakeOcr(["  EXIT  \n"]))
        await loop.pause()
        await loop.set_mode(Mode.TEXT)
        assert loop.status == "Mode: Text (OCR)"
        assert await loop.describe_now()
        await settle(loop)
        assert loop.status == "EXIT"
        assert loop._speech_queue._sink.texts == ["EXIT"]
        assert not loop.run_state.running
        await loop.shutdown()

    asyncio.run(main())


def test_blank_ocr_apologizes_once():
    async def main():
        loop = await ready_loop(ocr=FakeOcr(["   "]))
        await loop.pause()
        await loop.set_mode(Mode.TEXT)
        statuses = loop.bus.subscribe_status()
        await loop.describe_now()
        await loop.describe_now()
        await settle(loop)
        assert loop.status == pl.STATUS_NO_TEXT
        assert loop._speech_queue._sink.texts == [pl.SPEECH_NO_TEXT]
        await loop.shutdown()
        got = [s async for s in statuses]
        assert got[:3] == [pl.STATUS_OCR_CAPTURE, pl.STATUS_OCR_RUNNING, pl.STATUS_NO_TEXT]

    asyncio.run(main())


def test_auto_cycles_run_ocr_in_text_mode():
    async def main():
        loop = await ready_loop(ocr=FakeOcr(["STOP"]))
        await loop.set_mode(Mode.TEXT)
        await asyncio.sleep(PERIOD * 3.5)
        await settle(loop)
        assert loop.ocr.calls >= 2
        assert loop._speech_queue._sink.texts == ["STOP"]
        await loop.shutdown()

    asyncio.run(main())


def test_auto_ocr_can_be_disabled():
    async def main():
        loop = await ready_loop(ocr=FakeOcr(["STOP"]), auto_ocr=False)
        await loop.set_mode(Mode.TEXT)
        await asyncio.sleep(PERIOD * 3.5)
        assert loop.ocr.calls == 0
        assert await loop.describe_now()
        assert loop.ocr.calls == 1
        await loop.shutdown()

    asyncio.run(main())


def test_inference_error_is_recovered():
    async def main():
        detector = FakeDetector([InferenceError("cuda oom"), CAT_DOG])
        loop = await ready_loop(detector=detector)
        await asyncio.sleep(PERIOD * 4.5)
        await settle(loop)
        assert loop.run_state.running
        assert loop._speech_queue._sink.texts == [pl.SPEECH_DETECT_FAILED, "I see a cat and a dog."]
        assert loop.status == "I see cat, dog"
        await loop.shutdown()

    asyncio.run(main())


def test_inference_error_publishes_cycle_error():
    async def main():
        loop = await ready_loop(cycle_period_s=30, detector=FakeDetector([InferenceError("cuda oom")]))
        events = loop.bus.subscribe_event()
        await loop.describe_now()
        assert loop.status == pl.STATUS_DETECT_FAILED
        await loop.shutdown()
        errors = [e for e in [e async for e in events] if e["name"] == "cycle_error"]
        assert len(errors) == 1
        assert errors[0]["json_ctx"]["error_kind"] == "inference"
        assert errors[0]["json_ctx"]["cycle_id"] == "manual-1"

    asyncio.run(main())


def test_ocr_error_is_recovered():
    async def main():
        loop = await ready_loop(ocr=FakeOcr([OcrError("tesseract missing")]))
        await loop.pause()
        await loop.set_mode(Mode.TEXT)
        events = loop.bus.subscribe_event()
        await loop.describe_now()
        await settle(loop)
        assert loop.status == pl.STATUS_OCR_FAILED
        assert loop._speech_queue._sink.texts == [pl.SPEECH_OCR_FAILED]
        await loop.shutdown()
        errors = [e for e in [e async for e in events] if e["name"] == "cycle_error"]
        assert [e["json_ctx"]["error_kind"] for e in errors] == ["ocr"]

    asyncio.run(main())


def test_unexpected_error_does_not_stop_scheduler():
    async def main():
        loop = await ready_loop(detector=FakeDetector([ValueError("bad tensor"), CAT_DOG]))
        await asyncio.sleep(PERIOD * 4.5)
        assert loop.run_state.running
        assert loop.status == "I see cat, dog"
        await loop.shutdown()

    asyncio.run(main())


def test_missing_frame_ends_cycle_quietly():
    async def main():
        loop = await ready_loop(cycle_period_s=30)
        loop.camera.frame = None
        await loop.describe_now()
        assert loop.status == pl.STATUS_NO_FRAME
        assert loop.detector.calls == 0
        await loop.shutdown()

    asyncio.run(main())


def test_silent_without_speech_engine():
    async def main():
        loop = await ready_loop(sink=None)
        await asyncio.sleep(PERIOD * 2.5)
        assert loop.status == "I see cat, dog"
        assert loop.gate.state.last_spoken_text == "I see a cat and a dog."
        assert loop.voices == []
        await loop.shutdown()

    asyncio.run(main())


def test_voice_catalog_follows_engine():
    async def main():
        loop = await ready_loop(cycle_period_s=30)
        await asyncio.sleep(0.05)
        assert [v.name for v in loop.voices] == ["Alex", "Lekha"]
        sink = loop._speech_queue._sink
        sink.voices = sink.voices[1:]
        await asyncio.sleep(0.35)
        assert [v.name for v in loop.voices] == ["Lekha"]
        await loop.shutdown()

    asyncio.run(main())


def test_voice_selection_and_fallback():
    async def main():
        loop = await ready_loop(cycle_period_s=30, detector=FakeDetector([[det("cat", 0.9)], [det("dog", 0.9)]]))
        await asyncio.sleep(0.05)
        loop.set_voice("Ghost")
        loop.set_rate(1.25)
        await loop.describe_now()
        await settle(loop)
        loop.set_voice("Lekha")
        await loop.describe_now()
        await settle(loop)
        assert loop._speech_queue._sink.said == [
            ("I see a cat.", None, 1.25),
            ("I see a dog.", "Lekha", 1.25),
        ]
        await loop.shutdown()

    asyncio.run(main())


class ThreadedSink:
    """阻塞式 sink，记录每个方法在哪个线程上被调用。"""

    def __init__(self, fail_open=False):
        self.fail_open = fail_open
        self.threads = {"open": set(), "list_voices": set(), "speak": set()}
        self.said = []

    def open(self):
        self.threads["open"].add(threading.get_ident())
        if self.fail_open:
            raise NarrationUnsupported("no audio device")

    def list_voices(self):
        self.threads["list_voices"].add(threading.get_ident())
        return [VoiceProfile("Alex", "en-US", True)]

    def speak(self, text, voice_name=None, rate=1.0):
        self.threads["speak"].add(threading.get_ident())
        self.said.append(text)


def test_speech_engine_used_from_one_worker_thread():
    async def main():
        sink = ThreadedSink()
        loop = await ready_loop(cycle_period_s=30, sink=sink)
        await asyncio.sleep(0.05)
        await loop.describe_now()
        await settle(loop)
        await loop.shutdown()
        assert sink.said == ["I see a cat and a dog."]
        assert all(sink.threads.values())
        used = set().union(*sink.threads.values())
        assert len(used) == 1
        assert threading.get_ident() not in used

    asyncio.run(main())


def test_engine_that_cannot_open_runs_silently():
    async def main():
        sink = ThreadedSink(fail_open=True)
        loop = await ready_loop(cycle_period_s=30, sink=sink)
        assert loop._speech_queue is None
        await loop.describe_now()
        await settle(loop)
        assert loop.status == "I see cat, dog"
        assert loop.gate.state.last_spoken_text == "I see a cat and a dog."
        assert sink.said == []
        assert loop.voices == []
        await loop.shutdown()

    asyncio.run(main())


def test_shutdown_waits_for_inflight_cycle():
    async def main():
        loop = await ready_loop()
        loop.detector.hold()
        await loop.detector.entered.wait()
        closing = asyncio.create_task(loop.shutdown())
        await asyncio.sleep(PERIOD)
        assert not closing.done()
        loop.detector.release()
        await closing
        assert loop.status == "I see cat, dog"
        assert loop.gate.state.last_spoken_text == "I see a cat and a dog."
        assert loop.camera.released

    asyncio.run(main())
