import asyncio

from fakes import FakeSink
from visora.app.perception.schemas import VoiceProfile
from visora.middleware.module.event_bus import EventBus
from visora.middleware.module.voice_monitor import VoiceMonitor, filter_voices


def test_filter_keeps_english_and_hindi():
    voices = FakeSink().list_voices()
    assert [v.name for v in filter_voices(voices)] == ["Alex", "Lekha"]


def test_filter_falls_back_to_all_voices():
    voices = [VoiceProfile("Amelie", "fr-CA"), VoiceProfile("Anna", "de-DE")]
    assert filter_voices(voices) == voices


def test_voice_label():
    assert VoiceProfile("Alex", "en-US", True).label == "Alex - en-US (default)"
    assert VoiceProfile("Lekha", "hi-IN").label == "Lekha - hi-IN"


def test_poll_publishes_only_on_change():
    async def main():
        bus = EventBus()
        sink = FakeSink()
        events = bus.subscribe_event()
        mon = VoiceMonitor(sink, bus, period_ms=200)

        assert await mon.poll_once()
        assert not await mon.poll_once()
        sink.voices = sink.voices[:1]
        assert await mon.poll_once()

        await bus.shutdown()
        got = [e async for e in events]
        assert [e["name"] for e in got] == ["voices_changed", "voices_changed"]
        assert [v.name for v in got[-1]["json_ctx"]["voices"]] == ["Alex"]

    asyncio.run(main())


def test_list_voices_failure_is_not_fatal():
    class Broken:
        def list_voices(self):
            raise RuntimeError("driver gone")

    async def main():
        mon = VoiceMonitor(Broken(), EventBus(), period_ms=200)
        assert not await mon.poll_once()
        await mon.start()
        await asyncio.sleep(0.05)
        await mon.stop()

    asyncio.run(main())


def test_poll_goes_through_the_given_caller():
    seen = []

    async def call(fn):
        seen.append(fn.__name__)
        return fn()

    async def main():
        mon = VoiceMonitor(FakeSink(), EventBus(), period_ms=200, call=call)
        assert await mon.poll_once()

    asyncio.run(main())
    assert seen == ["list_voices"]
