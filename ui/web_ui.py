import asyncio
import threading

import streamlit as st
from streamlit_autorefresh import st_autorefresh

from visora.app.control.perception_loop import PerceptionLoop
from visora.app.main import build_loop
from visora.app.perception.schemas import Mode
from visora.common.config import NarrationSettings, Settings


# ========================
#   后台事件循环：页面按钮把命令投递进去
# ========================
class LoopRunner:
    def __init__(self, settings: Settings):
        self.aio = asyncio.new_event_loop()
        self.thread = threading.Thread(target=self.aio.run_forever, name="VisoraLoop", daemon=True)
        self.thread.start()
        self.loop: PerceptionLoop = self.call(self._build(settings))
        self.submit(self.loop.start())

    @staticmethod
    async def _build(settings: Settings) -> PerceptionLoop:
        # asyncio 原语要在事件循环线程里创建
        return build_loop(settings, NarrationSettings())

    def call(self, coro, timeout: float = 10.0):
        return asyncio.run_coroutine_threadsafe(coro, self.aio).result(timeout)

    def submit(self, coro):
        return asyncio.run_coroutine_threadsafe(coro, self.aio)

    def set_voice(self, name):
        self.aio.call_soon_threadsafe(self.loop.set_voice, name)

    def set_rate(self, rate):
        self.aio.call_soon_threadsafe(self.loop.set_rate, rate)

    def close(self):
        self.call(self.loop.shutdown())
        self.aio.call_soon_threadsafe(self.aio.stop)


# ========================
#   页面状态与对象初始化
# ========================
st.set_page_config(page_title="Visora", layout="wide")

if "runner" not in st.session_state:
    st.session_state.runner = LoopRunner(Settings())
runner = st.session_state.runner
loop = runner.loop

# ========================
#   页面布局
# ========================
st.title("Visora - scene and text narrator")

with st.sidebar:
    st.header("Controls")
    col1, col2 = st.columns(2)
    with col1:
        if st.button("Scene", type="primary" if loop.run_state.mode is Mode.SCENE else "secondary"):
            runner.submit(loop.set_mode(Mode.SCENE))
    with col2:
        if st.button("Text (OCR)", type="primary" if loop.run_state.mode is Mode.TEXT else "secondary"):
            runner.submit(loop.set_mode(Mode.TEXT))
    st.write("---")
    if st.button("Describe now"):
        runner.submit(loop.describe_now())
    if st.button("⏸ Pause" if loop.run_state.running else "▶ Resume"):
        runner.submit(loop.toggle_pause())
    st.write("---")

    default_label = "Engine default"
    names = [default_label] + [v.name for v in loop.voices]
    labels = {v.name: v.label for v in loop.voices}
    current = loop.narration.voice_name if loop.narration.voice_name in names else default_label
    choice = st.selectbox("Voice", names, index=names.index(current), format_func=lambda n: labels.get(n, n))
    picked = None if choice == default_label else choice
    if picked != loop.narration.voice_name:
        runner.set_voice(picked)

    rate = st.slider("Rate", min_value=0.5, max_value=2.0, value=float(loop.narration.rate), step=0.1,
                     format="%.1fx")
    if rate != loop.narration.rate:
        runner.set_rate(rate)

    st.write("---")
    if st.button("Shut down"):
        runner.close()
        del st.session_state.runner
        st.info("Stopped.")
        st.stop()

# ========================
#   状态与预览
# ========================
st.subheader(loop.status or "...")
st.caption(f"phase: {loop.phase.value} | mode: {loop.run_state.mode.value} | "
           f"running: {loop.run_state.running}")

frame = loop.annotated if loop.run_state.mode is Mode.SCENE and loop.annotated is not None else None
if frame is None:
    frame = loop.camera.current_frame()
if frame is not None:
    st.image(frame, channels="BGR")

if loop.last_detections:
    st.subheader("Detections")
    st.table([
        {"label": d.label, "confidence": f"{d.confidence:.0%}"}
        for d in sorted(loop.last_detections, key=lambda d: d.confidence, reverse=True)
    ])

st_autorefresh(interval=500)
