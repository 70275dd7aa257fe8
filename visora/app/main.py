#!/usr/bin/env python3
"""
Visora：摄像头画面即时描述 + 语音播报（命令行版）

控制指令（输入后回车）:
  空白/回车 - 立即描述
  p         - 暂停/继续自动检测
  s         - Scene 模式（物体检测）
  t         - Text 模式（OCR）
  v         - 切换下一个声音
  + / -     - 语速 ±0.1x
  q         - 退出
"""

from __future__ import annotations

import argparse
import asyncio
import sys

from visora.app.control.perception_loop import PerceptionLoop
from visora.app.perception.schemas import Mode
from visora.common.config import NarrationSettings, Settings
from visora.common.errors import AcquisitionError
from visora.drivers.camera_driver import CameraDriver
from visora.drivers.detector_driver import YoloDetector
from visora.drivers.ocr_driver import TesseractReader
from visora.drivers.speech_driver import SpeechEngine


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Visora - camera scene and text narrator")
    parser.add_argument("--camera", default="0", help="摄像头 ID 或视频 URL（默认 0）")
    parser.add_argument("--width", type=int, default=640)
    parser.add_argument("--height", type=int, default=480)
    parser.add_argument("--weights", default="yolov8n.pt", help="YOLO 权重（默认 yolov8n.pt）")
    parser.add_argument("--ocr-lang", default="eng")
    parser.add_argument("--period", type=float, default=1.4, help="自动检测间隔秒数（默认 1.4）")
    parser.add_argument("--rate", type=float, default=1.0, help="语速倍率 0.5-2.0")
    parser.add_argument("--voice", help="声音名称（找不到就用引擎默认）")
    parser.add_argument("--mode", default="scene", choices=[m.value for m in Mode])
    parser.add_argument("--no-auto-ocr", action="store_true", help="Text 模式下只在手动触发时跑 OCR")
    return parser.parse_args(argv)


def build_settings(args: argparse.Namespace) -> Settings:
    camera = int(args.camera) if str(args.camera).isdigit() else args.camera
    return Settings(
        camera_id=camera,
        resolution=(args.width, args.height),
        yolo_weights=args.weights,
        ocr_lang=args.ocr_lang,
        cycle_period_s=args.period,
        auto_ocr=not args.no_auto_ocr,
    )


def build_loop(settings: Settings, narration: NarrationSettings) -> PerceptionLoop:
    # 引擎在播报线程上才真正打开，打不开时 PerceptionLoop 转为静默运行
    return PerceptionLoop(
        frame_source=CameraDriver(settings.camera_id, settings.resolution),
        detector=YoloDetector(settings.yolo_weights),
        ocr_reader=TesseractReader(settings.ocr_lang, settings.ocr_config),
        sink=SpeechEngine(),
        settings=settings,
        narration=narration,
    )


def next_voice(loop: PerceptionLoop) -> str | None:
    names = [v.name for v in loop.voices]
    if not names:
        return None
    current = loop.narration.voice_name
    idx = (names.index(current) + 1) % len(names) if current in names else 0
    return names[idx]


async def handle_key(loop: PerceptionLoop, key: str) -> bool:
    """返回 False 表示退出。"""
    key = key.strip().lower()
    if key == "q":
        return False
    if key == "":
        await loop.describe_now()
    elif key == "p":
        await loop.toggle_pause()
    elif key == "s":
        await loop.set_mode(Mode.SCENE)
    elif key == "t":
        await loop.set_mode(Mode.TEXT)
    elif key == "v":
        loop.set_voice(next_voice(loop))
        print(f"voice: {loop.narration.voice_name or 'default'}")
    elif key in ("+", "-"):
        step = 0.1 if key == "+" else -0.1
        print(f"rate: {loop.set_rate(round(loop.narration.rate + step, 2))}x")
    return True


async def print_status(loop: PerceptionLoop) -> None:
    async for text in loop.bus.subscribe_status():
        print(f"> {text}")


async def run(args: argparse.Namespace) -> int:
    settings = build_settings(args)
    narration = NarrationSettings(voice_name=args.voice)
    narration.set_rate(args.rate)
    loop = build_loop(settings, narration)
    printer = asyncio.create_task(print_status(loop), name="StatusPrinter")
    await asyncio.sleep(0)
    try:
        await loop.set_mode(args.mode)
        await loop.start()
        print(__doc__)
        while True:
            line = await asyncio.to_thread(sys.stdin.readline)
            if not line:
                break
            if not await handle_key(loop, line):
                break
    except AcquisitionError:
        return 1
    finally:
        await loop.shutdown()
        await printer
    return 0


def main() -> None:
    args = parse_args()
    try:
        code = asyncio.run(run(args))
    except KeyboardInterrupt:
        code = 0
    sys.exit(code)


if __name__ == "__main__":
    main()
