# visora/common/config.py：全局配置（所有魔法数字集中在这里）
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional, Tuple


@dataclass
class Settings:
    # ── 摘要 / 叠加层阈值 ──────────────────────────────
    speech_threshold: float = 0.55   # 参与播报的最低置信度
    draw_threshold: float = 0.50     # 画框的最低置信度（比播报宽松）
    max_candidates: int = 6          # 去重前最多取几个
    max_spoken: int = 3              # 一句话里最多说几个物体

    # ── 调度 ───────────────────────────────────────
    cycle_period_s: float = 1.4      # 两次自动检测「开始」之间的间隔
    narration_defer_s: float = 0.1   # 播报前的延迟
    auto_ocr: bool = True            # Text 模式下自动周期也跑 OCR

    # ── 摄像头 ─────────────────────────────────────
    camera_id: int | str = 0
    resolution: Tuple[int, int] = (640, 480)

    # ── 模型 ───────────────────────────────────────
    yolo_weights: str = "yolov8n.pt"
    ocr_lang: str = "eng"
    ocr_config: str = "--oem 3 --psm 6"

    # ── 语音 ───────────────────────────────────────
    voice_lang_prefixes: Tuple[str, ...] = ("en", "hi")
    voice_poll_ms: int = 5000        # 语音目录轮询周期


@dataclass
class NarrationSettings:
    """用户可随时调整；每次真正开口前才读取，不做缓存。"""
    voice_name: Optional[str] = None
    rate: float = 1.0

    min_rate: float = field(default=0.5, repr=False)
    max_rate: float = field(default=2.0, repr=False)

    def set_rate(self, rate: float) -> float:
        try:
            value = float(rate)
        except (TypeError, ValueError):
            value = 1.0
        self.rate = min(self.max_rate, max(self.min_rate, value))
        return self.rate
