from __future__ import annotations

from typing import Iterable

import cv2
import numpy as np

from .schemas import Detection

DRAW_THRESHOLD = 0.50

BOX_COLOR = (250, 165, 96)      # BGR of #60a5fa
TAG_BG_COLOR = (22, 11, 6)
TEXT_COLOR = (248, 238, 230)
WASH_ALPHA = 0.06
TAG_HEIGHT = 20


def stroke_width(confidence: float) -> int:
    return int(round(max(2.0, confidence * 4)))


def tag_text(det: Detection) -> str:
    return f"{det.label} ({round(det.confidence * 100)}%)"


def render(frame: np.ndarray, detections: Iterable[Detection], threshold: float = DRAW_THRESHOLD) -> np.ndarray:
    """在画面副本上画框和标签，原图不动。"""
    canvas = frame.copy()
    # 先整体压一层很淡的黑色，纯装饰
    canvas = cv2.addWeighted(canvas, 1.0 - WASH_ALPHA, np.zeros_like(canvas), WASH_ALPHA, 0)

    for det in detections:
        if det.confidence < threshold:
            continue
        x, y, w, h = (int(round(v)) for v in det.region)
        cv2.rectangle(canvas, (x, y), (x + w, y + h), BOX_COLOR, stroke_width(det.confidence))

        text = tag_text(det)
        (tw, _), _ = cv2.getTextSize(text, cv2.FONT_HERSHEY_SIMPLEX, 0.5, 1)
        top = max(0, y - TAG_HEIGHT)
        cv2.rectangle(canvas, (x, top), (x + tw + 10, top + TAG_HEIGHT), TAG_BG_COLOR, -1)
        cv2.putText(canvas, text, (x + 6, top + TAG_HEIGHT - 6),
                    cv2.FONT_HERSHEY_SIMPLEX, 0.5, TEXT_COLOR, 1, cv2.LINE_AA)
    return canvas
