from __future__ import annotations

from typing import List

from visora.app.perception.schemas import Detection
from visora.common.errors import InferenceError, ModelLoadError
from visora.common.log import get_logger

logger = get_logger("driver.detector")


class YoloDetector:
    """ultralytics YOLO 目标检测；load() 很慢，放在后台线程里调"""

    def __init__(self, weights: str = "yolov8n.pt", conf: float = 0.25):
        self.weights = weights
        self.conf = conf
        self.model = None

    @property
    def loaded(self) -> bool:
        return self.model is not None

    def load(self) -> None:
        logger.info(f"model_loading:{self.weights}")
        try:
            from ultralytics import YOLO

            self.model = YOLO(self.weights)
        except Exception as e:
            raise ModelLoadError(f"could not load {self.weights}: {e}") from e
        logger.info("model_loaded")

    def detect(self, bgr_frame) -> List[Detection]:
        if self.model is None:
            raise InferenceError("model not loaded")
        try:
            # ultralytics expects RGB
            results = self.model.predict(bgr_frame[:, :, ::-1], conf=self.conf, verbose=False)
        except Exception as e:
            raise InferenceError(str(e)) from e

        out: List[Detection] = []
        r0 = results[0]
        if r0.boxes is None:
            return out
        names = r0.names
        for b in r0.boxes:
            cls = int(b.cls[0].item())
            x1, y1, x2, y2 = (float(v) for v in b.xyxy[0].tolist())
            out.append(Detection(
                label=names.get(cls, str(cls)),
                confidence=float(b.conf[0].item()),
                region=(x1, y1, x2 - x1, y2 - y1),
            ))
        return out
