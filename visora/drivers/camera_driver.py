from __future__ import annotations

import threading
import time
from typing import Optional, Tuple

import cv2
import numpy as np

from visora.common.errors import AccessDenied, DeviceUnavailable
from visora.common.log import get_logger

logger = get_logger("driver.camera")


class CameraDriver:
    """摄像头驱动：acquire() 打开设备并启动后台读帧线程，current_frame() 取最新一帧"""

    def __init__(self, index: int | str = 0, resolution: Tuple[int, int] = (640, 480)):
        self.index = index
        self.resolution = resolution
        self.cap = None
        self.running = False
        self.frame: Optional[np.ndarray] = None
        self.thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()

    def acquire(self) -> None:
        if self.running:
            return
        try:
            self.cap = cv2.VideoCapture(self.index)
        except cv2.error as e:
            raise DeviceUnavailable(f"camera {self.index}: {e}") from e
        if not self.cap.isOpened():
            self.cap.release()
            raise DeviceUnavailable(f"camera {self.index} could not be opened")

        self.cap.set(cv2.CAP_PROP_FRAME_WIDTH, self.resolution[0])
        self.cap.set(cv2.CAP_PROP_FRAME_HEIGHT, self.resolution[1])

        # 打开了却读不到画面，多半是系统权限没给
        ret, frame = self.cap.read()
        if not ret or frame is None:
            self.cap.release()
            raise AccessDenied(f"camera {self.index} opened but returned no frames")
        self.frame = frame

        self.running = True
        self.thread = threading.Thread(target=self._update, daemon=True)
        self.thread.start()
        logger.info(f"camera_acquired:{self.index}")

    def _update(self):
        while self.running:
            ret, frame = self.cap.read()
            if ret:
                with self._lock:
                    self.frame = frame
            else:
                time.sleep(0.03)

    def current_frame(self) -> Optional[np.ndarray]:
        with self._lock:
            return self.frame

    def still_frame(self) -> Optional[np.ndarray]:
        frame = self.current_frame()
        return None if frame is None else frame.copy()

    def release(self):
        self.running = False
        if self.thread is not None:
            self.thread.join(timeout=1.0)
            self.thread = None
        if self.cap is not None:
            self.cap.release()
            self.cap = None
            logger.info("camera_released")
        self.frame = None
