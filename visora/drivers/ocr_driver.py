from __future__ import annotations

import cv2
import pytesseract
from PIL import Image

from visora.common.errors import OcrError
from visora.common.log import get_logger

logger = get_logger("driver.ocr")


class TesseractReader:
    def __init__(self, lang: str = "eng", config: str = "--oem 3 --psm 6"):
        self.lang = lang
        self.config = config

    def recognize(self, bgr_frame) -> str:
        try:
            rgb = cv2.cvtColor(bgr_frame, cv2.COLOR_BGR2RGB)
            text = pytesseract.image_to_string(Image.fromarray(rgb), lang=self.lang, config=self.config)
        except (pytesseract.TesseractError, pytesseract.TesseractNotFoundError, cv2.error) as e:
            raise OcrError(str(e)) from e
        logger.info(f"ocr_chars:{len(text)}")
        return text
