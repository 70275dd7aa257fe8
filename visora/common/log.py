# visora/common/log.py：统一日志格式（key=value，一行一事件）
from __future__ import annotations

import logging

_FMT = "ts=%(asctime)s module={module} level=%(levelname)s event=%(message)s cycle_id=%(cycle_id)s"
_DATEFMT = "%Y-%m-%d %H:%M:%S"


class _CycleIdDefault(logging.Filter):
    """没有传 extra={"cycle_id": ...} 的记录补一个 '-'，避免格式化报错。"""

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "cycle_id"):
            record.cycle_id = "-"
        return True


def get_logger(module: str) -> logging.Logger:
    logger = logging.getLogger(module)
    if not logger.handlers:
        _h = logging.StreamHandler()
        _h.setFormatter(logging.Formatter(fmt=_FMT.format(module=module), datefmt=_DATEFMT))
        _h.addFilter(_CycleIdDefault())
        logger.addHandler(_h)
        logger.setLevel(logging.INFO)
    return logger
