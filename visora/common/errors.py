# visora/common/errors.py
"""
错误分类：
  AcquisitionError   摄像头不可用/被拒绝：会话级致命，只上报一次，不重试
  ModelLoadError     模型加载失败：上报；摄像头预览仍可用
  InferenceError     单次检测失败：本轮恢复，下一轮照常
  OcrError           单次 OCR 失败：同上
  NarrationUnsupported  无语音引擎：静默运行，状态文本照常更新
"""

from __future__ import annotations


class VisoraError(Exception):
    pass


class AcquisitionError(VisoraError):
    pass


class AccessDenied(AcquisitionError):
    pass


class DeviceUnavailable(AcquisitionError):
    pass


class ModelLoadError(VisoraError):
    pass


class InferenceError(VisoraError):
    pass


class OcrError(VisoraError):
    pass


class NarrationUnsupported(VisoraError):
    pass
