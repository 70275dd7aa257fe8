"""Perception schemas."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Tuple


class Mode(str, Enum):
    SCENE = "scene"
    TEXT = "text"


@dataclass(frozen=True)
class Detection:
    label: str
    confidence: float
    region: Tuple[float, float, float, float]  # x, y, width, height


@dataclass(frozen=True)
class Summary:
    display_text: str
    speech_text: str


@dataclass(frozen=True)
class VoiceProfile:
    name: str
    language_tag: str
    is_default: bool = False

    @property
    def label(self) -> str:
        suffix = " (default)" if self.is_default else ""
        return f"{self.name} - {self.language_tag}{suffix}"
