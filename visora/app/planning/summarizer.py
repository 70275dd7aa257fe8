"""把一批检测结果归纳成一句显示文本 + 一句播报文本。"""

from __future__ import annotations

from typing import Iterable, List, Optional

from visora.app.perception.schemas import Detection, Summary

SPEECH_THRESHOLD = 0.55
MAX_CANDIDATES = 6
MAX_SPOKEN = 3

NOTHING_RECOGNIZABLE = Summary(
    display_text="No confident objects",
    speech_text="I do not see anything recognizable.",
)


def unique_labels(
    detections: Optional[Iterable[Detection]],
    threshold: float = SPEECH_THRESHOLD,
    max_candidates: int = MAX_CANDIDATES,
) -> List[str]:
    """过滤 → 按置信度降序（稳定排序）→ 取前 N → 保序去重。"""
    kept = [d for d in (detections or []) if d.confidence >= threshold]
    kept.sort(key=lambda d: d.confidence, reverse=True)
    labels: List[str] = []
    for d in kept[:max_candidates]:
        if d.label not in labels:
            labels.append(d.label)
    return labels


def sentence(short_list: List[str]) -> str:
    if len(short_list) == 1:
        return f"I see a {short_list[0]}."
    if len(short_list) == 2:
        return f"I see a {short_list[0]} and a {short_list[1]}."
    return f"I see a {short_list[0]}, a {short_list[1]}, and a {short_list[2]}."


def summarize(
    detections: Optional[Iterable[Detection]],
    threshold: float = SPEECH_THRESHOLD,
    max_candidates: int = MAX_CANDIDATES,
    max_spoken: int = MAX_SPOKEN,
) -> Summary:
    labels = unique_labels(detections, threshold, max_candidates)
    if not labels:
        return NOTHING_RECOGNIZABLE
    # 句式只有 1/2/3 三种，至少说一个
    short_list = labels[: max(1, min(max_spoken, 3))]
    return Summary(
        display_text="I see " + ", ".join(short_list),
        speech_text=sentence(short_list),
    )
