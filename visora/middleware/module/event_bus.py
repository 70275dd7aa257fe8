"""
event_bus.py：轻量级发布订阅总线（asyncio）
- 两条通道：status（当前状态文本）、event（语音目录变化/周期错误/生命周期）
- 多订阅者广播（每个订阅者独立队列，互不阻塞）
- 背压：队列满时默认丢最旧的一条
- shutdown() 后投递终止哨兵，订阅端自然退出

对上契约：
  bus = EventBus()
  await bus.publish_status("Model loaded. Ready.")
  await bus.publish_event({"name": "voices_changed", "json_ctx": {...}})
  async for s in bus.subscribe_status(): ...
  async for e in bus.subscribe_event(): ...
  await bus.shutdown()
"""

from __future__ import annotations

import asyncio
from typing import Any, AsyncIterator, Dict, List

from visora.common.log import get_logger

logger = get_logger("middleware.event_bus")

_SENTINEL = object()


class _Broadcast:
    def __init__(self, name: str, drop_policy: str = "drop_oldest") -> None:
        self._name = name
        self._subs: List[asyncio.Queue] = []
        self._closed = False
        # drop_oldest / drop_newest
        self._drop_policy = drop_policy

    def register(self, maxsize: int = 100) -> asyncio.Queue:
        q: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        if self._closed:
            q.put_nowait(_SENTINEL)
        self._subs.append(q)
        logger.info(f"{self._name}_subscribe")
        return q

    def unregister(self, q: asyncio.Queue) -> None:
        try:
            self._subs.remove(q)
        except ValueError:
            pass

    def publish(self, item: Any) -> None:
        if self._closed:
            return
        for q in list(self._subs):
            try:
                if q.full():
                    if self._drop_policy == "drop_newest":
                        continue
                    try:
                        q.get_nowait()
                    except asyncio.QueueEmpty:
                        pass
                q.put_nowait(item)
            except Exception as e:  # 不让单个订阅者影响总线
                logger.warning(f"{self._name}_publish_fail:{e}")
                self.unregister(q)

    def close(self) -> None:
        self._closed = True
        for q in list(self._subs):
            try:
                if q.full():
                    q.get_nowait()
                q.put_nowait(_SENTINEL)
            except Exception:
                pass
        logger.info(f"{self._name}_closed")

    def subscribe(self, maxsize: int) -> AsyncIterator[Any]:
        # 调用时就登记队列，订阅者还没开始迭代也不会漏消息
        return self._iterate(self.register(maxsize=maxsize))

    async def _iterate(self, q: asyncio.Queue) -> AsyncIterator[Any]:
        try:
            while True:
                item = await q.get()
                if item is _SENTINEL:
                    break
                yield item
        finally:
            self.unregister(q)


class EventBus:
    def __init__(self) -> None:
        self._status = _Broadcast("status")
        self._event = _Broadcast("event")

    async def publish_status(self, text: str) -> None:
        self._status.publish(text)

    async def publish_event(self, payload: Dict[str, Any]) -> None:
        """payload 示例：{"severity": 1, "name": "cycle_error", "json_ctx": {"cycle_id": "c-7"}}"""
        self._event.publish(payload)

    def subscribe_status(self, maxsize: int = 100) -> AsyncIterator[str]:
        return self._status.subscribe(maxsize)

    def subscribe_event(self, maxsize: int = 100) -> AsyncIterator[Dict[str, Any]]:
        return self._event.subscribe(maxsize)

    async def shutdown(self) -> None:
        self._status.close()
        self._event.close()
