import asyncio
import time
from collections import deque
from typing import Any, Deque, Dict, List, Optional


class EventBus:
    """In-memory fan-out of lifecycle events to subscriber queues."""

    def __init__(self, replay_size: int = 200) -> None:
        self.subscribers: List[asyncio.Queue] = []
        self.recent: Deque[Dict[str, Any]] = deque(maxlen=replay_size)
        self.lock = asyncio.Lock()
        self._seq = 0

    async def emit(self, event_type: str, payload: Optional[dict] = None) -> dict:
        self._seq += 1
        event = {**(payload or {}), "seq": self._seq, "event_type": event_type, "ts": time.time()}
        self.recent.append(event)
        async with self.lock:
            queues = list(self.subscribers)
        for q in queues:
            await q.put(event)
        return event

    async def subscribe(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue()
        async with self.lock:
            self.subscribers.append(queue)
        return queue

    async def unsubscribe(self, queue: asyncio.Queue) -> None:
        async with self.lock:
            if queue in self.subscribers:
                self.subscribers.remove(queue)

    def list_recent(self, event_type: Optional[str] = None) -> List[Dict[str, Any]]:
        if event_type is None:
            return list(self.recent)
        return [ev for ev in self.recent if ev["event_type"] == event_type]
