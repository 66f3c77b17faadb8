"""
Event Channel: one-way progress stream from a job to its caller.

The coordinator pushes named events; the HTTP layer drains them as SSE
frames. The channel is unbounded (a job emits O(items) small frames) and is
closed exactly once; anything sent after close is dropped.

    coordinator ──send()──► asyncio.Queue ──frames()──► StreamingResponse

Frame format::

    event: <name>\\n
    data: <json payload>\\n
    \\n
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, AsyncIterator

from pydantic import BaseModel

from tutor_ingest.schemas.events import EVENT_PAYLOADS, EventName

logger = logging.getLogger(__name__)

_CLOSED = object()


def sse_frame(event: str, data: dict[str, Any]) -> str:
    payload = json.dumps(data, ensure_ascii=False)
    return f"event: {event}\ndata: {payload}\n\n"


class EventChannel:
    def __init__(self) -> None:
        self._queue:  asyncio.Queue[Any] = asyncio.Queue()
        self._closed = False
        self.history: list[tuple[str, dict[str, Any]]] = []

    @property
    def closed(self) -> bool:
        return self._closed

    def send(self, event: EventName | str, payload: BaseModel | dict[str, Any]) -> None:
        """Validate `payload` against the event's model and enqueue it."""
        name = EventName(event)
        if self._closed:
            logger.debug("EventChannel | dropped %s after close", name.value)
            return

        model = EVENT_PAYLOADS[name]
        if not isinstance(payload, model):
            payload = model.model_validate(payload)
        data = payload.model_dump(mode="json", by_alias=True)

        self.history.append((name.value, data))
        self._queue.put_nowait((name.value, data))

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(_CLOSED)

    async def events(self) -> AsyncIterator[tuple[str, dict[str, Any]]]:
        """Yield (event, payload) pairs until the channel is closed."""
        while True:
            item = await self._queue.get()
            if item is _CLOSED:
                return
            yield item

    async def frames(self) -> AsyncIterator[str]:
        async for event, data in self.events():
            yield sse_frame(event, data)

    # Convenience views over history

    def names(self) -> list[str]:
        return [name for name, _ in self.history]

    def payloads(self, event: EventName | str) -> list[dict[str, Any]]:
        name = EventName(event).value
        return [data for n, data in self.history if n == name]
