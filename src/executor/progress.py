"""Progress channel between a pipeline run and its transport.

The runner is the single producer: it publishes events in strict order.
A transport (SSE response, test harness, log sink) drains them with
`async for`, and iteration stops after the terminal event
(`pipeline_complete` or `error`). The runner never knows how events are
delivered.
"""

import asyncio
import json
import logging
from typing import AsyncIterator

from src.executor.schemas import TERMINAL_EVENT_TYPES, ProgressEvent

logger = logging.getLogger(__name__)


class ChannelClosedError(RuntimeError):
    """Raised when publishing after the terminal event."""


class ProgressChannel:
    """Single-producer, ordered event queue for one run."""

    def __init__(self, maxsize: int = 0):
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._closed = False
        self._history: list[ProgressEvent] = []

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def events(self) -> list[ProgressEvent]:
        """Everything published so far, in order."""
        return list(self._history)

    async def publish(self, event: ProgressEvent) -> None:
        if self._closed:
            raise ChannelClosedError(f"Channel closed, dropping {event.type} event")
        self._history.append(event)
        if event.type in TERMINAL_EVENT_TYPES:
            self._closed = True
        await self._queue.put(event)

    async def __aiter__(self) -> AsyncIterator[ProgressEvent]:
        while True:
            event = await self._queue.get()
            yield event
            if event.type in TERMINAL_EVENT_TYPES:
                return


def format_sse(event: ProgressEvent) -> str:
    """Render an event as a server-sent-events `data:` frame."""
    return f"data: {json.dumps(event.model_dump(mode='json'))}\n\n"
