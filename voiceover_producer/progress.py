"""Typed progress channel between the pipeline and its caller."""

import asyncio
import json
from typing import AsyncIterator

from voiceover_producer.constants import HEARTBEAT_INTERVAL
from voiceover_producer.models import ProgressEvent

TERMINAL_EVENTS = ("complete", "error")
KEEPALIVE_FRAME = ": keepalive\n\n"


def format_sse(event: ProgressEvent) -> str:
    """Render an event as one server-sent-event frame."""
    return f"data: {json.dumps(event.to_dict())}\n\n"


class ProgressChannel:
    """Single-producer event stream. Percent never decreases; one terminal event."""

    def __init__(self):
        self._queue: asyncio.Queue[ProgressEvent] = asyncio.Queue()
        self.percent = 0
        self.closed = False

    def _put(self, event: ProgressEvent) -> None:
        if self.closed:
            return
        if event.type in TERMINAL_EVENTS:
            self.closed = True
        self._queue.put_nowait(event)

    def progress(self, percent: float, message: str = "") -> None:
        self.percent = max(self.percent, min(int(percent), 100))
        self._put(ProgressEvent("progress", self.percent, message))

    def complete(self, result: dict) -> None:
        self._put(ProgressEvent("complete", 100, result=result))

    def error(self, message: str) -> None:
        self._put(ProgressEvent("error", self.percent, error=message))

    async def events(self, heartbeat_interval: float | None = None) -> AsyncIterator[ProgressEvent]:
        """Yield events until a terminal one.

        With ``heartbeat_interval`` set, a heartbeat event is injected every
        interval seconds regardless of how busy the producer is.
        """
        if heartbeat_interval is None:
            while True:
                event = await self._queue.get()
                yield event
                if event.type in TERMINAL_EVENTS:
                    return

        loop = asyncio.get_running_loop()
        next_beat = loop.time() + heartbeat_interval
        while True:
            remaining = next_beat - loop.time()
            if remaining <= 0:
                next_beat += heartbeat_interval
                yield ProgressEvent("heartbeat")
                continue
            try:
                event = await asyncio.wait_for(self._queue.get(), remaining)
            except asyncio.TimeoutError:
                continue
            yield event
            if event.type in TERMINAL_EVENTS:
                return

    async def sse(self, heartbeat_interval: float = HEARTBEAT_INTERVAL) -> AsyncIterator[str]:
        """Server-sent-event frames, with keepalive comments as heartbeats."""
        async for event in self.events(heartbeat_interval):
            if event.type == "heartbeat":
                yield KEEPALIVE_FRAME
            else:
                yield format_sse(event)
