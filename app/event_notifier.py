from __future__ import annotations

import asyncio
import json
import threading
import time
from collections import deque
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import asdict, dataclass


@dataclass(frozen=True)
class RequestEvent:
    seq: int
    request_id: str
    updated_at: str
    type: str

    def as_dict(self) -> dict[str, object]:
        return asdict(self)


class EventNotifier:
    """Bounded in-process log of request change events.

    Sequence numbers are wall-clock milliseconds bumped to stay strictly
    increasing, so a cursor from before a restart still orders sensibly.
    Best effort only: readers that fall behind the buffer must re-read state.
    """

    def __init__(self, *, max_events: int = 50, clock_ms: Callable[[], int] | None = None) -> None:
        self._lock = threading.Lock()
        self._events: deque[RequestEvent] = deque(maxlen=max_events)
        self._last_seq = 0
        self._clock_ms = clock_ms or (lambda: int(time.time() * 1000))

    def publish(self, *, request_id: str, event_type: str, updated_at: str) -> RequestEvent:
        with self._lock:
            seq = max(self._clock_ms(), self._last_seq + 1)
            self._last_seq = seq
            event = RequestEvent(seq=seq, request_id=request_id, updated_at=updated_at, type=event_type)
            self._events.append(event)
            return event

    def events_since(self, since: int) -> list[RequestEvent]:
        with self._lock:
            return [event for event in self._events if event.seq > since]

    def latest_seq(self) -> int:
        with self._lock:
            return self._last_seq

    def reset(self) -> None:
        with self._lock:
            self._events.clear()
            self._last_seq = 0


def format_sse(event: RequestEvent) -> str:
    payload = json.dumps(
        {
            "seq": event.seq,
            "requestId": event.request_id,
            "updatedAt": event.updated_at,
            "type": event.type,
        },
        ensure_ascii=True,
    )
    return f"id: {event.seq}\nevent: request\ndata: {payload}\n\n"


HEARTBEAT_FRAME = ": heartbeat\n\n"


async def stream_events(
    notifier: EventNotifier,
    *,
    since: int,
    is_disconnected: Callable[[], Awaitable[bool]],
    poll_interval: float = 2.0,
    heartbeat_interval: float = 15.0,
    monotonic: Callable[[], float] = time.monotonic,
) -> AsyncIterator[str]:
    cursor = since
    last_sent = monotonic()
    while not await is_disconnected():
        events = notifier.events_since(cursor)
        for event in events:
            yield format_sse(event)
            cursor = event.seq
        if events:
            last_sent = monotonic()
        elif monotonic() - last_sent >= heartbeat_interval:
            yield HEARTBEAT_FRAME
            last_sent = monotonic()
        await asyncio.sleep(poll_interval)
