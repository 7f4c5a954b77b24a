"""Live build-log fan-out.

Subscribers join a broadcast group keyed by build identity and receive lines
published after they joined. Delivery is best-effort and at-most-once: a
subscriber whose queue is full misses lines rather than slowing the build.
Earlier output is available from the deployment record's log text.
"""
import asyncio
import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import AsyncIterator, Dict, Optional, Set

from app.config import settings

logger = logging.getLogger(__name__)

SECTION_MARKERS = ("===", "---")


def is_section_marker(line: str) -> bool:
    """Section boundaries are display hints only."""
    return line.startswith(SECTION_MARKERS)


@dataclass(frozen=True)
class LogLine:
    build_id: str
    message: str
    section: bool = False
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict:
        return {
            "build_id": self.build_id,
            "message": self.message,
            "section": self.section,
            "timestamp": self.timestamp.isoformat(),
        }


_CLOSED = object()


class LogSubscription:
    """One observer's view of a build group. Iterate to receive lines; close() to leave."""

    def __init__(self, broadcaster: "LogBroadcaster", build_id: str, maxsize: int):
        self.build_id = build_id
        self._broadcaster = broadcaster
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._closed = False
        self._ended = False
        self.dropped = 0

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def ended(self) -> bool:
        """True once the reader has consumed every line delivered before close."""
        return self._ended

    def _deliver(self, line: LogLine) -> None:
        if self._closed:
            return
        try:
            self._queue.put_nowait(line)
        except asyncio.QueueFull:
            self.dropped += 1

    def _end(self) -> None:
        if self._closed:
            return
        self._closed = True
        # The end marker must fit even when the queue is full of undelivered lines
        while True:
            try:
                self._queue.put_nowait(_CLOSED)
                return
            except asyncio.QueueFull:
                self._queue.get_nowait()
                self.dropped += 1

    def close(self) -> None:
        self._broadcaster._remove(self)
        self._end()

    async def get(self, timeout: Optional[float] = None) -> Optional[LogLine]:
        """Next line, or None once the subscription has ended (or on timeout)."""
        try:
            item = await asyncio.wait_for(self._queue.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None
        if item is _CLOSED:
            self._ended = True
            # Keep the marker for any later get()
            self._queue.put_nowait(_CLOSED)
            return None
        return item

    def __aiter__(self) -> AsyncIterator[LogLine]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[LogLine]:
        while True:
            line = await self.get()
            if line is None:
                return
            yield line


class LogBroadcaster:
    """Registry of broadcast groups, one per build. Held by the application context."""

    def __init__(self, queue_size: Optional[int] = None, closed_retention: Optional[int] = None):
        self.queue_size = queue_size or settings.log_subscriber_queue_size
        self.closed_retention = closed_retention or settings.log_closed_group_retention
        self._groups: Dict[str, Set[LogSubscription]] = {}
        # Most recently closed builds, oldest first; older ones fall back on the record's status
        self._torn_down: "OrderedDict[str, None]" = OrderedDict()

    def subscribe(self, build_id: str) -> LogSubscription:
        subscription = LogSubscription(self, build_id, self.queue_size)
        if build_id in self._torn_down:
            subscription._end()
            return subscription
        self._groups.setdefault(build_id, set()).add(subscription)
        logger.debug(f"Subscriber joined build {build_id} ({len(self._groups[build_id])} total)")
        return subscription

    def publish(self, build_id: str, message: str) -> LogLine:
        line = LogLine(build_id=build_id, message=message, section=is_section_marker(message))
        for subscription in list(self._groups.get(build_id, ())):
            subscription._deliver(line)
        return line

    def unsubscribe_all(self, build_id: str) -> int:
        """End every subscription of the group and release it. Later subscribers get an empty stream."""
        self._torn_down[build_id] = None
        self._torn_down.move_to_end(build_id)
        while len(self._torn_down) > self.closed_retention:
            self._torn_down.popitem(last=False)
        subscriptions = self._groups.pop(build_id, set())
        for subscription in subscriptions:
            subscription._end()
        if subscriptions:
            logger.debug(f"Closed {len(subscriptions)} subscriber(s) of build {build_id}")
        return len(subscriptions)

    def is_torn_down(self, build_id: str) -> bool:
        return build_id in self._torn_down

    def closed_count(self) -> int:
        return len(self._torn_down)

    def subscriber_count(self, build_id: str) -> int:
        return len(self._groups.get(build_id, ()))

    def _remove(self, subscription: LogSubscription) -> None:
        group = self._groups.get(subscription.build_id)
        if group is None:
            return
        group.discard(subscription)
        if not group:
            del self._groups[subscription.build_id]
