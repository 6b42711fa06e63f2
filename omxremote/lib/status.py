"""
Playback snapshots and best-effort fan-out to observers.

Each subscriber owns a one-slot queue.  Publishing never waits: if a
subscriber has not picked up the previous snapshot yet, that stale snapshot
is replaced by the new one.  New subscribers only see snapshots published
after they subscribed; the current state comes from Remote.status_snapshot().

Usage:
    broadcaster = StatusBroadcaster()
    async with broadcaster.subscribe() as sub:
        async for snapshot in sub:
            ...
"""

import asyncio
import logging
from dataclasses import dataclass

from .playlist import MediaEntry, Playlist

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class PlaybackSnapshot:
    running: bool
    current: MediaEntry | None = None
    playlist: Playlist | None = None
    state: str = "idle"

    def to_dict(self) -> dict:
        data = {"running": self.running, "state": self.state}
        if self.current is not None:
            data["entry"] = self.current.to_dict()
        if self.playlist is not None:
            data["playlist"] = self.playlist.to_dict()
        return data


class Subscription:
    """One observer's view of the broadcast.  Iterate it or call get()."""

    def __init__(self, broadcaster: "StatusBroadcaster"):
        self._broadcaster = broadcaster
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=1)
        self.closed = False

    def offer(self, snapshot: PlaybackSnapshot) -> bool:
        """Hand over *snapshot* without blocking.  Returns False if one was dropped."""
        replaced = False
        if self._queue.full():
            try:
                self._queue.get_nowait()
                replaced = True
            except asyncio.QueueEmpty:
                pass
        self._queue.put_nowait(snapshot)
        return not replaced

    async def get(self) -> PlaybackSnapshot:
        return await self._queue.get()

    def close(self):
        if not self.closed:
            self.closed = True
            self._broadcaster.unsubscribe(self)

    def __aiter__(self):
        return self

    async def __anext__(self) -> PlaybackSnapshot:
        if self.closed:
            raise StopAsyncIteration
        return await self.get()

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        self.close()


class StatusBroadcaster:
    def __init__(self):
        self._subscribers: set[Subscription] = set()

    def __len__(self):
        return len(self._subscribers)

    def subscribe(self) -> Subscription:
        sub = Subscription(self)
        self._subscribers.add(sub)
        log.debug("Status subscriber added (%d total)", len(self._subscribers))
        return sub

    def unsubscribe(self, sub: Subscription):
        self._subscribers.discard(sub)
        log.debug("Status subscriber removed (%d remaining)", len(self._subscribers))

    def publish(self, snapshot: PlaybackSnapshot):
        """Deliver *snapshot* to every subscriber.  Never blocks."""
        dropped = 0
        for sub in list(self._subscribers):
            if not sub.offer(snapshot):
                dropped += 1
        if dropped:
            log.debug("Replaced unread snapshot for %d slow subscriber(s)", dropped)
