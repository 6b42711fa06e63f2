"""
Playlist model — ordered media entries, a cursor and an auto-advance flag.

Pure data-structure logic: no I/O, no locking.  The Remote context guards
every mutation with its lock; this module just keeps the invariants:

  * cursor is None or a valid index at the moment it is set
  * entries only grow by append or are replaced wholesale
  * after a successful select, at most ``history`` entries up to and
    including the cursor are kept; older ones are dropped and the cursor
    shifts left by the same amount
"""

import copy
import logging
from dataclasses import dataclass, field
from typing import Any

log = logging.getLogger(__name__)

DEFAULT_HISTORY = 3


@dataclass(frozen=True)
class MediaEntry:
    """A playable item.  The url is only validated when it is played."""

    url: str
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data) -> "MediaEntry":
        if not isinstance(data, dict):
            raise ValueError("media entry must be an object")
        url = data.get("url")
        if not isinstance(url, str) or not url:
            raise ValueError("media entry requires a 'url' string")
        metadata = data.get("metadata")
        if metadata is None:
            metadata = {}
        elif not isinstance(metadata, dict):
            raise ValueError("'metadata' must be an object")
        return cls(url=url, metadata=copy.deepcopy(metadata))

    def to_dict(self) -> dict:
        data = {"url": self.url}
        if self.metadata:
            data["metadata"] = copy.deepcopy(self.metadata)
        return data


class Playlist:
    """Entries plus the position currently playing (or last selected)."""

    def __init__(self, entries=None, history: int = DEFAULT_HISTORY):
        if history < 1:
            raise ValueError("history window must hold at least one entry")
        self.history = history
        self.entries: list[MediaEntry] = list(entries or [])
        self.cursor: int | None = None
        self.auto_play = True

    def __len__(self):
        return len(self.entries)

    @property
    def current(self) -> MediaEntry | None:
        if self.cursor is None:
            return None
        return self.entries[self.cursor]

    def next(self) -> MediaEntry | None:
        """Move to the following entry.  Does not wrap around.

        Running off the end resets the cursor to None.
        """
        position = 0 if self.cursor is None else self.cursor + 1
        if position >= len(self.entries):
            self.cursor = None
            return None
        return self.select(position)

    def select(self, position: int) -> MediaEntry | None:
        """Point the cursor at *position* and return that entry.

        Out-of-range positions (including ``len(entries)``) return None and
        leave the cursor alone.
        """
        if not self.entries or position < 0 or position >= len(self.entries):
            return None
        self.cursor = position
        entry = self.entries[position]
        self._trim_history()
        return entry

    def append(self, entry: MediaEntry) -> int:
        """Add *entry* at the end and return its index."""
        self.entries.append(entry)
        return len(self.entries) - 1

    def reset(self, entries=None):
        """Replace everything; cursor cleared, auto-advance re-enabled."""
        self.entries = list(entries or [])
        self.cursor = None
        self.auto_play = True

    def _trim_history(self):
        kept = self.cursor + 1
        if kept < self.history:
            return
        drop = kept - self.history
        if drop:
            del self.entries[:drop]
            self.cursor -= drop
            log.debug("Trimmed %d old playlist entries (cursor now %d)", drop, self.cursor)

    def copy(self) -> "Playlist":
        """Shallow copy for snapshots; entries themselves are immutable."""
        clone = Playlist(self.entries, history=self.history)
        clone.cursor = self.cursor
        clone.auto_play = self.auto_play
        return clone

    def to_dict(self) -> dict:
        return {
            "current_index": -1 if self.cursor is None else self.cursor,
            "entries": [e.to_dict() for e in self.entries],
            "auto_play": self.auto_play,
        }
