# OMX Remote
# Copyright (C) 2024-2026 Markus Kirsten
# SPDX-License-Identifier: GPL-3.0-or-later

"""
Remote — the orchestrator context.

One explicitly constructed object owns the lock, the playlist, the status
broadcaster, the process supervisor and the command router.  The HTTP layer
(and the tests) talk to it through the boundary operations below; nothing
lives in module globals, so any number of independent remotes can coexist.

Boundary operations:

    play_request(entry)       — AlreadyActive / InvalidLocation / SpawnFailure
    command_request(name)     — UnknownCommand
    playlist_replace(entries)
    playlist_next()           → MediaEntry | None
    playlist_select(position) → MediaEntry | None
    playlist_append(entry)    → int
    playlist_clear()
    status_snapshot()         → PlaybackSnapshot
    status_stream()           → Subscription
"""

import asyncio
import logging

from .commands import DEFAULT_QUEUE_SIZE, CommandRouter, control_code
from .config import cfg
from .playlist import DEFAULT_HISTORY, MediaEntry, Playlist
from .status import PlaybackSnapshot, StatusBroadcaster, Subscription
from .supervisor import (
    DEFAULT_ARGS, DEFAULT_COMMAND, DEFAULT_KILL_NAMES, ProcessSupervisor,
)

log = logging.getLogger(__name__)


class Remote:
    def __init__(self, entries=None, *, history: int = DEFAULT_HISTORY,
                 queue_size: int = DEFAULT_QUEUE_SIZE, **supervisor_options):
        self.lock = asyncio.Lock()
        self.playlist = Playlist(entries, history=history)
        self.broadcaster = StatusBroadcaster()
        self.supervisor = ProcessSupervisor(
            self.playlist, self.broadcaster, self.lock, **supervisor_options)
        self.router = CommandRouter(self.supervisor, queue_size=queue_size)

    @classmethod
    def from_config(cls, **overrides) -> "Remote":
        """Build a Remote from the JSON config; keyword args win over it."""
        options = {
            "history": cfg("playlist", "history", default=DEFAULT_HISTORY),
            "queue_size": cfg("commands", "queue_size", default=DEFAULT_QUEUE_SIZE),
            "command": cfg("player", "command", default=DEFAULT_COMMAND),
            "args": cfg("player", "args", default=list(DEFAULT_ARGS)),
            "kill_names": cfg("player", "kill_names", default=list(DEFAULT_KILL_NAMES)),
            "debug_output": cfg("player", "debug_output", default=False),
        }
        options.update(overrides)
        return cls(**options)

    # ── Lifecycle ──

    async def start(self):
        """Clear out strays from a previous run and start command dispatch."""
        await self.supervisor.sweep_strays()
        self.router.start()

    async def close(self):
        await self.router.stop()
        await self.supervisor.shutdown()

    # ── Playback ──

    @property
    def running(self) -> bool:
        return self.supervisor.active

    async def play_request(self, entry: MediaEntry):
        """Play *entry* now and make it the playlist's current item."""
        await self.supervisor.play(entry, enqueue=True)

    async def command_request(self, name: str):
        control_code(name)  # UnknownCommand before anything is queued
        await self.router.submit(name)

    async def stop(self) -> bool:
        return await self.supervisor.stop()

    # ── Playlist ──

    async def playlist_replace(self, entries):
        async with self.lock:
            self.playlist.reset(entries)
            log.info("Playlist replaced (%d entries)", len(self.playlist))
            self.supervisor.publish()

    async def playlist_append(self, entry: MediaEntry) -> int:
        async with self.lock:
            index = self.playlist.append(entry)
            self.supervisor.publish()
            return index

    async def playlist_next(self, play: bool = False) -> MediaEntry | None:
        """Advance the cursor.  With *play*, switch playback to the new entry."""
        if play:
            return await self.supervisor.jump(Playlist.next)
        async with self.lock:
            entry = self.playlist.next()
            if entry is None and self.supervisor.active:
                # ran off the end under a playing entry; nothing follows it
                self.playlist.auto_play = False
            self.supervisor.publish()
            return entry

    async def playlist_select(self, position: int, play: bool = False) -> MediaEntry | None:
        if play:
            return await self.supervisor.jump(lambda pl: pl.select(position))
        async with self.lock:
            entry = self.playlist.select(position)
            if entry is not None:
                self.supervisor.publish()
            return entry

    async def playlist_clear(self):
        """Empty the playlist, keeping the playing entry as the sole selection."""
        async with self.lock:
            self.playlist.reset()
            playing = self.supervisor.current
            if playing is not None:
                self.playlist.select(self.playlist.append(playing))
            self.supervisor.publish()

    # ── Status ──

    def status_snapshot(self) -> PlaybackSnapshot:
        return self.supervisor.snapshot()

    def status_stream(self) -> Subscription:
        return self.broadcaster.subscribe()
