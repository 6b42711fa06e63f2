# OMX Remote
# Copyright (C) 2024-2026 Markus Kirsten
# SPDX-License-Identifier: GPL-3.0-or-later

"""
ProcessSupervisor — owner of the one omxplayer process.

At most one player runs at a time.  Everything that touches the process
handle or the playlist cursor holds the shared lock, so a play request can
never slip in between a stop (or a natural exit) and its cleanup.

Lifecycle:

    idle ──play()──▶ starting ──▶ running ──exit──▶ exiting ──▶ idle
                                     │                  │
                                     └──stop()──▶ stopping ──▶ idle

On a natural exit the watcher task clears state, publishes a snapshot and,
while auto-advance is on, keeps starting the playlist's next entry; the
chain runs as a loop inside that one task.  stop() switches auto-advance
off and kills the player without any grace period.

The spawn callable is injectable: it receives the argv list and must return
a Popen-like object (stdin, poll(), kill(), wait(timeout), returncode, pid).
"""

import asyncio
import logging
import re
import subprocess
import threading
from urllib.parse import urlsplit

from .errors import AlreadyActive, InvalidLocation, RemoteError, SpawnFailure
from .playlist import MediaEntry, Playlist
from .status import PlaybackSnapshot, StatusBroadcaster

log = logging.getLogger(__name__)

DEFAULT_COMMAND = "omxplayer"
DEFAULT_ARGS = ("--blank", "--adev", "hdmi")   # black background, HDMI audio
DEFAULT_KILL_NAMES = ("omxplayer.bin", "omxplayer")

IDLE = "idle"
STARTING = "starting"
RUNNING = "running"
EXITING = "exiting"
STOPPING = "stopping"

_LINE_SPLIT = re.compile(rb"[\r\n]")
_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]")


def validate_location(url: str) -> str:
    """Return *url* if it is usable as a player location, else InvalidLocation.

    Accepts absolute urls (scheme plus host or path) and absolute file paths.
    """
    if not isinstance(url, str) or not url.strip():
        raise InvalidLocation(url)
    if _CONTROL_CHARS.search(url):
        raise InvalidLocation(url)
    try:
        parts = urlsplit(url)
        parts.port  # raises ValueError on a malformed port
    except ValueError:
        raise InvalidLocation(url) from None
    if parts.scheme:
        if not (parts.netloc or parts.path):
            raise InvalidLocation(url)
    elif not parts.path.startswith("/"):
        raise InvalidLocation(url)
    return url


def _write_pipe(pipe, data: bytes):
    pipe.write(data)
    pipe.flush()


def _log_output(pipe, pid: int):
    """Reader thread: log player output line by line (omxplayer uses \\r)."""
    buf = b""
    try:
        while True:
            chunk = pipe.read1(4096)
            if not chunk:
                break
            buf += chunk
            *lines, buf = _LINE_SPLIT.split(buf)
            for line in lines:
                if line.strip():
                    log.debug("[player %d] %s", pid, line.decode(errors="replace").rstrip())
    except (OSError, ValueError) as e:
        log.debug("[player %d] output reader stopped: %s", pid, e)
    if buf.strip():
        log.debug("[player %d] %s", pid, buf.decode(errors="replace").rstrip())


class ProcessSupervisor:
    POLL_INTERVAL = 0.25   # seconds between exit checks
    REAP_TIMEOUT = 2       # seconds to wait for a killed player to be reaped

    def __init__(self, playlist: Playlist, broadcaster: StatusBroadcaster,
                 lock: asyncio.Lock | None = None, *,
                 command: str = DEFAULT_COMMAND, args=DEFAULT_ARGS,
                 kill_names=DEFAULT_KILL_NAMES, debug_output: bool = False,
                 spawn=None, poll_interval: float | None = None):
        self.playlist = playlist
        self.broadcaster = broadcaster
        self.lock = lock or asyncio.Lock()
        self.command = command
        self.args = list(args)
        self.kill_names = list(kill_names)
        self.debug_output = debug_output
        self.poll_interval = poll_interval or self.POLL_INTERVAL
        self._spawn = spawn or self._popen

        self.process = None
        self.current: MediaEntry | None = None
        self.state = IDLE
        self._watcher_task: asyncio.Task | None = None

    @property
    def active(self) -> bool:
        return self.process is not None

    # ── Snapshots ──

    def snapshot(self) -> PlaybackSnapshot:
        return PlaybackSnapshot(
            running=self.active,
            current=self.current,
            playlist=self.playlist.copy(),
            state=self.state,
        )

    def publish(self):
        self.broadcaster.publish(self.snapshot())

    # ── Public operations ──

    async def play(self, entry: MediaEntry, enqueue: bool = False):
        """Start *entry*.  Returns as soon as the player is spawned.

        With *enqueue*, the entry is also appended to the playlist and
        selected so auto-advance carries on from it.
        """
        async with self.lock:
            if self.process is not None:
                raise AlreadyActive()
            self._start(entry)
            if enqueue:
                self.playlist.select(self.playlist.append(entry))
            self.publish()
            self._watch()

    async def jump(self, choose) -> MediaEntry | None:
        """Move the playlist with ``choose(playlist)`` and play the result.

        Whatever is playing is killed first, without touching auto-advance.
        If *choose* yields nothing, the player is still stopped: the cursor
        no longer points at what it plays.
        """
        async with self.lock:
            entry = choose(self.playlist)
            if entry is None:
                if self.process is not None:
                    log.info("Nothing to play at the new position, stopping player")
                    self.state = STOPPING
                    await self._terminate()
                self.publish()
                return None
            try:
                validate_location(entry.url)
            except InvalidLocation:
                self.publish()
                raise
            if self.process is not None:
                self.state = STOPPING
                await self._terminate()
            try:
                self._start(entry)
            except RemoteError:
                self.publish()
                raise
            self.publish()
            self._watch()
            return entry

    async def write_command(self, code: bytes) -> bool:
        """Send control bytes to the player.  Dropped silently when idle.

        The write happens off the loop and outside the lock; a blocked pipe
        is released by stop(), which kills the reader.
        """
        async with self.lock:
            process = self.process
        if process is None or process.stdin is None:
            log.debug("No player running, dropping command %r", code)
            return False
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, _write_pipe, process.stdin, code)
        except (OSError, ValueError) as e:
            log.warning("Could not write command %r to player: %s", code, e)
            return False
        return True

    async def stop(self) -> bool:
        """Kill the player and disable auto-advance.  No-op when idle."""
        async with self.lock:
            if self.process is None:
                return False
            log.info("Stopping player (%s)", self.current.url if self.current else "?")
            self.playlist.auto_play = False
            self.state = STOPPING
            await self._terminate()
            self.publish()
            return True

    async def sweep_strays(self):
        """killall any leftover player processes (omxplayer forks omxplayer.bin)."""
        if not self.kill_names:
            return
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, lambda: subprocess.run(
                ["killall", *self.kill_names],
                stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL, timeout=5))
        except (OSError, subprocess.SubprocessError) as e:
            log.debug("Stray sweep failed: %s", e)

    async def shutdown(self):
        """Stop playback for good (service exit)."""
        await self.stop()
        if self._watcher_task:
            self._watcher_task.cancel()
            self._watcher_task = None

    # ── Internals (lock held) ──

    def _popen(self, argv):
        capture = self.debug_output
        return subprocess.Popen(
            argv,
            stdin=subprocess.PIPE,
            stdout=subprocess.PIPE if capture else subprocess.DEVNULL,
            stderr=subprocess.STDOUT if capture else subprocess.DEVNULL,
        )

    def _start(self, entry: MediaEntry):
        validate_location(entry.url)
        argv = [self.command, *self.args, entry.url]
        self.state = STARTING
        try:
            process = self._spawn(argv)
        except (OSError, ValueError, subprocess.SubprocessError) as e:
            self.state = IDLE
            log.error("Could not start player for %s: %s", entry.url, e)
            raise SpawnFailure(argv, e) from e

        self.process = process
        self.current = entry
        self.state = RUNNING
        log.info("Playing %s (pid %s)", entry.url, getattr(process, "pid", "?"))

        stdout = getattr(process, "stdout", None)
        if self.debug_output and stdout is not None:
            threading.Thread(
                target=_log_output, args=(stdout, process.pid),
                name=f"player-output-{process.pid}", daemon=True,
            ).start()

    def _watch(self):
        if self._watcher_task is None or self._watcher_task.done():
            self._watcher_task = asyncio.create_task(self._supervise(self.process))

    def _clear(self):
        self.process = None
        self.current = None
        self.state = IDLE

    async def _terminate(self):
        process = self.process
        task, self._watcher_task = self._watcher_task, None
        if task and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        try:
            process.kill()
        except OSError as e:
            log.warning("Kill failed for player %s: %s", getattr(process, "pid", "?"), e)
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, process.wait, self.REAP_TIMEOUT)
        except subprocess.TimeoutExpired:
            log.warning("Player %s still alive after kill", getattr(process, "pid", "?"))
        if process.stdin is not None:
            try:
                process.stdin.close()
            except OSError:
                pass
        await self.sweep_strays()
        self._clear()

    # ── Exit watcher ──

    async def _supervise(self, process):
        """Background task: wait for the player to exit, then auto-advance."""
        try:
            while process is not None:
                while process.poll() is None:
                    await asyncio.sleep(self.poll_interval)
                async with self.lock:
                    if self.process is not process:
                        return  # stopped or replaced meanwhile
                    process = self._on_exit(process)
        except asyncio.CancelledError:
            pass
        except Exception:
            log.exception("Player watcher failed")
        finally:
            if self._watcher_task is asyncio.current_task():
                self._watcher_task = None

    def _on_exit(self, process):
        """Clean up after a natural exit; returns the next process or None."""
        code = process.returncode
        url = self.current.url if self.current else "?"
        if code:
            log.warning("Player exited with status %s (%s)", code, url)
        else:
            log.info("Player finished %s", url)
        if process.stdin is not None:
            try:
                process.stdin.close()
            except OSError:
                pass

        self.state = EXITING
        self._clear()
        self.publish()

        if not self.playlist.auto_play:
            self._watcher_task = None
            return None
        while True:
            entry = self.playlist.next()
            if entry is None:
                log.info("End of playlist")
                self._watcher_task = None
                self.publish()
                return None
            try:
                self._start(entry)
            except RemoteError as e:
                log.error("Skipping playlist entry: %s", e)
                continue
            self.publish()
            return self.process
