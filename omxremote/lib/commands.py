"""
Control-code table and the serial command router.

omxplayer is driven through its STDIN: each transport command is a short
byte sequence.  All symbolic commands pass through one CommandRouter so two
writes never interleave on the player's input stream.

Usage:
    router = CommandRouter(supervisor)
    router.start()
    await router.submit("pause")
    await router.stop()
"""

import asyncio
import logging

from .errors import UnknownCommand

log = logging.getLogger(__name__)

STOP_COMMAND = "stop"

COMMANDS = {
    "pause":             b"p",            # pause / continue playback
    "stop":              b"q",            # stop playback and exit
    "volume_up":         b"+",            # +3 dB
    "volume_down":       b"-",            # -3 dB
    "subtitles":         b"s",            # toggle subtitles
    "seek_back":         b"\x1b[D",       # -30 s
    "seek_back_fast":    b"\x1b[B",       # -600 s
    "seek_forward":      b"\x1b[C",       # +30 s
    "seek_forward_fast": b"\x1b[A",       # +600 s
    "next_audio_stream": b"k",
    "prev_audio_stream": b"j",
}

DEFAULT_QUEUE_SIZE = 16


def control_code(name: str) -> bytes:
    """Look up the byte sequence for *name*; UnknownCommand if there is none."""
    try:
        return COMMANDS[name]
    except KeyError:
        raise UnknownCommand(name) from None


class CommandRouter:
    """Single consumer that forwards queued commands to the supervisor.

    Names are expected to be validated already (see control_code()).
    """

    def __init__(self, supervisor, queue_size: int = DEFAULT_QUEUE_SIZE):
        self.supervisor = supervisor
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self):
        if self.running:
            return
        self._task = asyncio.create_task(self._dispatch_loop())
        log.info("Command router started")

    async def stop(self):
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
            log.info("Command router stopped")

    async def submit(self, name: str):
        """Queue *name* for dispatch.  Waits only if the queue is full."""
        await self._queue.put(name)

    async def join(self):
        """Wait until every queued command has been dispatched."""
        await self._queue.join()

    async def _dispatch_loop(self):
        while True:
            name = await self._queue.get()
            try:
                await self.dispatch(name)
            except Exception:
                log.exception("Command %s failed", name)
            finally:
                self._queue.task_done()

    async def dispatch(self, name: str):
        code = COMMANDS[name]
        log.info("Command: %s", name)
        await self.supervisor.write_command(code)
        # Give omxplayer its 'q', then make sure it is really gone.
        if name == STOP_COMMAND:
            await self.supervisor.stop()
