"""Shared fixtures: a fake omxplayer so no real process is ever spawned."""

import asyncio
import itertools

import pytest

from omxremote.lib.context import Remote
from omxremote.lib.playlist import MediaEntry

_pids = itertools.count(4000)


class FakeStdin:
    def __init__(self):
        self.writes: list[bytes] = []
        self.closed = False
        self.broken = False

    def write(self, data: bytes) -> int:
        if self.closed:
            raise ValueError("I/O operation on closed file")
        if self.broken:
            raise BrokenPipeError(32, "Broken pipe")
        self.writes.append(bytes(data))
        return len(data)

    def flush(self):
        pass

    def close(self):
        self.closed = True


class FakeProcess:
    """Popen look-alike; finish() simulates the player exiting on its own."""

    def __init__(self, argv):
        self.argv = argv
        self.pid = next(_pids)
        self.stdin = FakeStdin()
        self.stdout = None
        self.returncode = None
        self.killed = False
        self.kill_error = None

    @property
    def url(self):
        return self.argv[-1]

    def poll(self):
        return self.returncode

    def finish(self, code=0):
        self.returncode = code

    def kill(self):
        self.killed = True
        if self.kill_error:
            raise self.kill_error
        if self.returncode is None:
            self.returncode = -9

    def wait(self, timeout=None):
        return self.returncode


class FakeSpawner:
    def __init__(self):
        self.processes: list[FakeProcess] = []
        self.error = None

    def __call__(self, argv):
        if self.error:
            raise self.error
        process = FakeProcess(argv)
        self.processes.append(process)
        return process

    @property
    def last(self) -> FakeProcess:
        return self.processes[-1]

    @property
    def urls(self):
        return [p.url for p in self.processes]


@pytest.fixture
def spawner():
    return FakeSpawner()


@pytest.fixture
def make_remote(spawner):
    """Build a Remote wired to the fake spawner (call inside the event loop)."""

    def factory(entries=None, **options):
        options.setdefault("spawn", spawner)
        options.setdefault("kill_names", ())
        options.setdefault("poll_interval", 0.005)
        return Remote(entries, **options)

    return factory


@pytest.fixture
def entries():
    """Build MediaEntry objects for http://example/1 .. /n."""

    def build(n, start=1):
        return [MediaEntry(f"http://example/{i}") for i in range(start, start + n)]

    return build


@pytest.fixture
def wait_until():
    async def wait(predicate, timeout=1.0):
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("condition not met in time")
            await asyncio.sleep(0.005)

    return wait
