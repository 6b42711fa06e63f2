"""Tests for omxremote.lib.supervisor: singleton process, stop, exit and auto-advance."""

import asyncio
import logging
import threading

import pytest

from omxremote.lib import supervisor as sv
from omxremote.lib.errors import AlreadyActive, InvalidLocation, SpawnFailure
from omxremote.lib.playlist import MediaEntry, Playlist
from omxremote.lib.status import StatusBroadcaster
from omxremote.lib.supervisor import ProcessSupervisor, validate_location


def _run(coro):
    return asyncio.run(coro)


def _record(remote):
    """Capture every published snapshot in order."""
    published = []
    remote.broadcaster.publish = published.append
    return published


class TestValidateLocation:
    @pytest.mark.parametrize("url", [
        "http://x/a",
        "https://example.com/video.mp4?t=1",
        "rtsp://camera.local:554/stream",
        "file:///media/usb/movie.mkv",
        "/media/usb/movie.mkv",
    ])
    def test_valid(self, url):
        assert validate_location(url) == url

    @pytest.mark.parametrize("url", [
        "", "   ", "not a url", "relative/path.mp4", "http://", "http://[::1",
        "http://host:port/x", None,
    ])
    def test_invalid(self, url):
        with pytest.raises(InvalidLocation):
            validate_location(url)


class TestPlay:
    def test_spawns_with_presentation_args(self, make_remote, spawner):
        async def run():
            remote = make_remote()
            await remote.supervisor.play(MediaEntry("http://x/a"))
            assert spawner.last.argv == ["omxplayer", "--blank", "--adev", "hdmi", "http://x/a"]
            assert remote.supervisor.active
            assert remote.supervisor.state == sv.RUNNING
            assert remote.supervisor.current.url == "http://x/a"
            await remote.close()

        _run(run())

    def test_second_play_conflicts(self, make_remote, spawner):
        async def run():
            remote = make_remote()
            await remote.supervisor.play(MediaEntry("http://x/a"))
            with pytest.raises(AlreadyActive):
                await remote.supervisor.play(MediaEntry("http://x/a"))
            assert len(spawner.processes) == 1
            await remote.close()

        _run(run())

    def test_invalid_location_spawns_nothing(self, make_remote, spawner):
        async def run():
            remote = make_remote()
            with pytest.raises(InvalidLocation):
                await remote.supervisor.play(MediaEntry("not a url"))
            assert spawner.processes == []
            assert not remote.supervisor.active

        _run(run())

    def test_spawn_failure(self, make_remote, spawner):
        async def run():
            remote = make_remote()
            spawner.error = FileNotFoundError(2, "No such file", "omxplayer")
            with pytest.raises(SpawnFailure):
                await remote.supervisor.play(MediaEntry("http://x/a"))
            assert not remote.supervisor.active
            assert remote.supervisor.state == sv.IDLE

        _run(run())

    def test_play_publishes_running_snapshot(self, make_remote):
        async def run():
            remote = make_remote()
            published = _record(remote)
            await remote.supervisor.play(MediaEntry("http://x/a"))
            assert len(published) == 1
            assert published[0].running
            assert published[0].current.url == "http://x/a"
            await remote.close()

        _run(run())


class TestWriteCommand:
    def test_idle_write_is_dropped(self, make_remote):
        async def run():
            remote = make_remote()
            published = _record(remote)
            assert await remote.supervisor.write_command(b"p") is False
            assert published == []
            assert not remote.supervisor.active

        _run(run())

    def test_write_reaches_stdin(self, make_remote, spawner):
        async def run():
            remote = make_remote()
            await remote.supervisor.play(MediaEntry("http://x/a"))
            assert await remote.supervisor.write_command(b"\x1b[C") is True
            assert spawner.last.stdin.writes == [b"\x1b[C"]
            await remote.close()

        _run(run())

    def test_broken_pipe_is_logged_not_raised(self, make_remote, spawner, caplog):
        async def run():
            remote = make_remote()
            await remote.supervisor.play(MediaEntry("http://x/a"))
            spawner.last.stdin.broken = True
            assert await remote.supervisor.write_command(b"p") is False
            await remote.close()

        with caplog.at_level(logging.WARNING, logger="omxremote.lib.supervisor"):
            _run(run())
        assert "Could not write command" in caplog.text


class TestStop:
    def test_stop_when_idle_is_noop(self, make_remote):
        async def run():
            remote = make_remote()
            published = _record(remote)
            assert await remote.supervisor.stop() is False
            assert published == []
            assert remote.playlist.auto_play is True

        _run(run())

    def test_stop_kills_and_disables_auto_play(self, make_remote, spawner):
        async def run():
            remote = make_remote()
            await remote.supervisor.play(MediaEntry("http://x/a"))
            published = _record(remote)
            assert await remote.supervisor.stop() is True
            assert spawner.last.killed
            assert spawner.last.stdin.closed
            assert not remote.supervisor.active
            assert remote.supervisor.current is None
            assert remote.supervisor.state == sv.IDLE
            assert remote.playlist.auto_play is False
            assert [s.running for s in published] == [False]

        _run(run())

    def test_stop_suppresses_auto_advance(self, make_remote, spawner, entries):
        async def run():
            remote = make_remote(entries(3))
            await remote.playlist_next(play=True)
            process = spawner.last
            await remote.supervisor.stop()
            process.finish(0)
            await asyncio.sleep(0.05)
            assert len(spawner.processes) == 1
            assert not remote.supervisor.active

        _run(run())

    def test_kill_failure_still_resets_state(self, make_remote, spawner, caplog):
        async def run():
            remote = make_remote()
            await remote.supervisor.play(MediaEntry("http://x/a"))
            spawner.last.kill_error = ProcessLookupError(3, "No such process")
            await remote.supervisor.stop()
            assert not remote.supervisor.active
            assert remote.supervisor.current is None

        with caplog.at_level(logging.WARNING, logger="omxremote.lib.supervisor"):
            _run(run())
        assert "Kill failed" in caplog.text

    def test_play_after_stop(self, make_remote, spawner):
        async def run():
            remote = make_remote()
            await remote.supervisor.play(MediaEntry("http://x/a"))
            await remote.supervisor.stop()
            await remote.supervisor.play(MediaEntry("http://x/b"))
            assert spawner.urls == ["http://x/a", "http://x/b"]
            await remote.close()

        _run(run())


class TestNaturalExit:
    def test_exit_returns_to_idle(self, make_remote, spawner, wait_until):
        async def run():
            remote = make_remote()
            remote.playlist.auto_play = False
            await remote.supervisor.play(MediaEntry("http://x/a"))
            spawner.last.finish(0)
            await wait_until(lambda: not remote.supervisor.active)
            assert remote.supervisor.current is None
            assert remote.supervisor.state == sv.IDLE

        _run(run())

    def test_auto_advance_chain(self, make_remote, spawner, entries, wait_until):
        async def run():
            remote = make_remote(entries(3))
            await remote.playlist_next(play=True)
            for expected in (1, 2):
                assert spawner.last.url == f"http://example/{expected}"
                spawner.last.finish(0)
                await wait_until(lambda: len(spawner.processes) == expected + 1)
            assert spawner.last.url == "http://example/3"
            spawner.last.finish(0)
            await wait_until(lambda: not remote.supervisor.active)
            assert spawner.urls == [f"http://example/{i}" for i in (1, 2, 3)]
            assert remote.supervisor.current is None
            assert remote.playlist.cursor is None

        _run(run())

    def test_chain_skips_bad_entries(self, make_remote, spawner, wait_until):
        async def run():
            remote = make_remote([MediaEntry("http://x/1"), MediaEntry("bogus"),
                                  MediaEntry("http://x/3")])
            await remote.playlist_next(play=True)
            spawner.last.finish(0)
            await wait_until(lambda: len(spawner.processes) == 2)
            assert spawner.last.url == "http://x/3"
            await remote.close()

        _run(run())

    def test_nonzero_exit_is_logged(self, make_remote, spawner, wait_until, caplog):
        async def run():
            remote = make_remote()
            await remote.supervisor.play(MediaEntry("http://x/a"))
            spawner.last.finish(1)
            await wait_until(lambda: not remote.supervisor.active)

        with caplog.at_level(logging.WARNING, logger="omxremote.lib.supervisor"):
            _run(run())
        assert "exited with status 1" in caplog.text

    def test_snapshots_follow_transitions(self, make_remote, spawner, entries, wait_until):
        async def run():
            remote = make_remote(entries(2))
            published = _record(remote)
            await remote.playlist_next(play=True)
            spawner.last.finish(0)
            await wait_until(lambda: len(spawner.processes) == 2)
            spawner.last.finish(0)
            await wait_until(lambda: not remote.supervisor.active)
            # a "not running" snapshot always separates two runs
            running = [s.running for s in published]
            assert running == [True, False, True, False, False]
            urls = [s.current.url for s in published if s.running]
            assert urls == ["http://example/1", "http://example/2"]

        _run(run())


class TestJump:
    def test_jump_replaces_running_player(self, make_remote, spawner, entries):
        async def run():
            remote = make_remote(entries(3))
            await remote.playlist_next(play=True)
            first = spawner.last
            entry = await remote.playlist_next(play=True)
            assert entry.url == "http://example/2"
            assert first.killed
            assert spawner.last.url == "http://example/2"
            assert remote.playlist.auto_play is True
            await remote.close()

        _run(run())

    def test_jump_past_end_stops_without_wrapping(self, make_remote, spawner, entries):
        async def run():
            remote = make_remote(entries(2))
            await remote.playlist_next(play=True)
            await remote.playlist_next(play=True)
            assert await remote.playlist_next(play=True) is None
            assert spawner.last.killed
            assert not remote.supervisor.active
            assert remote.playlist.cursor is None
            await asyncio.sleep(0.05)
            assert spawner.urls == ["http://example/1", "http://example/2"]

        _run(run())

    def test_select_out_of_range_stops(self, make_remote, spawner, entries):
        async def run():
            remote = make_remote(entries(2))
            await remote.playlist_select(0, play=True)
            assert await remote.playlist_select(2, play=True) is None
            assert spawner.last.killed
            assert not remote.supervisor.active
            assert remote.playlist.cursor == 0

        _run(run())

    def test_cursor_off_the_end_while_playing(self, make_remote, spawner, entries, wait_until):
        async def run():
            remote = make_remote(entries(2))
            await remote.playlist_next(play=True)
            await remote.playlist_next()
            assert await remote.playlist_next() is None
            assert remote.supervisor.active
            spawner.last.finish(0)
            await wait_until(lambda: not remote.supervisor.active)
            await asyncio.sleep(0.05)
            assert spawner.urls == ["http://example/1"]

        _run(run())


def _guarded(spawner, overlaps):
    """Spawn through *spawner*, counting processes still alive at each spawn."""

    def spawn(argv):
        overlaps.append(sum(1 for p in spawner.processes if p.returncode is None))
        return spawner(argv)

    return spawn


def _assert_no_revival(published):
    """A url once reported finished never shows up as running again."""
    ended, playing = set(), None
    for snap in published:
        if snap.running:
            assert snap.current.url not in ended
            playing = snap.current.url
        elif playing is not None:
            ended.add(playing)
            playing = None


class TestConcurrency:
    @pytest.mark.parametrize("stop_first", [True, False])
    def test_stop_racing_play(self, make_remote, spawner, stop_first):
        async def run():
            overlaps = []
            remote = make_remote(spawn=_guarded(spawner, overlaps))
            published = _record(remote)
            await remote.play_request(MediaEntry("http://x/a"))
            calls = [remote.stop(), remote.play_request(MediaEntry("http://x/b"))]
            if not stop_first:
                calls.reverse()
            results = await asyncio.gather(*calls, return_exceptions=True)

            assert overlaps and all(n == 0 for n in overlaps)
            assert spawner.processes[0].killed
            if stop_first:
                assert results == [True, None]
                assert remote.supervisor.current.url == "http://x/b"
            else:
                assert isinstance(results[0], AlreadyActive)
                assert results[1] is True
                assert not remote.supervisor.active
            _assert_no_revival(published)
            await remote.close()

        _run(run())

    def test_play_racing_exit_cleanup(self, make_remote, spawner):
        async def run():
            overlaps = []
            remote = make_remote(spawn=_guarded(spawner, overlaps))
            published = _record(remote)
            await remote.play_request(MediaEntry("http://x/0"))
            for i in range(1, 15):
                spawner.last.finish(0)
                await asyncio.sleep((i % 3) * 0.004)
                for _ in range(500):
                    try:
                        await remote.play_request(MediaEntry(f"http://x/{i}"))
                        break
                    except AlreadyActive:
                        await asyncio.sleep(0.001)
                assert spawner.last.url == f"http://x/{i}"

            assert len(spawner.processes) == 15
            assert all(n == 0 for n in overlaps)
            _assert_no_revival(published)
            await remote.close()

        _run(run())


class TestWatcherRecovery:
    def test_value_error_from_spawn(self, make_remote, spawner):
        async def run():
            remote = make_remote()
            spawner.error = ValueError("embedded null byte")
            with pytest.raises(SpawnFailure):
                await remote.supervisor.play(MediaEntry("http://x/a"))
            assert remote.supervisor.state == sv.IDLE
            assert not remote.supervisor.active

        _run(run())

    def test_control_characters_rejected(self):
        with pytest.raises(InvalidLocation):
            validate_location("http://x/\x002")

    def test_chain_survives_unspawnable_entry(self, make_remote, spawner, wait_until):
        def spawn(argv):
            if argv[-1] == "http://x/2":
                raise ValueError("embedded null byte")
            return spawner(argv)

        async def run():
            remote = make_remote([MediaEntry(f"http://x/{i}") for i in (1, 2, 3)], spawn=spawn)
            await remote.playlist_next(play=True)
            spawner.last.finish(0)
            await wait_until(lambda: len(spawner.processes) == 2)
            assert spawner.last.url == "http://x/3"
            spawner.last.finish(0)
            await wait_until(lambda: not remote.supervisor.active)
            assert remote.supervisor._watcher_task is None

            # later players are still watched
            await remote.play_request(MediaEntry("http://x/b"))
            spawner.last.finish(0)
            await wait_until(lambda: not remote.supervisor.active)
            assert remote.supervisor.state == sv.IDLE

        _run(run())

    def test_finished_watcher_is_replaced(self, make_remote, spawner, wait_until):
        async def run():
            remote = make_remote()
            remote.playlist.auto_play = False

            async def gone():
                pass

            stale = asyncio.create_task(gone())
            await stale
            remote.supervisor._watcher_task = stale
            await remote.supervisor.play(MediaEntry("http://x/a"))
            assert remote.supervisor._watcher_task is not stale
            spawner.last.finish(0)
            await wait_until(lambda: not remote.supervisor.active)

        _run(run())


class BlockingStdin:
    """stdin whose writes hang until released, like a pipe nobody reads."""

    def __init__(self):
        self.writes = []
        self.closed = False
        self.release = threading.Event()

    def write(self, data):
        self.release.wait(2)
        if self.closed:
            raise ValueError("I/O operation on closed file")
        self.writes.append(bytes(data))
        return len(data)

    def flush(self):
        pass

    def close(self):
        self.closed = True


class TestBlockedPipe:
    def test_stop_while_write_is_blocked(self, make_remote, spawner):
        async def run():
            remote = make_remote()
            await remote.supervisor.play(MediaEntry("http://x/a"))
            stdin = spawner.last.stdin = BlockingStdin()
            write = asyncio.create_task(remote.supervisor.write_command(b"p"))
            await asyncio.sleep(0.02)
            assert not write.done()

            assert await asyncio.wait_for(remote.stop(), 1) is True
            stdin.release.set()
            assert await write is False
            assert stdin.writes == []

        _run(run())


class TestStandalone:
    def test_default_lock_and_shutdown(self, spawner):
        async def run():
            supervisor = ProcessSupervisor(Playlist(), StatusBroadcaster(),
                                           spawn=spawner, kill_names=())
            await supervisor.play(MediaEntry("http://x/a"))
            await supervisor.shutdown()
            assert not supervisor.active
            assert spawner.last.killed

        _run(run())
