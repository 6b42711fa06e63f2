#!/usr/bin/env python3
# OMX Remote
# Copyright (C) 2024-2026 Markus Kirsten
# SPDX-License-Identifier: GPL-3.0-or-later

"""
OMX Remote API (omx-remote)

HTTP front end for the playback orchestrator: start media, send transport
commands to the running omxplayer, manage the playlist, and watch status
changes via Server-Sent Events or WebSocket.

Port: $PORT, else server.port from config, else 8080
"""

import asyncio
import json
import logging
import math
import os
import shutil
import sys
import time

from aiohttp import web

from . import __version__
from .lib.announce import DEFAULT_NAME, Announcer
from .lib.config import cfg
from .lib.context import Remote
from .lib.errors import AlreadyActive, InvalidLocation, SpawnFailure, UnknownCommand
from .lib.playlist import MediaEntry
from .lib.watchdog import watchdog_loop

logging.basicConfig(
    level=logging.INFO,
    format="[%(asctime)s] %(levelname)s %(message)s",
    datefmt="%Y/%m/%d %H:%M:%S",
)
logger = logging.getLogger("omx-remote")

# ---------------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------------
DEFAULT_PORT = 8080
SSE_KEEPALIVE = 15  # seconds between comment lines on an idle status stream

REMOTE = web.AppKey("remote", Remote)
BACKGROUND = web.AppKey("background", list)


def _cors_headers():
    return {
        "Access-Control-Allow-Origin": "*",
        "Access-Control-Allow-Methods": "GET, POST, DELETE, OPTIONS",
        "Access-Control-Allow-Headers": "Content-Type",
    }


def _error(message: str, status: int) -> web.Response:
    return web.json_response({"message": message}, status=status)


async def _read_json(request: web.Request):
    """Request body as JSON; ValueError when it is missing or malformed."""
    if not request.can_read_body:
        raise ValueError("request body required")
    return await request.json()


# ---------------------------------------------------------------------------
# HTTP handlers: playback
# ---------------------------------------------------------------------------
async def handle_status(request: web.Request) -> web.Response:
    """GET /status — point-in-time playback snapshot."""
    return web.json_response(request.app[REMOTE].status_snapshot().to_dict())


async def handle_play(request: web.Request) -> web.Response:
    """POST /play — start a media entry now."""
    remote = request.app[REMOTE]
    try:
        entry = MediaEntry.from_dict(await _read_json(request))
    except ValueError as e:
        return _error(str(e), 400)

    try:
        await remote.play_request(entry)
    except AlreadyActive as e:
        return _error(str(e), 409)
    except InvalidLocation as e:
        return _error(str(e), 400)
    except SpawnFailure as e:
        return _error(str(e), 500)
    return web.Response(status=202)


async def handle_command(request: web.Request) -> web.Response:
    """POST /commands/{command} — queue a transport command."""
    name = request.match_info["command"]
    try:
        await request.app[REMOTE].command_request(name)
    except UnknownCommand as e:
        return _error(str(e), 400)
    return web.Response(status=202)


async def handle_version(request: web.Request) -> web.Response:
    return web.json_response({"version": __version__})


# ---------------------------------------------------------------------------
# HTTP handlers: playlist
# ---------------------------------------------------------------------------
async def handle_playlist_get(request: web.Request) -> web.Response:
    return web.json_response(request.app[REMOTE].status_snapshot().playlist.to_dict())


async def handle_playlist_replace(request: web.Request) -> web.Response:
    """POST /playlist — replace the whole playlist."""
    try:
        body = await _read_json(request)
        if not isinstance(body, dict):
            raise ValueError("expected an object with 'entries'")
        raw = body.get("entries") or []
        if not isinstance(raw, list):
            raise ValueError("'entries' must be a list")
        entries = [MediaEntry.from_dict(item) for item in raw]
    except ValueError as e:
        return _error(str(e), 400)

    await request.app[REMOTE].playlist_replace(entries)
    return web.json_response({"entries": len(entries)}, status=201)


async def handle_playlist_clear(request: web.Request) -> web.Response:
    """DELETE /playlist — empty it, keeping whatever is playing."""
    await request.app[REMOTE].playlist_clear()
    return web.Response(status=204)


async def handle_playlist_append(request: web.Request) -> web.Response:
    try:
        entry = MediaEntry.from_dict(await _read_json(request))
    except ValueError as e:
        return _error(str(e), 400)

    index = await request.app[REMOTE].playlist_append(entry)
    return web.json_response({"index": index, "entry": entry.to_dict()}, status=201)


async def _navigate(move) -> web.Response:
    try:
        entry = await move()
    except InvalidLocation as e:
        return _error(str(e), 400)
    except SpawnFailure as e:
        return _error(str(e), 500)
    if entry is None:
        return web.Response(status=204)
    return web.json_response(entry.to_dict())


async def handle_playlist_next(request: web.Request) -> web.Response:
    """POST /playlist/next — skip to the next entry and play it."""
    remote = request.app[REMOTE]
    return await _navigate(lambda: remote.playlist_next(play=True))


async def handle_playlist_select(request: web.Request) -> web.Response:
    """POST /playlist/select — jump to {"position": n} and play it."""
    remote = request.app[REMOTE]
    try:
        body = await _read_json(request)
        position = body.get("position", 0) if isinstance(body, dict) else None
        if not isinstance(position, int) or isinstance(position, bool):
            raise ValueError("'position' must be an integer")
    except ValueError as e:
        return _error(str(e), 400)

    return await _navigate(lambda: remote.playlist_select(position, play=True))


# ---------------------------------------------------------------------------
# Status push: SSE and WebSocket
# ---------------------------------------------------------------------------
async def handle_status_stream(request: web.Request) -> web.StreamResponse:
    """GET /status/stream — Server-Sent Events, one `status` event per change."""
    resp = web.StreamResponse(headers={
        "Content-Type": "text/event-stream",
        "Cache-Control": "no-cache",
        **_cors_headers(),
    })
    await resp.prepare(request)

    async with request.app[REMOTE].status_stream() as sub:
        logger.info("Status stream opened by %s", request.remote)
        try:
            while True:
                try:
                    snapshot = await asyncio.wait_for(sub.get(), SSE_KEEPALIVE)
                except asyncio.TimeoutError:
                    await resp.write(b": keepalive\n\n")
                    continue
                data = json.dumps(snapshot.to_dict())
                await resp.write(f"event: status\ndata: {data}\n\n".encode())
        except ConnectionResetError:
            pass
        finally:
            logger.info("Status stream closed by %s", request.remote)
    return resp


async def handle_ws(request: web.Request) -> web.WebSocketResponse:
    """GET /ws — push status to UI clients; current state sent on connect."""
    remote = request.app[REMOTE]
    ws = web.WebSocketResponse()
    await ws.prepare(request)

    async def push(sub):
        async for snapshot in sub:
            await ws.send_json({"type": "status", "data": snapshot.to_dict()})

    async with remote.status_stream() as sub:
        await ws.send_json({"type": "status", "data": remote.status_snapshot().to_dict()})
        pusher = asyncio.create_task(push(sub))
        logger.info("WebSocket client connected")
        try:
            # push-only; incoming messages are ignored
            async for msg in ws:
                pass
        finally:
            pusher.cancel()
            try:
                await pusher
            except (asyncio.CancelledError, ConnectionResetError):
                pass
            logger.info("WebSocket client disconnected")
    return ws


# ---------------------------------------------------------------------------
# Middlewares
# ---------------------------------------------------------------------------
@web.middleware
async def cors_middleware(request, handler):
    if request.method == "OPTIONS":
        resp = web.Response()
    else:
        resp = await handler(request)
    if not resp.prepared:
        resp.headers.update(_cors_headers())
    return resp


@web.middleware
async def access_log_middleware(request, handler):
    """One line per request: `<ip> - <METHOD> <path> [<status>] (<ms>ms)`."""
    start = time.monotonic()
    status = 500
    try:
        resp = await handler(request)
        status = resp.status
        return resp
    except web.HTTPException as e:
        status = e.status
        raise
    finally:
        latency = math.ceil((time.monotonic() - start) * 1000)
        if status > 499:
            level = logging.ERROR
        elif status > 399:
            level = logging.WARNING
        else:
            level = logging.INFO
        logger.log(level, "%s - %s %s [%d] (%dms)",
                   request.remote, request.method, request.path, status, latency)


# ---------------------------------------------------------------------------
# App lifecycle
# ---------------------------------------------------------------------------
async def on_startup(app: web.Application):
    remote = app[REMOTE]
    await remote.start()
    app[BACKGROUND].append(asyncio.create_task(watchdog_loop(remote.status_snapshot)))


async def on_cleanup(app: web.Application):
    for task in app[BACKGROUND]:
        task.cancel()
    await app[REMOTE].close()


def create_app(remote: Remote | None = None, *, port: int | None = None) -> web.Application:
    """Build the application.  With *port*, announce it over zeroconf."""
    app = web.Application(middlewares=[cors_middleware, access_log_middleware])
    app[REMOTE] = remote or Remote.from_config()
    app[BACKGROUND] = []

    app.router.add_get("/status", handle_status)
    app.router.add_get("/status/stream", handle_status_stream)
    app.router.add_get("/ws", handle_ws)
    app.router.add_get("/version", handle_version)
    app.router.add_post("/play", handle_play)
    app.router.add_post("/commands/{command}", handle_command)
    app.router.add_get("/playlist", handle_playlist_get)
    app.router.add_post("/playlist", handle_playlist_replace)
    app.router.add_delete("/playlist", handle_playlist_clear)
    app.router.add_post("/playlist/entries", handle_playlist_append)
    app.router.add_post("/playlist/next", handle_playlist_next)
    app.router.add_post("/playlist/select", handle_playlist_select)

    app.on_startup.append(on_startup)
    app.on_cleanup.append(on_cleanup)

    if port is not None and cfg("zeroconf", "enabled", default=True):
        announcer = Announcer(cfg("zeroconf", "name", default=DEFAULT_NAME), port, __version__)

        async def announce(app):
            await announcer.start()

        async def withdraw(app):
            await announcer.stop()

        app.on_startup.append(announce)
        app.on_cleanup.append(withdraw)
    return app


def main():
    logger.info("omx-remote-api v%s", __version__)

    command = cfg("player", "command", default="omxplayer")
    if shutil.which(command) is None:
        logger.error("%s is not installed", command)
        sys.exit(1)

    host = cfg("server", "host", default="0.0.0.0")
    port = int(os.getenv("PORT") or cfg("server", "port", default=DEFAULT_PORT))
    app = create_app(port=port)
    web.run_app(app, host=host, port=port, access_log=None,
                print=lambda msg: logger.info(msg))


if __name__ == "__main__":
    main()
