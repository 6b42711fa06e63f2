"""Systemd notify integration for the remote service.

Sends READY=1 once, then WATCHDOG=1 plus a STATUS= line describing playback
at regular intervals.  Silently no-ops when NOTIFY_SOCKET is unset (dev
mode, tests).

Usage:
    from omxremote.lib.watchdog import watchdog_loop
    asyncio.create_task(watchdog_loop(remote.status_snapshot))
"""

import asyncio
import logging
import os
import socket

logger = logging.getLogger(__name__)


def sd_notify(msg: str) -> bool:
    """Send a notification message to the systemd notify socket."""
    addr = os.environ.get("NOTIFY_SOCKET")
    if not addr:
        return False
    if addr[0] == "@":
        addr = "\0" + addr[1:]
    sock = socket.socket(socket.AF_UNIX, socket.SOCK_DGRAM)
    try:
        sock.sendto(msg.encode(), addr)
    except OSError as e:
        logger.debug("sd_notify failed: %s", e)
        return False
    finally:
        sock.close()
    return True


def describe(snapshot) -> str:
    """One-line playback summary for `systemctl status`."""
    if snapshot.running and snapshot.current is not None:
        return f"Playing {snapshot.current.url}"
    return "Idle"


async def watchdog_loop(status=None, interval: int = 20):
    """Send WATCHDOG=1 every *interval* seconds.  Call as asyncio.create_task().

    *status* is an optional callable returning a PlaybackSnapshot; its
    summary is attached to each heartbeat.
    """
    sd_notify("READY=1")
    logger.info("Watchdog started (interval=%ds)", interval)
    while True:
        msg = "WATCHDOG=1"
        if status is not None:
            msg += f"\nSTATUS={describe(status())}"
        sd_notify(msg)
        await asyncio.sleep(interval)
