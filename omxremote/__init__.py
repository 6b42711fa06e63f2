"""
OMX Remote — remote control for a single omxplayer process.

Layout:
  remote.py        — aiohttp service: routes, middlewares, app lifecycle
  lib/playlist.py  — playlist model (cursor, auto-advance, history window)
  lib/supervisor.py— owns the one playback process
  lib/commands.py  — control-code table and the serial command router
  lib/status.py    — snapshots and non-blocking status fan-out
  lib/context.py   — Remote, the orchestrator tying the pieces together
"""

__version__ = "0.1.0"
