"""
Shared library for the OMX Remote service.

Everything here is importable without a running HTTP server so the
orchestration core can be driven directly (tests, scripts).
"""
