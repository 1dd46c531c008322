"""Asynchronous broadcast delivery service.

This package fans a single authored message out to many recipients over an
external messaging channel, with features including:

- Lease-based run claiming so that at most one worker drives a campaign
- Per-recipient retry with a fixed backoff schedule
- Crash recovery that never re-sends a message whose outcome is unknown
- SQLite persistence through aiosqlite
- FastAPI REST API and click CLI for enqueueing and inspecting runs
- Prometheus metrics for monitoring

Example:
    Basic usage with the FastAPI application::

        from async_broadcast_service.core import BroadcastCore
        from async_broadcast_service.api import create_app

        core = BroadcastCore(db_path="/data/broadcast.db")
        app = create_app(core, api_token="secret")
"""
