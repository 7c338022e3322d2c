"""
Dashboard API: read-only views of pipeline state plus token-gated control actions.

Usage:
    from report import create_app
    app = create_app(cfg, store, checkpoint, audit)
"""

from __future__ import annotations

from report.server import create_app, start_server

__all__ = ["create_app", "start_server"]
