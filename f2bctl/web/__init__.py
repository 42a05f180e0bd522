"""
f2bctl Web Interface

FastAPI application exposing the operator API, the enforcer callback
endpoints and the live event WebSocket.

Usage:
    from f2bctl.web import create_app
    app = create_app()
"""

from .app import create_app, get_app, run_server
from .config import WebConfig, get_config, set_config

__all__ = [
    "create_app",
    "get_app",
    "run_server",
    "WebConfig",
    "get_config",
    "set_config",
]
