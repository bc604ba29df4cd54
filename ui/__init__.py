"""UI module - web API for the engine."""

from ui.web_server import app as web_app, set_engine_context, run_server_async

__all__ = [
    "web_app",               # FastAPI web app
    "set_engine_context",    # Share engine context with web server
    "run_server_async",      # Run web server async
]
