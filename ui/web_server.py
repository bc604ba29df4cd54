"""
FastAPI server exposing the engine read model and operator commands.
Runs alongside the engine loop in the same event loop.
"""

import asyncio
from typing import Optional

import uvicorn
from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from pydantic import BaseModel

from core.errors import ConfigError
from core.state import EngineContext

app = FastAPI(title="SwapTrader API")

# Shared context reference (set by the engine on startup)
_context: Optional[EngineContext] = None
_connected_clients: set[WebSocket] = set()


class ToggleRequest(BaseModel):
    enabled: Optional[bool] = None


class ConfigUpdate(BaseModel):
    allocation_pct: Optional[float] = None
    leverage: Optional[float] = None
    enabled_instruments: Optional[list[str]] = None


def set_engine_context(context: Optional[EngineContext]):
    """Called by the engine to share its context with the web server."""
    global _context
    _context = context


def _require_context() -> EngineContext:
    if _context is None:
        raise HTTPException(status_code=503, detail="Engine not connected")
    return _context


@app.get("/api/status")
async def get_status():
    """Per-instrument trend, entry, decision and position, plus events and config."""
    return _require_context().snapshot()


@app.get("/api/history")
async def get_history():
    """Decisions from the last hour plus the last 50 actionable ones."""
    context = _require_context()
    return [d.to_dict() for d in context.recent_history()]


@app.post("/api/toggle")
async def toggle(request: Optional[ToggleRequest] = None):
    """Enable or disable trading. Without a body, flips the current state."""
    context = _require_context()
    enabled = request.enabled if request and request.enabled is not None else not context.enabled
    context.set_enabled(enabled)
    return {
        "success": True,
        "enabled": context.enabled,
        "message": "Engine ENABLED" if context.enabled else "Engine DISABLED",
    }


@app.post("/api/config")
async def update_config(update: ConfigUpdate):
    context = _require_context()
    try:
        context.update_config(**update.model_dump())
    except ConfigError as e:
        raise HTTPException(status_code=422, detail=str(e))
    return {"success": True, "config": context.config_view()}


@app.get("/api/health")
async def health_check():
    return {
        "status": "ok",
        "engine_connected": _context is not None,
        "enabled": _context.enabled if _context else False,
        "clients": len(_connected_clients),
    }


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    """Push the status snapshot every second."""
    await websocket.accept()
    _connected_clients.add(websocket)
    try:
        while _context is not None:
            await websocket.send_json(_context.snapshot())
            await asyncio.sleep(1.0)
    except WebSocketDisconnect:
        pass
    finally:
        _connected_clients.discard(websocket)


async def run_server_async(host: str = "0.0.0.0", port: int = 3000):
    """Run the web server as an async task."""
    config = uvicorn.Config(app, host=host, port=port, log_level="warning")
    server = uvicorn.Server(config)
    await server.serve()
