from __future__ import annotations

from typing import Optional

from fastapi import Request, WebSocket

from runflow.services.runtime import Runtime


def get_runtime(request: Request) -> Runtime:
    """FastAPI dependency: the Runtime started by the app lifespan."""
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        raise RuntimeError("Runtime not started")
    return runtime


def get_ws_runtime(websocket: WebSocket) -> Runtime:
    runtime = getattr(websocket.app.state, "runtime", None)
    if runtime is None:
        raise RuntimeError("Runtime not started")
    return runtime


def get_auth_ctx(request: Request) -> Optional[dict]:
    """Caller context handed to the authorization handler."""
    user_id = request.headers.get("x-user-id")
    return {"user_id": user_id} if user_id else None
