"""
Route registration for the connection API.

Responsibilities:
- Define HTTP and WebSocket endpoints
- Translate codec errors into 400 responses
- Pull the orchestrator from app.state
"""

from __future__ import annotations

import asyncio
import json
from typing import Any

from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect, status

from observability.logger import log_event
from protocol.invite_code import InviteBuildError, InviteParseError, quick_detect_kind
from server.models import (
    GuestSessionRequest,
    HostSessionRequest,
    InviteValidationResponse,
    StartSessionResponse,
)
from session.connection_orchestrator import ConnectionOrchestrator
from session.snapshot import ConnectionSnapshot


class _QueueListener:
    """Forwards observer callbacks into a per-connection outbound queue."""

    def __init__(self) -> None:
        self.outbound: asyncio.Queue[dict[str, Any]] = asyncio.Queue()

    def on_state_changed(self, snapshot: ConnectionSnapshot) -> None:
        self.outbound.put_nowait({"type": "SNAPSHOT", "snapshot": snapshot.to_dict()})

    def on_copy_invite_code(self, invite_code: str) -> None:
        self.outbound.put_nowait({"type": "COPY_INVITE_CODE", "invite_code": invite_code})


def register_routes(app: FastAPI) -> None:
    """Register all routes on the FastAPI app."""

    def _orchestrator() -> ConnectionOrchestrator:
        return app.state.orchestrator

    @app.get("/health")
    async def health() -> dict[str, str]: # pyright: ignore[reportUnusedFunction]
        return {"status": "ok"}

    @app.get("/session")
    async def get_session() -> dict[str, Any]: # pyright: ignore[reportUnusedFunction]
        return _orchestrator().snapshot().to_dict()

    @app.post("/session/host", response_model=StartSessionResponse)
    async def start_host( # pyright: ignore[reportUnusedFunction]
        body: HostSessionRequest,
    ) -> StartSessionResponse:
        orchestrator = _orchestrator()
        try:
            started = await orchestrator.start_host(body.port)
        except InviteBuildError as exc:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=str(exc),
            ) from exc
        return StartSessionResponse(
            started=started,
            snapshot=orchestrator.snapshot().to_dict(),
        )

    @app.post("/session/guest", response_model=StartSessionResponse)
    async def start_guest( # pyright: ignore[reportUnusedFunction]
        body: GuestSessionRequest,
    ) -> StartSessionResponse:
        orchestrator = _orchestrator()
        try:
            started = await orchestrator.start_guest(body.invite_code)
        except InviteParseError as exc:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=str(exc),
            ) from exc
        return StartSessionResponse(
            started=started,
            snapshot=orchestrator.snapshot().to_dict(),
        )

    @app.post("/session/stop")
    async def stop_session() -> dict[str, Any]: # pyright: ignore[reportUnusedFunction]
        orchestrator = _orchestrator()
        await orchestrator.stop()
        return orchestrator.snapshot().to_dict()

    @app.get("/invite/validate", response_model=InviteValidationResponse)
    async def validate_invite( # pyright: ignore[reportUnusedFunction]
        code: str,
    ) -> InviteValidationResponse:
        return InviteValidationResponse(kind=quick_detect_kind(code).value)

    @app.websocket("/ws")
    async def websocket_endpoint(ws: WebSocket) -> None: # pyright: ignore[reportUnusedFunction]
        await ws.accept()

        orchestrator = _orchestrator()
        listener = _QueueListener()
        orchestrator.add_listener(listener)

        async def _pump() -> None:
            while True:
                msg = await listener.outbound.get()
                await ws.send_text(json.dumps(msg))

        # Current snapshot first so late subscribers are not blind
        listener.on_state_changed(orchestrator.snapshot())
        sender = asyncio.create_task(_pump())

        try:
            # Inbound messages are not part of the protocol; wait for close
            while True:
                msg = await ws.receive()
                if msg["type"] == "websocket.disconnect":
                    raise WebSocketDisconnect()

        except WebSocketDisconnect:
            pass

        except Exception as exc:  # pylint: disable=broad-exception-caught
            log_event({
                "event_type": "WS_FATAL_ERROR",
                "exception": type(exc).__name__,
                "message": str(exc),
            })

        finally:
            orchestrator.remove_listener(listener)
            sender.cancel()
            await asyncio.gather(sender, return_exceptions=True)
