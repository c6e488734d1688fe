"""
server.py — Out Loud Relay · FastAPI Ingress
============================================
Client-facing entry point of the relay.  Accepts one websocket per
recording session, authenticates it, and hands audio frames to the
`TranscriptionOrchestrator`.

Endpoints
---------
  WS   /  (alias /ws/transcribe)   ?sessionId=…&token=…  binary PCM f32le frames
  GET  /health                     Service liveness
  GET  /sessions                   List live sessions
  GET  /sessions/{id}              One live session
  POST /sessions/{id}/end          End a live session from outside

Concurrency model
-----------------
Every session lives on the server's event loop: one receive loop per client
websocket plus the upstream client's receive and heartbeat tasks.  Sessions
share nothing but the registry, which is only touched from the loop.
"""

from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

import uvicorn
from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from apps.relay.analysis import SessionAnalyzer
from apps.relay.orchestrator import (
    CLOSE_NORMAL,
    CLOSE_POLICY_VIOLATION,
    ClientChannel,
    TranscriptionOrchestrator,
    error_message,
)
from apps.relay.store import SupabaseSessionStore, SupabaseTokenVerifier, TokenVerifier
from apps.relay.validation import validate_session_id
from config import RelayConfig, load_config

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=logging.DEBUG if os.getenv("RELAY_DEBUG") else logging.INFO,
    format="%(asctime)s.%(msecs)03d [%(levelname)s] %(name)s – %(message)s",
    datefmt="%H:%M:%S",
)
log = logging.getLogger("outloud.server")


# ---------------------------------------------------------------------------
# Client channel
# ---------------------------------------------------------------------------

class WebSocketChannel:
    """`ClientChannel` over a Starlette websocket.

    Sends after the client went away are dropped: the session still has to
    finish (analysis, persistence) without anyone listening.
    """

    def __init__(self, ws: WebSocket, session_id: str = "-") -> None:
        self._ws = ws
        self.session_id = session_id
        self.closed = False

    async def send_json(self, payload: dict) -> None:
        if self.closed:
            log.debug("event=client_send_skipped session=%s type=%s", self.session_id, payload.get("type"))
            return
        try:
            await self._ws.send_json(payload)
        except (WebSocketDisconnect, RuntimeError, OSError) as exc:
            self.closed = True
            log.info("event=client_gone session=%s type=%s error=%r", self.session_id, payload.get("type"), exc)

    async def close(self, code: int = CLOSE_NORMAL) -> None:
        if self.closed:
            return
        self.closed = True
        try:
            await self._ws.close(code=code)
        except (RuntimeError, OSError) as exc:
            log.debug("event=client_close_error session=%s error=%r", self.session_id, exc)


async def _reject(channel: ClientChannel, message: str) -> None:
    await channel.send_json(error_message(message))
    await channel.close(CLOSE_POLICY_VIOLATION)


def _bearer_token(ws: WebSocket) -> Optional[str]:
    token = ws.query_params.get("token")
    if token:
        return token
    header = ws.headers.get("authorization", "")
    scheme, _, value = header.partition(" ")
    if scheme.lower() == "bearer" and value.strip():
        return value.strip()
    return None


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------

class SessionInfo(BaseModel):
    session_id:       str
    phase:            str
    uptime_sec:       float
    audio_sec:        float
    transcript_chars: int
    words:            int
    authenticated:    bool


# ---------------------------------------------------------------------------
# App factory
# ---------------------------------------------------------------------------

def create_app(
    config: Optional[RelayConfig] = None,
    orchestrator: Optional[TranscriptionOrchestrator] = None,
    verifier: Optional[TokenVerifier] = None,
) -> FastAPI:
    """Wire config, collaborators and routes.  Missing pieces are built from config."""
    config = config or load_config()
    collaborators: list = []

    if orchestrator is None:
        store = None
        if config.persistence.enabled:
            store = SupabaseSessionStore(config.persistence)
            collaborators.append(store)
        else:
            log.warning("event=persistence_disabled reason=supabase_not_configured")
        orchestrator = TranscriptionOrchestrator(config, SessionAnalyzer(config.llm), store=store)

    if verifier is None and config.persistence.enabled:
        verifier = SupabaseTokenVerifier(config.persistence)
        collaborators.append(verifier)

    @asynccontextmanager
    async def _lifespan(app: FastAPI):
        log.info(
            "event=server_start soniox_model=%s llm_model=%s persistence=%s auth=%s",
            config.soniox.model, config.llm.model, config.persistence.enabled, verifier is not None,
        )
        yield
        log.info("event=server_shutdown live_sessions=%d", len(orchestrator.registry))
        await orchestrator.shutdown()
        for collaborator in collaborators:
            await collaborator.aclose()
        log.info("event=server_stopped")

    app = FastAPI(
        title="Out Loud Relay",
        version="1.0.0",
        description="Real-time transcription relay with end-of-session analysis",
        lifespan=_lifespan,
    )
    app.state.config = config
    app.state.orchestrator = orchestrator
    app.state.verifier = verifier

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # -- HTTP ----------------------------------------------------------------

    @app.get("/health")
    async def health() -> JSONResponse:
        """Liveness probe."""
        return JSONResponse({
            "status":          "ok",
            "active_sessions": len(orchestrator.registry),
            "timestamp":       datetime.now(timezone.utc).isoformat(),
        })

    @app.get("/sessions", response_model=list[SessionInfo])
    async def list_sessions() -> list[SessionInfo]:
        """Snapshot of every live session."""
        return [SessionInfo(**info) for info in orchestrator.live_sessions()]

    @app.get("/sessions/{session_id}", response_model=SessionInfo)
    async def get_session(session_id: str) -> SessionInfo:
        for info in orchestrator.live_sessions():
            if info["session_id"] == session_id:
                return SessionInfo(**info)
        raise HTTPException(status_code=404, detail=f"No live session '{session_id}'.")

    @app.post("/sessions/{session_id}/end", status_code=status.HTTP_202_ACCEPTED)
    async def end_session(session_id: str) -> JSONResponse:
        """Finish a session as if its client had sent the end signal."""
        session = orchestrator.registry.get(session_id)
        if session is None:
            raise HTTPException(status_code=404, detail=f"No live session '{session_id}'.")
        await orchestrator.end_session(session_id)
        if session.channel is not None:
            await session.channel.close(CLOSE_NORMAL)
        return JSONResponse(
            status_code=status.HTTP_202_ACCEPTED,
            content={"status": "ended", "session_id": session_id},
        )

    # -- Audio websocket ---------------------------------------------------------

    async def transcribe(ws: WebSocket) -> None:
        await ws.accept()
        channel = WebSocketChannel(ws)
        try:
            session_id = validate_session_id(ws.query_params.get("sessionId"))
        except ValueError as exc:
            log.warning("event=session_id_rejected remote=%s reason=%s", ws.client, exc)
            await _reject(channel, str(exc))
            return
        channel.session_id = session_id

        user_id: Optional[str] = None
        token = _bearer_token(ws)
        if token and verifier is not None:
            user_id = await verifier.verify(token)
            if user_id is None:
                log.warning("event=client_auth_failed session=%s remote=%s", session_id, ws.client)
                await _reject(channel, "Invalid or expired token")
                return
        elif token:
            log.warning("event=client_token_ignored session=%s reason=no_verifier", session_id)

        log.info("event=client_connected session=%s remote=%s user=%s", session_id, ws.client, user_id or "-")
        if not await orchestrator.open_session(session_id, channel, user_id):
            return

        try:
            while True:
                message = await ws.receive()
                if message["type"] == "websocket.disconnect":
                    log.info("event=client_disconnected session=%s code=%s", session_id, message.get("code"))
                    break
                frame = message.get("bytes")
                if frame is None:
                    # text frames carry nothing the relay understands
                    continue
                await orchestrator.handle_audio(session_id, frame)
                if not frame:
                    await channel.close(CLOSE_NORMAL)
                    break
        except WebSocketDisconnect:
            log.info("event=client_disconnected session=%s", session_id)
        finally:
            await orchestrator.end_session(session_id)

    app.add_api_websocket_route("/", transcribe)
    app.add_api_websocket_route("/ws/transcribe", transcribe)

    return app


app = create_app()


def main() -> None:
    uvicorn.run(
        app,
        host=os.getenv("RELAY_HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "3000")),
        log_config=None,
    )


if __name__ == "__main__":
    main()
