"""
orchestrator.py — Out Loud Relay · Session Orchestrator
=======================================================
Owns every live recording session and drives it through

    AWAITING_UPSTREAM → STREAMING → ENDING → CLOSED

  open_session()   register + connect upstream (failure → error msg, close)
  handle_audio()   frame guard, forward to upstream; empty frame ends session
  end_session()    stop upstream, validate transcript, analysis + title,
                   one `analysis` message (fallback on any failure), persist

Transcript events arrive through a per-session `TranscriptListener`; final
texts are de-duplicated per session before they reach the client.  A closed
client connection ends the session exactly like the explicit end signal.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Optional, Protocol

from apps.relay.analysis import AnalysisResult, fallback_analysis
from apps.relay.errors import OversizedFrame, PersistenceError, UpstreamError, ValidationFailure
from apps.relay.session import Session, SessionPhase, SessionRegistry, now_ms
from apps.relay.soniox_client import SonioxClient, TranscriptListener
from apps.relay.store import SessionRecord, SessionStore
from apps.relay.tokens import TranscriptWord, strip_end_markers
from config import RelayConfig

log = logging.getLogger("outloud.orchestrator")

CLOSE_NORMAL = 1000
CLOSE_POLICY_VIOLATION = 1008
CLOSE_INTERNAL_ERROR = 1011

PCM_F32_BYTES_PER_SAMPLE = 4


class ClientChannel(Protocol):
    """Client-facing connection for one session."""

    async def send_json(self, payload: dict) -> None: ...

    async def close(self, code: int = CLOSE_NORMAL) -> None: ...


class Analyzer(Protocol):
    async def analyze_session(self, transcript: str, duration: float) -> AnalysisResult: ...

    async def generate_title(self, transcript: str) -> str: ...


class UpstreamClient(Protocol):
    async def connect(self) -> None: ...

    async def send_audio(self, frame: bytes) -> None: ...

    async def stop_transcription(self) -> None: ...

    async def wait_finished(self, timeout: float) -> bool: ...

    async def disconnect(self) -> None: ...


UpstreamFactory = Callable[[Session, TranscriptListener], UpstreamClient]


def error_message(message: str) -> dict:
    return {"type": "error", "message": message}


def _iso(epoch_ms: int) -> str:
    return datetime.fromtimestamp(epoch_ms / 1000.0, tz=timezone.utc).isoformat()


def _wire_words(words: list[TranscriptWord]) -> list[dict]:
    return [word.to_wire() for word in words]


class _SessionListener:
    """Routes one upstream client's events to the orchestrator."""

    def __init__(self, orchestrator: "TranscriptionOrchestrator", session: Session) -> None:
        self._orchestrator = orchestrator
        self._session = session

    async def on_transcript(self, text: str, is_final: bool, words: Optional[list[TranscriptWord]]) -> None:
        await self._orchestrator._on_transcript(self._session, text, is_final, words)

    async def on_endpoint(self) -> None:
        self._orchestrator._on_endpoint(self._session)

    async def on_error(self, error: UpstreamError) -> None:
        await self._orchestrator._on_upstream_error(self._session, error)


class TranscriptionOrchestrator:
    def __init__(
        self,
        config: RelayConfig,
        analyzer: Analyzer,
        *,
        store: Optional[SessionStore] = None,
        registry: Optional[SessionRegistry] = None,
        upstream_factory: Optional[UpstreamFactory] = None,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._config = config
        self._analyzer = analyzer
        self._store = store
        self._registry = registry if registry is not None else SessionRegistry()
        self._upstream_factory = upstream_factory or self._soniox_upstream
        self._clock = clock
        self._background: set[asyncio.Task] = set()

    @property
    def registry(self) -> SessionRegistry:
        return self._registry

    def _soniox_upstream(self, session: Session, listener: TranscriptListener) -> UpstreamClient:
        return SonioxClient(self._config.soniox, listener, session_id=session.id)

    # -- Lifecycle -------------------------------------------------------------

    async def open_session(
        self,
        session_id: str,
        channel: ClientChannel,
        user_id: Optional[str] = None,
    ) -> bool:
        """AWAITING_UPSTREAM → STREAMING.  Returns False if the session could not start."""
        if session_id in self._registry:
            log.warning("event=session_duplicate session=%s", session_id)
            await channel.send_json(error_message("Session already active"))
            await channel.close(CLOSE_POLICY_VIOLATION)
            return False

        session = Session(
            id=session_id,
            user_id=user_id,
            started_at_ms=self._clock(),
            channel=channel,
            max_dedup_entries=self._config.limits.max_dedup_entries,
        )
        self._registry.add(session)
        session.upstream = self._upstream_factory(session, _SessionListener(self, session))
        log.info("event=session_opened session=%s authenticated=%s", session_id, user_id is not None)

        try:
            await session.upstream.connect()
        except ConnectionError as exc:
            log.error(
                "event=upstream_connect_failed session=%s kind=%s error=%s",
                session_id, getattr(exc, "kind", "transport"), exc,
            )
            session.phase = SessionPhase.CLOSED
            self._registry.remove(session_id)
            await session.upstream.disconnect()
            await channel.send_json(error_message("Failed to connect to transcription service"))
            await channel.close(CLOSE_INTERNAL_ERROR)
            return False

        session.phase = SessionPhase.STREAMING
        log.info("event=session_streaming session=%s", session_id)
        return True

    async def handle_audio(self, session_id: str, frame: bytes) -> None:
        session = self._registry.get(session_id)
        if session is None or session.phase is not SessionPhase.STREAMING:
            log.debug("event=audio_ignored session=%s bytes=%d", session_id, len(frame))
            return

        if not frame:
            log.info("event=recording_finished session=%s", session_id)
            await self.end_session(session_id)
            return

        limit = self._config.limits.max_frame_bytes
        if len(frame) > limit:
            rejected = OversizedFrame(len(frame), limit)
            log.warning("event=audio_frame_rejected session=%s bytes=%d limit=%d", session_id, len(frame), limit)
            await self._send(session, error_message(str(rejected)))
            return

        session.audio_bytes += len(frame)
        await session.upstream.send_audio(frame)

    async def end_session(self, session_id: str) -> None:
        """→ ENDING → CLOSED.  No-op for unknown sessions or ones already ending."""
        session = self._registry.get(session_id)
        if session is None or session.phase in (SessionPhase.ENDING, SessionPhase.CLOSED):
            return

        session.phase = SessionPhase.ENDING
        log.info("event=session_ending session=%s elapsed_sec=%.1f", session_id, session.elapsed_sec(self._clock()))
        try:
            await self._finish(session)
        finally:
            session.phase = SessionPhase.CLOSED
            self._registry.remove(session_id)
            log.info("event=session_closed session=%s live_sessions=%d", session_id, len(self._registry))

    async def shutdown(self) -> None:
        """End every live session (server shutdown)."""
        session_ids = [session.id for session in self._registry]
        results = await asyncio.gather(
            *(self.end_session(session_id) for session_id in session_ids),
            return_exceptions=True,
        )
        for session_id, result in zip(session_ids, results):
            if isinstance(result, Exception):
                log.error("event=session_shutdown_failed session=%s error=%r", session_id, result)
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)

    def live_sessions(self) -> list[dict[str, Any]]:
        now = self._clock()
        bytes_per_sec = self._config.soniox.sample_rate * self._config.soniox.num_channels * PCM_F32_BYTES_PER_SAMPLE
        return [
            {
                "session_id": session.id,
                "phase": session.phase.value,
                "uptime_sec": round(session.elapsed_sec(now), 1),
                "audio_sec": round(session.audio_bytes / bytes_per_sec, 1),
                "transcript_chars": len(session.transcript),
                "words": len(session.words),
                "authenticated": session.user_id is not None,
            }
            for session in self._registry
        ]

    # -- End of session -------------------------------------------------------------

    async def _finish(self, session: Session) -> None:
        upstream = session.upstream
        if upstream is not None:
            await upstream.stop_transcription()
            await upstream.wait_finished(self._config.soniox.drain_timeout_sec)
            await upstream.disconnect()

        ended_at = self._clock()
        duration = session.elapsed_sec(ended_at)
        transcript = strip_end_markers(session.transcript).strip()

        try:
            self._validate_transcript(transcript)
        except ValidationFailure as exc:
            log.warning(
                "event=analysis_skipped session=%s reason=%s transcript_len=%d",
                session.id, exc, len(transcript),
            )
            await self._send(session, error_message(f"No analysis available: {exc}"))
            return

        analysis = await self._analyze(session, transcript, duration)
        await self._send(session, {
            "type": "analysis",
            "data": analysis.to_wire(),
            "words": _wire_words(session.words),
        })
        log.info(
            "event=analysis_sent session=%s duration_sec=%.1f words=%d",
            session.id, duration, len(session.words),
        )

        if self._store is not None and session.user_id:
            await self._persist(session, transcript, duration, ended_at, analysis)

    def _validate_transcript(self, transcript: str) -> None:
        if not transcript:
            raise ValidationFailure("transcript is empty")
        limit = self._config.limits.max_transcript_chars
        if len(transcript) > limit:
            raise ValidationFailure(f"transcript too long ({len(transcript)} > {limit} characters)")

    async def _analyze(self, session: Session, transcript: str, duration: float) -> AnalysisResult:
        tasks = [
            asyncio.create_task(self._analyzer.analyze_session(transcript, duration)),
            asyncio.create_task(self._analyzer.generate_title(transcript)),
        ]
        try:
            analysis, title = await asyncio.gather(*tasks)
        except asyncio.CancelledError:
            for task in tasks:
                task.cancel()
            raise
        except Exception as exc:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            log.error("event=analysis_failed session=%s error=%s fallback=true", session.id, exc)
            return fallback_analysis(transcript, duration, session.pause_times)
        return analysis.with_title(title)

    async def _persist(
        self,
        session: Session,
        transcript: str,
        duration: float,
        ended_at: int,
        analysis: AnalysisResult,
    ) -> None:
        record = SessionRecord(
            user_id=session.user_id,
            session_id=session.id,
            transcript=transcript,
            transcript_segments=_wire_words(session.words),
            start_time=_iso(session.started_at_ms),
            end_time=_iso(ended_at),
            duration=round(duration, 3),
            analysis=analysis.to_wire(),
            title=analysis.title,
        )
        try:
            await self._store.save_session(record)
        except PersistenceError as exc:
            log.error("event=session_persist_failed session=%s user=%s error=%s", session.id, session.user_id, exc)

    # -- Upstream events --------------------------------------------------------------

    async def _on_transcript(
        self,
        session: Session,
        text: str,
        is_final: bool,
        words: Optional[list[TranscriptWord]],
    ) -> None:
        if session.phase is SessionPhase.CLOSED:
            return
        cleaned = strip_end_markers(text).strip()
        if not cleaned:
            return

        if not is_final:
            await self._send(session, {"type": "transcript", "text": cleaned, "isFinal": False})
            return

        if not session.remember_final(cleaned):
            log.debug("event=final_duplicate_dropped session=%s text_len=%d", session.id, len(cleaned))
            return
        session.transcript = cleaned
        if words:
            session.words = list(words)
        await self._send(session, {
            "type": "transcript",
            "text": cleaned,
            "isFinal": True,
            "words": _wire_words(session.words),
        })

    def _on_endpoint(self, session: Session) -> None:
        if session.phase is SessionPhase.CLOSED:
            return
        offset = session.record_pause(self._clock())
        log.debug("event=pause_recorded session=%s offset_sec=%.2f", session.id, offset)

    async def _on_upstream_error(self, session: Session, error: UpstreamError) -> None:
        if not error.fatal:
            log.debug("event=upstream_error session=%s kind=%s error=%s", session.id, error.kind, error)
            return
        log.error("event=upstream_fatal session=%s kind=%s error=%s", session.id, error.kind, error)
        if session.phase is not SessionPhase.STREAMING:
            return
        await self._send(session, error_message(str(error)))
        self._spawn(self._end_and_close(session), name=f"end_session_{session.id}")

    async def _end_and_close(self, session: Session) -> None:
        await self.end_session(session.id)
        if session.channel is not None:
            await session.channel.close(CLOSE_INTERNAL_ERROR)

    # -- Helpers -------------------------------------------------------------------------

    def _spawn(self, coro: Any, name: str) -> None:
        task = asyncio.create_task(coro, name=name)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _send(self, session: Session, payload: dict) -> None:
        if session.channel is not None:
            await session.channel.send_json(payload)
