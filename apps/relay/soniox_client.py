"""
soniox_client.py — Out Loud Relay · Upstream Transcription Client
=================================================================
One websocket to the Soniox real-time STT service per recording session.

Lifecycle
---------
  connect()             validate config → open socket (bounded) → send handshake
  send_audio(frame)     forward raw PCM f32le frames as-is
  stop_transcription()  zero-length frame: "audio is finished", upstream flushes
  wait_finished(t)      optionally wait for upstream's {"finished": true}
  disconnect()          idempotent teardown

Events are published to a `TranscriptListener` (one coroutine per event kind).
Errors never propagate out of the audio path; they are reported through
`listener.on_error` and classified in `apps.relay.errors`.

Liveness
--------
A heartbeat task checks every `heartbeat_interval_sec` whether upstream has
been silent longer than `silence_threshold_sec` while the socket is down and,
if so, reconnects.  Abnormal closes (codes other than 1000/1001) reconnect
immediately.  Both paths draw on the same `ReconnectBudget`; it is refilled
only by a successfully received message, so consecutive failures exhaust it
and surface a fatal "connection lost" error.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Any, Awaitable, Callable, Optional, Protocol
from urllib.parse import urlparse

import websockets
from websockets.exceptions import ConnectionClosed, InvalidHandshake, InvalidURI

from apps.relay.errors import (
    ConfigurationError,
    HandshakeTimeout,
    ParseError,
    TransportError,
    UpstreamError,
    UpstreamServiceError,
)
from apps.relay.retry import ReconnectBudget, ReconnectPolicy
from apps.relay.tokens import SubwordToken, TranscriptWord, WordAccumulator, has_end_marker
from config import SonioxConfig

log = logging.getLogger("outloud.soniox")

NORMAL_CLOSE_CODES = frozenset({1000, 1001})

Connector = Callable[[str], Awaitable[Any]]


class TranscriptListener(Protocol):
    """Receiver of upstream events for one session."""

    async def on_transcript(
        self, text: str, is_final: bool, words: Optional[list[TranscriptWord]]
    ) -> None: ...

    async def on_endpoint(self) -> None: ...

    async def on_error(self, error: UpstreamError) -> None: ...


async def _default_connector(url: str) -> Any:
    # Handshake bound is applied by the caller with asyncio.wait_for.
    return await websockets.connect(url, open_timeout=None)


def _is_number(value: object) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _final_token(raw: dict, text: str) -> SubwordToken:
    start, end = raw.get("start_ms"), raw.get("end_ms")
    if not _is_number(start) or not _is_number(end) or start < 0 or end < start:
        return SubwordToken(text=text)
    return SubwordToken(text=text, start_ms=float(start), end_ms=float(end))


class SonioxClient:
    def __init__(
        self,
        config: SonioxConfig,
        listener: TranscriptListener,
        *,
        session_id: str = "-",
        connector: Optional[Connector] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._config = config
        self._listener = listener
        self._session_id = session_id
        self._connector = connector or _default_connector
        self._clock = clock
        self._sleep = sleep
        self._retry = ReconnectBudget(ReconnectPolicy.from_config(config))

        self._ws: Any = None
        self._open = False
        self._closing = False
        self._recovering = False
        self._failed = False
        self._receive_task: Optional[asyncio.Task] = None
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._finished = asyncio.Event()
        self._last_message_at = clock()

        self._final_transcript = ""
        self._accumulator = WordAccumulator()
        self._words: list[TranscriptWord] = []
        self.reconnect_attempts = 0

    # -- State -----------------------------------------------------------------

    @property
    def is_open(self) -> bool:
        return self._open and self._ws is not None

    @property
    def final_transcript(self) -> str:
        return self._final_transcript

    @property
    def words(self) -> list[TranscriptWord]:
        return list(self._words)

    # -- Public API --------------------------------------------------------------

    async def connect(self) -> None:
        """Open the upstream connection and send the configuration handshake.

        Raises ConfigurationError, HandshakeTimeout or TransportError (all
        ConnectionError subclasses) when the connection cannot be established.
        """
        self._validate_config()
        self._closing = False
        self._failed = False
        self._finished.clear()
        self._final_transcript = ""
        self._accumulator.reset()
        self._words = []
        self._retry.reset()

        await self._open_socket()

        if self._heartbeat_task is None or self._heartbeat_task.done():
            self._heartbeat_task = asyncio.create_task(
                self._heartbeat_loop(),
                name=f"soniox_heartbeat_{self._session_id}",
            )
        log.info(
            "event=upstream_connected session=%s model=%s languages=%s",
            self._session_id, self._config.model, ",".join(self._config.language_hints),
        )

    async def send_audio(self, frame: bytes) -> None:
        """Forward one binary audio frame.  Never raises."""
        if not frame:
            log.warning("event=audio_frame_empty session=%s", self._session_id)
            return
        if not self.is_open:
            log.warning(
                "event=audio_dropped session=%s reason=upstream_not_open bytes=%d",
                self._session_id, len(frame),
            )
            await self._report(TransportError("Upstream connection is not open; audio frame dropped"))
            return
        try:
            await self._ws.send(frame)
        except ConnectionClosed as exc:
            log.warning("event=audio_send_failed session=%s error=%s", self._session_id, exc)
            await self._report(TransportError(f"Audio send failed: {exc}"))

    async def stop_transcription(self) -> None:
        """Tell upstream no more audio is coming (empty binary frame)."""
        if not self.is_open:
            return
        try:
            await self._ws.send(b"")
            log.info("event=upstream_audio_finished session=%s", self._session_id)
        except ConnectionClosed as exc:
            log.warning("event=upstream_stop_failed session=%s error=%s", self._session_id, exc)

    async def wait_finished(self, timeout: float) -> bool:
        """Wait up to *timeout* seconds for upstream to report it has flushed."""
        if self._finished.is_set():
            return True
        if timeout <= 0 or not self.is_open:
            return False
        try:
            await asyncio.wait_for(self._finished.wait(), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            log.info("event=upstream_drain_timeout session=%s timeout_sec=%.1f", self._session_id, timeout)
            return False

    async def disconnect(self) -> None:
        """Tear down the connection.  Safe to call repeatedly."""
        self._closing = True
        self._open = False
        current = asyncio.current_task()
        for task in (self._heartbeat_task, self._receive_task):
            if task is None or task is current or task.done():
                continue
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._heartbeat_task = None
        self._receive_task = None
        await self._close_socket()
        self._retry.reset()

    async def check_liveness(self) -> bool:
        """One heartbeat tick.  Returns True when a reconnect was started."""
        silent_for = self._clock() - self._last_message_at
        if self._closing or self._failed or self._recovering or self.is_open:
            return False
        if silent_for <= self._config.silence_threshold_sec:
            return False
        log.warning(
            "event=upstream_silent session=%s silent_sec=%.1f threshold_sec=%.1f",
            self._session_id, silent_for, self._config.silence_threshold_sec,
        )
        await self._recover(f"silent for {silent_for:.1f}s")
        return True

    # -- Connection management -----------------------------------------------------

    def _validate_config(self) -> None:
        key = self._config.api_key
        if not key or not key.strip():
            raise ConfigurationError("Soniox API key is not configured")
        if any(ch.isspace() for ch in key):
            raise ConfigurationError("Soniox API key is malformed")
        parsed = urlparse(self._config.ws_url)
        if parsed.scheme != "wss" or not parsed.netloc:
            raise ConfigurationError(f"Soniox URL must be a wss:// URL (got scheme {parsed.scheme!r})")

    async def _open_socket(self) -> None:
        timeout = self._config.handshake_timeout_sec
        try:
            ws = await asyncio.wait_for(self._connector(self._config.ws_url), timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise HandshakeTimeout(f"Soniox handshake timed out after {timeout:.1f}s") from exc
        except (OSError, InvalidHandshake, InvalidURI) as exc:
            raise TransportError(f"Soniox connection failed: {exc}") from exc

        try:
            await ws.send(json.dumps(self._config.handshake_payload()))
        except ConnectionClosed as exc:
            await ws.close()
            raise TransportError(f"Soniox handshake rejected: {exc}") from exc

        if self._closing:
            await ws.close()
            return

        self._ws = ws
        self._open = True
        self._last_message_at = self._clock()
        self._receive_task = asyncio.create_task(
            self._receive_loop(ws),
            name=f"soniox_receive_{self._session_id}",
        )

    async def _close_socket(self) -> None:
        ws, self._ws = self._ws, None
        self._open = False
        if ws is None:
            return
        try:
            await ws.close()
        except (ConnectionClosed, OSError) as exc:
            log.debug("event=upstream_close_error session=%s error=%s", self._session_id, exc)

    async def _receive_loop(self, ws: Any) -> None:
        receive_error: Optional[OSError] = None
        try:
            async for raw in ws:
                self._last_message_at = self._clock()
                try:
                    await self._handle_message(raw)
                except Exception:
                    log.exception("event=upstream_message_handler_error session=%s", self._session_id)
        except ConnectionClosed:
            pass
        except OSError as exc:
            receive_error = exc

        if ws is not self._ws:
            return
        self._open = False
        if self._closing:
            return

        code = getattr(ws, "close_code", None)
        if receive_error is not None:
            log.warning("event=upstream_receive_error session=%s error=%s", self._session_id, receive_error)
            await self._report(TransportError(f"Soniox connection failed: {receive_error}"))
            await self._recover(f"receive error: {receive_error}")
            return
        if code in NORMAL_CLOSE_CODES:
            log.info("event=upstream_closed session=%s code=%s", self._session_id, code)
            return

        log.warning("event=upstream_abnormal_close session=%s code=%s", self._session_id, code)
        await self._report(TransportError(f"Soniox connection closed abnormally (code={code})"))
        await self._recover(f"close code {code}")

    async def _recover(self, reason: str) -> None:
        if self._closing or self._recovering or self._failed:
            return
        self._recovering = True
        try:
            while not self._closing:
                delay = self._retry.next_delay()
                if delay is None:
                    self._failed = True
                    log.error(
                        "event=upstream_reconnect_failed session=%s attempts=%d reason=%s",
                        self._session_id, self._retry.attempts, reason,
                    )
                    await self._report(
                        TransportError("Connection to transcription service lost", fatal=True)
                    )
                    return

                self.reconnect_attempts += 1
                log.warning(
                    "event=upstream_reconnect session=%s attempt=%d/%d delay=%.1fs reason=%s",
                    self._session_id, self._retry.attempts, self._retry.policy.max_attempts,
                    delay, reason,
                )
                await self._sleep(delay)
                if self._closing:
                    return

                await self._close_socket()
                try:
                    await self._open_socket()
                except UpstreamError as exc:
                    reason = str(exc)
                    log.warning(
                        "event=upstream_reconnect_attempt_failed session=%s attempt=%d error=%s",
                        self._session_id, self._retry.attempts, exc,
                    )
                    continue
                log.info(
                    "event=upstream_reconnected session=%s attempt=%d",
                    self._session_id, self._retry.attempts,
                )
                return
        finally:
            self._recovering = False

    async def _heartbeat_loop(self) -> None:
        while not self._closing:
            await asyncio.sleep(self._config.heartbeat_interval_sec)
            log.debug(
                "event=upstream_heartbeat session=%s open=%s silent_sec=%.1f",
                self._session_id, self.is_open, self._clock() - self._last_message_at,
            )
            await self.check_liveness()

    async def _report(self, error: UpstreamError) -> None:
        try:
            await self._listener.on_error(error)
        except Exception:
            log.exception("event=listener_on_error_failed session=%s", self._session_id)

    # -- Message processing --------------------------------------------------------

    async def _handle_message(self, raw: Any) -> None:
        if isinstance(raw, (bytes, bytearray)):
            raw = bytes(raw).decode("utf-8", errors="replace")
        try:
            message = json.loads(raw)
        except (TypeError, json.JSONDecodeError) as exc:
            log.warning("event=upstream_parse_error session=%s error=%s", self._session_id, exc)
            await self._report(ParseError(f"Malformed upstream message: {exc}"))
            return
        if not isinstance(message, dict):
            log.warning("event=upstream_parse_error session=%s error=not_an_object", self._session_id)
            await self._report(ParseError("Upstream message is not a JSON object"))
            return

        self._retry.reset()

        if message.get("error_code") is not None:
            error_message = str(message.get("error_message") or "")
            log.error(
                "event=upstream_service_error session=%s code=%s message=%s",
                self._session_id, message["error_code"], error_message,
            )
            await self._report(UpstreamServiceError(message["error_code"], error_message))
            return

        tokens = message.get("tokens")
        if isinstance(tokens, list):
            if tokens:
                await self._process_tokens(tokens)
        elif tokens is not None:
            log.debug("event=upstream_tokens_skipped session=%s reason=not_a_list", self._session_id)

        if message.get("finished"):
            log.info("event=upstream_finished session=%s", self._session_id)
            self._finished.set()

    async def _process_tokens(self, tokens: list) -> None:
        final_parts: list[str] = []
        non_final_parts: list[str] = []
        finals: list[SubwordToken] = []
        endpoint = False

        for raw in tokens:
            if not isinstance(raw, dict) or not isinstance(raw.get("text"), str):
                log.debug("event=upstream_token_skipped session=%s reason=malformed", self._session_id)
                continue
            text = raw["text"]
            if not text:
                continue
            if not raw.get("is_final"):
                non_final_parts.append(text)
                continue

            final_parts.append(text)
            if has_end_marker(text):
                endpoint = True
            token = _final_token(raw, text)
            if not token.timed:
                log.debug("event=upstream_token_untimed session=%s", self._session_id)
            finals.append(token)

        final_text = "".join(final_parts)
        non_final_text = "".join(non_final_parts)

        if final_text:
            self._final_transcript += final_text
            self._words = self._accumulator.extend(finals)
            await self._listener.on_transcript(self._final_transcript, True, list(self._words))

        if non_final_text:
            await self._listener.on_transcript(self._final_transcript + non_final_text, False, None)

        if endpoint:
            await self._listener.on_endpoint()
