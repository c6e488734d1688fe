"""Shared fakes and fixtures.  Nothing here touches the network."""

import asyncio
import json
from typing import Any, Optional

import pytest

from apps.relay.analysis import AnalysisReport, AnalysisResult
from apps.relay.errors import UpstreamError
from config import RelayConfig, SonioxConfig


async def settle(rounds: int = 50) -> None:
    """Let every ready task on the loop run to its next suspension point."""
    for _ in range(rounds):
        await asyncio.sleep(0)


async def no_sleep(_delay: float) -> None:
    return None


class FakeClock:
    """Injectable clock; `now` is whatever unit the consumer expects."""

    def __init__(self, now: float = 0) -> None:
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, delta: float) -> None:
        self.now += delta


# =============================================================================
# Upstream websocket fakes
# =============================================================================


class FakeUpstreamSocket:
    """Stands in for a `websockets` client connection."""

    def __init__(self) -> None:
        self.sent: list[Any] = []
        self.close_code: Optional[int] = None
        self.closed = False
        self._inbox: asyncio.Queue = asyncio.Queue()

    async def send(self, data: Any) -> None:
        self.sent.append(data)

    async def close(self) -> None:
        self.closed = True
        if self.close_code is None:
            self.close_code = 1000
        self._inbox.put_nowait(None)

    def push(self, message: Any) -> None:
        self._inbox.put_nowait(json.dumps(message) if isinstance(message, dict) else message)

    def drop(self, code: int = 1006) -> None:
        """Simulate the peer closing the connection with *code*."""
        self.close_code = code
        self._inbox.put_nowait(None)

    def fail(self, exc: BaseException) -> None:
        """Make the next receive raise *exc*."""
        self._inbox.put_nowait(exc)

    @property
    def handshake(self) -> dict:
        return json.loads(self.sent[0])

    @property
    def audio(self) -> list[bytes]:
        return [item for item in self.sent[1:] if isinstance(item, bytes)]

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self._inbox.get()
        if item is None:
            raise StopAsyncIteration
        if isinstance(item, BaseException):
            raise item
        return item


class FakeConnector:
    """Returns queued sockets (or raises queued exceptions) in order."""

    def __init__(self, *outcomes: Any) -> None:
        self._outcomes = list(outcomes)
        self.urls: list[str] = []
        self.sockets: list[FakeUpstreamSocket] = []

    @property
    def calls(self) -> int:
        return len(self.urls)

    async def __call__(self, url: str) -> FakeUpstreamSocket:
        self.urls.append(url)
        outcome = self._outcomes.pop(0) if self._outcomes else FakeUpstreamSocket()
        if isinstance(outcome, BaseException):
            raise outcome
        self.sockets.append(outcome)
        return outcome


class RecordingListener:
    def __init__(self) -> None:
        self.transcripts: list[tuple] = []
        self.endpoints = 0
        self.errors: list[UpstreamError] = []

    async def on_transcript(self, text, is_final, words):
        self.transcripts.append((text, is_final, words))

    async def on_endpoint(self):
        self.endpoints += 1

    async def on_error(self, error):
        self.errors.append(error)

    @property
    def fatal_errors(self) -> list[UpstreamError]:
        return [error for error in self.errors if error.fatal]


# =============================================================================
# Orchestrator collaborators
# =============================================================================


class FakeChannel:
    def __init__(self) -> None:
        self.messages: list[dict] = []
        self.close_codes: list[int] = []

    async def send_json(self, payload: dict) -> None:
        self.messages.append(payload)

    async def close(self, code: int = 1000) -> None:
        self.close_codes.append(code)

    def of_type(self, kind: str) -> list[dict]:
        return [message for message in self.messages if message["type"] == kind]


class FakeUpstream:
    def __init__(self, listener, fail_with: Optional[BaseException] = None) -> None:
        self.listener = listener
        self.fail_with = fail_with
        self.frames: list[bytes] = []
        self.connected = False
        self.stopped = False
        self.disconnected = False

    async def connect(self) -> None:
        if self.fail_with is not None:
            raise self.fail_with
        self.connected = True

    async def send_audio(self, frame: bytes) -> None:
        self.frames.append(frame)

    async def stop_transcription(self) -> None:
        self.stopped = True

    async def wait_finished(self, timeout: float) -> bool:
        return True

    async def disconnect(self) -> None:
        self.disconnected = True


class UpstreamFactory:
    def __init__(self, fail_with: Optional[BaseException] = None) -> None:
        self.fail_with = fail_with
        self.created: dict[str, FakeUpstream] = {}

    def __call__(self, session, listener) -> FakeUpstream:
        upstream = FakeUpstream(listener, self.fail_with)
        self.created[session.id] = upstream
        return upstream


def sample_analysis(**overrides) -> AnalysisResult:
    fields = dict(
        summary="The user explained photosynthesis.",
        keywords=["photosynthesis", "chlorophyll"],
        feedback="Clear and well structured.",
        report=AnalysisReport(thinking_intensity=72, pause_time=3, coherence_score=80, missing_points=["light reactions"]),
        follow_up_question="Where does the oxygen come from?",
    )
    fields.update(overrides)
    return AnalysisResult(**fields)


class FakeAnalyzer:
    def __init__(self, result: Optional[AnalysisResult] = None, title: str = "Photosynthesis Basics",
                 analysis_error: Optional[BaseException] = None, title_error: Optional[BaseException] = None) -> None:
        self.result = result or sample_analysis()
        self.title = title
        self.analysis_error = analysis_error
        self.title_error = title_error
        self.calls: list[tuple] = []

    async def analyze_session(self, transcript, duration):
        self.calls.append(("analysis", transcript, duration))
        if self.analysis_error is not None:
            raise self.analysis_error
        return self.result

    async def generate_title(self, transcript):
        self.calls.append(("title", transcript))
        if self.title_error is not None:
            raise self.title_error
        return self.title


class FakeStore:
    def __init__(self, error: Optional[BaseException] = None) -> None:
        self.records = []
        self.error = error

    async def save_session(self, record) -> None:
        if self.error is not None:
            raise self.error
        self.records.append(record)


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def soniox_config() -> SonioxConfig:
    return SonioxConfig(api_key="test-soniox-key", heartbeat_interval_sec=3600, reconnect_delay_sec=0)


@pytest.fixture
def relay_config(soniox_config) -> RelayConfig:
    return RelayConfig(soniox=soniox_config)


@pytest.fixture
def listener() -> RecordingListener:
    return RecordingListener()
