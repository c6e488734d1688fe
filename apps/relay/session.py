"""Per-session transcript state and the registry that owns every live session."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterator, Optional

from apps.relay.tokens import TranscriptWord


class SessionPhase(Enum):
    AWAITING_UPSTREAM = "awaiting_upstream"
    STREAMING = "streaming"
    ENDING = "ending"
    CLOSED = "closed"


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class Session:
    id: str
    user_id: Optional[str] = None
    started_at_ms: int = field(default_factory=now_ms)
    phase: SessionPhase = SessionPhase.AWAITING_UPSTREAM
    transcript: str = ""
    pause_times: list[float] = field(default_factory=list)
    words: list[TranscriptWord] = field(default_factory=list)
    audio_bytes: int = 0
    max_dedup_entries: int = 2_000
    # insertion-ordered set of final texts already forwarded to the client
    _sent_final_texts: dict[str, None] = field(default_factory=dict, repr=False)

    channel: Any = field(default=None, repr=False)
    upstream: Any = field(default=None, repr=False)

    @property
    def sent_final_texts(self) -> frozenset[str]:
        return frozenset(self._sent_final_texts)

    def remember_final(self, text: str) -> bool:
        """Record *text* as forwarded.  False when it was already sent."""
        if text in self._sent_final_texts:
            return False
        self._sent_final_texts[text] = None
        while len(self._sent_final_texts) > self.max_dedup_entries:
            del self._sent_final_texts[next(iter(self._sent_final_texts))]
        return True

    def elapsed_sec(self, at_ms: Optional[int] = None) -> float:
        return ((at_ms if at_ms is not None else now_ms()) - self.started_at_ms) / 1000.0

    def record_pause(self, at_ms: Optional[int] = None) -> float:
        offset = self.elapsed_sec(at_ms)
        self.pause_times.append(offset)
        return offset

    @property
    def total_pause_sec(self) -> float:
        return sum(self.pause_times)


class SessionRegistry:
    """session_id → Session for every session not yet CLOSED.

    Each entry is driven by exactly one client connection and one upstream
    client on the event loop, so entries are not locked.
    """

    def __init__(self) -> None:
        self._sessions: dict[str, Session] = {}

    def add(self, session: Session) -> None:
        if session.id in self._sessions:
            raise KeyError(f"Session already active: {session.id}")
        self._sessions[session.id] = session

    def get(self, session_id: str) -> Optional[Session]:
        return self._sessions.get(session_id)

    def remove(self, session_id: str) -> Optional[Session]:
        return self._sessions.pop(session_id, None)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

    def __iter__(self) -> Iterator[Session]:
        return iter(list(self._sessions.values()))
