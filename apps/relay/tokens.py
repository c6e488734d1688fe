"""
tokens.py — sub-word token → word reconciliation
=================================================
Soniox emits sub-word tokens ("Hel", "lo", " world").  A token whose text
starts with whitespace opens a new word; anything else is glued onto the
word being built.  The end-of-turn marker Soniox emits on endpoint
detection is stripped before merging and never becomes a word.

`merge_tokens` is pure: callers re-run it over the full finalized token
history, so the word list it returns is always the same as a single pass
over everything received so far.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

END_MARKER = "<end>"
_END_MARKER_RE = re.compile(r"</?end>", re.IGNORECASE)


def strip_end_markers(text: str) -> str:
    """Remove every end-of-turn marker (and its stray closing form) from *text*."""
    return _END_MARKER_RE.sub("", text)


def has_end_marker(text: str) -> bool:
    return _END_MARKER_RE.search(text) is not None


class TranscriptWord(BaseModel):
    """One whole word with its position in the audio stream (seconds)."""
    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    word: str
    start_time: float = Field(ge=0.0)
    end_time: float = Field(ge=0.0)

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True)


@dataclass(frozen=True)
class SubwordToken:
    """A finalized token as received from upstream (timestamps in ms).

    Timestamps are None when upstream sent none usable; the token still
    carries text and word boundaries.
    """
    text: str
    start_ms: Optional[float] = None
    end_ms: Optional[float] = None

    @property
    def timed(self) -> bool:
        return self.start_ms is not None and self.end_ms is not None


def _emit(words: list[TranscriptWord], text: str, start_ms: Optional[float], end_ms: Optional[float]) -> None:
    text = text.strip()
    if not text or start_ms is None or end_ms is None or end_ms <= start_ms:
        return
    words.append(TranscriptWord(word=text, start_time=start_ms / 1000.0, end_time=end_ms / 1000.0))


def merge_tokens(tokens: Iterable[SubwordToken]) -> list[TranscriptWord]:
    """Merge finalized sub-word tokens into whole words, in arrival order.

    A word's times span its timed tokens; a word with none is dropped.
    """
    words: list[TranscriptWord] = []
    current = ""
    start_ms: Optional[float] = None
    end_ms: Optional[float] = None

    for token in tokens:
        piece = strip_end_markers(token.text)
        if not piece:
            continue

        if piece[0].isspace():
            if current:
                _emit(words, current, start_ms, end_ms)
            current = ""
            start_ms = end_ms = None
            piece = piece.lstrip()
            if not piece:
                continue

        current += piece
        if token.timed:
            if start_ms is None:
                start_ms = token.start_ms
            end_ms = token.end_ms

    if current:
        _emit(words, current, start_ms, end_ms)
    return words


def _is_boundary(token: SubwordToken) -> bool:
    piece = strip_end_markers(token.text)
    return bool(piece) and piece[0].isspace()


class WordAccumulator:
    """Incremental `merge_tokens` over a growing token history.

    Everything before the latest word-boundary token can no longer change,
    so it is merged once and kept; only the tail is re-merged per call.
    """

    def __init__(self) -> None:
        self._committed: list[TranscriptWord] = []
        self._pending: list[SubwordToken] = []

    def extend(self, tokens: Iterable[SubwordToken]) -> list[TranscriptWord]:
        """Add newly finalized tokens and return every word so far."""
        self._pending.extend(tokens)
        boundary = 0
        for index in range(len(self._pending) - 1, 0, -1):
            if _is_boundary(self._pending[index]):
                boundary = index
                break
        if boundary:
            self._committed.extend(merge_tokens(self._pending[:boundary]))
            del self._pending[:boundary]
        return self._committed + merge_tokens(self._pending)

    def reset(self) -> None:
        self._committed.clear()
        self._pending.clear()
