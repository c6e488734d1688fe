"""
analysis.py — Out Loud Relay · End-of-session Analysis
======================================================
Two independent Groq chat-completion calls per finished session:

  analyze_session(transcript, duration)  → AnalysisResult (title left default)
  generate_title(transcript)             → 3–6 word title, transcript language

Both raise AnalysisFailure on call errors, timeouts or unusable bodies; the
orchestrator catches that and substitutes `fallback_analysis`.  A body that
parses but is partially wrong is repaired field by field in `coerce_analysis`.
"""

from __future__ import annotations

import asyncio
import json
import logging
import math
import re
from typing import Any, Iterable, Optional

from groq import AsyncGroq
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from apps.relay.errors import AnalysisFailure
from config import LLMConfig

log = logging.getLogger("outloud.analysis")

DEFAULT_TITLE = "Learning Session"
DEFAULT_SUMMARY = "Your learning session has been analyzed."
DEFAULT_FEEDBACK = "Keep practicing to improve your explanations."
DEFAULT_FOLLOW_UP = "What would you like to explore next?"
DEFAULT_SCORE = 50

_SYSTEM_PROMPT = (
    "You are an expert learning coach who gives insightful, constructive analysis "
    "of spoken explanations. Balance encouragement with honest assessment to foster "
    "growth and deeper understanding."
)

_ANALYSIS_PROMPT = """\
The user just finished a study session lasting {duration:.1f} seconds. This is what they explained out loud:

"{transcript}"

Analyze the session and reply with a JSON object using exactly these keys:

{{
  "summary": "2-3 sentence summary of what the user explained and the main concepts covered",
  "keywords": ["3-5 key concepts or topics"],
  "feedback": "One encouraging sentence about the clarity or depth of the explanation",
  "report": {{
    "thinkingIntensity": <0-100, depth of explanation, logical flow and conceptual connections>,
    "pauseTime": <estimated seconds of hesitation, filler words or repetition>,
    "coherenceScore": <0-100, logical structure and topic coherence>,
    "missingPoints": ["2-4 specific, actionable aspects that would strengthen the explanation"]
  }},
  "followUpQuestion": "One thought-provoking question that builds on what they said"
}}

Scoring:
- thinkingIntensity: 80-100 exceptional depth, 60-79 solid, 40-59 basic grasp, 20-39 fragmented, 0-19 surface level
- coherenceScore: 80-100 excellent flow, 60-79 mostly coherent, 40-59 somewhat scattered, 20-39 highly fragmented, 0-19 disjointed
- If coherenceScore < 40, acknowledge the effort and suggest organising thoughts before speaking.
- If coherenceScore >= 80, encourage strongly and challenge them to go deeper.

Answer in the same language as the transcript."""

_TITLE_PROMPT = (
    "Generate a concise, descriptive title (3-6 words) for this learning session. "
    "Capture the main topic or concept discussed. Use the same language as the transcript. "
    "Reply with the title only. Examples: \"Understanding Neural Networks\", "
    "\"Photosynthesis Process Explained\", \"量子力学基础概念\"."
)

_CODE_FENCE_RE = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.DOTALL)
_TITLE_QUOTES = "\"'“”‘’「」『』《》"


# ---------------------------------------------------------------------------
# Result models
# ---------------------------------------------------------------------------

class _WireModel(BaseModel):
    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)


class AnalysisReport(_WireModel):
    # ranges are enforced by coerce_analysis
    thinking_intensity: int | float = DEFAULT_SCORE
    pause_time: int | float = 0
    coherence_score: int | float = DEFAULT_SCORE
    missing_points: list[str] = Field(default_factory=list)


class AnalysisResult(_WireModel):
    summary: str
    keywords: list[str] = Field(default_factory=list)
    feedback: str
    report: AnalysisReport = Field(default_factory=AnalysisReport)
    follow_up_question: str
    title: str = DEFAULT_TITLE

    def with_title(self, title: str) -> "AnalysisResult":
        return self.model_copy(update={"title": title})

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True)


# ---------------------------------------------------------------------------
# Field-by-field repair
# ---------------------------------------------------------------------------

def _is_number(value: object) -> bool:
    return (
        isinstance(value, (int, float))
        and not isinstance(value, bool)
        and math.isfinite(value)
    )


def _text(value: Any, default: str) -> str:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return default


def _strings(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [item.strip() for item in value if isinstance(item, str) and item.strip()]


def _score(value: Any) -> int | float:
    if not _is_number(value):
        return DEFAULT_SCORE
    return min(max(value, 0), 100)


def _seconds(value: Any) -> int | float:
    if not _is_number(value):
        return 0
    return max(value, 0)


def coerce_analysis(raw: dict) -> AnalysisResult:
    """Build an AnalysisResult from a model reply, defaulting each bad field on its own."""
    report = raw.get("report")
    if not isinstance(report, dict):
        report = {}
    return AnalysisResult(
        summary=_text(raw.get("summary"), DEFAULT_SUMMARY),
        keywords=_strings(raw.get("keywords")),
        feedback=_text(raw.get("feedback"), DEFAULT_FEEDBACK),
        report=AnalysisReport(
            thinking_intensity=_score(report.get("thinkingIntensity")),
            pause_time=_seconds(report.get("pauseTime")),
            coherence_score=_score(report.get("coherenceScore")),
            missing_points=_strings(report.get("missingPoints")),
        ),
        follow_up_question=_text(raw.get("followUpQuestion"), DEFAULT_FOLLOW_UP),
    )


def clean_title(raw: str) -> str:
    lines = [line for line in raw.strip().splitlines() if line.strip()]
    if not lines:
        return DEFAULT_TITLE
    title = lines[0].strip()
    if title.lower().startswith("title:"):
        title = title[len("title:"):]
    title = title.strip().strip(_TITLE_QUOTES).strip().rstrip(".。").strip()
    return title[:120] or DEFAULT_TITLE


def fallback_analysis(transcript: str, duration: float, pause_times: Iterable[float]) -> AnalysisResult:
    """Deterministic stand-in used whenever the model pipeline fails."""
    return AnalysisResult(
        summary=transcript or "Session completed.",
        keywords=[],
        feedback=f"Session duration: {duration:.1f}s. Analysis temporarily unavailable.",
        report=AnalysisReport(
            thinking_intensity=DEFAULT_SCORE,
            pause_time=math.floor(sum(pause_times) + 0.5),
            coherence_score=DEFAULT_SCORE,
            missing_points=[],
        ),
        follow_up_question="What did you learn from this session?",
        title=DEFAULT_TITLE,
    )


# ---------------------------------------------------------------------------
# Groq-backed analyzer
# ---------------------------------------------------------------------------

class SessionAnalyzer:
    def __init__(self, config: LLMConfig, client: Optional[Any] = None) -> None:
        self._config = config
        self._client = client

    def _get_client(self) -> Any:
        if self._client is None:
            if not self._config.api_key:
                raise AnalysisFailure("Groq API key is not configured")
            self._client = AsyncGroq(api_key=self._config.api_key, base_url=self._config.base_url)
        return self._client

    async def _complete(self, kind: str, **request: Any) -> str:
        timeout = self._config.timeout_sec
        try:
            response = await asyncio.wait_for(
                self._get_client().chat.completions.create(model=self._config.model, **request),
                timeout=timeout,
            )
        except asyncio.TimeoutError as exc:
            log.warning("event=analysis_timeout kind=%s timeout_sec=%.1f", kind, timeout)
            raise AnalysisFailure(f"{kind} call timed out after {timeout:.1f}s") from exc
        except asyncio.CancelledError:
            raise
        except AnalysisFailure:
            raise
        except Exception as exc:
            log.warning("event=analysis_call_error kind=%s error=%s", kind, exc)
            raise AnalysisFailure(f"{kind} call failed: {exc}") from exc

        try:
            content = response.choices[0].message.content or ""
        except (AttributeError, IndexError, TypeError) as exc:
            raise AnalysisFailure(f"{kind} response has an unexpected shape") from exc
        return content.strip()

    async def analyze_session(self, transcript: str, duration: float) -> AnalysisResult:
        log.info("event=analysis_start transcript_len=%d duration_sec=%.1f", len(transcript), duration)
        content = await self._complete(
            "analysis",
            messages=[
                {"role": "system", "content": _SYSTEM_PROMPT},
                {"role": "user", "content": _ANALYSIS_PROMPT.format(duration=duration, transcript=transcript)},
            ],
            response_format={"type": "json_object"},
            temperature=self._config.analysis_temperature,
        )

        fenced = _CODE_FENCE_RE.match(content)
        if fenced:
            content = fenced.group(1)
        try:
            raw = json.loads(content)
        except json.JSONDecodeError as exc:
            log.warning("event=analysis_invalid_json content_len=%d", len(content))
            raise AnalysisFailure("analysis response is not valid JSON") from exc
        if not isinstance(raw, dict):
            raise AnalysisFailure("analysis response is not a JSON object")

        result = coerce_analysis(raw)
        log.info(
            "event=analysis_result keywords=%d coherence=%s intensity=%s",
            len(result.keywords), result.report.coherence_score, result.report.thinking_intensity,
        )
        return result

    async def generate_title(self, transcript: str) -> str:
        excerpt = transcript[: self._config.title_excerpt_chars]
        content = await self._complete(
            "title",
            messages=[
                {"role": "system", "content": _TITLE_PROMPT},
                {"role": "user", "content": f"Generate a title for this session:\n\n{excerpt}"},
            ],
            temperature=self._config.title_temperature,
            max_tokens=self._config.title_max_tokens,
        )
        title = clean_title(content)
        log.info("event=title_result title_len=%d", len(title))
        return title
