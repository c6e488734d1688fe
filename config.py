"""
config.py — Out Loud Relay · Runtime Configuration
==================================================
Pydantic models for every tunable parameter of the relay.
Serialises to / deserialises from JSON.  Used by:
  • server.py                    : builds the app, orchestrator and collaborators
  • apps/relay/soniox_client.py  : upstream handshake, liveness and retry knobs
  • apps/relay/analysis.py       : Groq model parameters
  • apps/relay/store.py          : Supabase endpoints
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field

log = logging.getLogger("outloud.config")

MIB = 1024 * 1024


# ---------------------------------------------------------------------------
# Per-service config sections
# ---------------------------------------------------------------------------

class SonioxConfig(BaseModel):
    """Soniox real-time STT parameters (sent in the handshake + client tuning)."""
    api_key: str = Field(default="", description="Soniox API key")
    ws_url: str = Field(
        default="wss://stt-rt.soniox.com/transcribe-websocket",
        description="Real-time websocket endpoint (must be wss://)",
    )
    model: str = Field(default="stt-rt-preview", description="Soniox model ID")
    language_hints: list[str] = Field(default_factory=lambda: ["zh", "en"], description="Expected languages")
    enable_endpoint_detection: bool = Field(default=True, description="Emit <end> tokens on pauses")
    audio_format: str = Field(default="pcm_f32le", description="Raw audio encoding")
    sample_rate: int = Field(default=16000, ge=8000, le=48000, description="Audio sample rate (Hz)")
    num_channels: int = Field(default=1, ge=1, le=2, description="Audio channel count")

    handshake_timeout_sec: float = Field(default=12.0, gt=0.0, le=60.0, description="Connection open timeout")
    heartbeat_interval_sec: float = Field(default=10.0, gt=0.0, description="Liveness check period")
    silence_threshold_sec: float = Field(default=30.0, gt=0.0, description="Upstream silence before reconnect")
    max_reconnect_attempts: int = Field(default=3, ge=0, le=20, description="Reconnects before giving up")
    reconnect_delay_sec: float = Field(default=1.0, ge=0.0, le=30.0, description="First reconnect delay")
    reconnect_backoff: float = Field(default=2.0, ge=1.0, le=10.0, description="Delay multiplier per attempt")
    max_reconnect_delay_sec: float = Field(default=8.0, ge=0.0, le=120.0, description="Reconnect delay ceiling")
    drain_timeout_sec: float = Field(default=2.0, ge=0.0, le=30.0, description="Wait for upstream flush at end")

    def handshake_payload(self) -> dict:
        """The one-time configuration message sent right after the socket opens."""
        return {
            "api_key": self.api_key,
            "model": self.model,
            "language_hints": list(self.language_hints),
            "enable_endpoint_detection": self.enable_endpoint_detection,
            "audio_format": self.audio_format,
            "sample_rate": self.sample_rate,
            "num_channels": self.num_channels,
        }


class LLMConfig(BaseModel):
    """Groq chat-completion parameters for the end-of-session analysis."""
    api_key: str = Field(default="", description="Groq API key")
    base_url: Optional[str] = Field(default=None, description="Override API base URL")
    model: str = Field(default="llama-3.3-70b-versatile", description="Groq model ID")
    analysis_temperature: float = Field(default=0.7, ge=0.0, le=2.0, description="Analysis randomness")
    title_temperature: float = Field(default=0.3, ge=0.0, le=2.0, description="Title randomness")
    title_max_tokens: int = Field(default=20, ge=1, le=200, description="Max title tokens")
    title_excerpt_chars: int = Field(default=500, ge=50, description="Transcript prefix used for the title")
    timeout_sec: float = Field(default=30.0, gt=0.0, le=300.0, description="Per-call timeout")


class SessionLimits(BaseModel):
    """Guards applied by the session orchestrator."""
    max_frame_bytes: int = Field(default=MIB, ge=1, description="Largest accepted audio frame")
    max_transcript_chars: int = Field(default=50_000, ge=1, description="Largest transcript sent to analysis")
    max_dedup_entries: int = Field(default=2_000, ge=1, description="Remembered final texts per session")


class PersistenceConfig(BaseModel):
    """Supabase REST collaborator (persistence + token verification)."""
    supabase_url: Optional[str] = Field(default=None, description="https://<project>.supabase.co")
    service_key: Optional[str] = Field(default=None, description="Service-role key")
    table: str = Field(default="sessions", description="Target table")
    timeout_sec: float = Field(default=10.0, gt=0.0, le=120.0, description="HTTP timeout")

    @property
    def enabled(self) -> bool:
        return bool(self.supabase_url and self.service_key)


# ---------------------------------------------------------------------------
# Top-level config
# ---------------------------------------------------------------------------

class RelayConfig(BaseModel):
    """Complete runtime configuration for the relay."""
    soniox: SonioxConfig = Field(default_factory=SonioxConfig)
    llm: LLMConfig = Field(default_factory=LLMConfig)
    limits: SessionLimits = Field(default_factory=SessionLimits)
    persistence: PersistenceConfig = Field(default_factory=PersistenceConfig)

    # -- Persistence -----------------------------------------------------------

    @classmethod
    def load(cls, path: str | Path) -> "RelayConfig":
        """Read a JSON config file.  A missing or unreadable file yields the defaults."""
        source = Path(path)
        if not source.is_file():
            log.info("event=config_defaults path=%s reason=missing", source)
            return cls()
        try:
            config = cls.model_validate_json(source.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            log.warning("event=config_invalid path=%s error=%s fallback=defaults", source, exc)
            return cls()
        log.info("event=config_file_loaded path=%s", source)
        return config

    def save(self, path: str | Path) -> None:
        target = Path(path)
        target.write_text(self.model_dump_json(indent=2, exclude_none=True) + "\n", encoding="utf-8")
        log.info("event=config_written path=%s", target)

    def merge_patch(self, patch: dict) -> "RelayConfig":
        """Deep-merge `patch` over this config and re-validate.

        `{"soniox": {"model": "stt-rt-v3"}}` replaces soniox.model only.
        """
        return RelayConfig.model_validate(_deep_merge(self.model_dump(), patch))

    def redacted(self) -> dict:
        """Dump with secrets masked, safe for logs and diagnostics."""
        data = self.model_dump()
        for section, key in (("soniox", "api_key"), ("llm", "api_key"), ("persistence", "service_key")):
            if data[section].get(key):
                data[section][key] = "***"
        return data


def _deep_merge(base: dict, patch: dict) -> dict:
    """Merge `patch` into `base` (mutated and returned); nested dicts merge key by key."""
    for key, value in patch.items():
        current = base.get(key)
        base[key] = _deep_merge(current, value) if isinstance(current, dict) and isinstance(value, dict) else value
    return base


# env var → (section, key)
_ENV_OVERRIDES: dict[str, tuple[str, str]] = {
    "SONIOX_API_KEY":       ("soniox", "api_key"),
    "SONIOX_WS_URL":        ("soniox", "ws_url"),
    "SONIOX_MODEL":         ("soniox", "model"),
    "GROQ_API_KEY":         ("llm", "api_key"),
    "GROQ_BASE_URL":        ("llm", "base_url"),
    "GROQ_LLM_MODEL":       ("llm", "model"),
    "SUPABASE_URL":         ("persistence", "supabase_url"),
    "SUPABASE_SERVICE_KEY": ("persistence", "service_key"),
}


def load_config(path: str | Path | None = None) -> RelayConfig:
    """Build the runtime config: `.env` → JSON file → environment overrides."""
    load_dotenv()
    config_path = path or os.getenv("RELAY_CONFIG_PATH", "relay_config.json")
    config = RelayConfig.load(config_path)

    patch: dict[str, dict[str, str]] = {}
    for env_name, (section, key) in _ENV_OVERRIDES.items():
        value = os.getenv(env_name)
        if value:
            patch.setdefault(section, {})[key] = value
    if patch:
        config = config.merge_patch(patch)
        log.info("event=config_env_overrides keys=%s", ",".join(sorted(
            f"{section}.{key}" for section, keys in patch.items() for key in keys
        )))
    return config
