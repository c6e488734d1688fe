"""
store.py — Supabase collaborators
=================================
Persistence of finalized sessions (PostgREST upsert into `sessions`) and
verification of client access tokens (`GET /auth/v1/user`).  Both go through
one lazily created `httpx.AsyncClient`; call `aclose()` on shutdown.
"""

from __future__ import annotations

import logging
from typing import Any, Optional, Protocol

import httpx
from pydantic import BaseModel, Field

from apps.relay.errors import PersistenceError
from apps.relay.validation import validate_user_id
from config import PersistenceConfig

log = logging.getLogger("outloud.store")


class SessionRecord(BaseModel):
    """Row shape of the `sessions` table."""
    user_id: str
    session_id: str = Field(max_length=255)
    transcript: str
    transcript_segments: list[dict[str, Any]] = Field(default_factory=list)
    start_time: str
    end_time: str
    duration: float = Field(ge=0.0)
    analysis: dict[str, Any]
    title: str = Field(max_length=500)


class SessionStore(Protocol):
    async def save_session(self, record: SessionRecord) -> None: ...


class TokenVerifier(Protocol):
    async def verify(self, token: str) -> Optional[str]: ...


class _SupabaseBase:
    def __init__(self, config: PersistenceConfig, client: Optional[httpx.AsyncClient] = None) -> None:
        if not config.enabled:
            raise ValueError("Supabase URL and service key are required")
        self._config = config
        self._base_url = str(config.supabase_url).rstrip("/")
        self._client = client
        self._owns_client = client is None

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._config.timeout_sec)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None


class SupabaseSessionStore(_SupabaseBase):
    async def save_session(self, record: SessionRecord) -> None:
        key = self._config.service_key
        try:
            response = await self._http().post(
                f"{self._base_url}/rest/v1/{self._config.table}",
                params={"on_conflict": "user_id,session_id"},
                json=record.model_dump(),
                headers={
                    "apikey": key,
                    "Authorization": f"Bearer {key}",
                    "Prefer": "resolution=merge-duplicates,return=minimal",
                },
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise PersistenceError(
                f"Supabase rejected session {record.session_id}: HTTP {exc.response.status_code}"
            ) from exc
        except httpx.HTTPError as exc:
            raise PersistenceError(f"Supabase unreachable: {exc}") from exc
        log.info("event=session_persisted session=%s user=%s", record.session_id, record.user_id)


class SupabaseTokenVerifier(_SupabaseBase):
    async def verify(self, token: str) -> Optional[str]:
        """Return the user id for a valid access token, None otherwise."""
        try:
            response = await self._http().get(
                f"{self._base_url}/auth/v1/user",
                headers={"apikey": self._config.service_key, "Authorization": f"Bearer {token}"},
            )
        except httpx.HTTPError as exc:
            log.warning("event=token_verify_unreachable error=%s", exc)
            return None
        if response.status_code != 200:
            log.info("event=token_rejected status=%d", response.status_code)
            return None
        try:
            payload = response.json()
        except ValueError:
            log.warning("event=token_verify_bad_body")
            return None
        user_id = validate_user_id(payload.get("id") if isinstance(payload, dict) else None)
        if user_id is None:
            log.warning("event=token_verify_bad_user_id")
        return user_id
