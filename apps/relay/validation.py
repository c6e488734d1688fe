"""Input validation for identifiers arriving on the ingress."""

from __future__ import annotations

import re
import uuid
from typing import Optional

from apps.relay.session import now_ms

SESSION_ID_MAX_LEN = 255
_SESSION_ID_RE = re.compile(r"^[A-Za-z0-9_-]+$")


def new_session_id() -> str:
    return f"session_{now_ms()}"


def validate_session_id(raw: Optional[str]) -> str:
    """Return a usable session id, generating one when *raw* is empty.

    Raises ValueError for ids that are too long or contain other characters.
    """
    if raw is None or not raw.strip():
        return new_session_id()
    session_id = raw.strip()
    if len(session_id) > SESSION_ID_MAX_LEN:
        raise ValueError("Session ID too long")
    if not _SESSION_ID_RE.match(session_id):
        raise ValueError("Session ID contains invalid characters")
    return session_id


def validate_user_id(raw: object) -> Optional[str]:
    """Canonical UUID string, or None when *raw* is not a UUID."""
    if not isinstance(raw, str):
        return None
    try:
        return str(uuid.UUID(raw))
    except ValueError:
        return None
