"""
Unverified claims decoding for bearer tokens.
Signature checks belong to the issuing server; here we only read the payload (subject, role, exp)
to drive client-side scheduling. Only the second period-separated segment is read, so header and
signature may be anything. decode() runs on every token read, including values persisted by older
builds, so it never raises.
"""
import json
import logging
import math
from dataclasses import dataclass

from jwt.utils import base64url_decode

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Claims:
    subject_id: str | None
    role: str | None
    expires_at: float | None  # epoch seconds

    def expired(self, now: float) -> bool:
        return self.expires_at is not None and self.expires_at <= now


def _as_text(value) -> str | None:
    if value is None or isinstance(value, (dict, list)):
        return None
    return str(value)


def _as_epoch(value) -> float | None:
    """exp must be a finite JSON number; bools and strings are ignored."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    value = float(value)
    if not math.isfinite(value):
        return None
    return value


def decode(token: str | None) -> Claims | None:
    """
    Decode token payload into Claims, or None if the token is malformed.
    The portal's auth server nests identity as {"user": {"id", "role"}}; plain sub/role are the fallback.
    """
    if not isinstance(token, str) or not token.strip():
        return None
    parts = token.strip().split(".")
    if len(parts) < 2:
        return None
    try:
        # binascii.Error, UnicodeError and JSONDecodeError are all ValueErrors
        payload = json.loads(base64url_decode(parts[1]))
    except (ValueError, TypeError) as e:
        logger.debug("Token payload not decodable: %s", type(e).__name__)
        return None
    if not isinstance(payload, dict):
        return None

    user = payload.get("user")
    if isinstance(user, dict):
        subject_id = _as_text(user.get("id"))
        role = _as_text(user.get("role"))
    else:
        subject_id = _as_text(payload.get("sub"))
        role = _as_text(payload.get("role"))
    return Claims(subject_id=subject_id, role=role, expires_at=_as_epoch(payload.get("exp")))
