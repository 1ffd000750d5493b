# mentor/memory/token.py
"""
Sealed memory tokens.

The serving tier keeps no per-conversation state. The compacted summary of a
conversation travels with the client as a signed token:

    SS1.<base64url(payload json)>.<base64url(HMAC-SHA256(secret, payload part))>

The payload is serialized canonically (sorted keys, compact separators) so
the signed bytes never depend on dict ordering. Any token that fails to
verify, or that was issued for another subject or topic, is treated as
"no memory", never as an error.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import re
import threading
import time
from dataclasses import dataclass
from typing import Optional, Tuple

from mentor.core.errors import ConfigurationError

TOKEN_PREFIX = "SS1"
TOKEN_VERSION = 1

# Topic used by the general-purpose assistant (not bound to an assignment)
GENERAL_TOPIC_ID = "general-support"

_TOPIC_ID_RE = re.compile(r"[0-9]+-[0-9]+")


@dataclass(frozen=True)
class MemoryToken:
    subject_id: str
    topic_id: str
    summary: str
    issued_at: int  # ms since epoch, informational only


def is_valid_topic_id(topic_id: Optional[str]) -> bool:
    """Accept the general-support sentinel or '<int>-<int>' (term-assignment)."""
    if not isinstance(topic_id, str):
        return False
    if topic_id == GENERAL_TOPIC_ID:
        return True
    return _TOPIC_ID_RE.fullmatch(topic_id) is not None


def _b64url_encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def _b64url_decode(text: str) -> bytes:
    padded = text + "=" * (-len(text) % 4)
    return base64.urlsafe_b64decode(padded.encode("ascii"))


def _canonical_json(payload: dict) -> bytes:
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def _sign(secret: str, payload_part: str) -> str:
    digest = hmac.new(secret.encode("utf-8"), payload_part.encode("ascii"), hashlib.sha256).digest()
    return _b64url_encode(digest)


_ts_lock = threading.Lock()
_last_ts = 0


def _issue_ts() -> int:
    """Milliseconds since epoch, strictly increasing within the process."""
    global _last_ts
    with _ts_lock:
        _last_ts = max(time.time_ns() // 1_000_000, _last_ts + 1)
        return _last_ts


def seal(secret: str, subject_id: str, topic_id: str, summary: str) -> str:
    """Issue a brand-new token. Two calls never share a signature (issued_at moves)."""
    if not secret:
        raise ConfigurationError("SUMMARY_SECRET is required to seal a memory token")
    if not subject_id or not topic_id:
        raise ValueError("subject_id and topic_id are required")

    payload = {
        "v": TOKEN_VERSION,
        "uid": subject_id,
        "taskId": topic_id,
        "summary": summary or "",
        "ts": _issue_ts(),
    }
    payload_part = _b64url_encode(_canonical_json(payload))
    return f"{TOKEN_PREFIX}.{payload_part}.{_sign(secret, payload_part)}"


def unseal(secret: str, token: Optional[str]) -> Optional[MemoryToken]:
    """
    Verify and decode a token. Returns None for anything that does not verify:
    wrong part count or prefix, bad signature, undecodable payload, wrong types.
    Never raises.
    """
    if not secret or not token or not isinstance(token, str):
        return None

    parts = token.split(".")
    if len(parts) != 3 or parts[0] != TOKEN_PREFIX:
        return None
    _, payload_part, signature_part = parts

    try:
        expected = _sign(secret, payload_part)
    except UnicodeEncodeError:
        return None
    if not hmac.compare_digest(expected.encode("ascii"), signature_part.encode("utf-8")):
        return None

    try:
        payload = json.loads(_b64url_decode(payload_part).decode("utf-8"))
    except (binascii.Error, ValueError, UnicodeError):
        return None

    if not isinstance(payload, dict):
        return None
    uid = payload.get("uid")
    task_id = payload.get("taskId")
    summary = payload.get("summary")
    ts = payload.get("ts")
    if (
        payload.get("v") != TOKEN_VERSION
        or not isinstance(uid, str)
        or not isinstance(task_id, str)
        or not isinstance(summary, str)
        or not isinstance(ts, int)
        or isinstance(ts, bool)
    ):
        return None

    return MemoryToken(subject_id=uid, topic_id=task_id, summary=summary, issued_at=ts)


def recover_summary(
    secret: str,
    token: Optional[str],
    subject_id: str,
    topic_id: str,
) -> Tuple[str, str]:
    """
    Return (summary, reason). The summary is "" unless reason == "ok".

    reason: absent | invalid | subject_mismatch | topic_mismatch | ok
    """
    if not token:
        return "", "absent"
    unsealed = unseal(secret, token)
    if unsealed is None:
        return "", "invalid"
    if unsealed.subject_id != subject_id:
        return "", "subject_mismatch"
    if unsealed.topic_id != topic_id:
        return "", "topic_mismatch"
    return unsealed.summary, "ok"
