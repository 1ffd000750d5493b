# mentor/clients/retry.py
#
# Bounded retry on upstream rate limiting, shared by chat completions and the
# deep-research calls (each with its own RetryPolicy).

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

import openai

from mentor.core.cancel import CancelToken
from mentor.core.errors import (
    Cancelled,
    GatewayError,
    RateLimited,
    RegionRestricted,
    UpstreamFailure,
)
from mentor.utils.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

REGION_RESTRICTED_CODE = "unsupported_country_region_territory"
RATE_LIMIT_CODE = "rate_limit_exceeded"

_TRY_AGAIN_RE = re.compile(r"try again in ([0-9.]+)\s*s", re.IGNORECASE)


def backoff_delay(attempt: int, unit: float) -> float:
    """Linear backoff: attempt 1 waits one unit, attempt 2 two units, ..."""
    return max(0.0, attempt * unit)


def retry_hint_seconds(exc: BaseException) -> Optional[float]:
    """Server-suggested wait: Retry-After header, else 'try again in Ns' in the message."""
    response = getattr(exc, "response", None)
    headers = getattr(response, "headers", None)
    if headers is not None:
        raw = headers.get("retry-after")
        if raw:
            try:
                return max(0.1, float(raw))
            except ValueError:
                pass
    match = _TRY_AGAIN_RE.search(str(exc) or "")
    if match:
        try:
            return float(match.group(1))
        except ValueError:
            return None
    return None


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    backoff_unit: float = 1.0
    honor_retry_hint: bool = False

    def delay(self, attempt: int, exc: BaseException) -> float:
        if self.honor_retry_hint:
            hint = retry_hint_seconds(exc)
            if hint is not None:
                return hint
        return backoff_delay(attempt, self.backoff_unit)


# ---------------------------------------------------------------------------
# Error classification helpers
# ---------------------------------------------------------------------------

def _error_code(exc: BaseException) -> Optional[str]:
    code = getattr(exc, "code", None)
    if isinstance(code, str):
        return code
    body = getattr(exc, "body", None)
    if isinstance(body, dict):
        inner = body.get("error") if isinstance(body.get("error"), dict) else body
        code = inner.get("code")
        if isinstance(code, str):
            return code
    return None


def error_code(exc: BaseException) -> str:
    """Short diagnostic label for log lines."""
    name = exc.__class__.__name__
    msg = (str(exc) or "").lower()
    code = _error_code(exc) or ""

    if isinstance(exc, Cancelled):
        return "cancelled"

    if code == REGION_RESTRICTED_CODE or REGION_RESTRICTED_CODE in msg:
        return "openai_region_restricted"

    if isinstance(exc, openai.RateLimitError) or code == RATE_LIMIT_CODE or "429" in msg or "rate limit" in msg:
        return "openai_rate_limit"

    if isinstance(exc, openai.AuthenticationError) or "401" in msg or "incorrect api key" in msg:
        return "openai_auth"

    if "notfound" in name.lower() or "404" in msg:
        return "openai_404_not_found"

    if isinstance(exc, openai.APITimeoutError) or "timeout" in msg or "timed out" in msg:
        return "openai_timeout"

    if "502" in msg or "bad gateway" in msg:
        return "openai_502"

    if "503" in msg or "service unavailable" in msg:
        return "openai_503"

    if isinstance(exc, openai.APIConnectionError) or "connection" in msg or "dns" in msg:
        return "openai_network"

    return "openai_unknown"


def is_rate_limit(exc: BaseException) -> bool:
    """Rate limiting as reported by the SDK type, HTTP status or error code; never by message text."""
    return (
        isinstance(exc, openai.RateLimitError)
        or getattr(exc, "status_code", None) == 429
        or _error_code(exc) == RATE_LIMIT_CODE
    )


def classify_error(exc: BaseException) -> GatewayError:
    """
    Map an upstream exception onto the gateway taxonomy.

    Only structured signals decide the class: RateLimited changes control flow
    (it is retried), so the loose message matching of error_code() stays in
    log labels.
    """
    if isinstance(exc, GatewayError):
        return exc

    if _error_code(exc) == REGION_RESTRICTED_CODE or REGION_RESTRICTED_CODE in str(exc):
        return RegionRestricted(str(exc))
    if is_rate_limit(exc):
        return RateLimited(str(exc))
    return UpstreamFailure(f"{exc.__class__.__name__}: {exc}")


async def call_with_retry(
    fn: Callable[[], Awaitable[T]],
    *,
    policy: RetryPolicy,
    cancel: Optional[CancelToken] = None,
    label: str = "upstream",
    req_id: str = "-",
) -> T:
    """
    Run `fn` under `policy`. Only RateLimited is retried; any other failure,
    and any cancellation, ends the loop at once.
    """
    token = cancel or CancelToken()
    attempts = max(1, policy.max_attempts)

    for attempt in range(1, attempts + 1):
        token.raise_if_cancelled()
        try:
            return await token.run(fn())
        except Cancelled:
            raise
        except Exception as exc:
            err = classify_error(exc)
            if isinstance(err, RateLimited) and attempt < attempts:
                delay = policy.delay(attempt, exc)
                logger.warning(
                    "[%s] req_id=%s rate limited attempt=%d/%d retry_in_ms=%d",
                    label, req_id, attempt, attempts, int(delay * 1000),
                )
                await token.sleep(delay)
                continue

            logger.warning(
                "[%s] req_id=%s FAIL attempt=%d/%d code=%s err=%s",
                label, req_id, attempt, attempts, error_code(exc), exc,
            )
            if err is exc:
                raise
            raise err from exc

    # range() above always returns or raises
    raise UpstreamFailure(f"{label}: retry loop exhausted")
