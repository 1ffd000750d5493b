# mentor/clients/openai_client.py
#
# Single integration layer for the OpenAI API (chat completions + responses).
# - All calls go through call_with_retry (rate-limit retry only).
# - All calls take a CancelToken; cancelling it tears down the HTTP request.
# - Secrets never reach the logs.

from __future__ import annotations

import random
import time
from contextlib import aclosing
from dataclasses import replace
from typing import Any, AsyncIterator, Dict, List, Optional

from openai import AsyncOpenAI

from mentor.clients.retry import RetryPolicy, call_with_retry, classify_error, error_code
from mentor.config.settings import Settings
from mentor.core.cancel import CancelToken
from mentor.core.errors import Cancelled
from mentor.utils.logging import get_logger

logger = get_logger(__name__)


# ---------------------------------------------------------------------------
# Base-url normalization
# ---------------------------------------------------------------------------

def _strip_outer_quotes(s: str) -> str:
    """
    Users sometimes put OPENAI_BASE_URL="https://..." including quotes.
    This removes a single pair of matching outer quotes.
    """
    s2 = (s or "").strip()
    if len(s2) >= 2 and ((s2[0] == s2[-1]) and s2[0] in ("'", '"')):
        return s2[1:-1].strip()
    return s2


def _normalize_openai_api_base(raw: Optional[str]) -> str:
    """Ensures the base url ends with /v1 (the SDK appends resource paths to it)."""
    base = _strip_outer_quotes((raw or "https://api.openai.com").strip())

    if not (base.startswith("http://") or base.startswith("https://")):
        raise RuntimeError(f"OPENAI_BASE_URL is invalid (missing scheme): {base!r}")

    while base.endswith("/"):
        base = base[:-1]

    # If someone passed a full endpoint like .../v1/chat/completions, trim to /v1
    if "/v1/" in base:
        return base.split("/v1/")[0] + "/v1"

    if base.endswith("/v1"):
        return base

    return base + "/v1"


def _mk_req_id(prefix: str = "req") -> str:
    return f"{prefix}_{int(time.time()*1000)}_{random.randint(1000, 9999)}"


def _as_dict(obj: Any) -> Dict[str, Any]:
    if isinstance(obj, dict):
        return obj
    dump = getattr(obj, "model_dump", None)
    if dump is not None:
        return dump()
    raise TypeError(f"Unexpected upstream payload type: {type(obj).__name__}")


def _delta_text(chunk: Any) -> str:
    choices = getattr(chunk, "choices", None) or []
    if not choices:
        return ""
    delta = getattr(choices[0], "delta", None)
    return getattr(delta, "content", None) or ""


class UpstreamClient:
    """
    Async wrapper around the OpenAI SDK.

    The SDK's own retries are disabled (max_retries=0): the retry bound is
    owned by RetryPolicy so "3 attempts" means exactly three requests.
    """

    def __init__(self, settings: Settings, client: Any = None) -> None:
        self.settings = settings
        self._client = client
        self.chat_policy = RetryPolicy(
            max_attempts=settings.max_retries,
            backoff_unit=settings.retry_backoff_seconds,
        )
        self.research_policy = RetryPolicy(
            max_attempts=settings.max_retries,
            backoff_unit=settings.research_retry_backoff_seconds,
            honor_retry_hint=True,
        )

    def _openai(self) -> Any:
        if self._client is None:
            api_key = self.settings.require_openai_api_key()
            base_url = _normalize_openai_api_base(self.settings.openai_base_url)
            self._client = AsyncOpenAI(
                api_key=api_key,
                base_url=base_url,
                timeout=self.settings.openai_timeout_seconds,
                max_retries=0,
            )
            logger.info("OpenAI api_base resolved to: %s", base_url)
        return self._client

    # ------------------------------------------------------------------
    # Chat completions
    # ------------------------------------------------------------------

    async def stream_chat(
        self,
        *,
        model: str,
        messages: List[Dict[str, Any]],
        max_tokens: Optional[int] = None,
        cancel: Optional[CancelToken] = None,
        max_attempts: Optional[int] = None,
        req_id: Optional[str] = None,
    ) -> AsyncIterator[str]:
        """
        Yield text deltas of a streamed completion.

        Opening the stream is retried on rate limiting; once deltas flow, a
        failure ends the stream (no mid-stream retry).
        """
        token = cancel or CancelToken()
        req_id = req_id or _mk_req_id("chat")
        policy = self.chat_policy if max_attempts is None else replace(self.chat_policy, max_attempts=max_attempts)
        t0 = time.monotonic()

        logger.info("[chat] req_id=%s start model=%s msg_count=%d", req_id, model, len(messages))

        stream = await call_with_retry(
            lambda: self._openai().chat.completions.create(
                model=model,
                messages=messages,
                max_tokens=max_tokens or self.settings.max_output_tokens,
                stream=True,
            ),
            policy=policy,
            cancel=token,
            label="chat",
            req_id=req_id,
        )

        chars = 0
        try:
            async with aclosing(token.stream(stream)) as chunks:
                async for chunk in chunks:
                    delta = _delta_text(chunk)
                    if delta:
                        chars += len(delta)
                        yield delta
        except Cancelled:
            logger.info("[chat] req_id=%s upstream aborted after chars=%d (soft-finish)", req_id, chars)
            raise
        except Exception as exc:
            err = classify_error(exc)
            logger.error("[chat] req_id=%s stream broke after chars=%d code=%s err=%s",
                         req_id, chars, error_code(exc), exc)
            if err is exc:
                raise
            raise err from exc

        dt_ms = int((time.monotonic() - t0) * 1000)
        logger.info("[chat] req_id=%s OK latency_ms=%d model=%s chars=%d", req_id, dt_ms, model, chars)

    async def complete_text(
        self,
        *,
        model: str,
        messages: List[Dict[str, Any]],
        max_tokens: int,
        temperature: Optional[float] = None,
        cancel: Optional[CancelToken] = None,
        label: str = "aux",
    ) -> str:
        """Non-streaming completion for auxiliary calls (shrink, summarize)."""
        req_id = _mk_req_id(label)
        kwargs: Dict[str, Any] = {"model": model, "messages": messages, "max_tokens": max_tokens}
        if temperature is not None:
            kwargs["temperature"] = temperature

        t0 = time.monotonic()
        resp = await call_with_retry(
            lambda: self._openai().chat.completions.create(**kwargs),
            policy=self.chat_policy,
            cancel=cancel,
            label=label,
            req_id=req_id,
        )
        content = ""
        choices = getattr(resp, "choices", None) or []
        if choices:
            message = getattr(choices[0], "message", None)
            content = getattr(message, "content", None) or ""

        dt_ms = int((time.monotonic() - t0) * 1000)
        logger.info("[%s] req_id=%s OK latency_ms=%d model=%s chars=%d", label, req_id, dt_ms, model, len(content))
        return content.strip()

    # ------------------------------------------------------------------
    # Responses API (deep research)
    # ------------------------------------------------------------------

    async def create_response(self, payload: Dict[str, Any], *, cancel: Optional[CancelToken] = None) -> Dict[str, Any]:
        req_id = _mk_req_id("responses")
        logger.info("[responses] req_id=%s create model=%s background=%s",
                    req_id, payload.get("model"), bool(payload.get("background")))
        resp = await call_with_retry(
            lambda: self._openai().responses.create(**payload),
            policy=self.research_policy,
            cancel=cancel,
            label="responses",
            req_id=req_id,
        )
        return _as_dict(resp)

    async def retrieve_response(self, response_id: str, *, cancel: Optional[CancelToken] = None) -> Dict[str, Any]:
        resp = await call_with_retry(
            lambda: self._openai().responses.retrieve(response_id),
            policy=self.research_policy,
            cancel=cancel,
            label="responses",
            req_id=response_id,
        )
        return _as_dict(resp)

    async def cancel_response(self, response_id: str) -> None:
        try:
            await self._openai().responses.cancel(response_id)
        except Exception as exc:
            err = classify_error(exc)
            logger.warning("[responses] id=%s cancel failed code=%s", response_id, error_code(exc))
            if err is exc:
                raise
            raise err from exc
        logger.info("[responses] id=%s cancel requested", response_id)

    def runtime_config(self) -> Dict[str, str]:
        """Non-secret runtime configuration, for /health and logs."""
        return {
            "openai_api_base": _normalize_openai_api_base(self.settings.openai_base_url),
            "openai_api_key_set": "YES" if self.settings.openai_api_key else "NO",
            "summary_secret_set": "YES" if self.settings.summary_secret else "NO",
            "chat_model": self.settings.chat_model,
            "aux_model": self.settings.aux_model,
            "research_model": self.settings.research_model,
            "max_attempts": str(self.settings.max_retries),
        }
