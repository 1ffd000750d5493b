# mentor/memory/compactor.py
"""
Context compaction: bounded history in, compact summary out.

Before the model call the request is assembled from the system prompt, the
recovered summary (as an assistant pseudo-turn), the last few history turns
and the current user message; oversized user messages are shortened.

After the model call the previous summary, the recent turns and this turn
are merged into a new summary that the gateway seals into the next token.
"""

from __future__ import annotations

import json
import math
from typing import Any, Dict, List, Optional, Union

from mentor.clients.openai_client import UpstreamClient
from mentor.config.settings import Settings
from mentor.core.cancel import CancelToken
from mentor.core.errors import Cancelled
from mentor.core.prompts import (
    COMPRESS_INSTRUCTION,
    SHRINK_INSTRUCTION,
    SUMMARIZE_INSTRUCTION,
    SUMMARY_PREFIX,
)
from mentor.utils.logging import get_logger

logger = get_logger(__name__)

MAX_HISTORY_TURNS = 4

# Rough chars-per-token ratio used for budget checks
CHARS_PER_TOKEN = 3

SUMMARY_CEILING_CHARS = 10_000
SUMMARY_TARGET_CHARS = 3_000

SHRINK_MAX_TOKENS = 900
SUMMARY_MAX_TOKENS = 900
COMPRESS_MAX_TOKENS = 1200

_ROLES = ("user", "assistant")

UserContent = Union[str, List[Dict[str, Any]]]


def sanitize_history(raw: Any) -> List[Dict[str, str]]:
    """Keep well-formed user/assistant turns; drop injected summary turns."""
    if not isinstance(raw, list):
        return []
    cleaned: List[Dict[str, str]] = []
    for item in raw:
        if not isinstance(item, dict):
            continue
        role = item.get("role")
        content = item.get("content")
        if role not in _ROLES or not isinstance(content, str):
            continue
        if role == "assistant" and content.startswith(SUMMARY_PREFIX):
            continue
        cleaned.append({"role": role, "content": content})
    return cleaned


def parse_history(text: Optional[str]) -> List[Dict[str, str]]:
    """Best-effort parse of the client's JSON history; any failure gives []."""
    if not text:
        return []
    try:
        data = json.loads(text)
    except ValueError as exc:
        logger.warning("[history] unparsable history ignored len=%d err=%s", len(text), exc)
        return []
    return sanitize_history(data)


def approx_tokens(obj: Any, chars_per_token: int = CHARS_PER_TOKEN) -> int:
    return math.ceil(len(json.dumps(obj, ensure_ascii=False, separators=(",", ":"))) / chars_per_token)


def build_user_content(text: str, image_part: Optional[Dict[str, Any]] = None) -> UserContent:
    if image_part is None:
        return text
    return [{"type": "text", "text": text}, image_part]


def assemble(
    system_prompt: str,
    summary: str,
    history: List[Dict[str, str]],
    user_content: UserContent,
) -> List[Dict[str, Any]]:
    messages: List[Dict[str, Any]] = [{"role": "system", "content": system_prompt}]
    if summary:
        messages.append({"role": "assistant", "content": f"{SUMMARY_PREFIX}\n{summary}"})
    messages.extend(history[-MAX_HISTORY_TURNS:])
    messages.append({"role": "user", "content": user_content})
    return messages


def _render_turns(turns: List[Dict[str, str]]) -> str:
    lines = []
    for turn in turns[-MAX_HISTORY_TURNS:]:
        speaker = "Assistant" if turn["role"] == "assistant" else "User"
        lines.append(f"{speaker}: {turn['content']}")
    return "\n".join(lines)


class ContextCompactor:
    def __init__(self, upstream: UpstreamClient, settings: Settings) -> None:
        self.upstream = upstream
        self.settings = settings

    async def shrink_user_message(
        self,
        messages: List[Dict[str, Any]],
        message: str,
        context: str = "",
        image_part: Optional[Dict[str, Any]] = None,
        cancel: Optional[CancelToken] = None,
    ) -> List[Dict[str, Any]]:
        """
        If the request is over budget, rewrite the current user message only.
        Returns the (possibly) updated message list; never raises except on
        cancellation.
        """
        before = approx_tokens(messages)
        if before <= self.settings.token_budget:
            return messages

        try:
            shortened = await self.upstream.complete_text(
                model=self.settings.aux_model,
                messages=[
                    {"role": "system", "content": SHRINK_INSTRUCTION},
                    {"role": "user", "content": message},
                ],
                max_tokens=SHRINK_MAX_TOKENS,
                cancel=cancel,
                label="shrink",
            )
        except Cancelled:
            raise
        except Exception as exc:
            logger.warning("[shrink] failed, keeping original message approx_tokens=%d err=%s", before, exc)
            return messages

        shortened = shortened or message
        updated = list(messages)
        updated[-1] = {"role": "user", "content": build_user_content(f"{context}{shortened}", image_part)}
        logger.info(
            "[shrink] approx_tokens before=%d after=%d message_chars %d->%d",
            before, approx_tokens(updated), len(message), len(shortened),
        )
        return updated

    async def refresh_summary(
        self,
        previous: str,
        recent_history: List[Dict[str, str]],
        user_text: str,
        assistant_text: str,
        cancel: Optional[CancelToken] = None,
    ) -> Optional[str]:
        """
        Merge the previous summary, recent turns and this turn into a new
        summary of at most SUMMARY_CEILING_CHARS characters (or
        SUMMARY_TARGET_CHARS after a compression pass).

        Returns None on failure so the caller keeps the old token.
        Cancellation propagates.
        """
        merge_input = "\n".join(
            [
                f"[Previous summary]\n{previous or '(empty)'}",
                f"[Recent turns]\n{_render_turns(recent_history) or '(none)'}",
                f"[This turn]\nUser: {user_text}\nAssistant: {assistant_text}",
            ]
        )

        try:
            merged = await self.upstream.complete_text(
                model=self.settings.aux_model,
                messages=[
                    {"role": "system", "content": SUMMARIZE_INSTRUCTION},
                    {"role": "user", "content": merge_input},
                ],
                max_tokens=SUMMARY_MAX_TOKENS,
                temperature=0.2,
                cancel=cancel,
                label="summary",
            )
            summary = merged or previous

            if len(summary) > SUMMARY_CEILING_CHARS:
                compressed = await self.upstream.complete_text(
                    model=self.settings.aux_model,
                    messages=[
                        {"role": "system", "content": COMPRESS_INSTRUCTION},
                        {"role": "user", "content": summary},
                    ],
                    max_tokens=COMPRESS_MAX_TOKENS,
                    temperature=0.1,
                    cancel=cancel,
                    label="summary",
                )
                compressed = compressed or summary
                if len(compressed) > SUMMARY_TARGET_CHARS:
                    logger.warning(
                        "[summary] compression overshot chars=%d, cutting to %d",
                        len(compressed), SUMMARY_TARGET_CHARS,
                    )
                    compressed = compressed[:SUMMARY_TARGET_CHARS]
                logger.info("[summary] recompressed chars %d->%d", len(summary), len(compressed))
                summary = compressed
        except Cancelled:
            raise
        except Exception as exc:
            logger.warning("[summary] refresh skipped err=%s", exc)
            return None

        logger.info(
            "[summary] refreshed previous_chars=%d new_chars=%d",
            len(previous or ""), len(summary),
        )
        return summary
