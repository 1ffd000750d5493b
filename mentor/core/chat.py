# mentor/core/chat.py
"""
One chat turn, end to end.

    validate caller -> require secret -> validate topic -> recover summary
    -> resolve assignment prompt (+ session info frame) -> attachment
    -> bounded history -> shrink if over budget -> dispatch once
    -> stream -> refresh summary + seal -> memory token frame -> close

The multiplexer is closed exactly once, in `finally`, on every path.
Errors become a single visible line of text; cancellation ends the turn
quietly (nobody is left to read it).
"""

from __future__ import annotations

import re
import sqlite3
import time
import uuid
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from mentor.clients.openai_client import UpstreamClient
from mentor.clients.retry import error_code
from mentor.config.settings import Settings
from mentor.core.attachments import Attachment, prepare_attachment
from mentor.core.cancel import CancelToken
from mentor.core.errors import (
    GENERIC_RETRY_MESSAGE,
    AuthenticationFailure,
    Cancelled,
    ConfigurationError,
    GatewayError,
    InvalidTopic,
)
from mentor.core.modes import (
    DirectMode,
    DispatchMode,
    FallbackMode,
    ResearchMode,
    fallback_mode,
    select_mode,
)
from mentor.core.prompts import (
    CITATIONS_NOTE,
    DEFAULT_SYSTEM_PROMPT,
    FALLBACK_NOTICE,
    GENERAL_SUPPORT_PROMPT,
    SOURCES_HEADING,
)
from mentor.core.stream import StreamMultiplexer
from mentor.memory.compactor import ContextCompactor, assemble, build_user_content, sanitize_history
from mentor.memory.repository import AssignmentDirectory
from mentor.memory.token import GENERAL_TOPIC_ID, is_valid_topic_id, recover_summary, seal
from mentor.research.models import Citation
from mentor.research.orchestrator import ResearchOrchestrator
from mentor.utils.logging import get_logger, short_id

logger = get_logger(__name__)

_PARAGRAPH_SPLIT_RE = re.compile(r"\n{2,}")


@dataclass
class ChatRequest:
    topic_id: str
    message: str
    model: Optional[str] = None
    history: List[Dict[str, str]] = field(default_factory=list)
    memory_token: Optional[str] = None
    attachment: Optional[Attachment] = None


@dataclass
class TurnOutcome:
    """What happened in a turn; the stream itself is the client's view."""
    req_id: str
    mode: Optional[DispatchMode] = None
    assistant_text: str = ""
    memory_token: Optional[str] = None
    cancelled: bool = False
    error: Optional[str] = None


def format_sources(citations: List[Citation]) -> str:
    lines = [f"- [{c.title or 'link'}]({c.url})" for c in citations]
    return SOURCES_HEADING + "\n" + "\n".join(lines)


def split_paragraphs(text: str) -> List[str]:
    return [p for p in _PARAGRAPH_SPLIT_RE.split(text or "") if p.strip()]


class ChatGateway:
    def __init__(
        self,
        settings: Settings,
        upstream: UpstreamClient,
        compactor: Optional[ContextCompactor] = None,
        research: Optional[ResearchOrchestrator] = None,
        directory: Optional[AssignmentDirectory] = None,
    ) -> None:
        self.settings = settings
        self.upstream = upstream
        self.compactor = compactor or ContextCompactor(upstream, settings)
        self.research = research or ResearchOrchestrator(upstream, settings)
        self.directory = directory

    # ---------- SYSTEM PROMPT ----------

    async def _resolve_system_prompt(
        self,
        caller_id: str,
        topic_id: str,
        mux: StreamMultiplexer,
        cancel: CancelToken,
        req_id: str,
    ) -> str:
        """
        general-support -> built-in prompt; otherwise the assignment's
        instruction (found through the caller's term), else the default.
        A found assignment also emits the session info frame.
        """
        if topic_id == GENERAL_TOPIC_ID:
            return GENERAL_SUPPORT_PROMPT
        if self.directory is None:
            return DEFAULT_SYSTEM_PROMPT

        try:
            assignment = await cancel.run(self.directory.lookup(caller_id, topic_id))
        except sqlite3.Error as exc:
            logger.warning("[chat] req_id=%s assignment lookup failed, using default prompt err=%s", req_id, exc)
            return DEFAULT_SYSTEM_PROMPT

        if assignment is None:
            return DEFAULT_SYSTEM_PROMPT

        mux.send_session_info(
            {"ai_name": assignment.ai_name or "", "ai_description": assignment.ai_description or ""}
        )
        if assignment.system_instruction.strip():
            return assignment.system_instruction
        return DEFAULT_SYSTEM_PROMPT

    # ---------- DISPATCH ----------

    async def _stream_direct(
        self,
        model: str,
        messages: List[Dict],
        mux: StreamMultiplexer,
        cancel: CancelToken,
        outcome: TurnOutcome,
    ) -> str:
        # Text is recorded as it is sent so a cancelled turn still reports it
        async for delta in self.upstream.stream_chat(
            model=model,
            messages=messages,
            max_tokens=self.settings.max_output_tokens,
            cancel=cancel,
            req_id=outcome.req_id,
        ):
            outcome.assistant_text += delta
            mux.send_text(delta)
        return outcome.assistant_text

    async def _relay_research(
        self,
        message: str,
        system_prompt: str,
        mux: StreamMultiplexer,
        cancel: CancelToken,
        outcome: TurnOutcome,
    ) -> str:
        result = await self.research.run(message, system_prompt, use_rewriter=True, cancel=cancel)

        # Relay the finished report paragraph by paragraph so it reads like a stream
        for paragraph in split_paragraphs(result.text):
            mux.send_text(paragraph + "\n\n")
            outcome.assistant_text += paragraph + "\n\n"
            await cancel.sleep(self.settings.research_paragraph_delay_seconds)

        if result.citations:
            mux.send_text(format_sources(result.citations))
            return f"{result.text}\n\n{CITATIONS_NOTE}"
        return result.text

    async def _dispatch(
        self,
        mode: DispatchMode,
        messages: List[Dict],
        request: ChatRequest,
        system_prompt: str,
        mux: StreamMultiplexer,
        cancel: CancelToken,
        outcome: TurnOutcome,
    ) -> str:
        req_id = outcome.req_id
        if isinstance(mode, ResearchMode):
            try:
                return await self._relay_research(request.message, system_prompt, mux, cancel, outcome)
            except Cancelled:
                raise
            except Exception as exc:
                if cancel.cancelled:
                    raise Cancelled(cancel.reason or "cancelled") from exc
                mode = fallback_mode(error_code(exc), self.settings)
                outcome.mode = mode
                logger.warning(
                    "[chat] req_id=%s research failed, falling back model=%s reason=%s err=%s",
                    req_id, mode.model, mode.reason, exc,
                )

        if isinstance(mode, FallbackMode):
            mux.send_text(FALLBACK_NOTICE)
            return await self._stream_direct(mode.model, messages, mux, cancel, outcome)

        if isinstance(mode, DirectMode):
            return await self._stream_direct(mode.model, messages, mux, cancel, outcome)

        raise TypeError(f"Unknown dispatch mode: {mode!r}")

    # ---------- MAIN ENTRY POINT ----------

    async def handle(
        self,
        caller_id: Optional[str],
        request: ChatRequest,
        mux: StreamMultiplexer,
        cancel: CancelToken,
    ) -> TurnOutcome:
        outcome = TurnOutcome(req_id=uuid.uuid4().hex[:12])
        req_id = outcome.req_id
        t0 = time.monotonic()

        try:
            if not caller_id:
                raise AuthenticationFailure("no caller identity")

            secret = self.settings.require_summary_secret()

            if not is_valid_topic_id(request.topic_id):
                raise InvalidTopic(f"topic_id={request.topic_id!r}")

            summary, reason = recover_summary(secret, request.memory_token, caller_id, request.topic_id)
            logger.info(
                "[chat] req_id=%s caller=%s topic=%s token=%s summary_chars=%d",
                req_id, short_id(caller_id), request.topic_id, reason, len(summary),
            )

            system_prompt = await self._resolve_system_prompt(caller_id, request.topic_id, mux, cancel, req_id)

            prepared = prepare_attachment(request.attachment)
            history = sanitize_history(request.history)
            user_text = f"{prepared.context}{request.message}"
            messages = assemble(system_prompt, summary, history, build_user_content(user_text, prepared.image_part))
            messages = await self.compactor.shrink_user_message(
                messages, request.message, prepared.context, prepared.image_part, cancel
            )

            mode = select_mode(request.model, self.settings)
            outcome.mode = mode
            logger.info("[chat] req_id=%s dispatch mode=%s history=%d", req_id, mode.kind.value, len(history))

            assistant_text = await self._dispatch(mode, messages, request, system_prompt, mux, cancel, outcome)
            outcome.assistant_text = assistant_text

            if assistant_text and not cancel.cancelled:
                new_summary = await self.compactor.refresh_summary(
                    summary, history, request.message, assistant_text, cancel
                )
                if new_summary is not None:
                    token = seal(secret, caller_id, request.topic_id, new_summary)
                    if mux.send_memory_token(token):
                        outcome.memory_token = token

        except Cancelled as exc:
            outcome.cancelled = True
            logger.info("[chat] req_id=%s cancelled (soft-finish) reason=%s", req_id, exc)
        except ConfigurationError as exc:
            outcome.error = exc.user_message
            logger.error("[chat] req_id=%s configuration error: %s", req_id, exc)
            self._write_error(mux, exc.user_message)
        except GatewayError as exc:
            outcome.error = exc.user_message
            logger.warning("[chat] req_id=%s %s: %s", req_id, exc.__class__.__name__, exc)
            self._write_error(mux, exc.user_message)
        except Exception:
            outcome.error = GENERIC_RETRY_MESSAGE
            logger.exception("[chat] req_id=%s unexpected error", req_id)
            self._write_error(mux, GENERIC_RETRY_MESSAGE)
        finally:
            mux.close()

        dt_ms = int((time.monotonic() - t0) * 1000)
        logger.info(
            "[chat] req_id=%s done latency_ms=%d chars=%d token=%s cancelled=%s error=%s",
            req_id, dt_ms, len(outcome.assistant_text), bool(outcome.memory_token),
            outcome.cancelled, bool(outcome.error),
        )
        return outcome

    @staticmethod
    def _write_error(mux: StreamMultiplexer, message: str) -> None:
        if mux.text_sent:
            message = "\n\n" + message
        mux.send_text(message)
