# mentor/api/server.py
"""
FastAPI server for the Mentor gateway:

- POST /chat                   : streamed chat turn (text/plain, control frames)
- POST /deep-research          : research report, or background kickoff (?background=1)
- GET  /deep-research/{job_id} : poll a background research job
- DELETE /deep-research/{job_id}: best-effort cancel of a background job
- /health                      : basic health check

/chat always answers 200: once streaming has started there is no status
code left to change, so failures are written into the stream as one line.
The JSON research endpoints use regular HTTP errors.
"""

from __future__ import annotations

import asyncio
import inspect
import time
import uuid
from typing import Any, Dict, List, Optional, Set

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field
from starlette.datastructures import UploadFile

from mentor.api.identity import IdentityResolver, header_identity
from mentor.clients.openai_client import UpstreamClient
from mentor.config.settings import Settings, load_settings
from mentor.core.attachments import Attachment
from mentor.core.cancel import CancelToken
from mentor.core.chat import ChatGateway, ChatRequest
from mentor.core.errors import ConfigurationError, GatewayError, RateLimited
from mentor.core.stream import StreamMultiplexer
from mentor.memory.compactor import ContextCompactor, parse_history
from mentor.memory.repository import AssignmentDirectory
from mentor.research.cache import ResearchCache
from mentor.research.models import RESEARCH_TAG, JobStatus, ResearchJob
from mentor.research.orchestrator import ResearchOrchestrator
from mentor.utils.logging import get_logger, short_id

logger = get_logger(__name__)

SUMMARY_TOKEN_HEADER = "X-Summary-Token"
PLAIN_TEXT = "text/plain; charset=utf-8"
REQUEST_PARSE_MESSAGE = "Failed to parse the request."

# ---------------------------------------------------------------------------
# Models (Deep research)
# ---------------------------------------------------------------------------

class DeepResearchRequest(BaseModel):
    query: Optional[str] = Field(default=None, description="Research request in plain text.")
    system: Optional[str] = Field(default=None, description="Optional system prompt for the research model.")
    useRewriter: bool = Field(default=True, description="Rewrite the query into research instructions first.")


class ResearchKickoffResponse(BaseModel):
    id: str
    status: str
    tag: str = RESEARCH_TAG


class ResearchResultResponse(BaseModel):
    ok: bool = True
    text: str
    citations: List[Dict[str, Any]]
    steps: List[Dict[str, Any]]
    modelUsed: str
    tag: str = RESEARCH_TAG
    cached: bool = False


class ResearchPollResponse(BaseModel):
    status: str
    text: Optional[str] = None
    citations: Optional[List[Dict[str, Any]]] = None
    steps: Optional[List[Dict[str, Any]]] = None
    modelUsed: Optional[str] = None
    error: Optional[str] = None
    tag: str = RESEARCH_TAG


class ResearchCancelResponse(BaseModel):
    id: str
    cancelled: bool
    tag: str = RESEARCH_TAG


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _http_error(exc: GatewayError) -> HTTPException:
    if isinstance(exc, ConfigurationError):
        return HTTPException(status_code=500, detail=exc.user_message)
    if isinstance(exc, RateLimited):
        return HTTPException(status_code=429, detail=exc.user_message)
    return HTTPException(status_code=502, detail=exc.user_message)


def _poll_response(job: ResearchJob) -> ResearchPollResponse:
    if job.status is JobStatus.COMPLETED:
        return ResearchPollResponse(
            status=job.status.value,
            text=job.text,
            citations=[c.to_dict() for c in job.citations],
            steps=job.steps,
            modelUsed=job.model_used or None,
        )
    return ResearchPollResponse(status=job.status.value, error=job.error)


async def _read_attachment(form: Any) -> Optional[Attachment]:
    upload = form.get("pdf") or form.get("file")
    if not isinstance(upload, UploadFile):
        return None
    data = await upload.read()
    return Attachment(
        filename=upload.filename or "",
        content_type=upload.content_type or "",
        data=data,
    )


def _form_text(form: Any, name: str) -> str:
    value = form.get(name)
    return value if isinstance(value, str) else ""


def _single_line(text: str) -> StreamingResponse:
    async def body():
        yield text.encode("utf-8")
    return StreamingResponse(body(), media_type=PLAIN_TEXT)


# ---------------------------------------------------------------------------
# App factory
# ---------------------------------------------------------------------------

def create_app(
    settings: Optional[Settings] = None,
    upstream: Optional[UpstreamClient] = None,
    identity_resolver: Optional[IdentityResolver] = None,
    directory: Optional[AssignmentDirectory] = None,
    research_cache: Optional[ResearchCache] = None,
) -> FastAPI:
    settings = settings or load_settings()
    upstream = upstream or UpstreamClient(settings)
    resolve_identity = identity_resolver or header_identity

    if directory is None and settings.db_path:
        directory = AssignmentDirectory(settings.db_path)

    research = ResearchOrchestrator(upstream, settings, cache=research_cache)
    gateway = ChatGateway(
        settings,
        upstream,
        compactor=ContextCompactor(upstream, settings),
        research=research,
        directory=directory,
    )

    app = FastAPI(
        title="Mentor Gateway API",
        description="Streaming chat gateway with signed conversation memory and deep research.",
        version="1.0.0",
    )
    app.state.settings = settings
    app.state.gateway = gateway
    app.state.research = research

    # Running turns; keeps a strong reference until each task finishes
    turns: Set[asyncio.Task] = set()
    app.state.turns = turns

    async def caller_of(request: Request) -> Optional[str]:
        caller = resolve_identity(request)
        if inspect.isawaitable(caller):
            caller = await caller
        return caller

    async def require_caller(request: Request) -> str:
        caller = await caller_of(request)
        if not caller:
            raise HTTPException(status_code=401, detail="Authentication failed. Please sign in again.")
        return caller

    # -----------------------------------------------------------------------
    # Chat endpoint (streamed)
    # -----------------------------------------------------------------------

    @app.post("/chat")
    async def chat(request: Request) -> StreamingResponse:
        """
        Multipart fields: topicId, message, model, history (JSON), pdf|file,
        summaryToken. The X-Summary-Token header wins over the form field.
        """
        caller_id = await caller_of(request)

        try:
            form = await request.form()
        except Exception as exc:
            logger.warning("[chat] form parse failed caller=%s err=%s", short_id(caller_id or ""), exc)
            return _single_line(REQUEST_PARSE_MESSAGE)

        chat_request = ChatRequest(
            topic_id=_form_text(form, "topicId"),
            message=_form_text(form, "message"),
            model=_form_text(form, "model") or None,
            history=parse_history(_form_text(form, "history")),
            memory_token=request.headers.get(SUMMARY_TOKEN_HEADER) or _form_text(form, "summaryToken") or None,
            attachment=await _read_attachment(form),
        )

        mux = StreamMultiplexer()
        cancel = CancelToken()

        def on_disconnect() -> None:
            if cancel.cancel("client disconnected"):
                logger.info("[chat] client disconnected caller=%s topic=%s",
                            short_id(caller_id or ""), chat_request.topic_id)

        task = asyncio.create_task(gateway.handle(caller_id, chat_request, mux, cancel))
        turns.add(task)
        task.add_done_callback(turns.discard)

        return StreamingResponse(mux.stream(on_disconnect=on_disconnect), media_type=PLAIN_TEXT)

    # -----------------------------------------------------------------------
    # Deep research endpoints
    # -----------------------------------------------------------------------

    @app.post("/deep-research")
    async def deep_research(
        req: DeepResearchRequest,
        request: Request,
        background: Optional[str] = Query(default=None),
    ) -> Dict[str, Any]:
        await require_caller(request)
        query = (req.query or "").strip()
        if not query:
            raise HTTPException(status_code=400, detail="Missing query")

        request_id = uuid.uuid4().hex[:12]
        start_time = time.monotonic()
        use_background = background == "1"
        logger.info(
            "[deep_research] request_id=%s query_chars=%d background=%s rewriter=%s",
            request_id, len(query), use_background, req.useRewriter,
        )

        try:
            if use_background:
                job = await research.start(query, req.system, use_rewriter=req.useRewriter)
                return ResearchKickoffResponse(id=job.id, status=job.status.value).model_dump()

            result = await research.run(query, req.system, use_rewriter=req.useRewriter)
        except GatewayError as exc:
            logger.error("[deep_research] request_id=%s failed: %s", request_id, exc)
            raise _http_error(exc) from exc

        latency_ms = int((time.monotonic() - start_time) * 1000)
        logger.info("[deep_research] request_id=%s OK latency_ms=%d cached=%s", request_id, latency_ms, result.cached)
        return ResearchResultResponse(
            text=result.text,
            citations=[c.to_dict() for c in result.citations],
            steps=result.steps,
            modelUsed=result.model_used,
            cached=result.cached,
        ).model_dump()

    @app.get("/deep-research/{job_id}", response_model=ResearchPollResponse, response_model_exclude_none=True)
    async def deep_research_poll(job_id: str, request: Request) -> ResearchPollResponse:
        await require_caller(request)
        try:
            job = await research.poll(job_id)
        except GatewayError as exc:
            logger.error("[deep_research] poll id=%s failed: %s", job_id, exc)
            raise _http_error(exc) from exc
        return _poll_response(job)

    @app.delete("/deep-research/{job_id}", response_model=ResearchCancelResponse)
    async def deep_research_cancel(job_id: str, request: Request) -> ResearchCancelResponse:
        await require_caller(request)
        cancelled = await research.cancel_job(job_id)
        return ResearchCancelResponse(id=job_id, cancelled=cancelled)

    @app.get("/health")
    def health_check() -> dict:
        """
        Very simple health check endpoint.
        """
        try:
            config = upstream.runtime_config()
        except RuntimeError as exc:
            logger.error("[health] invalid runtime config: %s", exc)
            config = {"error": "invalid configuration"}
        return {"status": "ok", "active_turns": len(turns), **config}

    return app


app = create_app()
