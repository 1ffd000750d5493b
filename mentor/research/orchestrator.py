# mentor/research/orchestrator.py
"""
Deep research on the OpenAI Responses API.

Two ways to run a query:
  - run():   rewrite -> one synchronous research call -> extract -> cache
  - start(): rewrite -> background kickoff; the caller polls with poll()

Polling is caller-driven: nothing here schedules itself. Failures are not
retried beyond the rate-limit policy of the upstream client; a failed job
stays failed.
"""

from __future__ import annotations

import time
from dataclasses import replace
from typing import Any, Dict, List, Optional, Union

from mentor.clients.openai_client import UpstreamClient
from mentor.config.settings import Settings
from mentor.core.cancel import CancelToken
from mentor.core.errors import Cancelled, GatewayError, UpstreamFailure
from mentor.core.prompts import RESEARCH_SYSTEM_PROMPT, REWRITE_INSTRUCTION
from mentor.research.cache import ResearchCache
from mentor.research.citations import CitationPolicy, is_primary_source, rank_citations
from mentor.research.models import (
    Citation,
    JobStatus,
    ResearchJob,
    ResearchResult,
    map_upstream_status,
)
from mentor.utils.logging import get_logger

logger = get_logger(__name__)

# Output items reported as research "steps"
STEP_TYPES = ("reasoning", "web_search_call", "code_interpreter_call", "mcp_call")

REWRITE_MAX_TOKENS = 900


def extract(raw: Dict[str, Any], policy: CitationPolicy = is_primary_source) -> ResearchResult:
    """Pull report text, ranked citations and steps out of a Responses payload."""
    output = raw.get("output")
    output = output if isinstance(output, list) else []

    text = ""
    annotations: List[Any] = []
    last = output[-1] if output else None
    content = last.get("content") if isinstance(last, dict) else None
    if isinstance(content, list) and content and isinstance(content[0], dict):
        text = content[0].get("text") or ""
        found = content[0].get("annotations")
        annotations = found if isinstance(found, list) else []

    citations = rank_citations(
        [Citation.from_annotation(a) for a in annotations if isinstance(a, dict)],
        policy,
    )
    steps = [item for item in output if isinstance(item, dict) and item.get("type") in STEP_TYPES]
    return ResearchResult(
        text=text,
        citations=citations,
        steps=steps,
        model_used=str(raw.get("model") or ""),
    )


def _error_text(raw: Dict[str, Any], status: str) -> str:
    error = raw.get("error")
    if isinstance(error, dict):
        return str(error.get("message") or error.get("code") or status)
    if error:
        return str(error)
    details = raw.get("incomplete_details")
    if isinstance(details, dict) and details.get("reason"):
        return f"incomplete: {details['reason']}"
    return status


class ResearchOrchestrator:
    def __init__(
        self,
        upstream: UpstreamClient,
        settings: Settings,
        cache: Optional[ResearchCache] = None,
        citation_policy: CitationPolicy = is_primary_source,
    ) -> None:
        self.upstream = upstream
        self.settings = settings
        self.cache = cache or ResearchCache(
            ttl_seconds=settings.research_cache_ttl_seconds,
            capacity=settings.research_cache_capacity,
        )
        self.citation_policy = citation_policy

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    async def rewrite(self, query: str, cancel: Optional[CancelToken] = None) -> str:
        """Turn a loose request into research instructions. Falls back to the query."""
        try:
            rewritten = await self.upstream.complete_text(
                model=self.settings.aux_model,
                messages=[{"role": "user", "content": f"{REWRITE_INSTRUCTION}\nUser input:\n{query}"}],
                max_tokens=REWRITE_MAX_TOKENS,
                cancel=cancel,
                label="rewrite",
            )
        except Cancelled:
            raise
        except Exception as exc:
            logger.warning("[research] rewrite failed, using original query err=%s", exc)
            return query
        return rewritten or query

    def _payload(self, rewritten: str, system_prompt: str, background: bool = False) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": self.settings.research_model,
            "input": [
                {"role": "developer", "content": [{"type": "input_text", "text": system_prompt}]},
                {"role": "user", "content": [{"type": "input_text", "text": rewritten}]},
            ],
            "reasoning": {"summary": "auto"},
            "tools": [{"type": "web_search_preview", "search_context_size": "medium"}],
        }
        if background:
            payload["background"] = True
        return payload

    def _job_from_raw(self, raw: Dict[str, Any], rewritten_query: str = "") -> ResearchJob:
        raw_status = str(raw.get("status") or "queued")
        job = ResearchJob(
            id=str(raw.get("id") or ""),
            status=map_upstream_status(raw_status),
            rewritten_query=rewritten_query,
            model_used=str(raw.get("model") or ""),
        )
        if job.status is JobStatus.COMPLETED:
            result = extract(raw, self.citation_policy)
            job.text = result.text
            job.citations = result.citations
            job.steps = result.steps
        elif job.status in (JobStatus.FAILED, JobStatus.CANCELLED):
            job.error = _error_text(raw, raw_status)
        return job

    async def kickoff(
        self,
        rewritten: str,
        system_prompt: Optional[str] = None,
        cancel: Optional[CancelToken] = None,
    ) -> ResearchJob:
        raw = await self.upstream.create_response(
            self._payload(rewritten, system_prompt or RESEARCH_SYSTEM_PROMPT, background=True),
            cancel=cancel,
        )
        job = self._job_from_raw(raw, rewritten)
        if not job.id:
            raise UpstreamFailure("research kickoff returned no job id")
        logger.info("[research] kickoff id=%s status=%s", job.id, job.status.value)
        return job

    async def poll(self, job: Union[ResearchJob, str], cancel: Optional[CancelToken] = None) -> ResearchJob:
        """One status check. A job already in a terminal state is returned as is."""
        if isinstance(job, ResearchJob):
            if job.terminal:
                return job
            job_id, rewritten = job.id, job.rewritten_query
        else:
            job_id, rewritten = job, ""

        raw = await self.upstream.retrieve_response(job_id, cancel=cancel)
        polled = self._job_from_raw(raw, rewritten)
        polled.id = polled.id or job_id
        logger.info("[research] poll id=%s status=%s raw_status=%s", job_id, polled.status.value, raw.get("status"))
        return polled

    async def cancel_job(self, job_id: str) -> bool:
        """Best-effort upstream cancel; False when the upstream refused or failed."""
        try:
            await self.upstream.cancel_response(job_id)
        except GatewayError as exc:
            logger.warning("[research] cancel id=%s not applied err=%s", job_id, exc)
            return False
        return True

    # ------------------------------------------------------------------
    # Pipelines
    # ------------------------------------------------------------------

    async def run(
        self,
        query: str,
        system_prompt: Optional[str] = None,
        use_rewriter: bool = True,
        cancel: Optional[CancelToken] = None,
    ) -> ResearchResult:
        system_prompt = system_prompt or RESEARCH_SYSTEM_PROMPT
        key = self.cache.make_key(query, system_prompt)

        hit = self.cache.get(key)
        if hit is not None:
            logger.info("[research] cache hit query_chars=%d", len(query))
            return replace(hit, cached=True)

        t0 = time.monotonic()
        rewritten = await self.rewrite(query, cancel) if use_rewriter else query

        raw = await self.upstream.create_response(self._payload(rewritten, system_prompt), cancel=cancel)
        raw_status = str(raw.get("status") or "completed")
        status = map_upstream_status(raw_status)
        if status is not JobStatus.COMPLETED:
            raise UpstreamFailure(f"research ended with status={raw_status}: {_error_text(raw, raw_status)}")

        result = replace(extract(raw, self.citation_policy), rewritten_query=rewritten)
        if not result.text.strip():
            raise UpstreamFailure("research returned no report text")
        result = replace(result, model_used=result.model_used or self.settings.research_model)

        self.cache.set(key, result)
        dt_ms = int((time.monotonic() - t0) * 1000)
        logger.info(
            "[research] OK latency_ms=%d text_chars=%d citations=%d steps=%d",
            dt_ms, len(result.text), len(result.citations), len(result.steps),
        )
        return result

    async def start(
        self,
        query: str,
        system_prompt: Optional[str] = None,
        use_rewriter: bool = True,
        cancel: Optional[CancelToken] = None,
    ) -> ResearchJob:
        rewritten = await self.rewrite(query, cancel) if use_rewriter else query
        return await self.kickoff(rewritten, system_prompt, cancel)
