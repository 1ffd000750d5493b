"""Tests for the deep-research orchestrator."""

import pytest

from mentor.core.cancel import CancelToken
from mentor.core.errors import Cancelled, UpstreamFailure
from mentor.core.prompts import RESEARCH_SYSTEM_PROMPT
from mentor.research.citations import is_primary_source, rank_citations
from mentor.research.models import Citation, JobStatus, ResearchJob, map_upstream_status
from mentor.research.orchestrator import ResearchOrchestrator, extract
from tests.fakes import rate_limit_error, research_payload, server_error


@pytest.fixture
def orchestrator(upstream, settings):
    return ResearchOrchestrator(upstream, settings)


class TestCitations:
    def test_primary_source_markers(self):
        assert is_primary_source("https://www.stats.gov/report")
        assert is_primary_source("https://cs.stanford.edu/paper")
        assert is_primary_source("https://example.com/whitepaper.pdf")
        assert not is_primary_source("https://blog.example.com/post")
        assert not is_primary_source("")

    def test_stable_ranking(self):
        urls = [
            "https://blog-a.com/1",
            "https://agency.gov/2",
            "https://blog-b.com/3",
            "https://univ.edu/4",
            "https://blog-c.com/5",
        ]
        ranked = rank_citations([Citation(url=u) for u in urls])
        assert [c.url for c in ranked] == [
            "https://agency.gov/2",
            "https://univ.edu/4",
            "https://blog-a.com/1",
            "https://blog-b.com/3",
            "https://blog-c.com/5",
        ]

    def test_policy_is_replaceable(self):
        citations = [Citation(url="https://a.com"), Citation(url="https://b.com")]
        ranked = rank_citations(citations, policy=lambda url: "b.com" in url)
        assert [c.url for c in ranked] == ["https://b.com", "https://a.com"]


class TestExtract:
    def test_text_citations_and_steps(self):
        result = extract(research_payload())

        assert result.text == "First finding.\n\nSecond finding."
        assert [c.title for c in result.citations] == ["Stats", "Blog"]
        assert [s["type"] for s in result.steps] == ["reasoning", "web_search_call"]
        assert result.model_used == "o3-deep-research"

    def test_empty_payload(self):
        result = extract({})
        assert result.text == ""
        assert result.citations == []
        assert result.steps == []

    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("queued", JobStatus.QUEUED),
            ("in_progress", JobStatus.QUEUED),
            ("completed", JobStatus.COMPLETED),
            ("cancelled", JobStatus.CANCELLED),
            ("failed", JobStatus.FAILED),
            ("incomplete", JobStatus.FAILED),
            (None, JobStatus.QUEUED),
        ],
    )
    def test_status_mapping(self, raw, expected):
        assert map_upstream_status(raw) is expected


class TestRewrite:
    @pytest.mark.asyncio
    async def test_rewrite_uses_aux_model(self, orchestrator, fake_openai, settings):
        fake_openai.chat.completions.text_script.append("Detailed instructions")
        assert await orchestrator.rewrite("EV batteries") == "Detailed instructions"
        assert fake_openai.chat.completions.calls[0]["model"] == settings.aux_model

    @pytest.mark.asyncio
    async def test_rewrite_failure_falls_back_to_query(self, orchestrator, fake_openai):
        fake_openai.chat.completions.text_script.append(server_error())
        assert await orchestrator.rewrite("EV batteries") == "EV batteries"

    @pytest.mark.asyncio
    async def test_rewrite_cancellation_propagates(self, orchestrator):
        token = CancelToken()
        token.cancel("stop")
        with pytest.raises(Cancelled):
            await orchestrator.rewrite("EV batteries", cancel=token)


class TestRun:
    @pytest.mark.asyncio
    async def test_run_then_cache_hit(self, orchestrator, fake_openai):
        first = await orchestrator.run("EV batteries")
        second = await orchestrator.run("EV batteries")

        assert first.cached is False
        assert second.cached is True
        assert second.text == first.text
        assert len(fake_openai.responses.create_calls) == 1
        assert len(fake_openai.chat.completions.calls) == 1  # one rewrite only

    @pytest.mark.asyncio
    async def test_payload_shape(self, orchestrator, fake_openai, settings):
        await orchestrator.run("EV batteries", use_rewriter=False)

        payload = fake_openai.responses.create_calls[0]
        assert payload["model"] == settings.research_model
        assert payload["input"][0]["content"][0]["text"] == RESEARCH_SYSTEM_PROMPT
        assert payload["input"][1]["content"][0]["text"] == "EV batteries"
        assert "background" not in payload
        assert fake_openai.chat.completions.calls == []

    @pytest.mark.asyncio
    async def test_retries_rate_limit(self, orchestrator, fake_openai):
        fake_openai.responses.create_script.extend([rate_limit_error(), research_payload()])

        result = await orchestrator.run("EV batteries", use_rewriter=False)

        assert result.text
        assert len(fake_openai.responses.create_calls) == 2

    @pytest.mark.asyncio
    async def test_incomplete_is_a_failure_and_not_cached(self, orchestrator, fake_openai):
        fake_openai.responses.create_script.append(research_payload(status="incomplete"))

        with pytest.raises(UpstreamFailure):
            await orchestrator.run("EV batteries", use_rewriter=False)
        assert len(orchestrator.cache) == 0

    @pytest.mark.asyncio
    async def test_empty_report_is_a_failure(self, orchestrator, fake_openai):
        fake_openai.responses.create_script.append(research_payload(text=""))

        with pytest.raises(UpstreamFailure):
            await orchestrator.run("EV batteries", use_rewriter=False)


class TestBackgroundJobs:
    @pytest.mark.asyncio
    async def test_start_and_poll(self, orchestrator, fake_openai):
        fake_openai.chat.completions.text_script.append("rewritten")
        fake_openai.responses.create_script.append({"id": "resp_9", "status": "queued"})
        fake_openai.responses.retrieve_script.extend(
            [
                {"id": "resp_9", "status": "in_progress"},
                research_payload(response_id="resp_9"),
            ]
        )

        job = await orchestrator.start("EV batteries")
        assert job.id == "resp_9"
        assert job.status is JobStatus.QUEUED
        assert job.rewritten_query == "rewritten"
        assert fake_openai.responses.create_calls[0]["background"] is True

        job = await orchestrator.poll(job)
        assert job.status is JobStatus.QUEUED

        job = await orchestrator.poll(job)
        assert job.status is JobStatus.COMPLETED
        assert job.text.startswith("First finding.")
        assert job.citations[0].title == "Stats"
        assert job.rewritten_query == "rewritten"

    @pytest.mark.asyncio
    async def test_terminal_job_is_not_polled_again(self, orchestrator, fake_openai):
        done = ResearchJob(id="resp_1", status=JobStatus.FAILED, error="boom")
        assert await orchestrator.poll(done) is done
        assert fake_openai.responses.retrieve_calls == []

    @pytest.mark.asyncio
    async def test_poll_failed_job_carries_error(self, orchestrator, fake_openai):
        fake_openai.responses.retrieve_script.append(
            {"id": "resp_2", "status": "failed", "error": {"code": "server_error", "message": "it broke"}}
        )
        job = await orchestrator.poll("resp_2")
        assert job.status is JobStatus.FAILED
        assert job.error == "it broke"

    @pytest.mark.asyncio
    async def test_kickoff_without_id_fails(self, orchestrator, fake_openai):
        fake_openai.responses.create_script.append({"status": "queued"})
        with pytest.raises(UpstreamFailure):
            await orchestrator.kickoff("q")

    @pytest.mark.asyncio
    async def test_cancel_job(self, orchestrator, fake_openai):
        assert await orchestrator.cancel_job("resp_3") is True
        assert fake_openai.responses.cancel_calls == ["resp_3"]

        fake_openai.responses.cancel_error = server_error()
        assert await orchestrator.cancel_job("resp_4") is False
