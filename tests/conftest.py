import pytest

from mentor.clients.openai_client import UpstreamClient
from mentor.config.settings import Settings
from tests.fakes import FakeOpenAI


@pytest.fixture
def settings():
    """Settings with secrets set and every delay at zero."""
    return Settings(
        openai_api_key="sk-test",
        summary_secret="test-secret",
        retry_backoff_seconds=0.0,
        research_retry_backoff_seconds=0.0,
        research_paragraph_delay_seconds=0.0,
    )


@pytest.fixture
def fake_openai():
    return FakeOpenAI()


@pytest.fixture
def upstream(settings, fake_openai):
    return UpstreamClient(settings, client=fake_openai)
