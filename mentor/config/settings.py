# mentor/config/settings.py

from dataclasses import dataclass
import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from mentor.core.errors import ConfigurationError

# Expose BASE_DIR for other modules
BASE_DIR = Path(__file__).resolve().parents[2]
ENV_PATH = BASE_DIR / ".env"
load_dotenv(dotenv_path=ENV_PATH)

# Sentinel model name that routes a turn to the deep-research pipeline
RESEARCH_MODEL_SENTINEL = "deepresearch"


@dataclass
class Settings:
    # Secrets (checked per request, see require_* below)
    openai_api_key: Optional[str] = None
    summary_secret: Optional[str] = None
    openai_base_url: Optional[str] = None

    # Models
    chat_model: str = "gpt-4o-search-preview"
    fallback_model: str = "gpt-4o-search-preview"   # search-augmented, used when research fails
    aux_model: str = "gpt-4o-mini"                  # shrink / summarize / rewrite
    research_model: str = "o3-deep-research"

    max_output_tokens: int = 600

    # Retry policy for rate limiting
    max_retries: int = 3                  # total attempts, not extra attempts
    retry_backoff_seconds: float = 1.0    # delay = attempt * this
    research_retry_backoff_seconds: float = 1.2

    # Request budget (approximate tokens, chars / 3)
    token_budget: int = 5000

    # Deep research relay + cache
    research_paragraph_delay_seconds: float = 0.06
    research_cache_ttl_seconds: float = 300.0
    research_cache_capacity: int = 100

    openai_timeout_seconds: float = 120.0

    # Assignment directory (optional sqlite file)
    db_path: Optional[str] = None

    def require_summary_secret(self) -> str:
        if not self.summary_secret:
            raise ConfigurationError("SUMMARY_SECRET is not configured")
        return self.summary_secret

    def require_openai_api_key(self) -> str:
        if not self.openai_api_key:
            raise ConfigurationError("OPENAI_API_KEY is not configured")
        return self.openai_api_key


def _parse_float_env(name: str, default: float, allow_zero: bool = False) -> float:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        value = float(raw)
        # safeguard: enforce positive (or non-negative for pacing knobs)
        if value > 0 or (allow_zero and value == 0):
            return value
        return default
    except ValueError:
        return default


def _parse_int_env(name: str, default: int, min_val: int = 0, max_val: int = 10) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
        # safeguard: clamp into sane range
        return max(min_val, min(max_val, value))
    except ValueError:
        return default


def _str_env(name: str, default: str) -> str:
    return os.getenv(name, default).strip() or default


def load_settings() -> Settings:
    """
    Load configuration from environment variables (and defaults).

    Missing secrets do NOT raise here: the signing secret and the API key are
    read once at startup and every request checks them, failing with a
    ConfigurationError instead of degrading silently.
    """
    api_key = os.getenv("OPENAI_API_KEY", "").strip() or None
    summary_secret = os.getenv("SUMMARY_SECRET", "").strip() or None
    base_url = os.getenv("OPENAI_BASE_URL", "").strip() or None

    db_path_env = os.getenv("MENTOR_DB_PATH", "").strip()
    db_path = None
    if db_path_env:
        # Ensure data directory exists for DB
        Path(db_path_env).parent.mkdir(parents=True, exist_ok=True)
        db_path = db_path_env

    settings = Settings(
        openai_api_key=api_key,
        summary_secret=summary_secret,
        openai_base_url=base_url,
        chat_model=_str_env("MENTOR_CHAT_MODEL", "gpt-4o-search-preview"),
        fallback_model=_str_env("MENTOR_FALLBACK_MODEL", "gpt-4o-search-preview"),
        aux_model=_str_env("MENTOR_AUX_MODEL", "gpt-4o-mini"),
        research_model=_str_env("MENTOR_RESEARCH_MODEL", "o3-deep-research"),
        max_output_tokens=_parse_int_env("MENTOR_MAX_OUTPUT_TOKENS", 600, min_val=64, max_val=16000),
        max_retries=_parse_int_env("MENTOR_MAX_RETRIES", 3, min_val=1, max_val=10),
        retry_backoff_seconds=_parse_float_env("MENTOR_RETRY_BACKOFF_SECONDS", 1.0, allow_zero=True),
        token_budget=_parse_int_env("MENTOR_TOKEN_BUDGET", 5000, min_val=500, max_val=200000),
        research_paragraph_delay_seconds=_parse_float_env(
            "MENTOR_RESEARCH_PARAGRAPH_DELAY_SECONDS", 0.06, allow_zero=True
        ),
        research_cache_ttl_seconds=_parse_float_env("MENTOR_RESEARCH_CACHE_TTL_SECONDS", 300.0),
        research_cache_capacity=_parse_int_env("MENTOR_RESEARCH_CACHE_CAPACITY", 100, min_val=1, max_val=10000),
        openai_timeout_seconds=_parse_float_env("OPENAI_TIMEOUT_SECONDS", 120.0),
        db_path=db_path,
    )

    return settings
