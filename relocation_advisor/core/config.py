"""
Core configuration for the relocation advisor.

Provider credentials and the tunable knobs for dispatch, retries, quotas and
caching are read from the environment (and a local ``.env``) once, when
:pyfunc:`Settings.from_env` is called at process start. Components receive
the resulting :class:`Settings` instance; nothing reads the environment
lazily afterwards.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Dict, Mapping, Optional

from dotenv import load_dotenv

load_dotenv()


# ────────────────────────────────────────────────────────────
#  Env helpers
# ────────────────────────────────────────────────────────────

def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)) or default)
    except Exception:
        return default


def _env_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, str(default)) or default)
    except Exception:
        return default


# Calls per rolling 60s window. Anything not listed falls back to
# DEFAULT_PROVIDER_QUOTA.
DEFAULT_PROVIDER_QUOTAS: Dict[str, int] = {
    "geocode": 30,
    "neighborhoods": 60,
    "webSearch": 60,
    "news": 30,
    "summarize": 20,
    "housingMarket": 20,
    "jobOpportunities": 20,
    "schoolDistricts": 20,
    "transportation": 20,
    "costOfLiving": 20,
}
DEFAULT_PROVIDER_QUOTA = 5

# One credential per provider. Topic research providers reuse the search and
# summarizer keys.
CREDENTIAL_ENV_VARS: Dict[str, str] = {
    "neighborhoods": "RADAR_API_KEY",
    "webSearch": "SERPER_API_KEY",
    "news": "NEWS_API_KEY",
    "summarize": "JINA_API_KEY",
}


def _quota_env_name(provider: str) -> str:
    """``housingMarket`` -> ``PROVIDER_QUOTA_HOUSING_MARKET``."""
    out = []
    for ch in provider:
        if ch.isupper():
            out.append("_")
        out.append(ch.upper())
    return "PROVIDER_QUOTA_" + "".join(out)


def load_provider_quotas(env: Optional[Mapping[str, str]] = None) -> Dict[str, int]:
    source = os.environ if env is None else env
    quotas = dict(DEFAULT_PROVIDER_QUOTAS)
    for provider in DEFAULT_PROVIDER_QUOTAS:
        raw = source.get(_quota_env_name(provider))
        if not raw:
            continue
        try:
            quotas[provider] = max(1, int(raw))
        except ValueError:
            continue
    return quotas


@dataclass(frozen=True)
class Settings:
    """Process-wide configuration snapshot."""

    credentials: Dict[str, str] = field(default_factory=dict)
    teleport_base_url: str = "https://api.teleport.org/api"

    max_concurrency: int = 5
    call_timeout_sec: float = 15.0

    max_retries: int = 2
    retry_base_delay_ms: int = 1000
    retry_max_delay_ms: int = 10000

    provider_quotas: Dict[str, int] = field(
        default_factory=lambda: dict(DEFAULT_PROVIDER_QUOTAS)
    )
    default_quota: int = DEFAULT_PROVIDER_QUOTA
    max_quota_wait_ms: int = 2000
    quota_backoff_default_sec: float = 60.0

    cache_backend: str = "memory"
    cache_ttl_sec: int = 24 * 3600
    redis_url: str = "redis://localhost:6379"
    preference_ttl_sec: int = 30 * 24 * 3600

    summary_candidates: int = 3
    search_results_limit: int = 10
    news_page_size: int = 10
    neighborhood_limit: int = 10

    @classmethod
    def from_env(cls) -> "Settings":
        credentials = {
            provider: os.getenv(var, "").strip()
            for provider, var in CREDENTIAL_ENV_VARS.items()
        }
        return cls(
            credentials={k: v for k, v in credentials.items() if v},
            teleport_base_url=os.getenv(
                "TELEPORT_BASE_URL", "https://api.teleport.org/api"
            ).rstrip("/"),
            max_concurrency=max(1, _env_int("ORCHESTRATOR_MAX_CONCURRENCY", 5)),
            call_timeout_sec=_env_float("ORCHESTRATOR_CALL_TIMEOUT_SEC", 15.0),
            max_retries=max(0, _env_int("PROVIDER_MAX_RETRIES", 2)),
            retry_base_delay_ms=_env_int("PROVIDER_RETRY_BASE_DELAY_MS", 1000),
            retry_max_delay_ms=_env_int("PROVIDER_RETRY_MAX_DELAY_MS", 10000),
            provider_quotas=load_provider_quotas(),
            default_quota=max(1, _env_int("PROVIDER_QUOTA_DEFAULT", DEFAULT_PROVIDER_QUOTA)),
            max_quota_wait_ms=_env_int("RATE_LIMIT_MAX_WAIT_MS", 2000),
            quota_backoff_default_sec=_env_float("RATE_LIMIT_BACKOFF_DEFAULT_SEC", 60.0),
            cache_backend=os.getenv("CACHE_BACKEND", "memory").strip().lower(),
            cache_ttl_sec=_env_int("CACHE_TTL_SEC", 24 * 3600),
            redis_url=os.getenv("REDIS_URL", "redis://localhost:6379"),
            preference_ttl_sec=_env_int("PREFERENCE_TTL_SEC", 30 * 24 * 3600),
            summary_candidates=max(1, _env_int("SUMMARY_CANDIDATE_URLS", 3)),
            search_results_limit=_env_int("SEARCH_RESULTS_LIMIT", 10),
            news_page_size=_env_int("NEWS_PAGE_SIZE", 10),
            neighborhood_limit=_env_int("NEIGHBORHOOD_LIMIT", 10),
        )

    def credential(self, provider: str) -> str:
        return self.credentials.get(provider, "")

    @property
    def use_redis(self) -> bool:
        return self.cache_backend == "redis"
