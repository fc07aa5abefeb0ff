# src/docqa_search/config.py
from __future__ import annotations

from pathlib import Path

from dotenv import load_dotenv
from pydantic_settings import BaseSettings, SettingsConfigDict


def _find_repo_root(start: Path) -> Path:
    """
    Best-effort repository root discovery.
    - Prefer the closest ancestor containing `pyproject.toml`.
    - Fallback to the starting directory if not found.
    """
    cur = start.resolve()
    for _ in range(20):
        if (cur / "pyproject.toml").exists():
            return cur
        if cur.parent == cur:
            break
        cur = cur.parent
    return start.resolve()


PACKAGE_ROOT = Path(__file__).resolve().parent
REPO_ROOT = _find_repo_root(PACKAGE_ROOT)

# Load .env into process environment early so provider SDKs can read it.
load_dotenv(str(REPO_ROOT / ".env"), override=False)

DATA_ROOT = REPO_ROOT / ".Local"


class Settings(BaseSettings):
    DEBUG: bool = False

    DOCQA_DATABASE_URL: str = f"sqlite+aiosqlite:///{(DATA_ROOT / 'docqa_search.db').as_posix()}"
    DOCQA_FTS_TOKENIZER: str = "trigram"

    # cache manager
    DOCQA_CACHE_MAX_SIZE: int = 1000
    DOCQA_CACHE_EVICTION_POLICY: str = "lru"
    DOCQA_CACHE_RESULT_TTL_MS: int = 5 * 60 * 1000
    DOCQA_CACHE_EMBEDDING_TTL_MS: int = 24 * 60 * 60 * 1000
    DOCQA_CACHE_KEYWORD_TTL_MS: int = 60 * 60 * 1000
    DOCQA_CACHE_CLEANUP_INTERVAL_S: float = 60.0

    # embedding provider retries
    DOCQA_EMBED_MAX_RETRIES: int = 3
    DOCQA_EMBED_INITIAL_DELAY_S: float = 0.5
    DOCQA_EMBED_MAX_DELAY_S: float = 8.0

    # retrieval
    DOCQA_RETRIEVAL_TIMEOUT_S: float = 10.0
    DOCQA_TOP_K: int = 10
    DOCQA_CANDIDATE_MULTIPLIER: int = 2

    # fusion defaults
    DOCQA_VECTOR_WEIGHT: float = 0.05
    DOCQA_LEXICAL_WEIGHT: float = 0.50
    DOCQA_TITLE_WEIGHT: float = 0.25
    DOCQA_LABEL_WEIGHT: float = 0.15
    DOCQA_KG_WEIGHT: float = 0.05
    DOCQA_MAX_VECTOR_DISTANCE: float = 2.0
    DOCQA_MAX_LEXICAL_SCORE: float = 10.0
    DOCQA_RRF_K: int = 60

    DOCQA_LOG_LEVEL: str = "INFO"
    DOCQA_LOG_ENSURE_ASCII: bool = False

    model_config = SettingsConfigDict(
        env_file=str(REPO_ROOT / ".env"),
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )


settings = Settings()
