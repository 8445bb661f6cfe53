import logging
import os
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

# Load environment variables from the project root
load_dotenv(dotenv_path=Path(__file__).parent.parent.parent / ".env")


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning(f"Invalid value for {name}={raw!r}; using default {default}")
        return default


def _env_int(name: str, default: int) -> int:
    return int(_env_float(name, default))


class Settings:
    """
    Runtime configuration read from the environment.

    MongoDB:
    - MONGO_URI / MONGODB_URL / MONGODB_URI (first one set wins)
    - MONGODB_NAME

    Gemini oracle:
    - GEMINI_API_KEY (AI features are disabled when missing)
    - GEMINI_MODEL
    - ORACLE_TEXT_TIMEOUT, ORACLE_IMAGE_TIMEOUT, ORACLE_IMAGE_FETCH_TIMEOUT (seconds)
    - ORACLE_MAX_CONCURRENCY
    - PRIORITY_TIMEOUT (hard limit for priority estimation, seconds)

    Duplicate detection:
    - DUPLICATE_SEARCH_RADIUS_M, DUPLICATE_MAX_CANDIDATES

    Cache:
    - REDIS_URL (oracle cache is disabled when missing), ORACLE_CACHE_TTL

    HTTP:
    - JWT_SECRET_KEY, JWT_ALGORITHM, CORS_ORIGINS (comma separated)
    """

    def __init__(self):
        self.mongo_uri: str = (
            os.getenv("MONGO_URI")
            or os.getenv("MONGODB_URL")
            or os.getenv("MONGODB_URI")
            or "mongodb://localhost:27017/civic_issues"
        )
        self.mongo_db_name: str = os.getenv("MONGODB_NAME", "civic_issues")

        self.gemini_api_key: Optional[str] = os.getenv("GEMINI_API_KEY") or None
        self.gemini_model: str = os.getenv("GEMINI_MODEL", "gemini-2.5-flash")
        self.oracle_text_timeout: float = _env_float("ORACLE_TEXT_TIMEOUT", 10.0)
        self.oracle_image_timeout: float = _env_float("ORACLE_IMAGE_TIMEOUT", 30.0)
        self.oracle_image_fetch_timeout: float = _env_float("ORACLE_IMAGE_FETCH_TIMEOUT", 15.0)
        self.oracle_max_concurrency: int = max(1, _env_int("ORACLE_MAX_CONCURRENCY", 5))
        self.priority_timeout: float = _env_float("PRIORITY_TIMEOUT", 10.0)

        self.duplicate_search_radius_m: float = _env_float("DUPLICATE_SEARCH_RADIUS_M", 100.0)
        self.duplicate_max_candidates: int = max(1, _env_int("DUPLICATE_MAX_CANDIDATES", 10))

        self.redis_url: Optional[str] = os.getenv("REDIS_URL") or None
        self.oracle_cache_ttl: int = _env_int("ORACLE_CACHE_TTL", 3600)

        self.jwt_secret_key: str = os.getenv("JWT_SECRET_KEY", "change-me-in-production")
        self.jwt_algorithm: str = os.getenv("JWT_ALGORITHM", "HS256")
        self.cors_origins: str = os.getenv("CORS_ORIGINS", "*")

    def cors_origins_list(self) -> List[str]:
        raw = self.cors_origins or ""
        return [x.strip().rstrip("/") for x in raw.split(",") if x.strip()]

    @property
    def ai_enabled(self) -> bool:
        return bool(self.gemini_api_key)


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
