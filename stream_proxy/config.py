"""
Stream proxy configuration
"""
import os
from typing import List, Optional
from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_list(name: str) -> List[str]:
    value = os.getenv(name, "")
    return [item.strip() for item in value.split(",") if item.strip()]


class Config:
    """System configuration"""

    # Upstream LLM API
    OPENAI_API_KEY: Optional[str] = os.getenv("OPENAI_API_KEY")
    OPENAI_BASE_URL: Optional[str] = os.getenv("OPENAI_BASE_URL")
    UPSTREAM_TIMEOUT = float(os.getenv("UPSTREAM_TIMEOUT", 60))

    # Defaults applied when the client omits them
    DEFAULT_MODEL = os.getenv("DEFAULT_MODEL", "gpt-4-turbo-preview")
    DEFAULT_TEMPERATURE = 0.7
    DEFAULT_MAX_TOKENS = 1000  # non-streaming
    DEFAULT_STREAM_MAX_TOKENS = 2000

    # Rate limiter
    RATE_LIMIT_BACKEND = os.getenv("RATE_LIMIT_BACKEND", "memory")  # memory | redis
    RATE_LIMIT_WINDOW_SECONDS = int(os.getenv("RATE_LIMIT_WINDOW_SECONDS", 15 * 60))
    RATE_LIMIT_MAX_REQUESTS = int(os.getenv("RATE_LIMIT_MAX_REQUESTS", 100))
    TRUST_PROXY_HEADERS = _env_bool("TRUST_PROXY_HEADERS", False)

    # Redis (used when RATE_LIMIT_BACKEND=redis)
    REDIS_HOST = os.getenv("REDIS_HOST", "localhost")
    REDIS_PORT = int(os.getenv("REDIS_PORT", 6379))
    REDIS_DB = int(os.getenv("REDIS_DB", 0))
    REDIS_PASSWORD = os.getenv("REDIS_PASSWORD", None)

    # Request screening
    INJECTION_EXTRA_PATTERNS: List[str] = _env_list("INJECTION_EXTRA_PATTERNS")

    # Usage accounting for sessions whose upstream reports no usage
    ESTIMATE_USAGE = _env_bool("ESTIMATE_USAGE", True)

    # Server
    APP_ENV = os.getenv("APP_ENV", "production")
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
    SERVER_HOST = os.getenv("SERVER_HOST", "0.0.0.0")
    SERVER_PORT = int(os.getenv("SERVER_PORT", 3001))

    @property
    def is_development(self) -> bool:
        return self.APP_ENV.lower() == "development"

    @property
    def redis_url(self) -> str:
        return f"redis://{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"
