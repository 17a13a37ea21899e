import os
from pydantic_settings import BaseSettings
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    """
    # App
    APP_NAME: str = "Research Relay"
    APP_VERSION: str = "0.1.0"
    LOG_LEVEL: str = "INFO"
    API_PREFIX: str = "/api"

    # Logging
    LOG_PATH: str = "logs/"

    # Routing
    DEFAULT_SERVICE: str = "claude"
    MIN_QUERY_LENGTH: int = 5

    # Anthropic
    ANTHROPIC_API_KEY: str = "your_anthropic_api_key"
    ANTHROPIC_MODEL: str = "claude-3-7-sonnet-20250219"
    ANTHROPIC_MAX_TOKENS: int = 2000

    # Perplexity
    PERPLEXITY_API_KEY: str = "your_perplexity_api_key"
    PERPLEXITY_BASE_URL: str = "https://api.perplexity.ai"
    PERPLEXITY_MODEL: str = "sonar"
    PERPLEXITY_DEEP_RESEARCH_MODEL: str = "sonar-deep-research"
    PERPLEXITY_FALLBACK_MODELS: str = "sonar-pro"  # comma separated
    PERPLEXITY_REQUEST_TIMEOUT: int = 120
    PERPLEXITY_MAX_TOKENS: int = 1024

    # Rate Limiting (per provider key, requests per window)
    RATE_LIMIT_BACKEND: str = "memory"  # "memory" or "redis"
    RATE_LIMIT_MAX_KEYS: int = 10000
    CLAUDE_REQUESTS_PER_MINUTE: int = 50
    PERPLEXITY_REQUESTS_PER_MINUTE: int = 20
    DEEP_RESEARCH_PER_HOUR: int = 10
    DEFAULT_REQUESTS_PER_MINUTE: int = 60

    # API client throttling
    CLIENT_RATE_LIMIT_REQUESTS: int = 100
    CLIENT_RATE_LIMIT_SECONDS: int = 60

    # Redis (only used by the redis rate limit backend)
    REDIS_URL: str = os.getenv("REDIS_URL", "redis://localhost:6379/0")

    # Jobs
    JOB_MAX_ENTRIES: int = 1000
    JOB_RETENTION_SECONDS: int = 86400  # Terminal jobs are pruned after a day
    DEEP_RESEARCH_ESTIMATED_SECONDS: int = 180
    DEFERRED_MAX_WAIT_SECONDS: int = 3600

    # Circuit breaker per provider
    CIRCUIT_BREAKER_FAILURE_THRESHOLD: int = 3
    CIRCUIT_BREAKER_RESET_SECONDS: float = 300.0
    CIRCUIT_BREAKER_SUCCESS_THRESHOLD: int = 2

    # Research sessions (follow-up questions)
    SESSION_MAX_ENTRIES: int = 1000
    SESSION_TTL_SECONDS: int = 86400
    FOLLOW_UP_SERVICE: str = "claude"
    CLARIFYING_QUESTIONS_MAX: int = 5

    # Poller defaults for the /wait endpoint
    POLL_MAX_ATTEMPTS: int = 30
    POLL_INTERVAL_SECONDS: float = 2.0

    # Watchdog for stuck jobs
    WATCHDOG_THRESHOLD_SECONDS: int = 600 # How long a job can be inactive before it is reported as stuck

    class Config:
        case_sensitive = True

    @property
    def perplexity_fallback_models(self):
        return [m.strip() for m in self.PERPLEXITY_FALLBACK_MODELS.split(",") if m.strip()]

# Instantiate settings
settings = Settings()
