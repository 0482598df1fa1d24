"""Configuration for the conversation engine."""

from functools import lru_cache
from typing import Dict, Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from convo_core.errors import ConfigError


DEFAULT_SYSTEM_PROMPT = (
    "You are a research assistant. Use the available tools when they help "
    "answer the question, then reply with a complete final answer."
)


class Settings(BaseSettings):
    """Engine settings, read from CONVO_* environment variables or .env."""

    model_config = SettingsConfigDict(
        env_prefix="CONVO_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Completion endpoint
    endpoint: str = Field(default="", description="Completion endpoint base URL")
    api_key: str = Field(default="", description="Completion endpoint API key")
    deployment: str = "o3"
    api_version: str = "2025-04-01-preview"
    request_timeout_seconds: float = 120.0
    max_output_tokens: int = 4096
    system_prompt: str = DEFAULT_SYSTEM_PROMPT

    # Request queue
    max_concurrent_requests: int = 3
    queue_base_delay_seconds: float = 1.0
    queue_max_delay_seconds: float = 60.0

    # Retry policy
    retry_max_retries: int = 3
    retry_initial_delay_seconds: float = 1.0
    retry_max_delay_seconds: float = 30.0
    retry_backoff_factor: float = 2.0
    retry_jitter_seconds: float = 0.5

    # Rate budget
    max_tokens_per_minute: int = 20000
    max_requests_per_minute: int = 300
    rate_window_seconds: float = 60.0

    # Tools
    tool_default_timeout_seconds: float = 30.0
    tool_timeouts: Dict[str, float] = Field(
        default_factory=lambda: {
            "advanced_web_search": 20.0,
            "search_academic_papers": 25.0,
            "analyze_statistics": 15.0,
            "build_knowledge_graph": 45.0,
            "generate_visualization": 20.0,
        }
    )
    persona_timeout_multipliers: Dict[str, float] = Field(
        default_factory=lambda: {
            "dolores": 0.8,
            "teddy": 1.2,
            "bernard": 1.5,
            "maeve": 1.0,
        }
    )
    circuit_failure_threshold: int = 3
    circuit_cooldown_seconds: float = 60.0

    # Conversation loop
    max_iterations: int = 5

    # Background completions
    background_poll_timeout_seconds: float = 600.0
    background_poll_initial_seconds: float = 1.0
    background_poll_max_seconds: float = 60.0

    # Logging
    log_level: str = "info"
    log_format: Literal["json", "console"] = "json"

    @field_validator(
        "max_concurrent_requests",
        "max_tokens_per_minute",
        "max_requests_per_minute",
        "max_iterations",
        "circuit_failure_threshold",
        "max_output_tokens",
    )
    @classmethod
    def _positive_int(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be at least 1")
        return value

    @field_validator(
        "retry_max_retries",
    )
    @classmethod
    def _non_negative_int(cls, value: int) -> int:
        if value < 0:
            raise ValueError("must not be negative")
        return value

    @field_validator(
        "queue_base_delay_seconds",
        "queue_max_delay_seconds",
        "retry_initial_delay_seconds",
        "retry_max_delay_seconds",
        "retry_jitter_seconds",
        "circuit_cooldown_seconds",
    )
    @classmethod
    def _non_negative_delay(cls, value: float) -> float:
        if value < 0:
            raise ValueError("delay must not be negative")
        return value

    @field_validator(
        "rate_window_seconds",
        "tool_default_timeout_seconds",
        "request_timeout_seconds",
        "background_poll_timeout_seconds",
        "background_poll_initial_seconds",
        "background_poll_max_seconds",
    )
    @classmethod
    def _positive_duration(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("duration must be positive")
        return value

    @property
    def completions_url(self) -> str:
        base = self.endpoint.rstrip("/")
        return (
            f"{base}/openai/deployments/{self.deployment}/chat/completions"
            f"?api-version={self.api_version}"
        )

    def require_credentials(self) -> None:
        """Raise ConfigError unless endpoint and API key are set."""
        if not self.endpoint or not self.api_key:
            raise ConfigError()

    def retry_policy(self):
        from convo_core.gateway.retry import RetryPolicy

        return RetryPolicy(
            max_retries=self.retry_max_retries,
            initial_delay=self.retry_initial_delay_seconds,
            max_delay=self.retry_max_delay_seconds,
            backoff_factor=self.retry_backoff_factor,
            jitter=self.retry_jitter_seconds,
        )

    def masked(self) -> Dict[str, object]:
        """Settings as a dict with the API key hidden."""
        data = self.model_dump()
        if data.get("api_key"):
            data["api_key"] = data["api_key"][:4] + "****"
        return data


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


__all__ = ["Settings", "get_settings", "DEFAULT_SYSTEM_PROMPT"]
