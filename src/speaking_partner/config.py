"""Configuration management for the speaking partner service."""

from typing import Literal
from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_PROVIDER_DEFAULT_BASE_URLS: dict[str, str] = {
    "anthropic": "https://api.anthropic.com",
    "openai": "https://api.openai.com",
}


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # LLM Provider Configuration
    llm_provider: Literal["custom", "anthropic", "openai"] = "custom"
    llm_base_url: str = ""
    llm_api_key: str
    llm_model: str = "claude-3-5-sonnet-20241022"
    llm_max_tokens: int = 1000

    @model_validator(mode="after")
    def _fill_default_base_url(self) -> "Settings":
        """Fill in a sensible base URL if the caller left it blank."""
        if not self.llm_base_url:
            self.llm_base_url = _PROVIDER_DEFAULT_BASE_URLS.get(self.llm_provider, "")
        return self

    # Server Configuration
    host: str = "0.0.0.0"
    port: int = 8000

    # Session Configuration
    max_input_length: int = 2000
    ai_timeout_seconds: float = 30.0
    context_history_turns: int = 20  # user+AI lines kept in the AI context
    ended_session_cache_size: int = 100  # ended sessions kept in memory; older ones are read from storage

    # Storage / Catalog Configuration
    sessions_dir: str = "sessions"
    topics_file: str = ""

    # Language defaults when neither the topic nor the user specifies one
    default_target_language: str = "English"
    default_native_language: str = "Turkish"
    default_proficiency_level: str = "intermediate"

    @property
    def is_anthropic(self) -> bool:
        """Check if using Anthropic provider."""
        return self.llm_provider == "anthropic"

    @property
    def is_openai(self) -> bool:
        """Check if using OpenAI provider."""
        return self.llm_provider == "openai"

    @property
    def is_custom(self) -> bool:
        """Check if using custom provider."""
        return self.llm_provider == "custom"


# Global settings instance
settings = Settings()
