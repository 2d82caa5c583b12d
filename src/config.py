"""Application settings loaded from environment variables."""

import os
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _env_file() -> str | None:
    if os.getenv("PYTEST_CURRENT_TEST"):
        return None
    return ".env"


class Settings(BaseSettings):
    """Scribe configuration. All values come from environment variables."""

    # Narrative generation (Anthropic)
    anthropic_api_key: str = Field(default="")
    narrative_model: str = Field(default="claude-sonnet-4-5-20250929")
    narrative_max_tokens: int = Field(default=2048)

    # Memory extraction (Ollama-compatible backend)
    ollama_base_url: str = Field(default="http://localhost:11434")
    ollama_model: str = Field(default="qwen3:8b-q4_K_M")
    extraction_timeout: float | None = Field(default=None)

    # Memory pipeline
    memory_extraction_enabled: bool = Field(default=True)
    memory_history_window: int = Field(default=10, ge=1)
    memory_recall_cap: int = Field(default=5, ge=0)

    # Database
    database_path: Path = Field(default=Path("data/scribe.db"))

    # HTTP API
    api_host: str = Field(default="0.0.0.0")
    api_port: int = Field(default=8080)
    api_secret: str = Field(default="")

    # Logging
    log_level: str = Field(default="INFO")

    model_config = SettingsConfigDict(env_file=_env_file(), env_file_encoding="utf-8")

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        if os.getenv("PYTEST_CURRENT_TEST"):
            return (init_settings,)
        return (init_settings, env_settings, dotenv_settings, file_secret_settings)

    def get_ollama_base_url(self) -> str:
        """Return the extraction backend URL without a trailing slash."""
        return self.ollama_base_url.strip().rstrip("/")


settings = Settings()
