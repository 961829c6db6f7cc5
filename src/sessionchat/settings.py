from pathlib import Path
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application configuration."""

    host: str = "0.0.0.0"
    port: int = 8000
    debug: bool = False
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    log_dir: Path = Path("logs")

    model: str = "gpt-4o-mini"
    temperature: float = 0.4
    max_tokens: int = 1500  # room for Markdown and code blocks
    openai_api_key: str | None = None
    openai_base_url: str | None = "https://api.openai.com/v1"
    completion_timeout_seconds: float = 60.0

    max_turns: int = 20
    system_prompt: str = " ".join(
        [
            "You are a concise, helpful assistant.",
            "Always format your response in GitHub-Flavored Markdown.",
            "When sharing code, use fenced code blocks with a language tag, e.g. ```ts ... ```.",
            "Preserve indentation and line breaks exactly as in code.",
            "Do not escape backticks; do not wrap code in quotes.",
            "Do not paste code when the question does not involve any code.",
        ]
    )

    redis_url: str | None = None
    session_ttl_seconds: int = 86400  # 24 hours

    embedding_model: str = "text-embedding-3-small"
    chroma_collection: str | None = None
    chroma_host: str | None = None
    chroma_port: int = 8000
    chroma_path: Path = Path("data/chroma")
    retrieval_top_k: int = 3

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="",
        extra="ignore",
    )


def get_settings() -> Settings:
    """Return the application settings singleton (loaded from env / .env)."""
    global _SETTINGS
    try:
        return _SETTINGS
    except NameError:
        _SETTINGS = Settings()
        return _SETTINGS
