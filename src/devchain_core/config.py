"""Storage layer configuration, read from environment variables."""
from functools import lru_cache

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Settings with DEVCHAIN_ prefixed env var support."""

    database_url: str = "sqlite:///./devchain.db"
    database_echo: bool = False

    # Ids per query when batch-loading tags (SQLite bound parameter limit)
    tag_batch_chunk_size: int = 500
    default_children_per_parent: int = 50
    default_page_size: int = 100

    builtin_skill_sources: list[str] = ["anthropic", "openai"]

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "env_prefix": "DEVCHAIN_"}


@lru_cache
def get_settings() -> Settings:
    """Get cached settings."""
    return Settings()
