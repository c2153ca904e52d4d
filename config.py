from pathlib import Path
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    db_path: Path = Path("data/collection.db")
    tmdb_api_key: Optional[str] = None
    tmdb_language: str = "zh-CN"
    home_country: str = "CN"
    fallback_country: str = "US"
    batch_size: int = 8
    batch_delay: float = 1.2
    request_timeout: float = 30.0
    backfill_schedule: Optional[str] = None
    export_prefix: str = "电影收藏"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
    )


settings = Settings()
