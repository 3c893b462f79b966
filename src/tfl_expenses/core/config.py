from __future__ import annotations

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    environment: str = "dev"

    openai_api_key: str | None = None
    openai_base_url: str = "https://api.openai.com/v1"
    openai_model: str = "gpt-4o-mini"
    ai_timeout_seconds: float = 60.0
    ai_max_chars: int = 60000

    max_concurrent_chunks: int = 3
    max_concurrent_files: int = 3

    ocr_min_text_chars: int = 100
    layout_y_tolerance: float = 2.0
    tesseract_lang: str = "eng"

    tracing_enabled: bool = False


settings = Settings()
