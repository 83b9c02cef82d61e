"""Application configuration via environment variables."""

from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    # Supabase
    supabase_url: str = ""
    supabase_anon_key: str = ""
    supabase_service_role_key: str = ""
    supabase_access_token: Optional[str] = None

    # Job runner (serverless function that executes queued jobs)
    job_runner_url: str = "http://localhost:8888"
    job_runner_path: str = "/.netlify/functions/ai-job-runner"
    trigger_timeout_seconds: float = 5.0

    # Polling
    poll_interval_ms: int = 2000
    poll_backoff: str = "fixed"  # "fixed" or "exponential"
    poll_max_interval_ms: int = 10000
    max_attempts_headshot: int = 30
    max_attempts_body_shot: int = 30
    max_attempts_wardrobe_item: int = 60
    max_attempts_outfit_render: int = 60
    max_attempts_try_on: int = 120
    max_attempts_mannequin: int = 60

    # Storage
    media_bucket: str = "media"
    download_timeout_seconds: float = 30.0

    # Composite grid
    grid_width: int = 1536
    grid_height: int = 2048
    grid_padding: int = 20
    grid_jpeg_quality: int = 80
    trim_threshold: int = 15
    composite_cache_ttl_seconds: int = 900

    # Generation defaults
    default_model_preference: str = "gemini-2.5-flash-image"

    log_level: str = "INFO"

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


settings = Settings()
