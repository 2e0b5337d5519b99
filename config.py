"""Application configuration via environment variables."""

from typing import List, Optional

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Generation vendor (fal queue API)
    fal_key: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("FAL_KEY", "FAL_API_KEY")
    )
    fal_app_id: str = "fal-ai/hunyuan-video/video-to-video"
    fal_queue_url: str = "https://queue.fal.run"

    # Fixed generation parameters sent with every submission
    inference_steps: int = 30
    resolution: str = "720p"
    default_aspect_ratio: str = "16:9"
    safety_checker: bool = True
    strength: float = 0.85

    # Webhook callback
    public_base_url: Optional[str] = None
    webhook_secret: Optional[str] = None

    # Job store; in-memory when unset
    redis_url: Optional[str] = None

    # Durable asset storage
    aws_region: str = "us-east-1"
    aws_access_key_id: Optional[str] = None
    aws_secret_access_key: Optional[str] = None
    asset_bucket: Optional[str] = None
    asset_prefix: str = "generations"
    asset_public_base_url: Optional[str] = None

    # Relocation retry policy
    relocation_attempts: int = 3
    relocation_backoff_seconds: float = 1.0
    relocation_timeout_seconds: float = 60.0
    s3_connect_timeout_seconds: float = 10.0

    # API
    identity_header: str = "X-Owner-Id"
    cors_origins: List[str] = ["*"]
    log_level: str = "INFO"

    # Client poller
    poll_interval_seconds: float = 10.0

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
        "populate_by_name": True,
    }
