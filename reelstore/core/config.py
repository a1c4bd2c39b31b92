from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional

from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Secrets(BaseSettings):
    """Secrets configuration, loaded from the environment or a secrets management service."""

    model_config = SettingsConfigDict(
        env_prefix="REELSTORE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    jwt_secret: str = Field(default="change-me", description="Signing secret for bearer token validation.")
    minio_secret_key: str = Field(default="minioadmin", description="Secret key for the development MinIO store.")
    aws_secret_access_key: Optional[str] = None

    @classmethod
    def from_settings(cls, settings: "Settings") -> "Secrets":
        return cls()


class Settings(BaseSettings):
    """Centralised runtime configuration for the Reelstore ingest service."""

    model_config = SettingsConfigDict(
        env_prefix="REELSTORE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    app_name: str = "Reelstore API"
    environment: str = Field(default="development", description="Deployment environment label.")
    version: str = Field(default="0.1.0", description="API version for metadata and OpenAPI.")
    log_level: str = Field(default="info")

    database_url: str = Field(
        default="sqlite+aiosqlite:///./reelstore.db",
        description="SQLAlchemy compatible DSN.",
    )
    redis_url: str = Field(
        default="redis://localhost:6379/0",
        description="Redis URL for the result cache and the reward queue.",
    )

    storage_backend: Literal["local", "minio", "s3"] = Field(default="local", description="Active object store.")
    bucket_name: str = Field(default="reelstore-videos", description="Container holding every video asset.")
    local_storage_base_path: Path = Field(
        default_factory=lambda: Path("objects"),
        description="Root directory for the filesystem object store.",
    )
    minio_endpoint: str = Field(default="http://localhost:9000")
    minio_access_key: str = Field(default="minioadmin")
    aws_region: str = Field(default="us-east-2")
    aws_access_key_id: Optional[str] = None
    public_base_url: Optional[str] = Field(
        default=None,
        description="Overrides the backend-derived base URL used for media and preview links.",
    )

    cache_backend: Literal["memory", "redis"] = Field(default="memory", description="Result cache implementation.")
    cache_ttl_seconds: int = Field(default=3600, ge=1, description="TTL for cached video metadata.")

    max_duration_seconds: int = Field(default=30, ge=1, description="Uploads longer than this are trimmed.")
    max_upload_size_bytes: int = Field(default=100 * 1024 * 1024, description="Hard limit for spooled uploads.")
    allowed_content_types: tuple[str, ...] = Field(
        default=("video/mp4", "video/quicktime", "video/webm", "video/x-matroska"),
        description="MIME types accepted by the upload route.",
    )
    spool_dir: Optional[Path] = Field(default=None, description="Directory for spooled uploads (system temp if unset).")

    create_schema_on_startup: bool = Field(default=True, description="Run create_all when the app starts.")

    ffmpeg_binary: str = Field(default="ffmpeg")
    ffprobe_binary: str = Field(default="ffprobe")
    transcode_timeout_s: float = Field(default=300.0, gt=0, description="Upper bound for a single ffmpeg run.")

    reward_backend: Literal["log", "rq"] = Field(default="log", description="How upload credits reach the ledger.")
    upload_reward_amount: int = Field(default=10, ge=0)
    reward_queue_name: str = Field(default="reelstore-rewards")
    reward_task_path: str = Field(
        default="ledger.tasks.credit_reward",
        description="Dotted path of the ledger task executed by the reward worker.",
    )

    jwt_algorithm: str = Field(default="HS256", description="Algorithm used for JWT tokens.")
    jwt_issuer: Optional[str] = None
    jwt_audience: Optional[str] = None

    secrets: Secrets = Field(default_factory=Secrets, description="Holds sensitive configuration.")

    @property
    def environment_lower(self) -> str:
        return self.environment.lower()


@lru_cache()
def get_settings() -> Settings:
    load_dotenv(".env", override=False)

    _ENV_ALIAS_MAP = {
        "REELSTORE_ENV": "REELSTORE_ENVIRONMENT",
        "REELSTORE_DB_URL": "REELSTORE_DATABASE_URL",
    }

    for source, target in _ENV_ALIAS_MAP.items():
        value = os.getenv(source)
        if value:
            os.environ[target] = value

    settings = Settings()
    secrets = Secrets.from_settings(settings)

    if settings.environment_lower == "production" and secrets.jwt_secret == "change-me":
        raise ValueError("Production environment must have a non-default JWT secret.")

    settings.secrets = secrets
    return settings


__all__ = ["Settings", "Secrets", "get_settings"]
