"""Configuration management with YAML and environment variable support."""

from pathlib import Path
from typing import ClassVar, Literal, Optional

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
)

SCENE_QUEUE = "scene-generation"
VIDEO_QUEUE = "video-generation"
MUSIC_QUEUE = "music-generation"
COMPILE_QUEUE = "video-compilation"


class YamlConfigSettingsSource(PydanticBaseSettingsSource):
    """Custom settings source that loads configuration from YAML file."""

    def get_field_value(self, field, field_name: str):
        # Not used with prepare method
        pass

    def prepare_field_value(self, field_name: str, field, value, value_is_complex: bool):
        return value

    def __call__(self):
        yaml_path = Path("config.yaml")
        if not yaml_path.exists():
            return {}

        with open(yaml_path) as f:
            data = yaml.safe_load(f) or {}

        return data


class GoogleCloudConfig(BaseModel):
    """Google Cloud configuration for the scene description model.

    project_id is only needed when the Vertex AI describer is used.
    """

    project_id: Optional[str] = None
    location: str = "us-central1"


class ServicesConfig(BaseModel):
    """External generation service endpoints and credentials."""

    fal_base_url: str = "https://queue.fal.run"
    fal_video_model: str = "fal-ai/kling-video/v1/standard/image-to-video"
    fal_api_key: str = ""
    sonauto_base_url: str = "https://api.sonauto.ai/v1"
    sonauto_api_key: str = ""
    scene_llm: str = "gemini-2.5-flash"
    request_timeout: float = 60.0


class QueueConfig(BaseModel):
    """Concurrency and rate limit for one queue.

    limiter_max=None disables the rate limiter. Terminal jobs are purged
    retention_seconds after they finish; None keeps them.
    """

    concurrency: int = Field(default=1, ge=1)
    limiter_max: Optional[int] = Field(default=None, ge=1)
    limiter_duration_ms: int = Field(default=1000, ge=1)
    retention_seconds: Optional[float] = Field(default=3600.0, ge=0)


def _default_queues() -> dict[str, QueueConfig]:
    return {
        SCENE_QUEUE: QueueConfig(concurrency=3),
        VIDEO_QUEUE: QueueConfig(concurrency=2, limiter_max=5, limiter_duration_ms=60000),
        MUSIC_QUEUE: QueueConfig(concurrency=2, limiter_max=10, limiter_duration_ms=60000),
        COMPILE_QUEUE: QueueConfig(concurrency=1),
    }


class RetryConfig(BaseModel):
    """Retry, backoff and stall detection parameters."""

    max_attempts: int = Field(default=3, ge=1)
    base_delay: float = 2.0
    max_delay: float = 60.0
    stall_window: float = 120.0
    stall_check_interval: float = 15.0
    idle_interval: float = 0.5


class PipelineConfig(BaseModel):
    """Pipeline execution parameters."""

    scene_count: int = 3
    min_images: int = 1
    default_platform: Literal["youtube", "instagram", "tiktok"] = "instagram"
    aspect_ratio: str = "9:16"
    video_poll_interval: float = 10.0
    video_poll_max: int = 60
    music_poll_interval: float = 5.0
    music_poll_max: int = 60
    music_duration: int = 30
    transition_seconds: float = 0.5
    clip_progress_weighting: Literal["linear", "duration"] = "linear"
    active_status_ttl: int = 3600
    terminal_status_ttl: int = 86400


class StorageConfig(BaseModel):
    """Storage, database and object store configuration."""

    database_url: str = "sqlite+aiosqlite:///promopipe.db"
    tmp_dir: Path = Path("tmp")
    object_store: Literal["local", "s3"] = "local"
    public_base_url: str = "http://localhost:8000/media"
    local_root: Path = Path("media")
    s3_bucket: str = "promopipe-videos"
    s3_region: str = "us-east-1"
    s3_endpoint_url: Optional[str] = None
    s3_access_key: Optional[str] = None
    s3_secret_key: Optional[str] = None

    @field_validator("tmp_dir", "local_root", mode="before")
    @classmethod
    def convert_to_path(cls, v):
        """Convert string to Path object."""
        if isinstance(v, str):
            return Path(v)
        return v


class CacheConfig(BaseModel):
    """Status cache backend."""

    backend: Literal["memory", "redis"] = "memory"
    redis_url: str = "redis://localhost:6379/0"
    key_prefix: str = ""


class ServerConfig(BaseModel):
    """Server configuration."""

    host: str = "0.0.0.0"
    port: int = 8000


class Settings(BaseSettings):
    """Main application settings with YAML and environment variable support.

    Configuration sources (in priority order):
    1. Environment variables (prefix: PROMOPIPE_, delimiter: __)
    2. YAML file (config.yaml)
    3. Field defaults
    """

    model_config: ClassVar[SettingsConfigDict] = SettingsConfigDict(
        env_nested_delimiter="__",
        env_prefix="PROMOPIPE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    google_cloud: GoogleCloudConfig = Field(default_factory=GoogleCloudConfig)
    services: ServicesConfig = Field(default_factory=ServicesConfig)
    queues: dict[str, QueueConfig] = Field(default_factory=_default_queues)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    pipeline: PipelineConfig = Field(default_factory=PipelineConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ):
        """Customize settings sources to include YAML configuration.

        Priority order (highest to lowest):
        1. Environment variables
        2. YAML file
        3. Init settings (programmatic defaults)
        """
        return (
            env_settings,
            dotenv_settings,
            YamlConfigSettingsSource(settings_cls),
            init_settings,
        )


# Singleton instance
settings = Settings()
