# mediahub/core/config.py
import os
from pydantic_settings import BaseSettings
from pydantic import Field
from pydantic_settings import SettingsConfigDict
from typing import List
from functools import lru_cache

MB = 1024 * 1024


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore", populate_by_name=True)

    # Application Settings
    APP_NAME: str = "Innovation Media API"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    DOCS_ENABLED: bool = True

    # Database Settings
    DATABASE_URL: str = os.environ.get("DATABASE_URL", "sqlite:///./mediahub.db")

    # Security Settings
    SECRET_KEY: str = Field(default="change-me-in-prod", alias="JWT_SECRET_KEY")
    ALGORITHM: str = "HS256"

    # CORS Settings
    ALLOWED_ORIGINS: str = os.environ.get("ALLOWED_ORIGINS", "*")

    # Middleware settings
    GZIP_MIN_SIZE: int = 500

    # Logging Settings
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    # File Upload Settings
    UPLOAD_DIR: str = "uploads"
    UPLOAD_MAX_FILE_SIZE: int = 200 * MB
    UPLOAD_CHUNK_SIZE: int = 2 * MB
    UPLOAD_MAX_CHUNKS: int = 100
    UPLOAD_TIMEOUT_SECONDS: float = 300.0
    UPLOAD_RETRY_ATTEMPTS: int = 3
    UPLOAD_RETRY_DELAY_SECONDS: float = 1.0
    PROGRESSIVE_UPLOAD_THRESHOLD: int = 25 * MB
    UPLOAD_SESSION_TIMEOUT_SECONDS: float = 30 * 60
    UPLOAD_SESSION_SWEEP_INTERVAL_SECONDS: float = 60.0
    ALLOWED_IMAGE_TYPES: List[str] = [
        "image/jpeg",
        "image/png",
        "image/gif",
        "image/webp",
        "image/bmp",
        "image/tiff",
    ]

    # Image processing
    IMAGE_MAX_DIMENSION: int = 8192
    IMAGE_PROCESSING_MEMORY_LIMIT_MB: int = 2048
    CODEC_CONCURRENCY: int = 2
    CODEC_CACHE_SIZE_MB: int = 50
    CODEC_MAX_PENDING: int = 16

    # Memory monitoring
    ENABLE_MEMORY_MONITORING: bool = True
    MEMORY_CHECK_INTERVAL_SECONDS: float = 30.0
    MEMORY_CRITICAL_COOLDOWN_SECONDS: float = 1.0

    # Serving
    IMAGE_CACHE_MAX_AGE: int = 3600

    # Admin bulk operations
    BULK_DELETE_DELAY_SECONDS: float = 0.5
    BULK_UPLOAD_DELAY_SECONDS: float = 1.0

    # Helper methods for list envs
    def _split_csv(self, value: str) -> List[str]:
        if value is None:
            return []
        value = value.strip()
        if value == "":
            return []
        return [item.strip() for item in value.split(",")]

    @property
    def allowed_origins_list(self) -> List[str]:
        return self._split_csv(self.ALLOWED_ORIGINS)

    @property
    def max_chunk_size(self) -> int:
        return max(self.PROGRESSIVE_UPLOAD_THRESHOLD, self.UPLOAD_CHUNK_SIZE)

    @property
    def max_request_size(self) -> int:
        # largest payload plus multipart framing
        return self.max_chunk_size + MB


@lru_cache()
def get_settings() -> Settings:
    s = Settings()
    # Normalize ALLOWED_ORIGINS if provided as comma-separated string env var CORS_ORIGINS
    cors_env = os.environ.get("CORS_ORIGINS")
    if cors_env:
        s.ALLOWED_ORIGINS = cors_env
    return s


settings: Settings = get_settings()
