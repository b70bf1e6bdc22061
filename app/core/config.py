from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import List, Optional, Set

class Settings(BaseSettings):
    ENV: str = "local"

    MAIN_SERVICE_JWT_PUBLIC_KEY: str = ""
    JWT_ALGORITHM: str = "RS256"
    EXPECTED_JWT_ISSUER: str = ""
    EXPECTED_JWT_AUDIENCE: str = ""
    # Require X-CSRF-Token to match the token's "csrf" claim
    CSRF_REQUIRED: bool = True

    S3_ACCESS_KEY: str = ""
    S3_SECRET_KEY: str = ""
    S3_BUCKET_NAME: str = "assembled-uploads"
    S3_ENDPOINT_URL: Optional[str] = None
    S3_REGION_NAME: Optional[str] = None
    S3_KEY_PREFIX: str = "uploads/"

    # Staging area for in-progress chunks, never served
    STAGING_PATH: str = "/tmp/upload_staging"

    # Permanent store for validated files (local backend only)
    PERMANENT_STORAGE_PATH: str = "/var/data/uploads" # make sure this path is writable by the service

    STORAGE_BACKEND: str = "local"  # 's3' or 'local'

    MAX_UPLOAD_SIZE: int = 5 * 1024 * 1024
    ALLOWED_EXTENSIONS: Set[str] = {"jpg", "jpeg", "png", "pdf"}
    ALLOWED_MIME_TYPES: Set[str] = {"image/jpeg", "image/png", "application/pdf"}

    SESSION_IDLE_TIMEOUT_SECONDS: float = 30 * 60
    GC_INTERVAL_SECONDS: float = 60

    CORS_ORIGINS: List[str] = ["*"]

    model_config = SettingsConfigDict(
        case_sensitive=True,
        env_file=".env" if ENV == "local" else None,
        env_file_encoding="utf-8",
        extra="ignore",
    )

settings = Settings()
