import os
from pydantic import BaseModel
from typing import Optional

class Settings(BaseModel):
    """for reading environment-driven configuration.

    Values have sensible defaults for LocalStack-based development.
    Moderation defaults to strict; permissive has to be asked for.
    """
    aws_access_key_id: str = os.getenv("AWS_ACCESS_KEY_ID", "test")
    aws_secret_access_key: str = os.getenv("AWS_SECRET_ACCESS_KEY", "test")
    aws_region: str = os.getenv("AWS_REGION", "us-east-1")
    aws_endpoint_url: Optional[str] = os.getenv("AWS_ENDPOINT_URL")
    bucket_name: str = os.getenv("BUCKET_NAME", "photos")
    table_name: str = os.getenv("TABLE_NAME", "photos")
    public_base_url: Optional[str] = os.getenv("PUBLIC_BASE_URL")

    environment: str = os.getenv("APP_ENV", "development")
    log_level: str = os.getenv("LOG_LEVEL", "INFO")

    min_upload_bytes: int = int(os.getenv("MIN_UPLOAD_BYTES", "100"))
    max_upload_bytes: int = int(os.getenv("MAX_UPLOAD_BYTES", str(5 * 1024 * 1024)))
    min_dimension: int = int(os.getenv("MIN_DIMENSION", "10"))
    max_dimension: int = int(os.getenv("MAX_DIMENSION", "8000"))
    webp_quality: int = int(os.getenv("WEBP_QUALITY", "85"))
    storage_quota_bytes: int = int(os.getenv("STORAGE_QUOTA_BYTES", str(100 * 1024 * 1024)))

    moderation_endpoint: Optional[str] = os.getenv("MODERATION_ENDPOINT")
    moderation_api_key: Optional[str] = os.getenv("MODERATION_API_KEY")
    moderation_api_version: str = os.getenv("MODERATION_API_VERSION", "2023-10-01")
    moderation_timeout: float = float(os.getenv("MODERATION_TIMEOUT", "10"))
    moderation_mode: str = os.getenv("MODERATION_MODE", "strict")

    @property
    def is_production(self) -> bool:
        return self.environment.lower() in {"production", "prod"}

settings = Settings()
