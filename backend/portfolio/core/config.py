from pydantic_settings import BaseSettings

class Settings(BaseSettings):
    DATABASE_URL: str
    FRONTEND_URL: str = "http://localhost:3000"
    FRONTEND_URLS: str | None = None
    LOG_LEVEL: str = "INFO"

    ASSET_STORE: str = "r2"
    ASSET_NAMESPACE: str = "portfolio"

    R2_ACCOUNT_ID: str | None = None
    R2_ENDPOINT_URL: str | None = None
    R2_ACCESS_KEY_ID: str | None = None
    R2_SECRET_ACCESS_KEY: str | None = None
    R2_BUCKET_NAME: str | None = None
    R2_REGION: str = "auto"
    R2_PUBLIC_BASE_URL: str | None = None

    CLOUDINARY_CLOUD_NAME: str | None = None
    CLOUDINARY_UPLOAD_PRESET: str | None = None

    UPLOAD_BATCH_SIZE: int = 3
    UPLOAD_MAX_FILES: int = 50
    MAX_UPLOAD_BYTES: int = 50 * 1024 * 1024
    COMPRESSION_BYTE_BUDGET: int = 10 * 1024 * 1024
    COMPRESSION_MAX_DIMENSION: int = 4096
    COMPRESSION_QUALITY: int = 85
    UPLOAD_RETRY_ATTEMPTS: int = 2
    UPLOAD_RETRY_BACKOFF_SECONDS: float = 1.0
    ASSOCIATION_RETRY_ATTEMPTS: int = 3

    class Config:
        env_file = ".env"

settings = Settings()
