# config/settings.py
from pydantic_settings import BaseSettings
from typing import List, Optional

MB = 1024 * 1024

class Settings(BaseSettings):
    # API
    API_V1_STR: str = "/api/v1"
    PROJECT_NAME: str = "Frame Customization Service"

    # CORS
    ALLOWED_HOSTS: List[str] = ["*"]

    # Env
    ENVIRONMENT: str = "development"
    DEBUG: bool = True

    # Database
    DATABASE_URL: str = "sqlite+aiosqlite:///./customizations.db"

    # Cloudinary (either export CLOUDINARY_URL or use the 3 fields below)
    CLOUDINARY_CLOUD_NAME: Optional[str] = None
    CLOUDINARY_API_KEY: Optional[str] = None
    CLOUDINARY_API_SECRET: Optional[str] = None
    CLOUDINARY_FOLDER: str = "product-customizations"
    CLOUDINARY_ORIGINALS_FOLDER: str = "product-customizations/originals"

    # Hard ceilings, checked before any processing or network call
    MAX_INPUT_BYTES: int = 100 * MB
    MAX_ASSET_UPLOAD_BYTES: int = 20 * MB
    MAX_ORIGINAL_UPLOAD_BYTES: int = 50 * MB

    # Upload ingestion
    INGEST_COMPRESS_THRESHOLD_BYTES: int = 20 * MB
    INGEST_REJECT_BYTES: int = 25 * MB
    INGEST_MAX_DIMENSION: int = 3000

    # Save cycle
    RENDERED_BUDGET_BYTES: int = 3 * MB
    CROPPED_BUDGET_BYTES: int = 3 * MB
    ORIGINAL_BUDGET_BYTES: int = 8 * MB
    ORIGINAL_MAX_DIMENSION: int = 4096
    EXPORT_PIXEL_RATIO: float = 2.0
    PREVIEW_PIXEL_RATIO: float = 2.0
    RENDER_JPEG_QUALITY: float = 0.92
    ORIGINAL_JPEG_QUALITY: float = 0.95

    # Server-side compression of ingested originals
    SERVER_COMPRESS_THRESHOLD_BYTES: int = 2 * MB
    SERVER_BUDGET_BYTES: int = 9 * MB
    SERVER_MAX_DIMENSION: int = 8000
    SERVER_ORIGINAL_QUALITY: float = 0.98

    # Upload orchestration
    UPLOAD_MAX_ATTEMPTS: int = 3
    UPLOAD_TIMEOUT_SECONDS: float = 120.0
    UPLOAD_BACKOFF_BASE_SECONDS: float = 1.0

    # Frame templates
    FRAME_FETCH_TIMEOUT_SECONDS: float = 30.0
    CANVAS_MAX_WIDTH: int = 300
    CANVAS_MAX_HEIGHT: int = 400
    CANVAS_MIN_WIDTH: int = 250
    CANVAS_MIN_HEIGHT: int = 300

    @property
    def database_url(self) -> str:
        return self.DATABASE_URL

    class Config:
        env_file = ".env"
        case_sensitive = True

settings = Settings()
