"""
Application configuration and settings.

Loads configuration from environment variables with sensible defaults.
"""

from pathlib import Path
from typing import List, Optional
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    # Server
    host: str = "0.0.0.0"
    port: int = 8000
    debug: bool = True

    # Verification service
    verifier_base_url: str = "http://localhost:5000/api"
    verifier_timeout: float = 10.0
    verifier_api_key: Optional[str] = None

    # Live capture
    camera_index: int = 0
    capture_fps: int = 10

    # QR decoding: preprocessing strategies tried in order
    decode_preprocess: List[str] = ["none", "otsu", "adaptive"]

    # Uploads
    upload_dir: Path = Path("uploads")
    allowed_image_types: List[str] = [".jpg", ".jpeg", ".png", ".webp", ".gif"]
    max_upload_bytes: int = 10 * 1024 * 1024

    # Sessions: idle ones are closed, the oldest is evicted at the cap
    max_sessions: int = 100
    session_idle_seconds: float = 30 * 60

    # Logging
    log_level: str = "INFO"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        env_prefix = "DOCVERIFY_"

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        # Ensure directories exist
        self.upload_dir.mkdir(parents=True, exist_ok=True)


# Global settings instance
settings = Settings()
