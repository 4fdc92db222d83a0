"""Application configuration."""

from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Application
    app_name: str = "Landing Translator"
    debug: bool = True

    # Frontend origin allowed by CORS
    frontend_port: int = 3000

    # Database
    database_url: str = "sqlite+aiosqlite:///./landing_translator.db"

    # External services (translate / analyze / fix / page images / publish)
    services_base_url: str = "http://localhost:3000"
    services_api_token: Optional[str] = None
    # None = no hard per-call timeout; a hung call blocks until the row is cancelled
    request_timeout: Optional[float] = None
    service_max_retries: int = 3

    # Quality convergence
    quality_enabled: bool = True
    quality_threshold: float = 85.0
    max_text_rounds: int = 3
    max_fix_rounds: int = 3

    # Batch stall watchdog (advisory only)
    stall_timeout_seconds: float = 180.0
    # Finished batch progress kept for polling
    batch_retention_seconds: float = 600.0

    # CORS - dynamically built based on frontend_port
    cors_origins: list[str] = []

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
    )

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        # Build CORS origins based on frontend port
        if not self.cors_origins:
            self.cors_origins = [
                f"http://localhost:{self.frontend_port}",
                f"http://127.0.0.1:{self.frontend_port}",
            ]


settings = Settings()
