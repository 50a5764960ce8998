# core/config.py
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    PROJECT_NAME: str = "batch-scrape-engine"
    VERSION: str = "0.1.0"

    DATABASE_URL: str = "sqlite:///./batch_scrape.db"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    # Optional X-API-Key protection for the batch endpoints
    API_KEY: str | None = None

    # Page scraping
    SCRAPE_TIMEOUT_SECONDS: float = 30.0
    SCRAPE_REQUEST_TIMEOUT: float = 20.0
    SELENIUM_RENDER_WAIT_SECONDS: float = 1.0

    # Retry backoff: min(base * 2**retry_count, max)
    RETRY_BASE_DELAY_SECONDS: float = 1.0
    RETRY_MAX_DELAY_SECONDS: float = 30.0

    # Per-subscriber buffer for live batch updates
    EVENT_QUEUE_SIZE: int = 100

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


settings = Settings()
