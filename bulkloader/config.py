from dataclasses import dataclass
import os

from dotenv import load_dotenv


load_dotenv()


@dataclass(frozen=True)
class Settings:
    app_name: str
    database_url: str
    log_level: str
    output_dir: str
    operator_api_key: str
    api_url: str
    batch_concurrency: int
    max_attempts: int
    retry_backoff_seconds: float
    retry_max_backoff_seconds: float
    request_timeout_seconds: float


def get_settings() -> Settings:
    return Settings(
        app_name=os.getenv("APP_NAME", "bulkloader"),
        database_url=os.getenv("DATABASE_URL", "sqlite:///./bulkloader.db"),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
        output_dir=os.getenv("OUTPUT_DIR", "./outputs"),
        operator_api_key=os.getenv("OPERATOR_API_KEY", ""),
        api_url=os.getenv("API_URL", "https://api.evrythng.com"),
        batch_concurrency=int(os.getenv("BATCH_CONCURRENCY", "10")),
        max_attempts=int(os.getenv("MAX_ATTEMPTS", "3")),
        retry_backoff_seconds=float(os.getenv("RETRY_BACKOFF_SECONDS", "1")),
        retry_max_backoff_seconds=float(os.getenv("RETRY_MAX_BACKOFF_SECONDS", "30")),
        request_timeout_seconds=float(os.getenv("REQUEST_TIMEOUT_SECONDS", "30")),
    )
