import os
from dataclasses import dataclass
from typing import Optional
from dotenv import load_dotenv

load_dotenv()


def _env_flag(name: str, default: str = "False") -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


@dataclass
class Settings:
    # API settings
    api_host: str = os.getenv("API_HOST", "127.0.0.1")
    api_port: int = int(os.getenv("API_PORT", "8000"))

    # Database settings
    database_file: str = os.getenv("LIBRARY_DB_FILE", "library.db")
    # Seconds a connection waits on sqlite's write lock before giving up
    database_timeout: float = float(os.getenv("DATABASE_TIMEOUT", "10"))
    seed_file: Optional[str] = os.getenv("LIBRARY_SEED_FILE")

    # Logging
    log_level: str = os.getenv("LOG_LEVEL", "INFO").upper()

    # Application settings
    app_name: str = os.getenv("APP_NAME", "Library Lending API")
    app_version: str = os.getenv("APP_VERSION", "1.0.0")
    debug: bool = _env_flag("DEBUG")
    environment: str = os.getenv("ENVIRONMENT", "development")


settings = Settings()
