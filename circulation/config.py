import os
from dataclasses import dataclass, field
from typing import List
from dotenv import load_dotenv

load_dotenv()


def _int_list(raw: str) -> List[int]:
    return [int(part) for part in raw.split(",") if part.strip()]


@dataclass
class Settings:
    # API settings
    api_host: str = os.getenv("API_HOST", "127.0.0.1")
    api_port: int = int(os.getenv("API_PORT", "8000"))
    api_key: str = os.getenv("API_KEY", "super-secret-key")

    # Database settings
    database_file: str = os.getenv("LIBRARY_DB_FILE", "library.db")

    # Circulation rules
    penalty_rate_per_day: int = int(os.getenv("PENALTY_RATE_PER_DAY", "2"))
    default_loan_days: int = int(os.getenv("DEFAULT_LOAN_DAYS", "14"))
    loan_duration_choices: List[int] = field(
        default_factory=lambda: _int_list(os.getenv("LOAN_DURATION_CHOICES", "7,14,30"))
    )
    max_update_retries: int = int(os.getenv("MAX_UPDATE_RETRIES", "5"))

    # Application settings
    app_name: str = os.getenv("APP_NAME", "Library Circulation Manager")
    app_version: str = os.getenv("APP_VERSION", "1.0.0")
    log_level: str = os.getenv("LOG_LEVEL", "INFO").upper()


settings = Settings()
