import logging
import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

load_dotenv()


@dataclass(frozen=True)
class LendingPolicy:
    """Tunable lending rules used by the borrowing engine."""

    max_active_borrowings: int = 5
    default_loan_days: int = 30
    daily_fine_rate: float = 0.50
    lost_fine_ratio: float = 0.5
    default_replacement_cost: float = 25.00


@dataclass
class Settings:
    # API settings
    api_host: str = os.getenv("API_HOST", "127.0.0.1")
    api_port: int = int(os.getenv("API_PORT", "8000"))
    api_key: str = os.getenv("API_KEY", "super-secret-key")

    # Database settings
    db_file: str = os.getenv("LENDING_DB_FILE", "lending.db")

    # Lending policy
    max_active_borrowings: int = int(os.getenv("MAX_ACTIVE_BORROWINGS", "5"))
    default_loan_days: int = int(os.getenv("DEFAULT_LOAN_DAYS", "30"))
    daily_fine_rate: float = float(os.getenv("DAILY_FINE_RATE", "0.50"))
    lost_fine_ratio: float = float(os.getenv("LOST_FINE_RATIO", "0.5"))
    default_replacement_cost: float = float(os.getenv("DEFAULT_REPLACEMENT_COST", "25.00"))

    # Application settings
    app_name: str = os.getenv("APP_NAME", "Library Lending Service")
    app_version: str = os.getenv("APP_VERSION", "1.0.0")
    log_level: str = os.getenv("LOG_LEVEL", "INFO")
    debug: bool = os.getenv("DEBUG", "False").lower() in ("true", "1", "yes")

    def policy(self) -> LendingPolicy:
        return LendingPolicy(
            max_active_borrowings=self.max_active_borrowings,
            default_loan_days=self.default_loan_days,
            daily_fine_rate=self.daily_fine_rate,
            lost_fine_ratio=self.lost_fine_ratio,
            default_replacement_cost=self.default_replacement_cost,
        )


settings = Settings()


def configure_logging(level: Optional[str] = None) -> None:
    """Configure root logging once for the API and CLI entry points."""
    name = (level or settings.log_level or "INFO").upper()
    if settings.debug:
        name = "DEBUG"
    logging.basicConfig(
        level=getattr(logging, name, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
