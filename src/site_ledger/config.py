"""Configuration loading from environment variables."""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path


@dataclass
class Config:
    db_path: Path = field(default_factory=lambda: Path.home() / ".site_ledger" / "ledger.db")
    max_retries: int = 5
    retry_backoff: float = 0.05
    log_level: str = "WARNING"

    @classmethod
    def from_env(cls) -> "Config":
        config = cls()

        if db := os.environ.get("SL_DB_PATH"):
            config.db_path = Path(db)

        if retries := os.environ.get("SL_MAX_RETRIES"):
            config.max_retries = max(1, int(retries))

        if backoff := os.environ.get("SL_RETRY_BACKOFF"):
            config.retry_backoff = float(backoff)

        if level := os.environ.get("SL_LOG_LEVEL"):
            config.log_level = level.upper()

        return config


def get_config() -> Config:
    return Config.from_env()


def configure_logging(config: Config) -> None:
    logging.basicConfig(
        level=getattr(logging, config.log_level, logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
