"""Environment configuration and logging setup."""

import logging
import os

from dotenv import load_dotenv

LOGGER_NAME = "repertoire_trainer"

DEFAULT_DATABASE_URL = "postgresql://localhost:5432/repertoire_trainer?user=postgres&password=postgres"
DEFAULT_REDIS_URL = "redis://localhost:6379/0"

load_dotenv()


def get_database_url() -> str:
    return os.environ.get("DATABASE_URL", DEFAULT_DATABASE_URL)


def get_redis_url() -> str:
    return os.environ.get("REDIS_URL", DEFAULT_REDIS_URL)


def get_stockfish_path() -> str:
    return os.environ.get("STOCKFISH_PATH", "stockfish")


def get_lichess_token() -> str | None:
    return os.environ.get("LICHESS_TOKEN") or None


def setup_logging() -> logging.Logger:
    """Configure the root handler from LOG_LEVEL and return the project logger."""
    log_level = os.environ.get("LOG_LEVEL", "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, log_level, logging.INFO),
        format="%(asctime)s - %(levelname)s - %(name)s - %(message)s",
    )
    return logging.getLogger(LOGGER_NAME)
