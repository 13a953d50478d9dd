"""Create every table for the chat backend, waiting for the database to come up."""

import logging
import time
from typing import Callable

from scripts._path import add_root

add_root()

from sqlalchemy.exc import OperationalError

import models  # noqa: F401
from core.logging import setup_logging
from database import Base, engine

logger = logging.getLogger(__name__)


def _retry(operation: Callable[[], None], *, retries: int = 7, delay: float = 3.0) -> None:
    for attempt in range(1, retries + 1):
        try:
            operation()
            return
        except OperationalError as exc:
            if attempt == retries:
                raise
            logger.warning(
                "Database not ready yet (attempt %d/%d). Retrying in %.1f seconds: %s",
                attempt,
                retries,
                delay,
                exc,
            )
            time.sleep(delay)


def init_db() -> None:
    logger.info("Creating tables: %s", ", ".join(sorted(Base.metadata.tables)))
    _retry(lambda: Base.metadata.create_all(bind=engine))
    logger.info("Database schema ready.")


if __name__ == "__main__":
    setup_logging()
    init_db()
