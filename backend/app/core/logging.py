"""
Logging setup shared by the API process and the Celery worker.
"""
import logging
from typing import Optional

from app.core.config import settings

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"

# Third-party loggers that are too chatty at INFO
NOISY_LOGGERS = ("sqlalchemy.engine", "httpx", "asyncio")


def configure_logging(level: Optional[str] = None) -> None:
    """
    Configure root logging once at process start.

    Args:
        level: Log level name (defaults to settings.LOG_LEVEL)
    """
    level_name = (level or settings.LOG_LEVEL).upper()
    logging.basicConfig(level=getattr(logging, level_name, logging.INFO), format=LOG_FORMAT)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
