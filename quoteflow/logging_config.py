"""
logging_config.py — Centralized Logging Configuration for quoteflow

Sets up Loguru as the single logging backend. Intercepts Python's stdlib
logging module so uvicorn, SQLAlchemy and httpx records route through
Loguru with the same format.

Business Rules:
- All logs go through Loguru (no direct print() or stdlib handlers)
- JSON format in production for machine parsing
- Human-readable format in development, with the quotation id column
  filled from logger.bind()/contextualize() when present
- Optional rotating file sink when LOG_FILE is set
- Fatal sync inconsistencies are logged at CRITICAL so alerting can key on them

Called by: quoteflow/main.py (on startup)
Depends on: quoteflow/config.py (log_level, log_file, app_url)
"""

import logging
import sys

from loguru import logger

from .config import settings

DEV_FORMAT = (
    "<green>{time:HH:mm:ss}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> | "
    "<magenta>{extra[quotation_id]}</magenta> | "
    "{message}"
)


def setup_logging(level: str | None = None, production: bool | None = None, log_file: str | None = None) -> None:
    """Configure Loguru and intercept stdlib logging.

    Arguments default to the values in settings. Call once at app startup.
    """
    logger.remove()

    log_level = (level or settings.log_level).upper()
    is_production = settings.is_production if production is None else production
    log_file = settings.log_file if log_file is None else log_file

    logger.configure(extra={"quotation_id": "-"})

    if is_production:
        # JSON lines to stdout (container runtime captures these)
        logger.add(sys.stdout, level=log_level, format="{message}", serialize=True)
    else:
        logger.add(sys.stdout, level=log_level, format=DEV_FORMAT, colorize=True)

    if log_file:
        logger.add(
            log_file,
            level=log_level,
            rotation="50 MB",
            retention="7 days",
            compression="gz",
            serialize=is_production,
        )

    logging.basicConfig(handlers=[_InterceptHandler()], level=0, force=True)

    for noisy in ("httpx", "httpcore", "uvicorn.access", "sqlalchemy.engine"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    logger.info("Logging configured", level=log_level, production=is_production)


class _InterceptHandler(logging.Handler):
    """Route stdlib logging records to Loguru."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        # Skip frames from stdlib logging internals
        frame, depth = logging.currentframe(), 0
        while frame and (depth == 0 or frame.f_code.co_filename == logging.__file__):
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(
            level, record.getMessage()
        )
