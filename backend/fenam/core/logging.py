"""
Logging setup and helpers that keep personal data out of log lines.
"""
import logging
import os
from typing import Any, Optional

from fenam.core.config import settings

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(level: Optional[str] = None) -> None:
    """Configure root logging once; LOG_LEVEL wins, then DEBUG."""
    if level is None:
        level = settings.LOG_LEVEL or ("INFO" if settings.DEBUG else "WARNING")
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT)


def mask_email(email: Optional[str]) -> str:
    """mario.rossi@example.com -> ma***@example.com"""
    if not email or "@" not in email:
        return "***"
    local, _, domain = email.partition("@")
    return f"{local[:2]}***@{domain}"


def log_error_structured(
    logger: logging.Logger,
    context: str,
    error: BaseException,
    metadata: Optional[dict[str, Any]] = None,
    category: str = "UNKNOWN",
) -> None:
    """
    Log an error with a category and safe metadata.

    Categories: VALIDATION, PAYPAL_API, DB_CONN, EMAIL, CONFIG, UNKNOWN.
    Stack traces are only attached outside production.
    """
    log_data: dict[str, Any] = {
        "category": category,
        "errorName": type(error).__name__,
        "errorCode": getattr(error, "code", None) or getattr(error, "status_code", None),
        "requestId": os.environ.get("REQUEST_ID", "local"),
        **(metadata or {}),
    }
    logger.error(
        f"{context} [{category}] {error} {log_data}",
        exc_info=error if not settings.is_production else None,
    )
