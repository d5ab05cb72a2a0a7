"""
Domain exceptions and tagged failure logging.

Exceptions here are true failures. "No data" and "not allowed" outcomes are
returned as result variants (see results.py) rather than raised.
"""
import logging

logger = logging.getLogger(__name__)

SEVERITIES = ("low", "medium", "high", "critical")
CATEGORIES = (
    "authentication",
    "permission",
    "quota",
    "network",
    "validation",
    "database",
    "lock",
    "system",
)


class SheetsApiError(Exception):
    """Raised when a Sheets/Drive REST call fails with a non-retryable status or after retries."""

    def __init__(self, status_code: int, msg: str):
        self.status_code = status_code
        self.msg = msg
        super().__init__(f"Sheets API returned {status_code}: {msg}")


class ServiceAccountError(Exception):
    """Service-account credentials missing/invalid or token exchange failed."""


class LockTimeout(Exception):
    """The script lock could not be acquired in time. Request-fatal; never retried."""

    def __init__(self, operation: str, timeout: float):
        self.operation = operation
        self.timeout = timeout
        super().__init__(f"{operation}: could not acquire lock within {timeout}s")


class DatabaseUnavailable(Exception):
    """The user database spreadsheet is not configured or cannot be reached."""


class ValidationError(Exception):
    """Invalid user id, email, sheet name or similar input."""


def mask_email(email: str | None) -> str:
    if not email or "@" not in email:
        return "N/A"
    return f"{email.split('@')[0]}@***"


def mask_id(value: str | None) -> str:
    if not value:
        return "N/A"
    return f"{value[:8]}***"


def categorize(exc: Exception) -> str:
    if isinstance(exc, LockTimeout):
        return "lock"
    if isinstance(exc, DatabaseUnavailable):
        return "database"
    if isinstance(exc, ValidationError):
        return "validation"
    if isinstance(exc, ServiceAccountError):
        return "authentication"
    if isinstance(exc, SheetsApiError):
        if exc.status_code in (401,):
            return "authentication"
        if exc.status_code == 403:
            return "permission"
        if exc.status_code == 429:
            return "quota"
        return "network"
    return "system"


def log_error(
    exc: Exception,
    operation: str,
    severity: str = "medium",
    category: str | None = None,
    **context,
) -> None:
    """
    Log a failure with severity/category tags passed as `extra`.
    high/critical go to ERROR with traceback; the rest to WARNING.
    """
    category = category or categorize(exc)
    extra = {"severity": severity, "category": category, "operation": operation}
    message = "%s failed [%s/%s]: %s"
    if context:
        message += " %s"
        args = (operation, severity, category, exc, context)
    else:
        args = (operation, severity, category, exc)
    if severity in ("high", "critical"):
        logger.error(message, *args, extra=extra, exc_info=exc)
    else:
        logger.warning(message, *args, extra=extra)
