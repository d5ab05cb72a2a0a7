"""
System properties, administrator check, initial setup and web-app URL.

Core properties (ADMIN_EMAIL, DATABASE_SPREADSHEET_ID, SERVICE_ACCOUNT_CREDS)
and WEB_APP_URL resolve from the durable property store first, then from the
environment (config). The system counts as set up only when all three core
properties resolve and the credentials JSON carries a client_email.
"""
import json
import logging
import re

from cache import CacheManager
from config import (
    ADMIN_EMAIL,
    CACHE_TTL_WEB_APP_URL,
    DATABASE_SPREADSHEET_ID,
    SERVICE_ACCOUNT_CREDS,
    WEB_APP_URL,
)
from errors import ValidationError, mask_email

logger = logging.getLogger(__name__)

PROP_ADMIN_EMAIL = "ADMIN_EMAIL"
PROP_DATABASE_ID = "DATABASE_SPREADSHEET_ID"
PROP_SERVICE_ACCOUNT = "SERVICE_ACCOUNT_CREDS"
PROP_WEB_APP_URL = "WEB_APP_URL"
# Last URL known to be good; survives invalidation of the cached one
PROP_DEPLOYED_WEB_APP_URL = "DEPLOYED_WEB_APP_URL"

_ENV_DEFAULTS = {
    PROP_ADMIN_EMAIL: ADMIN_EMAIL,
    PROP_DATABASE_ID: DATABASE_SPREADSHEET_ID,
    PROP_SERVICE_ACCOUNT: SERVICE_ACCOUNT_CREDS,
    PROP_WEB_APP_URL: WEB_APP_URL,
}

WEB_APP_URL_CACHE_KEY = "WEB_APP_URL"
_INVALID_URL_MARKERS = ("userCodeAppPanel", "createOAuthDialog")

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
SPREADSHEET_ID_RE = re.compile(r"^[A-Za-z0-9_-]{20,}$")
_SPREADSHEET_URL_RE = re.compile(r"/spreadsheets/d/([A-Za-z0-9_-]+)")


def is_valid_email(email: str | None) -> bool:
    return bool(email) and EMAIL_RE.match(email.strip()) is not None


def extract_spreadsheet_id(value: str | None) -> str | None:
    """Accept a bare id or a full spreadsheet URL."""
    if not value:
        return None
    value = value.strip()
    match = _SPREADSHEET_URL_RE.search(value)
    if match:
        return match.group(1)
    return value if SPREADSHEET_ID_RE.match(value) else None


def spreadsheet_url(spreadsheet_id: str) -> str:
    return f"https://docs.google.com/spreadsheets/d/{spreadsheet_id}/edit"


def get_property(cache: CacheManager, name: str) -> str:
    stored = cache.durable.get(name) if cache.durable is not None else None
    if stored:
        return stored
    return _ENV_DEFAULTS.get(name, "")


def set_property(cache: CacheManager, name: str, value: str) -> None:
    if cache.durable is None:
        raise RuntimeError("No durable property store configured")
    cache.durable.set(name, value)


def is_administrator(cache: CacheManager, email: str | None) -> bool:
    admin = get_property(cache, PROP_ADMIN_EMAIL)
    return bool(email and admin) and email.strip().lower() == admin.strip().lower()


def _parse_credentials(raw: str) -> dict | None:
    try:
        data = json.loads(raw)
    except (TypeError, ValueError):
        return None
    return data if isinstance(data, dict) else None


def has_core_system_props(cache: CacheManager) -> bool:
    admin = get_property(cache, PROP_ADMIN_EMAIL)
    db_id = get_property(cache, PROP_DATABASE_ID)
    creds_raw = get_property(cache, PROP_SERVICE_ACCOUNT)
    if not admin or not db_id or not creds_raw:
        logger.warning(
            "Core system properties incomplete: admin=%s db=%s creds=%s",
            bool(admin), bool(db_id), bool(creds_raw),
        )
        return False
    if creds_raw.lstrip().startswith("{"):
        creds = _parse_credentials(creds_raw)
        if not creds or not creds.get("client_email"):
            logger.warning("SERVICE_ACCOUNT_CREDS is not valid service account JSON")
            return False
    return True


def setup_app(cache: CacheManager, admin_email: str, database_id: str, service_account_json: str) -> dict:
    """
    Store the core system properties. Raises ValidationError on bad input.
    Returns the stored (non-secret) values.
    """
    admin_email = (admin_email or "").strip().lower()
    if not is_valid_email(admin_email):
        raise ValidationError("Invalid administrator email")
    sid = extract_spreadsheet_id(database_id)
    if not sid:
        raise ValidationError("Invalid database spreadsheet id")
    creds = _parse_credentials(service_account_json)
    if not creds or not creds.get("client_email") or not creds.get("private_key"):
        raise ValidationError("Service account JSON must include client_email and private_key")

    set_property(cache, PROP_ADMIN_EMAIL, admin_email)
    set_property(cache, PROP_DATABASE_ID, sid)
    set_property(cache, PROP_SERVICE_ACCOUNT, json.dumps(creds))
    # Stale token or identity must not outlive a credential change
    cache.remove("service_account_token")
    cache.remove("all_users")
    logger.info("System setup stored (admin=%s, db=%s***)", mask_email(admin_email), sid[:8])
    return {
        "adminEmail": admin_email,
        "databaseSpreadsheetId": sid,
        "serviceAccountEmail": creds["client_email"],
    }


def is_valid_web_app_url(url: str | None) -> bool:
    if not url or not url.startswith("https://"):
        return False
    return not any(marker in url for marker in _INVALID_URL_MARKERS)


def get_web_app_url_cached(cache: CacheManager) -> str:
    """
    Web-app base URL. Once cached it is returned as-is, even if the configured
    URL changes, until invalidate_web_app_url(). Falls back to the last good
    deployed URL when the configured one is invalid.
    """
    def compute():
        url = get_property(cache, PROP_WEB_APP_URL)
        if is_valid_web_app_url(url):
            if cache.durable is not None:
                cache.durable.set(PROP_DEPLOYED_WEB_APP_URL, url)
            return url
        if url:
            logger.warning("Ignoring invalid web app URL")
        deployed = cache.durable.get(PROP_DEPLOYED_WEB_APP_URL) if cache.durable is not None else None
        return deployed if is_valid_web_app_url(deployed) else None

    return cache.get(WEB_APP_URL_CACHE_KEY, compute, ttl=CACHE_TTL_WEB_APP_URL) or ""


def invalidate_web_app_url(cache: CacheManager) -> None:
    cache.memory.delete(WEB_APP_URL_CACHE_KEY)
    cache.shared.delete(WEB_APP_URL_CACHE_KEY)
