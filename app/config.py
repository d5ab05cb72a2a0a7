"""
Application configuration from environment variables.

Load with python-dotenv in main so env vars are available before imports.
Validates critical secrets at module load; missing values raise RuntimeError.

System properties (admin email, database spreadsheet, service account) may
also be stored at run time through the setup endpoint; see services.system.
"""
import os

# --- Required (raise if missing) ---
GOOGLE_CLIENT_ID = os.getenv("GOOGLE_CLIENT_ID")
GOOGLE_CLIENT_SECRET = os.getenv("GOOGLE_CLIENT_SECRET")
GOOGLE_REDIRECT_URI = os.getenv("GOOGLE_REDIRECT_URI")
JWT_SECRET = os.getenv("JWT_SECRET")

for name, val in [
    ("GOOGLE_CLIENT_ID", GOOGLE_CLIENT_ID),
    ("GOOGLE_CLIENT_SECRET", GOOGLE_CLIENT_SECRET),
    ("GOOGLE_REDIRECT_URI", GOOGLE_REDIRECT_URI),
    ("JWT_SECRET", JWT_SECRET),
]:
    if not val or not str(val).strip():
        raise RuntimeError(f"Required env var {name} is missing or empty")

JWT_ALGORITHM = "HS256"

# --- Optional with defaults ---
# Frontend URL for post-login redirect; cookie is set by backend, no token in URL
FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:3000").rstrip("/")

# Session cookie: JWT lifetime and cookie max_age should match
JWT_COOKIE_NAME = os.getenv("JWT_COOKIE_NAME", "session")
_JWT_MAX_AGE_RAW = os.getenv("JWT_COOKIE_MAX_AGE", "3600")
try:
    JWT_COOKIE_MAX_AGE = max(60, int(_JWT_MAX_AGE_RAW))
except ValueError:
    JWT_COOKIE_MAX_AGE = 3600

# OAuth CSRF: cookie name for state parameter, short-lived
OAUTH_STATE_COOKIE_NAME = os.getenv("OAUTH_STATE_COOKIE_NAME", "oauth_state")
OAUTH_STATE_MAX_AGE = 600  # 10 minutes

# Drive scope is needed to re-share a teacher's spreadsheet with the service account
GOOGLE_OAUTH_SCOPES = "openid email profile https://www.googleapis.com/auth/drive"

# --- System properties (env fallback; setup endpoint may override) ---
ADMIN_EMAIL = os.getenv("ADMIN_EMAIL", "").strip()
DATABASE_SPREADSHEET_ID = os.getenv("DATABASE_SPREADSHEET_ID", "").strip()
# Inline JSON or a path to the JSON key file
SERVICE_ACCOUNT_CREDS = os.getenv("SERVICE_ACCOUNT_CREDS", "").strip()
WEB_APP_URL = os.getenv("WEB_APP_URL", "").strip()
# Only this account may run first-run setup through /api/admin/setup
SETUP_BOOTSTRAP_EMAIL = os.getenv("SETUP_BOOTSTRAP_EMAIL", "").strip().lower()

USERS_SHEET_NAME = os.getenv("USERS_SHEET_NAME", "Users")


def _int_env(key: str, default: int) -> int:
    try:
        return max(1, int(os.getenv(key, str(default))))
    except ValueError:
        return default


# Cache TTLs in seconds
CACHE_TTL_USER = _int_env("CACHE_TTL_USER", 900)
CACHE_TTL_ALL_USERS = _int_env("CACHE_TTL_ALL_USERS", 1200)
CACHE_TTL_HEADERS = _int_env("CACHE_TTL_HEADERS", 1200)
# Stays under the 3600s lifetime of a Google access token
CACHE_TTL_SERVICE_TOKEN = _int_env("CACHE_TTL_SERVICE_TOKEN", 3300)
CACHE_TTL_WEB_APP_URL = _int_env("CACHE_TTL_WEB_APP_URL", 21600)
CACHE_TTL_SA_VALIDATION = _int_env("CACHE_TTL_SA_VALIDATION", 300)
# Raw rows of a published sheet; reaction and highlight toggles drop it
CACHE_TTL_BOARD_DATA = _int_env("CACHE_TTL_BOARD_DATA", 60)
CACHE_CLEAR_MAX_KEYS = _int_env("CACHE_CLEAR_MAX_KEYS", 100)

# Script lock waits (seconds); a timeout is a hard failure, never retried
LOCK_TIMEOUT_USER_WRITE = _int_env("LOCK_TIMEOUT_USER_WRITE", 10)
LOCK_TIMEOUT_REACTION = _int_env("LOCK_TIMEOUT_REACTION", 3)

# Sheets API request timeouts (connect, read) in seconds
SHEETS_REQUEST_TIMEOUT = (5, 30)
# Delays between attempts on 5xx/429: 1s then 2s, three attempts in total
SHEETS_RETRY_DELAYS = (1, 2)

MAX_PAGE_SIZE = 100
DEFAULT_PAGE_SIZE = 20

# Secure cookie flag (set True in production over HTTPS)
SECURE_COOKIES = os.getenv("SECURE_COOKIES", "false").lower() in ("1", "true", "yes")

# Durable property store (SQLite default; use Postgres URL in production)
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./app.db")

# Skip create_all at startup (set in production when using Alembic migrations)
SKIP_DB_INIT = os.getenv("SKIP_DB_INIT", "false").lower() in ("1", "true", "yes")

# Environment: development | production (affects .env loading, error details)
ENV = os.getenv("ENV", "development").lower()

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_DIR = os.getenv("LOG_DIR", "logs")
