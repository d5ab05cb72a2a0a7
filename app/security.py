"""
JWT creation and verification.

Sessions are identified by a short-lived JWT stored in an HttpOnly cookie
(set in auth router). Algorithm: HS256; secret must be set in config.
Expiration matches JWT_COOKIE_MAX_AGE for coherence. The subject is the
signed-in Google email, which is how boards identify their owner.

The service-account assertion for Google's token endpoint is an RS256 JWT
signed with the service account's private key.
"""
from datetime import datetime, timedelta, UTC

from jose import jwt

from config import JWT_SECRET, JWT_ALGORITHM, JWT_COOKIE_MAX_AGE

GOOGLE_TOKEN_URI = "https://oauth2.googleapis.com/token"
SHEETS_SCOPE = "https://www.googleapis.com/auth/spreadsheets"


def create_jwt(email: str) -> str:
    """Build a session JWT for the given email; exp = now + JWT_COOKIE_MAX_AGE."""
    payload = {
        "sub": email,
        "exp": datetime.now(UTC) + timedelta(seconds=JWT_COOKIE_MAX_AGE),
    }
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALGORITHM)


def decode_jwt(token: str) -> dict:
    """Decode and verify JWT; raises JWTError if invalid or expired."""
    return jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])


def sign_service_account_assertion(
    client_email: str,
    private_key: str,
    scope: str = SHEETS_SCOPE,
    token_uri: str = GOOGLE_TOKEN_URI,
    lifetime: int = 3600,
) -> str:
    """RS256 assertion for the jwt-bearer grant; raises a JOSEError on a bad key."""
    now = datetime.now(UTC)
    claims = {
        "iss": client_email,
        "scope": scope,
        "aud": token_uri,
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(seconds=lifetime)).timestamp()),
    }
    return jwt.encode(claims, private_key, algorithm="RS256")
