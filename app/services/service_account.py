"""
Service-account credentials, bearer token cache and spreadsheet access repair.

The token is exchanged at Google's token endpoint with a signed RS256
assertion and cached for CACHE_TTL_SERVICE_TOKEN seconds across all tiers
(the durable copy encrypted). Access repair re-shares a spreadsheet with the
service account through the Drive permissions API, acting as the
spreadsheet owner with their stored OAuth token.
"""
import json
import logging
import os

import requests
from fastapi import HTTPException
from jose import JOSEError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from auth import get_valid_access_token
from cache import CacheManager, sa_validation_key
from config import CACHE_TTL_SA_VALIDATION, CACHE_TTL_SERVICE_TOKEN, SHEETS_REQUEST_TIMEOUT
from errors import ServiceAccountError, SheetsApiError, log_error, mask_email, mask_id
from models import OAuthAccount
from security import GOOGLE_TOKEN_URI, sign_service_account_assertion
from services.system import PROP_SERVICE_ACCOUNT, get_property

logger = logging.getLogger(__name__)

SERVICE_TOKEN_KEY = "service_account_token"
JWT_BEARER_GRANT = "urn:ietf:params:oauth:grant-type:jwt-bearer"
DRIVE_PERMISSIONS_URL = "https://www.googleapis.com/drive/v3/files/{file_id}/permissions"


def load_service_account_credentials(cache: CacheManager) -> dict:
    """Parse SERVICE_ACCOUNT_CREDS (inline JSON or a key-file path)."""
    raw = get_property(cache, PROP_SERVICE_ACCOUNT).strip()
    if not raw:
        raise ServiceAccountError("SERVICE_ACCOUNT_CREDS is not configured")
    if not raw.startswith("{"):
        if not os.path.isfile(raw):
            raise ServiceAccountError("SERVICE_ACCOUNT_CREDS path does not exist")
        with open(raw, encoding="utf-8") as f:
            raw = f.read()
    try:
        creds = json.loads(raw)
    except ValueError as e:
        raise ServiceAccountError("SERVICE_ACCOUNT_CREDS is not valid JSON") from e
    if not isinstance(creds, dict) or not creds.get("client_email") or not creds.get("private_key"):
        raise ServiceAccountError("Service account JSON must include client_email and private_key")
    return creds


def generate_service_account_token(creds: dict) -> str:
    token_uri = creds.get("token_uri") or GOOGLE_TOKEN_URI
    try:
        assertion = sign_service_account_assertion(
            creds["client_email"], creds["private_key"], token_uri=token_uri
        )
    except JOSEError as e:
        raise ServiceAccountError(f"Could not sign service account assertion: {e}") from e
    resp = requests.post(
        token_uri,
        data={"grant_type": JWT_BEARER_GRANT, "assertion": assertion},
        headers={"Content-Type": "application/x-www-form-urlencoded"},
        timeout=SHEETS_REQUEST_TIMEOUT,
    )
    try:
        data = resp.json()
    except ValueError:
        data = {}
    if resp.status_code >= 400 or "error" in data or not data.get("access_token"):
        detail = data.get("error_description") or data.get("error") or resp.status_code
        raise ServiceAccountError(f"Service account token exchange failed: {detail}")
    return data["access_token"]


def get_service_account_token_cached(cache: CacheManager, force_refresh: bool = False) -> str | None:
    """
    Bearer token for the Sheets API. None when no token can be generated.
    A failed cache write does not stop the fresh token from being returned.
    """
    if force_refresh:
        cache.remove(SERVICE_TOKEN_KEY)
    else:
        token = cache.get(SERVICE_TOKEN_KEY, ttl=CACHE_TTL_SERVICE_TOKEN, durable=True)
        if token:
            return token

    try:
        token = generate_service_account_token(load_service_account_credentials(cache))
    except (ServiceAccountError, requests.RequestException) as e:
        log_error(e, "get_service_account_token", severity="high", category="authentication")
        return None

    try:
        cache.put(SERVICE_TOKEN_KEY, token, ttl=CACHE_TTL_SERVICE_TOKEN, durable=True)
    except SQLAlchemyError as e:
        log_error(e, "cache_service_account_token", severity="low", category="database")
    return token


def service_account_email(cache: CacheManager) -> str | None:
    try:
        return load_service_account_credentials(cache)["client_email"]
    except ServiceAccountError:
        return None


def repair_spreadsheet_access(
    spreadsheet_id: str,
    owner_email: str,
    db: Session,
    cache: CacheManager,
) -> bool:
    """
    Share the spreadsheet with the service account as a writer, acting as its
    owner. Returns True when the permission was granted.
    """
    sa_email = service_account_email(cache)
    if not sa_email:
        logger.warning("Access repair skipped: no service account configured")
        return False
    account = db.get(OAuthAccount, owner_email.strip().lower())
    if account is None:
        logger.warning("Access repair skipped: %s has no stored OAuth grant", mask_email(owner_email))
        return False
    try:
        access_token = get_valid_access_token(account, db)
        resp = requests.post(
            DRIVE_PERMISSIONS_URL.format(file_id=spreadsheet_id),
            headers={"Authorization": f"Bearer {access_token}"},
            params={"sendNotificationEmail": "false"},
            json={"role": "writer", "type": "user", "emailAddress": sa_email},
            timeout=SHEETS_REQUEST_TIMEOUT,
        )
        resp.raise_for_status()
    except (HTTPException, requests.RequestException) as e:
        log_error(e, "repair_spreadsheet_access", severity="medium", category="permission",
                  spreadsheet=mask_id(spreadsheet_id))
        return False
    cache.remove(sa_validation_key(spreadsheet_id))
    logger.info("Shared %s with service account", mask_id(spreadsheet_id))
    return True


def validate_spreadsheet_access(client, cache: CacheManager, spreadsheet_id: str) -> dict:
    """
    Check the service account can open the spreadsheet. Returns
    {"ok": True, "title": ...} or {"ok": False, "message": ...}; only
    successes are cached.
    """
    def compute():
        try:
            data = client.get_spreadsheet(spreadsheet_id, fields="spreadsheetId,properties.title")
        except (SheetsApiError, ServiceAccountError) as e:
            log_error(e, "validate_spreadsheet_access", spreadsheet=mask_id(spreadsheet_id))
            return None
        return {"ok": True, "title": data.get("properties", {}).get("title", "")}

    result = cache.get(sa_validation_key(spreadsheet_id), compute, ttl=CACHE_TTL_SA_VALIDATION)
    if result is None:
        return {"ok": False, "message": "The service account cannot open this spreadsheet"}
    return result
