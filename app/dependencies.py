"""
Request-scoped wiring: Sheets client, user database and the per-request context.

FastAPI resolves each dependency once per request, so the CacheManager (and
its per-request memory tier) is shared by everything a request touches.
"""
from dataclasses import dataclass

from fastapi import Depends
from sqlalchemy.orm import Session

from auth import get_current_email
from cache import CacheManager, get_cache
from database import get_db
from errors import DatabaseUnavailable, SheetsApiError
from locks import ScriptLock, get_script_lock
from services.service_account import get_service_account_token_cached, repair_spreadsheet_access
from services.sheets_client import SheetsClient
from services.system import PROP_ADMIN_EMAIL, PROP_DATABASE_ID, get_property, is_administrator
from services.user_db import UserDatabase


def resolve_spreadsheet_owner(spreadsheet_id: str, client: SheetsClient, cache: CacheManager) -> str | None:
    """Owner email of a spreadsheet: the administrator for the database, else its registered teacher."""
    database_id = get_property(cache, PROP_DATABASE_ID)
    if spreadsheet_id == database_id:
        return get_property(cache, PROP_ADMIN_EMAIL) or None
    try:
        user = UserDatabase(client, cache, database_id).find_user_by_spreadsheet_id(spreadsheet_id)
    except (DatabaseUnavailable, SheetsApiError):
        return None
    return user["adminEmail"] if user else None


def build_sheets_client(cache: CacheManager, db: Session) -> SheetsClient:
    def token_provider(force_refresh: bool = False):
        return get_service_account_token_cached(cache, force_refresh=force_refresh)

    # Owner lookup must not itself trigger a repair
    plain = SheetsClient(token_provider)

    def repair(spreadsheet_id: str) -> bool:
        owner = resolve_spreadsheet_owner(spreadsheet_id, plain, cache)
        return bool(owner) and repair_spreadsheet_access(spreadsheet_id, owner, db, cache)

    return SheetsClient(token_provider, repair_access=repair)


def get_sheets_client(
    cache: CacheManager = Depends(get_cache),
    db: Session = Depends(get_db),
) -> SheetsClient:
    return build_sheets_client(cache, db)


def get_user_db(
    client: SheetsClient = Depends(get_sheets_client),
    cache: CacheManager = Depends(get_cache),
    lock: ScriptLock = Depends(get_script_lock),
) -> UserDatabase:
    return UserDatabase(client, cache, get_property(cache, PROP_DATABASE_ID), lock=lock)


@dataclass
class AppContext:
    """Everything a board operation needs for one request."""

    cache: CacheManager
    client: SheetsClient
    user_db: UserDatabase
    db: Session
    lock: ScriptLock
    viewer_email: str | None = None

    def is_admin(self, email: str | None = None) -> bool:
        return is_administrator(self.cache, email if email is not None else self.viewer_email)


def get_context(
    email: str | None = Depends(get_current_email),
    cache: CacheManager = Depends(get_cache),
    client: SheetsClient = Depends(get_sheets_client),
    user_db: UserDatabase = Depends(get_user_db),
    db: Session = Depends(get_db),
    lock: ScriptLock = Depends(get_script_lock),
) -> AppContext:
    return AppContext(cache=cache, client=client, user_db=user_db, db=db, lock=lock, viewer_email=email)
