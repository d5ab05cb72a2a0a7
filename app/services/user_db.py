"""
User table: the Users sheet of the database spreadsheet.

Lookups are cached per key (user_by_id_, user_by_email_, user_by_sheet_ and
the all_users list). Writes run under the script lock against a fresh read
and invalidate every derived key, including a replaced spreadsheet id.
"""
import logging
import uuid
from datetime import datetime, UTC

import requests

from cache import (
    ALL_USERS_KEY,
    CacheManager,
    user_by_email_key,
    user_by_id_key,
    user_by_sheet_key,
)
from config import CACHE_TTL_ALL_USERS, CACHE_TTL_USER, LOCK_TIMEOUT_USER_WRITE, USERS_SHEET_NAME
from errors import DatabaseUnavailable, ServiceAccountError, SheetsApiError, ValidationError, mask_email, mask_id
from locks import ScriptLock, script_lock
from services.header_resolver import find_header_indices
from services.sheets_client import SheetHandle, SheetsClient

logger = logging.getLogger(__name__)

USER_FIELDS = [
    "userId",
    "adminEmail",
    "spreadsheetId",
    "spreadsheetUrl",
    "configJson",
    "createdAt",
    "lastAccessedAt",
    "isActive",
]


def now_iso() -> str:
    return datetime.now(UTC).isoformat()


def _as_bool(value, default: bool = True) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value or "").strip().upper()
    if not text:
        return default
    return text in ("TRUE", "1", "YES")


def _cell(value) -> str:
    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    return "" if value is None else str(value)


class UserDatabase:
    def __init__(
        self,
        client: SheetsClient,
        cache: CacheManager,
        spreadsheet_id: str | None,
        lock: ScriptLock = script_lock,
        sheet_name: str = USERS_SHEET_NAME,
    ):
        self.cache = cache
        self.lock = lock
        self.spreadsheet_id = spreadsheet_id
        self.sheet = SheetHandle(client, spreadsheet_id or "", sheet_name)

    def _load(self) -> list[dict]:
        """All user records with their sheet row numbers; writes the header into an empty sheet."""
        if not self.spreadsheet_id:
            raise DatabaseUnavailable("Database spreadsheet is not configured")
        try:
            values = self.sheet.all_values()
            if not values:
                self.sheet.write_row_span(1, 0, list(USER_FIELDS))
                return []
            cols = find_header_indices(values[0], USER_FIELDS)
        except (SheetsApiError, ServiceAccountError, requests.RequestException) as e:
            logger.error("Users sheet unreachable (%s): %s", mask_id(self.spreadsheet_id), e)
            raise DatabaseUnavailable("User database is unreachable") from e
        except ValidationError as e:
            raise DatabaseUnavailable(f"Users sheet has an invalid header: {e}") from e

        users = []
        for offset, row in enumerate(values[1:]):
            def get(name):
                i = cols[name]
                return row[i] if i < len(row) else ""
            if not str(get("userId")).strip():
                continue
            record = {name: _cell(get(name)) for name in USER_FIELDS}
            record["adminEmail"] = record["adminEmail"].strip().lower()
            record["isActive"] = _as_bool(get("isActive"))
            record["rowIndex"] = offset + 2
            users.append(record)
        return users

    def get_all_users(self, skip_cache: bool = False) -> list[dict]:
        return self.cache.get(ALL_USERS_KEY, self._load, ttl=CACHE_TTL_ALL_USERS, skip_cache=skip_cache) or []

    def _find(self, key: str, predicate) -> dict | None:
        def compute():
            return next((u for u in self.get_all_users() if predicate(u)), None)
        return self.cache.get(key, compute, ttl=CACHE_TTL_USER)

    def find_user_by_id(self, user_id: str | None) -> dict | None:
        if not user_id:
            return None
        return self._find(user_by_id_key(user_id), lambda u: u["userId"] == user_id)

    def find_user_by_email(self, email: str | None) -> dict | None:
        if not email:
            return None
        email = email.strip().lower()
        return self._find(user_by_email_key(email), lambda u: u["adminEmail"] == email)

    def find_user_by_spreadsheet_id(self, spreadsheet_id: str | None) -> dict | None:
        if not spreadsheet_id:
            return None
        return self._find(user_by_sheet_key(spreadsheet_id), lambda u: u["spreadsheetId"] == spreadsheet_id)

    def _write_row(self, record: dict) -> None:
        self.sheet.write_row_span(record["rowIndex"], 0, [_cell(record[f]) for f in USER_FIELDS])

    def create_user(
        self,
        email: str,
        spreadsheet_id: str = "",
        spreadsheet_url: str = "",
        config_json: str = "{}",
    ) -> dict:
        """Create the user for this email, or return the existing one."""
        email = (email or "").strip().lower()
        if not email or "@" not in email:
            raise ValidationError("Invalid email")
        with self.lock.hold(LOCK_TIMEOUT_USER_WRITE, "create_user"):
            users = self.get_all_users(skip_cache=True)
            existing = next((u for u in users if u["adminEmail"] == email), None)
            if existing:
                return existing
            now = now_iso()
            record = {
                "userId": str(uuid.uuid4()),
                "adminEmail": email,
                "spreadsheetId": spreadsheet_id,
                "spreadsheetUrl": spreadsheet_url,
                "configJson": config_json,
                "createdAt": now,
                "lastAccessedAt": now,
                "isActive": True,
            }
            try:
                row = self.sheet.append_rows([[_cell(record[f]) for f in USER_FIELDS]])
            except (SheetsApiError, ServiceAccountError) as e:
                raise DatabaseUnavailable("Could not write to the user database") from e
            if row is None:
                # Row number not reported; locate the new row
                row = next((u["rowIndex"] for u in self._load() if u["userId"] == record["userId"]), None)
            record["rowIndex"] = row
        self.cache.invalidate_related(record["userId"], email, spreadsheet_id)
        logger.info("Created user %s for %s", mask_id(record["userId"]), mask_email(email))
        return record

    def update_user(self, user_id: str, updates: dict) -> dict | None:
        """Apply field updates to one user; returns the new record or None if absent."""
        return self.update_user_with(user_id, lambda current: updates)

    def update_user_with(self, user_id: str, build_updates) -> dict | None:
        """
        Read-modify-write of one user under the script lock.

        build_updates(current) gets the freshly read record and returns the
        field updates to write. An exception it raises aborts the write and
        propagates. Returns the new record, or None if the user is absent.
        """
        with self.lock.hold(LOCK_TIMEOUT_USER_WRITE, "update_user"):
            users = self.get_all_users(skip_cache=True)
            current = next((u for u in users if u["userId"] == user_id), None)
            if current is None:
                return None
            updates = build_updates(dict(current))
            if "userId" in updates or not set(updates) <= set(USER_FIELDS):
                raise ValidationError("Unknown or read-only user fields")
            record = {**current, **updates}
            if "adminEmail" in updates:
                record["adminEmail"] = str(updates["adminEmail"]).strip().lower()
            try:
                self._write_row(record)
            except (SheetsApiError, ServiceAccountError) as e:
                raise DatabaseUnavailable("Could not write to the user database") from e
        old_sheet = current["spreadsheetId"] if current["spreadsheetId"] != record["spreadsheetId"] else None
        self.cache.invalidate_related(user_id, record["adminEmail"], record["spreadsheetId"], *filter(None, [old_sheet]))
        if current["adminEmail"] != record["adminEmail"]:
            self.cache.remove(user_by_email_key(current["adminEmail"]))
        return record

    def touch(self, user_id: str) -> dict | None:
        return self.update_user(user_id, {"lastAccessedAt": now_iso()})

    def set_active(self, user_id: str, active: bool) -> dict | None:
        return self.update_user(user_id, {"isActive": bool(active)})

    def delete_user(self, user_id: str) -> bool:
        """Hard-delete the user's row. Returns False when no such user exists."""
        with self.lock.hold(LOCK_TIMEOUT_USER_WRITE, "delete_user"):
            users = self.get_all_users(skip_cache=True)
            current = next((u for u in users if u["userId"] == user_id), None)
            if current is None:
                return False
            try:
                self.sheet.delete_row(current["rowIndex"])
            except (SheetsApiError, ServiceAccountError) as e:
                raise DatabaseUnavailable("Could not delete from the user database") from e
        self.cache.invalidate_related(user_id, current["adminEmail"], current["spreadsheetId"])
        # Row numbers of the remaining users shifted
        self.cache.clear_by_pattern("user_by_")
        logger.info("Deleted user %s", mask_id(user_id))
        return True
