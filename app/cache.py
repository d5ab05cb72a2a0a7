"""
Multi-tier read-through cache with explicit invalidation.

Tiers, cheapest first:
1. MemoryStore: per request, dropped at the request boundary.
2. TTLStore: process-wide key/value cache with per-entry expiry.
3. PropertyStore: durable SQL-backed properties, for values that must survive
   cache eviction and restarts (opt-in per call).

Every store implements the KeyValueStore interface (get/set/delete/keys), so
components receive a CacheManager instead of touching module globals.
Writes that change user identity, spreadsheet binding or published config
must call invalidate_related() with every id involved, including a previous
spreadsheet id after a reconnection.
"""
import copy
import json
import logging
import threading
import time
from datetime import datetime, timedelta, UTC
from typing import Any, Callable, Iterable

from sqlalchemy.exc import SQLAlchemyError

from config import CACHE_CLEAR_MAX_KEYS
from crypto import decrypt, encrypt
from database import SessionLocal
from models import ScriptProperty

logger = logging.getLogger(__name__)

ALL_USERS_KEY = "all_users"

# Keys whose durable copies are encrypted at rest
SECRET_KEYS = frozenset({"service_account_token", "SERVICE_ACCOUNT_CREDS"})


def user_by_id_key(user_id: str) -> str:
    return f"user_by_id_{user_id}"


def user_by_email_key(email: str) -> str:
    return f"user_by_email_{email.strip().lower()}"


def user_by_sheet_key(spreadsheet_id: str) -> str:
    return f"user_by_sheet_{spreadsheet_id}"


def board_data_key(user_id: str) -> str:
    return f"board_data_{user_id}"


def sa_validation_key(spreadsheet_id: str) -> str:
    return f"sa_validation_{spreadsheet_id}"


def headers_key(spreadsheet_id: str, sheet_name: str) -> str:
    return f"headers_{spreadsheet_id}_{sheet_name}"


class KeyValueStore:
    """Interface shared by every cache tier."""

    def get(self, key: str) -> Any:
        raise NotImplementedError

    def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        raise NotImplementedError

    def delete(self, key: str) -> None:
        raise NotImplementedError

    def keys(self) -> list[str]:
        raise NotImplementedError


class MemoryStore(KeyValueStore):
    """Plain dict for one request; ttl is ignored since the store dies with the request."""

    def __init__(self):
        self._data: dict[str, Any] = {}

    def get(self, key):
        if key not in self._data:
            return None
        return copy.deepcopy(self._data[key])

    def set(self, key, value, ttl=None):
        self._data[key] = copy.deepcopy(value)

    def delete(self, key):
        self._data.pop(key, None)

    def keys(self):
        return list(self._data)

    def clear(self) -> None:
        self._data.clear()


class TTLStore(KeyValueStore):
    """Thread-safe process-wide cache; each entry expires `ttl` seconds after it was set."""

    def __init__(self, clock: Callable[[], float] = time.monotonic, default_ttl: float = 600):
        self._clock = clock
        self._default_ttl = default_ttl
        self._data: dict[str, tuple[Any, float]] = {}
        self._lock = threading.Lock()

    def get(self, key):
        with self._lock:
            entry = self._data.get(key)
            if entry is None:
                return None
            value, expires = entry
            if self._clock() >= expires:
                del self._data[key]
                return None
            return copy.deepcopy(value)

    def set(self, key, value, ttl=None):
        ttl = self._default_ttl if ttl is None else ttl
        with self._lock:
            self._data[key] = (copy.deepcopy(value), self._clock() + ttl)

    def delete(self, key):
        with self._lock:
            self._data.pop(key, None)

    def keys(self):
        now = self._clock()
        with self._lock:
            return [k for k, (_, expires) in self._data.items() if expires > now]

    def clear(self) -> None:
        with self._lock:
            self._data.clear()


class PropertyStore(KeyValueStore):
    """
    Durable tier over the script_properties table. Values are JSON-encoded;
    keys in `secret_keys` are Fernet-encrypted. ttl=None means no expiry.
    """

    def __init__(self, session_factory=SessionLocal, secret_keys: Iterable[str] = SECRET_KEYS):
        self._session_factory = session_factory
        self._secret_keys = frozenset(secret_keys)

    def get(self, key):
        with self._session_factory() as db:
            row = db.get(ScriptProperty, key)
            if row is None:
                return None
            if row.expires_at is not None and _as_utc(row.expires_at) <= datetime.now(UTC):
                db.delete(row)
                db.commit()
                return None
            raw = decrypt(row.value) if row.is_encrypted else row.value
        return json.loads(raw)

    def set(self, key, value, ttl=None):
        raw = json.dumps(value)
        secret = key in self._secret_keys
        now = datetime.now(UTC)
        with self._session_factory() as db:
            row = db.get(ScriptProperty, key)
            if row is None:
                row = ScriptProperty(key=key)
                db.add(row)
            row.value = encrypt(raw) if secret else raw
            row.is_encrypted = secret
            row.expires_at = now + timedelta(seconds=ttl) if ttl else None
            row.updated_at = now
            db.commit()

    def delete(self, key):
        with self._session_factory() as db:
            row = db.get(ScriptProperty, key)
            if row is not None:
                db.delete(row)
                db.commit()

    def keys(self):
        with self._session_factory() as db:
            return [k for (k,) in db.query(ScriptProperty.key).all()]


def _as_utc(value: datetime) -> datetime:
    # SQLite drops tzinfo on read
    return value if value.tzinfo else value.replace(tzinfo=UTC)


class CacheManager:
    def __init__(
        self,
        shared: KeyValueStore,
        durable: KeyValueStore | None = None,
        memory: MemoryStore | None = None,
    ):
        self.memory = memory if memory is not None else MemoryStore()
        self.shared = shared
        self.durable = durable

    def _tiers(self) -> list[KeyValueStore]:
        tiers = [self.memory, self.shared]
        if self.durable is not None:
            tiers.append(self.durable)
        return tiers

    def get(
        self,
        key: str,
        compute_fn: Callable[[], Any] | None = None,
        ttl: float = 300,
        durable: bool = False,
        skip_cache: bool = False,
    ) -> Any:
        """
        Read through memory -> shared -> durable (when `durable`), then
        compute_fn. Hits back-fill faster tiers. None is never cached.
        """
        if not skip_cache:
            value = self.memory.get(key)
            if value is not None:
                return value
            value = self.shared.get(key)
            if value is not None:
                self.memory.set(key, value, ttl)
                return value
            if durable and self.durable is not None:
                value = self.durable.get(key)
                if value is not None:
                    self.memory.set(key, value, ttl)
                    self.shared.set(key, value, ttl)
                    return value
        if compute_fn is None:
            return None
        value = compute_fn()
        if value is not None:
            self.put(key, value, ttl=ttl, durable=durable)
        return value

    def put(self, key: str, value: Any, ttl: float = 300, durable: bool = False) -> None:
        self.memory.set(key, value, ttl)
        self.shared.set(key, value, ttl)
        if durable and self.durable is not None:
            self.durable.set(key, value, ttl)

    def remove(self, key: str) -> None:
        for tier in self._tiers():
            try:
                tier.delete(key)
            except SQLAlchemyError as e:
                logger.warning("cache remove %s failed on %s: %s", key, type(tier).__name__, e)

    def clear_by_pattern(self, prefix: str, max_keys: int = CACHE_CLEAR_MAX_KEYS) -> int:
        """Remove up to max_keys keys starting with prefix from every tier; returns how many."""
        matched: set[str] = set()
        for tier in self._tiers():
            matched.update(k for k in tier.keys() if k.startswith(prefix))
        targets = sorted(matched)[:max_keys]
        if len(matched) > max_keys:
            logger.warning(
                "clear_by_pattern(%s): %d keys matched, removing first %d",
                prefix, len(matched), max_keys,
            )
        for key in targets:
            self.remove(key)
        return len(targets)

    def invalidate_related(
        self,
        user_id: str | None = None,
        email: str | None = None,
        spreadsheet_id: str | None = None,
        *other_spreadsheet_ids: str,
    ) -> None:
        """Drop every key derived from the user id, email and each spreadsheet id given."""
        keys = [ALL_USERS_KEY]
        if user_id:
            keys += [user_by_id_key(user_id), board_data_key(user_id)]
        if email:
            keys.append(user_by_email_key(email))
        sheet_ids = [s for s in (spreadsheet_id, *other_spreadsheet_ids) if s]
        for sid in sheet_ids:
            keys += [user_by_sheet_key(sid), sa_validation_key(sid)]
        for key in keys:
            self.remove(key)
        for sid in sheet_ids:
            self.clear_by_pattern(f"headers_{sid}_")

    def end_request(self) -> None:
        self.memory.clear()


shared_store = TTLStore()
property_store = PropertyStore()


def get_cache():
    """FastAPI dependency: a CacheManager with a fresh memory tier per request."""
    cache = CacheManager(shared=shared_store, durable=property_store)
    try:
        yield cache
    finally:
        cache.end_request()
