import json

import pytest
import requests
from sqlalchemy.exc import OperationalError

from database import SessionLocal
from errors import ServiceAccountError, SheetsApiError, ValidationError
from models import ScriptProperty
from services import service_account, system
from services.service_account import (
    SERVICE_TOKEN_KEY,
    generate_service_account_token,
    get_service_account_token_cached,
    load_service_account_credentials,
    validate_spreadsheet_access,
)
from services.system import (
    PROP_WEB_APP_URL,
    extract_spreadsheet_id,
    get_web_app_url_cached,
    has_core_system_props,
    invalidate_web_app_url,
    is_administrator,
    set_property,
    setup_app,
)

from conftest import ADMIN, BOARD_SHEET_ID


class FakeResponse:
    def __init__(self, status_code, payload):
        self.status_code = status_code
        self._payload = payload

    def json(self):
        return self._payload


@pytest.fixture
def token_calls(monkeypatch):
    calls = []

    def fake_generate(creds):
        calls.append(creds["client_email"])
        return f"token-{len(calls)}"

    monkeypatch.setattr(service_account, "generate_service_account_token", fake_generate)
    return calls


def test_token_is_cached(cache, token_calls):
    assert get_service_account_token_cached(cache) == "token-1"
    assert get_service_account_token_cached(cache) == "token-1"
    assert token_calls == ["board@project.iam.gserviceaccount.com"]


def test_force_refresh_generates_a_new_token(cache, token_calls):
    get_service_account_token_cached(cache)
    assert get_service_account_token_cached(cache, force_refresh=True) == "token-2"
    assert get_service_account_token_cached(cache) == "token-2"


def test_durable_token_copy_is_encrypted(cache, token_calls):
    get_service_account_token_cached(cache)
    with SessionLocal() as db:
        row = db.get(ScriptProperty, SERVICE_TOKEN_KEY)
        assert row.is_encrypted
        assert "token-1" not in row.value


def test_generation_failure_returns_none(cache, monkeypatch):
    def fail(creds):
        raise ServiceAccountError("exchange failed")

    monkeypatch.setattr(service_account, "generate_service_account_token", fail)
    assert get_service_account_token_cached(cache) is None
    assert cache.get(SERVICE_TOKEN_KEY) is None


def test_cache_write_failure_still_returns_token(cache, token_calls, monkeypatch):
    def broken_put(*args, **kwargs):
        raise OperationalError("INSERT", {}, Exception("disk I/O error"))

    monkeypatch.setattr(cache, "put", broken_put)
    assert get_service_account_token_cached(cache) == "token-1"


def test_credentials_must_name_client_email(cache):
    set_property(cache, "SERVICE_ACCOUNT_CREDS", json.dumps({"private_key": "k"}))
    with pytest.raises(ServiceAccountError):
        load_service_account_credentials(cache)


def test_credentials_from_key_file(cache, tmp_path):
    key_file = tmp_path / "sa.json"
    key_file.write_text(json.dumps({"client_email": "file@project.iam.gserviceaccount.com", "private_key": "k"}))
    set_property(cache, "SERVICE_ACCOUNT_CREDS", str(key_file))
    assert load_service_account_credentials(cache)["client_email"] == "file@project.iam.gserviceaccount.com"


def test_token_exchange(monkeypatch):
    posted = {}

    def fake_post(url, data=None, headers=None, timeout=None):
        posted.update(url=url, data=data)
        return FakeResponse(200, {"access_token": "ya29.fresh", "expires_in": 3599})

    monkeypatch.setattr(service_account, "sign_service_account_assertion", lambda *a, **kw: "signed")
    monkeypatch.setattr(requests, "post", fake_post)
    creds = {"client_email": "sa@project.iam.gserviceaccount.com", "private_key": "k"}
    assert generate_service_account_token(creds) == "ya29.fresh"
    assert posted["url"] == "https://oauth2.googleapis.com/token"
    assert posted["data"] == {"grant_type": "urn:ietf:params:oauth:grant-type:jwt-bearer", "assertion": "signed"}


def test_token_exchange_error(monkeypatch):
    monkeypatch.setattr(service_account, "sign_service_account_assertion", lambda *a, **kw: "signed")
    monkeypatch.setattr(
        requests, "post",
        lambda *a, **kw: FakeResponse(400, {"error": "invalid_grant", "error_description": "Invalid JWT"}),
    )
    with pytest.raises(ServiceAccountError, match="Invalid JWT"):
        generate_service_account_token({"client_email": "sa@x", "private_key": "k"})


def test_unusable_private_key_is_a_service_account_error():
    with pytest.raises(ServiceAccountError):
        generate_service_account_token({"client_email": "sa@x", "private_key": "not-a-key"})


def test_validate_spreadsheet_access(cache, fake_sheets, board_rows):
    fake_sheets.add_sheet(BOARD_SHEET_ID, "Sheet1", board_rows)
    assert validate_spreadsheet_access(fake_sheets, cache, BOARD_SHEET_ID)["ok"]
    assert validate_spreadsheet_access(fake_sheets, cache, BOARD_SHEET_ID)["ok"]
    assert [c[0] for c in fake_sheets.calls].count("get_spreadsheet") == 1

    denied = validate_spreadsheet_access(fake_sheets, cache, "1UnsharedSpreadsheet00000000")
    assert denied["ok"] is False
    assert "service account" in denied["message"]


def test_failed_validation_is_not_cached(cache, fake_sheets):
    fake_sheets.fail["get_spreadsheet"] = SheetsApiError(403, "denied")
    validate_spreadsheet_access(fake_sheets, cache, BOARD_SHEET_ID)
    validate_spreadsheet_access(fake_sheets, cache, BOARD_SHEET_ID)
    assert [c[0] for c in fake_sheets.calls].count("get_spreadsheet") == 2


# --- System properties ---


def test_is_administrator_ignores_case(cache):
    assert is_administrator(cache, ADMIN.upper())
    assert not is_administrator(cache, "someone@school.jp")
    assert not is_administrator(cache, None)


def test_core_props_from_environment(cache):
    assert has_core_system_props(cache)


def test_core_props_incomplete(cache, monkeypatch):
    monkeypatch.setitem(system._ENV_DEFAULTS, "ADMIN_EMAIL", "")
    assert not has_core_system_props(cache)


def test_core_props_reject_json_without_client_email(cache):
    set_property(cache, "SERVICE_ACCOUNT_CREDS", '{"private_key": "k"}')
    assert not has_core_system_props(cache)


def test_setup_app_stores_properties(cache):
    cache.put(SERVICE_TOKEN_KEY, "stale", durable=True)
    stored = setup_app(
        cache,
        " New.Admin@School.jp ",
        f"https://docs.google.com/spreadsheets/d/{BOARD_SHEET_ID}/edit#gid=0",
        json.dumps({"client_email": "new@project.iam.gserviceaccount.com", "private_key": "k"}),
    )
    assert stored == {
        "adminEmail": "new.admin@school.jp",
        "databaseSpreadsheetId": BOARD_SHEET_ID,
        "serviceAccountEmail": "new@project.iam.gserviceaccount.com",
    }
    assert is_administrator(cache, "new.admin@school.jp")
    assert cache.get(SERVICE_TOKEN_KEY, durable=True) is None


@pytest.mark.parametrize("email,db_id,creds", [
    ("not-an-email", BOARD_SHEET_ID, '{"client_email": "a@b.c", "private_key": "k"}'),
    ("a@school.jp", "short", '{"client_email": "a@b.c", "private_key": "k"}'),
    ("a@school.jp", BOARD_SHEET_ID, "{not json"),
    ("a@school.jp", BOARD_SHEET_ID, '{"client_email": "a@b.c"}'),
])
def test_setup_app_validation(cache, email, db_id, creds):
    with pytest.raises(ValidationError):
        setup_app(cache, email, db_id, creds)


def test_extract_spreadsheet_id():
    assert extract_spreadsheet_id(f"https://docs.google.com/spreadsheets/d/{BOARD_SHEET_ID}/edit") == BOARD_SHEET_ID
    assert extract_spreadsheet_id(f"  {BOARD_SHEET_ID} ") == BOARD_SHEET_ID
    assert extract_spreadsheet_id("too-short") is None
    assert extract_spreadsheet_id(None) is None


def test_web_app_url_is_cached_until_invalidated(cache):
    assert get_web_app_url_cached(cache) == "https://boards.example.com/app"
    set_property(cache, PROP_WEB_APP_URL, "https://boards.example.com/v2")
    assert get_web_app_url_cached(cache) == "https://boards.example.com/app"
    invalidate_web_app_url(cache)
    assert get_web_app_url_cached(cache) == "https://boards.example.com/v2"


def test_invalid_web_app_url_falls_back_to_deployed(cache):
    get_web_app_url_cached(cache)
    invalidate_web_app_url(cache)
    set_property(cache, PROP_WEB_APP_URL, "https://script.google.com/userCodeAppPanel")
    assert get_web_app_url_cached(cache) == "https://boards.example.com/app"
