import json

import pytest
import requests

from errors import ServiceAccountError, SheetsApiError
from services.sheets_client import SheetHandle, SheetsClient, a1_range, column_letter, quote_sheet_name

from conftest import BOARD_SHEET_ID


class FakeResponse:
    def __init__(self, status_code, payload=None):
        self.status_code = status_code
        self._payload = payload
        self.content = json.dumps(payload).encode() if payload is not None else b""
        self.reason = "reason"
        self.text = self.content.decode()

    def json(self):
        if self._payload is None:
            raise ValueError("no body")
        return self._payload


class Scripted:
    """Plays back responses (or raises exceptions) in order and records requests."""

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.requests = []

    def __call__(self, method, url, headers=None, **kwargs):
        self.requests.append({"method": method, "url": url, "headers": headers, **kwargs})
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class Tokens:
    def __init__(self):
        self.calls = []

    def __call__(self, force_refresh=False):
        self.calls.append(force_refresh)
        return f"token-{len(self.calls)}"


def error(status, message="boom"):
    return FakeResponse(status, {"error": {"code": status, "message": message}})


@pytest.fixture
def sleeps():
    return []


def make_client(monkeypatch, scripted, sleeps, repair=None, tokens=None):
    monkeypatch.setattr(requests, "request", scripted)
    return SheetsClient(tokens or Tokens(), repair_access=repair, sleep=sleeps.append)


def test_column_letters():
    assert [column_letter(i) for i in (0, 25, 26, 51, 701, 702)] == ["A", "Z", "AA", "AZ", "ZZ", "AAA"]


def test_ranges_quote_sheet_names():
    assert quote_sheet_name("It's") == "'It''s'"
    assert a1_range("Form 1", 6, 5, 8) == "'Form 1'!G5:I5"
    assert a1_range("Users", 0, 2) == "'Users'!A2:A2"


def test_success_returns_values(monkeypatch, sleeps):
    scripted = Scripted(FakeResponse(200, {"values": [["a", "b"]]}))
    client = make_client(monkeypatch, scripted, sleeps)
    assert client.get_values("sid", "'Sheet1'!1:1") == [["a", "b"]]
    assert scripted.requests[0]["headers"] == {"Authorization": "Bearer token-1"}
    assert "%27Sheet1%27%211%3A1" in scripted.requests[0]["url"]


def test_server_errors_are_retried_with_backoff(monkeypatch, sleeps):
    scripted = Scripted(error(503), error(429), FakeResponse(200, {"values": []}))
    client = make_client(monkeypatch, scripted, sleeps)
    assert client.get_values("sid", "'Sheet1'") == []
    assert sleeps == [1, 2]


def test_retries_are_bounded(monkeypatch, sleeps):
    scripted = Scripted(error(500), error(500), error(500, "still broken"))
    client = make_client(monkeypatch, scripted, sleeps)
    with pytest.raises(SheetsApiError) as exc:
        client.get_values("sid", "'Sheet1'")
    assert exc.value.status_code == 500
    assert exc.value.msg == "still broken"
    assert len(scripted.requests) == 3


def test_connection_errors_are_retried(monkeypatch, sleeps):
    scripted = Scripted(requests.ConnectionError("reset"), FakeResponse(200, {"values": [["x"]]}))
    client = make_client(monkeypatch, scripted, sleeps)
    assert client.get_values("sid", "'Sheet1'") == [["x"]]
    assert sleeps == [1]


def test_unauthorized_refreshes_token_once(monkeypatch, sleeps):
    tokens = Tokens()
    scripted = Scripted(error(401), FakeResponse(200, {"values": []}))
    client = make_client(monkeypatch, scripted, sleeps, tokens=tokens)
    client.get_values("sid", "'Sheet1'")
    assert tokens.calls == [False, True]
    assert scripted.requests[1]["headers"] == {"Authorization": "Bearer token-2"}
    assert sleeps == []


def test_second_unauthorized_is_raised(monkeypatch, sleeps):
    client = make_client(monkeypatch, Scripted(error(401), error(401)), sleeps)
    with pytest.raises(SheetsApiError) as exc:
        client.get_values("sid", "'Sheet1'")
    assert exc.value.status_code == 401


def test_forbidden_triggers_one_access_repair(monkeypatch, sleeps):
    repaired = []

    def repair(spreadsheet_id):
        repaired.append(spreadsheet_id)
        return True

    scripted = Scripted(error(403), FakeResponse(200, {"values": [["ok"]]}))
    client = make_client(monkeypatch, scripted, sleeps, repair=repair)
    assert client.get_values("sid", "'Sheet1'") == [["ok"]]
    assert repaired == ["sid"]


def test_forbidden_after_repair_is_raised(monkeypatch, sleeps):
    repaired = []
    scripted = Scripted(error(403), error(403))
    client = make_client(monkeypatch, scripted, sleeps, repair=lambda sid: repaired.append(sid) or True)
    with pytest.raises(SheetsApiError) as exc:
        client.get_values("sid", "'Sheet1'")
    assert exc.value.status_code == 403
    assert repaired == ["sid"]


def test_forbidden_without_repair_fails_fast(monkeypatch, sleeps):
    scripted = Scripted(error(403))
    client = make_client(monkeypatch, scripted, sleeps)
    with pytest.raises(SheetsApiError):
        client.get_values("sid", "'Sheet1'")
    assert len(scripted.requests) == 1


def test_not_found_is_not_retried(monkeypatch, sleeps):
    scripted = Scripted(error(404, "Requested entity was not found."))
    client = make_client(monkeypatch, scripted, sleeps)
    with pytest.raises(SheetsApiError) as exc:
        client.get_spreadsheet("missing")
    assert exc.value.status_code == 404
    assert sleeps == []


def test_missing_token_raises_service_account_error(monkeypatch, sleeps):
    monkeypatch.setattr(requests, "request", Scripted())
    client = SheetsClient(lambda force_refresh=False: None, sleep=sleeps.append)
    with pytest.raises(ServiceAccountError):
        client.get_values("sid", "'Sheet1'")


def test_update_values_sends_raw_rows(monkeypatch, sleeps):
    scripted = Scripted(FakeResponse(200, {"updatedRange": "'Sheet1'!A2:B2"}))
    client = make_client(monkeypatch, scripted, sleeps)
    client.update_values("sid", "'Sheet1'!A2:B2", [["a", "b"]])
    sent = scripted.requests[0]
    assert sent["method"] == "PUT"
    assert sent["params"] == {"valueInputOption": "RAW"}
    assert sent["json"]["values"] == [["a", "b"]]


def test_read_row_span_pads_missing_cells(fake_sheets):
    fake_sheets.add_sheet(BOARD_SHEET_ID, "Sheet1", [["h1", "h2", "h3"], ["a"]])
    handle = SheetHandle(fake_sheets, BOARD_SHEET_ID, "Sheet1")
    assert handle.read_row_span(2, 0, 2) == ["a", "", ""]
    assert handle.read_row_span(9, 1, 2) == ["", ""]


def test_append_header_columns_grows_the_grid(fake_sheets):
    header = [f"q{i}" for i in range(26)]
    fake_sheets.add_sheet(BOARD_SHEET_ID, "Wide", [header])
    handle = SheetHandle(fake_sheets, BOARD_SHEET_ID, "Wide")
    new_header = handle.append_header_columns(["UNDERSTAND", "LIKE"])
    assert new_header[-2:] == ["UNDERSTAND", "LIKE"]
    assert ("append_columns", BOARD_SHEET_ID, 0, 2) in fake_sheets.calls
    assert fake_sheets.rows(BOARD_SHEET_ID, "Wide")[0][26:] == ["UNDERSTAND", "LIKE"]


def test_append_rows_reports_first_row(fake_sheets):
    fake_sheets.add_sheet(BOARD_SHEET_ID, "Log", [["when", "what"], ["t1", "a"]])
    handle = SheetHandle(fake_sheets, BOARD_SHEET_ID, "Log")
    assert handle.append_rows([["t2", "b"], ["t3", "c"]]) == 3
    assert fake_sheets.rows(BOARD_SHEET_ID, "Log")[2] == ["t2", "b"]
