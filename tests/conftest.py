"""
Shared fixtures. Environment defaults are set before any app module is
imported, since config and crypto validate at import time.
"""
import json
import os
import re
import tempfile

from cryptography.fernet import Fernet

os.environ.setdefault("ENV", "test")
os.environ.setdefault("GOOGLE_CLIENT_ID", "test-client-id")
os.environ.setdefault("GOOGLE_CLIENT_SECRET", "test-client-secret")
os.environ.setdefault("GOOGLE_REDIRECT_URI", "http://localhost:8000/auth/google/callback")
os.environ.setdefault("JWT_SECRET", "test-jwt-secret")
os.environ.setdefault("TOKEN_ENCRYPTION_KEY", Fernet.generate_key().decode())
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("LOG_DIR", tempfile.mkdtemp(prefix="answer-board-logs-"))
os.environ.setdefault("ADMIN_EMAIL", "admin@example.com")
os.environ.setdefault("DATABASE_SPREADSHEET_ID", "1DbSpreadsheetIdForTests0000000000000000000")
os.environ.setdefault(
    "SERVICE_ACCOUNT_CREDS",
    json.dumps({"client_email": "board@project.iam.gserviceaccount.com", "private_key": "not-a-key"}),
)
os.environ.setdefault("WEB_APP_URL", "https://boards.example.com/app")

import pytest  # noqa: E402

from cache import CacheManager, PropertyStore, TTLStore, shared_store  # noqa: E402
from database import Base, SessionLocal, engine  # noqa: E402
from errors import SheetsApiError  # noqa: E402
from locks import ScriptLock  # noqa: E402
import models  # noqa: E402,F401

Base.metadata.create_all(bind=engine)

DB_ID = os.environ["DATABASE_SPREADSHEET_ID"]
ADMIN = os.environ["ADMIN_EMAIL"]
BOARD_SHEET_ID = "1BoardSpreadsheetIdForTests000000000000000"

_RANGE = re.compile(r"^'((?:[^']|'')*)'(?:!(.*))?$")
_ROWS = re.compile(r"^(\d+):(\d+)$")
_CELLS = re.compile(r"^([A-Z]+)(\d+)(?::([A-Z]+)(\d+))?$")


def col_index(letters: str) -> int:
    n = 0
    for ch in letters:
        n = n * 26 + (ord(ch) - 64)
    return n - 1


def parse_range(range_: str):
    """(sheet, first_row, last_row, first_col, last_col); rows 1-based, cols 0-based, None = open."""
    m = _RANGE.match(range_)
    assert m, f"unsupported range {range_}"
    sheet = m.group(1).replace("''", "'")
    rest = m.group(2)
    if rest is None:
        return sheet, 1, None, 0, None
    rows = _ROWS.match(rest)
    if rows:
        return sheet, int(rows.group(1)), int(rows.group(2)), 0, None
    cells = _CELLS.match(rest)
    assert cells, f"unsupported range {range_}"
    first_col, first_row = col_index(cells.group(1)), int(cells.group(2))
    if cells.group(3):
        return sheet, first_row, int(cells.group(4)), first_col, col_index(cells.group(3))
    return sheet, first_row, first_row, first_col, first_col


def _trim(row: list) -> list:
    row = list(row)
    while row and row[-1] in ("", None):
        row.pop()
    return row


class FakeSheetsClient:
    """In-memory stand-in for SheetsClient, with call recording and failure injection."""

    def __init__(self):
        self.books: dict[str, dict[str, list[list]]] = {}
        self.calls: list[tuple] = []
        self.fail: dict[str, Exception] = {}

    def add_sheet(self, spreadsheet_id: str, sheet_name: str, rows: list[list] | None = None):
        self.books.setdefault(spreadsheet_id, {})[sheet_name] = [list(r) for r in (rows or [])]
        return self.books[spreadsheet_id][sheet_name]

    def rows(self, spreadsheet_id: str, sheet_name: str) -> list[list]:
        return self.books[spreadsheet_id][sheet_name]

    def _record(self, name, *args):
        self.calls.append((name, *args))
        if name in self.fail:
            raise self.fail[name]

    def _sheet(self, spreadsheet_id, name):
        try:
            return self.books[spreadsheet_id][name]
        except KeyError:
            raise SheetsApiError(404, f"Unable to parse range: {name}")

    def get_spreadsheet(self, spreadsheet_id, fields=None):
        self._record("get_spreadsheet", spreadsheet_id)
        if spreadsheet_id not in self.books:
            raise SheetsApiError(403, "The caller does not have permission")
        return {"spreadsheetId": spreadsheet_id, "properties": {"title": f"Book {spreadsheet_id[:4]}"}}

    def list_sheets(self, spreadsheet_id):
        self._record("list_sheets", spreadsheet_id)
        if spreadsheet_id not in self.books:
            raise SheetsApiError(403, "The caller does not have permission")
        return [
            {
                "title": name,
                "sheetId": i,
                "gridProperties": {
                    "rowCount": max(len(rows), 1000),
                    "columnCount": max([26] + [len(r) for r in rows]),
                },
            }
            for i, (name, rows) in enumerate(self.books[spreadsheet_id].items())
        ]

    def get_values(self, spreadsheet_id, range_):
        self._record("get_values", spreadsheet_id, range_)
        name, r1, r2, c1, c2 = parse_range(range_)
        rows = self._sheet(spreadsheet_id, name)
        last = len(rows) if r2 is None else min(r2, len(rows))
        out = []
        for row in rows[r1 - 1:last]:
            cells = row[c1:] if c2 is None else row[c1:c2 + 1]
            out.append(_trim(cells))
        while out and not out[-1]:
            out.pop()
        return out

    def update_values(self, spreadsheet_id, range_, values):
        self._record("update_values", spreadsheet_id, range_, values)
        name, r1, _, c1, _ = parse_range(range_)
        rows = self._sheet(spreadsheet_id, name)
        for dr, new_row in enumerate(values):
            r = r1 - 1 + dr
            while len(rows) <= r:
                rows.append([])
            row = rows[r]
            while len(row) < c1 + len(new_row):
                row.append("")
            row[c1:c1 + len(new_row)] = list(new_row)
        return {"updatedRange": range_}

    def append_values(self, spreadsheet_id, range_, values):
        self._record("append_values", spreadsheet_id, range_, values)
        name = parse_range(range_)[0]
        rows = self._sheet(spreadsheet_id, name)
        while rows and not _trim(rows[-1]):
            rows.pop()
        first = len(rows) + 1
        rows.extend(list(v) for v in values)
        last = len(rows)
        return {"updates": {"updatedRange": f"'{name}'!A{first}:Z{last}", "updatedRows": len(values)}}

    def _by_id(self, spreadsheet_id, sheet_id):
        return list(self.books[spreadsheet_id].values())[sheet_id]

    def delete_rows(self, spreadsheet_id, sheet_id, start_index, end_index):
        self._record("delete_rows", spreadsheet_id, sheet_id, start_index, end_index)
        del self._by_id(spreadsheet_id, sheet_id)[start_index:end_index]

    def append_columns(self, spreadsheet_id, sheet_id, count):
        self._record("append_columns", spreadsheet_id, sheet_id, count)


@pytest.fixture(autouse=True)
def clean_state():
    shared_store.clear()
    with SessionLocal() as db:
        db.query(models.ScriptProperty).delete()
        db.query(models.OAuthAccount).delete()
        db.commit()
    yield
    shared_store.clear()


@pytest.fixture
def cache():
    return CacheManager(shared=TTLStore(), durable=PropertyStore())


@pytest.fixture
def lock():
    return ScriptLock()


@pytest.fixture
def fake_sheets():
    fake = FakeSheetsClient()
    fake.add_sheet(DB_ID, "Users")
    return fake


@pytest.fixture
def user_db(fake_sheets, cache, lock):
    from services.user_db import UserDatabase
    return UserDatabase(fake_sheets, cache, DB_ID, lock=lock)


ANSWER_HEADERS = ["タイムスタンプ", "メールアドレス", "クラス", "名前", "回答", "理由"]


@pytest.fixture
def board_rows():
    return [
        list(ANSWER_HEADERS),
        ["2025/01/10 09:00:00", "s1@school.jp", "1-A", "Sato", "Plants need light", "Leaves turned yellow"],
        ["2025/01/10 09:05:00", "s2@school.jp", "1-B", "Suzuki", "Water matters most", ""],
        ["2025/01/10 09:07:00", "s3@school.jp", "1-A", "Takahashi", "", "no answer given"],
        ["2025/01/10 09:09:00", "s4@school.jp", "1-B", "Tanaka", "Soil type", "Grew faster in clay"],
    ]


@pytest.fixture
def board_user(fake_sheets, user_db, board_rows):
    """A registered teacher with a connected, published board sheet (system columns present)."""
    rows = [list(r) for r in board_rows]
    rows[0] += ["UNDERSTAND", "LIKE", "CURIOUS", "HIGHLIGHT"]
    fake_sheets.add_sheet(BOARD_SHEET_ID, "Form Responses 1", rows)
    config = {
        "isPublished": True,
        "allowAnonymous": True,
        "spreadsheetId": BOARD_SHEET_ID,
        "sheetName": "Form Responses 1",
        "publishedSheetName": "Form Responses 1",
        "displaySettings": {"showNames": False, "showReactions": True},
        "columnMapping": {"answer": 4, "reason": 5, "class": 2, "name": 3, "email": 1, "timestamp": 0,
                          "confidence": {"answer": 95, "reason": 95}},
        "setupStatus": "completed",
    }
    return user_db.create_user(
        "teacher@school.jp",
        spreadsheet_id=BOARD_SHEET_ID,
        spreadsheet_url=f"https://docs.google.com/spreadsheets/d/{BOARD_SHEET_ID}/edit",
        config_json=json.dumps(config),
    )
