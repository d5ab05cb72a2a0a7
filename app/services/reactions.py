"""
Reaction and highlight toggles on answer rows.

Reaction cells hold comma-joined reactor emails. A viewer holds at most one
reaction type per row: toggling the held type removes it, toggling another
type moves the viewer there. All reaction cells of the row are read in one
range request and written back in one, under the script lock.
"""
import logging

import requests

from config import LOCK_TIMEOUT_REACTION
from errors import ServiceAccountError, SheetsApiError, log_error, mask_email, mask_id
from locks import ScriptLock, script_lock
from services.header_resolver import HIGHLIGHT_COLUMN, REACTION_COLUMNS

logger = logging.getLogger(__name__)

REACTION_TYPES = REACTION_COLUMNS
TRUTHY = ("TRUE", "1", "YES")


def parse_reaction_string(value) -> list[str]:
    if value is None:
        return []
    return [e.strip() for e in str(value).split(",") if e.strip()]


def serialize_reactions(emails: list[str]) -> str:
    return ",".join(e for e in emails if e and e.strip())


def _column_index(headers: list, name: str) -> int:
    for i, h in enumerate(headers):
        if str(h or "").strip().upper() == name:
            return i
    return -1


def _error(message: str) -> dict:
    return {"status": "error", "message": message}


def _summary(lists: dict[str, list[str]], email: str | None) -> dict:
    return {
        t: {"count": len(lists[t]), "reacted": bool(email) and email in [e.lower() for e in lists[t]]}
        for t in REACTION_TYPES
    }


def toggle_reaction(
    sheet,
    row_index: int,
    reaction_type: str,
    actor_email: str | None,
    lock: ScriptLock = script_lock,
) -> dict:
    """
    Toggle actor_email's reaction_type on a row (sheet row number, >= 2).

    Returns {status, newCount, newScore, action, userReaction, reactions};
    newScore mirrors newCount. Read/write failures give status 'error'.
    LockTimeout propagates.
    """
    email = (actor_email or "").strip().lower()
    if not email:
        return _error("A signed-in email is required to react")
    reaction_type = (reaction_type or "").strip().upper()
    if reaction_type not in REACTION_TYPES:
        return _error(f"Invalid reaction type: {reaction_type or 'empty'}")
    if not isinstance(row_index, int) or row_index < 2:
        return _error("Invalid row index")

    with lock.hold(LOCK_TIMEOUT_REACTION, "toggle_reaction"):
        try:
            headers = sheet.header_row()
            columns = {t: _column_index(headers, t) for t in REACTION_TYPES}
            absent = [t for t, c in columns.items() if c == -1]
            if absent:
                return _error(f"Reaction columns missing: {', '.join(absent)}")

            first, last = min(columns.values()), max(columns.values())
            span = sheet.read_row_span(row_index, first, last)
            current = {t: parse_reaction_string(span[columns[t] - first]) for t in REACTION_TYPES}
            held = next((t for t in REACTION_TYPES if email in [e.lower() for e in current[t]]), None)

            updated = {t: [e for e in current[t] if e.lower() != email] for t in REACTION_TYPES}
            if held == reaction_type:
                action, user_reaction = "removed", None
            else:
                updated[reaction_type].append(email)
                action, user_reaction = "added", reaction_type

            for t in REACTION_TYPES:
                span[columns[t] - first] = serialize_reactions(updated[t])
            sheet.write_row_span(row_index, first, span)
        except (SheetsApiError, ServiceAccountError, requests.RequestException) as e:
            log_error(e, "toggle_reaction", severity="medium", row=row_index, type=reaction_type)
            return _error("Could not update the reaction")

    count = len(updated[reaction_type])
    logger.info(
        "reaction %s %s by %s on %s row %d",
        reaction_type, action, mask_email(email),
        mask_id(getattr(sheet, "spreadsheet_id", None)), row_index,
    )
    return {
        "status": "ok",
        "newCount": count,
        "newScore": count,
        "action": action,
        "userReaction": user_reaction,
        "reactions": _summary(updated, email),
    }


def toggle_highlight(sheet, row_index: int, lock: ScriptLock = script_lock) -> dict:
    """Flip a row's HIGHLIGHT cell between TRUE and FALSE. Returns {status, highlighted}."""
    if not isinstance(row_index, int) or row_index < 2:
        return _error("Invalid row index")

    with lock.hold(LOCK_TIMEOUT_REACTION, "toggle_highlight"):
        try:
            col = _column_index(sheet.header_row(), HIGHLIGHT_COLUMN)
            if col == -1:
                return _error("HIGHLIGHT column missing")
            [value] = sheet.read_row_span(row_index, col, col)
            highlighted = str(value).strip().upper() not in TRUTHY
            sheet.write_row_span(row_index, col, ["TRUE" if highlighted else "FALSE"])
        except (SheetsApiError, ServiceAccountError, requests.RequestException) as e:
            log_error(e, "toggle_highlight", severity="medium", row=row_index)
            return _error("Could not update the highlight")

    logger.info("highlight %s on %s row %d", highlighted, mask_id(getattr(sheet, "spreadsheet_id", None)), row_index)
    return {"status": "ok", "highlighted": highlighted}


def extract_reactions(row: list, headers: list, viewer_email: str | None = None) -> dict:
    email = (viewer_email or "").strip().lower() or None
    lists = {}
    for t in REACTION_TYPES:
        col = _column_index(headers, t)
        lists[t] = parse_reaction_string(row[col]) if 0 <= col < len(row) else []
    return _summary(lists, email)


def extract_highlight(row: list, headers: list) -> bool:
    col = _column_index(headers, HIGHLIGHT_COLUMN)
    if col == -1 or col >= len(row):
        return False
    return str(row[col]).strip().upper() in TRUTHY
