"""
Board service: sheet preparation, header resolution and answer listing.
"""
import logging

from cache import CacheManager, board_data_key, headers_key
from config import CACHE_TTL_BOARD_DATA, CACHE_TTL_HEADERS
from errors import mask_id
from results import Error, Ok, Result
from services.config_service import question_text
from services.header_resolver import FIELDS, SYSTEM_COLUMNS, resolve_header_indices
from services.reactions import extract_highlight, extract_reactions
from services.sheets_client import SheetHandle, SheetsClient

logger = logging.getLogger(__name__)

SORT_ORDERS = ("newest", "oldest", "class", "name", "score")


def list_sheets(client: SheetsClient, spreadsheet_id: str) -> list[dict]:
    sheets = []
    for props in client.list_sheets(spreadsheet_id):
        grid = props.get("gridProperties", {})
        sheets.append({
            "name": props.get("title", ""),
            "id": props.get("sheetId"),
            "rowCount": grid.get("rowCount", 0),
            "columnCount": grid.get("columnCount", 0),
        })
    return sheets


def prepare_sheet(handle: SheetHandle, cache: CacheManager | None = None) -> dict:
    """Append any missing reaction/highlight columns to the header row."""
    headers = handle.header_row()
    present = {str(h or "").strip().upper() for h in headers}
    missing = [c for c in SYSTEM_COLUMNS if c not in present]
    if missing:
        headers = handle.append_header_columns(missing)
        if cache is not None:
            cache.remove(headers_key(handle.spreadsheet_id, handle.sheet_name))
        logger.info("Added columns %s to %s", ",".join(missing), mask_id(handle.spreadsheet_id))
    return {"added": missing, "headers": headers}


def get_header_resolution(
    handle: SheetHandle,
    cache: CacheManager,
    skip_cache: bool = False,
    headers: list | None = None,
) -> dict:
    """
    Cached {headers, indices, missing} for a sheet's header row; pass headers
    when already read. A cached entry for a different header row is replaced.
    """
    key = headers_key(handle.spreadsheet_id, handle.sheet_name)

    def compute():
        row = headers if headers is not None else handle.header_row()
        resolution = resolve_header_indices(row)
        return {"headers": list(row), "indices": resolution.indices, "missing": resolution.missing}

    cached = cache.get(key, compute, ttl=CACHE_TTL_HEADERS, skip_cache=skip_cache)
    if headers is not None and list(cached["headers"]) != list(headers):
        logger.info("Header row of %s changed, re-resolving columns", mask_id(handle.spreadsheet_id))
        cached = compute()
        cache.put(key, cached, ttl=CACHE_TTL_HEADERS)
    return cached


def effective_mapping(column_mapping: dict | None, headers: list, detected: dict) -> dict[str, int | None]:
    """Configured indices win when they fall inside the header row; detection fills the rest."""
    column_mapping = column_mapping or {}
    mapping = {}
    for name in FIELDS:
        configured = column_mapping.get(name)
        if isinstance(configured, int) and 0 <= configured < len(headers):
            mapping[name] = configured
        else:
            mapping[name] = detected.get(name)
    return mapping


def _cell(row: list, index: int | None) -> str:
    if index is None or index >= len(row):
        return ""
    return str(row[index] or "").strip()


def build_answers(
    rows: list[list],
    headers: list,
    mapping: dict,
    viewer_email: str | None = None,
    options: dict | None = None,
) -> list[dict]:
    """
    One item per data row that has an answer. rows exclude the header, so
    rows[0] is sheet row 2.

    options: showNames, canEdit, classFilter, sortOrder (newest|oldest|
    class|name|score) and limit. Names are blanked unless showNames or
    canEdit; emails are only shown to editors.
    """
    options = options or {}
    can_edit = bool(options.get("canEdit"))
    show_names = can_edit or bool(options.get("showNames"))
    class_filter = str(options.get("classFilter") or "").strip()

    answers = []
    for offset, row in enumerate(rows):
        answer = _cell(row, mapping.get("answer"))
        if not answer:
            continue
        klass = _cell(row, mapping.get("class"))
        if class_filter and class_filter.lower() not in ("all", klass.lower()):
            continue
        row_index = offset + 2
        reactions = extract_reactions(row, headers, viewer_email)
        answers.append({
            "id": f"row_{row_index}",
            "rowIndex": row_index,
            "timestamp": _cell(row, mapping.get("timestamp")),
            "answer": answer,
            "reason": _cell(row, mapping.get("reason")),
            "class": klass,
            "name": _cell(row, mapping.get("name")) if show_names else "",
            "email": _cell(row, mapping.get("email")) if can_edit else "",
            "reactions": reactions,
            "highlight": extract_highlight(row, headers),
            "score": sum(r["count"] for r in reactions.values()),
        })

    order = options.get("sortOrder") or "newest"
    if order == "oldest":
        answers.sort(key=lambda a: a["rowIndex"])
    elif order == "class":
        answers.sort(key=lambda a: (a["class"], a["rowIndex"]))
    elif order == "name":
        answers.sort(key=lambda a: (a["name"], a["rowIndex"]))
    elif order == "score":
        answers.sort(key=lambda a: (-a["score"], -a["rowIndex"]))
    else:
        answers.sort(key=lambda a: -a["rowIndex"])

    limit = options.get("limit")
    if isinstance(limit, int) and limit > 0:
        answers = answers[:limit]
    return answers


def get_board_data(
    client: SheetsClient,
    cache: CacheManager,
    user: dict,
    config: dict,
    viewer_email: str | None,
    can_edit: bool = False,
    options: dict | None = None,
    skip_cache: bool = False,
) -> Result:
    """Answers of the board's published sheet, shaped for the board page."""
    sheet_name = config.get("publishedSheetName") or config.get("sheetName")
    spreadsheet_id = user.get("spreadsheetId") or config.get("spreadsheetId")
    if not sheet_name or not spreadsheet_id:
        return Error("No sheet is connected to this board", code="not_configured")

    handle = SheetHandle(client, spreadsheet_id, sheet_name)
    if skip_cache:
        cache.remove(headers_key(spreadsheet_id, sheet_name))
    values = cache.get(
        board_data_key(user["userId"]),
        handle.all_values,
        ttl=CACHE_TTL_BOARD_DATA,
        skip_cache=skip_cache,
    ) or []
    headers = list(values[0]) if values else []
    resolution = get_header_resolution(handle, cache, skip_cache=skip_cache, headers=headers)
    mapping = effective_mapping(config.get("columnMapping"), headers, resolution["indices"])
    if mapping.get("answer") is None:
        return Error("The answer column could not be found", code="missing_answer_column")

    display = config.get("displaySettings") or {}
    opts = {**(options or {}), "showNames": display.get("showNames", False), "canEdit": can_edit}
    answers = build_answers(values[1:], headers, mapping, viewer_email, opts)
    return Ok({
        "header": question_text(config, headers),
        "sheetName": sheet_name,
        "data": answers,
        "totalCount": len(answers),
        "showReactions": display.get("showReactions", False),
        "columnMapping": mapping,
    })
