"""
Board operations shared by the page endpoint (/app) and the RPC routes (/api).

Each operation takes the request's AppContext and returns a result variant;
routers only translate variants to HTTP. LockTimeout and DatabaseUnavailable
propagate (request-fatal).
"""
import logging
from datetime import datetime, UTC

from cache import board_data_key
from errors import mask_email, mask_id
from models import OAuthAccount
from results import Denied, Error, NotFound, Ok, Result
from services import board_service
from services.access import AccessDecision, verify_access
from services.config_service import (
    completion_score,
    dynamic_urls,
    merge_config,
    parse_config,
    save_config,
    validate_publish,
)
from services.header_resolver import merge_column_confidence, recommend_column_mapping
from services.reactions import toggle_highlight, toggle_reaction
from services.service_account import service_account_email, validate_spreadsheet_access
from services.sheets_client import SheetHandle
from services.system import (
    extract_spreadsheet_id,
    get_web_app_url_cached,
    has_core_system_props,
    spreadsheet_url,
)

logger = logging.getLogger(__name__)
audit_logger = logging.getLogger("audit")


def parse_row_index(value) -> int | None:
    """Accept 5, "5" or "row_5"."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    text = str(value or "").strip()
    if text.startswith("row_"):
        text = text[4:]
    return int(text) if text.isdigit() else None


def _denied(decision: AccessDecision) -> Result:
    if decision.user_type == "not_found":
        return NotFound("Board not found")
    return Denied("You do not have access to this board", decision.user_type)


def _check(ctx, user_id: str | None, action: str) -> AccessDecision:
    return verify_access(ctx.user_db, user_id, action, ctx.viewer_email, ctx.is_admin)


def _full_config(decision: AccessDecision) -> dict:
    """The unredacted config, for server-side use after access was granted."""
    return parse_config(decision.user.get("configJson")).to_dict()


def _board_sheet(ctx, decision: AccessDecision) -> SheetHandle | None:
    config = _full_config(decision)
    sheet_name = config.get("publishedSheetName") or config.get("sheetName")
    spreadsheet_id = decision.user.get("spreadsheetId") or config.get("spreadsheetId")
    if not sheet_name or not spreadsheet_id:
        return None
    return SheetHandle(ctx.client, spreadsheet_id, sheet_name)


def _own_user(ctx) -> dict | None:
    return ctx.user_db.find_user_by_email(ctx.viewer_email) if ctx.viewer_email else None


def add_reaction(ctx, user_id: str, row_index, reaction_type: str) -> Result:
    if not ctx.viewer_email:
        return Denied("Sign in to react", "unauthorized")
    decision = _check(ctx, user_id, "view")
    if not decision.allowed:
        return _denied(decision)
    row = parse_row_index(row_index)
    if row is None:
        return Error("Invalid row index", code="validation")
    sheet = _board_sheet(ctx, decision)
    if sheet is None:
        return Error("No sheet is connected to this board", code="not_configured")

    result = toggle_reaction(sheet, row, reaction_type, ctx.viewer_email, lock=ctx.lock)
    audit_logger.info(
        "addReaction actor=%s target=%s row=%s type=%s status=%s",
        mask_email(ctx.viewer_email), mask_id(user_id), row, reaction_type, result["status"],
    )
    if result["status"] != "ok":
        return Error(result["message"], code="reaction_failed")
    ctx.cache.remove(board_data_key(user_id))
    return Ok({k: v for k, v in result.items() if k != "status"})


def toggle_highlight_action(ctx, user_id: str, row_index) -> Result:
    decision = _check(ctx, user_id, "edit")
    if not decision.allowed:
        return _denied(decision)
    row = parse_row_index(row_index)
    if row is None:
        return Error("Invalid row index", code="validation")
    sheet = _board_sheet(ctx, decision)
    if sheet is None:
        return Error("No sheet is connected to this board", code="not_configured")

    result = toggle_highlight(sheet, row, lock=ctx.lock)
    audit_logger.info(
        "toggleHighlight actor=%s target=%s row=%s status=%s",
        mask_email(ctx.viewer_email), mask_id(user_id), row, result["status"],
    )
    if result["status"] != "ok":
        return Error(result["message"], code="highlight_failed")
    ctx.cache.remove(board_data_key(user_id))
    return Ok({"highlighted": result["highlighted"]})


def get_board_answers(ctx, user_id: str, options: dict | None = None, skip_cache: bool = False) -> Result:
    decision = _check(ctx, user_id, "view")
    if not decision.allowed:
        return _denied(decision)
    config = _full_config(decision)
    if not config.get("isPublished") and not decision.can_edit:
        return Denied("This board is not published", "private")
    result = board_service.get_board_data(
        ctx.client,
        ctx.cache,
        decision.user,
        config,
        ctx.viewer_email,
        can_edit=decision.can_edit,
        options=options,
        skip_cache=skip_cache,
    )
    if isinstance(result, Ok):
        result.data["userType"] = decision.user_type
        result.data["config"] = decision.config if decision.user_type == "guest" else config
    return result


def get_app_settings(ctx) -> Result:
    user = _own_user(ctx)
    if user is None:
        return NotFound("No board is registered for this account")
    config = parse_config(user.get("configJson")).to_dict()
    return Ok({
        "userId": user["userId"],
        "email": user["adminEmail"],
        "config": config,
        "completionScore": completion_score(config),
        "dynamicUrls": dynamic_urls(get_web_app_url_cached(ctx.cache), user["userId"]),
        "isAdmin": ctx.is_admin(),
    })


def get_sheets_list(ctx, user_id: str) -> Result:
    decision = _check(ctx, user_id, "edit")
    if not decision.allowed:
        return _denied(decision)
    spreadsheet_id = decision.user.get("spreadsheetId")
    if not spreadsheet_id:
        return Error("No spreadsheet is connected", code="not_configured")
    return Ok({
        "spreadsheetId": spreadsheet_id,
        "sheets": board_service.list_sheets(ctx.client, spreadsheet_id),
    })


def save_sheet_config(
    ctx,
    spreadsheet_id: str,
    sheet_name: str,
    config: dict | None = None,
    etag: str | None = None,
) -> Result:
    """
    Connect (or reconnect) a spreadsheet tab: check service-account access,
    add the system columns, detect the column mapping and save the config.
    """
    user = _own_user(ctx)
    if user is None:
        return NotFound("No board is registered for this account")
    sid = extract_spreadsheet_id(spreadsheet_id)
    if not sid:
        return Error("Invalid spreadsheet id or URL", code="validation")
    sheet_name = (sheet_name or "").strip()
    if not sheet_name:
        return Error("Sheet name is required", code="validation")

    access = validate_spreadsheet_access(ctx.client, ctx.cache, sid)
    if not access["ok"]:
        return Error(
            access["message"],
            code="access_denied",
            status_code=403,
            data={"serviceAccountEmail": service_account_email(ctx.cache)},
        )

    handle = SheetHandle(ctx.client, sid, sheet_name)
    prepared = board_service.prepare_sheet(handle, ctx.cache)
    headers = prepared["headers"]
    detected = recommend_column_mapping(headers, handle.sample_rows())

    current = parse_config(user.get("configJson")).to_dict()
    config = dict(config or {})
    same_sheet = current.get("spreadsheetId") == sid and current.get("sheetName") == sheet_name
    base_mapping = config.get("columnMapping") or (current.get("columnMapping") if same_sheet else {})
    partial = {
        **config,
        "spreadsheetId": sid,
        "spreadsheetUrl": spreadsheet_url(sid),
        "sheetName": sheet_name,
        "columnMapping": merge_column_confidence(base_mapping, detected),
        "formTitle": config.get("formTitle") or access.get("title", ""),
        "setupStatus": "completed",
    }
    if not same_sheet:
        partial["isPublished"] = False
        partial["publishedSheetName"] = ""

    result = save_config(
        ctx.user_db,
        user,
        partial,
        etag,
        extra_updates={"spreadsheetId": sid, "spreadsheetUrl": spreadsheet_url(sid)},
        # Mapping from another sheet must not leak into this one
        replace_keys=() if same_sheet else ("columnMapping",),
    )
    if isinstance(result, Ok):
        result.data.update({"headers": headers, "addedColumns": prepared["added"], "detected": detected})
    return result


def publish_app(ctx, config: dict | None = None, etag: str | None = None) -> Result:
    user = _own_user(ctx)
    if user is None:
        return NotFound("No board is registered for this account")
    config = dict(config or {})
    current = parse_config(user.get("configJson")).to_dict()
    candidate = merge_config(current, config)
    candidate["publishedSheetName"] = config.get("publishedSheetName") or candidate.get("sheetName", "")
    problems = validate_publish(candidate)
    if problems:
        return Error(problems[0], code="validation", data={"errors": problems})

    partial = {
        **config,
        "isPublished": True,
        "publishedSheetName": candidate["publishedSheetName"],
        "publishedAt": datetime.now(UTC).isoformat(),
        "setupStatus": "completed",
    }
    result = save_config(ctx.user_db, user, partial, etag)
    if isinstance(result, Ok):
        urls = dynamic_urls(get_web_app_url_cached(ctx.cache), user["userId"])
        result.data["viewUrl"] = urls["viewBoardUrl"]
        logger.info("Published board %s", mask_id(user["userId"]))
    return result


def unpublish_app(ctx) -> Result:
    user = _own_user(ctx)
    if user is None:
        return NotFound("No board is registered for this account")
    # Unpublishing never conflicts with a concurrent edit
    result = save_config(ctx.user_db, user, {"isPublished": False}, check_etag=False)
    if isinstance(result, Ok):
        logger.info("Unpublished board %s", mask_id(user["userId"]))
    return result


def get_current_user_status(ctx, request_user_id: str | None = None) -> Result:
    user = _own_user(ctx)
    data = {
        "email": ctx.viewer_email,
        "isAuthenticated": bool(ctx.viewer_email),
        "isAdmin": ctx.is_admin(),
        "isRegistered": user is not None,
        "userId": user["userId"] if user else None,
        "isActive": user["isActive"] if user else None,
        "isSystemSetup": has_core_system_props(ctx.cache),
    }
    if request_user_id:
        data["isOwner"] = bool(user) and user["userId"] == request_user_id
    return Ok(data)


def register(ctx) -> Result:
    if not ctx.viewer_email:
        return Denied("Sign in to register", "unauthorized")
    if not has_core_system_props(ctx.cache):
        return Error("The system has not been set up", code="not_setup", status_code=503)
    user = ctx.user_db.create_user(ctx.viewer_email)
    urls = dynamic_urls(get_web_app_url_cached(ctx.cache), user["userId"])
    return Ok({"userId": user["userId"], "adminUrl": urls["adminPanelUrl"], "isActive": user["isActive"]})


def delete_user_account(ctx, user_id: str) -> Result:
    decision = _check(ctx, user_id, "admin")
    if not decision.allowed:
        return _denied(decision)
    if not ctx.user_db.delete_user(user_id):
        return NotFound("User not found")
    if decision.user_type == "owner":
        account = ctx.db.get(OAuthAccount, ctx.viewer_email)
        if account is not None:
            ctx.db.delete(account)
            ctx.db.commit()
    audit_logger.info("deleteUserAccount actor=%s target=%s", mask_email(ctx.viewer_email), mask_id(user_id))
    return Ok({"userId": user_id}, message="Account deleted")


def toggle_user_active(ctx, user_id: str) -> Result:
    user = ctx.user_db.find_user_by_id(user_id)
    if user is None:
        return NotFound("User not found")
    updated = ctx.user_db.set_active(user_id, not user["isActive"])
    if updated is None:
        return NotFound("User not found")
    audit_logger.info(
        "toggleUserActive actor=%s target=%s active=%s",
        mask_email(ctx.viewer_email), mask_id(user_id), updated["isActive"],
    )
    return Ok({"userId": user_id, "isActive": updated["isActive"]})


def list_users(ctx) -> Result:
    users = []
    for user in ctx.user_db.get_all_users():
        config = parse_config(user.get("configJson")).to_dict()
        users.append({
            "userId": user["userId"],
            "adminEmail": user["adminEmail"],
            "spreadsheetId": user["spreadsheetId"],
            "createdAt": user["createdAt"],
            "lastAccessedAt": user["lastAccessedAt"],
            "isActive": user["isActive"],
            "isPublished": config.get("isPublished", False),
        })
    return Ok({"users": users, "total": len(users)})
