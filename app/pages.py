"""
Web-app entry points: GET /app picks the page to render, POST /app runs actions.

The front end renders pages; GET answers with a page descriptor
{"page": setup|login|register|admin|board|unpublished|error, ...}.
POST takes {"action": ..., ...} and answers like the /api routes.
"""
import json
import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from dependencies import AppContext, get_context
from results import error_body, to_response
from services import operations
from services.config_service import completion_score, dynamic_urls, question_text
from services.access import verify_access
from services.system import get_web_app_url_cached, has_core_system_props

logger = logging.getLogger(__name__)

router = APIRouter()


def _page(page: str, **data) -> dict:
    return {"page": page, **data}


def _admin_page(ctx: AppContext, user_id: str | None) -> dict:
    if not ctx.viewer_email:
        return _page("login", next={"mode": "admin", "userId": user_id})
    if not user_id:
        own = ctx.user_db.find_user_by_email(ctx.viewer_email)
        if own is None:
            return _page("register", email=ctx.viewer_email)
        user_id = own["userId"]
    decision = verify_access(ctx.user_db, user_id, "admin", ctx.viewer_email, ctx.is_admin)
    if not decision.allowed:
        if decision.user_type == "not_found":
            return _page("error", message="Board not found", code="not_found")
        return _page("error", message="You do not have access to this admin panel", code="denied")
    config = decision.config
    return _page(
        "admin",
        userId=user_id,
        userType=decision.user_type,
        config=config,
        completionScore=completion_score(config),
        dynamicUrls=dynamic_urls(get_web_app_url_cached(ctx.cache), user_id),
        isAdmin=ctx.is_admin(),
    )


def _board_page(ctx: AppContext, user_id: str | None, view: str | None) -> dict:
    if not user_id:
        return _page("error", message="userId is required", code="validation")
    decision = verify_access(ctx.user_db, user_id, "view", ctx.viewer_email, ctx.is_admin)
    if decision.user_type == "not_found":
        return _page("error", message="Board not found", code="not_found")
    if not decision.allowed:
        if decision.user_type == "private":
            return _page("unpublished", userId=user_id)
        # Published, but closed to guests
        if ctx.viewer_email:
            return _page("error", message="This board is not open to guests", code="unauthorized")
        return _page("login", next={"mode": "view", "userId": user_id})
    config = decision.config
    if not config.get("isPublished", True) and not decision.can_edit:
        return _page("unpublished", userId=user_id)
    return _page(
        "board",
        userId=user_id,
        userType=decision.user_type,
        isOwner=decision.user_type == "owner",
        canEdit=decision.can_edit,
        config=config,
        questionText=question_text(config),
        viewMode="groups" if view == "groups" else "list",
        isSignedIn=bool(ctx.viewer_email),
    )


@router.get("/app")
def app_page(
    mode: str | None = None,
    page: str | None = None,
    userId: str | None = None,
    view: str | None = None,
    ctx: AppContext = Depends(get_context),
):
    """Resolve which page to show for the query (mode=admin|view|setup|login, page=admin, userId, view=groups)."""
    if not has_core_system_props(ctx.cache):
        return _page("setup")
    if mode == "setup":
        if ctx.is_admin():
            return _page("setup", isAdmin=True)
        return _page("error", message="Administrator only", code="denied")
    if mode == "admin" or page == "admin":
        return _admin_page(ctx, userId)
    if mode == "view" or (userId and mode is None):
        return _board_page(ctx, userId, view)
    if not ctx.viewer_email or mode == "login":
        return _page("login")
    own = ctx.user_db.find_user_by_email(ctx.viewer_email)
    if own is None:
        return _page("register", email=ctx.viewer_email)
    return _admin_page(ctx, own["userId"])


@router.post("/app")
async def app_action(request: Request, ctx: AppContext = Depends(get_context)):
    """Dispatch {"action": getData|refreshData|addReaction|toggleHighlight|publishApp, ...}."""
    raw = await request.body()
    try:
        body = json.loads(raw or b"{}")
    except ValueError:
        return JSONResponse(status_code=400, content=error_body("Invalid JSON body", error="JSON_PARSE_ERROR"))
    if not isinstance(body, dict):
        return JSONResponse(status_code=400, content=error_body("Invalid JSON body", error="JSON_PARSE_ERROR"))

    action = body.get("action")
    user_id = body.get("userId")
    if action in ("getData", "refreshData"):
        options = {
            "classFilter": body.get("classFilter"),
            "sortOrder": body.get("sortOrder") or "newest",
            "limit": body.get("limit"),
        }
        result = operations.get_board_answers(ctx, user_id, options, skip_cache=action == "refreshData")
    elif action == "addReaction":
        result = operations.add_reaction(ctx, user_id, body.get("rowIndex"), body.get("reactionType") or body.get("type"))
    elif action == "toggleHighlight":
        result = operations.toggle_highlight_action(ctx, user_id, body.get("rowIndex"))
    elif action == "publishApp":
        result = operations.publish_app(ctx, body.get("config"), body.get("etag"))
    else:
        logger.info("Unknown action %r", action)
        return JSONResponse(status_code=400, content=error_body(f"Unknown action: {action}", error="UNKNOWN_ACTION"))
    return to_response(result)
