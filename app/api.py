"""
RPC router consumed by the board front end.

Thin HTTP layer over services.operations: validate the body, run the
operation with the request context, map the result variant to a response.
"""
from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from config import MAX_PAGE_SIZE
from dependencies import AppContext, get_context
from results import error_body, to_response
from services import operations
from services.board_service import SORT_ORDERS
from services.service_account import get_service_account_token_cached
from services.system import get_web_app_url_cached

router = APIRouter(prefix="/api")


# --- Request models ---


class ReactionBody(BaseModel):
    """Toggle a reaction on a board row."""
    userId: str = Field(..., min_length=1, max_length=64)
    rowIndex: int | str
    reactionType: str = Field(..., min_length=1, max_length=20)


class HighlightBody(BaseModel):
    userId: str = Field(..., min_length=1, max_length=64)
    rowIndex: int | str


class SheetConfigBody(BaseModel):
    """Connect a spreadsheet tab to the caller's board."""
    spreadsheetId: str = Field(..., min_length=1, max_length=500)
    sheetName: str = Field(..., min_length=1, max_length=255)
    config: dict = Field(default_factory=dict)
    etag: str | None = None


class PublishBody(BaseModel):
    config: dict = Field(default_factory=dict)
    etag: str | None = None


# --- Endpoints ---


@router.post("/reactions")
def add_reaction(body: ReactionBody, ctx: AppContext = Depends(get_context)):
    return to_response(operations.add_reaction(ctx, body.userId, body.rowIndex, body.reactionType))


@router.post("/highlight")
def toggle_highlight(body: HighlightBody, ctx: AppContext = Depends(get_context)):
    return to_response(operations.toggle_highlight_action(ctx, body.userId, body.rowIndex))


@router.get("/settings")
def get_app_settings(ctx: AppContext = Depends(get_context)):
    return to_response(operations.get_app_settings(ctx))


@router.get("/sheets")
def get_sheets_list(userId: str = Query(..., min_length=1), ctx: AppContext = Depends(get_context)):
    return to_response(operations.get_sheets_list(ctx, userId))


@router.post("/sheet-config")
def save_sheet_config(body: SheetConfigBody, ctx: AppContext = Depends(get_context)):
    return to_response(
        operations.save_sheet_config(ctx, body.spreadsheetId, body.sheetName, body.config, body.etag)
    )


@router.post("/publish")
def publish_app(body: PublishBody, ctx: AppContext = Depends(get_context)):
    return to_response(operations.publish_app(ctx, body.config, body.etag))


@router.post("/unpublish")
def unpublish_app(ctx: AppContext = Depends(get_context)):
    return to_response(operations.unpublish_app(ctx))


@router.get("/user-status")
def get_current_user_status(requestUserId: str | None = None, ctx: AppContext = Depends(get_context)):
    return to_response(operations.get_current_user_status(ctx, requestUserId))


@router.delete("/users/{user_id}")
def delete_user_account(user_id: str, ctx: AppContext = Depends(get_context)):
    return to_response(operations.delete_user_account(ctx, user_id))


@router.post("/register")
def register(ctx: AppContext = Depends(get_context)):
    return to_response(operations.register(ctx))


@router.get("/boards/{user_id}/answers")
def get_board_answers(
    user_id: str,
    classFilter: str | None = None,
    sortOrder: str = "newest",
    limit: int | None = Query(None, ge=1, le=MAX_PAGE_SIZE),
    refresh: bool = False,
    ctx: AppContext = Depends(get_context),
):
    if sortOrder not in SORT_ORDERS:
        raise HTTPException(status_code=400, detail=f"sortOrder must be one of {', '.join(SORT_ORDERS)}")
    options = {"classFilter": classFilter, "sortOrder": sortOrder, "limit": limit}
    return to_response(operations.get_board_answers(ctx, user_id, options, skip_cache=refresh))


@router.get("/web-app-url")
def get_web_app_url(ctx: AppContext = Depends(get_context)):
    return {"status": "ok", "url": get_web_app_url_cached(ctx.cache)}


@router.get("/service-account/token-status")
def service_account_token_status(forceRefresh: bool = False, ctx: AppContext = Depends(get_context)):
    """Whether a service-account token can be obtained. The token itself is never returned."""
    if not ctx.is_admin():
        raise HTTPException(status_code=403, detail="Administrator only")
    token = get_service_account_token_cached(ctx.cache, force_refresh=forceRefresh)
    if not token:
        return error_body("Service account token unavailable", available=False)
    return {"status": "ok", "available": True, "refreshed": forceRefresh}
