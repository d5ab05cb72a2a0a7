"""
System administrator router: user management, initial setup, cache reset.

Every route requires the ADMIN_EMAIL account, except /setup before the
system has been set up at all, which only SETUP_BOOTSTRAP_EMAIL may call.
"""
import logging

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from auth import require_email
from cache import shared_store
from config import SETUP_BOOTSTRAP_EMAIL
from dependencies import AppContext, get_context
from errors import ValidationError, mask_email
from results import Error, to_response
from services import operations
from services.system import has_core_system_props, invalidate_web_app_url, setup_app

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/admin")


class SetupBody(BaseModel):
    """Core system properties."""
    adminEmail: str = Field(..., min_length=3, max_length=255)
    databaseSpreadsheetId: str = Field(..., min_length=1, max_length=500)
    serviceAccountJson: str = Field(..., min_length=2)


def require_admin(
    email: str = Depends(require_email),
    ctx: AppContext = Depends(get_context),
) -> AppContext:
    if not ctx.is_admin(email):
        raise HTTPException(status_code=403, detail="Administrator only")
    return ctx


@router.get("/users")
def list_users(ctx: AppContext = Depends(require_admin)):
    return to_response(operations.list_users(ctx))


@router.post("/users/{user_id}/toggle-active")
def toggle_user_active(user_id: str, ctx: AppContext = Depends(require_admin)):
    return to_response(operations.toggle_user_active(ctx, user_id))


@router.post("/setup")
def setup(
    body: SetupBody,
    email: str = Depends(require_email),
    ctx: AppContext = Depends(get_context),
):
    """Store core system properties. Once set up, only the administrator may change them."""
    if not has_core_system_props(ctx.cache):
        if not SETUP_BOOTSTRAP_EMAIL or email.lower() != SETUP_BOOTSTRAP_EMAIL:
            logger.warning("First-run setup refused for %s", mask_email(email))
            raise HTTPException(status_code=403, detail="Only the bootstrap account may run first-run setup")
        logger.warning("First-run setup by %s", mask_email(email))
    elif not ctx.is_admin(email):
        raise HTTPException(status_code=403, detail="Administrator only")
    try:
        stored = setup_app(ctx.cache, body.adminEmail, body.databaseSpreadsheetId, body.serviceAccountJson)
    except ValidationError as e:
        return to_response(Error(str(e), code="validation"))
    return {"status": "ok", **stored}


@router.post("/cache/reset")
def reset_cache(ctx: AppContext = Depends(require_admin)):
    shared_store.clear()
    ctx.cache.memory.clear()
    invalidate_web_app_url(ctx.cache)
    logger.info("Shared cache cleared by administrator")
    return {"status": "ok"}
