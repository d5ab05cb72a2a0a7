"""
Answer board backend: Google sign-in, board pages and RPC, admin tools.

Load .env in development only (production uses env vars directly), before
config is imported. Add logging, CORS, exception handlers, optional DB init.
"""
import logging
import os
from pathlib import Path

from dotenv import load_dotenv

# Load .env only in development; production should set env vars directly
if os.getenv("ENV", "development").lower() == "development":
    load_dotenv(Path(__file__).resolve().parent.parent / ".env")

from fastapi import FastAPI, Request
from fastapi.exceptions import HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from config import FRONTEND_URL, LOG_DIR, LOG_LEVEL, SKIP_DB_INIT
from logging_config import setup_logging

setup_logging(LOG_DIR, LOG_LEVEL)

from database import Base, engine
from errors import DatabaseUnavailable, LockTimeout, ServiceAccountError, SheetsApiError, log_error
from results import error_body
from admin import router as admin_router
from api import router as api_router
from auth import router as auth_router
from pages import router as pages_router

logger = logging.getLogger(__name__)

# Create DB tables if not skipping (production uses Alembic migrations)
if not SKIP_DB_INIT:
    Base.metadata.create_all(bind=engine)

app = FastAPI(
    title="Answer Board Backend",
    description="Classroom answer boards over Google Sheets: sign-in, boards, reactions, admin.",
)

# CORS: explicit origin, allow credentials (cookies). Never use "*" with cookies.
app.add_middleware(
    CORSMiddleware,
    allow_origins=[FRONTEND_URL] if FRONTEND_URL else [],
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["*"],
)


@app.exception_handler(LockTimeout)
async def lock_timeout_handler(request: Request, exc: LockTimeout):
    log_error(exc, exc.operation, severity="high", category="lock", path=request.url.path)
    return JSONResponse(
        status_code=503,
        content=error_body("The board is busy; please try again"),
    )


@app.exception_handler(DatabaseUnavailable)
async def database_unavailable_handler(request: Request, exc: DatabaseUnavailable):
    log_error(exc, "user_database", severity="critical", category="database", path=request.url.path)
    return JSONResponse(
        status_code=503,
        content=error_body("The user database is unavailable"),
    )


@app.exception_handler(SheetsApiError)
@app.exception_handler(ServiceAccountError)
async def sheets_error_handler(request: Request, exc: Exception):
    log_error(exc, "sheets_api", severity="high", path=request.url.path)
    return JSONResponse(
        status_code=502,
        content=error_body("The spreadsheet service could not complete the request"),
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Catch unhandled exceptions; log and return generic 500. Never leak stack traces."""
    # Let FastAPI handle HTTPException (validation, auth, etc.)
    if isinstance(exc, HTTPException):
        raise exc
    logger.exception("Unhandled exception: %s", exc)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error"},
    )


@app.get("/health")
def health():
    return {"status": "ok"}


app.include_router(auth_router)
app.include_router(pages_router)
app.include_router(api_router)
app.include_router(admin_router)
