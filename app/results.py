"""
Explicit result variants for service calls.

Callers branch on the variant type instead of catching exceptions to tell
"no data" from "failure". Routers turn a variant into a JSON body with
to_response().
"""
from dataclasses import dataclass, field
from typing import Any

from fastapi.responses import JSONResponse


@dataclass
class Ok:
    data: dict = field(default_factory=dict)
    message: str = ""


@dataclass
class NotFound:
    message: str = "Not found"


@dataclass
class Denied:
    message: str = "Access denied"
    user_type: str = "unauthorized"


@dataclass
class Error:
    message: str
    code: str = "error"
    status_code: int = 400
    data: dict = field(default_factory=dict)


Result = Ok | NotFound | Denied | Error


def error_body(message: str, **extra: Any) -> dict:
    body = {"status": "error", "message": message}
    body.update(extra)
    return body


def to_body(result: Result) -> dict:
    if isinstance(result, Ok):
        body = {"status": "ok"}
        if result.message:
            body["message"] = result.message
        body.update(result.data)
        return body
    if isinstance(result, NotFound):
        return error_body(result.message, error="not_found")
    if isinstance(result, Denied):
        return error_body(result.message, error="denied", userType=result.user_type)
    return error_body(result.message, error=result.code, **result.data)


def to_response(result: Result) -> JSONResponse:
    """Map a variant to its HTTP status: 200, 404, 403, or the Error's own code."""
    if isinstance(result, Ok):
        status = 200
    elif isinstance(result, NotFound):
        status = 404
    elif isinstance(result, Denied):
        status = 403
    else:
        status = result.status_code
    return JSONResponse(status_code=status, content=to_body(result))
