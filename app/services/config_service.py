"""
Board config: versioned schema, repair on read, deep merge and etag-checked save.

The config blob lives in the user's configJson cell. Unknown keys are kept
so older or newer clients do not lose data on a round trip.
"""
import json
import logging
import secrets
from datetime import datetime, UTC
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError as PydanticValidationError

from config import DEFAULT_PAGE_SIZE, MAX_PAGE_SIZE
from errors import mask_id
from results import Error, Ok, Result

logger = logging.getLogger(__name__)

CONFIG_VERSION = 1
DEFAULT_QUESTION_TEXT = "Everyone's Answer Board"

# Derived or legacy fields never persisted
_TRANSIENT_FIELDS = ("questionText", "setupComplete", "isDraft", "completionScore", "dynamicUrls")


class DisplaySettings(BaseModel):
    model_config = ConfigDict(extra="allow")

    showNames: bool = False
    showReactions: bool = False
    theme: str = "default"
    pageSize: int = Field(DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE)


class ColumnMapping(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    answer: int | None = None
    reason: int | None = None
    class_: int | None = Field(None, alias="class")
    name: int | None = None
    email: int | None = None
    timestamp: int | None = None
    confidence: dict[str, int] = Field(default_factory=dict)


class BoardConfig(BaseModel):
    model_config = ConfigDict(extra="allow")

    version: int = CONFIG_VERSION
    isPublished: bool = False
    allowAnonymous: bool = False
    spreadsheetId: str = ""
    spreadsheetUrl: str = ""
    sheetName: str = ""
    publishedSheetName: str = ""
    displaySettings: DisplaySettings = Field(default_factory=DisplaySettings)
    columnMapping: ColumnMapping = Field(default_factory=ColumnMapping)
    formUrl: str = ""
    formTitle: str = ""
    setupStatus: Literal["pending", "completed"] = "pending"
    publishedAt: str | None = None
    etag: str | None = None
    lastModified: str | None = None

    def to_dict(self) -> dict:
        return self.model_dump(by_alias=True, mode="json")


def _drop_path(data: Any, loc: tuple) -> bool:
    """Delete the value at a pydantic error location; returns False if nothing was removed."""
    if not loc:
        return False
    target = data
    for part in loc[:-1]:
        if isinstance(target, dict) and part in target:
            target = target[part]
        elif isinstance(target, list) and isinstance(part, int) and part < len(target):
            target = target[part]
        else:
            return False
    last = loc[-1]
    if isinstance(target, dict) and last in target:
        del target[last]
        return True
    if isinstance(target, list) and isinstance(last, int) and last < len(target):
        del target[last]
        return True
    return False


def parse_config(config_json: str | dict | None) -> BoardConfig:
    """
    Parse a stored config, falling back to defaults field by field.
    Never raises: unparseable JSON gives the default config, and each invalid
    field is dropped so its default applies.
    """
    if isinstance(config_json, dict):
        data = json.loads(json.dumps(config_json))
    else:
        try:
            data = json.loads(config_json or "{}")
        except (TypeError, ValueError):
            logger.warning("Config JSON unparseable; using defaults")
            data = {}
    if not isinstance(data, dict):
        data = {}

    for _ in range(50):
        try:
            return BoardConfig.model_validate(data)
        except PydanticValidationError as e:
            removed = [_drop_path(data, tuple(err["loc"])) for err in e.errors()]
            if not any(removed):
                break
    logger.warning("Config could not be repaired; using defaults")
    return BoardConfig()


def merge_config(current: dict, partial: dict | None) -> dict:
    """
    Deep-merge partial into current. Keys absent from partial, or None in it,
    keep the current value. Neither input is modified.
    """
    merged = json.loads(json.dumps(current or {}))
    for key, value in (partial or {}).items():
        if value is None:
            continue
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = merge_config(merged[key], value)
        else:
            merged[key] = json.loads(json.dumps(value))
    return merged


def new_etag() -> str:
    return f"{datetime.now(UTC).isoformat()}_{secrets.token_hex(6)}"


class _EtagConflict(Exception):
    def __init__(self, config: dict):
        super().__init__("etag mismatch")
        self.config = config


def save_config(
    user_db,
    user: dict,
    partial: dict,
    etag: str | None = None,
    extra_updates: dict | None = None,
    replace_keys: tuple = (),
    check_etag: bool = True,
) -> Result:
    """
    Merge partial into the user's stored config and persist it.

    The stored row is re-read under the script lock, so the etag compare, the
    merge and the write form one critical section. When the stored config
    carries an etag, the caller must present the same one or nothing is
    written (Error code etag_mismatch, with the current config). Keys in
    replace_keys overwrite the stored value instead of deep-merging.
    extra_updates are additional user-record fields written in the same
    update (e.g. spreadsheetId on reconnection).
    """
    saved = {}

    def build_updates(fresh: dict) -> dict:
        current = parse_config(fresh.get("configJson")).to_dict()
        stored_etag = current.get("etag")
        if check_etag and stored_etag and etag != stored_etag:
            raise _EtagConflict(current)
        for key in replace_keys:
            current.pop(key, None)
        merged = merge_config(current, partial)
        for key in _TRANSIENT_FIELDS:
            merged.pop(key, None)
        merged["etag"] = new_etag()
        merged["lastModified"] = datetime.now(UTC).isoformat()
        saved["config"] = parse_config(merged).to_dict()
        return {"configJson": json.dumps(saved["config"]), **(extra_updates or {})}

    try:
        updated = user_db.update_user_with(user["userId"], build_updates)
    except _EtagConflict as conflict:
        logger.warning("Config etag mismatch for %s", mask_id(user.get("userId")))
        return Error(
            "Configuration has been modified by another session",
            code="etag_mismatch",
            status_code=409,
            data={"config": conflict.config},
        )
    if updated is None:
        return Error("User not found", code="not_found", status_code=404)
    config = saved["config"]
    return Ok({"config": config, "etag": config["etag"]}, message="Config saved")


def validate_publish(config: dict) -> list[str]:
    """Problems that block publishing; empty when the config can be published."""
    errors = []
    if not config.get("spreadsheetId"):
        errors.append("A spreadsheet must be connected before publishing")
    if not (config.get("publishedSheetName") or config.get("sheetName")):
        errors.append("A sheet must be selected before publishing")
    answer = (config.get("columnMapping") or {}).get("answer")
    if not isinstance(answer, int) or answer < 0:
        errors.append("The answer column must be mapped before publishing")
    return errors


def completion_score(config: dict) -> int:
    score = 0
    if config.get("spreadsheetId"):
        score += 25
    if config.get("sheetName"):
        score += 25
    if config.get("formUrl"):
        score += 30
    if config.get("displaySettings"):
        score += 10
    mapping = {k: v for k, v in (config.get("columnMapping") or {}).items() if k != "confidence" and v is not None}
    if mapping:
        score += 10
    return min(score, 100)


def dynamic_urls(base_url: str, user_id: str) -> dict:
    if not base_url:
        return {"webAppUrl": "", "adminPanelUrl": "", "viewBoardUrl": "", "setupUrl": "", "manualUrl": ""}
    return {
        "webAppUrl": base_url,
        "adminPanelUrl": f"{base_url}?mode=admin&userId={user_id}",
        "viewBoardUrl": f"{base_url}?mode=view&userId={user_id}",
        "setupUrl": f"{base_url}?mode=setup&userId={user_id}",
        "manualUrl": f"{base_url}?mode=manual",
    }


def question_text(config: dict, headers: list | None = None) -> str:
    answer = (config.get("columnMapping") or {}).get("answer")
    if isinstance(answer, int) and headers and 0 <= answer < len(headers):
        text = str(headers[answer] or "").strip()
        if text:
            return text
    title = str(config.get("formTitle") or "").strip()
    return title or DEFAULT_QUESTION_TEXT
