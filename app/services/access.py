"""
Board access decisions.

Evaluation order: unknown board -> owner -> system administrator ->
viewing a published board -> denied (private or unauthorized).
An inactive board is unknown to everyone but its owner and the administrator.
"""
import copy
import logging
from dataclasses import dataclass, field

from errors import mask_email, mask_id
from services.config_service import parse_config

logger = logging.getLogger(__name__)

ACTIONS = ("view", "edit", "admin")

INTERNAL_CONFIG_FIELDS = (
    "isPublic",
    "isPublished",
    "etag",
    "spreadsheetId",
    "spreadsheetUrl",
    "setupStatus",
    "lastModified",
    "lastAccessedAt",
)


@dataclass
class AccessDecision:
    allowed: bool
    user_type: str
    config: dict = field(default_factory=dict)
    user: dict | None = None

    @property
    def can_edit(self) -> bool:
        return self.allowed and self.user_type in ("owner", "admin")


def public_config(config: dict) -> dict:
    """Config as shown to guests: internal flags, ids and mapping confidence removed."""
    redacted = copy.deepcopy(config)
    for key in INTERNAL_CONFIG_FIELDS:
        redacted.pop(key, None)
    mapping = redacted.get("columnMapping")
    if isinstance(mapping, dict):
        mapping.pop("confidence", None)
    return redacted


def is_public(config: dict) -> bool:
    return bool(config.get("isPublished") or config.get("isPublic"))


def verify_access(
    user_db,
    board_id: str | None,
    action: str,
    viewer_email: str | None,
    is_admin=None,
) -> AccessDecision:
    """
    Decide whether viewer_email may perform action ("view", "edit" or "admin")
    on the board owned by user board_id. is_admin is a predicate for the
    system administrator email. Owners and the administrator get the full
    config; guests get public_config().
    """
    if action not in ACTIONS:
        raise ValueError(f"Unknown action: {action}")
    viewer = (viewer_email or "").strip().lower() or None

    user = user_db.find_user_by_id(board_id) if board_id else None
    if user is None:
        return AccessDecision(False, "not_found")
    config = parse_config(user.get("configJson")).to_dict()

    if viewer and viewer == user.get("adminEmail", "").lower():
        return AccessDecision(True, "owner", config, user)
    if viewer and is_admin is not None and is_admin(viewer):
        return AccessDecision(True, "admin", config, user)
    if not user.get("isActive", True):
        return AccessDecision(False, "not_found")
    if action == "view" and is_public(config) and config.get("allowAnonymous"):
        return AccessDecision(True, "guest", public_config(config), user)

    user_type = "unauthorized" if is_public(config) else "private"
    logger.info(
        "access denied: %s %s on %s (%s)",
        mask_email(viewer), action, mask_id(board_id), user_type,
    )
    return AccessDecision(False, user_type)
