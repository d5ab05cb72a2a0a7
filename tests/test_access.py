import json

import pytest

from services.access import public_config, verify_access

from conftest import ADMIN

OWNER = "teacher@school.jp"
STUDENT = "student@school.jp"


def is_admin(email):
    return email == ADMIN


def set_config(user_db, user, **changes):
    config = {**json.loads(user["configJson"]), **changes}
    return user_db.update_user(user["userId"], {"configJson": json.dumps(config)})


@pytest.mark.parametrize("action", ["view", "edit", "admin"])
def test_owner_may_do_everything(user_db, board_user, action):
    decision = verify_access(user_db, board_user["userId"], action, OWNER, is_admin)
    assert decision.allowed
    assert decision.user_type == "owner"
    assert decision.can_edit
    assert decision.config["spreadsheetId"] == board_user["spreadsheetId"]


def test_owner_match_ignores_case(user_db, board_user):
    decision = verify_access(user_db, board_user["userId"], "edit", "Teacher@School.JP", is_admin)
    assert decision.user_type == "owner"


def test_administrator_gets_full_access(user_db, board_user):
    decision = verify_access(user_db, board_user["userId"], "admin", ADMIN, is_admin)
    assert decision.allowed
    assert decision.user_type == "admin"
    assert "etag" in decision.config


def test_anonymous_guest_gets_redacted_config(user_db, board_user):
    decision = verify_access(user_db, board_user["userId"], "view", None, is_admin)
    assert decision.allowed
    assert decision.user_type == "guest"
    assert not decision.can_edit
    assert "spreadsheetId" not in decision.config
    assert "isPublished" not in decision.config
    assert "confidence" not in decision.config["columnMapping"]
    assert decision.config["columnMapping"]["answer"] == 4


def test_guest_may_not_edit(user_db, board_user):
    decision = verify_access(user_db, board_user["userId"], "edit", STUDENT, is_admin)
    assert not decision.allowed
    assert decision.user_type == "unauthorized"


def test_guest_viewing_can_be_disabled(user_db, board_user):
    user = set_config(user_db, board_user, allowAnonymous=False)
    for viewer in (None, STUDENT, "stranger@example.com"):
        decision = verify_access(user_db, user["userId"], "view", viewer, is_admin)
        assert not decision.allowed
        assert decision.user_type == "unauthorized"
        assert decision.config == {}
    assert verify_access(user_db, user["userId"], "view", OWNER, is_admin).user_type == "owner"


def test_unpublished_board_is_private(user_db, board_user):
    user = set_config(user_db, board_user, isPublished=False)
    decision = verify_access(user_db, user["userId"], "view", STUDENT, is_admin)
    assert not decision.allowed
    assert decision.user_type == "private"
    assert decision.config == {}


def test_legacy_is_public_flag_counts_as_published(user_db, board_user):
    user = set_config(user_db, board_user, isPublished=False, isPublic=True)
    assert verify_access(user_db, user["userId"], "view", STUDENT, is_admin).allowed


def test_unknown_board(user_db, board_user):
    decision = verify_access(user_db, "no-such-user", "view", OWNER, is_admin)
    assert not decision.allowed
    assert decision.user_type == "not_found"
    assert verify_access(user_db, None, "view", OWNER, is_admin).user_type == "not_found"


def test_inactive_board_is_hidden_from_guests(user_db, board_user):
    user_db.set_active(board_user["userId"], False)
    assert verify_access(user_db, board_user["userId"], "view", STUDENT, is_admin).user_type == "not_found"
    assert verify_access(user_db, board_user["userId"], "view", OWNER, is_admin).user_type == "owner"
    assert verify_access(user_db, board_user["userId"], "view", ADMIN, is_admin).user_type == "admin"


def test_unknown_action_raises(user_db, board_user):
    with pytest.raises(ValueError):
        verify_access(user_db, board_user["userId"], "delete", OWNER, is_admin)


def test_public_config_does_not_modify_input():
    config = {"spreadsheetId": "abc", "columnMapping": {"answer": 1, "confidence": {"answer": 95}}}
    redacted = public_config(config)
    assert redacted == {"columnMapping": {"answer": 1}}
    assert config["columnMapping"]["confidence"] == {"answer": 95}
