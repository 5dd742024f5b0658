from __future__ import annotations

import pytest

from athlete_social.core.auth import Principal, scopes_for_role
from athlete_social.services import inputs
from athlete_social.services.errors import RepositoryForbiddenError, RepositoryValidationError
from athlete_social.services.notifications import (
    NOTIFICATION_TYPES,
    PREVIEW_LENGTH,
    actor_display_name,
    comment_preview,
    render_message,
    should_notify,
)

PROFILE_A = "11111111-1111-4111-8111-111111111111"
PROFILE_B = "22222222-2222-4222-8222-222222222222"


def test_no_self_notification() -> None:
    assert should_notify(PROFILE_A, PROFILE_B) is True
    assert should_notify(PROFILE_A, PROFILE_A) is False
    assert should_notify(None, PROFILE_A) is False


def test_actor_display_name_falls_back_to_handle() -> None:
    assert actor_display_name({"full_name": "Ada Lane", "handle": "ada"}) == "Ada Lane"
    assert actor_display_name({"full_name": "  ", "handle": "ada"}) == "@ada"
    assert actor_display_name({"full_name": None, "handle": None}) == "Someone"
    assert actor_display_name(None) == "Someone"


def test_comment_preview_is_truncated() -> None:
    assert comment_preview("short") == "short"
    assert comment_preview("y" * PREVIEW_LENGTH) == "y" * PREVIEW_LENGTH
    assert comment_preview("y" * (PREVIEW_LENGTH + 1)) == "y" * PREVIEW_LENGTH + "..."
    assert comment_preview(None) is None


def test_every_type_renders_a_message() -> None:
    for kind in NOTIFICATION_TYPES:
        assert render_message(kind, "Ada").startswith("Ada ")
    with pytest.raises(ValueError):
        render_message("poke", "Ada")


def test_requester_ids_are_lowercased_once() -> None:
    assert inputs.require_requester(f"  {PROFILE_A.upper()} ") == PROFILE_A
    with pytest.raises(RepositoryForbiddenError):
        inputs.require_requester("   ")
    with pytest.raises(RepositoryValidationError):
        inputs.require_uuid("nope", field="notification_ids")


def test_maintainer_needs_maintenance_scope() -> None:
    admin = Principal(subject="ops", role="admin", scopes=scopes_for_role("admin"))
    member = Principal(subject=PROFILE_A, role="user", scopes=scopes_for_role("user"))

    assert inputs.require_maintainer(admin) is admin
    with pytest.raises(RepositoryForbiddenError, match="maintenance:write"):
        inputs.require_maintainer(member)
    with pytest.raises(RepositoryForbiddenError, match="authentication required"):
        inputs.require_maintainer(None)
