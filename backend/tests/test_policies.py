from __future__ import annotations

from athlete_social.services import policies

OWNER = "11111111-1111-4111-8111-111111111111"
FRIEND = "22222222-2222-4222-8222-222222222222"
STRANGER = "33333333-3333-4333-8333-333333333333"


def _post(visibility: str) -> dict[str, str]:
    return {"id": "post-1", "profile_id": OWNER, "visibility": visibility}


def test_public_post_readable_by_any_authenticated_requester() -> None:
    post = _post("public")

    assert policies.can_read_post(OWNER, post) is True
    assert policies.can_read_post(STRANGER, post) is True
    assert policies.can_read_post(None, post) is False


def test_private_post_readable_only_by_owner() -> None:
    post = _post("private")

    assert policies.can_read_post(OWNER, post) is True
    assert policies.can_read_post(FRIEND, post, follow_status="accepted") is False
    assert policies.can_read_post(STRANGER, post) is False


def test_followers_post_requires_accepted_follow() -> None:
    post = _post("followers")

    assert policies.can_read_post(FRIEND, post, follow_status="accepted") is True
    assert policies.can_read_post(FRIEND, post, follow_status="pending") is False
    assert policies.can_read_post(STRANGER, post) is False


def test_private_profile_readable_by_owner_and_accepted_followers() -> None:
    profile = {"id": OWNER, "visibility": "private"}

    assert policies.can_read_profile(OWNER, profile) is True
    assert policies.can_read_profile(FRIEND, profile, follow_status="accepted") is True
    assert policies.can_read_profile(FRIEND, profile, follow_status="rejected") is False
    assert policies.can_read_profile(None, {"id": OWNER, "visibility": "public"}) is False


def test_writes_only_in_own_name() -> None:
    assert policies.can_write_as(OWNER, OWNER) is True
    assert policies.can_write_as(STRANGER, OWNER) is False
    assert policies.can_write_as(None, None) is False


def test_follow_rows_visible_only_to_parties() -> None:
    pending = {"follower_id": FRIEND, "following_id": OWNER, "status": "pending"}
    accepted = dict(pending, status="accepted")

    assert policies.can_read_follow(FRIEND, pending) is True
    assert policies.can_read_follow(OWNER, accepted) is True
    assert policies.can_read_follow(STRANGER, pending) is False
    assert policies.can_read_follow(STRANGER, accepted) is False
    assert policies.can_read_follow(None, accepted) is False


def test_sport_settings_owner_only() -> None:
    row = {"profile_id": OWNER, "sport_key": "golf"}

    assert policies.can_read_sport_settings(OWNER, row) is True
    assert policies.can_read_sport_settings(FRIEND, row) is False


def test_comment_deletable_by_author_or_post_owner() -> None:
    post = _post("public")
    comment = {"profile_id": FRIEND, "post_id": "post-1"}

    assert policies.can_delete_comment(FRIEND, comment, post) is True
    assert policies.can_delete_comment(OWNER, comment, post) is True
    assert policies.can_delete_comment(STRANGER, comment, post) is False


def test_media_objects_live_under_requester_prefix() -> None:
    assert policies.can_write_media_object(OWNER, f"{OWNER}/avatar.png") is True
    assert policies.can_write_media_object(OWNER, f"{STRANGER}/avatar.png") is False
    assert policies.can_write_media_object(OWNER, "avatar.png") is False
    assert policies.can_write_media_object(OWNER, f"{OWNER}/") is False
    assert policies.can_write_media_object(None, f"{OWNER}/avatar.png") is False


def test_media_paths_cannot_climb_out_of_requester_prefix() -> None:
    assert policies.can_write_media_object(OWNER, f"{OWNER}/../{STRANGER}/avatar.png") is False
    assert policies.can_write_media_object(OWNER, f"{OWNER}/./avatar.png") is False
    assert policies.can_write_media_object(OWNER, f"{OWNER}//avatar.png") is False
    assert policies.can_write_media_object(OWNER, f"{OWNER}/%2e%2e/{STRANGER}/avatar.png") is False
    assert policies.can_write_media_object(OWNER, f"{OWNER}/2024/avatar.png") is True
