from __future__ import annotations

from athlete_social.core.images import is_allowed_image_url


def test_supabase_storage_urls_are_allowed() -> None:
    assert is_allowed_image_url("https://abc123.supabase.co/storage/v1/object/public/avatars/u/a.png") is True
    assert is_allowed_image_url("https://abc123.supabase.in/storage/v1/object/sign/uploads/u/a.png?token=x") is True


def test_other_hosts_and_schemes_are_rejected() -> None:
    assert is_allowed_image_url("http://abc123.supabase.co/storage/v1/object/public/a.png") is False
    assert is_allowed_image_url("https://supabase.co.evil.com/storage/v1/object/public/a.png") is False
    assert is_allowed_image_url("https://evilsupabase.co/storage/v1/object/public/a.png") is False
    assert is_allowed_image_url("https://abc123.supabase.co/rest/v1/profiles") is False
    assert is_allowed_image_url("https://abc123.supabase.co/storage/v1/object/") is False


def test_empty_values_are_rejected() -> None:
    assert is_allowed_image_url(None) is False
    assert is_allowed_image_url("   ") is False
