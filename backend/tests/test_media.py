from __future__ import annotations

import asyncio

import httpx
import pytest

from athlete_social.core.config import Settings
from athlete_social.core.images import is_allowed_image_url
from athlete_social.services.errors import RepositoryForbiddenError, RepositoryValidationError
from athlete_social.services.media import MediaStorageClient, MediaStorageError, StoredObject

OWNER = "11111111-1111-4111-8111-111111111111"
OTHER = "22222222-2222-4222-8222-222222222222"
PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"0" * 32


def _settings(**overrides) -> Settings:
    values = {
        "supabase_url": "https://project.supabase.co",
        "supabase_anon_key": "anon-key",
        "media_max_bytes": 1024,
    }
    values.update(overrides)
    return Settings(**values)


def _upload(handler, *, settings: Settings | None = None, **kwargs) -> StoredObject:
    params = {
        "requester_id": OWNER,
        "bucket": "avatars",
        "filename": "My Avatar.png",
        "content": PNG_BYTES,
        "content_type": "image/png",
    }
    params.update(kwargs)

    async def run() -> StoredObject:
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            media = MediaStorageClient(settings or _settings(), client=client)
            return await media.upload(**params)

    return asyncio.run(run())


def _unexpected(request: httpx.Request) -> httpx.Response:  # pragma: no cover - never called
    raise AssertionError("no request expected")


def test_upload_posts_to_owner_folder_and_returns_public_url() -> None:
    seen: dict[str, object] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["method"] = request.method
        seen["path"] = request.url.path
        seen["content_type"] = request.headers["Content-Type"]
        seen["authorization"] = request.headers["Authorization"]
        seen["body"] = request.content
        return httpx.Response(200, json={"Key": "avatars/x"})

    stored = _upload(handler, access_token="user-jwt", content_type="image/PNG; charset=binary")

    assert seen["method"] == "POST"
    assert str(seen["path"]).startswith(f"/storage/v1/object/avatars/{OWNER}/")
    assert str(seen["path"]).endswith("-My-Avatar.png")
    assert seen["content_type"] == "image/png"
    assert seen["authorization"] == "Bearer user-jwt"
    assert seen["body"] == PNG_BYTES
    assert stored.path.startswith(f"{OWNER}/")
    assert stored.public_url == f"https://project.supabase.co/storage/v1/object/public/avatars/{stored.path}"
    assert is_allowed_image_url(stored.public_url) is True


def test_upload_outside_owner_prefix_is_denied() -> None:
    with pytest.raises(RepositoryForbiddenError):
        _upload(_unexpected, object_path=f"{OTHER}/avatar.png")


def test_upload_cannot_climb_out_of_owner_prefix() -> None:
    for path in (f"{OWNER}/../{OTHER}/avatar.png", f"{OWNER}/./avatar.png", f"{OWNER}//avatar.png"):
        with pytest.raises(RepositoryForbiddenError):
            _upload(_unexpected, object_path=path)


def test_uppercase_requester_uploads_under_canonical_prefix() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"Key": "avatars/x"})

    stored = _upload(handler, requester_id=OWNER.upper())

    assert stored.path.startswith(f"{OWNER}/")


def test_upload_requires_requester() -> None:
    with pytest.raises(RepositoryForbiddenError, match="authentication required"):
        _upload(_unexpected, requester_id=None)


def test_upload_enforces_size_and_type() -> None:
    with pytest.raises(RepositoryValidationError, match="exceeds"):
        _upload(_unexpected, content=b"0" * 1025)
    with pytest.raises(RepositoryValidationError, match="content type"):
        _upload(_unexpected, content_type="application/pdf")
    with pytest.raises(RepositoryValidationError, match="empty"):
        _upload(_unexpected, content=b"")
    with pytest.raises(RepositoryValidationError, match="bucket"):
        _upload(_unexpected, bucket="private-docs")


def test_filename_is_reduced_to_safe_basename() -> None:
    media = MediaStorageClient(_settings())

    path = media.object_path(OWNER, "../../etc/pass wd")

    assert path.startswith(f"{OWNER}/")
    assert "/" not in path[len(OWNER) + 1 :]
    assert path.endswith("-pass-wd")


def test_storage_rejections_are_translated() -> None:
    def denied(request: httpx.Request) -> httpx.Response:
        return httpx.Response(403, json={"error": "new row violates row-level security policy"})

    def broken(request: httpx.Request) -> httpx.Response:
        return httpx.Response(502)

    with pytest.raises(RepositoryForbiddenError):
        _upload(denied)
    with pytest.raises(MediaStorageError) as exc_info:
        _upload(broken)
    assert exc_info.value.unavailable is True


def test_unconfigured_storage_is_unavailable() -> None:
    with pytest.raises(MediaStorageError) as exc_info:
        _upload(_unexpected, settings=_settings(supabase_url=None))
    assert exc_info.value.unavailable is True
