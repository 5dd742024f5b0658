from __future__ import annotations

import asyncio

import httpx
import pytest

from athlete_social.core.auth import Principal, scopes_for_role
from athlete_social.core.config import Settings
from athlete_social.core.identity import IdentityError, resolve_principal

USER_ID = "11111111-1111-4111-8111-111111111111"


def _settings() -> Settings:
    return Settings(supabase_url="https://project.supabase.co/", supabase_anon_key="anon-key")


def _client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def _resolve(token: str | None, handler, settings: Settings | None = None) -> Principal:
    async def run() -> Principal:
        async with _client(handler) as client:
            return await resolve_principal(token, settings or _settings(), client=client)

    return asyncio.run(run())


def test_resolve_principal_reads_supabase_user() -> None:
    seen: dict[str, str] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["authorization"] = request.headers["Authorization"]
        seen["apikey"] = request.headers["apikey"]
        return httpx.Response(200, json={"id": USER_ID, "email": "ath@example.com", "app_metadata": {}})

    principal = _resolve(" token-1 ", handler)

    assert seen == {
        "url": "https://project.supabase.co/auth/v1/user",
        "authorization": "Bearer token-1",
        "apikey": "anon-key",
    }
    assert principal.subject == USER_ID
    assert principal.role == "user"
    assert principal.email == "ath@example.com"
    assert principal.scopes == {"social:read", "social:write"}


def test_role_comes_from_app_metadata_only() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            json={
                "id": USER_ID,
                "user_metadata": {"role": "admin"},
                "app_metadata": {"roles": ["user", "admin"]},
            },
        )

    principal = _resolve("token", handler)

    assert principal.role == "admin"
    assert "maintenance:write" in principal.scopes


def test_user_metadata_cannot_escalate_role() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"id": USER_ID, "user_metadata": {"role": "admin"}})

    principal = _resolve("token", handler)

    assert principal.role == "user"
    with pytest.raises(PermissionError):
        principal.require_scopes({"maintenance:write"})


def test_rejected_token_is_not_unavailable() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(401, json={"msg": "invalid JWT"})

    with pytest.raises(IdentityError, match="invalid bearer token") as exc_info:
        _resolve("token", handler)
    assert exc_info.value.unavailable is False


def test_provider_errors_are_unavailable() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503)

    with pytest.raises(IdentityError) as exc_info:
        _resolve("token", handler)
    assert exc_info.value.unavailable is True


def test_missing_configuration_is_unavailable() -> None:
    def handler(request: httpx.Request) -> httpx.Response:  # pragma: no cover - never called
        raise AssertionError("no request expected")

    with pytest.raises(IdentityError) as exc_info:
        _resolve("token", handler, Settings(supabase_url=None, supabase_anon_key=None))
    assert exc_info.value.unavailable is True


def test_empty_token_is_rejected() -> None:
    def handler(request: httpx.Request) -> httpx.Response:  # pragma: no cover - never called
        raise AssertionError("no request expected")

    with pytest.raises(IdentityError, match="empty bearer token"):
        _resolve("  ", handler)


def test_unknown_role_gets_user_scopes() -> None:
    assert scopes_for_role("coach") == {"social:read", "social:write"}
