from typing import Any

import httpx

from athlete_social.core.auth import ROLE_SCOPES, Principal, scopes_for_role
from athlete_social.core.config import Settings


class IdentityError(Exception):
    """Raised when the identity provider cannot vouch for a bearer token."""

    def __init__(self, message: str, *, unavailable: bool = False) -> None:
        super().__init__(message)
        self.unavailable = unavailable


async def resolve_principal(
    token: str | None,
    settings: Settings,
    *,
    client: httpx.AsyncClient | None = None,
) -> Principal:
    """Exchange a Supabase access token for the requester identity."""
    if token is None or not token.strip():
        raise IdentityError("empty bearer token")

    if not settings.supabase_url or not settings.supabase_anon_key:
        raise IdentityError("Supabase auth is not configured", unavailable=True)

    user = await _fetch_supabase_user(
        supabase_url=settings.supabase_url,
        supabase_anon_key=settings.supabase_anon_key,
        token=token.strip(),
        timeout_seconds=settings.auth_timeout_seconds,
        client=client,
    )
    user_id = user.get("id")
    if not isinstance(user_id, str) or not user_id:
        raise IdentityError("invalid bearer token")

    role = _resolve_role(user)
    email = user.get("email")
    return Principal(
        subject=user_id,
        role=role,
        scopes=scopes_for_role(role),
        email=email if isinstance(email, str) else None,
    )


async def _fetch_supabase_user(
    *,
    supabase_url: str,
    supabase_anon_key: str,
    token: str,
    timeout_seconds: float,
    client: httpx.AsyncClient | None = None,
) -> dict[str, Any]:
    headers = {
        "Authorization": f"Bearer {token}",
        "apikey": supabase_anon_key,
    }
    url = f"{supabase_url.rstrip('/')}/auth/v1/user"

    try:
        if client is not None:
            response = await client.get(url, headers=headers, timeout=timeout_seconds)
        else:
            async with httpx.AsyncClient(timeout=timeout_seconds) as owned_client:
                response = await owned_client.get(url, headers=headers)
    except httpx.HTTPError as exc:  # pragma: no cover - network dependent
        raise IdentityError("Supabase auth verification unavailable", unavailable=True) from exc

    if response.status_code in {401, 403}:
        raise IdentityError("invalid bearer token")
    if response.status_code != 200:
        raise IdentityError("Supabase auth verification failed", unavailable=True)

    payload = response.json()
    if not isinstance(payload, dict):
        raise IdentityError("Supabase auth returned an unexpected payload", unavailable=True)
    return payload


def _resolve_role(user: dict[str, Any]) -> str:
    # user_metadata is writable by the user, so only app_metadata grants roles.
    app_metadata = user.get("app_metadata")
    if not isinstance(app_metadata, dict):
        return "user"

    role = app_metadata.get("role")
    if isinstance(role, str) and role in ROLE_SCOPES:
        return role

    roles = app_metadata.get("roles")
    if isinstance(roles, list):
        for candidate in ("admin", "user"):
            if candidate in roles:
                return candidate

    return "user"
