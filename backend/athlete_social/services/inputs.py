from __future__ import annotations

import re
from typing import Any

from athlete_social.core.auth import MAINTENANCE_SCOPE, Principal
from athlete_social.core.images import is_allowed_image_url
from athlete_social.services.errors import RepositoryForbiddenError, RepositoryValidationError
from athlete_social.services.policies import POST_VISIBILITIES, PROFILE_VISIBILITIES
from athlete_social.services.tags import is_profile_ref

SPORT_KEY_RE = re.compile(r"^[a-z][a-z0-9_]{0,31}$")
MAX_CAPTION_LENGTH = 2200
MAX_COMMENT_LENGTH = 1000
MAX_NAME_LENGTH = 80


def require_requester(requester_id: str | None) -> str:
    """Return the requester id in the lowercase form rows are keyed by."""
    normalized = requester_id.strip().lower() if requester_id else ""
    if not normalized:
        raise RepositoryForbiddenError("authentication required")
    return normalized


def require_maintainer(principal: Principal | None) -> Principal:
    if principal is None:
        raise RepositoryForbiddenError("authentication required")
    try:
        principal.require_scopes({MAINTENANCE_SCOPE})
    except PermissionError as exc:
        raise RepositoryForbiddenError(str(exc)) from exc
    return principal


def normalize_id(value: Any) -> Any:
    return value.strip().lower() if isinstance(value, str) else value


def require_uuid(value: Any, *, field: str) -> str:
    if not is_profile_ref(value):
        raise RepositoryValidationError(f"{field} must be a UUID")
    return value.strip().lower()


def require_profile_id(value: Any, *, field: str = "profile_id") -> str:
    return require_uuid(value, field=field)


def coerce_text(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, str):
        stripped = value.strip()
        return stripped or None
    return str(value)


def require_profile_visibility(value: Any) -> str:
    if value not in PROFILE_VISIBILITIES:
        raise RepositoryValidationError("visibility must be one of: public, private")
    return value


def require_post_visibility(value: Any) -> str:
    if value not in POST_VISIBILITIES:
        raise RepositoryValidationError("visibility must be one of: public, followers, private")
    return value


def normalize_caption(value: Any) -> str | None:
    caption = coerce_text(value)
    if caption is not None and len(caption) > MAX_CAPTION_LENGTH:
        raise RepositoryValidationError(f"caption must be {MAX_CAPTION_LENGTH} characters or less")
    return caption


def require_comment_content(value: Any) -> str:
    content = coerce_text(value)
    if not content:
        raise RepositoryValidationError("comment content must be a non-empty string")
    if len(content) > MAX_COMMENT_LENGTH:
        raise RepositoryValidationError(f"comment must be {MAX_COMMENT_LENGTH} characters or less")
    return content


def normalize_name(value: Any, *, field: str) -> str | None:
    name = coerce_text(value)
    if name is not None and len(name) > MAX_NAME_LENGTH:
        raise RepositoryValidationError(f"{field} must be {MAX_NAME_LENGTH} characters or less")
    return name


def compose_full_name(first_name: str | None, last_name: str | None) -> str | None:
    parts = [part for part in (first_name, last_name) if part]
    return " ".join(parts) or None


def normalize_avatar_url(value: Any) -> str | None:
    url = coerce_text(value)
    if url is None:
        return None
    if not is_allowed_image_url(url):
        raise RepositoryValidationError("avatar_url must point at platform storage")
    return url


def normalize_sport_key(value: Any) -> str:
    key = coerce_text(value)
    key = key.lower() if key else None
    if not key or not SPORT_KEY_RE.match(key):
        raise RepositoryValidationError("sport_key must be a lowercase identifier such as 'golf'")
    return key


def require_settings_object(value: Any) -> dict[str, Any]:
    if not isinstance(value, dict):
        raise RepositoryValidationError("settings must be a JSON object")
    return value


def bound_limit(limit: int, *, maximum: int = 100) -> int:
    return max(1, min(int(limit), maximum))


def bound_offset(offset: int) -> int:
    return max(0, int(offset))
