"""Uploads to Supabase Storage under the requester's own path prefix."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import PurePosixPath
from uuid import uuid4

import httpx

from athlete_social.core.config import Settings
from athlete_social.core.images import is_allowed_image_url
from athlete_social.services import inputs, policies
from athlete_social.services.errors import RepositoryForbiddenError, RepositoryValidationError

logger = logging.getLogger(__name__)

UNSAFE_FILENAME_CHARS_RE = re.compile(r"[^A-Za-z0-9._-]+")


class MediaStorageError(Exception):
    """Raised when object storage rejects or cannot take an upload."""

    def __init__(self, message: str, *, unavailable: bool = False) -> None:
        super().__init__(message)
        self.unavailable = unavailable


@dataclass(frozen=True, slots=True)
class StoredObject:
    bucket: str
    path: str
    public_url: str
    size: int
    content_type: str


class MediaStorageClient:
    def __init__(self, settings: Settings, *, client: httpx.AsyncClient | None = None) -> None:
        self.settings = settings
        self._client = client

    def object_path(self, requester_id: str, filename: str) -> str:
        name = PurePosixPath(filename.replace("\\", "/")).name
        safe_name = UNSAFE_FILENAME_CHARS_RE.sub("-", name).strip(".-") or "upload"
        return f"{requester_id}/{uuid4().hex}-{safe_name}"

    def public_url(self, bucket: str, path: str) -> str:
        return f"{self._base_url()}/storage/v1/object/public/{bucket}/{path}"

    async def upload(
        self,
        *,
        requester_id: str | None,
        bucket: str,
        filename: str,
        content: bytes,
        content_type: str,
        access_token: str | None = None,
        object_path: str | None = None,
    ) -> StoredObject:
        requester = inputs.require_requester(requester_id)
        if bucket not in self.settings.get_media_buckets():
            raise RepositoryValidationError(f"unknown media bucket: {bucket}")

        normalized_type = (content_type or "").split(";", maxsplit=1)[0].strip().lower()
        if normalized_type not in self.settings.get_media_allowed_content_types():
            raise RepositoryValidationError(f"content type not allowed: {normalized_type or 'missing'}")
        if not content:
            raise RepositoryValidationError("upload is empty")
        if len(content) > self.settings.media_max_bytes:
            raise RepositoryValidationError(f"upload exceeds {self.settings.media_max_bytes} bytes")

        path = object_path or self.object_path(requester, filename)
        if not policies.can_write_media_object(requester, path):
            logger.debug("policy denied media write requester_id=%s path=%s", requester, path)
            raise RepositoryForbiddenError("uploads must live under the requester's own folder")

        headers = {
            "Authorization": f"Bearer {access_token or self._anon_key()}",
            "apikey": self._anon_key(),
            "Content-Type": normalized_type,
            "x-upsert": "false",
        }
        url = f"{self._base_url()}/storage/v1/object/{bucket}/{path}"
        response = await self._post(url, headers=headers, content=content)

        if response.status_code in {401, 403}:
            raise RepositoryForbiddenError("storage policy denied the upload")
        if response.status_code == 409:
            raise MediaStorageError("object already exists")
        if response.status_code == 413:
            raise RepositoryValidationError(f"upload exceeds {self.settings.media_max_bytes} bytes")
        if response.status_code >= 400:
            raise MediaStorageError(
                f"storage upload failed with status {response.status_code}",
                unavailable=response.status_code >= 500,
            )

        public_url = self.public_url(bucket, path)
        if not is_allowed_image_url(public_url):
            raise MediaStorageError("storage host is not an allowed image host")
        logger.info("media uploaded bucket=%s path=%s size=%s", bucket, path, len(content))
        return StoredObject(
            bucket=bucket,
            path=path,
            public_url=public_url,
            size=len(content),
            content_type=normalized_type,
        )

    async def _post(self, url: str, *, headers: dict[str, str], content: bytes) -> httpx.Response:
        timeout = self.settings.storage_timeout_seconds
        try:
            if self._client is not None:
                return await self._client.post(url, headers=headers, content=content, timeout=timeout)
            async with httpx.AsyncClient(timeout=timeout) as client:
                return await client.post(url, headers=headers, content=content)
        except httpx.HTTPError as exc:  # pragma: no cover - network dependent
            raise MediaStorageError("storage unavailable", unavailable=True) from exc

    def _base_url(self) -> str:
        if not self.settings.supabase_url:
            raise MediaStorageError("Supabase storage is not configured", unavailable=True)
        return self.settings.supabase_url.rstrip("/")

    def _anon_key(self) -> str:
        if not self.settings.supabase_anon_key:
            raise MediaStorageError("Supabase storage is not configured", unavailable=True)
        return self.settings.supabase_anon_key
