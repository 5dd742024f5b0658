"""Remote image hosts the web tier is allowed to optimize and render."""

from dataclasses import dataclass
from urllib.parse import urlparse


@dataclass(frozen=True, slots=True)
class RemoteImagePattern:
    protocol: str
    hostname: str
    pathname: str

    def matches(self, url: str) -> bool:
        parsed = urlparse(url.strip())
        if parsed.scheme.lower() != self.protocol:
            return False
        host = (parsed.hostname or "").lower()
        if not _match_hostname(self.hostname, host):
            return False
        return _match_pathname(self.pathname, parsed.path)


ALLOWED_IMAGE_PATTERNS: tuple[RemoteImagePattern, ...] = (
    RemoteImagePattern(protocol="https", hostname="**.supabase.co", pathname="/storage/v1/object/**"),
    RemoteImagePattern(protocol="https", hostname="**.supabase.in", pathname="/storage/v1/object/**"),
)


def is_allowed_image_url(url: str | None) -> bool:
    if not isinstance(url, str) or not url.strip():
        return False
    return any(pattern.matches(url) for pattern in ALLOWED_IMAGE_PATTERNS)


def _match_hostname(pattern: str, host: str) -> bool:
    if not host:
        return False
    if pattern.startswith("**."):
        suffix = pattern[2:]
        return host.endswith(suffix) and len(host) > len(suffix)
    return host == pattern


def _match_pathname(pattern: str, path: str) -> bool:
    if pattern.endswith("/**"):
        prefix = pattern[:-2]
        return path.startswith(prefix) and len(path) > len(prefix)
    return path == pattern
