"""Host permission checks for feed URLs."""

import logging
from urllib.parse import urlparse

logger = logging.getLogger(__name__)


def build_origin_permission(url: str) -> str:
    """Build an origin pattern like ``https://example.com:8080/*`` for a URL.

    Raises:
        ValueError: If the URL has no scheme or host.
    """
    parsed = urlparse(url)
    if not parsed.scheme or not parsed.hostname:
        raise ValueError(f"Cannot derive origin from URL: {url}")
    port = f":{parsed.port}" if parsed.port else ""
    return f"{parsed.scheme}://{parsed.hostname}{port}/*"


class PermissionGate:
    """Answers whether the process may fetch a given URL.

    With ``allow_all`` set every well-formed URL is authorized; otherwise only
    URLs whose origin has been granted are.
    """

    def __init__(self, origins=(), allow_all: bool = False):
        self.allow_all = allow_all
        self._origins: set[str] = set(origins)

    @property
    def origins(self) -> frozenset[str]:
        return frozenset(self._origins)

    def contains(self, url: str) -> bool:
        """Check whether host permission is held for a feed URL."""
        try:
            origin = build_origin_permission(url)
        except ValueError as e:
            logger.error("Permission check failed: %s", e)
            return False
        return self.allow_all or origin in self._origins

    def grant(self, url: str) -> str:
        """Grant permission for the URL's origin and return the pattern."""
        origin = build_origin_permission(url)
        self._origins.add(origin)
        logger.info("Granted host permission: %s", origin)
        return origin

    def revoke(self, url: str) -> bool:
        origin = build_origin_permission(url)
        if origin in self._origins:
            self._origins.remove(origin)
            logger.info("Revoked host permission: %s", origin)
            return True
        return False
