"""Package registry adapters.

The HTTP registries answer existence with the package metadata endpoint:
200 means published, 404 means it does not exist. Any other status is
treated as a transport problem so the bounded lookup retries it and,
if it persists, degrades to an unverified finding.
"""

from __future__ import annotations

from collections.abc import Iterable
from urllib.parse import quote

import httpx
import structlog

logger = structlog.get_logger()


class _HttpRegistry:
    """Shared HTTP existence check."""

    url_template = ""

    def __init__(
        self,
        base_url: str | None = None,
        client: httpx.AsyncClient | None = None,
        timeout_seconds: float = 5.0,
    ) -> None:
        """Initialize the registry.

        Args:
            base_url: Override for the registry base URL (mirrors, tests).
            client: Shared client. A client per lookup is created if None.
            timeout_seconds: HTTP timeout for one request.
        """
        self.base_url = base_url
        self.client = client
        self.timeout_seconds = timeout_seconds
        self._cache: dict[str, bool] = {}

    def url_for(self, name: str) -> str:
        """Return the metadata URL of a package."""
        raise NotImplementedError

    async def exists(self, name: str) -> bool:
        """Check whether a package is published under this name."""
        if name in self._cache:
            return self._cache[name]

        url = self.url_for(name)
        if self.client is not None:
            response = await self.client.get(url, timeout=self.timeout_seconds)
        else:
            async with httpx.AsyncClient() as client:
                response = await client.get(url, timeout=self.timeout_seconds)

        if response.status_code == 404:
            result = False
        elif response.is_success:
            result = True
        else:
            raise httpx.TransportError(f"Unexpected status {response.status_code} from {url}")

        logger.debug("registry_lookup", url=url, exists=result)
        self._cache[name] = result
        return result


class PyPIRegistry(_HttpRegistry):
    """Existence checks against the PyPI JSON API."""

    def url_for(self, name: str) -> str:
        """Return the PyPI JSON URL of a project."""
        base = (self.base_url or "https://pypi.org").rstrip("/")
        return f"{base}/pypi/{quote(name)}/json"


class NpmRegistry(_HttpRegistry):
    """Existence checks against the npm registry."""

    def url_for(self, name: str) -> str:
        """Return the npm registry URL of a package (scoped names escaped)."""
        base = (self.base_url or "https://registry.npmjs.org").rstrip("/")
        return f"{base}/{quote(name, safe='@')}"


class StaticPackageRegistry:
    """Registry backed by a fixed set of names (lockfiles, tests, offline use)."""

    def __init__(self, names: Iterable[str]) -> None:
        """Initialize the registry.

        Args:
            names: Published package names. Matching is case-insensitive
                and treats "-", "_" and "." as equal, like PyPI.
        """
        self.names = {self._canonical(n) for n in names}

    @staticmethod
    def _canonical(name: str) -> str:
        return name.lower().replace("_", "-").replace(".", "-")

    async def exists(self, name: str) -> bool:
        """Check membership."""
        return self._canonical(name) in self.names
