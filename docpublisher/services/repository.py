"""
Repository Resolver - maps a site address and library name to stable ids.

Resolution runs once per process; the result is shared read-only by every
upload.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional
from urllib.parse import quote, urlparse

from ..errors import (
    AuthenticationError,
    PublishError,
    RepositoryResolutionError,
    ThrottlingError,
    TransientNetworkError,
)
from ..models import ResolvedRepository
from .api_client import GraphClient

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConnectionReport:
    """Outcome of a connectivity check."""
    site_name: Optional[str]
    site_url: Optional[str]
    drive_name: Optional[str]
    drive_type: Optional[str]
    root_item_count: int
    quota: Optional[Dict[str, Any]] = None


def site_endpoint(address: str) -> str:
    """
    Build the Graph site lookup endpoint for a site URL.

    ``https://host`` -> ``/sites/host``;
    ``https://host/sites/docs`` -> ``/sites/host:/sites/docs``.
    """
    url = urlparse(address)
    if not url.hostname:
        raise RepositoryResolutionError(address, "address has no host name")
    site_path = url.path.strip("/")
    if not site_path:
        return f"/sites/{url.hostname}"
    return f"/sites/{url.hostname}:/{quote(site_path, safe='/')}"


def _match_drive(drives: List[Dict[str, Any]], library_name: str) -> Optional[Dict[str, Any]]:
    encoded_name = library_name.replace(" ", "%20")
    for drive in drives:
        if drive.get("name") in (library_name, f"{library_name} Documents"):
            return drive
    for drive in drives:
        web_url = (drive.get("webUrl") or "").rstrip("/")
        if web_url.endswith(f"/{encoded_name}") or web_url.endswith(f"/{library_name}"):
            return drive
    return None


class RepositoryResolver:
    """
    Resolves the repository address + library name once.

    Usage:
        resolver = RepositoryResolver(client, address, "Documents")
        repo = await resolver.resolve()
    """

    def __init__(self, client: GraphClient, address: str, library_name: str):
        self._client = client
        self._address = address
        self._library_name = library_name
        self._resolved: Optional[ResolvedRepository] = None
        self._lock = asyncio.Lock()

    @property
    def resolved(self) -> Optional[ResolvedRepository]:
        return self._resolved

    async def resolve(self) -> ResolvedRepository:
        """Resolve site and drive ids; cached after the first success."""
        if self._resolved is not None:
            return self._resolved
        async with self._lock:
            if self._resolved is None:
                self._resolved = await self._resolve()
        return self._resolved

    async def _lookup(self, url: str, what: str) -> Dict[str, Any]:
        """GET during resolution; auth and transport failures pass through unchanged."""
        try:
            return await self._client.get_json(url)
        except (AuthenticationError, TransientNetworkError, ThrottlingError):
            raise
        except PublishError as e:
            logger.error(f"Failed to resolve {what} for {self._address}: {e}")
            raise RepositoryResolutionError(self._address, e.message) from e

    async def _resolve(self) -> ResolvedRepository:
        site = await self._lookup(site_endpoint(self._address), "site")

        site_id = site.get("id")
        if not site_id:
            raise RepositoryResolutionError(self._address, "site lookup returned no id")
        logger.info(f"Resolved site id: {site_id}")

        drives = (await self._lookup(f"/sites/{site_id}/drives", "document libraries")).get("value", [])
        drive = _match_drive(drives, self._library_name)
        if drive is None:
            logger.warning(
                f"Document library '{self._library_name}' not found, using default drive"
            )
            drive = await self._lookup(f"/sites/{site_id}/drive", "default drive")
        else:
            logger.info(f"Found document library: {drive.get('name')}")

        if not drive.get("id"):
            raise RepositoryResolutionError(self._address, "drive lookup returned no id")

        return ResolvedRepository(
            site_id=site_id,
            drive_id=drive["id"],
            drive_name=drive.get("name"),
            site_url=site.get("webUrl"),
        )

    async def test_connection(self) -> ConnectionReport:
        """Resolve, then perform lightweight reads to confirm access."""
        repo = await self.resolve()
        site = await self._client.get_json(f"/sites/{repo.site_id}")
        drive = await self._client.get_json(repo.drive_path)
        children = await self._client.get_json(f"{repo.drive_path}/root/children")
        return ConnectionReport(
            site_name=site.get("displayName"),
            site_url=site.get("webUrl"),
            drive_name=drive.get("name"),
            drive_type=drive.get("driveType"),
            root_item_count=len(children.get("value", [])),
            quota=drive.get("quota"),
        )
