"""
Upload Engine - Single Responsibility: move one document into the drive.

Handles folder creation, simple vs. chunked upload, and list-item metadata.
"""
import asyncio
import logging
from typing import Any, Dict, List, Mapping, Optional

from ..errors import (
    ConflictError,
    InvalidPathError,
    NotFoundError,
    PublishError,
    RemoteApiError,
    UploadIncompleteError,
)
from ..models import DriveItem, ResolvedRepository
from .api_client import GraphClient, encode_drive_path

logger = logging.getLogger(__name__)

MiB = 1024 * 1024
KiB = 1024

# Payloads up to this size go in a single PUT
SIMPLE_UPLOAD_LIMIT = 4 * MiB
# Session chunks must be multiples of 320 KiB
CHUNK_ALIGNMENT = 320 * KiB
DEFAULT_CHUNK_SIZE = 320 * KiB
# Consecutive session rounds without a forward offset before giving up
MAX_STALLED_ROUNDS = 3

INVALID_PATH_CHARS = set('"*:<>?\\|')
MAX_PATH_LENGTH = 400


def split_path(path: Optional[str]) -> List[str]:
    if not path:
        return []
    return [part for part in path.replace("\\", "/").split("/") if part]


def join_path(*parts: Optional[str]) -> str:
    segments: List[str] = []
    for part in parts:
        segments.extend(split_path(part))
    return "/".join(segments)


def validate_path(path: str) -> str:
    """
    Normalize a drive-relative path and reject names the library refuses.

    Raises:
        InvalidPathError: on forbidden characters, dot segments or blank names.
    """
    segments = split_path(path)
    for segment in segments:
        if segment in (".", ".."):
            raise InvalidPathError(f"Path segment '{segment}' is not allowed in {path!r}")
        if segment != segment.strip() or not segment.strip():
            raise InvalidPathError(f"Path segment {segment!r} has leading or trailing spaces")
        bad = sorted(INVALID_PATH_CHARS.intersection(segment))
        if bad:
            raise InvalidPathError(
                f"Path segment {segment!r} contains invalid character(s): {' '.join(bad)}"
            )
    normalized = "/".join(segments)
    if len(normalized) > MAX_PATH_LENGTH:
        raise InvalidPathError(f"Path exceeds {MAX_PATH_LENGTH} characters: {normalized[:40]}...")
    return normalized


def conflict_behavior(overwrite: bool) -> str:
    return "replace" if overwrite else "rename"


class UploadEngine:
    """
    Performs single-document transfers against one resolved drive.

    Safe to share between concurrent workers: the folder cache is guarded by
    per-path locks and the repository ids are read-only.
    """

    def __init__(
        self,
        client: GraphClient,
        repository: ResolvedRepository,
        simple_upload_limit: int = SIMPLE_UPLOAD_LIMIT,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ):
        if chunk_size <= 0 or chunk_size % CHUNK_ALIGNMENT:
            raise ValueError(f"chunk_size must be a positive multiple of {CHUNK_ALIGNMENT} bytes")
        self._client = client
        self._repo = repository
        self._simple_upload_limit = simple_upload_limit
        self._chunk_size = chunk_size
        self._folder_cache: Dict[str, str] = {}  # path -> item id
        self._folder_locks: Dict[str, asyncio.Lock] = {}

    @property
    def chunk_size(self) -> int:
        return self._chunk_size

    @staticmethod
    def validate_path(path: str) -> str:
        return validate_path(path)

    def uses_session(self, size: int) -> bool:
        """True if a payload of `size` bytes goes through an upload session."""
        return size > self._simple_upload_limit

    # ------------------------------------------------------------------ folders

    async def ensure_folder(self, path: str) -> str:
        """
        Get or create a folder path, creating parents as needed.

        Returns:
            Item id of the folder ("root" for an empty path).
        """
        path = validate_path(path)
        if not path:
            return "root"

        if path in self._folder_cache:
            logger.debug(f"Folder found in cache: /{path}")
            return self._folder_cache[path]

        parent_id = "root"
        current_path = ""
        for part in split_path(path):
            current_path = f"{current_path}/{part}" if current_path else part
            parent_id = await self._ensure_segment(current_path, part, parent_id)

        logger.debug(f"Folder structure verified: /{path} (id: {parent_id})")
        return parent_id

    async def check_folder(self, path: str) -> bool:
        """Read-only existence check for a folder path."""
        path = validate_path(path)
        if not path or path in self._folder_cache:
            return True
        return await self._lookup(path) is not None

    async def _ensure_segment(self, current_path: str, name: str, parent_id: str) -> str:
        cached = self._folder_cache.get(current_path)
        if cached is not None:
            return cached

        lock = self._folder_locks.setdefault(current_path, asyncio.Lock())
        async with lock:
            cached = self._folder_cache.get(current_path)
            if cached is not None:
                return cached

            existing = await self._lookup(current_path)
            if existing is not None:
                logger.debug(f"Folder exists: /{current_path}")
                folder_id = existing["id"]
            else:
                folder_id = await self._create_folder(current_path, name, parent_id)

            self._folder_cache[current_path] = folder_id
            return folder_id

    async def _lookup(self, path: str) -> Optional[Dict[str, Any]]:
        try:
            return await self._client.get_json(
                f"{self._repo.drive_path}/root:/{encode_drive_path(path)}"
            )
        except NotFoundError:
            return None

    async def _create_folder(self, path: str, name: str, parent_id: str) -> str:
        logger.info(f"Creating folder: /{path}")
        try:
            response = await self._client.request(
                "POST",
                f"{self._repo.drive_path}/items/{parent_id}/children",
                json={
                    "name": name,
                    "folder": {},
                    "@microsoft.graph.conflictBehavior": "fail",
                },
            )
        except ConflictError:
            # Created by someone else between our lookup and create
            logger.debug(f"Folder appeared concurrently: /{path}")
            existing = await self._lookup(path)
            if existing is None:
                raise
            return existing["id"]
        return response.json()["id"]

    # ------------------------------------------------------------------ uploads

    async def upload(
        self,
        file_name: str,
        content: bytes,
        folder_path: str = "",
        overwrite: bool = True,
    ) -> DriveItem:
        """Upload content, routing on size between simple and session upload."""
        upload_path = join_path(validate_path(folder_path), validate_path(file_name))
        size = len(content)
        if self.uses_session(size):
            logger.debug(f"Session upload: /{upload_path} ({size} bytes)")
            return await self._session_upload(upload_path, content, overwrite)
        logger.debug(f"Simple upload: /{upload_path} ({size} bytes)")
        return await self._simple_upload(upload_path, content, overwrite)

    async def _simple_upload(self, upload_path: str, content: bytes, overwrite: bool) -> DriveItem:
        response = await self._client.request(
            "PUT",
            f"{self._repo.drive_path}/root:/{encode_drive_path(upload_path)}:/content",
            content=content,
            headers={"Content-Type": "application/octet-stream"},
            params={"@microsoft.graph.conflictBehavior": conflict_behavior(overwrite)},
        )
        return DriveItem.from_graph(response.json())

    async def _session_upload(self, upload_path: str, content: bytes, overwrite: bool) -> DriveItem:
        response = await self._client.request(
            "POST",
            f"{self._repo.drive_path}/root:/{encode_drive_path(upload_path)}:/createUploadSession",
            json={"item": {"@microsoft.graph.conflictBehavior": conflict_behavior(overwrite)}},
        )
        upload_url = response.json()["uploadUrl"]

        try:
            return await self._send_chunks(upload_url, content)
        except PublishError:
            await self._cancel_session(upload_url)
            raise

    async def _send_chunks(self, upload_url: str, content: bytes) -> DriveItem:
        total = len(content)
        last_byte = total - 1
        start = 0
        stalled = 0
        while start < total:
            end = min(start + self._chunk_size, total) - 1
            try:
                response = await self._put_chunk(upload_url, content[start:end + 1], start, end, total)
            except RemoteApiError as e:
                # A retried chunk the server already stored comes back as 416
                if e.status_code != 416:
                    raise
                logger.warning(f"Range {start}-{end} rejected, reading upload session status")
                next_start = await self._session_offset(upload_url, start)
            else:
                if end == last_byte:
                    if response.status_code in (200, 201):
                        return DriveItem.from_graph(response.json())
                    raise UploadIncompleteError(
                        f"Final chunk of {total} bytes was accepted ({response.status_code}) "
                        "but no item was returned",
                        status_code=response.status_code,
                    )

                if response.status_code in (200, 201):
                    raise UploadIncompleteError(
                        f"Server completed the upload after byte {end} of {total}",
                        status_code=response.status_code,
                    )

                next_start = self._next_offset(response.json(), end + 1)

            if next_start <= start:
                stalled += 1
                if stalled >= MAX_STALLED_ROUNDS:
                    raise UploadIncompleteError(
                        f"Upload session made no progress past byte {start} of {total}"
                    )
            else:
                stalled = 0
            start = next_start

        raise UploadIncompleteError(f"Upload session ended before byte {last_byte} was sent")

    async def _put_chunk(self, upload_url: str, chunk: bytes, start: int, end: int, total: int):
        # Upload URLs are pre-authorized; a bearer token must not be sent
        return await self._client.request(
            "PUT",
            upload_url,
            content=chunk,
            headers={
                "Content-Range": f"bytes {start}-{end}/{total}",
                "Content-Length": str(len(chunk)),
            },
            authenticated=False,
        )

    async def _session_offset(self, upload_url: str, expected: int) -> int:
        response = await self._client.request("GET", upload_url, authenticated=False)
        return self._next_offset(response.json(), expected)

    @staticmethod
    def _next_offset(payload: Dict[str, Any], expected: int) -> int:
        """Honour nextExpectedRanges when the server asks for a different offset."""
        ranges = payload.get("nextExpectedRanges") or []
        starts = []
        for value in ranges:
            head = str(value).split("-", 1)[0]
            if head.isdigit():
                starts.append(int(head))
        if not starts:
            return expected
        next_start = min(starts)
        if next_start != expected:
            logger.warning(f"Server expects offset {next_start}, local offset was {expected}")
        return next_start

    async def _cancel_session(self, upload_url: str) -> None:
        try:
            await self._client.request("DELETE", upload_url, authenticated=False)
        except PublishError as e:
            logger.debug(f"Could not cancel upload session: {e}")

    # ----------------------------------------------------------------- metadata

    async def attach_metadata(self, remote_id: str, metadata: Mapping[str, Any]) -> bool:
        """
        Set list-item fields on an uploaded item. Best effort.

        Returns:
            True on success, False if the fields could not be written.
        """
        if not metadata:
            return True
        try:
            await self._client.request(
                "PATCH",
                f"{self._repo.drive_path}/items/{remote_id}/listItem/fields",
                json=dict(metadata),
            )
        except PublishError as e:
            logger.warning(f"Failed to add metadata to {remote_id}: {e}")
            return False
        logger.debug(f"Added metadata to item: {remote_id}")
        return True
