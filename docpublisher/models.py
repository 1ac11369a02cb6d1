"""
Models for docpublisher module.

Immutable dataclasses following Single Responsibility Principle.
"""
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple

from .errors import ErrorKind


class AuthMethod(str, Enum):
    """Supported authentication methods."""
    OAUTH2 = "oauth2"
    SERVICE_PRINCIPAL = "service-principal"
    CERTIFICATE = "certificate"


class PublishStatus(Enum):
    """Publish operation status."""
    SUCCESS = "success"
    FAILED = "failed"
    DRY_RUN = "dry_run"  # Validated only, nothing uploaded


@dataclass(frozen=True)
class OAuth2Settings:
    """Interactive (device-code) flow settings."""
    redirect_uri: str
    scopes: Tuple[str, ...]
    authority: str


@dataclass(frozen=True)
class PublishingOptions:
    """Immutable options applied to every document of a batch."""
    enable_versioning: bool = True
    create_folders: bool = True
    overwrite_existing: bool = True
    add_metadata: bool = True
    max_concurrency: int = 3


@dataclass(frozen=True)
class RepositoryConnection:
    """Validated connection settings. Built only by ConfigResolver."""
    auth_method: AuthMethod
    tenant_id: str
    client_id: str
    repository_address: str
    library_name: str
    root_folder_path: str = ""
    client_secret: Optional[str] = None
    certificate_path: Optional[str] = None
    certificate_thumbprint: Optional[str] = None
    oauth2: Optional[OAuth2Settings] = None
    publishing: PublishingOptions = field(default_factory=PublishingOptions)
    default_tags: Tuple[str, ...] = ()
    default_metadata: Mapping[str, Any] = field(default_factory=dict)

    @property
    def authority(self) -> str:
        if self.oauth2 and self.oauth2.authority:
            return self.oauth2.authority
        return f"https://login.microsoftonline.com/{self.tenant_id}"

    @property
    def scopes(self) -> Tuple[str, ...]:
        """Delegated scopes for oauth2, the app-level default scope otherwise."""
        if self.auth_method == AuthMethod.OAUTH2 and self.oauth2:
            return self.oauth2.scopes
        return ("https://graph.microsoft.com/.default",)


@dataclass(frozen=True)
class ResolvedRepository:
    """Stable identifiers of the target site and document library."""
    site_id: str
    drive_id: str
    drive_name: Optional[str] = None
    site_url: Optional[str] = None

    @property
    def drive_path(self) -> str:
        return f"/sites/{self.site_id}/drives/{self.drive_id}"


@dataclass
class AuthSession:
    """Current credentials. Mutated only by AuthSessionManager."""
    account_identity: Optional[str]
    access_token: Optional[str]
    expires_at: float = 0.0
    cache_location: Optional[str] = None

    def is_expired(self, skew: float = 300.0, now: Optional[float] = None) -> bool:
        """True if the token is missing or expires within `skew` seconds."""
        if not self.access_token:
            return True
        current = time.time() if now is None else now
        return current + skew >= self.expires_at


@dataclass(frozen=True)
class DeviceChallenge:
    """User code shown to the operator during the device-code flow."""
    user_code: str
    verification_uri: str
    message: str
    expires_at: float = 0.0


@dataclass(frozen=True)
class Document:
    """Immutable document to publish: opaque bytes plus target path and metadata."""
    title: str
    content: bytes
    file_name: str
    folder_path: str = ""
    metadata: Mapping[str, Any] = field(default_factory=dict)
    tags: Tuple[str, ...] = ()

    @property
    def size(self) -> int:
        return len(self.content)

    @classmethod
    def from_text(cls, file_name: str, text: str, **kwargs):
        title = kwargs.pop("title", None) or file_name.rsplit(".", 1)[0]
        return cls(title=title, content=text.encode("utf-8"), file_name=file_name, **kwargs)


@dataclass(frozen=True)
class DriveItem:
    """Remote item returned by the document repository."""
    id: str
    name: str
    web_url: Optional[str] = None
    size: Optional[int] = None
    last_modified: Optional[str] = None

    @classmethod
    def from_graph(cls, payload: Dict[str, Any]) -> "DriveItem":
        return cls(
            id=payload["id"],
            name=payload.get("name", ""),
            web_url=payload.get("webUrl"),
            size=payload.get("size"),
            last_modified=payload.get("lastModifiedDateTime"),
        )


@dataclass(frozen=True)
class PublishResult:
    """Immutable result of publishing one document."""
    file_name: str
    status: PublishStatus = PublishStatus.SUCCESS
    remote_id: Optional[str] = None
    remote_url: Optional[str] = None
    size_bytes: Optional[int] = None
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None

    @property
    def success(self) -> bool:
        return self.status in (PublishStatus.SUCCESS, PublishStatus.DRY_RUN)

    @classmethod
    def ok(cls, file_name: str, item: DriveItem, size_bytes: Optional[int] = None):
        return cls(
            file_name=file_name,
            status=PublishStatus.SUCCESS,
            remote_id=item.id,
            remote_url=item.web_url,
            size_bytes=item.size if item.size is not None else size_bytes,
        )

    @classmethod
    def fail(cls, file_name: str, error: str, error_kind: Optional[ErrorKind] = None):
        return cls(
            file_name=file_name,
            status=PublishStatus.FAILED,
            error=error,
            error_kind=error_kind,
        )

    @classmethod
    def dry_run(cls, file_name: str, size_bytes: int):
        return cls(file_name=file_name, status=PublishStatus.DRY_RUN, size_bytes=size_bytes)


@dataclass
class BatchSummary:
    """Aggregated outcome of a batch, results in input order."""
    total_count: int
    success_count: int
    failure_count: int
    results: List[PublishResult]
    dry_run: bool = False

    @property
    def all_success(self) -> bool:
        return self.failure_count == 0

    @property
    def failures(self) -> List[PublishResult]:
        return [r for r in self.results if not r.success]

    @classmethod
    def from_results(cls, results: List[PublishResult], dry_run: bool = False):
        succeeded = sum(1 for r in results if r.success)
        return cls(
            total_count=len(results),
            success_count=succeeded,
            failure_count=len(results) - succeeded,
            results=list(results),
            dry_run=dry_run,
        )
