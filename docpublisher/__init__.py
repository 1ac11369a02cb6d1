"""
docpublisher - Batch publishing of documents to SharePoint document libraries.

Follows SOLID principles:
- Single Responsibility: config, auth, resolution, upload and batching are separate services
- Interface Segregation: token and identity providers are small protocols
- Dependency Injection: one AuthSessionManager is passed to every component

Usage:
    from docpublisher import ConfigResolver, AuthSessionManager, DocumentPublisher
    from docpublisher.services import MsalIdentityProvider

    connection = ConfigResolver().load()
    auth = AuthSessionManager(connection, MsalIdentityProvider.from_connection(connection))
    await auth.load()

    async with DocumentPublisher(connection, auth) as publisher:
        summary = await publisher.publish_directory(Path("generated-documents"))
    auth.flush()
"""
__version__ = "0.1.0"

from .config import ConfigResolver, ValidationReport
from .errors import (
    AuthenticationError,
    ConfigurationError,
    ErrorKind,
    PublishError,
    RepositoryResolutionError,
)
from .models import (
    AuthMethod,
    BatchSummary,
    Document,
    PublishingOptions,
    PublishResult,
    PublishStatus,
    RepositoryConnection,
)
from .orchestrator import BatchOrchestrator, DocumentCollector, DocumentPublisher
from .services import AuthSessionManager, RepositoryResolver, UploadEngine

__all__ = [
    # Main
    "DocumentPublisher",
    "BatchOrchestrator",
    "DocumentCollector",
    # Config
    "ConfigResolver",
    "ValidationReport",
    # Services
    "AuthSessionManager",
    "RepositoryResolver",
    "UploadEngine",
    # Models
    "AuthMethod",
    "BatchSummary",
    "Document",
    "PublishingOptions",
    "PublishResult",
    "PublishStatus",
    "RepositoryConnection",
    # Errors
    "AuthenticationError",
    "ConfigurationError",
    "ErrorKind",
    "PublishError",
    "RepositoryResolutionError",
]
