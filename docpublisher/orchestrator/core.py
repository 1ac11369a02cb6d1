"""Core publisher - wires the Graph client, resolver, engine and batch runner."""
import logging
from dataclasses import replace
from pathlib import Path
from typing import Optional, Sequence

import httpx

from ..models import (
    BatchSummary,
    Document,
    PublishingOptions,
    PublishResult,
    RepositoryConnection,
    ResolvedRepository,
)
from ..protocols import ITokenProvider
from ..services.api_client import DEFAULT_TIMEOUT, GRAPH_BASE_URL, GraphClient
from ..services.repository import ConnectionReport, RepositoryResolver
from ..services.retry import CircuitBreaker, RetryPolicy
from ..services.storage import UploadEngine, join_path
from .batch import BatchOrchestrator, ProgressCallback
from .file_collector import DocumentCollector

logger = logging.getLogger(__name__)


class DocumentPublisher:
    """
    Publishes documents to the library named by a RepositoryConnection.

    Follows:
    - Dependency Injection (token provider and transport injected)
    - Single Responsibility (delegates to resolver, engine and batch runner)

    Usage:
        async with DocumentPublisher(connection, auth) as publisher:
            summary = await publisher.publish_directory(Path("docs"))
    """

    def __init__(
        self,
        connection: RepositoryConnection,
        token_provider: ITokenProvider,
        base_url: str = GRAPH_BASE_URL,
        timeout: float = DEFAULT_TIMEOUT,
        retry_policy: Optional[RetryPolicy] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        collector: Optional[DocumentCollector] = None,
    ):
        """
        Initialize publisher with dependencies.

        Args:
            connection: Validated connection settings
            token_provider: Usually the process-wide AuthSessionManager
            base_url: Graph API root
            timeout: Per-request timeout in seconds
            retry_policy: Retry settings for transient and throttled calls
            circuit_breaker: Shared breaker for sustained throttling
            transport: httpx transport override (tests)
            collector: Directory scanner used by publish_directory
        """
        self._connection = connection
        self._client = GraphClient(
            token_provider,
            base_url=base_url,
            timeout=timeout,
            retry_policy=retry_policy,
            circuit_breaker=circuit_breaker,
            transport=transport,
        )
        self._collector = collector or DocumentCollector()
        self._resolver = RepositoryResolver(
            self._client,
            connection.repository_address,
            connection.library_name,
        )

        # Built in initialize()
        self._engine: Optional[UploadEngine] = None
        self._batch: Optional[BatchOrchestrator] = None

    async def __aenter__(self):
        await self._client.__aenter__()
        return self

    async def __aexit__(self, *args):
        await self._client.__aexit__(*args)

    @property
    def repository(self) -> Optional[ResolvedRepository]:
        return self._resolver.resolved

    async def initialize(self) -> ResolvedRepository:
        """
        Resolve the repository and build the upload pipeline.

        Raises:
            RepositoryResolutionError: before any document work is attempted.
        """
        repo = await self._resolver.resolve()
        if self._engine is None:
            self._engine = UploadEngine(self._client, repo)
            self._batch = BatchOrchestrator(
                self._engine,
                root_folder_path=self._connection.root_folder_path,
                default_metadata=self._connection.default_metadata,
                default_tags=self._connection.default_tags,
            )
            logger.info(f"Publisher ready for {self._connection.repository_address} ({repo.drive_name})")
        return repo

    async def test_connection(self) -> ConnectionReport:
        return await self._resolver.test_connection()

    async def publish_documents(
        self,
        documents: Sequence[Document],
        options: Optional[PublishingOptions] = None,
        dry_run: bool = False,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> BatchSummary:
        await self.initialize()
        assert self._batch is not None
        return await self._batch.publish(
            documents,
            options or self._connection.publishing,
            dry_run=dry_run,
            progress_callback=progress_callback,
        )

    async def publish_document(
        self,
        document: Document,
        options: Optional[PublishingOptions] = None,
        dry_run: bool = False,
    ) -> PublishResult:
        """Publish a single document."""
        options = replace(options or self._connection.publishing, max_concurrency=1)
        summary = await self.publish_documents([document], options, dry_run=dry_run)
        return summary.results[0]

    async def publish_directory(
        self,
        source: Path,
        options: Optional[PublishingOptions] = None,
        dry_run: bool = False,
        progress_callback: Optional[ProgressCallback] = None,
        folder_path: str = "",
    ) -> BatchSummary:
        """
        Publish every document found under `source`.

        Args:
            source: File or folder to scan
            options: Publishing options (connection defaults when omitted)
            dry_run: Validate and check folders only, upload nothing
            progress_callback: Called with (completed, total) after each document
            folder_path: Extra folder prefix under the connection's root folder
        """
        await self.initialize()
        documents = self._collector.collect(Path(source))
        if folder_path:
            documents = [
                replace(doc, folder_path=join_path(folder_path, doc.folder_path))
                for doc in documents
            ]
        return await self.publish_documents(
            documents,
            options,
            dry_run=dry_run,
            progress_callback=progress_callback,
        )
