"""
Batch orchestrator - runs per-document publish jobs on a bounded worker pool.

Each job goes PENDING -> FOLDER_ENSURING -> UPLOADING -> (METADATA_TAGGING)
-> SUCCESS | FAILED. A failing job never stops its siblings.

Workers are asyncio tasks on one event loop rather than OS threads. Every
job waits on network I/O, so N tasks keep N uploads in flight; the only
blocking calls (msal token acquisition) run in a thread via asyncio.to_thread.
"""
import asyncio
import logging
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence

from ..errors import PublishError, describe_exception, error_kind_of
from ..models import BatchSummary, Document, PublishingOptions, PublishResult
from ..services.storage import join_path
from .models import JobState, PublishJob

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], None]

TAGS_FIELD = "Tags"


def merge_tags(*groups: Iterable[str]) -> List[str]:
    """Concatenate tag groups, dropping blanks and duplicates, keeping order."""
    seen = set()
    tags = []
    for group in groups:
        for tag in group or ():
            tag = tag.strip()
            if tag and tag not in seen:
                seen.add(tag)
                tags.append(tag)
    return tags


class BatchOrchestrator:
    """
    Publishes a batch of documents through an UploadEngine.

    Args:
        engine: UploadEngine (or anything with the same coroutine methods)
        root_folder_path: Folder prefix applied to every document
        default_metadata: Fields merged under each document's own metadata
        default_tags: Tags added to every document
    """

    def __init__(
        self,
        engine,
        root_folder_path: str = "",
        default_metadata: Optional[Mapping[str, Any]] = None,
        default_tags: Sequence[str] = (),
    ):
        self._engine = engine
        self._root_folder_path = root_folder_path
        self._default_metadata = dict(default_metadata or {})
        self._default_tags = tuple(default_tags)

    async def publish(
        self,
        documents: Sequence[Document],
        options: Optional[PublishingOptions] = None,
        dry_run: bool = False,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> BatchSummary:
        """
        Publish every document, at most ``options.max_concurrency`` at a time.

        Returns:
            BatchSummary with one result per document, in input order.
        """
        options = options or PublishingOptions()
        if options.max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")

        jobs = [
            PublishJob(
                index=idx,
                document=doc,
                folder_path=join_path(self._root_folder_path, doc.folder_path),
            )
            for idx, doc in enumerate(documents)
        ]
        total = len(jobs)
        if not jobs:
            logger.info("Nothing to publish")
            return BatchSummary.from_results([], dry_run=dry_run)

        worker_count = min(options.max_concurrency, total)
        logger.info(
            f"{'Dry run' if dry_run else 'Publishing'}: {total} document(s), "
            f"{worker_count} worker(s)"
        )

        queue: asyncio.Queue = asyncio.Queue()
        for job in jobs:
            queue.put_nowait(job)

        completed = 0

        def on_done() -> None:
            nonlocal completed
            completed += 1
            if progress_callback is None:
                return
            try:
                progress_callback(completed, total)
            except Exception as e:
                logger.warning(f"Progress callback raised: {e}")

        workers = [
            asyncio.create_task(self._worker(queue, options, dry_run, on_done))
            for _ in range(worker_count)
        ]
        try:
            await asyncio.gather(*workers)
        finally:
            for worker in workers:
                if not worker.done():
                    worker.cancel()

        summary = BatchSummary.from_results([job.result for job in jobs], dry_run=dry_run)
        logger.info(
            f"Batch complete: {summary.success_count} succeeded, {summary.failure_count} failed"
        )
        return summary

    async def _worker(
        self,
        queue: asyncio.Queue,
        options: PublishingOptions,
        dry_run: bool,
        on_done: Callable[[], None],
    ) -> None:
        while True:
            try:
                job = queue.get_nowait()
            except asyncio.QueueEmpty:
                return
            await self._run_job(job, options, dry_run)
            on_done()

    async def _run_job(self, job: PublishJob, options: PublishingOptions, dry_run: bool) -> PublishResult:
        doc = job.document
        try:
            if dry_run:
                return job.finish(await self._dry_run(job, options))
            return job.finish(await self._publish(job, options))
        except PublishError as e:
            logger.error(f"Failed to publish {doc.file_name} ({e.kind.value}): {e.message}")
            return job.finish(PublishResult.fail(doc.file_name, describe_exception(e), e.kind))
        except Exception as e:
            logger.exception(f"Unexpected error publishing {doc.file_name}")
            return job.finish(
                PublishResult.fail(doc.file_name, describe_exception(e), error_kind_of(e))
            )

    async def _publish(self, job: PublishJob, options: PublishingOptions) -> PublishResult:
        doc = job.document

        job.advance(JobState.FOLDER_ENSURING)
        folder = self._engine.validate_path(job.folder_path)
        self._engine.validate_path(doc.file_name)
        if folder and options.create_folders:
            await self._engine.ensure_folder(folder)

        job.advance(JobState.UPLOADING)
        logger.info(f"Uploading {doc.file_name} ({doc.size} bytes) to /{folder}")
        item = await self._engine.upload(
            doc.file_name,
            doc.content,
            folder,
            options.overwrite_existing,
        )

        if options.add_metadata:
            fields = self.build_metadata(doc)
            if fields:
                job.advance(JobState.METADATA_TAGGING)
                await self._engine.attach_metadata(item.id, fields)

        logger.info(f"Published {doc.file_name}: {item.web_url or item.id}")
        return PublishResult.ok(doc.file_name, item, size_bytes=doc.size)

    async def _dry_run(self, job: PublishJob, options: PublishingOptions) -> PublishResult:
        doc = job.document

        job.advance(JobState.FOLDER_ENSURING)
        folder = self._engine.validate_path(job.folder_path)
        self._engine.validate_path(doc.file_name)
        if folder:
            exists = await self._engine.check_folder(folder)
            if not exists:
                if options.create_folders:
                    logger.info(f"[dry-run] Would create folder /{folder}")
                else:
                    logger.warning(f"[dry-run] Folder /{folder} does not exist")
        logger.info(f"[dry-run] Would upload {doc.file_name} ({doc.size} bytes) to /{folder}")
        return PublishResult.dry_run(doc.file_name, doc.size)

    def build_metadata(self, doc: Document) -> Dict[str, Any]:
        """Default metadata overlaid with the document's own, plus merged tags."""
        fields = dict(self._default_metadata)
        fields.update(doc.metadata)
        tags = merge_tags(self._default_tags, doc.tags)
        if tags and TAGS_FIELD not in fields:
            fields[TAGS_FIELD] = ", ".join(tags)
        return fields
