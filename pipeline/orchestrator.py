# ============================================================================
# File: pipeline/orchestrator.py
# Description: Checkpointed page loop driving read → validate → aggregate → write
# ============================================================================
"""
Migration Orchestrator - drives one migration run for one stream.

Per page:
1. FETCHING_PAGE - read the records after the cursor
2. EXTRACTING - validate raw hits; invalid ones are logged and dropped
3. AGGREGATING - fold valid records concurrently; enqueue changed profiles
4. COMPUTING_WATERMARK - max valid timestamp, never below the prior value
5. PERSISTING_CHECKPOINT - durable watermark before the next page is read

The loop ends on an empty page, a cancellation request or an unrecoverable
error; DRAINING then flushes the batch writer in every case.

The checkpoint advances once a page is folded, before its upserts are known
to be flushed. A crash in between re-delivers those upserts on the next
run, which the idempotent bounded-list merge absorbs.
"""

import asyncio
import enum
from typing import Any, Callable, List, Optional
import logging

from pydantic import BaseModel, Field, ValidationError as PydanticValidationError

from core.config import Settings, settings as default_settings
from core.exceptions import (
    CheckpointError,
    CheckpointPersistError,
    ConfigurationError,
    MigrationException,
)
from models.base import RunStatus
from pipeline.aggregator import AggregatorConfig, ProfileAggregator
from pipeline.batch_writer import BatchWriter, BatchWriterConfig, Destination
from pipeline.checkpoint import CheckpointService
from pipeline.extractor import RecordExtractor
from pipeline.page_reader import Page, PageReader
from pipeline.watermark import format_watermark, next_watermark, parse_watermark
from schemas.migration import MigrationResult
from schemas.records import WatchRecord

logger = logging.getLogger(__name__)


class MigrationState(str, enum.Enum):
    IDLE = "idle"
    FETCHING_PAGE = "fetching_page"
    EXTRACTING = "extracting"
    AGGREGATING = "aggregating"
    COMPUTING_WATERMARK = "computing_watermark"
    PERSISTING_CHECKPOINT = "persisting_checkpoint"
    DRAINING = "draining"


class OrchestratorConfig(BaseModel):
    """Run-level policy"""

    extract_concurrency: int = Field(32, ge=1)
    checkpoint_max_retries: int = Field(3, ge=1)
    checkpoint_retry_delay_ms: int = Field(500, ge=0)

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "OrchestratorConfig":
        settings = settings or default_settings
        try:
            return cls(
                extract_concurrency=settings.EXTRACT_CONCURRENCY,
                checkpoint_max_retries=settings.CHECKPOINT_MAX_RETRIES,
                checkpoint_retry_delay_ms=settings.CHECKPOINT_RETRY_DELAY_MS,
            )
        except PydanticValidationError as e:
            raise ConfigurationError(
                "Invalid orchestrator settings",
                context={"errors": e.errors(include_url=False)},
                original_exception=e,
            )


class MigrationOrchestrator:
    """
    Migration run driver

    Responsibilities:
    - Walk the source stream page by page from the persisted watermark
    - Keep the aggregate and batch writer for the lifetime of one run
    - Control checkpoint advancement
    - Record run metrics in the ledger

    Only one run per stream may be active at a time; the scheduler
    guarantees it, the orchestrator does not lock across processes.
    """

    def __init__(
        self,
        reader: PageReader,
        checkpoints: CheckpointService,
        destination_factory: Callable[[str], Destination],
        extractor: Optional[RecordExtractor] = None,
        aggregator_config: Optional[AggregatorConfig] = None,
        writer_config: Optional[BatchWriterConfig] = None,
        config: Optional[OrchestratorConfig] = None,
    ):
        self.reader = reader
        self.checkpoints = checkpoints
        self.destination_factory = destination_factory
        self.extractor = extractor or RecordExtractor()
        self.aggregator_config = aggregator_config or AggregatorConfig()
        self.writer_config = writer_config or BatchWriterConfig()
        self.config = config or OrchestratorConfig()
        self.state = MigrationState.IDLE

    def _transition(self, state: MigrationState) -> None:
        logger.debug(f"{self.state.value} -> {state.value}")
        self.state = state

    async def run_migration(
        self,
        source_stream: str,
        destination_target: str,
        stream_name: Optional[str] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> MigrationResult:
        """
        Run one migration from source_stream into destination_target.

        Args:
            source_stream: Source index (or alias) to read
            destination_target: Destination index for profile documents
            stream_name: Checkpoint key; defaults to source_stream
            cancel_event: When set, the run stops before fetching the next page

        Returns:
            MigrationResult with status SUCCESS, PARTIAL (some flushes failed)
            or CANCELLED

        Raises:
            CheckpointError: The initial checkpoint could not be read
            TransientReadError: Page reads exhausted their retries
            ReadError: Non-retryable source error
            CheckpointPersistError: Checkpoint writes exhausted their retries
            MigrationException: Any other unexpected failure
        """
        if self.state != MigrationState.IDLE:
            raise MigrationException(
                "A migration run is already in progress",
                context={"state": self.state.value, "source_index": source_stream},
            )

        stream = stream_name or source_stream
        prior = await self.checkpoints.read(stream)
        run_id = await self.checkpoints.start_run(stream, source_stream, destination_target, prior)

        result = MigrationResult(
            run_id=run_id,
            stream=stream,
            source_index=source_stream,
            destination_index=destination_target,
            initial_watermark=prior,
            final_watermark=prior,
        )
        logger.info(f"Starting migration {source_stream} -> {destination_target} (checkpoint: {prior})")

        aggregator = ProfileAggregator(self.aggregator_config)
        writer = BatchWriter(self.destination_factory(destination_target), self.writer_config)
        await writer.start()

        watermark = parse_watermark(prior)
        cursor: Optional[Any] = prior
        cancelled = False
        error: Optional[MigrationException] = None

        try:
            while True:
                if cancel_event is not None and cancel_event.is_set():
                    logger.info(f"Migration of {stream} cancelled after {result.pages_processed} pages")
                    cancelled = True
                    break

                # --------------------------------------------------
                # FETCHING_PAGE
                # --------------------------------------------------
                self._transition(MigrationState.FETCHING_PAGE)
                page = await self.reader.fetch_page(source_stream, cursor)
                if page.is_empty:
                    logger.info(f"Source {source_stream} exhausted after {result.pages_processed} pages")
                    break

                # --------------------------------------------------
                # EXTRACTING
                # --------------------------------------------------
                self._transition(MigrationState.EXTRACTING)
                records = self._extract_page(page, result)

                # --------------------------------------------------
                # AGGREGATING
                # --------------------------------------------------
                self._transition(MigrationState.AGGREGATING)
                result.records_aggregated += await self._aggregate(aggregator, records)
                for upsert in aggregator.drain_dirty():
                    writer.enqueue(upsert)
                    result.items_enqueued += 1

                # --------------------------------------------------
                # COMPUTING_WATERMARK
                # --------------------------------------------------
                self._transition(MigrationState.COMPUTING_WATERMARK)
                candidate = next_watermark([r.timestamp for r in records], watermark)

                # --------------------------------------------------
                # PERSISTING_CHECKPOINT
                # --------------------------------------------------
                self._transition(MigrationState.PERSISTING_CHECKPOINT)
                if candidate is not None and candidate != watermark:
                    formatted = format_watermark(candidate)
                    await self._persist_checkpoint(stream, formatted, result.final_watermark)
                    watermark = candidate
                    result.final_watermark = formatted

                result.pages_processed += 1
                cursor = page.cursor
                logger.info(
                    f"Page {result.pages_processed}: {len(page)} read, {len(records)} valid, "
                    f"watermark {result.final_watermark}"
                )

                await writer.wait_for_capacity()

        except MigrationException as e:
            error = e

        except Exception as e:
            logger.exception("Unexpected error in migration run")
            error = MigrationException(
                "Unexpected error in migration run",
                context={
                    "stream": stream,
                    "state": self.state.value,
                    "last_persisted_watermark": result.final_watermark,
                },
                original_exception=e,
            )

        finally:
            # --------------------------------------------------
            # DRAINING
            # --------------------------------------------------
            self._transition(MigrationState.DRAINING)
            try:
                stats = await writer.close()
            finally:
                self._transition(MigrationState.IDLE)

        result.items_written = stats.items_written
        result.items_unchanged = stats.items_unchanged
        result.items_failed = stats.items_failed
        result.failed_batches = stats.failed_batches

        if error is not None:
            result.status = RunStatus.FAILED
            result.error_message = error.message
            error.context.update({
                "records_read": result.records_read,
                "pages_processed": result.pages_processed,
                "failed_batches": result.failed_batches,
                "last_persisted_watermark": result.final_watermark,
            })
            logger.error(
                f"Migration of {stream} failed: {error.message}",
                extra={"error_context": error.to_dict()},
            )
        elif cancelled:
            result.status = RunStatus.CANCELLED
        elif result.failed_batches:
            result.status = RunStatus.PARTIAL
            result.error_message = f"{result.failed_batches} batches failed to flush"
        else:
            result.status = RunStatus.SUCCESS

        await self._record_outcome(result, error)

        if error is not None:
            raise error

        logger.info(
            f"Migration of {stream} completed: {result.status.value} - "
            f"Read: {result.records_read}, Valid: {result.records_valid}, "
            f"Aggregated: {result.records_aggregated} into {aggregator.entity_count} profiles, "
            f"Failed batches: {result.failed_batches}, "
            f"Watermark: {result.final_watermark}"
        )
        return result

    def _extract_page(self, page: Page, result: MigrationResult) -> List[WatchRecord]:
        records: List[WatchRecord] = []
        for raw in page.records:
            record = self.extractor.extract(raw)
            if record is None:
                result.records_invalid += 1
            else:
                records.append(record)
        result.records_read += len(page)
        result.records_valid += len(records)
        return records

    async def _aggregate(self, aggregator: ProfileAggregator, records: List[WatchRecord]) -> int:
        """Fold a page's records concurrently; returns how many qualified"""
        semaphore = asyncio.Semaphore(self.config.extract_concurrency)

        async def fold(record: WatchRecord) -> bool:
            async with semaphore:
                return await aggregator.fold(
                    record.entity_id,
                    record.category.value,
                    record.content_id,
                    record.watched_seconds,
                )

        outcomes = await asyncio.gather(*(fold(record) for record in records))
        return sum(1 for applied in outcomes if applied)

    async def _persist_checkpoint(
        self,
        stream: str,
        watermark: str,
        last_persisted: Optional[str],
    ) -> None:
        delay = self.config.checkpoint_retry_delay_ms / 1000
        last_error: Optional[CheckpointError] = None

        for attempt in range(self.config.checkpoint_max_retries):
            try:
                await self.checkpoints.write(stream, watermark)
                return
            except CheckpointError as e:
                last_error = e
                logger.warning(
                    f"Checkpoint write for {stream} failed "
                    f"(attempt {attempt + 1}/{self.config.checkpoint_max_retries}): {e.message}"
                )
                if attempt < self.config.checkpoint_max_retries - 1:
                    await asyncio.sleep(delay)
                    delay *= 2

        raise CheckpointPersistError(
            f"Could not persist checkpoint for {stream}",
            context={
                "stream": stream,
                "watermark": watermark,
                "last_persisted_watermark": last_persisted,
                "retry_count": self.config.checkpoint_max_retries,
            },
            original_exception=last_error,
        )

    async def _record_outcome(
        self,
        result: MigrationResult,
        error: Optional[MigrationException],
    ) -> None:
        """Write run statistics; ledger failures are logged, not raised over the run outcome"""
        try:
            await self.checkpoints.complete_run(
                result.run_id,
                result,
                error_details=error.to_dict() if error else None,
            )
            await self.checkpoints.finalize(
                result.stream,
                result.status,
                records_processed=result.records_read,
                error_message=result.error_message,
            )
        except CheckpointError as e:
            logger.error(
                f"Failed to record outcome of run {result.run_id}: {e.message}",
                extra={"error_context": e.to_dict()},
            )
