"""
Batched, retrying writes of profile upserts to the destination index.

The writer accumulates ProfileUpsert items and flushes them when any of
three triggers fires:
- pending item count reaches max_batch_items
- pending payload size reaches max_batch_bytes
- flush_interval_ms has elapsed since the last flush

Each flush is retried with exponential backoff. A batch that still has
failed items after max_attempts is counted as failed; the run keeps going.
"""

import asyncio
import contextlib
from typing import Any, Dict, List, Optional, Protocol, Sequence, Set
import logging

from opensearchpy import AsyncOpenSearch
from opensearchpy.exceptions import ConnectionError as OpenSearchConnectionError, TransportError
from pydantic import BaseModel, Field, ValidationError as PydanticValidationError

from core.config import Settings, settings as default_settings
from core.exceptions import ConfigurationError, TransientWriteError, WriteError
from pipeline.page_reader import is_retryable_status
from schemas.migration import ItemResult, ProfileUpsert, WriterStats

logger = logging.getLogger(__name__)


# Painless version of pipeline.aggregator.merge_bounded. Reports "noop" when
# the document already contains everything, which keeps re-delivery free.
MERGE_PROFILE_SCRIPT = """
boolean changed = false;
for (entry in params.lists.entrySet()) {
  List current = ctx._source.containsKey(entry.getKey()) && ctx._source[entry.getKey()] != null
      ? ctx._source[entry.getKey()] : new ArrayList();
  List merged = new ArrayList(current);
  for (item in entry.getValue()) {
    if (!merged.contains(item)) { merged.add(item); }
  }
  if (merged.size() > params.max_items) { merged = new ArrayList(merged.subList(0, params.max_items)); }
  if (!merged.equals(current)) { ctx._source[entry.getKey()] = merged; changed = true; }
}
if (changed) { ctx._source.updated_at = params.updated_at; } else { ctx.op = 'noop'; }
"""


class BatchWriterConfig(BaseModel):
    """Batching thresholds and retry policy"""

    max_batch_items: int = Field(500, ge=1)
    max_batch_bytes: int = Field(5 * 1024 * 1024, ge=1)
    flush_interval_ms: int = Field(5000, ge=1)
    backoff_base_ms: int = Field(200, ge=0)
    backoff_multiplier: float = Field(2.0, ge=1.0)
    max_attempts: int = Field(5, ge=1)
    drain_timeout_ms: int = Field(30000, ge=1)
    request_timeout_seconds: float = Field(30.0, gt=0)

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "BatchWriterConfig":
        settings = settings or default_settings
        try:
            return cls(
                max_batch_items=settings.MAX_BATCH_ITEMS,
                max_batch_bytes=settings.MAX_BATCH_BYTES,
                flush_interval_ms=settings.FLUSH_INTERVAL_MS,
                backoff_base_ms=settings.BACKOFF_BASE_MS,
                backoff_multiplier=settings.BACKOFF_MULTIPLIER,
                max_attempts=settings.MAX_FLUSH_ATTEMPTS,
                drain_timeout_ms=settings.DRAIN_TIMEOUT_MS,
                request_timeout_seconds=settings.REQUEST_TIMEOUT_SECONDS,
            )
        except PydanticValidationError as e:
            raise ConfigurationError(
                "Invalid batch writer settings",
                context={"errors": e.errors(include_url=False)},
                original_exception=e,
            )

    def backoff_seconds(self, attempt: int) -> float:
        """Delay before retry number attempt + 1 (attempt counts from 0)"""
        return self.backoff_base_ms * (self.backoff_multiplier ** attempt) / 1000


class Destination(Protocol):
    """Anything that can apply a bulk of profile upserts"""

    async def bulk_upsert(self, items: Sequence[ProfileUpsert]) -> List[ItemResult]:
        ...


class OpenSearchDestination:
    """
    Applies profile upserts to an OpenSearch index with the bulk API.

    Each item becomes an `update` action whose script merges the snapshot
    into the stored document and whose `upsert` body creates it when absent.
    """

    def __init__(self, client: AsyncOpenSearch, index: str, max_items: int = 5):
        self.client = client
        self.index = index
        self.max_items = max_items

    def build_actions(self, items: Sequence[ProfileUpsert]) -> List[Dict[str, Any]]:
        actions: List[Dict[str, Any]] = []
        for item in items:
            actions.append({
                "update": {
                    "_index": self.index,
                    "_id": item.entity_id,
                    "retry_on_conflict": 3,
                }
            })
            actions.append({
                "script": {
                    "lang": "painless",
                    "source": MERGE_PROFILE_SCRIPT,
                    "params": {
                        "lists": item.lists,
                        "max_items": self.max_items,
                        "updated_at": item.updated_at.isoformat(),
                    },
                },
                "upsert": item.document(),
            })
        return actions

    async def bulk_upsert(self, items: Sequence[ProfileUpsert]) -> List[ItemResult]:
        """
        Send one bulk request.

        Raises:
            TransientWriteError: Connection failure or retryable status
            WriteError: Request rejected as a whole
        """
        context = {"destination_index": self.index, "batch_size": len(items)}
        try:
            response = await self.client.bulk(body=self.build_actions(items))
        except OpenSearchConnectionError as e:
            raise TransientWriteError(
                f"Connection error writing to {self.index}",
                context=context,
                original_exception=e,
            )
        except TransportError as e:
            error_cls = TransientWriteError if is_retryable_status(e.status_code) else WriteError
            raise error_cls(
                f"Bulk request to {self.index} failed",
                context={**context, "status_code": e.status_code},
                original_exception=e,
            )

        results: List[ItemResult] = []
        for entry in response.get("items", []):
            outcome = entry.get("update", {})
            error = outcome.get("error")
            results.append(ItemResult(
                entity_id=str(outcome.get("_id")),
                status=int(outcome.get("status", 500)),
                result=outcome.get("result"),
                error=str(error.get("reason", error)) if isinstance(error, dict) else error,
            ))
        return results


class BatchWriter:
    """
    Accumulates upserts and flushes them in bounded batches.

    enqueue() never blocks; size and byte triggers schedule a background
    flush and a background task handles the interval trigger. At most one
    triggered flush is queued at a time, flushes are serialized, and each
    flush sends the pending items as consecutive batches bounded by
    max_batch_items and max_batch_bytes. close() stops the interval task and drains everything still
    pending, bounded by drain_timeout_ms.

    Pending items are keyed by entity id: a newer snapshot for the same
    entity replaces the queued one, since it already contains it.
    """

    def __init__(self, destination: Destination, config: Optional[BatchWriterConfig] = None):
        self.destination = destination
        self.config = config or BatchWriterConfig()
        self.stats = WriterStats()

        self._pending: Dict[str, ProfileUpsert] = {}
        self._pending_sizes: Dict[str, int] = {}
        self._pending_bytes = 0

        self._flush_lock = asyncio.Lock()
        self._flush_tasks: Set[asyncio.Task] = set()
        self._interval_task: Optional[asyncio.Task] = None
        self._last_flush: Optional[float] = None
        self._abandoned = 0
        self._flush_queued = False
        self._closed = False

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    @property
    def pending_bytes(self) -> int:
        return self._pending_bytes

    async def start(self) -> None:
        """Start the interval flush trigger"""
        self._last_flush = asyncio.get_running_loop().time()
        if self._interval_task is None:
            self._interval_task = asyncio.create_task(self._interval_loop())

    def enqueue(self, item: ProfileUpsert) -> None:
        """Queue an upsert; schedules a flush when a size threshold is reached"""
        if self._closed:
            raise WriteError(
                "Batch writer is closed",
                context={"entity_id": item.entity_id},
            )

        size = item.payload_size()
        self._pending_bytes += size - self._pending_sizes.get(item.entity_id, 0)
        self._pending.pop(item.entity_id, None)
        self._pending[item.entity_id] = item
        self._pending_sizes[item.entity_id] = size

        if len(self._pending) >= self.config.max_batch_items:
            self._schedule_flush("item threshold")
        elif self._pending_bytes >= self.config.max_batch_bytes:
            self._schedule_flush("byte threshold")

    async def wait_for_capacity(self) -> None:
        """
        Backpressure for producers: wait for in-flight flushes while the
        pending queue is more than two batches deep.
        """
        while self._flush_tasks and len(self._pending) >= 2 * self.config.max_batch_items:
            await asyncio.gather(*list(self._flush_tasks))

    def _schedule_flush(self, reason: str) -> None:
        # One queued flush drains everything, so further triggers wait for it to start
        if self._flush_queued:
            return
        logger.debug(f"Scheduling flush ({reason}): {len(self._pending)} items, {self._pending_bytes} bytes")
        self._flush_queued = True
        task = asyncio.create_task(self.flush())
        self._flush_tasks.add(task)
        task.add_done_callback(self._flush_tasks.discard)

    def _take_batch(self) -> List[ProfileUpsert]:
        """
        Remove the oldest pending items that fit in one batch.

        A batch holds at most max_batch_items items and max_batch_bytes
        bytes, except that a single item larger than max_batch_bytes is
        sent alone.
        """
        batch: List[ProfileUpsert] = []
        batch_bytes = 0
        for entity_id in list(self._pending):
            size = self._pending_sizes[entity_id]
            if batch and (
                len(batch) >= self.config.max_batch_items
                or batch_bytes + size > self.config.max_batch_bytes
            ):
                break
            batch.append(self._pending.pop(entity_id))
            del self._pending_sizes[entity_id]
            batch_bytes += size

        self._pending_bytes -= batch_bytes
        return batch

    async def flush(self) -> None:
        """Send everything pending now, one bounded batch at a time"""
        async with self._flush_lock:
            self._flush_queued = False
            while self._pending:
                batch = self._take_batch()
                self._last_flush = asyncio.get_running_loop().time()

                try:
                    await self._send_with_retry(batch)
                except asyncio.CancelledError:
                    self._abandoned += len(batch)
                    raise

    async def _send_with_retry(self, batch: List[ProfileUpsert]) -> None:
        remaining = batch
        failed: List[ItemResult] = []
        written = 0
        unchanged = 0
        last_error: Optional[str] = None

        for attempt in range(self.config.max_attempts):
            try:
                results = await asyncio.wait_for(
                    self.destination.bulk_upsert(remaining),
                    timeout=self.config.request_timeout_seconds,
                )

            except asyncio.TimeoutError:
                last_error = f"bulk request timed out after {self.config.request_timeout_seconds}s"
                logger.warning(
                    f"Flush of {len(remaining)} items timed out "
                    f"(attempt {attempt + 1}/{self.config.max_attempts})"
                )

            except TransientWriteError as e:
                last_error = e.message
                logger.warning(
                    f"Flush of {len(remaining)} items failed "
                    f"(attempt {attempt + 1}/{self.config.max_attempts}): {e.message}"
                )

            except WriteError as e:
                last_error = e.message
                logger.error(
                    f"Flush of {len(remaining)} items rejected: {e.message}",
                    extra={"error_context": e.to_dict()},
                )
                failed.extend(
                    ItemResult(entity_id=item.entity_id, status=400, error=e.message)
                    for item in remaining
                )
                remaining = []
                break

            else:
                by_id = {item.entity_id: item for item in remaining}
                retry: List[ProfileUpsert] = []
                for result in results:
                    if result.ok:
                        if result.result == "noop":
                            unchanged += 1
                        else:
                            written += 1
                    elif result.retryable and result.entity_id in by_id:
                        retry.append(by_id[result.entity_id])
                        last_error = result.error
                    else:
                        failed.append(result)

                remaining = retry
                if not remaining:
                    break
                logger.warning(
                    f"{len(remaining)} items failed with retryable errors "
                    f"(attempt {attempt + 1}/{self.config.max_attempts})"
                )

            if attempt < self.config.max_attempts - 1:
                await asyncio.sleep(self.config.backoff_seconds(attempt))

        failed.extend(
            ItemResult(entity_id=item.entity_id, status=503, error=last_error)
            for item in remaining
        )

        self.stats.batches_flushed += 1
        self.stats.items_written += written
        self.stats.items_unchanged += unchanged

        if failed:
            self.stats.failed_batches += 1
            self.stats.items_failed += len(failed)
            logger.error(
                f"Batch of {len(batch)} items finished with {len(failed)} failed items "
                f"after {self.config.max_attempts} attempts: {last_error}"
            )
        else:
            logger.info(f"Flushed {len(batch)} items ({written} written, {unchanged} unchanged)")

    async def _interval_loop(self) -> None:
        interval = self.config.flush_interval_ms / 1000
        loop = asyncio.get_running_loop()
        while True:
            await asyncio.sleep(interval)
            if self._pending and loop.time() - (self._last_flush or 0) >= interval:
                self._schedule_flush("interval")

    async def close(self) -> WriterStats:
        """
        Stop accepting items and drain.

        Items still pending or in flight when drain_timeout_ms elapses are
        counted as one failed batch.
        """
        self._closed = True

        if self._interval_task is not None:
            self._interval_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._interval_task
            self._interval_task = None

        try:
            await asyncio.wait_for(self._drain(), timeout=self.config.drain_timeout_ms / 1000)
        except asyncio.TimeoutError:
            abandoned = len(self._pending) + self._abandoned
            logger.error(
                f"Drain timed out after {self.config.drain_timeout_ms}ms; "
                f"{abandoned} items were not flushed"
            )
            if abandoned:
                self.stats.failed_batches += 1
                self.stats.items_failed += abandoned
                self._pending = {}
                self._pending_sizes = {}
                self._pending_bytes = 0

        return self.stats

    async def _drain(self) -> None:
        while self._flush_tasks:
            await asyncio.gather(*list(self._flush_tasks))
        await self.flush()
