"""
Unit tests for the batch writer flush triggers, retries and drain
"""

import asyncio
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
from opensearchpy.exceptions import ConnectionError as OpenSearchConnectionError, TransportError

from core.exceptions import TransientWriteError, WriteError
from pipeline.batch_writer import BatchWriter, BatchWriterConfig, OpenSearchDestination
from schemas.migration import ItemResult, ProfileUpsert

UPDATED_AT = datetime(2024, 1, 15, 10, 0, tzinfo=timezone.utc)


def upsert(entity_id: str, *ids: str) -> ProfileUpsert:
    return ProfileUpsert(
        entity_id=entity_id,
        lists={"recent_movies": list(ids) or ["m1"]},
        updated_at=UPDATED_AT,
    )


def config(**overrides) -> BatchWriterConfig:
    values = {
        "max_batch_items": 100,
        "max_batch_bytes": 10 * 1024 * 1024,
        "flush_interval_ms": 60000,
        "backoff_base_ms": 0,
        "max_attempts": 3,
        "drain_timeout_ms": 2000,
    }
    values.update(overrides)
    return BatchWriterConfig(**values)


async def settle(writer: BatchWriter) -> None:
    while writer._flush_tasks:
        await asyncio.gather(*list(writer._flush_tasks))


# ============================================================================
# Flush triggers
# ============================================================================

@pytest.mark.asyncio
async def test_item_threshold_triggers_flush(fake_destination):
    writer = BatchWriter(fake_destination, config(max_batch_items=2))
    await writer.start()

    writer.enqueue(upsert("u1"))
    await asyncio.sleep(0)
    assert fake_destination.calls == []

    writer.enqueue(upsert("u2"))
    await settle(writer)

    assert len(fake_destination.calls) == 1
    assert [u.entity_id for u in fake_destination.calls[0]] == ["u1", "u2"]
    assert writer.pending_count == 0
    await writer.close()


@pytest.mark.asyncio
async def test_byte_threshold_triggers_flush(fake_destination):
    item = upsert("u1", "m1", "m2", "m3")
    writer = BatchWriter(fake_destination, config(max_batch_bytes=item.payload_size()))
    await writer.start()

    writer.enqueue(item)
    await settle(writer)

    assert len(fake_destination.calls) == 1
    assert writer.pending_bytes == 0
    await writer.close()


@pytest.mark.asyncio
async def test_burst_above_item_threshold_is_sent_in_bounded_batches(fake_destination):
    writer = BatchWriter(fake_destination, config(max_batch_items=100))
    await writer.start()

    for i in range(500):
        writer.enqueue(upsert(f"u{i:03d}"))

    # one queued flush covers the whole burst
    assert len(writer._flush_tasks) == 1

    stats = await writer.close()

    assert [len(call) for call in fake_destination.calls] == [100] * 5
    sent = [u.entity_id for call in fake_destination.calls for u in call]
    assert sent == [f"u{i:03d}" for i in range(500)]
    assert stats.items_written == 500
    assert stats.batches_flushed == 5
    assert writer.pending_count == 0


@pytest.mark.asyncio
async def test_burst_above_byte_threshold_is_sent_in_bounded_batches(fake_destination):
    item_size = upsert("u000").payload_size()
    limit = 3 * item_size
    writer = BatchWriter(fake_destination, config(max_batch_bytes=limit))
    await writer.start()

    for i in range(10):
        writer.enqueue(upsert(f"u{i:03d}"))
    stats = await writer.close()

    assert [len(call) for call in fake_destination.calls] == [3, 3, 3, 1]
    for call in fake_destination.calls:
        assert sum(u.payload_size() for u in call) <= limit
    assert stats.items_written == 10
    assert writer.pending_bytes == 0


@pytest.mark.asyncio
async def test_item_larger_than_byte_limit_is_sent_alone(fake_destination):
    writer = BatchWriter(fake_destination, config(max_batch_bytes=1))

    writer.enqueue(upsert("u1", "m1", "m2"))
    writer.enqueue(upsert("u2", "m3"))
    stats = await writer.close()

    assert [len(call) for call in fake_destination.calls] == [1, 1]
    assert stats.items_written == 2


@pytest.mark.asyncio
async def test_interval_triggers_flush(fake_destination):
    writer = BatchWriter(fake_destination, config(flush_interval_ms=20))
    await writer.start()

    writer.enqueue(upsert("u1"))
    await asyncio.sleep(0.2)
    await settle(writer)

    assert len(fake_destination.calls) == 1
    await writer.close()


@pytest.mark.asyncio
async def test_newer_snapshot_replaces_pending_one(fake_destination):
    writer = BatchWriter(fake_destination, config())

    writer.enqueue(upsert("u1", "m1"))
    writer.enqueue(upsert("u1", "m1", "m2"))
    assert writer.pending_count == 1

    await writer.flush()

    assert fake_destination.documents["u1"] == {"recent_movies": ["m1", "m2"]}


# ============================================================================
# Retry and failure accounting
# ============================================================================

@pytest.mark.asyncio
async def test_transient_failure_is_retried():
    destination = MagicMock()
    destination.bulk_upsert = AsyncMock(side_effect=[
        TransientWriteError("Connection error writing to watch-profiles"),
        [ItemResult(entity_id="u1", status=201, result="created")],
    ])
    writer = BatchWriter(destination, config())

    writer.enqueue(upsert("u1"))
    stats = await writer.close()

    assert destination.bulk_upsert.await_count == 2
    assert stats.items_written == 1
    assert stats.failed_batches == 0


@pytest.mark.asyncio
async def test_only_failed_items_are_retried(fake_destination):
    writer = BatchWriter(fake_destination, config(max_attempts=3))
    fake_destination.fail_entities = {"u2"}

    writer.enqueue(upsert("u1"))
    writer.enqueue(upsert("u2"))
    stats = await writer.close()

    assert [len(call) for call in fake_destination.calls] == [2, 1, 1]
    assert all(call[0].entity_id == "u2" for call in fake_destination.calls[1:])
    assert stats.items_written == 1
    assert stats.items_failed == 1
    assert stats.failed_batches == 1


@pytest.mark.asyncio
async def test_exhausted_batch_does_not_stop_later_batches(fake_destination):
    writer = BatchWriter(fake_destination, config(max_attempts=2))
    fake_destination.fail_entities = {"u1"}

    writer.enqueue(upsert("u1"))
    await writer.flush()
    fake_destination.fail_entities = set()
    writer.enqueue(upsert("u2"))
    stats = await writer.close()

    assert stats.failed_batches == 1
    assert stats.batches_flushed == 2
    assert "u2" in fake_destination.documents


@pytest.mark.asyncio
async def test_rejected_request_fails_batch_without_retry():
    destination = MagicMock()
    destination.bulk_upsert = AsyncMock(side_effect=WriteError("Bulk request to watch-profiles failed"))
    writer = BatchWriter(destination, config())

    writer.enqueue(upsert("u1"))
    writer.enqueue(upsert("u2"))
    stats = await writer.close()

    assert destination.bulk_upsert.await_count == 1
    assert stats.failed_batches == 1
    assert stats.items_failed == 2


@pytest.mark.asyncio
async def test_noop_upserts_are_counted_as_unchanged(fake_destination):
    writer = BatchWriter(fake_destination, config())

    writer.enqueue(upsert("u1", "m1"))
    await writer.flush()
    writer.enqueue(upsert("u1", "m1"))
    stats = await writer.close()

    assert stats.items_written == 1
    assert stats.items_unchanged == 1
    assert fake_destination.results[-1].result == "noop"


def test_backoff_is_exponential():
    cfg = BatchWriterConfig(backoff_base_ms=200, backoff_multiplier=2.0)

    assert [cfg.backoff_seconds(n) for n in range(3)] == [0.2, 0.4, 0.8]


# ============================================================================
# Shutdown
# ============================================================================

@pytest.mark.asyncio
async def test_close_drains_pending_items(fake_destination):
    writer = BatchWriter(fake_destination, config())
    await writer.start()

    for i in range(5):
        writer.enqueue(upsert(f"u{i}"))
    stats = await writer.close()

    assert len(fake_destination.documents) == 5
    assert stats.items_written == 5
    assert writer.pending_count == 0


@pytest.mark.asyncio
async def test_enqueue_after_close_raises(fake_destination):
    writer = BatchWriter(fake_destination, config())
    await writer.close()

    with pytest.raises(WriteError):
        writer.enqueue(upsert("u1"))


@pytest.mark.asyncio
async def test_drain_timeout_counts_unflushed_items_as_failed_batch():
    release = asyncio.Event()

    async def stuck_bulk(items):
        await release.wait()
        return []

    destination = MagicMock()
    destination.bulk_upsert = stuck_bulk
    writer = BatchWriter(destination, config(drain_timeout_ms=50, max_batch_items=2))

    writer.enqueue(upsert("u1"))
    writer.enqueue(upsert("u2"))
    await asyncio.sleep(0)
    writer.enqueue(upsert("u3"))
    stats = await writer.close()

    assert stats.failed_batches == 1
    assert stats.items_failed == 3
    assert stats.items_written == 0


# ============================================================================
# OpenSearchDestination
# ============================================================================

def test_build_actions_pairs_update_with_script_and_upsert():
    destination = OpenSearchDestination(MagicMock(), "watch-profiles", max_items=5)

    actions = destination.build_actions([upsert("u1", "m1", "m2")])

    assert actions[0] == {"update": {"_index": "watch-profiles", "_id": "u1", "retry_on_conflict": 3}}
    script = actions[1]["script"]
    assert script["params"]["lists"] == {"recent_movies": ["m1", "m2"]}
    assert script["params"]["max_items"] == 5
    assert actions[1]["upsert"]["user_id"] == "u1"
    assert actions[1]["upsert"]["recent_movies"] == ["m1", "m2"]


@pytest.mark.asyncio
async def test_bulk_upsert_parses_item_results():
    client = MagicMock()
    client.bulk = AsyncMock(return_value={
        "errors": True,
        "items": [
            {"update": {"_id": "u1", "status": 201, "result": "created"}},
            {"update": {"_id": "u2", "status": 200, "result": "noop"}},
            {"update": {"_id": "u3", "status": 429, "error": {"type": "es_rejected_execution_exception", "reason": "queue full"}}},
        ],
    })
    destination = OpenSearchDestination(client, "watch-profiles")

    results = await destination.bulk_upsert([upsert("u1"), upsert("u2"), upsert("u3")])

    assert [r.status for r in results] == [201, 200, 429]
    assert results[1].result == "noop"
    assert results[2].retryable
    assert results[2].error == "queue full"


@pytest.mark.asyncio
async def test_bulk_upsert_classifies_request_errors():
    client = MagicMock()
    destination = OpenSearchDestination(client, "watch-profiles")

    client.bulk = AsyncMock(side_effect=OpenSearchConnectionError("N/A", "refused", Exception("refused")))
    with pytest.raises(TransientWriteError):
        await destination.bulk_upsert([upsert("u1")])

    client.bulk = AsyncMock(side_effect=TransportError(502, "bad gateway"))
    with pytest.raises(TransientWriteError):
        await destination.bulk_upsert([upsert("u1")])

    client.bulk = AsyncMock(side_effect=TransportError(400, "mapper_parsing_exception"))
    with pytest.raises(WriteError) as exc_info:
        await destination.bulk_upsert([upsert("u1")])
    assert not isinstance(exc_info.value, TransientWriteError)
