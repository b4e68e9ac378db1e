"""
Migration pipeline components.

This package contains the checkpointed page loop that copies watch-activity
records from a source index into per-user profile documents:

Modules:
    page_reader: Keyset-paginated reads from the source index
    extractor: Validation of raw hits into typed records
    aggregator: Bounded, deduplicated per-user lists
    watermark: Monotonic checkpoint derivation
    batch_writer: Batched, retrying upserts into the destination index
    checkpoint: Durable watermarks and the run ledger
    orchestrator: The run state machine
    factory: Orchestrator wiring from settings
    scheduler: APScheduler integration for periodic runs

Architecture:
    fetch page → extract → aggregate → compute watermark → persist
    checkpoint → next page ... → empty page → drain writer

    The checkpoint advances once a page is folded into the aggregate; the
    writer flushes on its own triggers and drains at the end of the run.
    Destination upserts are idempotent, so re-delivery after a crash is safe.

Usage:
    from pipeline.factory import build_orchestrator

    orchestrator = build_orchestrator(session_maker, search_client)
    result = await orchestrator.run_migration("watch-events", "watch-profiles")

    print(f"Read {result.records_read} records, watermark {result.final_watermark}")
"""

__all__ = [
    "aggregator",
    "batch_writer",
    "checkpoint",
    "extractor",
    "factory",
    "orchestrator",
    "page_reader",
    "scheduler",
    "search_client",
    "watermark",
]
