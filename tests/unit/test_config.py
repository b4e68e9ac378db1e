"""
Unit tests for startup configuration validation
"""

import pytest
from unittest.mock import MagicMock

from core.config import Settings
from core.exceptions import ConfigurationError
from pipeline.batch_writer import BatchWriterConfig
from pipeline.factory import build_orchestrator
from pipeline.orchestrator import MigrationOrchestrator, OrchestratorConfig
from pipeline.page_reader import ReaderConfig


def test_defaults_build_an_orchestrator():
    orchestrator = build_orchestrator(MagicMock(), MagicMock(), Settings())

    assert isinstance(orchestrator, MigrationOrchestrator)
    assert orchestrator.aggregator_config.max_items == 5
    assert orchestrator.reader.config.page_size == 500
    assert orchestrator.writer_config.max_batch_items == 500


def test_settings_flow_into_component_configs():
    settings = Settings(
        PAGE_SIZE=50,
        TIMESTAMP_FIELD="@timestamp",
        TIEBREAK_FIELD="event_id",
        MAX_BATCH_ITEMS=10,
        FLUSH_INTERVAL_MS=250,
        CHECKPOINT_MAX_RETRIES=7,
    )

    assert ReaderConfig.from_settings(settings).timestamp_field == "@timestamp"
    assert ReaderConfig.from_settings(settings).tiebreak_field == "event_id"
    assert BatchWriterConfig.from_settings(settings).flush_interval_ms == 250
    assert OrchestratorConfig.from_settings(settings).checkpoint_max_retries == 7


@pytest.mark.parametrize("overrides", [
    {"WATCH_THRESHOLD_SECONDS": -5},
    {"MAX_ITEMS": 0},
    {"CATEGORY_LIST_KEYS": {"audiobook": "recent_audiobooks"}},
    {"PAGE_SIZE": 0},
    {"MAX_BATCH_ITEMS": 0},
    {"BACKOFF_MULTIPLIER": 0.5},
    {"EXTRACT_CONCURRENCY": 0},
])
def test_invalid_settings_fail_fast(overrides):
    with pytest.raises(ConfigurationError):
        build_orchestrator(MagicMock(), MagicMock(), Settings(**overrides))
