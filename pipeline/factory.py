"""
Wire a MigrationOrchestrator from settings.

All component configs are validated here, so a bad threshold or category
mapping raises ConfigurationError before any run starts.
"""

from typing import Optional

from opensearchpy import AsyncOpenSearch
from sqlalchemy.ext.asyncio import async_sessionmaker

from core.config import Settings, settings as default_settings
from pipeline.aggregator import AggregatorConfig
from pipeline.batch_writer import BatchWriterConfig, OpenSearchDestination
from pipeline.checkpoint import CheckpointService
from pipeline.extractor import RecordExtractor
from pipeline.orchestrator import MigrationOrchestrator, OrchestratorConfig
from pipeline.page_reader import PageReader, ReaderConfig


def build_orchestrator(
    session_maker: async_sessionmaker,
    search_client: AsyncOpenSearch,
    settings: Optional[Settings] = None,
) -> MigrationOrchestrator:
    settings = settings or default_settings

    reader_config = ReaderConfig.from_settings(settings)
    aggregator_config = AggregatorConfig.from_settings(settings)
    writer_config = BatchWriterConfig.from_settings(settings)
    orchestrator_config = OrchestratorConfig.from_settings(settings)

    return MigrationOrchestrator(
        reader=PageReader(search_client, reader_config),
        checkpoints=CheckpointService(
            session_maker,
            timeout_seconds=settings.REQUEST_TIMEOUT_SECONDS,
        ),
        destination_factory=lambda index: OpenSearchDestination(
            search_client,
            index,
            max_items=aggregator_config.max_items,
        ),
        extractor=RecordExtractor({"timestamp": reader_config.timestamp_field}),
        aggregator_config=aggregator_config,
        writer_config=writer_config,
        config=orchestrator_config,
    )
