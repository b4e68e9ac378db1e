"""
Run one migration of the configured stream and exit.

Usage:
    python scripts/run_migration.py [SOURCE_INDEX] [DESTINATION_INDEX]

Without arguments SOURCE_INDEX / DESTINATION_INDEX / STREAM_NAME come from
the environment. Exit code 0 on success, 2 when some batches failed to
flush, 1 on failure.
"""

import asyncio
import sys
import os
import logging

# Add current directory to path to allow imports from core, models, etc.
sys.path.append(os.getcwd())

from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from core.config import settings
from core.exceptions import MigrationException
from core.logging import setup_logging
from models.base import RunStatus
from pipeline.factory import build_orchestrator
from pipeline.search_client import create_search_client

setup_logging()
logger = logging.getLogger(__name__)


async def run_migration(source_index: str, destination_index: str) -> int:
    engine = create_async_engine(settings.DATABASE_URL, echo=False)
    AsyncSessionLocal = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )
    client = create_search_client(settings)

    try:
        orchestrator = build_orchestrator(AsyncSessionLocal, client, settings)
        stream_name = settings.STREAM_NAME if source_index == settings.SOURCE_INDEX else source_index
        result = await orchestrator.run_migration(
            source_index,
            destination_index,
            stream_name=stream_name,
        )
    except MigrationException as e:
        logger.error(f"Migration failed: {e}", extra={"error_context": e.to_dict()})
        return 1
    finally:
        await client.close()
        await engine.dispose()

    logger.info(
        f"Migration {result.run_id} finished with status {result.status.value}: "
        f"{result.records_read} read, {result.items_written} written, "
        f"watermark {result.final_watermark}"
    )
    return 2 if result.status == RunStatus.PARTIAL else 0


if __name__ == "__main__":
    source = sys.argv[1] if len(sys.argv) > 1 else settings.SOURCE_INDEX
    destination = sys.argv[2] if len(sys.argv) > 2 else settings.DESTINATION_INDEX
    sys.exit(asyncio.run(run_migration(source, destination)))
