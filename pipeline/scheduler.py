import logging
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker

from core.config import Settings, settings as default_settings
from core.exceptions import MigrationException
from pipeline.factory import build_orchestrator
from pipeline.search_client import create_search_client
from schemas.migration import MigrationResult

logger = logging.getLogger(__name__)


class MigrationScheduler:
    """
    Periodic trigger for the configured stream.

    The orchestrator is built on construction, so configuration errors
    surface at startup. max_instances=1 keeps runs of the stream from
    overlapping.
    """

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or default_settings
        self.scheduler = AsyncIOScheduler()
        self.engine = create_async_engine(self.settings.DATABASE_URL, echo=False)
        self.SessionLocal = async_sessionmaker(
            self.engine, class_=AsyncSession, expire_on_commit=False
        )
        self.search_client = create_search_client(self.settings)
        self.orchestrator = build_orchestrator(self.SessionLocal, self.search_client, self.settings)

    async def run_migration_job(self) -> Optional[MigrationResult]:
        """Job to run one migration"""
        logger.info("Scheduler: Starting migration job")
        try:
            return await self.orchestrator.run_migration(
                self.settings.SOURCE_INDEX,
                self.settings.DESTINATION_INDEX,
                stream_name=self.settings.STREAM_NAME,
            )
        except MigrationException as e:
            logger.error(f"Scheduler: migration job failed - {e}")
            return None

    def start(self):
        """Start the scheduler"""
        self.scheduler.add_job(
            self.run_migration_job,
            trigger=IntervalTrigger(minutes=self.settings.MIGRATION_INTERVAL_MINUTES),
            id="migration_job",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self.scheduler.start()
        logger.info("Migration scheduler started")

    async def stop(self):
        if self.scheduler.running:
            self.scheduler.shutdown()
        await self.search_client.close()
        await self.engine.dispose()
        logger.info("Migration scheduler stopped")
