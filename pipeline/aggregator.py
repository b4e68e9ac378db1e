"""
In-memory per-user profile aggregation with bounded, deduplicated lists.

Each entity (user) owns one bucket per list key. A bucket holds at most
max_items distinct content ids in first-seen order; inserts append, dedupe
and truncate, so replaying the same records leaves the bucket unchanged.
"""

import asyncio
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Set
import logging

from pydantic import BaseModel, Field, ValidationError as PydanticValidationError, field_validator

from core.config import Settings, settings as default_settings
from core.exceptions import ConfigurationError
from schemas.migration import ProfileUpsert
from schemas.records import ContentCategory, DEFAULT_CATEGORY_LIST_KEYS

logger = logging.getLogger(__name__)


def merge_bounded(existing: Iterable[str], incoming: Iterable[str], max_items: int) -> List[str]:
    """
    Append incoming ids to existing ones, dedupe keeping first occurrence,
    keep the first max_items.

    This is the only merge policy for profile buckets: the aggregator, the
    destination upsert script and the test fakes all follow it.
    """
    merged = list(dict.fromkeys([*existing, *incoming]))
    return merged[:max_items]


class AggregatorConfig(BaseModel):
    """Aggregation policy"""

    max_items: int = Field(5, ge=1)
    watch_threshold_seconds: float = Field(30.0, ge=0)
    category_list_keys: Dict[str, str] = Field(
        default_factory=lambda: dict(DEFAULT_CATEGORY_LIST_KEYS)
    )

    @field_validator("category_list_keys")
    @classmethod
    def validate_mapping(cls, v: Dict[str, str]) -> Dict[str, str]:
        known = {c.value for c in ContentCategory}
        unknown = sorted(set(v) - known)
        if unknown:
            raise ValueError(f"unknown categories in mapping: {', '.join(unknown)}")
        if any(not key or not key.strip() for key in v.values()):
            raise ValueError("list keys must be non-empty")
        if len(set(v.values())) != len(v):
            raise ValueError("list keys must be distinct")
        return v

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "AggregatorConfig":
        settings = settings or default_settings
        try:
            return cls(
                max_items=settings.MAX_ITEMS,
                watch_threshold_seconds=settings.WATCH_THRESHOLD_SECONDS,
                category_list_keys=settings.CATEGORY_LIST_KEYS,
            )
        except PydanticValidationError as e:
            raise ConfigurationError(
                "Invalid aggregation settings",
                context={"errors": e.errors(include_url=False)},
                original_exception=e,
            )


class ProfileAggregator:
    """
    Folds validated records into per-entity bounded lists for one run.

    Concurrency:
    - Folds for the same entity are serialized by a per-entity asyncio.Lock
    - Folds for different entities do not contend

    The aggregator also remembers which entities changed since the last
    drain_dirty() call so the orchestrator can enqueue one upsert per entity
    per page.
    """

    def __init__(self, config: Optional[AggregatorConfig] = None):
        self.config = config or AggregatorConfig()
        self._profiles: Dict[str, Dict[str, List[str]]] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._dirty: Set[str] = set()

    def _lock_for(self, entity_id: str) -> asyncio.Lock:
        lock = self._locks.get(entity_id)
        if lock is None:
            lock = self._locks[entity_id] = asyncio.Lock()
        return lock

    def list_key_for(self, category: str) -> Optional[str]:
        if isinstance(category, ContentCategory):
            category = category.value
        return self.config.category_list_keys.get(category)

    async def fold(
        self,
        entity_id: str,
        category: str,
        content_id: str,
        watched_seconds: float,
    ) -> bool:
        """
        Fold one viewing into the entity's bucket.

        Returns:
            True when the viewing qualified (above the threshold and mapped),
            whether or not it changed the bucket.
        """
        if watched_seconds <= self.config.watch_threshold_seconds:
            return False

        list_key = self.list_key_for(category)
        if list_key is None:
            logger.debug(f"No list key for category {category}; skipping")
            return False

        async with self._lock_for(entity_id):
            buckets = self._profiles.setdefault(entity_id, {})
            current = buckets.get(list_key, [])
            updated = merge_bounded(current, [content_id], self.config.max_items)
            if updated != current:
                buckets[list_key] = updated
                self._dirty.add(entity_id)

        return True

    def get(self, entity_id: str) -> Dict[str, List[str]]:
        """Copy of an entity's buckets (empty when unknown)"""
        return {key: list(ids) for key, ids in self._profiles.get(entity_id, {}).items()}

    def snapshot(self, entity_id: str, updated_at: Optional[datetime] = None) -> ProfileUpsert:
        return ProfileUpsert(
            entity_id=entity_id,
            lists=self.get(entity_id),
            updated_at=updated_at or datetime.now(timezone.utc),
        )

    def drain_dirty(self) -> List[ProfileUpsert]:
        """Snapshots for every entity changed since the previous drain"""
        now = datetime.now(timezone.utc)
        upserts = [self.snapshot(entity_id, now) for entity_id in sorted(self._dirty)]
        self._dirty.clear()
        return upserts

    @property
    def entity_count(self) -> int:
        return len(self._profiles)
