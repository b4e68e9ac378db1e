"""
Keyset-paginated reads from the source search index.

This module provides page fetching with:
- Ascending timestamp order, one page per call
- Keyset pagination (search_after on timestamp plus a tiebreak field)
  instead of scroll contexts, so a run can span any number of pages over
  any duration and records sharing a timestamp are never split across a
  page boundary
- Resume from a persisted watermark with an inclusive range; records at
  the watermark timestamp are re-delivered, never skipped
- Exponential backoff retry for transient backend failures
- Per-call timeouts
"""

import asyncio
from typing import Any, Dict, List, Optional
import logging

from opensearchpy import AsyncOpenSearch
from opensearchpy.exceptions import ConnectionError as OpenSearchConnectionError, TransportError
from pydantic import BaseModel, Field, ValidationError as PydanticValidationError

from core.config import Settings, settings as default_settings
from core.exceptions import ConfigurationError, ReadError, TransientReadError

logger = logging.getLogger(__name__)


def is_retryable_status(status_code: Any) -> bool:
    return isinstance(status_code, int) and (status_code == 429 or status_code >= 500)


class ReaderConfig(BaseModel):
    """Page reader configuration"""

    page_size: int = Field(500, ge=1, le=10000)
    timestamp_field: str = Field("timestamp", min_length=1)
    tiebreak_field: str = Field("_id", min_length=1)
    max_retries: int = Field(3, ge=1)
    retry_delay_ms: int = Field(1000, ge=0)
    backoff_multiplier: float = Field(2.0, ge=1.0)
    request_timeout_seconds: float = Field(30.0, gt=0)

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "ReaderConfig":
        settings = settings or default_settings
        try:
            return cls(
                page_size=settings.PAGE_SIZE,
                timestamp_field=settings.TIMESTAMP_FIELD,
                tiebreak_field=settings.TIEBREAK_FIELD,
                max_retries=settings.READ_MAX_RETRIES,
                retry_delay_ms=settings.READ_RETRY_DELAY_MS,
                backoff_multiplier=settings.BACKOFF_MULTIPLIER,
                request_timeout_seconds=settings.REQUEST_TIMEOUT_SECONDS,
            )
        except PydanticValidationError as e:
            raise ConfigurationError(
                "Invalid page reader settings",
                context={"errors": e.errors(include_url=False)},
                original_exception=e,
            )


class Page(BaseModel):
    """
    One page of raw hits in ascending (timestamp, tiebreak) order.

    cursor is the sort values of the last hit; passing it back to fetch_page
    requests the records strictly after this page.
    """

    records: List[Dict[str, Any]] = Field(default_factory=list)
    cursor: Optional[Any] = None

    @property
    def is_empty(self) -> bool:
        return not self.records

    def __len__(self) -> int:
        return len(self.records)


class PageReader:
    """
    Reads ordered pages from a source index.

    A cursor is either a persisted watermark (a single timestamp, used when
    a run starts) or the [timestamp, tiebreak] sort values of the previous
    page's last hit.

    Attributes:
        client: Shared AsyncOpenSearch client
        config: Page size, sort fields, retry and timeout policy
    """

    def __init__(self, client: AsyncOpenSearch, config: Optional[ReaderConfig] = None):
        self.client = client
        self.config = config or ReaderConfig()

    def build_query(self, after_cursor: Optional[Any] = None) -> Dict[str, Any]:
        """Search body for the page after after_cursor (first page when None)"""
        body: Dict[str, Any] = {
            "query": {"match_all": {}},
            "sort": [
                {self.config.timestamp_field: {"order": "asc"}},
                {self.config.tiebreak_field: {"order": "asc"}},
            ],
            "size": self.config.page_size,
        }

        if isinstance(after_cursor, (list, tuple)):
            body["search_after"] = list(after_cursor)
        elif after_cursor is not None and after_cursor != "":
            # Inclusive: records at the watermark timestamp may not all have been read
            body["query"] = {
                "range": {
                    self.config.timestamp_field: {
                        "gte": after_cursor,
                        "format": "strict_date_optional_time||epoch_millis",
                    }
                }
            }

        return body

    async def fetch_page(self, source_index: str, after_cursor: Optional[Any] = None) -> Page:
        """
        Fetch the next page of records.

        Args:
            source_index: Index (or alias) to read from
            after_cursor: Watermark timestamp (ISO string or epoch millis)
                to resume from, or the cursor of the previous page

        Returns:
            Page; empty when no more records match

        Raises:
            TransientReadError: Retries exhausted on timeouts/connection/5xx/429
            ReadError: Non-retryable backend error (missing index, bad query)
        """
        body = self.build_query(after_cursor)
        response = await self._search_with_retry(source_index, body, after_cursor)

        hits = response.get("hits", {}).get("hits", [])
        if not hits:
            logger.info(f"No records in {source_index} after {after_cursor}")
            return Page(records=[], cursor=after_cursor)

        last = hits[-1]
        sort_values = last.get("sort") or []
        if len(sort_values) >= 2:
            cursor = list(sort_values[:2])
        else:
            source = last.get("_source", {})
            tiebreak = last.get("_id") if self.config.tiebreak_field == "_id" else source.get(self.config.tiebreak_field)
            cursor = [source.get(self.config.timestamp_field), tiebreak]

        logger.debug(f"Fetched {len(hits)} records from {source_index} (cursor: {cursor})")
        return Page(records=hits, cursor=cursor)

    async def _search_with_retry(
        self,
        source_index: str,
        body: Dict[str, Any],
        after_cursor: Optional[Any],
    ) -> Dict[str, Any]:
        context = {"source_index": source_index, "after_cursor": after_cursor}
        delay = self.config.retry_delay_ms / 1000
        last_exception: Optional[Exception] = None

        for attempt in range(self.config.max_retries):
            try:
                logger.debug(
                    f"Search attempt {attempt + 1}/{self.config.max_retries} on {source_index}"
                )
                return await asyncio.wait_for(
                    self.client.search(index=source_index, body=body),
                    timeout=self.config.request_timeout_seconds,
                )

            except asyncio.TimeoutError as e:
                last_exception = e
                logger.warning(
                    f"Search on {source_index} timed out after "
                    f"{self.config.request_timeout_seconds}s "
                    f"(attempt {attempt + 1}/{self.config.max_retries})"
                )

            except OpenSearchConnectionError as e:
                last_exception = e
                logger.warning(
                    f"Connection error searching {source_index} "
                    f"(attempt {attempt + 1}/{self.config.max_retries}): {str(e)}"
                )

            except TransportError as e:
                if not is_retryable_status(e.status_code):
                    raise ReadError(
                        f"Search on {source_index} failed",
                        context={**context, "status_code": e.status_code},
                        original_exception=e,
                    )
                last_exception = e
                logger.warning(
                    f"Search on {source_index} returned {e.status_code} "
                    f"(attempt {attempt + 1}/{self.config.max_retries})"
                )

            if attempt < self.config.max_retries - 1:
                await asyncio.sleep(delay)
                delay *= self.config.backoff_multiplier

        raise TransientReadError(
            f"Search on {source_index} failed after {self.config.max_retries} attempts",
            context={**context, "retry_count": self.config.max_retries},
            original_exception=last_exception,
        )
