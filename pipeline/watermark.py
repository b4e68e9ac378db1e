"""
Watermark calculation for checkpoint advancement.

The watermark of a stream is the timestamp up to which records have been
folded into the aggregate. It is persisted as an ISO-8601 UTC string and
never moves backwards.
"""

from datetime import datetime, timezone
from typing import Iterable, Optional
import logging

logger = logging.getLogger(__name__)


def parse_watermark(value: Optional[str]) -> Optional[datetime]:
    """Parse a persisted watermark; empty means the stream has never advanced"""
    if value is None or value == "":
        return None
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def format_watermark(value: datetime) -> str:
    """
    Serialize a watermark with millisecond precision.

    Sub-millisecond digits are truncated, which can only move the watermark
    earlier; the next run then re-reads at most the boundary records.
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return (
        value.astimezone(timezone.utc)
        .isoformat(timespec="milliseconds")
        .replace("+00:00", "Z")
    )


def next_watermark(
    page_timestamps: Iterable[Optional[datetime]],
    prior_watermark: Optional[datetime],
) -> Optional[datetime]:
    """
    Derive the new checkpoint value from a page.

    Args:
        page_timestamps: Timestamps of the valid records in the page
        prior_watermark: Watermark persisted before the page (None on first run)

    Returns:
        prior_watermark when the page has no valid timestamp, the page maximum
        on a stream's first page, otherwise the larger of the two. Any error
        while comparing returns prior_watermark unchanged.
    """
    try:
        candidates = [ts for ts in page_timestamps if ts is not None]
        if not candidates:
            return prior_watermark

        max_seen = max(candidates)
        if prior_watermark is None:
            return max_seen

        if max_seen < prior_watermark:
            logger.warning(
                f"Page maximum {max_seen.isoformat()} is behind watermark "
                f"{prior_watermark.isoformat()}; keeping the watermark"
            )
        return max(max_seen, prior_watermark)

    except (TypeError, ValueError) as e:
        logger.error(f"Watermark comparison failed, keeping prior value: {str(e)}")
        return prior_watermark
