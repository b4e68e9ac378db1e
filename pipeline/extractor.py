"""
Validate raw search hits into typed watch records
"""

from typing import Any, Dict, Mapping, Optional
import logging

from pydantic import ValidationError as PydanticValidationError

from core.exceptions import ValidationError
from schemas.records import DEFAULT_FIELD_MAP, WatchRecord

logger = logging.getLogger(__name__)


class RecordExtractor:
    """
    Turn raw source hits into WatchRecord models.

    Handles:
    - Field mapping from source document names to typed names
    - Type conversion and validation (via WatchRecord)
    - Logging of the first offending field for each rejected record

    A malformed record yields None; extract never raises, so one bad
    document cannot fail the page it arrived in.
    """

    def __init__(self, field_map: Optional[Dict[str, str]] = None):
        self.field_map = {**DEFAULT_FIELD_MAP, **(field_map or {})}

    def extract(self, raw_record: Any) -> Optional[WatchRecord]:
        """
        Extract a typed record from a raw hit.

        Accepts either a full hit ({"_id", "_source", ...}) or a bare source
        document.

        Returns:
            WatchRecord, or None when the record is invalid
        """
        if not isinstance(raw_record, Mapping):
            self._reject(None, "record", "record is not a document")
            return None

        record_id = raw_record.get("_id")
        source = raw_record.get("_source", raw_record)
        if not isinstance(source, Mapping):
            self._reject(record_id, "_source", "source is not a document")
            return None

        payload = {
            field: source.get(source_field)
            for field, source_field in self.field_map.items()
        }

        try:
            return WatchRecord(**payload)
        except PydanticValidationError as e:
            first = e.errors()[0]
            field_name = str(first["loc"][0]) if first.get("loc") else "record"
            self._reject(record_id, self.field_map.get(field_name, field_name), first["msg"])
            return None

    def _reject(self, record_id: Optional[str], field_name: str, reason: str) -> None:
        error = ValidationError(
            "Record failed validation",
            context={
                "record_id": record_id,
                "field_name": field_name,
                "reason": reason,
            },
        )
        logger.warning(
            f"Dropping record {record_id}: invalid field '{field_name}' ({reason})",
            extra={"error_context": error.to_dict()},
        )
