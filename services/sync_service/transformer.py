"""Mapping of Readwise Reader documents to the local persisted shape."""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from shared.exceptions import MalformedDocumentError
from shared.models import Category, DocumentRecord

logger = logging.getLogger(__name__)

_KNOWN_CATEGORIES = {c.value for c in Category}


def transform_document(doc: Dict[str, Any]) -> DocumentRecord:
    """
    Map one upstream document to a DocumentRecord.

    Pure: no I/O, and optional upstream fields map to None rather than to
    invented defaults (reading_progress is the one exception and maps to 0).

    Args:
        doc: Document as returned by the Readwise list endpoint

    Returns:
        The local representation

    Raises:
        MalformedDocumentError: If the id or a required timestamp is missing or unparsable
    """
    readwise_id = doc.get("id")
    if not readwise_id:
        raise MalformedDocumentError("Document without an id")

    category = doc.get("category")
    if not category:
        raise MalformedDocumentError(f"Document {readwise_id} has no category")
    if category not in _KNOWN_CATEGORIES:
        logger.warning(f"Document {readwise_id} has unknown category {category!r}")

    return DocumentRecord(
        readwise_id=str(readwise_id),
        url=doc.get("url"),
        source_url=doc.get("source_url"),
        title=doc.get("title"),
        author=doc.get("author"),
        summary=doc.get("summary"),
        category=category,
        location=doc.get("location"),
        tags=normalize_tags(doc.get("tags")),
        site_name=doc.get("site_name"),
        word_count=_optional_int(doc.get("word_count")),
        published_date=parse_timestamp(doc.get("published_date")),
        reading_progress=_reading_progress(doc.get("reading_progress")),
        first_opened_at=parse_timestamp(doc.get("first_opened_at")),
        last_opened_at=parse_timestamp(doc.get("last_opened_at")),
        last_moved_at=parse_timestamp(doc.get("last_moved_at")),
        parent_id=doc.get("parent_id"),
        created_at=_required_timestamp(doc, "created_at"),
        updated_at=_required_timestamp(doc, "updated_at"),
    )


def normalize_tags(tags: Any) -> List[str]:
    """
    Normalize either tag wire format to an ordered, duplicate-free list of names.

    Readwise sends tags as a list of tag objects or as a mapping of tag key
    to tag object. A mapping entry without a name falls back to its key.
    """
    if not tags:
        return []

    if isinstance(tags, dict):
        names = [
            _tag_name(value) or str(key)
            for key, value in tags.items()
        ]
    elif isinstance(tags, (list, tuple)):
        names = [_tag_name(value) for value in tags]
    else:
        raise MalformedDocumentError(f"Unsupported tags format: {type(tags).__name__}")

    seen = set()
    result = []
    for name in names:
        if name and name not in seen:
            seen.add(name)
            result.append(name)
    return result


def _tag_name(value: Any) -> Optional[str]:
    if isinstance(value, dict):
        return value.get("name")
    if isinstance(value, str):
        return value
    return None


def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    Parse an upstream timestamp into a naive UTC datetime.

    Accepts ISO-8601 strings (with ``Z`` or an offset, or a bare date) and
    epoch milliseconds. Empty values map to None.

    Raises:
        MalformedDocumentError: If the value is present but unparsable
    """
    if value is None or value == "":
        return None

    if isinstance(value, bool):
        raise MalformedDocumentError(f"Invalid timestamp: {value!r}")

    if isinstance(value, (int, float)):
        try:
            parsed = datetime.fromtimestamp(value / 1000, tz=timezone.utc)
        except (OverflowError, OSError, ValueError) as e:
            raise MalformedDocumentError(f"Invalid timestamp: {value!r}") from e
    elif isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError as e:
            raise MalformedDocumentError(f"Invalid timestamp: {value!r}") from e
    else:
        raise MalformedDocumentError(f"Invalid timestamp: {value!r}")

    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def _required_timestamp(doc: Dict[str, Any], key: str) -> datetime:
    parsed = parse_timestamp(doc.get(key))
    if parsed is None:
        raise MalformedDocumentError(f"Document {doc.get('id')} has no {key}")
    return parsed


def _reading_progress(value: Any) -> float:
    if value is None:
        return 0.0
    try:
        progress = float(value)
    except (TypeError, ValueError) as e:
        raise MalformedDocumentError(f"Invalid reading_progress: {value!r}") from e
    return min(max(progress, 0.0), 1.0)


def _optional_int(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None
