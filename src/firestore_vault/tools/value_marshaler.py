"""
Conversion between Firestore-native field values and portable JSON values

Timestamps become ISO-8601 strings with millisecond precision, GeoPoints and
document references become tagged objects. Everything else passes through.
"""

import re
from datetime import datetime, timezone
from typing import Any, Optional

from google.cloud.firestore_v1 import GeoPoint
from google.cloud.firestore_v1.base_document import BaseDocumentReference

from ..infrastructure.firestore_client import DocumentStore

TIMESTAMP_PATTERN = re.compile(r"\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}(\.\d{3})?Z")

GEOPOINT_TYPE = "geopoint"
REFERENCE_TYPE = "reference"


def format_timestamp(value: datetime) -> str:
    """Render ``value`` as ``YYYY-MM-DDTHH:MM:SS.sssZ`` in UTC"""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    value = value.astimezone(timezone.utc)
    return f"{value.year:04d}-{value:%m-%dT%H:%M:%S}.{value.microsecond // 1000:03d}Z"


def parse_timestamp(value: str) -> Optional[datetime]:
    """Parse a string written by ``format_timestamp``; None if it is not one"""
    match = TIMESTAMP_PATTERN.fullmatch(value)
    if not match:
        return None
    try:
        parsed = datetime.strptime(value[:19], "%Y-%m-%dT%H:%M:%S")
    except ValueError:
        return None
    millis = int(match.group(1)[1:]) if match.group(1) else 0
    return parsed.replace(microsecond=millis * 1000, tzinfo=timezone.utc)


def to_portable(value: Any) -> Any:
    # datetime first: DatetimeWithNanoseconds is a datetime subclass
    if isinstance(value, datetime):
        return format_timestamp(value)
    if isinstance(value, GeoPoint):
        return {"_type": GEOPOINT_TYPE, "latitude": value.latitude, "longitude": value.longitude}
    if isinstance(value, BaseDocumentReference):
        return {"_type": REFERENCE_TYPE, "path": value.path, "id": value.id}
    if isinstance(value, dict):
        return {key: to_portable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_portable(item) for item in value]
    return value


def from_portable(value: Any, store: DocumentStore) -> Any:
    """Inverse of ``to_portable``.

    References are rebuilt against ``store`` without checking that the
    target document exists. Any string shaped exactly like a serialized
    timestamp comes back as a timestamp, including strings that were plain
    text when exported.
    """
    if isinstance(value, str):
        parsed = parse_timestamp(value)
        return parsed if parsed is not None else value
    if isinstance(value, dict):
        tag = value.get("_type")
        if tag == GEOPOINT_TYPE and "latitude" in value and "longitude" in value:
            return GeoPoint(value["latitude"], value["longitude"])
        if tag == REFERENCE_TYPE and isinstance(value.get("path"), str):
            return store.reference(value["path"])
        return {key: from_portable(item, store) for key, item in value.items()}
    if isinstance(value, list):
        return [from_portable(item, store) for item in value]
    return value
