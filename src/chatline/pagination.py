"""Opaque timestamp cursors for "strictly before" pagination."""

import base64
import binascii
from datetime import datetime, timezone

from chatline.errors import ValidationError


def encode_cursor(timestamp: datetime) -> str:
    """Encode a timestamp as an opaque URL-safe cursor."""
    if timestamp.tzinfo is None:
        timestamp = timestamp.replace(tzinfo=timezone.utc)
    raw = timestamp.isoformat().encode("utf-8")
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def decode_cursor(cursor: str) -> datetime:
    """Decode a cursor produced by ``encode_cursor``.

    Raises:
        ValidationError: If the cursor is not one we issued.

    """
    padded = cursor + "=" * (-len(cursor) % 4)
    try:
        raw = base64.urlsafe_b64decode(padded.encode("ascii")).decode("utf-8")
        timestamp = datetime.fromisoformat(raw)
    except (binascii.Error, UnicodeError, ValueError) as e:
        raise ValidationError("Invalid pagination cursor.", code="INVALID_CURSOR") from e
    if timestamp.tzinfo is None:
        timestamp = timestamp.replace(tzinfo=timezone.utc)
    return timestamp
