"""Opaque identifiers that sort lexicographically by creation time."""

import uuid
from datetime import datetime, timezone


def new_id() -> str:
    """Return a new id: UTC timestamp to the microsecond followed by random hex."""
    timestamp = datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S%f")
    return f"{timestamp}{uuid.uuid4().hex[:10].upper()}"


def utc_now() -> str:
    """Current time as an ISO-8601 UTC string, the format stored on records."""
    return datetime.now(timezone.utc).isoformat()
