"""UTC timestamps as stored in the database."""

from datetime import datetime, timezone


def now_iso() -> str:
    """Current UTC time, e.g. ``2025-02-10T18:30:00.123Z``."""
    return (
        datetime.now(timezone.utc)
        .isoformat(timespec="milliseconds")
        .replace("+00:00", "Z")
    )


def utc_billed_day(iso_timestamp: str) -> str:
    """The UTC calendar day (``YYYY-MM-DD``) an API read is billed on."""
    return iso_timestamp[:10]
