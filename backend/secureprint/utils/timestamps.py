from datetime import datetime, timezone

ISO_FORMAT = "%Y-%m-%dT%H:%M:%S.%f"


def to_iso(epoch: float) -> str:
    """Millisecond-precision UTC timestamp, e.g. ``2024-05-01T10:15:00.123Z``."""
    dt = datetime.fromtimestamp(epoch, timezone.utc)
    return dt.strftime(ISO_FORMAT)[:-3] + "Z"


def from_iso(value: str) -> float:
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.timestamp()
