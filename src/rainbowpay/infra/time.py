"""Clock helpers."""

from datetime import datetime, timezone


def utc_now() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def compact_timestamp(moment: datetime | None = None) -> str:
    """Millisecond epoch string used in generated file names."""
    moment = moment or utc_now()
    return str(int(moment.timestamp() * 1000))
