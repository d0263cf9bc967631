"""UTC timestamp helpers for scan keys and courier payloads."""

from datetime import UTC, datetime


def utcnow() -> datetime:
    return datetime.now(UTC)


def to_iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def from_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    # SQLite and some providers drop the offset; stored values are always UTC
    return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=UTC)
