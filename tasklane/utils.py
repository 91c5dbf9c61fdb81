from datetime import date, datetime, timezone
import json
import logging

logger = logging.getLogger(__name__)


def now_utc() -> datetime:
    """Return timezone-aware current UTC datetime."""
    return datetime.now(timezone.utc)


def as_utc(dt: datetime | None) -> datetime | None:
    """Treat naive datetimes as UTC; convert aware ones to UTC."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def to_datetime(value: date | datetime) -> datetime:
    """Promote a plain date to midnight of that day; datetimes pass through."""
    if isinstance(value, datetime):
        return value
    return datetime(value.year, value.month, value.day)


def isoformat_or_none(dt) -> str | None:
    if dt is None:
        return None
    try:
        return dt.isoformat()
    except Exception:
        return str(dt)


def dumps_state(state: dict | None) -> str | None:
    """Serialize a before/after snapshot to JSON text.

    Datetimes and enums are stringified so arbitrary row snapshots can be
    stored without custom encoders at the call sites.
    """
    if state is None:
        return None

    def _default(o):
        if isinstance(o, (datetime, date)):
            return o.isoformat()
        val = getattr(o, 'value', None)
        if val is not None:
            return val
        return str(o)

    return json.dumps(state, default=_default, sort_keys=True)


def loads_state(raw: str | None) -> dict | None:
    if not raw:
        return None
    try:
        return json.loads(raw)
    except Exception:
        logger.warning('could not decode stored activity state: %r', raw[:80])
        return None
