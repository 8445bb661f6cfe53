import datetime as _dt
import uuid


def utcnow() -> _dt.datetime:
    # Naive UTC, matching what Motor hands back for stored datetimes.
    return _dt.datetime.now(_dt.timezone.utc).replace(tzinfo=None)


def generate_issue_id() -> str:
    return str(uuid.uuid4())


def hours_between(start: _dt.datetime, end: _dt.datetime) -> int:
    """Whole hours from start to end, floored."""
    seconds = (end - start).total_seconds()
    return int(seconds // 3600)


def clamp_unit(value: float) -> float:
    return max(0.0, min(1.0, float(value)))
