from datetime import datetime, timedelta, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def seconds_from(now: datetime, seconds: float) -> datetime:
    return now + timedelta(seconds=seconds)
