from datetime import datetime

import pytz


def get_current_datetime() -> datetime:
    return _get_current_datetime()


def _get_current_datetime() -> datetime:
    # Defined as a private method for easy monkeypatching
    return datetime.now(tz=pytz.UTC)


def datetime_to_iso(timestamp: datetime) -> str:
    return timestamp.astimezone(pytz.UTC).isoformat()
