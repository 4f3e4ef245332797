from __future__ import annotations

from datetime import date, datetime


def normalise_timestamp(value: object) -> datetime:
    """Coerce a bar or trade timestamp into a naive datetime.

    Accepts datetimes, dates and ISO-8601 strings. Timezone-aware values keep
    their wall-clock time and drop the offset so that bars from the provider
    (IST offsets) and timestamps typed into a strategy compare cleanly.
    """

    if isinstance(value, datetime):
        ts = value
    elif isinstance(value, date):
        ts = datetime(value.year, value.month, value.day)
    elif isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        ts = datetime.fromisoformat(text)
    else:
        raise TypeError(f"Unsupported timestamp value: {value!r}")

    if ts.tzinfo is not None:
        ts = ts.replace(tzinfo=None)
    return ts
