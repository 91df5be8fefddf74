"""Clock helpers. Everything in the dispatch engine works in epoch milliseconds."""

import time
from collections.abc import Callable
from datetime import UTC, datetime

Clock = Callable[[], int]


def now_ms() -> int:
    return int(time.time() * 1000)


def ms_to_iso(timestamp_ms: int) -> str:
    return datetime.fromtimestamp(timestamp_ms / 1000, tz=UTC).isoformat()


def ms_to_date(timestamp_ms: int) -> str:
    """Calendar day (UTC) of a timestamp, as YYYY-MM-DD."""
    return datetime.fromtimestamp(timestamp_ms / 1000, tz=UTC).strftime("%Y-%m-%d")
