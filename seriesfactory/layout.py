"""On-disk layout of the daily-shard store and time helpers.

::

    <data_root>/indexes/<ticker_id>/<YYYY-MM-DD>.idx
    <data_root>/bars/<ticker_id>/<YYYY-MM-DD>.{s10,renko}
"""

from __future__ import annotations

import os
import re
from datetime import date, datetime, timedelta, timezone
from pathlib import Path

from seriesfactory.calibrate import MS_PER_DAY

__all__ = [
    "MS_PER_DAY",
    "MS_PER_MIN",
    "MS_PER_30MIN",
    "SENTINEL_INTERVAL_MS",
    "idx_dir",
    "bars_dir",
    "list_shards",
    "ts_ms_to_utc_date",
    "parse_utc_date_or_today",
]

MS_PER_MIN = 60_000
MS_PER_30MIN = 1_800_000
# Cadence of liveness sentinels while quotes are unchanged.
SENTINEL_INTERVAL_MS = 60_000

_SHARD_NAME = re.compile(r"^(\d{4}-\d{2}-\d{2})\.([A-Za-z0-9]+)$")
_EPOCH = date(1970, 1, 1)


def idx_dir(data_root: str | os.PathLike, ticker_id: int) -> Path:
    """Directory holding a ticker's daily ``.idx`` shards."""
    return Path(data_root) / "indexes" / str(ticker_id)


def bars_dir(data_root: str | os.PathLike, ticker_id: int) -> Path:
    """Directory holding a ticker's daily bar shards."""
    return Path(data_root) / "bars" / str(ticker_id)


def list_shards(directory: str | os.PathLike, extension: str) -> list[tuple[date, Path]]:
    """Date-sorted ``(date, path)`` pairs for ``YYYY-MM-DD.<extension>`` files.

    A missing directory yields an empty list; files whose names are not a
    valid date with that extension are ignored.
    """
    root = Path(directory)
    if not root.is_dir():
        return []
    shards: list[tuple[date, Path]] = []
    for path in root.iterdir():
        match = _SHARD_NAME.match(path.name)
        if match is None or match.group(2) != extension or not path.is_file():
            continue
        try:
            day = date.fromisoformat(match.group(1))
        except ValueError:
            continue
        shards.append((day, path))
    shards.sort()
    return shards


def ts_ms_to_utc_date(ts_ms: int) -> date:
    """UTC calendar date of an epoch-millisecond timestamp."""
    return _EPOCH + timedelta(days=ts_ms // MS_PER_DAY)


def parse_utc_date_or_today(text: str) -> date:
    """Parse ``YYYY-MM-DD``, or ``today`` for the current UTC date.

    Raises :class:`ValueError` for anything else.
    """
    value = text.strip()
    if value.lower() == "today":
        return datetime.now(timezone.utc).date()
    if not re.fullmatch(r"\d{4}-\d{2}-\d{2}", value):
        raise ValueError(f"bad date {text!r}: expected YYYY-MM-DD or 'today'")
    try:
        return date.fromisoformat(value)
    except ValueError as exc:
        raise ValueError(f"bad date {text!r}: {exc}") from exc