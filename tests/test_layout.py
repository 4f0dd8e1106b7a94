from datetime import date, datetime, timezone
from pathlib import Path

import pytest

from seriesfactory.layout import (
    MS_PER_DAY,
    bars_dir,
    idx_dir,
    list_shards,
    parse_utc_date_or_today,
    ts_ms_to_utc_date,
)


def test_idx_and_bars_dirs(tmp_path):
    assert idx_dir(tmp_path, 42) == tmp_path / "indexes" / "42"
    assert bars_dir(str(tmp_path), 42) == Path(tmp_path) / "bars" / "42"


def test_list_shards_sorted_and_filtered(tmp_path):
    for name in ["2024-01-03.idx", "2024-01-01.idx", "2024-01-02.s10", "notes.idx",
                 "2024-13-01.idx", "2024-01-02.idx.tmp"]:
        (tmp_path / name).write_bytes(b"")
    shards = list_shards(tmp_path, "idx")
    assert [d for d, _ in shards] == [date(2024, 1, 1), date(2024, 1, 3)]
    assert all(p.suffix == ".idx" for _, p in shards)


def test_list_shards_other_extension(tmp_path):
    (tmp_path / "2024-01-02.s10").write_bytes(b"")
    (tmp_path / "2024-01-02.renko").write_bytes(b"")
    assert [p.name for _, p in list_shards(tmp_path, "s10")] == ["2024-01-02.s10"]


def test_list_shards_missing_dir_is_empty(tmp_path):
    assert list_shards(tmp_path / "absent", "idx") == []


def test_ts_to_date_epoch_and_day_boundaries():
    assert ts_ms_to_utc_date(0) == date(1970, 1, 1)
    assert ts_ms_to_utc_date(MS_PER_DAY - 1) == ts_ms_to_utc_date(0)
    assert ts_ms_to_utc_date(MS_PER_DAY) > ts_ms_to_utc_date(0)


def test_ts_to_date_negative_is_previous_day():
    assert ts_ms_to_utc_date(-1) == date(1969, 12, 31)


def test_ts_to_date_matches_datetime():
    ts = 1_717_000_000_000
    expected = datetime.fromtimestamp(ts / 1000, tz=timezone.utc).date()
    assert ts_ms_to_utc_date(ts) == expected


def test_parse_explicit_date():
    assert parse_utc_date_or_today("2024-03-05") == date(2024, 3, 5)


def test_parse_today():
    assert parse_utc_date_or_today("today") == datetime.now(timezone.utc).date()


@pytest.mark.parametrize("text", ["", "yesterday", "2024-3-5", "2024-02-30", "05/03/2024"])
def test_parse_rejects_bad_input(text):
    with pytest.raises(ValueError):
        parse_utc_date_or_today(text)