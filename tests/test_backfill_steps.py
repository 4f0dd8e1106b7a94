import os
import subprocess
import sys
from unittest import mock

import pytest

from seriesfactory import backfill_steps as bs


def _completed(returncode, stderr=b""):
    return subprocess.CompletedProcess(args=[], returncode=returncode, stdout=b"", stderr=stderr)


def test_split_csv_trims_and_drops_empty():
    assert bs.split_csv(" binance, ,bybit ,okx,") == ["binance", "bybit", "okx"]
    assert bs.split_csv("") == []


@pytest.mark.parametrize(
    "ticker,expected",
    [("BTC-USDT", ("BTC", "USDT")), ("ETH/USDC", ("ETH", "USDC"))],
)
def test_split_pair(ticker, expected):
    assert bs.split_pair(ticker) == expected


@pytest.mark.parametrize("ticker", ["BTCUSDT", "-USDT", "BTC-", ""])
def test_split_pair_rejects_bad(ticker):
    with pytest.raises(ValueError):
        bs.split_pair(ticker)


def test_file_bytes_and_missing(tmp_path):
    p = tmp_path / "a.bin"
    p.write_bytes(b"x" * 17)
    assert bs.file_bytes(p) == os.path.getsize(p)
    assert bs.file_bytes(tmp_path / "missing") == 0


def test_dir_bytes_recurses(tmp_path):
    (tmp_path / "sub" / "deeper").mkdir(parents=True)
    payloads = {"a": b"12345", "sub/b": b"xy", "sub/deeper/c": b"q" * 40}
    for rel, data in payloads.items():
        (tmp_path / rel).write_bytes(data)
    assert bs.dir_bytes(tmp_path) == sum(len(d) for d in payloads.values())
    assert bs.dir_bytes(tmp_path / "nope") == 0


def test_run_step_success_counts_output(tmp_path):
    out = tmp_path / "out.idx"
    out.write_bytes(b"z" * 33)
    rep = bs.run_step("BTC-USDT", sys.executable, ["-c", "pass"], out)
    assert rep.exit_code == 0
    assert rep.bytes == os.path.getsize(out)
    assert rep.errors == []
    assert rep.skipped is False
    assert rep.name == sys.executable


def test_run_step_failure_keeps_stderr_tail():
    code = "import sys\nfor i in range(25): sys.stderr.write('line%d\\n' % i)\nsys.exit(3)"
    rep = bs.run_step("BTC-USDT", sys.executable, ["-c", code], None)
    assert rep.exit_code == 3
    assert rep.errors == ["line%d" % i for i in range(5, 25)]
    assert rep.bytes == 0


def test_run_step_spawn_failure():
    rep = bs.run_step("BTC-USDT", "definitely-missing-program-xyz", [], None)
    assert rep.exit_code == -1
    assert len(rep.errors) == 1
    assert rep.errors[0].startswith("spawn failed:")


def test_integrity_clean_missing_file(tmp_path):
    assert bs.integrity_clean(tmp_path / "none.idx", "idx") is False


@pytest.mark.parametrize("rc,expected", [(0, True), (1, True), (2, False)])
def test_integrity_clean_exit_codes(tmp_path, rc, expected):
    f = tmp_path / "a.idx"
    f.write_bytes(b"")
    with mock.patch("subprocess.run", return_value=_completed(rc)) as run:
        assert bs.integrity_clean(f, "idx") is expected
    assert run.call_args[0][0] == [bs.INTEGRITY_CHECK, "idx", str(f), "--json"]


def test_integrity_clean_spawn_error(tmp_path):
    f = tmp_path / "a.idx"
    f.write_bytes(b"")
    with mock.patch("subprocess.run", side_effect=FileNotFoundError("nope")):
        assert bs.integrity_clean(f, "idx") is False


def test_write_marker_and_progress_dir(tmp_path):
    bs.write_marker(tmp_path, "BTC-USDT", "done")
    marker = bs.progress_dir(tmp_path) / "BTC-USDT.done"
    assert marker.exists()
    assert bs.progress_dir(tmp_path) == tmp_path / "backfill" / "progress"
    assert "T" in marker.read_text()


def test_manifest_ok(tmp_path):
    assert bs.manifest_ok(tmp_path, "idx") is False
    (tmp_path / "manifest.json").write_text("{}")
    assert bs.manifest_ok(tmp_path, "idx") is False
    (tmp_path / "2024-01-01.idx").write_bytes(b"")
    assert bs.manifest_ok(tmp_path, "idx") is True
    assert bs.manifest_ok(tmp_path, "renko") is False


def test_validate_shards_empty_is_skipped(tmp_path):
    rep = bs.validate_shards("BTC-USDT", tmp_path, "idx")
    assert rep.name == "integrity-check-shards[idx]"
    assert rep.skipped is True
    assert rep.exit_code == 0
    assert rep.errors == ["no shards present"]


def test_validate_shards_all_clean(tmp_path):
    for name in ("2024-01-02.s10", "2024-01-01.s10"):
        (tmp_path / name).write_bytes(b"ab")
    (tmp_path / "2024-01-01.renko").write_bytes(b"ignored")
    with mock.patch("subprocess.run", return_value=_completed(1)) as run:
        rep = bs.validate_shards("BTC-USDT", tmp_path, "s10")
    assert rep.exit_code == 0
    assert rep.skipped is False
    assert rep.bytes == 4
    called = [c[0][0][2] for c in run.call_args_list]
    assert called == sorted(called)
    assert all(p.endswith(".s10") for p in called)


def test_validate_shards_failure_collects_errors(tmp_path):
    shard = tmp_path / "2024-01-01.idx"
    shard.write_bytes(b"")
    with mock.patch("subprocess.run", return_value=_completed(2, b"first\nsecond\n")):
        rep = bs.validate_shards("BTC-USDT", tmp_path, "idx")
    assert rep.exit_code == 1
    assert rep.errors == [f"{shard}: second", f"{shard}: first"]


def test_cleanup_ticker_staging(tmp_path):
    ticks = tmp_path / "ticks" / "binance" / "BTCUSDT"
    ticks.mkdir(parents=True)
    (ticks / "a.ticks").write_bytes(b"t" * 10)
    idx = tmp_path / "indexes" / "binance" / "BTC-USDT.idx"
    idx.parent.mkdir(parents=True)
    idx.write_bytes(b"i" * 6)
    keep = tmp_path / "indexes" / "bybit" / "ETH-USDT.idx"
    keep.parent.mkdir(parents=True)
    keep.write_bytes(b"k")

    rep = bs.cleanup_ticker_staging(tmp_path, ["binance", "bybit"], "BTC", "USDT")
    assert rep.name == "cleanup-staging"
    assert rep.exit_code == 0
    assert rep.bytes == 16
    assert not ticks.exists()
    assert not idx.exists()
    assert keep.exists()


def test_cleanup_nothing_to_remove(tmp_path):
    rep = bs.cleanup_ticker_staging(tmp_path, ["okx"], "SOL", "USDT")
    assert rep.bytes == 0
    assert rep.errors == []


def test_report_to_dict_round_trip():
    rep = bs.StepReport(name="merge-idx", exit_code=1, errors=["boom"])
    assert bs.StepReport(**rep.to_dict()) == rep
    entry = bs.AvailabilityEntry(exchange="binance", has_data=True, first_date="2024-01-01")
    assert bs.AvailabilityEntry(**entry.to_dict()) == entry