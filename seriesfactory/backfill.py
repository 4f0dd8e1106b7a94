"""Backfill orchestrator.

Drives ``fetch-crypto-history`` -> ``ticks-to-idx`` -> ``merge-idx`` ->
``s10-from-idx`` -> ``renko-from-idx`` -> ``integrity-check`` for many
tickers in parallel and writes a single JSON report.
"""

from __future__ import annotations

import argparse
import json
import logging
import subprocess
import sys
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Iterable, Sequence

from seriesfactory.backfill_steps import (
    INTEGRITY_CHECK,
    AvailabilityEntry,
    StepReport,
    cleanup_ticker_staging,
    dir_bytes,
    file_bytes,
    integrity_clean,
    manifest_ok,
    progress_dir,
    run_step,
    split_csv,
    split_pair,
    validate_shards,
    write_marker,
)
from seriesfactory.layout import bars_dir, idx_dir, parse_utc_date_or_today

__all__ = [
    "FETCH_PROGRAM",
    "TickerReport",
    "Counters",
    "BackfillPlan",
    "probe_availability",
    "run_ticker",
    "summarize",
    "main",
]

logger = logging.getLogger(__name__)

FETCH_PROGRAM = "fetch-crypto-history"
_HEARTBEAT_SECONDS = 60.0
_COUNTER_NAMES = ("active", "completed", "failed", "skipped")


@dataclass
class TickerReport:
    """Outcome of the whole pipeline for one ticker."""

    ticker: str
    status: str  # ok | failed | skipped
    steps: list[StepReport] = field(default_factory=list)
    ticker_availability: list[AvailabilityEntry] = field(default_factory=list)
    skip_reason: str | None = None

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class Counters:
    """Thread-safe progress counters shared by the ticker workers."""

    active: int = 0
    completed: int = 0
    failed: int = 0
    skipped: int = 0
    _lock: threading.Lock = field(
        default_factory=threading.Lock, repr=False, compare=False
    )

    def add(self, name: str, delta: int = 1) -> None:
        if name not in _COUNTER_NAMES:
            raise ValueError(f"unknown counter {name!r}")
        with self._lock:
            setattr(self, name, getattr(self, name) + delta)

    def snapshot(self) -> dict[str, int]:
        with self._lock:
            return {name: getattr(self, name) for name in _COUNTER_NAMES}


@dataclass
class BackfillPlan:
    """Everything a ticker worker needs to run the pipeline.

    ``resolve_ticker_id`` maps a ``BASE/QUOTE`` symbol to the numeric id
    that names its shard directories; it raises :class:`LookupError` or
    :class:`ValueError` for an unknown symbol.
    """

    config: Path
    out_dir: Path
    from_date: date
    to_date: date
    exchanges: list[str]
    steps: list[str]
    resolve_ticker_id: Callable[[str], int]
    resume: bool = False
    cleanup: bool = True
    keep_staging: bool = False
    skip_probe: bool = False
    counters: Counters = field(default_factory=Counters)

    @property
    def days(self) -> int:
        return max((self.to_date - self.from_date).days, 1)

    def wants(self, step: str) -> bool:
        return step in self.steps


def _parse_probe(line: str) -> list[AvailabilityEntry]:
    data = json.loads(line)
    if not isinstance(data, list):
        raise ValueError("probe output is not a list")
    entries = []
    for item in data:
        if not isinstance(item, dict):
            raise ValueError("probe entry is not an object")
        exchange, has_data = item.get("exchange"), item.get("has_data")
        if not isinstance(exchange, str) or not isinstance(has_data, bool):
            raise ValueError("probe entry lacks exchange/has_data")
        first, last = item.get("first_date"), item.get("last_date")
        for value in (first, last):
            if value is not None and not isinstance(value, str):
                raise ValueError("probe date is not a string")
        entries.append(AvailabilityEntry(exchange, has_data, first, last))
    return entries


def probe_availability(
    plan: BackfillPlan, base: str, quote: str
) -> tuple[list[AvailabilityEntry], list[str]]:
    """Ask the fetcher which exchanges have archive coverage.

    Returns the availability entries and the exchanges to fetch from. When
    the probe cannot run or its output does not parse, every configured
    exchange stays active.
    """
    args = [
        str(plan.config),
        "--pairs", base,
        "--exchanges", ",".join(plan.exchanges),
        "--quote", quote,
        "--days", str(plan.days),
        "--probe",
    ]
    try:
        proc = subprocess.run([FETCH_PROGRAM, *args], capture_output=True)
    except OSError as exc:
        logger.warning("probe spawn failed; falling back err=%s", exc)
        return [], list(plan.exchanges)
    if proc.returncode != 0:
        logger.warning(
            "probe failed; falling back exit=%s stderr=%s",
            proc.returncode, proc.stderr.decode("utf-8", errors="replace"),
        )
        return [], list(plan.exchanges)

    stdout = proc.stdout.decode("utf-8", errors="replace")
    lines = [line for line in stdout.splitlines() if line.strip()]
    last = lines[-1] if lines else ""
    try:
        entries = _parse_probe(last)
    except ValueError:
        logger.warning(
            "probe stdout did not parse; falling back to full exchange list tail=%s",
            last,
        )
        return [], list(plan.exchanges)

    active = []
    for entry in entries:
        if entry.has_data and entry.exchange in plan.exchanges:
            active.append(entry.exchange)
        elif not entry.has_data:
            logger.warning(
                "no archive coverage; skipping ticker=%s-%s exchange=%s",
                base, quote, entry.exchange,
            )
    return entries, active


def _skipped_step(name: str, size: int) -> StepReport:
    return StepReport(name=name, exit_code=0, bytes=size, skipped=True)


def run_ticker(plan: BackfillPlan, ticker: str) -> TickerReport:
    """Run the planned steps for one ``BASE-QUOTE`` ticker."""
    try:
        base, quote = split_pair(ticker)
    except ValueError as exc:
        return TickerReport(
            ticker=ticker,
            status="failed",
            steps=[StepReport(name="parse", exit_code=-1, errors=[str(exc)])],
        )
    base, quote = base.upper(), quote.upper()

    counters = plan.counters
    counters.add("active")
    write_marker(plan.out_dir, ticker, "start")
    logger.info("ticker start ticker=%s", ticker)

    steps: list[StepReport] = []
    availability: list[AvailabilityEntry] = []

    def fail() -> TickerReport:
        counters.add("active", -1)
        counters.add("failed")
        write_marker(plan.out_dir, ticker, "failed")
        return TickerReport(
            ticker=ticker, status="failed", steps=steps,
            ticker_availability=availability,
        )

    symbol = f"{base}/{quote}"
    try:
        ticker_id = plan.resolve_ticker_id(symbol)
    except (LookupError, ValueError):
        steps.append(
            StepReport(name="resolve", exit_code=-1,
                       errors=[f"no ticker id for {symbol}"])
        )
        return fail()

    cfg = str(plan.config)
    out_dir = Path(plan.out_dir)
    composite_dir = idx_dir(out_dir, ticker_id)
    shard_bars_dir = bars_dir(out_dir, ticker_id)
    vol_path = out_dir / "vol" / f"{base}-{quote}.vol"

    active_exchanges = list(plan.exchanges)
    if not plan.skip_probe and plan.wants("fetch"):
        availability, active = probe_availability(plan, base, quote)
        if not active:
            logger.warning("all exchanges report no coverage; skipping ticker=%s", ticker)
            counters.add("active", -1)
            counters.add("skipped")
            write_marker(plan.out_dir, ticker, "done")
            return TickerReport(
                ticker=ticker, status="skipped", steps=steps,
                ticker_availability=availability,
                skip_reason="no archive coverage in any exchange",
            )
        active_exchanges = active
        logger.info("availability check ok ticker=%s active=%s", ticker, active_exchanges)

    if plan.wants("fetch"):
        args = [
            cfg, "--pairs", base, "--exchanges", ",".join(active_exchanges),
            "--quote", quote, "--days", str(plan.days),
        ]
        steps.append(run_step(ticker, FETCH_PROGRAM, args, None))
        if steps[-1].exit_code != 0:
            return fail()

    if plan.wants("t2i"):
        def ticks_to_idx(exchange: str) -> StepReport:
            name = f"ticks-to-idx[{exchange}]"
            per_idx = out_dir / "indexes" / exchange / f"{base}-{quote}.idx"
            if plan.resume and integrity_clean(per_idx, "idx"):
                return _skipped_step(name, file_bytes(per_idx))
            args = [exchange, base, quote, "--cycle-ms", "100"]
            report = run_step(ticker, "ticks-to-idx", args, per_idx)
            report.name = name
            return report

        with ThreadPoolExecutor(max_workers=max(len(active_exchanges), 1)) as pool:
            t2i_reports = list(pool.map(ticks_to_idx, active_exchanges))
        steps.extend(t2i_reports)
        if any(r.exit_code != 0 for r in t2i_reports):
            return fail()

    if plan.wants("merge"):
        if plan.resume and manifest_ok(composite_dir, "idx"):
            steps.append(_skipped_step("merge-idx", dir_bytes(composite_dir)))
        else:
            report = run_step(ticker, "merge-idx", [base, quote], composite_dir)
            steps.append(report)
            if report.exit_code != 0:
                return fail()
        shard_check = validate_shards(ticker, composite_dir, "idx")
        steps.append(shard_check)
        if shard_check.exit_code != 0:
            return fail()
        if plan.cleanup and not plan.keep_staging:
            steps.append(cleanup_ticker_staging(out_dir, active_exchanges, base, quote))
        else:
            logger.info("staging cleanup skipped ticker=%s", ticker)

    for step, program, args in (
        ("s10", "s10-from-idx", [cfg, f"{base}-{quote}"]),
        ("renko", "renko-from-idx", [cfg, base, quote]),
    ):
        if not plan.wants(step):
            continue
        if plan.resume and manifest_ok(shard_bars_dir, step):
            steps.append(_skipped_step(program, dir_bytes(shard_bars_dir)))
            continue
        report = run_step(ticker, program, args, shard_bars_dir)
        steps.append(report)
        if report.exit_code != 0:
            return fail()

    if plan.wants("validate"):
        if not any(s.name == "integrity-check-shards[idx]" for s in steps):
            steps.append(validate_shards(ticker, composite_dir, "idx"))
        steps.append(validate_shards(ticker, shard_bars_dir, "s10"))
        steps.append(validate_shards(ticker, shard_bars_dir, "renko"))
        if vol_path.exists():
            args = ["vol", str(vol_path), "--strict", "--json"]
            report = run_step(ticker, INTEGRITY_CHECK, args, vol_path)
            report.name = "integrity-check[vol]"
            steps.append(report)

    any_fail = any(s.exit_code != 0 and not s.skipped for s in steps)
    all_skipped = bool(steps) and all(s.skipped for s in steps)
    if any_fail:
        status = "failed"
    elif all_skipped:
        status = "skipped"
    else:
        status = "ok"

    logger.info("ticker done ticker=%s status=%s n_steps=%d", ticker, status, len(steps))
    counters.add("active", -1)
    if status == "ok":
        counters.add("completed")
        write_marker(plan.out_dir, ticker, "done")
    elif status == "skipped":
        counters.add("skipped")
        write_marker(plan.out_dir, ticker, "done")
    else:
        counters.add("failed")
        write_marker(plan.out_dir, ticker, "failed")

    return TickerReport(
        ticker=ticker, status=status, steps=steps, ticker_availability=availability
    )


def summarize(results: Iterable[TickerReport]) -> dict[str, int]:
    """Count reports by status: total, ok, failed and skipped."""
    summary = {"total": 0, "ok": 0, "failed": 0, "skipped": 0}
    for report in results:
        summary["total"] += 1
        if report.status in summary:
            summary[report.status] += 1
    return summary


def _guarded_run(plan: BackfillPlan, ticker: str) -> TickerReport:
    try:
        return run_ticker(plan, ticker)
    except Exception:
        logger.exception("worker crashed ticker=%s", ticker)
        plan.counters.add("failed")
        write_marker(plan.out_dir, ticker, "failed")
        return TickerReport(
            ticker=ticker,
            status="failed",
            steps=[StepReport(name="panic", exit_code=-1, errors=["worker panicked"])],
        )


def _load_ticker_ids(path: Path | None) -> dict[str, int]:
    if path is None:
        return {}
    raw = json.loads(path.read_text())
    if not isinstance(raw, dict):
        raise ValueError(f"{path}: expected an object of symbol -> id")
    return {key.upper().replace("-", "/"): int(value) for key, value in raw.items()}


def _heartbeat(stop: threading.Event, counters: Counters, total: int) -> None:
    while not stop.wait(_HEARTBEAT_SECONDS):
        snap = counters.snapshot()
        logger.info(
            "heartbeat active_tickers=%d completed=%d failed=%d skipped=%d total=%d",
            snap["active"], snap["completed"], snap["failed"], snap["skipped"], total,
        )


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="backfill-all",
        description="Backfill orchestrator: fetch -> t2i -> merge -> s10 -> renko -> validate.",
    )
    parser.add_argument("config", type=Path, help="pipeline config, forwarded to the fetcher")
    parser.add_argument("--from", dest="from_date", help="start date YYYY-MM-DD (default: 1 year before --to)")
    parser.add_argument("--to", default="today", help="end date YYYY-MM-DD or 'today'")
    parser.add_argument("--tickers", help="comma-separated BASE-QUOTE tickers")
    parser.add_argument("--exchanges", default="binance,bybit,bitget,okx")
    parser.add_argument("--quote", default="USDT")
    parser.add_argument("--steps", default="fetch,t2i,merge,s10,renko,validate")
    parser.add_argument("--parallel", type=int, default=4)
    parser.add_argument("--resume", action="store_true")
    parser.add_argument("--out-dir", type=Path, default=Path("/data"))
    parser.add_argument("--log-file", type=Path, default=Path("backfill.log.json"))
    parser.add_argument("--dry-run", action="store_true")
    parser.add_argument("--cleanup", action=argparse.BooleanOptionalAction, default=True)
    parser.add_argument("--keep-staging", action="store_true")
    parser.add_argument("--skip-probe", action="store_true")
    parser.add_argument(
        "--ticker-ids", type=Path,
        help="JSON object mapping BASE/QUOTE symbols to numeric ticker ids",
    )
    return parser


def _print_plan(
    from_date: date, to_date: date, exchanges: Sequence[str], steps: Sequence[str],
    parallel: int, out_dir: Path, tickers: Sequence[str],
) -> None:
    print("PLAN")
    print(f"  from   : {from_date}")
    print(f"  to     : {to_date} ({(to_date - from_date).days} days)")
    print(f"  exch   : {','.join(exchanges)}")
    print(f"  steps  : {','.join(steps)}")
    print(f"  par    : {parallel}")
    print(f"  out    : {out_dir}")
    print(f"  tickers ({len(tickers)}):")
    for ticker in tickers:
        print(f"    - {ticker}")


def main(argv: Sequence[str] | None = None) -> int:
    """Run the backfill; returns 1 when any ticker failed, else 0."""
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
    parser = _build_parser()
    args = parser.parse_args(argv)

    try:
        to_date = parse_utc_date_or_today(args.to)
        from_date = (
            parse_utc_date_or_today(args.from_date)
            if args.from_date is not None
            else to_date - timedelta(days=365)
        )
    except ValueError as exc:
        parser.error(str(exc))
    if args.tickers is None:
        parser.error("--tickers required (comma-separated BASE-QUOTE list)")

    exchanges = split_csv(args.exchanges)
    steps = split_csv(args.steps)
    tickers = split_csv(args.tickers)
    started_at = datetime.now(timezone.utc).isoformat()
    config_echo = {
        "from": from_date.isoformat(),
        "to": to_date.isoformat(),
        "tickers": tickers,
        "exchanges": exchanges,
        "steps": steps,
        "parallel": args.parallel,
        "out_dir": str(args.out_dir),
    }
    logger.info("backfill plan %s", config_echo)

    if args.dry_run:
        _print_plan(from_date, to_date, exchanges, steps, args.parallel, args.out_dir, tickers)
        return 0

    try:
        ticker_ids = _load_ticker_ids(args.ticker_ids)
    except (OSError, ValueError) as exc:
        parser.error(f"--ticker-ids: {exc}")

    def resolve(symbol: str) -> int:
        return ticker_ids[symbol]

    plan = BackfillPlan(
        config=args.config,
        out_dir=args.out_dir,
        from_date=from_date,
        to_date=to_date,
        exchanges=exchanges,
        steps=steps,
        resolve_ticker_id=resolve,
        resume=args.resume,
        cleanup=args.cleanup,
        keep_staging=args.keep_staging,
        skip_probe=args.skip_probe,
    )
    progress_dir(args.out_dir).mkdir(parents=True, exist_ok=True)

    stop = threading.Event()
    heartbeat = threading.Thread(
        target=_heartbeat, args=(stop, plan.counters, len(tickers)), daemon=True
    )
    heartbeat.start()
    results: dict[str, TickerReport] = {}
    try:
        with ThreadPoolExecutor(max_workers=max(args.parallel, 1)) as pool:
            futures = [(t, pool.submit(_guarded_run, plan, t)) for t in tickers]
            for ticker, future in futures:
                results[ticker] = future.result()
    finally:
        stop.set()
        heartbeat.join()

    ordered = [results[t] for t in sorted(results)]
    summary = summarize(ordered)
    report = {
        "started_at": started_at,
        "finished_at": datetime.now(timezone.utc).isoformat(),
        "config": config_echo,
        "results": [r.to_dict() for r in ordered],
        "summary": summary,
    }
    args.log_file.write_text(json.dumps(report, indent=2))
    logger.info("backfill done %s log_file=%s", summary, args.log_file)
    return 1 if summary["failed"] > 0 else 0


if __name__ == "__main__":
    sys.exit(main())