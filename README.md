# seriesfactory

Offline tooling for market-data series kept in a daily-sharded layout:

```
<data_root>/indexes/<ticker_id>/<YYYY-MM-DD>.idx
<data_root>/bars/<ticker_id>/<YYYY-MM-DD>.{s10,renko}
```

The package has four modules:

- `seriesfactory.calibrate` — search for the Renko brick `multiplier` that
  gives a target number of bricks per day.
- `seriesfactory.layout` — paths of the sharded store, shard listing and
  UTC date helpers.
- `seriesfactory.backfill_steps` — single pipeline steps: running a stage
  program, shard validation, progress markers, staging cleanup.
- `seriesfactory.backfill` — the `backfill-all` command, which runs the whole
  pipeline for many tickers in parallel and writes a JSON report.

No third-party libraries are needed at run time.

## Installation

```
pip install .
```

For the tests:

```
pip install ".[test]"
pytest
```

## Calibrating a Renko multiplier

The Renko engine and the volatility source come from the caller:

- `generator_factory(config)` builds a fresh brick generator for a
  `RenkoConfig` (it may raise `ValueError` to reject a config). The generator
  has `feed(ts_ms, mid, sigma)`, returning the number of bricks that tick
  emitted.
- `sigma_at(ts_ms)` returns the volatility (as a fraction) at a timestamp.

```python
from dataclasses import replace

from seriesfactory.calibrate import CalibrationConfig, RenkoConfig, calibrate_mtf

cal = CalibrationConfig(
    target_bpd=300.0,
    k_fit_windows_days=[30, 60, 120],
    min_window_days=7,
    max_rounds=20,
    tolerance=0.02,
    mult_bounds=(0.01, 10.0),
)
base = RenkoConfig(multiplier=1.0, min_pct=0.0005)

mult = calibrate_mtf(prices, cal, base, generator_factory, sigma_at)
if mult > 0:
    base = replace(base, multiplier=mult)
```

`prices` is a time-ordered sequence of `(ts_ms, mid)` pairs. For each window
in `k_fit_windows_days` a log-space binary search runs over `mult_bounds`;
rounds that produce no bricks never count as a solution, and a window whose
best value lies within 1% of a bound is dropped. The surviving multipliers are
blended by geometric mean. A result of `0.0` means calibration failed and the
previous multiplier should be kept. `RenkoConfig` is frozen.

Related functions:

- `calibrate_mtf_with_target(...)` — same, with an explicit `target_bpd`.
- `calibrate_mtf_walkforward(..., target_bpd, eval_holdout_days)` — scores
  each candidate on the trailing `eval_holdout_days` days with
  `DailyBpdStats.score`.
- `count_bars_from_prices(prices, config, generator_factory, sigma_at, from_ts, to_ts)`
  — total bricks in `[from_ts, to_ts]`.
- `count_bars_per_day_from_prices(...)` — a `DailyBpdStats` with per-UTC-day
  counts, `median`, `mean`, `mad` and `days`; `score(target_bpd)` is the
  median's relative error plus 0.3 times the MAD over the target (lower is
  better, `inf` when there are no days).

## Store layout helpers

```python
from seriesfactory.layout import idx_dir, bars_dir, list_shards, ts_ms_to_utc_date

shards = list_shards(idx_dir("/data", 12345), "idx")   # [(date, Path), ...] sorted
```

`parse_utc_date_or_today` accepts `YYYY-MM-DD` or `today` and raises
`ValueError` for anything else. Constants `MS_PER_DAY`, `MS_PER_MIN`,
`MS_PER_30MIN` and `SENTINEL_INTERVAL_MS` are exported.

## Running a backfill

```
backfill-all nxrates.yml --tickers BTC-USDT,ETH-USDT --ticker-ids ids.json --from 2024-01-01 --to today --parallel 4 --out-dir /data
```

`ids.json` maps `BASE/QUOTE` symbols to the numeric ids that name the shard
directories, e.g. `{"BTC/USDT": 1, "ETH/USDT": 2}`; a ticker with no id fails
at its `resolve` step.

The stage programs (`fetch-crypto-history`, `ticks-to-idx`, `merge-idx`,
`s10-from-idx`, `renko-from-idx`, `integrity-check`) are looked up on `PATH`;
this package starts them but does not provide them. Before fetching, the
fetcher is asked with `--probe` which exchanges have archive coverage; a
ticker with none is skipped.

Options:

- `--steps fetch,t2i,merge,s10,renko,validate` — which stages run.
- `--exchanges binance,bybit,bitget,okx` and `--quote USDT`.
- `--resume` — skip stages whose output already exists and checks clean.
- `--keep-staging` or `--no-cleanup` — keep raw per-exchange ticks and
  per-exchange indexes after a successful merge (removed by default).
- `--skip-probe` — skip the availability probe.
- `--dry-run` — print the plan and exit.
- `--log-file backfill.log.json` — where the JSON report goes.

Progress markers are written under `<out_dir>/backfill/progress/` as
`<ticker>.start`, `<ticker>.done` or `<ticker>.failed`. The command exits with
status 1 if any ticker failed. From Python, `run_ticker(plan, ticker)` runs
one ticker for a `BackfillPlan`, and `summarize(results)` counts reports by
status.

## What the package does not do

- It does not build volatility (`.vol`) files; `sigma_at` must come from
  elsewhere.
- It contains no Renko generator; one must be supplied to the calibration
  functions.
- It does not read or decode `.idx`, `.s10` or `.renko` record files, and has
  no data-quality audit or backfill/live continuity checker of its own; shard
  validation is delegated to the external `integrity-check` program.