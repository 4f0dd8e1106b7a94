"""Offline calibration of the Renko brick multiplier to a target bars-per-day.

The Renko engine and the volatility source are supplied by the caller:

* ``generator_factory(config)`` builds a fresh brick generator for a
  :class:`RenkoConfig`. It may raise :class:`ValueError` for a config it
  rejects. The generator has a method ``feed(ts_ms, mid, sigma)`` that
  returns the number of bricks the tick emitted.
* ``sigma_at(ts_ms)`` returns the volatility (sigma, as a fraction) that
  applies at an epoch-millisecond timestamp.

Prices are ``(ts_ms, mid)`` pairs in ascending timestamp order.
"""

from __future__ import annotations

import logging
import math
import struct
import time
from dataclasses import dataclass, field
from typing import Callable, Protocol, Sequence

__all__ = [
    "MS_PER_DAY",
    "RenkoConfig",
    "CalibrationConfig",
    "DailyBpdStats",
    "count_bars_per_day_from_prices",
    "count_bars_from_prices",
    "calibrate_mtf",
    "calibrate_mtf_with_target",
    "calibrate_mtf_walkforward",
]

logger = logging.getLogger(__name__)

MS_PER_DAY = 86_400_000

# Safety brake against pathological runaway loops while counting bricks.
_MAX_BARS = 1_000_000_000


class _BrickGenerator(Protocol):
    def feed(self, ts_ms: int, mid: float, sigma: float) -> int: ...


Price = tuple[int, float]
GeneratorFactory = Callable[["RenkoConfig"], _BrickGenerator]
SigmaAt = Callable[[int], float]


def _f32(value: float) -> float:
    """Round a float to single precision, as the multiplier is stored."""
    try:
        return struct.unpack("f", struct.pack("f", value))[0]
    except OverflowError:
        return math.copysign(math.inf, value)


@dataclass(frozen=True)
class RenkoConfig:
    """Brick sizing: brick = multiplier * sigma * price, floored at min_pct."""

    multiplier: float
    min_pct: float


@dataclass
class CalibrationConfig:
    """Calibration knobs (the ``series.calibration`` section of the config).

    ``k_fit_windows_days`` lists the lookback windows; each runs an
    independent log-space binary search and the results are blended by
    geometric mean.
    """

    target_bpd: float
    k_fit_windows_days: list[int] = field(default_factory=list)
    min_window_days: int = 0
    max_rounds: int = 0
    tolerance: float = 0.0
    mult_bounds: tuple[float, float] = (0.0, 0.0)


@dataclass
class DailyBpdStats:
    """Per-UTC-day brick counts and their summary statistics."""

    bricks_per_day: list[int]
    median: float
    mean: float
    mad: float
    days: int

    def score(self, target_bpd: float) -> float:
        """Median deviation from target plus 0.3 x normalised MAD; lower is better."""
        if self.days == 0 or target_bpd <= 0.0:
            return math.inf
        median_err = abs(self.median / target_bpd - 1.0)
        mad_norm = self.mad / target_bpd
        return median_err + 0.3 * mad_norm


def _empty_stats() -> DailyBpdStats:
    return DailyBpdStats(bricks_per_day=[], median=0.0, mean=0.0, mad=0.0, days=0)


def _median_sorted(values: Sequence[int]) -> float:
    n = len(values)
    if n == 0:
        return 0.0
    if n % 2 == 1:
        return float(values[n // 2])
    return 0.5 * (values[n // 2 - 1] + values[n // 2])


def _feed(generator: _BrickGenerator, ts: int, mid: float, sigma: float) -> int:
    try:
        return generator.feed(ts, mid, sigma)
    except ValueError:
        return 0


def _in_range(prices: Sequence[Price], from_ts: int, to_ts: int):
    for ts, mid in prices:
        if ts < from_ts:
            continue
        if ts > to_ts:
            break
        yield ts, mid


def count_bars_per_day_from_prices(
    prices: Sequence[Price],
    config: RenkoConfig,
    generator_factory: GeneratorFactory,
    sigma_at: SigmaAt,
    from_ts: int,
    to_ts: int,
) -> DailyBpdStats:
    """Replay prices through a fresh generator and bucket bricks per UTC day."""
    try:
        generator = generator_factory(config)
    except ValueError:
        return _empty_stats()
    if to_ts <= from_ts:
        return _empty_stats()

    n_days = max((to_ts - from_ts) // MS_PER_DAY, 1)
    per_day = [0] * n_days
    for ts, mid in _in_range(prices, from_ts, to_ts):
        day_idx = min(max((ts - from_ts) // MS_PER_DAY, 0), n_days - 1)
        per_day[day_idx] += _feed(generator, ts, mid, sigma_at(ts))

    mean = sum(per_day) / n_days
    median = _median_sorted(sorted(per_day))
    devs = sorted(math.floor(abs(b - median) + 0.5) for b in per_day)
    mad = _median_sorted(devs)
    return DailyBpdStats(
        bricks_per_day=per_day, median=median, mean=mean, mad=mad, days=n_days
    )


def count_bars_from_prices(
    prices: Sequence[Price],
    config: RenkoConfig,
    generator_factory: GeneratorFactory,
    sigma_at: SigmaAt,
    from_ts: int,
    to_ts: int,
) -> int:
    """Replay prices through a fresh generator and count bricks in [from_ts, to_ts]."""
    try:
        generator = generator_factory(config)
    except ValueError as exc:
        logger.debug("brick generator rejected config: %s", exc)
        return 0

    count = 0
    n_in_range = 0
    for ts, mid in _in_range(prices, from_ts, to_ts):
        n_in_range += 1
        count += _feed(generator, ts, mid, sigma_at(ts))
        if count > _MAX_BARS:
            return count
    logger.debug(
        "count_bars: in_range=%d bars=%d mult=%s", n_in_range, count, config.multiplier
    )
    return count


def _clamped(mult: float, bounds: tuple[float, float]) -> str | None:
    lo, hi = bounds
    if abs(mult - lo) / lo < 0.01:
        return "lower"
    if abs(mult - hi) / hi < 0.01:
        return "upper"
    return None


def _geo_mean(values: Sequence[float]) -> float:
    return _f32(math.exp(sum(math.log(v) for v in values) / len(values)))


def calibrate_mtf(
    prices: Sequence[Price],
    cal: CalibrationConfig,
    base: RenkoConfig,
    generator_factory: GeneratorFactory,
    sigma_at: SigmaAt,
) -> float:
    """Multi-window calibration against ``cal.target_bpd``; 0.0 means failure."""
    return calibrate_mtf_with_target(
        prices, cal, base, generator_factory, sigma_at, cal.target_bpd
    )


def calibrate_mtf_with_target(
    prices: Sequence[Price],
    cal: CalibrationConfig,
    base: RenkoConfig,
    generator_factory: GeneratorFactory,
    sigma_at: SigmaAt,
    target_bpd: float,
) -> float:
    """Multi-window calibration with an explicit target bars-per-day.

    Returns the geometric mean of the per-window multipliers, or 0.0 when no
    window produced a usable result (the caller keeps its prior multiplier).
    """
    first = prices[0][0] if prices else 0
    last = prices[-1][0] if prices else 0
    if last <= first:
        logger.warning(
            "calibrate_mtf early-return: last<=first (n=%d first=%d last=%d)",
            len(prices), first, last,
        )
        return 0.0

    started = time.monotonic()
    lo_bound, hi_bound = cal.mult_bounds
    mults: list[float] = []

    for window_days in cal.k_fit_windows_days:
        window_from = max(last - window_days * MS_PER_DAY, first)
        days = (last - window_from) / MS_PER_DAY
        if days < cal.min_window_days:
            logger.info(
                "%dd window: insufficient data (%.0fd available), skipping",
                window_days, days,
            )
            continue

        log_lo, log_hi = math.log(lo_bound), math.log(hi_bound)
        best_mult, best_err = base.multiplier, math.inf

        for round_no in range(cal.max_rounds):
            log_mid = (log_lo + log_hi) / 2.0
            mult = _f32(math.exp(log_mid))
            trial = RenkoConfig(multiplier=mult, min_pct=base.min_pct)
            n = count_bars_from_prices(
                prices, trial, generator_factory, sigma_at, window_from, last
            )
            bpd = n / days
            err = abs(bpd / target_bpd - 1.0)
            logger.info(
                "round %d/%d: mult=%.6f bars=%d bpd=%.1f err=%.1f%%",
                round_no + 1, cal.max_rounds, mult, n, bpd, err * 100.0,
            )
            # A round with no bricks is never a valid solution.
            if n > 0 and err < best_err:
                best_mult, best_err = mult, err
            if err < cal.tolerance and n > 0:
                break
            if bpd > target_bpd:
                log_lo = log_mid
            else:
                log_hi = log_mid

        if best_err == math.inf:
            logger.warning(
                "%dd window had no non-empty rounds; dropping from blend", window_days
            )
            continue

        logger.info(
            "%dd window: mult=%.6f (err=%.1f%%)", window_days, best_mult, best_err * 100.0
        )
        bound = _clamped(best_mult, cal.mult_bounds)
        if bound is not None:
            logger.warning(
                "%dd window: mult=%s hit %s bound %s; dropping from blend",
                window_days, best_mult, bound, cal.mult_bounds,
            )
            continue
        mults.append(best_mult)

    if not mults:
        logger.warning(
            "calibrate_mtf all windows empty (target_bpd=%s windows=%s n_prices=%d)",
            target_bpd, cal.k_fit_windows_days, len(prices),
        )
        return 0.0

    geo_mean = _geo_mean(mults)
    logger.info(
        "MTF calibration done: geo_mean=%.6f from %s in %.1fs target_bpd=%.0f",
        geo_mean, mults, time.monotonic() - started, target_bpd,
    )
    return geo_mean


def calibrate_mtf_walkforward(
    prices: Sequence[Price],
    cal: CalibrationConfig,
    base: RenkoConfig,
    generator_factory: GeneratorFactory,
    sigma_at: SigmaAt,
    target_bpd: float,
    eval_holdout_days: int,
) -> float:
    """Walk-forward calibration scored on the trailing holdout slice.

    Each window's multiplier is searched by minimising
    :meth:`DailyBpdStats.score` on the last ``eval_holdout_days`` days.
    Windows whose result sits at a search bound are dropped. Returns the
    geometric mean of the survivors, or 0.0.
    """
    first = prices[0][0] if prices else 0
    last = prices[-1][0] if prices else 0
    if last <= first or eval_holdout_days == 0:
        return 0.0
    eval_from = last - eval_holdout_days * MS_PER_DAY
    if eval_from <= first:
        return 0.0

    lo_bound, hi_bound = cal.mult_bounds
    mults: list[float] = []
    for window_days in cal.k_fit_windows_days:
        cal_from = max(last - window_days * MS_PER_DAY, first)
        cal_days = (eval_from - cal_from) / MS_PER_DAY
        if cal_days < cal.min_window_days:
            continue

        log_lo, log_hi = math.log(lo_bound), math.log(hi_bound)
        best_mult, best_score = base.multiplier, math.inf

        for _ in range(cal.max_rounds):
            log_mid = (log_lo + log_hi) / 2.0
            mult = _f32(math.exp(log_mid))
            trial = RenkoConfig(multiplier=mult, min_pct=base.min_pct)
            stats = count_bars_per_day_from_prices(
                prices, trial, generator_factory, sigma_at, eval_from, last
            )
            score = stats.score(target_bpd)
            if score < best_score:
                best_mult, best_score = mult, score
            if score < cal.tolerance:
                break
            if stats.median > target_bpd:
                log_lo = log_mid
            else:
                log_hi = log_mid

        bound = _clamped(best_mult, cal.mult_bounds)
        if bound is not None:
            logger.warning(
                "walk-forward %dd window: mult=%s hit %s bound; dropped",
                window_days, best_mult, bound,
            )
            continue
        mults.append(best_mult)

    if not mults:
        return 0.0
    return _geo_mean(mults)