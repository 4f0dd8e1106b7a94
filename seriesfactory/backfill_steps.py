"""Single steps of the backfill pipeline.

Each step starts one external pipeline program found on ``$PATH`` and is
summarised as a :class:`StepReport`. Also here: shard validation through
``integrity-check``, progress markers on disk and removal of per-exchange
staging once the composite index has been built.
"""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Sequence

__all__ = [
    "INTEGRITY_CHECK",
    "StepReport",
    "AvailabilityEntry",
    "split_csv",
    "split_pair",
    "file_bytes",
    "dir_bytes",
    "run_step",
    "integrity_clean",
    "progress_dir",
    "write_marker",
    "manifest_ok",
    "validate_shards",
    "cleanup_ticker_staging",
]

logger = logging.getLogger(__name__)

INTEGRITY_CHECK = "integrity-check"

# integrity-check exit codes: 0 clean, 1 warnings only, 2 errors.
_CLEAN_EXIT_CODES = (0, 1)
_STDERR_TAIL_STEP = 20
_STDERR_TAIL_SHARD = 5

PathLike = str | os.PathLike


@dataclass
class StepReport:
    """Outcome of one pipeline step for one ticker."""

    name: str
    duration_ms: int = 0
    exit_code: int = 0
    bytes: int = 0
    skipped: bool = False
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class AvailabilityEntry:
    """Archive coverage of one exchange for one ticker."""

    exchange: str
    has_data: bool
    first_date: str | None = None
    last_date: str | None = None

    def to_dict(self) -> dict:
        return asdict(self)


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


def _exit_code(returncode: int) -> int:
    # A process killed by a signal has no exit code.
    return returncode if returncode >= 0 else -1


def split_csv(text: str) -> list[str]:
    """Split a comma-separated list, trimming items and dropping empty ones."""
    return [item.strip() for item in text.split(",") if item.strip()]


def split_pair(ticker: str) -> tuple[str, str]:
    """Split ``BASE-QUOTE`` or ``BASE/QUOTE`` into its two halves.

    Raises :class:`ValueError` when there is no separator or a half is empty.
    """
    positions = [pos for pos in (ticker.find("/"), ticker.find("-")) if pos >= 0]
    if positions:
        cut = min(positions)
        base, quote = ticker[:cut], ticker[cut + 1:]
        if base and quote:
            return base, quote
    raise ValueError(f"bad ticker {ticker}: expected BASE-QUOTE")


def file_bytes(path: PathLike) -> int:
    """Size of a file in bytes, 0 when it cannot be read."""
    try:
        return os.stat(path).st_size
    except OSError:
        return 0


def dir_bytes(path: PathLike) -> int:
    """Total size of all files below a directory, 0 when it cannot be read."""
    try:
        entries = list(os.scandir(path))
    except OSError:
        return 0
    total = 0
    for entry in entries:
        try:
            if entry.is_dir():
                total += dir_bytes(entry.path)
            else:
                total += entry.stat().st_size
        except OSError:
            continue
    return total


def _output_bytes(out_path: PathLike | None) -> int:
    if out_path is None:
        return 0
    if Path(out_path).is_dir():
        return dir_bytes(out_path)
    return file_bytes(out_path)


def run_step(
    ticker: str, program: str, args: Sequence[str], out_path: PathLike | None
) -> StepReport:
    """Run one pipeline program and report duration, exit code and output size.

    On failure the last lines of stderr are kept as errors. A program that
    cannot be started gives exit code -1.
    """
    logger.info("step start ticker=%s bin=%s args=%s", ticker, program, list(args))
    started = time.monotonic()
    try:
        proc = subprocess.run([program, *args], capture_output=True)
    except OSError as exc:
        duration_ms = _elapsed_ms(started)
        logger.error("spawn failed ticker=%s bin=%s err=%s", ticker, program, exc)
        return StepReport(
            name=program,
            duration_ms=duration_ms,
            exit_code=-1,
            errors=[f"spawn failed: {exc}"],
        )
    duration_ms = _elapsed_ms(started)
    exit_code = _exit_code(proc.returncode)
    errors: list[str] = []
    if proc.returncode != 0:
        stderr = proc.stderr.decode("utf-8", errors="replace")
        errors = stderr.splitlines()[-_STDERR_TAIL_STEP:]
        logger.error(
            "step failed ticker=%s bin=%s exit_code=%d duration_ms=%d stderr_tail=%s",
            ticker, program, exit_code, duration_ms, errors,
        )
    out_bytes = _output_bytes(out_path)
    if proc.returncode == 0:
        logger.info(
            "step done ticker=%s bin=%s duration_ms=%d bytes_out=%d",
            ticker, program, duration_ms, out_bytes,
        )
    return StepReport(
        name=program,
        duration_ms=duration_ms,
        exit_code=exit_code,
        bytes=out_bytes,
        errors=errors,
    )


def integrity_clean(path: PathLike, kind: str) -> bool:
    """True when ``path`` exists and ``integrity-check`` reports no errors.

    Warnings only (exit 1) count as clean.
    """
    if not Path(path).exists():
        return False
    try:
        proc = subprocess.run(
            [INTEGRITY_CHECK, kind, str(path), "--json"], capture_output=True
        )
    except OSError:
        return False
    return proc.returncode in _CLEAN_EXIT_CODES


def progress_dir(out_dir: PathLike) -> Path:
    """Directory holding per-ticker progress markers."""
    return Path(out_dir) / "backfill" / "progress"


def write_marker(out_dir: PathLike, ticker: str, suffix: str) -> None:
    """Write ``<ticker>.<suffix>`` holding the current UTC time; failures are logged."""
    directory = progress_dir(out_dir)
    marker = directory / f"{ticker}.{suffix}"
    try:
        directory.mkdir(parents=True, exist_ok=True)
        marker.write_text(datetime.now(timezone.utc).isoformat())
    except OSError as exc:
        logger.warning("progress marker write failed path=%s err=%s", marker, exc)


def _files_with_suffix(directory: Path, suffix: str) -> list[Path]:
    try:
        return [p for p in directory.iterdir() if p.name.endswith(suffix)]
    except OSError:
        return []


def manifest_ok(ticker_dir: PathLike, kind: str) -> bool:
    """Cheap resume gate: a manifest and at least one ``.<kind>`` shard exist."""
    directory = Path(ticker_dir)
    if not (directory / "manifest.json").exists():
        return False
    return bool(_files_with_suffix(directory, f".{kind}"))


def validate_shards(ticker: str, ticker_dir: PathLike, kind: str) -> StepReport:
    """Run ``integrity-check`` on every ``.<kind>`` shard in ``ticker_dir``.

    Any shard with errors sets exit code 1. No shards at all gives a skipped
    report with exit code 0.
    """
    name = f"integrity-check-shards[{kind}]"
    started = time.monotonic()
    directory = Path(ticker_dir)
    shards = sorted(_files_with_suffix(directory, f".{kind}"))
    if not shards:
        logger.warning("no shards to validate ticker=%s kind=%s dir=%s", ticker, kind, directory)
        return StepReport(
            name=name,
            duration_ms=_elapsed_ms(started),
            exit_code=0,
            skipped=True,
            errors=["no shards present"],
        )

    errors: list[str] = []
    total_bytes = 0
    any_fail = False
    for shard in shards:
        total_bytes += file_bytes(shard)
        try:
            proc = subprocess.run(
                [INTEGRITY_CHECK, kind, str(shard), "--json"], capture_output=True
            )
        except OSError as exc:
            any_fail = True
            errors.append(f"{shard}: spawn {exc}")
            continue
        if proc.returncode in _CLEAN_EXIT_CODES:
            continue
        any_fail = True
        stderr = proc.stderr.decode("utf-8", errors="replace")
        for line in reversed(stderr.splitlines()[-_STDERR_TAIL_SHARD:]):
            errors.append(f"{shard}: {line}")
        logger.error(
            "shard integrity-check failed ticker=%s kind=%s shard=%s exit=%s",
            ticker, kind, shard, proc.returncode,
        )

    exit_code = 1 if any_fail else 0
    duration_ms = _elapsed_ms(started)
    logger.info(
        "shard validate done ticker=%s kind=%s n_shards=%d exit_code=%d duration_ms=%d",
        ticker, kind, len(shards), exit_code, duration_ms,
    )
    return StepReport(
        name=name,
        duration_ms=duration_ms,
        exit_code=exit_code,
        bytes=total_bytes,
        errors=errors,
    )


def cleanup_ticker_staging(
    out_dir: PathLike, exchanges: Sequence[str], base: str, quote: str
) -> StepReport:
    """Remove a ticker's raw tick staging and per-exchange index files.

    Reports the bytes removed; any removal error sets exit code 1.
    """
    started = time.monotonic()
    root = Path(out_dir)
    removed = 0
    errors: list[str] = []
    for exchange in exchanges:
        ticks_dir = root / "ticks" / exchange / f"{base}{quote}"
        if ticks_dir.exists():
            removed += dir_bytes(ticks_dir)
            try:
                shutil.rmtree(ticks_dir)
            except OSError as exc:
                errors.append(f"rm -r {ticks_dir}: {exc}")
        per_idx = root / "indexes" / exchange / f"{base}-{quote}.idx"
        if per_idx.exists():
            removed += file_bytes(per_idx)
            try:
                per_idx.unlink()
            except OSError as exc:
                errors.append(f"rm {per_idx}: {exc}")
    return StepReport(
        name="cleanup-staging",
        duration_ms=_elapsed_ms(started),
        exit_code=0 if not errors else 1,
        bytes=removed,
        errors=errors,
    )