"""Offline market-data series tooling: Renko calibration, store layout helpers and backfill."""

__version__ = "0.1.0"

__all__ = ["backfill", "backfill_steps", "calibrate", "layout"]