"""Align log-local timestamps to Unix time using the GPS message."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from .series import SeriesStore

logger = logging.getLogger(__name__)

SECONDS_PER_WEEK = 604800
GPS_TO_UNIX = 315964800  # 1980-01-06 minus 1970-01-01, in seconds
LEAP_SECONDS = 18  # GPS - UTC since 2017-01-01


@dataclass
class TimeSyncConfig:
    navigation_message: str = "GPS"
    week_field: str = "GWk"
    week_ms_field: str = "GMS"
    time_field: str = "TimeUS"
    # the first GPS sample is often logged before the fix is complete
    reference_index: int = 1
    leap_seconds: int = LEAP_SECONDS
    gps_to_unix: int = GPS_TO_UNIX


def gps_to_unix(week: float, week_ms: float,
                config: TimeSyncConfig | None = None) -> float:
    """GPS week and milliseconds-of-week to Unix seconds."""
    config = config or TimeSyncConfig()
    return (week * SECONDS_PER_WEEK + week_ms / 1000.0
            + config.gps_to_unix - config.leap_seconds)


def compute_offset(store: SeriesStore,
                   config: TimeSyncConfig | None = None) -> float | None:
    """Offset (seconds) to add to log time, or None if it cannot be derived.

    Needs the store finalized, so the time column is already in seconds.
    """
    config = config or TimeSyncConfig()
    nav = store.get(config.navigation_message, 0)
    if nav is None:
        logger.warning("no %s message, timestamps left in log time",
                       config.navigation_message)
        return None

    week = nav.column(config.week_field)
    week_ms = nav.column(config.week_ms_field)
    local = nav.column(config.time_field)
    if week is None or week_ms is None or local is None:
        logger.warning("%s lacks %s/%s/%s fields, time sync skipped",
                       config.navigation_message, config.week_field,
                       config.week_ms_field, config.time_field)
        return None

    i = config.reference_index
    if len(nav) <= i:
        logger.warning("only %d %s samples, time sync needs %d",
                       len(nav), config.navigation_message, i + 1)
        return None

    absolute = gps_to_unix(float(week[i]), float(week_ms[i]), config)
    offset = absolute - float(local[i])
    logger.debug("time offset %.6f s from %s sample %d",
                 offset, config.navigation_message, i)
    return offset


def apply_offset(store: SeriesStore, offset: float) -> None:
    for series in store:
        timestamps = series.timestamps
        if timestamps is not None:
            timestamps += offset


def synchronize(store: SeriesStore,
                config: TimeSyncConfig | None = None) -> float | None:
    """Shift every timestamp column to Unix time. Returns the offset used."""
    offset = compute_offset(store, config)
    if offset is not None:
        apply_offset(store, offset)
    return offset
