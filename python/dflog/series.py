"""Per-message value buffers, output sinks and the publishing step."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterator, Protocol

import numpy as np

from .schema import TIMESTAMP_FIELD, DataFlashError, MessageFormat

logger = logging.getLogger(__name__)

US_PER_S = 1e6


@dataclass
class ChannelData:
    """Time-series data for one published series."""

    timestamps: np.ndarray  # float64, seconds
    values: np.ndarray  # float64


# ---------------------------------------------------------------------------
# Decode-time storage
# ---------------------------------------------------------------------------

@dataclass
class MessageSeries:
    """Value buffers of one (message, instance) pair.

    While decoding, ``columns`` holds Python lists; :meth:`finalize` turns
    them into float64 arrays and converts the timestamp column from
    microseconds to seconds.
    """

    msg_id: int
    name: str
    instance: int
    labels: list[str]
    field_indices: list[int]  # format field index of each column
    time_column: int | None = None
    instance_field: int | None = None
    columns: list = field(default_factory=list)
    units: list[str | None] = field(default_factory=list)
    finalized: bool = False
    format: MessageFormat | None = field(default=None, repr=False)

    def __post_init__(self) -> None:
        if not self.columns:
            self.columns = [[] for _ in self.labels]
        if not self.units:
            self.units = [None] * len(self.labels)

    def matches(self, fmt: MessageFormat) -> bool:
        """True if records of *fmt* belong in these columns."""
        return self.format is not None and (self.format is fmt
                                            or self.format.same_layout(fmt))

    def append(self, values: list[float]) -> None:
        if len(values) != len(self.columns):
            raise DataFlashError(f"{self.name}: {len(values)} values for "
                                 f"{len(self.columns)} columns")
        for column, value in zip(self.columns, values):
            column.append(value)

    def finalize(self) -> None:
        if self.finalized:
            return
        self.columns = [np.asarray(c, dtype=np.float64) for c in self.columns]
        if self.time_column is not None:
            self.columns[self.time_column] /= US_PER_S
        self.finalized = True

    @property
    def timestamps(self):
        if self.time_column is None:
            return None
        return self.columns[self.time_column]

    def column(self, label: str):
        try:
            return self.columns[self.labels.index(label)]
        except ValueError:
            return None

    def __len__(self) -> int:
        return len(self.columns[0]) if self.columns else 0


class SeriesStore:
    """All :class:`MessageSeries` of a decode session.

    Each (name, instance) pair has a current series.  A record whose format
    no longer matches it (the id was redefined by a later FMT) starts a new
    series for the pair; earlier ones are kept and published in order.
    """

    def __init__(self) -> None:
        self._current: dict[tuple[str, int], MessageSeries] = {}
        self._series: list[MessageSeries] = []

    def get_or_create(self, fmt: MessageFormat, instance: int = 0,
                      instance_field: int | None = None) -> MessageSeries:
        key = (fmt.name, instance)
        series = self._current.get(key)
        if series is None or not series.matches(fmt):
            if series is not None:
                logger.info("%s redefined, starting new series for instance %d",
                            fmt.name, instance)
            indices = fmt.value_fields()
            labels = [fmt.labels[i] for i in indices]
            time_column = (labels.index(TIMESTAMP_FIELD)
                           if TIMESTAMP_FIELD in labels else None)
            series = MessageSeries(fmt.id, fmt.name, instance, labels, indices,
                                   time_column, instance_field, format=fmt)
            self._current[key] = series
            self._series.append(series)
        elif series.instance_field is None and instance_field is not None:
            series.instance_field = instance_field
        return series

    def get(self, name: str, instance: int = 0) -> MessageSeries | None:
        """Current series of (name, instance)."""
        return self._current.get((name, instance))

    def instances(self, name: str) -> list[int]:
        return sorted(i for n, i in self._current if n == name)

    def set_instance_field(self, fmt: MessageFormat, field_index: int) -> None:
        """Mark *field_index* as the instance field of every series of *fmt*."""
        for series in self._series:
            if series.matches(fmt):
                series.instance_field = field_index

    def finalize(self) -> None:
        for series in self._series:
            series.finalize()

    def __iter__(self) -> Iterator[MessageSeries]:
        return iter(self._series)

    def __len__(self) -> int:
        return len(self._series)


# ---------------------------------------------------------------------------
# Output
# ---------------------------------------------------------------------------

class NumericSeries:
    """A named sequence of (timestamp, value) samples."""

    def __init__(self, name: str, unit: str | None = None):
        self.name = name
        self.unit = unit
        self._t: list[float] = []
        self._v: list[float] = []

    def append(self, timestamp: float, value: float) -> None:
        self._t.append(timestamp)
        self._v.append(value)

    def extend(self, timestamps, values) -> None:
        self._t.extend(np.asarray(timestamps, dtype=np.float64).tolist())
        self._v.extend(np.asarray(values, dtype=np.float64).tolist())

    def data(self) -> ChannelData:
        return ChannelData(np.asarray(self._t, dtype=np.float64),
                           np.asarray(self._v, dtype=np.float64))

    def __len__(self) -> int:
        return len(self._t)

    def __iter__(self) -> Iterator[tuple[float, float]]:
        return zip(self._t, self._v)


class SeriesSink(Protocol):
    """Destination for published series."""

    def series(self, name: str, unit: str | None = None) -> NumericSeries: ...


class MemorySink:
    """In-memory sink; creates a series on first request for its name."""

    def __init__(self) -> None:
        self._series: dict[str, NumericSeries] = {}

    def series(self, name: str, unit: str | None = None) -> NumericSeries:
        s = self._series.get(name)
        if s is None:
            s = self._series[name] = NumericSeries(name, unit)
        elif s.unit is None:
            s.unit = unit
        return s

    def names(self) -> list[str]:
        return sorted(self._series)

    def query(self, name: str) -> ChannelData:
        return self._series[name].data()

    def __getitem__(self, name: str) -> NumericSeries:
        return self._series[name]

    def __contains__(self, name: str) -> bool:
        return name in self._series

    def __len__(self) -> int:
        return len(self._series)


def series_path(name: str, label: str, instance: int | None = None) -> str:
    if instance is None:
        return f"/{name}/{label}"
    return f"/{name}/#{instance}/{label}"


def publish(store: SeriesStore, sink: SeriesSink) -> tuple[list[str], list[str]]:
    """Emit one series per value column of every message with a timestamp.

    Returns ``(published_names, skipped_message_names)``.
    """
    published: list[str] = []
    seen: set[str] = set()
    skipped: list[str] = []
    for ms in store:
        timestamps = ms.timestamps
        if timestamps is None:
            if ms.name not in skipped:
                logger.warning("message %s has no %s field, not published",
                               ms.name, TIMESTAMP_FIELD)
                skipped.append(ms.name)
            continue
        instance = ms.instance if ms.instance_field is not None else None
        for col, label in enumerate(ms.labels):
            if col == ms.time_column or ms.field_indices[col] == ms.instance_field:
                continue
            path = series_path(ms.name, label, instance)
            sink.series(path, ms.units[col]).extend(timestamps, ms.columns[col])
            if path not in seen:
                seen.add(path)
                published.append(path)
    return published, skipped
