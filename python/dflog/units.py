"""Unit and multiplier tables built from UNIT/MULT records, and the passes using them."""

from __future__ import annotations

import logging
import re
from typing import TYPE_CHECKING

import numpy as np

from .schema import FormatUnits, SchemaRegistry

if TYPE_CHECKING:
    from .series import MessageSeries, SeriesStore

logger = logging.getLogger(__name__)

# |mult| this close to 0 ("no multiplier") or 1 ("unknown") means no scaling
IDENTITY_EPSILON = 1e-10

_SUPERSCRIPT = {1: "¹", 2: "²", 3: "³"}
_SUPERSCRIPT_MINUS = "⁻"
_MAX_EXPONENT = 3
_DIVISOR_RE = re.compile(r"/([^/\s]+)")


def rewrite_unit(unit: str) -> str:
    """Turn ``/symbol`` divisors into negative exponents.

    A symbol runs up to the next ``/`` or whitespace, so exponents already
    written inline stay part of it (``m/s2`` gives ``m s2⁻¹``).

    >>> rewrite_unit("m/s/s")
    'm s⁻²'
    """
    counts: dict[str, int] = {}
    for match in _DIVISOR_RE.finditer(unit):
        symbol = match.group(1)
        counts[symbol] = min(counts.get(symbol, 0) + 1, _MAX_EXPONENT)
    if not counts:
        return unit
    parts = [_DIVISOR_RE.sub("", unit).strip()]
    for symbol, count in counts.items():
        parts.append(f"{symbol}{_SUPERSCRIPT_MINUS}{_SUPERSCRIPT[count]}")
    return " ".join(p for p in parts if p)


def is_identity(mult: float) -> bool:
    return abs(mult) < IDENTITY_EPSILON or abs(mult - 1.0) < IDENTITY_EPSILON


class MultiplierTable(dict):
    """Multiplier id char -> scale factor."""

    def add(self, ident: str, mult: float) -> None:
        # loggers write float32 values widened to double
        self[ident] = float(f"{mult:.7g}")


class UnitTable(dict):
    """Unit id char -> unit label."""

    def add(self, ident: str, label: str) -> None:
        self[ident] = label

    def rewrite(self) -> None:
        """Rewrite every label in place with :func:`rewrite_unit`."""
        for ident in list(self):
            self[ident] = rewrite_unit(self[ident])


def _format_units(registry: SchemaRegistry, series: MessageSeries) -> FormatUnits | None:
    """FMTU of the format *series* was decoded with, if still registered."""
    fmt = registry.lookup(series.msg_id)
    if fmt is None or not series.matches(fmt):
        return None
    return registry.format_units(series.msg_id)


def annotate_units(store: SeriesStore, registry: SchemaRegistry,
                   units: UnitTable) -> None:
    """Set the unit label of every column that has one."""
    for series in store:
        fmt_units = _format_units(registry, series)
        if fmt_units is None:
            continue
        for col, index in enumerate(series.field_indices):
            char = fmt_units.unit_char(index)
            if char is not None:
                series.units[col] = units.get(char)


def apply_multipliers(store: SeriesStore, registry: SchemaRegistry,
                      multipliers: MultiplierTable) -> int:
    """Scale every value column in place by its field's multiplier.

    Timestamp and instance columns are left alone.  Returns the number of
    columns scaled.
    """
    scaled = 0
    warned: set[str] = set()
    for series in store:
        fmt_units = _format_units(registry, series)
        if fmt_units is None:
            if series.name not in warned:
                warned.add(series.name)
                logger.warning("no FMTU for %s, multipliers not applied", series.name)
            continue
        for col, index in enumerate(series.field_indices):
            if col == series.time_column or index == series.instance_field:
                continue
            char = fmt_units.multiplier_char(index)
            mult = multipliers.get(char) if char is not None else None
            if mult is None:
                key = f"{series.name}.{series.labels[col]}"
                if key not in warned:
                    warned.add(key)
                    logger.warning("no multiplier %r for %s", char, key)
                continue
            if is_identity(mult):
                continue
            column = series.columns[col]
            np.multiply(column, mult, out=column)
            scaled += 1
    return scaled
