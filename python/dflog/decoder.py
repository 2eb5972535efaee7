"""Record decoding: bounded byte cursor, field extraction and instance lookup."""

from __future__ import annotations

import logging
import math
import struct
from dataclasses import dataclass, field
from typing import Any

from .schema import (
    HEADER_SIZE, INSTANCE_MARKER,
    MessageFormat, SchemaRegistry, TypeCode,
    TruncatedFieldError, UnknownTypeCodeError, _unpack_str,
)

logger = logging.getLogger(__name__)


class ByteCursor:
    """Bounds-checked reader over ``data[start:end]``."""

    def __init__(self, data: bytes, start: int = 0, end: int | None = None):
        self._data = data
        self.end = len(data) if end is None else min(end, len(data))
        self.pos = start

    @property
    def remaining(self) -> int:
        return self.end - self.pos

    def _take(self, size: int) -> int:
        if size > self.remaining:
            raise TruncatedFieldError(
                f"read of {size} bytes at offset {self.pos} runs past {self.end}")
        pos = self.pos
        self.pos += size
        return pos

    def skip(self, size: int) -> None:
        self._take(size)

    def read_code(self, code: str) -> float | str:
        """Read one field of type *code*: a float, or a str for char blocks."""
        entry = TypeCode.TABLE.get(code)
        if entry is None:
            raise UnknownTypeCodeError(code)
        fmt_char, width = entry
        pos = self._take(width)
        if code in TypeCode.CHAR_BLOCKS:
            return _unpack_str(self._data[pos:pos + width])
        return float(struct.unpack_from("<" + fmt_char, self._data, pos)[0])

    def read_struct(self, compiled: struct.Struct) -> tuple[Any, ...]:
        pos = self._take(compiled.size)
        return compiled.unpack_from(self._data, pos)

    def read_int8(self) -> int:
        pos = self._take(1)
        return struct.unpack_from("<b", self._data, pos)[0]


# ---------------------------------------------------------------------------
# Field decoding
# ---------------------------------------------------------------------------

def _record_cursor(fmt: MessageFormat, data: bytes, offset: int) -> ByteCursor:
    return ByteCursor(data, offset + HEADER_SIZE, offset + fmt.length)


def decode_fields(fmt: MessageFormat, data: bytes, offset: int = 0) -> dict[str, Any]:
    """Decode a record into a dict of label -> value, char blocks as str.

    Used for metadata records (FMTU, UNIT, MULT) where string fields matter.
    """
    cursor = _record_cursor(fmt, data, offset)
    result: dict[str, Any] = {}
    for i in range(fmt.field_count):
        result[fmt.labels[i]] = cursor.read_code(fmt.type_codes[i])
    return result


@dataclass
class DecodeResult:
    """Values for ``fmt.value_fields()``, in order.

    ``values`` may be shorter than the value-field list when decoding
    stopped at an unknown type code; ``error`` says why.
    """

    values: list[float] = field(default_factory=list)
    error: str | None = None

    @property
    def complete(self) -> bool:
        return self.error is None


def decode_message(fmt: MessageFormat, data: bytes, offset: int = 0) -> DecodeResult:
    """Decode the numeric fields of one data record.

    Fields before the first unknown type code are unpacked in a single
    struct call; anything from that field on is left out of the result.
    """
    cursor = _record_cursor(fmt, data, offset)
    layout = fmt.layout
    raw = cursor.read_struct(layout.unpacker)
    values = [float(v) for v, code in zip(raw, fmt.type_codes)
              if code not in TypeCode.CHAR_BLOCKS]
    if layout.bad_code is not None:
        return DecodeResult(values, f"unknown type code {layout.bad_code!r} "
                                    f"at field {layout.bad_index}")
    return DecodeResult(values)


def pad_values(fmt: MessageFormat, result: DecodeResult) -> list[float]:
    """Fill fields a partial decode could not reach with NaN."""
    expected = len(fmt.value_fields())
    values = result.values
    if len(values) < expected:
        values = values + [math.nan] * (expected - len(values))
    return values


# ---------------------------------------------------------------------------
# Instances
# ---------------------------------------------------------------------------

@dataclass
class InstanceInfo:
    field_index: int
    byte_offset: int


def find_instance_field(registry: SchemaRegistry, msg_id: int) -> InstanceInfo | None:
    """Locate the field whose unit character is the instance marker.

    Only the first marked field is used; a message with several marked
    fields is treated as having a single instance dimension.
    """
    units = registry.format_units(msg_id)
    if units is None:
        return None
    index = units.unit_chars.find(INSTANCE_MARKER)
    if index < 0:
        return None
    if units.unit_chars.count(INSTANCE_MARKER) > 1:
        logger.warning("message %s marks several instance fields, using %d",
                       registry.id_to_name.get(msg_id, msg_id), index)
    offset = registry.field_byte_offset(msg_id, index)
    if offset is None:
        return None
    return InstanceInfo(index, offset)


def resolve_instance(info: InstanceInfo | None, data: bytes, offset: int = 0,
                     length: int | None = None) -> int:
    """Instance number of the record at *offset*, or 0 without an instance field."""
    if info is None:
        return 0
    end = None if length is None else offset + length
    cursor = ByteCursor(data, offset + info.byte_offset, end)
    return cursor.read_int8()


class InstanceResolver:
    """Caches the instance field of each message id for one session."""

    def __init__(self, registry: SchemaRegistry):
        self._registry = registry
        self._cache: dict[int, InstanceInfo | None] = {}

    def info(self, msg_id: int) -> InstanceInfo | None:
        try:
            return self._cache[msg_id]
        except KeyError:
            pass
        try:
            info = find_instance_field(self._registry, msg_id)
        except UnknownTypeCodeError as exc:
            logger.warning("no instance offset for message id %d: %s", msg_id, exc)
            info = None
        self._cache[msg_id] = info
        return info

    def forget(self, msg_id: int) -> None:
        """Drop the cached entry after the format or its units change."""
        self._cache.pop(msg_id, None)

    def resolve(self, fmt: MessageFormat, data: bytes, offset: int = 0) -> int:
        return resolve_instance(self.info(fmt.id), data, offset, fmt.length)
