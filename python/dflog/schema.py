"""Message schemas: type-code table, FMT record parsing and the per-session registry."""

from __future__ import annotations

import logging
import struct
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

# Wire format constants
HEAD_BYTE1 = 0xA3
HEAD_BYTE2 = 0x95
SIGNATURE = bytes((HEAD_BYTE1, HEAD_BYTE2))
HEADER_SIZE = 3  # head1, head2, msgid

FORMAT_MSG_ID = 128
NAME_SIZE = 4
FORMAT_SIZE = 16
LABELS_SIZE = 64

# log_Format body after the 3-byte header: type, length, name, format, labels
_FORMAT_WIRE_FMT = f"<BB{NAME_SIZE}s{FORMAT_SIZE}s{LABELS_SIZE}s"
FORMAT_RECORD_SIZE = HEADER_SIZE + struct.calcsize(_FORMAT_WIRE_FMT)  # 89

MAX_FORMATS = 256
MAX_FIELDS = 16

TIMESTAMP_FIELD = "TimeUS"
INSTANCE_MARKER = "#"


class TypeCode:
    """Fixed table of field type codes: code -> (struct char, byte width).

    Character blocks ("n", "N", "Z") advance the cursor but carry no
    numeric value.
    """

    TABLE: dict[str, tuple[str, int]] = {
        "b": ("b", 1),     # int8
        "B": ("B", 1),     # uint8
        "M": ("B", 1),     # flight mode, uint8
        "h": ("h", 2),     # int16
        "H": ("H", 2),     # uint16
        "c": ("h", 2),     # int16 x100 in older logs
        "C": ("H", 2),     # uint16 x100 in older logs
        "i": ("i", 4),     # int32
        "I": ("I", 4),     # uint32
        "e": ("i", 4),     # int32 x100 in older logs
        "E": ("I", 4),     # uint32 x100 in older logs
        "L": ("i", 4),     # int32 latitude/longitude
        "f": ("f", 4),     # float
        "d": ("d", 8),     # double
        "q": ("q", 8),     # int64
        "Q": ("Q", 8),     # uint64
        "n": ("4s", 4),    # char[4]
        "N": ("16s", 16),  # char[16]
        "Z": ("64s", 64),  # char[64]
    }

    CHAR_BLOCKS = frozenset("nNZ")

    @classmethod
    def width(cls, code: str) -> int:
        try:
            return cls.TABLE[code][1]
        except KeyError:
            raise UnknownTypeCodeError(code) from None

    @classmethod
    def is_numeric(cls, code: str) -> bool:
        return code in cls.TABLE and code not in cls.CHAR_BLOCKS


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class DataFlashError(ValueError):
    """Base class for recoverable decode errors."""


class UnknownFormatError(DataFlashError, KeyError):
    """Lookup for a message id with no registered format."""

    def __init__(self, msg_id: int):
        super().__init__(f"no format registered for message id {msg_id}")
        self.msg_id = msg_id

    def __str__(self) -> str:
        return self.args[0]


class UnknownTypeCodeError(DataFlashError):
    """A field type code outside the fixed table."""

    def __init__(self, code: str):
        super().__init__(f"unknown field type code {code!r}")
        self.code = code


class TruncatedFieldError(DataFlashError):
    """A field read would run past the end of its record."""


class LoadCancelled(DataFlashError):
    """The progress callback asked for the load to stop."""


# ---------------------------------------------------------------------------
# Formats
# ---------------------------------------------------------------------------

@dataclass
class FieldLayout:
    """Byte layout of a format's fields, computed once at registration.

    ``offsets`` are record-relative (they include the 3-byte header) and
    stop at the first unknown type code, which is recorded in
    ``bad_index``/``bad_code``.
    """

    offsets: list[int]
    unpacker: struct.Struct
    bad_index: int | None = None
    bad_code: str | None = None


def compute_layout(type_codes: str) -> FieldLayout:
    offsets: list[int] = []
    chars: list[str] = []
    pos = HEADER_SIZE
    for i, code in enumerate(type_codes):
        entry = TypeCode.TABLE.get(code)
        offsets.append(pos)
        if entry is None:
            return FieldLayout(offsets, struct.Struct("<" + "".join(chars)), i, code)
        chars.append(entry[0])
        pos += entry[1]
    return FieldLayout(offsets, struct.Struct("<" + "".join(chars)))


@dataclass
class MessageFormat:
    id: int
    length: int
    name: str
    type_codes: str
    labels: list[str]
    layout: FieldLayout = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self.layout = compute_layout(self.type_codes[:self.field_count])

    @property
    def field_count(self) -> int:
        """Fields that have both a type code and a label."""
        return min(len(self.type_codes), len(self.labels), MAX_FIELDS)

    def field_index(self, label: str) -> int | None:
        try:
            index = self.labels.index(label)
        except ValueError:
            return None
        return index if index < self.field_count else None

    @property
    def time_index(self) -> int | None:
        return self.field_index(TIMESTAMP_FIELD)

    def value_fields(self) -> list[int]:
        """Indices of fields that produce a value (everything but char blocks)."""
        return [i for i in range(self.field_count)
                if self.type_codes[i] not in TypeCode.CHAR_BLOCKS]

    def same_layout(self, other: MessageFormat) -> bool:
        """True if records of *other* decode into the same columns."""
        return (self.name == other.name
                and self.length == other.length
                and self.type_codes == other.type_codes
                and self.labels == other.labels)


@dataclass
class FormatUnits:
    message_id: int
    unit_chars: str
    multiplier_chars: str

    def unit_char(self, index: int) -> str | None:
        return self.unit_chars[index] if index < len(self.unit_chars) else None

    def multiplier_char(self, index: int) -> str | None:
        if index < len(self.multiplier_chars):
            return self.multiplier_chars[index]
        return None


def _unpack_str(raw: bytes) -> str:
    """Decode a null-terminated fixed-size string field."""
    return raw.split(b"\x00", 1)[0].decode("ascii", errors="replace")


def _is_printable_name(raw: bytes) -> bool:
    return all(b == 0 or 0x20 <= b < 0x7F for b in raw)


def parse_format_record(data: bytes, offset: int = 0) -> MessageFormat:
    """Parse an 89-byte FMT record starting at *offset* (header included)."""
    if len(data) - offset < FORMAT_RECORD_SIZE:
        raise TruncatedFieldError("truncated FMT record")
    msg_type, length, name_raw, format_raw, labels_raw = struct.unpack_from(
        _FORMAT_WIRE_FMT, data, offset + HEADER_SIZE)
    if not _is_printable_name(name_raw):
        raise DataFlashError(f"FMT name {name_raw!r} is not printable")
    labels_str = _unpack_str(labels_raw)
    return MessageFormat(
        id=msg_type,
        length=length,
        name=_unpack_str(name_raw),
        type_codes=_unpack_str(format_raw),
        labels=labels_str.split(",") if labels_str else [],
    )


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

class SchemaRegistry:
    """Formats and format-units for one decode session, keyed by message id."""

    def __init__(self) -> None:
        self.formats: dict[int, MessageFormat] = {}
        self.units: dict[int, FormatUnits] = {}
        self.name_to_id: dict[str, int] = {}
        self.id_to_name: dict[int, str] = {}

    @staticmethod
    def _check_id(msg_id: int) -> None:
        if not 0 <= msg_id < MAX_FORMATS:
            raise DataFlashError(f"message id {msg_id} out of range")

    def register_format(self, msg_id: int, name: str, type_codes: str,
                        labels: list[str], length: int) -> MessageFormat:
        """Store a format, replacing any earlier one for the same id."""
        self._check_id(msg_id)
        if not all(0x20 <= ord(ch) < 0x7F for ch in name):
            raise DataFlashError(f"format name {name!r} is not printable")
        fmt = MessageFormat(msg_id, length, name, type_codes, list(labels))
        old = self.formats.get(msg_id)
        if old is not None:
            if self.name_to_id.get(old.name) == msg_id:
                del self.name_to_id[old.name]
            if not old.same_layout(fmt) and self.units.pop(msg_id, None) is not None:
                logger.warning("format %d redefined as %s, its FMTU units dropped",
                               msg_id, name)
        self.formats[msg_id] = fmt
        self.name_to_id[name] = msg_id
        self.id_to_name[msg_id] = name
        if fmt.layout.bad_code is not None:
            logger.warning("format %s (id %d) has unknown type code %r at field %d",
                           name, msg_id, fmt.layout.bad_code, fmt.layout.bad_index)
        logger.debug("format %d = %s %s length=%d", msg_id, name, type_codes, length)
        return fmt

    def add(self, fmt: MessageFormat) -> MessageFormat:
        return self.register_format(fmt.id, fmt.name, fmt.type_codes,
                                    fmt.labels, fmt.length)

    def register_format_units(self, msg_id: int, unit_chars: str,
                              multiplier_chars: str) -> bool:
        """Attach unit/multiplier characters to a registered format.

        Returns False (and drops the record) if the id is not registered.
        """
        if msg_id not in self.formats:
            logger.warning("FMTU for unregistered message id %d dropped", msg_id)
            return False
        self.units[msg_id] = FormatUnits(msg_id, unit_chars, multiplier_chars)
        return True

    def lookup(self, msg_id: int) -> MessageFormat | None:
        self._check_id(msg_id)
        return self.formats.get(msg_id)

    def by_name(self, name: str) -> MessageFormat | None:
        msg_id = self.name_to_id.get(name)
        return None if msg_id is None else self.formats[msg_id]

    def format_units(self, msg_id: int) -> FormatUnits | None:
        return self.units.get(msg_id)

    def field_byte_offset(self, msg_id: int, field_ref: int | str) -> int | None:
        """Record-relative byte offset of a field, header included.

        Returns None for a label or index the format does not have. Raises
        UnknownFormatError for an unregistered id and UnknownTypeCodeError
        if an unknown type code precedes the field.
        """
        fmt = self.lookup(msg_id)
        if fmt is None:
            raise UnknownFormatError(msg_id)
        if isinstance(field_ref, str):
            index = fmt.field_index(field_ref)
            if index is None:
                return None
        else:
            index = field_ref
            if not 0 <= index < fmt.field_count:
                return None
        layout = fmt.layout
        if layout.bad_index is not None and index > layout.bad_index:
            raise UnknownTypeCodeError(layout.bad_code)
        return layout.offsets[index]

    def __len__(self) -> int:
        return len(self.formats)

    def __contains__(self, msg_id: int) -> bool:
        return msg_id in self.formats
