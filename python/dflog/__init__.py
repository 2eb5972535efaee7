"""dflog - ArduPilot DataFlash log decoder."""

from .schema import (
    MessageFormat, FormatUnits, SchemaRegistry, TypeCode,
    DataFlashError, UnknownFormatError, UnknownTypeCodeError,
    TruncatedFieldError, LoadCancelled,
)
from .decoder import ByteCursor, DecodeResult, InstanceInfo, decode_message, decode_fields
from .scanner import RawRecord, RecordScanner, ScanStats, scan
from .series import ChannelData, MemorySink, NumericSeries, SeriesStore, publish
from .units import MultiplierTable, UnitTable, rewrite_unit
from .timesync import TimeSyncConfig, gps_to_unix, synchronize
from .loader import DataFlashLoader, LoaderOptions, LoadResult, load_bytes, load_file

__all__ = [
    "MessageFormat", "FormatUnits", "SchemaRegistry", "TypeCode",
    "DataFlashError", "UnknownFormatError", "UnknownTypeCodeError",
    "TruncatedFieldError", "LoadCancelled",
    "ByteCursor", "DecodeResult", "InstanceInfo", "decode_message", "decode_fields",
    "RawRecord", "RecordScanner", "ScanStats", "scan",
    "ChannelData", "MemorySink", "NumericSeries", "SeriesStore", "publish",
    "MultiplierTable", "UnitTable", "rewrite_unit",
    "TimeSyncConfig", "gps_to_unix", "synchronize",
    "DataFlashLoader", "LoaderOptions", "LoadResult", "load_bytes", "load_file",
]
