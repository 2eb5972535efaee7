"""Decode a whole DataFlash log into named time series.

A load runs in one pass over the buffer, registering formats as FMT
records appear and decoding data records into a :class:`SeriesStore`.
After the scan, the store is finalized and three whole-dataset passes run:
time synchronization, unit/multiplier normalization, then publishing into
the caller's sink.  Nothing is published if the load fails or is cancelled.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

from .decoder import InstanceResolver, decode_fields, decode_message, pad_values
from .scanner import ProgressCallback, RawRecord, RecordScanner, ScanStats
from .schema import (
    FORMAT_MSG_ID, DataFlashError, LoadCancelled, MessageFormat,
    SchemaRegistry, parse_format_record,
)
from .series import MemorySink, SeriesSink, SeriesStore, publish
from .timesync import TimeSyncConfig, synchronize
from .units import MultiplierTable, UnitTable, annotate_units, apply_multipliers

logger = logging.getLogger(__name__)

FILE_EXTENSIONS = (".bin", ".BIN")

FMTU_NAME = "FMTU"
UNIT_NAME = "UNIT"
MULT_NAME = "MULT"

# text and parameter messages, never turned into series
SKIP_MESSAGES = frozenset({"FMT", FMTU_NAME, UNIT_NAME, MULT_NAME,
                           "ISBD", "ISBH", "MSG", "PARM"})


@dataclass
class LoaderOptions:
    timesync: TimeSyncConfig = field(default_factory=TimeSyncConfig)
    synchronize_time: bool = True
    apply_multipliers: bool = True
    rewrite_units: bool = True
    progress_step: int = 1
    skip_messages: frozenset[str] = SKIP_MESSAGES


@dataclass
class LoadResult:
    ok: bool
    stats: ScanStats
    error: str | None = None
    series_names: list[str] = field(default_factory=list)
    skipped_messages: list[str] = field(default_factory=list)
    time_offset: float | None = None
    sink: SeriesSink | None = None
    registry: SchemaRegistry | None = None


class _Session:
    """State of one load: registry, tables and value buffers."""

    def __init__(self, data: bytes, options: LoaderOptions,
                 progress: ProgressCallback | None):
        self.data = data
        self.options = options
        self.registry = SchemaRegistry()
        self.instances = InstanceResolver(self.registry)
        self.multipliers = MultiplierTable()
        self.units = UnitTable()
        self.store = SeriesStore()
        self.scanner = RecordScanner(data, self.registry, progress,
                                     options.progress_step)
        self._decode_warned: set[int] = set()

    @property
    def stats(self) -> ScanStats:
        return self.scanner.stats

    def run(self) -> None:
        for record in self.scanner:
            if record.length is None:
                continue
            if record.msg_id == FORMAT_MSG_ID:
                self._handle_format(record)
                continue
            fmt = self.registry.lookup(record.msg_id)
            try:
                self._handle_message(fmt, record)
            except DataFlashError as exc:
                self.stats.decode_errors += 1
                logger.warning("%s record at offset %d not decoded: %s",
                               fmt.name, record.offset, exc)

    def _handle_format(self, record: RawRecord) -> None:
        try:
            fmt = self.registry.add(parse_format_record(self.data, record.offset))
        except DataFlashError as exc:
            logger.warning("FMT record at offset %d rejected: %s", record.offset, exc)
            self.stats.rejected_formats += 1
            self.scanner.reject()
            return
        self.instances.forget(fmt.id)

    def _handle_message(self, fmt: MessageFormat, record: RawRecord) -> None:
        name = fmt.name
        if name in self.options.skip_messages:
            if name == FMTU_NAME:
                self._handle_fmtu(fmt, record)
            elif name == UNIT_NAME:
                fields = _metadata_fields(fmt, self.data, record.offset, "Id", "Label")
                self.units.add(_id_char(fields["Id"]), fields["Label"])
            elif name == MULT_NAME:
                fields = _metadata_fields(fmt, self.data, record.offset, "Id", "Mult")
                self.multipliers.add(_id_char(fields["Id"]), fields["Mult"])
            return

        info = self.instances.info(fmt.id)
        instance = self.instances.resolve(fmt, self.data, record.offset)
        result = decode_message(fmt, self.data, record.offset)
        if not result.complete:
            self.stats.decode_errors += 1
            if fmt.id not in self._decode_warned:
                self._decode_warned.add(fmt.id)
                logger.warning("%s: %s, remaining fields left empty",
                               name, result.error)
        series = self.store.get_or_create(
            fmt, instance, None if info is None else info.field_index)
        series.append(pad_values(fmt, result))

    def _handle_fmtu(self, fmt: MessageFormat, record: RawRecord) -> None:
        fields = _metadata_fields(fmt, self.data, record.offset,
                                  "FmtType", "UnitIds", "MultIds")
        target = int(fields["FmtType"])
        if self.registry.register_format_units(
                target, fields["UnitIds"], fields["MultIds"]):
            self.instances.forget(target)

    def _settle_instance_fields(self) -> None:
        # an FMTU seen after the first records applies to all of them
        for msg_id, fmt in self.registry.formats.items():
            info = self.instances.info(msg_id)
            if info is not None:
                self.store.set_instance_field(fmt, info.field_index)

    def finish(self, sink: SeriesSink) -> LoadResult:
        options = self.options
        self.store.finalize()
        self._settle_instance_fields()

        offset = None
        if options.synchronize_time:
            offset = synchronize(self.store, options.timesync)

        if options.rewrite_units:
            self.units.rewrite()
        annotate_units(self.store, self.registry, self.units)
        if options.apply_multipliers:
            apply_multipliers(self.store, self.registry, self.multipliers)

        names, skipped = publish(self.store, sink)
        logger.info("decoded %d records, %d formats, %d bytes skipped, %d series",
                    self.stats.records, len(self.registry),
                    self.stats.skipped_bytes, len(names))
        return LoadResult(True, self.stats, series_names=names,
                          skipped_messages=skipped, time_offset=offset,
                          sink=sink, registry=self.registry)


def _metadata_fields(fmt: MessageFormat, data: bytes, offset: int,
                     *labels: str) -> dict:
    fields = decode_fields(fmt, data, offset)
    missing = [label for label in labels if label not in fields]
    if missing:
        raise DataFlashError(f"{fmt.name} lacks fields {', '.join(missing)}")
    return fields


def _id_char(value: float | str) -> str:
    if isinstance(value, str):
        return value[:1]
    return chr(int(value) & 0xFF)


class DataFlashLoader:
    """Loads ArduPilot DataFlash ``.bin`` logs."""

    def __init__(self, options: LoaderOptions | None = None):
        self.options = options or LoaderOptions()

    @staticmethod
    def compatible_extensions() -> tuple[str, ...]:
        return FILE_EXTENSIONS

    def load_bytes(self, data: bytes, sink: SeriesSink | None = None,
                   progress: ProgressCallback | None = None) -> LoadResult:
        """Decode a fully buffered log into *sink* (a new MemorySink by default)."""
        if sink is None:
            sink = MemorySink()
        session = _Session(bytes(data), self.options, progress)
        try:
            session.run()
        except LoadCancelled as exc:
            return LoadResult(False, session.stats, error=str(exc))
        return session.finish(sink)

    def load_file(self, path: str | Path, sink: SeriesSink | None = None,
                  progress: ProgressCallback | None = None) -> LoadResult:
        try:
            data = Path(path).read_bytes()
        except OSError as exc:
            logger.error("cannot read %s: %s", path, exc)
            return LoadResult(False, ScanStats(), error=str(exc))
        return self.load_bytes(data, sink, progress)


def load_bytes(data: bytes, sink: SeriesSink | None = None,
               options: LoaderOptions | None = None,
               progress: ProgressCallback | None = None) -> LoadResult:
    return DataFlashLoader(options).load_bytes(data, sink, progress)


def load_file(path: str | Path, sink: SeriesSink | None = None,
              options: LoaderOptions | None = None,
              progress: ProgressCallback | None = None) -> LoadResult:
    return DataFlashLoader(options).load_file(path, sink, progress)
