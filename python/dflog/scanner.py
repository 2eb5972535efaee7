"""Stream scanner: walks a log buffer and yields framed records.

Every record starts with the two signature bytes ``0xA3 0x95`` followed by
a message id.  The scanner never fails on bad input: bytes that do not
start a record are skipped one at a time until the signature is seen
again, and the skipped count is kept in :class:`ScanStats`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Iterator

from .schema import (
    FORMAT_MSG_ID, FORMAT_RECORD_SIZE, HEADER_SIZE, SIGNATURE,
    LoadCancelled, SchemaRegistry,
)

logger = logging.getLogger(__name__)

# progress(percent) -> True to abort
ProgressCallback = Callable[[int], bool]


@dataclass
class RawRecord:
    msg_id: int
    offset: int
    length: int | None  # None when the id has no registered format


@dataclass
class ScanStats:
    records: int = 0
    format_records: int = 0
    skipped_bytes: int = 0
    tail_bytes: int = 0
    unknown_ids: int = 0
    rejected_formats: int = 0
    decode_errors: int = 0
    cancelled: bool = False


class RecordScanner:
    """Iterate records of *data*, using *registry* for record lengths.

    The registry is consulted lazily, so formats registered by the consumer
    while handling one record are visible when the next one is framed.
    """

    def __init__(self, data: bytes, registry: SchemaRegistry,
                 progress: ProgressCallback | None = None,
                 progress_step: int = 1):
        self._data = data
        self._registry = registry
        self._progress = progress
        self._progress_step = max(1, progress_step)
        self._rejected = False
        self.stats = ScanStats()

    def reject(self) -> None:
        """Mark the last yielded record as bogus; resume one byte after it."""
        self._rejected = True

    def _record_length(self, msg_id: int) -> int | None:
        if msg_id == FORMAT_MSG_ID:
            return FORMAT_RECORD_SIZE
        fmt = self._registry.lookup(msg_id)
        if fmt is None or fmt.length < HEADER_SIZE:
            return None
        return fmt.length

    def __iter__(self) -> Iterator[RawRecord]:
        data = self._data
        size = len(data)
        stats = self.stats
        pos = 0
        last_pct = 0

        while True:
            remaining = size - pos
            if remaining < HEADER_SIZE:
                stats.tail_bytes += remaining
                break

            if data[pos] != SIGNATURE[0] or data[pos + 1] != SIGNATURE[1]:
                found = data.find(SIGNATURE, pos + 1)
                if found < 0:
                    # keep the last byte, it could be half a signature
                    found = size - 1
                stats.skipped_bytes += found - pos
                pos = found
                continue

            msg_id = data[pos + 2]
            length = self._record_length(msg_id)
            if length is None:
                stats.unknown_ids += 1
                stats.skipped_bytes += 1
                yield RawRecord(msg_id, pos, None)
                pos += 1
                continue

            if remaining < length:
                stats.tail_bytes += remaining
                break

            yield RawRecord(msg_id, pos, length)

            if self._rejected:
                self._rejected = False
                stats.skipped_bytes += 1
                pos += 1
                continue

            stats.records += 1
            if msg_id == FORMAT_MSG_ID:
                stats.format_records += 1
            pos += length

            if self._progress is not None:
                pct = (pos * 100) // size
                if pct - last_pct >= self._progress_step:
                    last_pct = pct
                    if self._progress(pct):
                        stats.cancelled = True
                        logger.info("scan cancelled at offset %d (%d%%)", pos, pct)
                        raise LoadCancelled(f"cancelled at {pct}%")

        if stats.tail_bytes:
            logger.debug("discarded %d trailing bytes", stats.tail_bytes)


def scan(data: bytes, registry: SchemaRegistry,
         progress: ProgressCallback | None = None) -> Iterator[RawRecord]:
    """Convenience generator over :class:`RecordScanner`."""
    yield from RecordScanner(data, registry, progress)
