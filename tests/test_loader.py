"""End-to-end tests: byte stream in, named series out."""

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "python"))
sys.path.insert(0, os.path.dirname(__file__))

import math
import tempfile

import numpy as np

from dflog.loader import DataFlashLoader, LoaderOptions, load_bytes, load_file
from dflog.schema import DataFlashError, MessageFormat
from dflog.series import MemorySink, SeriesStore
from logbuilder import (
    fmt_record, record, record_length, metadata_formats, fmtu, unit, mult,
)

ATT_ID, ATT_CODES = 30, "Qfff"
ATT_LABELS = "TimeUS,Roll,Pitch,Yaw"
GPS_ID, GPS_CODES = 31, "QIHB"
GPS_LABELS = "TimeUS,GMS,GWk,NSats"


def att_log(*samples):
    data = fmt_record(ATT_ID, "ATT", ATT_CODES, ATT_LABELS)
    for t, roll, pitch, yaw in samples:
        data += record(ATT_ID, ATT_CODES, t, roll, pitch, yaw)
    return data


def as_dict(sink):
    return {name: list(sink[name]) for name in sink.names()}


def test_minimal_stream():
    """One FMT plus one record: one series per field except TimeUS."""
    print("test_minimal_stream...", end="")

    result = load_bytes(att_log((1_000_000, 0.5, -0.25, 2.0)))
    assert result.ok
    sink = result.sink
    assert sink.names() == ["/ATT/Pitch", "/ATT/Roll", "/ATT/Yaw"]
    assert list(sink["/ATT/Roll"]) == [(1.0, 0.5)]
    assert list(sink["/ATT/Pitch"]) == [(1.0, -0.25)]
    assert result.stats.records == 2
    assert result.stats.format_records == 1
    assert result.stats.skipped_bytes == 0
    assert result.time_offset is None

    print(" OK")


def test_corruption_resilience():
    """Garbage between records (without the signature) changes nothing."""
    print("test_corruption_resilience...", end="")

    clean = (fmt_record(ATT_ID, "ATT", ATT_CODES, ATT_LABELS)
             + record(ATT_ID, ATT_CODES, 1_000_000, 0.5, 0.5, 0.5)
             + record(ATT_ID, ATT_CODES, 2_000_000, 1.5, 1.5, 1.5))
    garbage = b"\x00\xa3\x01\x95\xff\xa3"
    fmt_len = 89
    rec_len = record_length(ATT_CODES)
    dirty = (b"\x95\x11" + clean[:fmt_len] + garbage
             + clean[fmt_len:fmt_len + rec_len] + garbage
             + clean[fmt_len + rec_len:])

    r_clean = load_bytes(clean)
    r_dirty = load_bytes(dirty)
    assert as_dict(r_clean.sink) == as_dict(r_dirty.sink)
    assert r_dirty.stats.skipped_bytes == 2 + 2 * len(garbage)
    assert r_dirty.stats.records == r_clean.stats.records == 3

    print(" OK")


def test_unregistered_id_and_truncated_tail():
    print("test_unregistered_id_and_truncated_tail...", end="")

    data = att_log((1_000_000, 1.0, 2.0, 3.0))
    data += b"\xa3\x95\x63"  # id 99 never defined
    data += record(ATT_ID, ATT_CODES, 2_000_000, 4.0, 5.0, 6.0)
    tail = record(ATT_ID, ATT_CODES, 3_000_000, 7.0, 8.0, 9.0)[:10]
    result = load_bytes(data + tail)

    assert result.ok
    assert [v for _, v in result.sink["/ATT/Roll"]] == [1.0, 4.0]
    assert result.stats.unknown_ids == 1
    assert result.stats.tail_bytes == 10

    print(" OK")


def test_rejected_format_record():
    """An FMT with an unprintable name is skipped and the scan resyncs."""
    print("test_rejected_format_record...", end="")

    data = (fmt_record(40, b"B\x02D\x00", "Qf", "TimeUS,A")
            + att_log((1_000_000, 1.0, 2.0, 3.0)))
    result = load_bytes(data)
    assert result.stats.rejected_formats == 1
    assert 40 not in result.registry
    assert "/ATT/Roll" in result.sink

    print(" OK")


def test_metadata_messages_not_published():
    print("test_metadata_messages_not_published...", end="")

    data = (fmt_record(32, "MSG", "QZ", "TimeUS,Message")
            + fmt_record(33, "PARM", "QNf", "TimeUS,Name,Value")
            + record(32, "QZ", 1, "ArduCopter V4.5")
            + record(33, "QNf", 2, "SYSID_THISMAV", 1.0)
            + att_log((3_000_000, 1.0, 2.0, 3.0)))
    result = load_bytes(data)
    names = result.sink.names()
    assert not [n for n in names if n.startswith(("/MSG/", "/PARM/"))]
    assert "/ATT/Roll" in names

    print(" OK")


def test_message_without_timestamp():
    print("test_message_without_timestamp...", end="")

    data = (fmt_record(34, "NOTS", "Bf", "Id,Val")
            + record(34, "Bf", 1, 2.0)
            + att_log((1_000_000, 1.0, 2.0, 3.0)))
    result = load_bytes(data)
    assert result.skipped_messages == ["NOTS"]
    assert not [n for n in result.sink.names() if n.startswith("/NOTS")]

    print(" OK")


def test_instances():
    """An FMTU '#' unit marks the instance field; paths get a #N segment."""
    print("test_instances...", end="")

    codes = "QBf"
    data = (metadata_formats()
            + fmt_record(35, "BAT", codes, "TimeUS,Inst,Volt")
            + fmtu(35, "s#v", "F--")
            + record(35, codes, 1_000_000, 0, 12.5)
            + record(35, codes, 1_000_000, 1, 11.5)
            + record(35, codes, 2_000_000, 0, 12.25))
    result = load_bytes(data)
    sink = result.sink
    assert sink.names() == ["/BAT/#0/Volt", "/BAT/#1/Volt"]
    assert [v for _, v in sink["/BAT/#0/Volt"]] == [12.5, 12.25]
    np.testing.assert_allclose(sink.query("/BAT/#0/Volt").values, [12.5, 12.25],
                               rtol=1e-6)
    assert [v for _, v in sink["/BAT/#1/Volt"]] == [11.5]

    print(" OK")


def test_units_and_multipliers():
    print("test_units_and_multipliers...", end="")

    codes = "QhhB"
    data = (metadata_formats()
            + unit("s", "s") + unit("m", "m") + unit("o", "m/s/s")
            + mult("F", 1e-6) + mult("X", 2.0) + mult("?", 1.0) + mult("-", 0.0)
            + fmt_record(36, "CTUN", codes, "TimeUS,Alt,Acc,Mode")
            + fmtu(36, "smo-", "FX?-")
            + record(36, codes, 1_000_000, 7, 3, 4)
            + record(36, codes, 2_000_000, 8, 5, 4))
    result = load_bytes(data)
    sink = result.sink

    assert [v for _, v in sink["/CTUN/Alt"]] == [14.0, 16.0]
    assert [v for _, v in sink["/CTUN/Acc"]] == [3.0, 5.0]
    assert [v for _, v in sink["/CTUN/Mode"]] == [4.0, 4.0]
    assert [t for t, _ in sink["/CTUN/Alt"]] == [1.0, 2.0]
    assert sink["/CTUN/Alt"].unit == "m"
    assert sink["/CTUN/Acc"].unit == "m s⁻²"
    assert sink["/CTUN/Mode"].unit is None
    assert not [n for n in sink.names() if n.startswith(("/UNIT", "/MULT", "/FMTU"))]

    raw = load_bytes(data, options=LoaderOptions(apply_multipliers=False)).sink
    assert [v for _, v in raw["/CTUN/Alt"]] == [7.0, 8.0]

    print(" OK")


def test_fmtu_for_unknown_id():
    print("test_fmtu_for_unknown_id...", end="")

    data = metadata_formats() + fmtu(77, "s", "F") + att_log((1_000_000, 1.0, 2.0, 3.0))
    result = load_bytes(data)
    assert result.ok
    assert result.registry.format_units(77) is None

    print(" OK")


def test_time_sync():
    print("test_time_sync...", end="")

    data = (fmt_record(GPS_ID, "GPS", GPS_CODES, GPS_LABELS)
            + record(GPS_ID, GPS_CODES, 100_000_000, 1000, 2100, 3)
            + record(GPS_ID, GPS_CODES, 123_456_000_000, 300000, 2190, 12)
            + att_log((130_000_000_000, 1.0, 2.0, 3.0)))
    result = load_bytes(data)
    expected = 2190 * 604800 + 300.0 + 315964800 - 18 - 123456.0
    assert math.isclose(result.time_offset, expected, abs_tol=1e-6)

    (t, v), = list(result.sink["/ATT/Roll"])
    assert math.isclose(t, 130000.0 + expected, abs_tol=1e-6)
    gps_t = [t for t, _ in result.sink["/GPS/GWk"]]
    assert math.isclose(gps_t[1], 123456.0 + expected, abs_tol=1e-6)

    options = LoaderOptions(synchronize_time=False)
    local = load_bytes(data, options=options)
    assert local.time_offset is None
    assert list(local.sink["/ATT/Roll"]) == [(130000.0, 1.0)]

    print(" OK")


def test_unknown_type_code_keeps_alignment():
    print("test_unknown_type_code_keeps_alignment...", end="")

    odd = (fmt_record(37, "ODD", "Qfx", "TimeUS,A,X", length=3 + 8 + 4 + 2)
           + b"\xa3\x95\x25" + np.array([1_000_000], "<u8").tobytes()
           + np.array([2.5], "<f4").tobytes() + b"\x00\x00")
    result = load_bytes(odd + att_log((1_000_000, 1.0, 2.0, 3.0)))
    sink = result.sink
    assert list(sink["/ODD/A"]) == [(1.0, 2.5)]
    (t, x), = list(sink["/ODD/X"])
    assert math.isnan(x)
    assert "/ATT/Roll" in sink
    assert result.stats.decode_errors == 1

    print(" OK")


def test_format_redefinition():
    """A later FMT for the same id starts new columns instead of reusing old ones."""
    print("test_format_redefinition...", end="")

    # narrower
    data = (att_log((1_000_000, 1.0, 2.0, 3.0))
            + fmt_record(ATT_ID, "ATT", "Qf", "TimeUS,Roll")
            + record(ATT_ID, "Qf", 2_000_000, 4.0))
    result = load_bytes(data)
    sink = result.sink
    assert list(sink["/ATT/Roll"]) == [(1.0, 1.0), (2.0, 4.0)]
    pitch = sink.query("/ATT/Pitch")
    assert len(pitch.timestamps) == len(pitch.values) == 1
    assert list(sink["/ATT/Pitch"]) == [(1.0, 2.0)]
    assert len(result.series_names) == len(set(result.series_names))

    # wider
    data = (fmt_record(ATT_ID, "ATT", "Qf", "TimeUS,Roll")
            + record(ATT_ID, "Qf", 1_000_000, 1.0)
            + fmt_record(ATT_ID, "ATT", "Qff", "TimeUS,Roll,Pitch")
            + record(ATT_ID, "Qff", 2_000_000, 5.0, 6.0))
    sink = load_bytes(data).sink
    assert list(sink["/ATT/Roll"]) == [(1.0, 1.0), (2.0, 5.0)]
    assert list(sink["/ATT/Pitch"]) == [(2.0, 6.0)]

    # reordered labels
    data = (fmt_record(ATT_ID, "ATT", "Qff", "TimeUS,Roll,Pitch")
            + record(ATT_ID, "Qff", 1_000_000, 1.0, 2.0)
            + fmt_record(ATT_ID, "ATT", "Qff", "TimeUS,Pitch,Roll")
            + record(ATT_ID, "Qff", 2_000_000, 3.0, 4.0))
    sink = load_bytes(data).sink
    assert [v for _, v in sink["/ATT/Roll"]] == [1.0, 4.0]
    assert [v for _, v in sink["/ATT/Pitch"]] == [2.0, 3.0]

    print(" OK")


def test_late_fmtu_instances():
    """Records decoded before the FMTU arrived still publish under #0."""
    print("test_late_fmtu_instances...", end="")

    codes = "QBf"
    data = (metadata_formats()
            + fmt_record(35, "BAT", codes, "TimeUS,Inst,Volt")
            + record(35, codes, 1_000_000, 1, 12.5)
            + fmtu(35, "s#v", "F--")
            + record(35, codes, 2_000_000, 1, 11.5))
    sink = load_bytes(data).sink
    assert sink.names() == ["/BAT/#0/Volt", "/BAT/#1/Volt"]
    assert list(sink["/BAT/#0/Volt"]) == [(1.0, 12.5)]
    assert list(sink["/BAT/#1/Volt"]) == [(2.0, 11.5)]
    assert "/BAT/Inst" not in sink

    print(" OK")


def test_series_rejects_wrong_width():
    print("test_series_rejects_wrong_width...", end="")

    fmt = MessageFormat(ATT_ID, record_length(ATT_CODES), "ATT", ATT_CODES,
                        ATT_LABELS.split(","))
    series = SeriesStore().get_or_create(fmt)
    series.append([1.0, 2.0, 3.0, 4.0])
    try:
        series.append([1.0, 2.0])
        assert False, "expected DataFlashError"
    except DataFlashError:
        pass
    assert [len(c) for c in series.columns] == [1, 1, 1, 1]

    print(" OK")


def test_cancel():
    """Cancelling fails the load and publishes nothing."""
    print("test_cancel...", end="")

    data = att_log(*[(i * 1000, 1.0, 2.0, 3.0) for i in range(200)])
    seen = []

    def progress(pct):
        seen.append(pct)
        return pct >= 50

    sink = MemorySink()
    result = DataFlashLoader().load_bytes(data, sink, progress)
    assert not result.ok
    assert result.stats.cancelled
    assert len(sink) == 0
    assert seen and seen[-1] >= 50
    assert seen == sorted(seen)

    print(" OK")


def test_load_file():
    print("test_load_file...", end="")

    result = load_file("/nonexistent/path/log.BIN")
    assert not result.ok
    assert result.error

    with tempfile.NamedTemporaryFile(suffix=".BIN", delete=False) as f:
        f.write(att_log((1_000_000, 1.0, 2.0, 3.0)))
        tmppath = f.name
    try:
        result = load_file(tmppath)
        assert result.ok
        assert list(result.sink["/ATT/Yaw"]) == [(1.0, 3.0)]
    finally:
        os.unlink(tmppath)

    assert ".BIN" in DataFlashLoader.compatible_extensions()

    print(" OK")


if __name__ == "__main__":
    print("dflog loader tests")
    print("==================\n")

    test_minimal_stream()
    test_corruption_resilience()
    test_unregistered_id_and_truncated_tail()
    test_rejected_format_record()
    test_metadata_messages_not_published()
    test_message_without_timestamp()
    test_instances()
    test_units_and_multipliers()
    test_fmtu_for_unknown_id()
    test_time_sync()
    test_unknown_type_code_keeps_alignment()
    test_format_redefinition()
    test_late_fmtu_instances()
    test_series_rejects_wrong_width()
    test_cancel()
    test_load_file()

    print("\nAll tests passed.")
