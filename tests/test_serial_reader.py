import pytest

import haptic_range as hr
from haptic_range import (
    DistanceCell,
    OutOfRangeError,
    ParseError,
    SensorConnectionError,
    SerialReader,
    parse_sample,
)


def test_parse_sample_trims_whitespace():
    assert parse_sample("  42.5\r\n") == 42.5


@pytest.mark.parametrize(
    "line", ["", "abc", "12.3.4", "nan", "--", "inf", "1_0", "1e2", "0x10", "\u0663", "12 cm"]
)
def test_parse_sample_rejects_garbage(line):
    with pytest.raises(ParseError):
        parse_sample(line)


@pytest.mark.parametrize("line", ["-5", "250", "200.01", "-0.5"])
def test_parse_sample_rejects_out_of_domain(line):
    with pytest.raises(OutOfRangeError):
        parse_sample(line)


def test_domain_edges_are_valid():
    assert parse_sample("0") == 0.0
    assert parse_sample("200") == 200.0


@pytest.mark.parametrize("line, value", [(".5", 0.5), ("+7.", 7.0), ("033.25", 33.25)])
def test_plain_decimal_forms(line, value):
    assert parse_sample(line) == value


def test_out_of_domain_never_reaches_filter_or_cell():
    cell = DistanceCell()
    reader = SerialReader(cell)
    assert reader.ingest_line("-5") is None
    assert reader.ingest_line("250") is None
    assert cell.get() is None
    assert len(reader.filter) == 0

    reader.ingest_line("30")
    reader.ingest_line("-5")
    reader.ingest_line("250")
    assert reader.filter.window == [30.0]
    assert cell.get() == 30.0


def test_poll_once_reads_one_line_and_publishes_median(fake_serial):
    cell = DistanceCell()
    reader = SerialReader(cell)
    reader.attach(fake_serial([b"10\n", b"garbage\n", b"30\n", b"20\n"]))

    assert reader.poll_once() == 10.0
    assert reader.poll_once() is None
    assert cell.get() == 10.0
    assert reader.poll_once() == 30.0
    assert reader.poll_once() == 20.0
    assert cell.get() == 20.0
    # nothing waiting
    assert reader.poll_once() is None
    assert cell.get() == 20.0


def test_read_error_is_logged_and_loop_continues(fake_serial, caplog):
    cell = DistanceCell()
    reader = SerialReader(cell)
    port = fake_serial([b"15\n"], fail_reads=1)
    reader.attach(port)

    assert reader.poll_once() is None
    assert "Rangefinder read error" in caplog.text
    assert reader.connected
    assert reader.poll_once() == 15.0


def test_open_failure_raises_connection_error(monkeypatch):
    def boom(*args, **kwargs):
        raise hr.serial.SerialException("could not open port /dev/nope")

    monkeypatch.setattr(hr.serial, "Serial", boom)
    reader = SerialReader(DistanceCell(), port="/dev/nope")
    with pytest.raises(SensorConnectionError):
        reader.open()


def test_start_without_port_keeps_running(monkeypatch, caplog):
    def boom(*args, **kwargs):
        raise hr.serial.SerialException("could not open port /dev/nope")

    monkeypatch.setattr(hr.serial, "Serial", boom)
    monkeypatch.setattr(hr, "POLL_INTERVAL_S", 0.01)
    cell = DistanceCell()
    reader = SerialReader(cell, port="/dev/nope")
    reader.start()
    try:
        assert "distance will not update" in caplog.text
        assert not reader.connected
    finally:
        reader.stop()
    assert cell.get() is None


def test_reopen_after_backoff(monkeypatch, fake_serial):
    opened = []

    def serial_factory(port, baud, timeout):
        opened.append((port, baud, timeout))
        return fake_serial([b"55\n"])

    monkeypatch.setattr(hr.serial, "Serial", serial_factory)
    reader = SerialReader(DistanceCell(), port="/dev/ttyACM0", reopen_backoff_s=0.0)
    assert reader.poll_once() is None
    assert opened == [("/dev/ttyACM0", hr.SENSOR_BAUD, hr.READ_TIMEOUT_S)]
    assert reader.poll_once() == 55.0


def test_no_reopen_by_default(monkeypatch):
    calls = []
    monkeypatch.setattr(hr.serial, "Serial", lambda *a, **k: calls.append(a))
    reader = SerialReader(DistanceCell())
    reader.poll_once()
    assert calls == []


def test_thread_feeds_cell(monkeypatch, fake_serial):
    monkeypatch.setattr(hr, "POLL_INTERVAL_S", 0.0)
    cell = DistanceCell()
    reader = SerialReader(cell)
    reader.attach(fake_serial([b"10\n", b"12\n", b"11\n"]))
    reader.start()
    deadline = hr.time.monotonic() + 2.0
    while len(reader.filter) < 3 and hr.time.monotonic() < deadline:
        hr.time.sleep(0.01)
    reader.stop()
    assert cell.get() == 11.0
