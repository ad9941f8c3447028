import pytest

import haptic_range as hr


class FakeSerial:
    """Line-oriented stand-in for serial.Serial."""

    def __init__(self, lines=(), fail_reads=0):
        self.lines = [l if isinstance(l, bytes) else l.encode("ascii") for l in lines]
        self.fail_reads = fail_reads
        self.is_open = True
        self.written = []

    @property
    def in_waiting(self):
        return sum(len(l) for l in self.lines)

    def readline(self):
        if self.fail_reads:
            self.fail_reads -= 1
            raise hr.serial.SerialException("device reports readiness to read but returned no data")
        if not self.lines:
            return b""
        return self.lines.pop(0)

    def write(self, data):
        self.written.append(data)
        return len(data)

    def flush(self):
        pass

    def close(self):
        self.is_open = False


class FakeDevice:
    def __init__(self, temperature=None, fail_writes=0):
        self.temperature = temperature
        self.fail_writes = fail_writes
        self.writes = []
        self.vibration_mode = None
        self.vibration_intensity = None
        self.vibration_frequency = None
        self.led_mode = None
        self.led_red = self.led_green = self.led_blue = None
        self.thermal_mode = None
        self.thermal_intensity = None

    def write(self, operation):
        if self.fail_writes:
            self.fail_writes -= 1
            raise IOError("device busy")
        self.writes.append(operation)

    def count(self, operation):
        return self.writes.count(operation)


class FakePlayer:
    def __init__(self):
        self.loop = None
        self.playing = False
        self.volumes = []

    def set_loop(self, enabled):
        self.loop = enabled

    def play(self):
        self.playing = True

    def set_volume(self, volume):
        self.volumes.append(volume)


@pytest.fixture
def fake_serial():
    return FakeSerial


@pytest.fixture
def device():
    return FakeDevice()


@pytest.fixture
def player():
    return FakePlayer()


@pytest.fixture
def make_device():
    return FakeDevice
