#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Ultrasonic rangefinder → haptic/thermal/LED actuator core.

- Background reader: newline-delimited ASCII distances (cm) over serial,
  validated to [0, 200] and smoothed with a 5-sample rolling median.
- Bands (inclusive upper bounds, cm):
    CLOSE        <= 20
    MEDIUM       <= 40
    FAR          <= 80
    UNSPECIFIED  otherwise
- Actuation per band: vibration (intensity, frequency), LED color and a
  target temperature. Vibration/LED writes are skipped when the device already
  holds the target; temperature runs bang-bang with a 0.5 °C deadband.
- Audio cue: volume per band, applied on band transitions only.

The host calls Orchestrator.start() once and Orchestrator.tick() every frame.
Nothing here raises into the host: failures are logged and the bridge keeps
running.
"""

from __future__ import annotations

import logging
import re
import threading
import time
import traceback
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Deque, Dict, Iterable, List, Optional, Tuple

import serial

# ---------------------------- Constants ---------------------------- #

SENSOR_PORT = "/dev/ttyUSB0"
SENSOR_BAUD = 9600
READ_TIMEOUT_S = 0.5              # cap per read attempt
POLL_INTERVAL_S = 0.1             # sleep after every reader iteration

MEDIAN_WINDOW = 5                 # samples
MIN_VALID_CM = 0.0
MAX_VALID_CM = 200.0

# Band upper bounds in cm (inclusive)
CLOSE_MAX_CM = 20.0
MEDIUM_MAX_CM = 40.0
FAR_MAX_CM = 80.0

DEFAULT_TEMPERATURE_C = 27.0      # used when a device cannot report
TEMPERATURE_DEADBAND_C = 0.5

MAX_WRITE_FAILURES = 50           # most recent DeviceWriteErrors kept
FAILURE_LOG_EVERY = 100           # repeat failures logged once per this many

DISTANCE_RE = re.compile(r"[+-]?(?:\d+(?:\.\d*)?|\.\d+)", re.ASCII)


# ---------------------------- Errors ---------------------------- #

class BridgeError(Exception):
    """Base class for every failure kind the bridge logs and survives."""


class SensorConnectionError(BridgeError):
    """Serial port for the rangefinder could not be opened."""


class ParseError(BridgeError):
    """Line from the rangefinder is not a distance."""


class OutOfRangeError(ParseError):
    """Distance parsed but falls outside [MIN_VALID_CM, MAX_VALID_CM]."""


class DeviceWriteError(BridgeError):
    """Actuator device rejected a write."""

    def __init__(self, device, operation: "Operation", cause: BaseException):
        super().__init__(f"{operation.value} write failed on {device!r}: {cause}")
        self.device = device
        self.operation = operation
        self.cause = cause


class MissingCollaborator(BridgeError):
    """No actuator array or audio handle was provided."""


# ---------------------------- Median Filter ---------------------------- #

class MedianFilter:
    """
    Rolling median over the last `size` samples.
    Partial windows are filtered too: with k samples the result is
    sorted(window)[k // 2].
    """

    def __init__(self, size: int = MEDIAN_WINDOW):
        self._buf: Deque[float] = deque(maxlen=max(1, size))

    def push(self, sample: float) -> float:
        self._buf.append(sample)
        ordered = sorted(self._buf)
        return ordered[len(ordered) // 2]

    @property
    def window(self) -> List[float]:
        """Snapshot of the current contents, oldest first."""
        return list(self._buf)

    @property
    def capacity(self) -> int:
        return self._buf.maxlen or 0

    def __len__(self) -> int:
        return len(self._buf)


# ---------------------------- Shared Distance ---------------------------- #

class DistanceCell:
    """Single-slot cell: the reader thread writes, the tick reads."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._value: Optional[float] = None

    def set(self, value: float) -> None:
        with self._lock:
            self._value = value

    def get(self) -> Optional[float]:
        with self._lock:
            return self._value


# ---------------------------- Serial Reader ---------------------------- #

def parse_sample(line: str) -> float:
    """
    Parse one frame into centimeters.

    Raises ParseError on anything but a plain ASCII decimal and
    OutOfRangeError when the value is outside [0, 200].
    """
    text = line.strip()
    if not DISTANCE_RE.fullmatch(text):
        raise ParseError(f"not a distance: {text!r}")
    value = float(text)
    if value < MIN_VALID_CM or value > MAX_VALID_CM:
        raise OutOfRangeError(f"{value:.1f} cm outside [{MIN_VALID_CM:g}, {MAX_VALID_CM:g}]")
    return value


class SerialReader:
    """
    Owns the rangefinder port and runs the polling loop on a daemon thread.

    Each iteration reads at most one line when bytes are waiting, then sleeps
    POLL_INTERVAL_S. Read errors are logged and the loop carries on; the port
    is never closed behind the caller's back.
    """

    def __init__(
        self,
        cell: DistanceCell,
        port: str = SENSOR_PORT,
        baud: int = SENSOR_BAUD,
        read_timeout: float = READ_TIMEOUT_S,
        window: int = MEDIAN_WINDOW,
        reopen_backoff_s: Optional[float] = None,
    ):
        self.cell = cell
        self.port = port
        self.baud = baud
        self.read_timeout = read_timeout
        self.reopen_backoff_s = reopen_backoff_s
        self.filter = MedianFilter(window)
        self._ser: Optional[serial.Serial] = None
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._last_open_attempt = 0.0

    # ---------- Connection ---------- #

    def open(self) -> serial.Serial:
        self._last_open_attempt = time.monotonic()
        try:
            ser = serial.Serial(self.port, self.baud, timeout=self.read_timeout)
        except (serial.SerialException, OSError, ValueError) as exc:
            raise SensorConnectionError(
                f"cannot open {self.port} @ {self.baud} bps: {exc}"
            ) from exc
        self._ser = ser
        logging.info("Rangefinder on %s @ %d bps", self.port, self.baud)
        return ser

    def attach(self, ser) -> None:
        """Use an already-open port (anything with in_waiting/readline)."""
        self._ser = ser

    @property
    def connected(self) -> bool:
        return self._ser is not None and bool(getattr(self._ser, "is_open", True))

    def close(self) -> None:
        if self._ser is not None:
            try:
                self._ser.close()
            except (serial.SerialException, OSError):
                logging.debug("Rangefinder close failed:\n%s", traceback.format_exc())
            self._ser = None

    # ---------- Ingestion ---------- #

    def ingest_line(self, line: str) -> Optional[float]:
        """Validate, filter and publish one line. Returns the new median or None."""
        try:
            sample = parse_sample(line)
        except ParseError as exc:
            logging.debug("Dropped frame: %s", exc)
            return None
        filtered = self.filter.push(sample)
        self.cell.set(filtered)
        return filtered

    def poll_once(self) -> Optional[float]:
        if not self.connected:
            self._maybe_reopen()
            return None
        try:
            if self._ser.in_waiting <= 0:
                return None
            raw = self._ser.readline()
        except (serial.SerialException, OSError):
            logging.error("Rangefinder read error:\n%s", traceback.format_exc())
            return None
        if not raw:
            return None
        return self.ingest_line(raw.decode("ascii", errors="ignore"))

    def _maybe_reopen(self) -> None:
        if self.reopen_backoff_s is None:
            return
        if time.monotonic() - self._last_open_attempt < self.reopen_backoff_s:
            return
        try:
            self.open()
        except SensorConnectionError as exc:
            logging.warning("Rangefinder still unavailable: %s", exc)

    # ---------- Thread lifecycle ---------- #

    def run(self) -> None:
        while not self._stop.is_set():
            self.poll_once()
            time.sleep(POLL_INTERVAL_S)

    def start(self) -> None:
        if self._thread is not None:
            return
        if not self.connected:
            try:
                self.open()
            except SensorConnectionError as exc:
                logging.error("%s; distance will not update", exc)
        self._stop.clear()
        self._thread = threading.Thread(target=self.run, name="SerialReader", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=READ_TIMEOUT_S + POLL_INTERVAL_S + 1.0)
            self._thread = None
        self.close()


# ---------------------------- Range Bands ---------------------------- #

class RangeBand(Enum):
    CLOSE = "CLOSE"
    MEDIUM = "MEDIUM"
    FAR = "FAR"
    UNSPECIFIED = "UNSPECIFIED"


def classify(distance_cm: float) -> RangeBand:
    if distance_cm <= CLOSE_MAX_CM:
        return RangeBand.CLOSE
    if distance_cm <= MEDIUM_MAX_CM:
        return RangeBand.MEDIUM
    if distance_cm <= FAR_MAX_CM:
        return RangeBand.FAR
    return RangeBand.UNSPECIFIED


# ---------------------------- Actuation ---------------------------- #

class Operation(Enum):
    VIBRATION = "vibration"
    LED = "led"
    THERMAL = "thermal"


class VibrationMode(Enum):
    OFF = "off"
    MANUAL = "manual"


class LedMode(Enum):
    OFF = "off"
    GLOBAL_MANUAL = "global_manual"


class ThermalMode(Enum):
    OFF = "off"
    MANUAL = "manual"


Color = Tuple[float, float, float]


@dataclass(frozen=True)
class ActuationTarget:
    vibration_intensity: float     # 0..1
    vibration_frequency: float     # Hz
    led_color: Color               # r, g, b in 0..1
    target_temperature: float      # °C

    @property
    def vibration(self) -> Tuple[float, float]:
        return self.vibration_intensity, self.vibration_frequency


BAND_TARGETS: Dict[RangeBand, ActuationTarget] = {
    RangeBand.CLOSE:       ActuationTarget(1.0, 150.0, (1.0, 0.0, 0.0), 40.0),
    RangeBand.MEDIUM:      ActuationTarget(0.6,  80.0, (1.0, 0.5, 0.0), 33.0),
    RangeBand.FAR:         ActuationTarget(0.3,  40.0, (0.0, 1.0, 0.0), 27.0),
    RangeBand.UNSPECIFIED: ActuationTarget(0.0,   0.0, (0.0, 0.0, 0.0), 27.0),
}


def to_byte(channel: float) -> int:
    """0..1 float → 0..255, truncating."""
    return int(max(0.0, min(1.0, channel)) * 255)


@dataclass
class AppliedState:
    vibration: Optional[Tuple[float, float]] = None
    led_color: Optional[Color] = None
    thermal_direction: Optional[float] = None


class ActuationController:
    """
    Drives every device in lockstep.
    Writes are skipped while a device already holds the target. The cached
    state only advances after the device accepts the write, so a failed write
    is retried on the next apply().
    """

    def __init__(self, devices: Optional[Iterable] = None):
        self.devices: List = list(devices) if devices else []
        self._applied: List[AppliedState] = [AppliedState() for _ in self.devices]
        self.current_target_temp: Optional[float] = None
        self.write_failures: Deque[DeviceWriteError] = deque(maxlen=MAX_WRITE_FAILURES)
        self._failure_streaks: Dict[Tuple[int, Operation], int] = {}
        if not self.devices:
            logging.error("%s", MissingCollaborator("no actuator devices; actuation disabled"))

    @property
    def available(self) -> bool:
        return bool(self.devices)

    def applied(self, index: int) -> AppliedState:
        return self._applied[index]

    def failure_streak(self, device, operation: Operation) -> int:
        """Consecutive failed writes of `operation` on `device`."""
        return self._failure_streaks.get((id(device), operation), 0)

    def _write(self, device, operation: Operation) -> bool:
        key = (id(device), operation)
        try:
            device.write(operation)
        except Exception as exc:
            err = DeviceWriteError(device, operation, exc)
            self.write_failures.append(err)
            streak = self._failure_streaks.get(key, 0) + 1
            self._failure_streaks[key] = streak
            if streak == 1:
                logging.error("%s\n%s", err, traceback.format_exc())
            elif streak % FAILURE_LOG_EVERY == 0:
                logging.warning("%s (%d consecutive failures)", err, streak)
            else:
                logging.debug("%s (%d consecutive failures)", err, streak)
            return False
        streak = self._failure_streaks.pop(key, 0)
        if streak:
            logging.info("%s write on %r recovered after %d failure(s)",
                         operation.value, device, streak)
        return True

    def apply(self, band: RangeBand) -> None:
        if not self.available:
            return
        target = BAND_TARGETS[band]
        self.current_target_temp = target.target_temperature
        self.set_vibration(target.vibration_intensity, target.vibration_frequency)
        self.set_led(target.led_color)

    def set_vibration(self, intensity: float, frequency: float) -> None:
        pair = (intensity, frequency)
        for device, state in zip(self.devices, self._applied):
            if state.vibration == pair:
                continue
            device.vibration_mode = VibrationMode.MANUAL
            device.vibration_intensity = intensity
            device.vibration_frequency = frequency
            if self._write(device, Operation.VIBRATION):
                state.vibration = pair

    def set_led(self, color: Color) -> None:
        r, g, b = (to_byte(c) for c in color)
        for device, state in zip(self.devices, self._applied):
            if state.led_color == color:
                continue
            device.led_mode = LedMode.GLOBAL_MANUAL
            device.led_red = r
            device.led_green = g
            device.led_blue = b
            if self._write(device, Operation.LED):
                state.led_color = color

    def maintain_temperature(self) -> None:
        """Bang-bang toward current_target_temp with a 0.5 °C deadband."""
        if not self.available or self.current_target_temp is None:
            return
        target = self.current_target_temp
        for device, state in zip(self.devices, self._applied):
            sensed = read_temperature(device)
            if abs(sensed - target) <= TEMPERATURE_DEADBAND_C:
                continue
            direction = 1.0 if sensed < target else -1.0
            if state.thermal_direction == direction:
                continue
            device.thermal_mode = ThermalMode.MANUAL
            device.thermal_intensity = direction
            if self._write(device, Operation.THERMAL):
                state.thermal_direction = direction


def read_temperature(device) -> float:
    try:
        value = device.temperature
    except Exception:
        logging.debug("Temperature read failed:\n%s", traceback.format_exc())
        return DEFAULT_TEMPERATURE_C
    return DEFAULT_TEMPERATURE_C if value is None else float(value)


# ---------------------------- Audio Cue ---------------------------- #

BAND_VOLUMES: Dict[RangeBand, float] = {
    RangeBand.CLOSE: 0.0,
    RangeBand.MEDIUM: 0.5,
    RangeBand.FAR: 1.0,
    RangeBand.UNSPECIFIED: 1.0,
}


def volume_for(band: RangeBand) -> float:
    return BAND_VOLUMES.get(band, 1.0)


class AudioCue:
    def __init__(self, player=None):
        self.player = player
        if player is None:
            logging.error("%s", MissingCollaborator("no audio handle; cue disabled"))

    def start(self) -> None:
        if self.player is None:
            return
        self.player.set_loop(True)
        self.player.play()

    def adjust_volume(self, band: RangeBand) -> None:
        if self.player is None:
            return
        self.player.set_volume(volume_for(band))


# ---------------------------- Orchestrator ---------------------------- #

class Orchestrator:
    """
    Per-frame state machine. The only state is the previous band; a
    transition fires whenever the classified band differs from it.
    """

    def __init__(
        self,
        cell: DistanceCell,
        actuation: ActuationController,
        audio: AudioCue,
    ):
        self.cell = cell
        self.actuation = actuation
        self.audio = audio
        self.previous_band: Optional[RangeBand] = None

    def start(self) -> None:
        self.audio.start()
        logging.info("Orchestrator started (%d device(s))", len(self.actuation.devices))

    def tick(self) -> Optional[RangeBand]:
        distance = self.cell.get()
        if distance is None or distance < 0:
            return None

        band = classify(distance)
        transitioned = band != self.previous_band
        if transitioned:
            logging.info(
                "Band %s → %s at %.1f cm",
                self.previous_band.value if self.previous_band else "-",
                band.value, distance,
            )
            self.previous_band = band
            self.actuation.apply(band)
            self.audio.adjust_volume(band)

        # Every frame; writes are debounced per device.
        self.actuation.apply(self.previous_band)
        self.actuation.maintain_temperature()
        return band if transitioned else None
