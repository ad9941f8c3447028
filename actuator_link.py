#!/usr/bin/env python3
"""
Serial actuator array.

Every device on the link is addressed by a 3-digit id. Packets are framed as
marker + address + payload length + payload:

    $A{addr:03d}{len:02d}{payload}

Payloads:
    V,{intensity:.3f},{frequency:.1f}     vibration
    L,{r},{g},{b}                         LED, 0..255 per channel
    H,{intensity:+.1f}                    thermal (+1 heat, -1 cool)

Devices report their sensed temperature as "T,{addr},{celsius}" lines, which
are picked up whenever a device's temperature is read.
"""

from __future__ import annotations

import logging
import time
import traceback
from typing import Dict, List, Optional, Sequence

import serial

from haptic_range import LedMode, Operation, ThermalMode, VibrationMode

# ---------------------------- Constants ---------------------------- #

ACTUATOR_PORT = "/dev/ttyUSB1"
ACTUATOR_BAUD = 115200
WRITE_TIMEOUT_S = 0.2
SERIAL_REOPEN_BACKOFF_S = 2.0
MAX_TEMPERATURE_LINES = 32        # drained per temperature read


# ---------------------------- Helpers ---------------------------- #

def build_packet(address: int, payload: str) -> str:
    """$A + 3-digit address + 2-digit payload length + payload."""
    return f"$A{address:03d}{len(payload):02d}{payload}"


def parse_temperature_line(line: str) -> Optional[tuple]:
    """Parse a "T,<addr>,<celsius>" report; anything else → None."""
    parts = line.strip().split(",")
    if len(parts) != 3 or parts[0] != "T":
        return None
    try:
        return int(parts[1]), float(parts[2])
    except ValueError:
        return None


# ---------------------------- Link ---------------------------- #

class SerialActuatorLink:
    """
    Shared port for all devices. A failed write closes the port and re-raises;
    every later send retries the open, at most once per SERIAL_REOPEN_BACKOFF_S.
    """

    def __init__(self, port: str = ACTUATOR_PORT, baud: int = ACTUATOR_BAUD):
        self.port = port
        self.baud = baud
        self._ser: Optional[serial.Serial] = None
        self._temperatures: Dict[int, float] = {}
        self._last_open_attempt: Optional[float] = None

    def open(self) -> None:
        self._ser = serial.Serial(
            self.port,
            self.baud,
            timeout=0,                  # non-blocking reads
            write_timeout=WRITE_TIMEOUT_S,
        )
        logging.info("Actuator link on %s @ %d bps", self.port, self.baud)

    def attach(self, ser) -> None:
        self._ser = ser

    def close(self) -> None:
        if self._ser is None:
            return
        try:
            self._ser.close()
        except (serial.SerialException, OSError):
            logging.debug("Actuator link close failed:\n%s", traceback.format_exc())
        self._ser = None

    def send(self, address: int, payload: str) -> None:
        if self._ser is None:
            self._reopen()
        if self._ser is None:
            raise serial.SerialException(f"actuator link {self.port} is not open")
        packet = build_packet(address, payload)
        try:
            self._ser.write(packet.encode("ascii", errors="ignore"))
            self._ser.flush()
        except (serial.SerialException, OSError):
            logging.error("Actuator write error; attempting reopen:\n%s",
                          traceback.format_exc())
            self._reopen()
            raise
        logging.debug("Sent: %s", packet)

    def _reopen(self) -> None:
        self.close()
        now = time.monotonic()
        if (
            self._last_open_attempt is not None
            and now - self._last_open_attempt < SERIAL_REOPEN_BACKOFF_S
        ):
            return
        self._last_open_attempt = now
        try:
            self.open()
        except (serial.SerialException, OSError) as exc:
            logging.warning("Actuator link reopen failed: %s", exc)
            self._ser = None

    def temperature(self, address: int) -> Optional[float]:
        self._drain_reports()
        return self._temperatures.get(address)

    def _drain_reports(self) -> None:
        if self._ser is None:
            return
        try:
            for _ in range(MAX_TEMPERATURE_LINES):
                if self._ser.in_waiting <= 0:
                    break
                raw = self._ser.readline()
                if not raw:
                    break
                parsed = parse_temperature_line(raw.decode("ascii", errors="ignore"))
                if parsed is None:
                    continue
                addr, celsius = parsed
                self._temperatures[addr] = celsius
        except (serial.SerialException, OSError):
            logging.warning("Temperature report read failed:\n%s", traceback.format_exc())

    def devices(self, addresses: Sequence[int]) -> List["SerialActuatorDevice"]:
        return [SerialActuatorDevice(self, addr) for addr in addresses]


# ---------------------------- Device ---------------------------- #

class SerialActuatorDevice:
    """One addressable device. Fields are staged, write(operation) sends them."""

    def __init__(self, link: SerialActuatorLink, address: int):
        self.link = link
        self.address = address

        self.vibration_mode = VibrationMode.OFF
        self.vibration_intensity = 0.0
        self.vibration_frequency = 0.0

        self.led_mode = LedMode.OFF
        self.led_red = 0
        self.led_green = 0
        self.led_blue = 0

        self.thermal_mode = ThermalMode.OFF
        self.thermal_intensity = 0.0

    def __repr__(self) -> str:
        return f"SerialActuatorDevice({self.address:03d})"

    @property
    def temperature(self) -> Optional[float]:
        return self.link.temperature(self.address)

    def payload(self, operation: Operation) -> str:
        if operation is Operation.VIBRATION:
            if self.vibration_mode is not VibrationMode.MANUAL:
                return "V,0.000,0.0"
            return f"V,{self.vibration_intensity:.3f},{self.vibration_frequency:.1f}"
        if operation is Operation.LED:
            if self.led_mode is not LedMode.GLOBAL_MANUAL:
                return "L,0,0,0"
            return f"L,{self.led_red},{self.led_green},{self.led_blue}"
        if self.thermal_mode is not ThermalMode.MANUAL:
            return "H,+0.0"
        return f"H,{self.thermal_intensity:+.1f}"

    def write(self, operation: Operation) -> None:
        self.link.send(self.address, self.payload(operation))
