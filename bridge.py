#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Rangefinder → haptics bridge (host process)

- Reads cm distances from an ultrasonic rangefinder on --device.
- Drives the actuator array on --actuator-port at --rate ticks per second.
- Loops --sound, with the volume following the proximity band.

Usage examples:
  python3 bridge.py --device /dev/ttyUSB0 --actuator-port /dev/ttyUSB1 --addresses 1 2 3
  python3 bridge.py --sound cue.wav --rate 30 --reopen-s 5 --verbose
"""

from __future__ import annotations

import argparse
import logging
import sys
import time
import traceback
from typing import List, Optional

import serial

from actuator_link import ACTUATOR_BAUD, ACTUATOR_PORT, SerialActuatorLink
from haptic_range import (
    READ_TIMEOUT_S,
    SENSOR_BAUD,
    SENSOR_PORT,
    ActuationController,
    AudioCue,
    DistanceCell,
    Orchestrator,
    SerialReader,
)

# ---------------------------- Constants ---------------------------- #

TICK_RATE_HZ = 60.0
RETRY_DELAY_S = 20


# ---------------------------- Helpers ---------------------------- #

def setup_logging(verbose: bool = False) -> None:
    """Concise, time-stamped console logging (line-buffered)."""
    try:
        sys.stdout.reconfigure(line_buffering=True)  # type: ignore[attr-defined]
    except AttributeError:
        pass
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s | %(levelname)s | %(message)s",
        datefmt="%H:%M:%S",
        handlers=[logging.StreamHandler(sys.stdout)],
    )


def _open_player(path: Optional[str]):
    if not path:
        return None
    from audio_loop import LoopPlayer

    return LoopPlayer(path)


# ---------------------------- Main Program ---------------------------- #

def run(
    device: str,
    baud: int,
    read_timeout: float,
    actuator_port: Optional[str],
    actuator_baud: int,
    addresses: List[int],
    sound: Optional[str],
    rate_hz: float,
    reopen_s: Optional[float],
) -> int:
    # Actuator array (missing → actuation becomes a no-op)
    link: Optional[SerialActuatorLink] = None
    devices = []
    if actuator_port:
        link = SerialActuatorLink(actuator_port, actuator_baud)
        try:
            link.open()
            devices = link.devices(addresses)
        except (serial.SerialException, OSError):
            logging.error("Failed to open actuator port %s:\n%s",
                          actuator_port, traceback.format_exc())
            link = None

    # Audio cue (missing → volume changes become a no-op)
    player = None
    try:
        player = _open_player(sound)
    except Exception:
        logging.error("Failed to load audio cue %s:\n%s", sound, traceback.format_exc())

    cell = DistanceCell()
    reader = SerialReader(
        cell,
        port=device,
        baud=baud,
        read_timeout=read_timeout,
        reopen_backoff_s=reopen_s,
    )
    orchestrator = Orchestrator(cell, ActuationController(devices), AudioCue(player))

    period = 1.0 / max(1.0, rate_hz)

    logging.info("-" * 52)
    logging.info("Streaming rangefinder → actuators at %.0f Hz. Ctrl+C to exit.", rate_hz)
    logging.info("-" * 52)

    try:
        reader.start()
        orchestrator.start()
        next_tick = time.monotonic()
        while True:
            orchestrator.tick()
            next_tick += period
            delay = next_tick - time.monotonic()
            if delay > 0:
                time.sleep(delay)
            else:
                next_tick = time.monotonic()

    except KeyboardInterrupt:
        logging.info("Terminated by user")
        return 0
    except Exception:
        logging.error("Runtime error:\n%s", traceback.format_exc())
        return 5
    finally:
        reader.stop()
        if player is not None:
            player.stop()
        if link is not None:
            link.close()


def parse_args() -> argparse.Namespace:
    p = argparse.ArgumentParser(
        description="Ultrasonic rangefinder → haptic/thermal/LED/audio bridge."
    )
    p.add_argument("--device", type=str, default=SENSOR_PORT,
                   help="Rangefinder serial device")
    p.add_argument("--baudrate", type=int, default=SENSOR_BAUD,
                   help="Rangefinder serial baudrate")
    p.add_argument("--read-timeout", type=float, default=READ_TIMEOUT_S,
                   help="Seconds per rangefinder read attempt")
    p.add_argument("--actuator-port", type=str, default=ACTUATOR_PORT,
                   help="Actuator array serial device ('' to run without)")
    p.add_argument("--actuator-baudrate", type=int, default=ACTUATOR_BAUD,
                   help="Actuator array serial baudrate")
    p.add_argument("--addresses", type=int, nargs="+", default=[1],
                   help="Actuator device addresses on the link")
    p.add_argument("--sound", type=str, default="",
                   help="Audio clip looped as the proximity cue")
    p.add_argument("--rate", type=float, default=TICK_RATE_HZ,
                   help="Update ticks per second")
    p.add_argument("--reopen-s", type=float, default=None,
                   help="Retry opening the rangefinder every N seconds")
    p.add_argument("--verbose", action="store_true",
                   help="Debug logging")
    return p.parse_args()


if __name__ == "__main__":
    args = parse_args()
    setup_logging(args.verbose)
    while True:
        rc = run(
            device=args.device,
            baud=args.baudrate,
            read_timeout=args.read_timeout,
            actuator_port=(args.actuator_port or None),
            actuator_baud=args.actuator_baudrate,
            addresses=args.addresses,
            sound=(args.sound or None),
            rate_hz=args.rate,
            reopen_s=args.reopen_s,
        )
        if rc == 0:
            sys.exit(0)
        print(f"Retrying in {RETRY_DELAY_S} seconds...", flush=True)
        time.sleep(RETRY_DELAY_S)
