"""
Looping audio cue.

Loads a clip with soundfile and streams it through a sounddevice
OutputStream, wrapping around at the end while looping is enabled. The
volume is applied per block so set_volume() takes effect within one block.
"""

from __future__ import annotations

import logging
import threading
from typing import Optional, Tuple

import numpy as np
import soundfile as sf

BLOCK_FRAMES = 1024


def fill_block(
    clip: np.ndarray,
    position: int,
    frames: int,
    loop: bool,
    volume: float,
) -> Tuple[np.ndarray, int, bool]:
    """
    Copy `frames` frames of `clip` starting at `position`, scaled by volume.

    Returns (block, new_position, finished). Without looping the tail is
    zero-padded and finished is True once the clip is exhausted.
    """
    channels = clip.shape[1]
    out = np.zeros((frames, channels), dtype=np.float32)
    total = len(clip)
    if total == 0:
        return out, 0, True

    written = 0
    finished = False
    while written < frames:
        if position >= total:
            if not loop:
                finished = True
                break
            position = 0
        n = min(frames - written, total - position)
        out[written:written + n] = clip[position:position + n]
        written += n
        position += n

    if not loop and position >= total:
        finished = True
    out *= float(volume)
    return out, position, finished


class LoopPlayer:
    """Playback handle: set_loop(), play(), set_volume(), stop()."""

    def __init__(self, path: str, device: Optional[str] = None):
        data, self.samplerate = sf.read(path, dtype="float32", always_2d=True)
        self.clip: np.ndarray = data
        self.device = device
        self._position = 0
        self._loop = False
        self._volume = 1.0
        self._lock = threading.Lock()
        self._stream = None
        logging.info("Loaded %s (%d frames @ %d Hz)", path, len(data), self.samplerate)

    @property
    def volume(self) -> float:
        return self._volume

    def set_loop(self, enabled: bool) -> None:
        with self._lock:
            self._loop = bool(enabled)

    def set_volume(self, volume: float) -> None:
        clamped = max(0.0, min(1.0, float(volume)))
        with self._lock:
            self._volume = clamped
        logging.debug("Volume → %.2f", clamped)

    def _callback(self, outdata, frames, time_info, status) -> None:
        if status:
            logging.debug("Audio status: %s", status)
        with self._lock:
            block, self._position, finished = fill_block(
                self.clip, self._position, frames, self._loop, self._volume
            )
        outdata[:] = block
        if finished:
            import sounddevice as sd
            raise sd.CallbackStop

    def play(self) -> None:
        # PortAudio is only needed once playback starts.
        import sounddevice as sd

        if self._stream is not None:
            return
        self._position = 0
        self._stream = sd.OutputStream(
            samplerate=self.samplerate,
            channels=self.clip.shape[1],
            dtype="float32",
            blocksize=BLOCK_FRAMES,
            device=self.device,
            callback=self._callback,
        )
        self._stream.start()

    def stop(self) -> None:
        if self._stream is None:
            return
        self._stream.stop()
        self._stream.close()
        self._stream = None
