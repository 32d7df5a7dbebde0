"""Audio device boundary: PyAudio output with sample-accurate scheduling,
level analysers for visualization, and PortAudio error mapping.

The output keeps its own clock (frames rendered / sample rate), the same way
a browser AudioContext exposes currentTime. Buffers are placed on that clock
and mixed in the PortAudio callback thread; completion is reported back on
the asyncio loop.
"""

import asyncio
import logging
from threading import Lock

import numpy as np

from audio_codec import AudioBuffer, OUTPUT_SAMPLE_RATE, resample
from errors import DeviceError, DeviceErrorKind

logger = logging.getLogger(__name__)

FFT_SIZE = 256
SMOOTHING = 0.5
OUTPUT_FRAMES_PER_BUFFER = 1024

# PortAudio error codes (PaErrorCode)
_PA_NO_DEVICE_CODES = {-9996}                       # paInvalidDevice
_PA_UNAVAILABLE_CODES = {-9985, -9999}              # paDeviceUnavailable, paUnanticipatedHostError
_PA_UNSUPPORTED_CODES = {-10000, -9998, -9997, -9994, -9979}


def device_error(exc: Exception) -> DeviceError:
    """Map a PyAudio/PortAudio failure to a categorized DeviceError."""
    if isinstance(exc, DeviceError):
        return exc
    code = exc.args[0] if exc.args and isinstance(exc.args[0], int) else None
    detail = str(exc)
    lowered = detail.lower()
    if code in _PA_NO_DEVICE_CODES or "no default" in lowered:
        kind = DeviceErrorKind.NO_DEVICE
    elif code in _PA_UNAVAILABLE_CODES or "permission" in lowered or "busy" in lowered:
        kind = DeviceErrorKind.PERMISSION_DENIED
    elif code in _PA_UNSUPPORTED_CODES:
        kind = DeviceErrorKind.UNSUPPORTED
    else:
        kind = DeviceErrorKind.OTHER
    return DeviceError(kind, detail)


def load_pyaudio():
    """Import PyAudio, reporting a missing PortAudio stack as unsupported."""
    try:
        import pyaudio
    except ImportError as e:
        raise DeviceError(DeviceErrorKind.UNSUPPORTED, str(e)) from e
    return pyaudio


class LevelAnalyser:
    """Analysis tap for visualizers: the last FFT_SIZE samples of a signal.

    Fed from audio threads, read from anywhere.
    """

    def __init__(self, fft_size: int = FFT_SIZE, smoothing: float = SMOOTHING):
        self.fft_size = fft_size
        self.smoothing = smoothing
        self._window = np.zeros(fft_size, dtype=np.float32)
        self._spectrum = np.zeros(fft_size // 2, dtype=np.float32)
        self._lock = Lock()

    def feed(self, samples: np.ndarray):
        samples = np.asarray(samples, dtype=np.float32).reshape(-1)
        if len(samples) == 0:
            return
        with self._lock:
            if len(samples) >= self.fft_size:
                self._window = samples[-self.fft_size:].copy()
            else:
                self._window = np.concatenate([self._window[len(samples):], samples])

    def time_domain(self) -> np.ndarray:
        with self._lock:
            return self._window.copy()

    def level(self) -> float:
        """RMS of the current window."""
        with self._lock:
            return float(np.sqrt(np.mean(self._window.astype(np.float64) ** 2)))

    def frequency_data(self) -> np.ndarray:
        """Smoothed magnitude spectrum (fft_size // 2 bins)."""
        with self._lock:
            windowed = self._window * np.blackman(self.fft_size)
            magnitude = np.abs(np.fft.rfft(windowed))[:self.fft_size // 2] / self.fft_size
            self._spectrum = (self.smoothing * self._spectrum
                              + (1.0 - self.smoothing) * magnitude).astype(np.float32)
            return self._spectrum.copy()

    def clear(self):
        with self._lock:
            self._window = np.zeros(self.fft_size, dtype=np.float32)
            self._spectrum = np.zeros(self.fft_size // 2, dtype=np.float32)


class ScheduledSource:
    """A buffer pinned to an absolute frame on the output clock."""

    def __init__(self, samples: np.ndarray, start_frame: int, on_ended=None):
        self.samples = samples
        self.start_frame = start_frame
        self.end_frame = start_frame + len(samples)
        self.on_ended = on_ended
        self.stopped = False

    def stop(self):
        self.stopped = True


class AudioOutput:
    """Mono float32 PyAudio output stream with a frame-accurate clock."""

    def __init__(self, sample_rate: int = OUTPUT_SAMPLE_RATE, loop=None,
                 analyser: LevelAnalyser | None = None,
                 frames_per_buffer: int = OUTPUT_FRAMES_PER_BUFFER):
        self.sample_rate = sample_rate
        self.frames_per_buffer = frames_per_buffer
        self.analyser = analyser or LevelAnalyser()
        self._loop = loop
        self._pa = None
        self._stream = None
        self._continue_flag = 0  # pyaudio.paContinue
        self._sources: list[ScheduledSource] = []
        self._frames_rendered = 0
        self._lock = Lock()

    @property
    def is_open(self) -> bool:
        return self._stream is not None

    @property
    def current_time(self) -> float:
        with self._lock:
            return self._frames_rendered / self.sample_rate

    def open(self):
        pyaudio = load_pyaudio()
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        self._continue_flag = pyaudio.paContinue
        try:
            self._pa = pyaudio.PyAudio()
            self._stream = self._pa.open(
                format=pyaudio.paFloat32,
                channels=1,
                rate=self.sample_rate,
                output=True,
                frames_per_buffer=self.frames_per_buffer,
                stream_callback=self._render,
            )
        except OSError as e:
            self.close()
            raise device_error(e) from e
        logger.info("Audio output opened at %d Hz", self.sample_rate)

    def play(self, buffer: AudioBuffer, start_at: float, on_ended=None) -> ScheduledSource:
        """Schedule `buffer` to start at `start_at` seconds on the output clock."""
        samples = buffer.channel_data(0) if buffer.channels == 1 else buffer.samples.mean(axis=0)
        samples = resample(samples.astype(np.float32), buffer.sample_rate, self.sample_rate)
        source = ScheduledSource(samples, int(round(start_at * self.sample_rate)), on_ended)
        with self._lock:
            self._sources.append(source)
        return source

    def _render(self, in_data, frame_count, time_info, status):
        """PortAudio callback thread: mix every source overlapping this block."""
        out = np.zeros(frame_count, dtype=np.float32)
        finished = []
        with self._lock:
            start = self._frames_rendered
            end = start + frame_count
            remaining = []
            for src in self._sources:
                if src.stopped:
                    continue
                lo = max(src.start_frame, start)
                hi = min(src.end_frame, end)
                if hi > lo:
                    out[lo - start:hi - start] += src.samples[lo - src.start_frame:hi - src.start_frame]
                if src.end_frame <= end:
                    finished.append(src)
                else:
                    remaining.append(src)
            self._sources = remaining
            self._frames_rendered = end

        np.clip(out, -1.0, 1.0, out=out)
        self.analyser.feed(out)
        for src in finished:
            self._notify_ended(src)
        return out.tobytes(), self._continue_flag

    def _notify_ended(self, src: ScheduledSource):
        if src.on_ended is None or src.stopped:
            return
        if self._loop is not None and not self._loop.is_closed():
            try:
                self._loop.call_soon_threadsafe(src.on_ended, src)
            except RuntimeError:
                logger.debug("Loop closed, dropping end-of-playback notice")

    def close(self):
        with self._lock:
            for src in self._sources:
                src.stop()
            self._sources = []
        if self._stream is not None:
            try:
                self._stream.stop_stream()
                self._stream.close()
            except OSError as e:
                logger.warning("Audio output close error: %s", e)
            self._stream = None
        if self._pa is not None:
            self._pa.terminate()
            self._pa = None
        self.analyser.clear()
