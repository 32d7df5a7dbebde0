"""Microphone capture: PyAudio input -> level tap -> encoded blocks on the loop."""

import asyncio
import logging

import numpy as np

from audio_codec import INPUT_SAMPLE_RATE, AudioBlock, encode_samples
from audio_devices import LevelAnalyser, device_error, load_pyaudio
from errors import DeviceError, DeviceErrorKind

logger = logging.getLogger(__name__)

CAPTURE_FRAMES = 4096  # one processing quantum


class CapturePipeline:
    """Reads fixed-size frames from the default input device.

    `on_block(AudioBlock)` is always called on the asyncio loop thread, never
    on the PortAudio thread.
    """

    def __init__(self, on_block, loop=None, analyser: LevelAnalyser | None = None,
                 sample_rate: int = INPUT_SAMPLE_RATE, frames_per_buffer: int = CAPTURE_FRAMES):
        self.on_block = on_block
        self.analyser = analyser or LevelAnalyser()
        self.sample_rate = sample_rate
        self.frames_per_buffer = frames_per_buffer
        self.running = False
        self.blocks_captured = 0
        self._loop = loop
        self._pa = None
        self._stream = None
        self._continue_flag = 0  # pyaudio.paContinue

    def start(self):
        """Acquire the microphone. Raises DeviceError; nothing is held on failure."""
        pyaudio = load_pyaudio()
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        self._continue_flag = pyaudio.paContinue
        try:
            self._pa = pyaudio.PyAudio()
            try:
                self._pa.get_default_input_device_info()
            except OSError as e:
                raise DeviceError(DeviceErrorKind.NO_DEVICE, str(e)) from e
            self._stream = self._pa.open(
                format=pyaudio.paFloat32,
                channels=1,
                rate=self.sample_rate,
                input=True,
                frames_per_buffer=self.frames_per_buffer,
                stream_callback=self._on_audio,
            )
        except DeviceError:
            self._release()
            raise
        except OSError as e:
            self._release()
            raise device_error(e) from e

        self.running = True
        logger.info("Audio capture started (%d Hz, %d-frame quantum)",
                    self.sample_rate, self.frames_per_buffer)

    def _on_audio(self, in_data, frame_count, time_info, status):
        """PortAudio callback thread."""
        if status:
            logger.debug("Capture status flags: %s", status)
        samples = np.frombuffer(in_data, dtype=np.float32)
        self.analyser.feed(samples)
        block = encode_samples(samples, self.sample_rate)
        loop = self._loop
        if loop is not None and not loop.is_closed():
            try:
                loop.call_soon_threadsafe(self._deliver, block)
            except RuntimeError:
                logger.debug("Loop closed, dropping captured block")
        return None, self._continue_flag

    def _deliver(self, block: AudioBlock):
        if not self.running:
            return
        self.blocks_captured += 1
        if self.blocks_captured % 200 == 0:
            logger.debug("Captured %d blocks", self.blocks_captured)
        self.on_block(block)

    def stop(self):
        if not self.running and self._stream is None and self._pa is None:
            return
        self.running = False
        self._release()
        self.analyser.clear()
        logger.info("Audio capture stopped (%d blocks)", self.blocks_captured)

    def _release(self):
        if self._stream is not None:
            try:
                self._stream.stop_stream()
                self._stream.close()
            except OSError as e:
                logger.warning("Capture close error: %s", e)
            self._stream = None
        if self._pa is not None:
            self._pa.terminate()
            self._pa = None
