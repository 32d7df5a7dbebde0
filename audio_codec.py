"""PCM <-> wire block conversion for the live session.

Outbound audio travels as base64 16-bit little-endian PCM at 16kHz, inbound
audio arrives the same way at 24kHz. Samples inside the process are float32
in [-1.0, 1.0].
"""

import asyncio
import base64
import binascii
from dataclasses import dataclass

import numpy as np

from errors import DecodeError

INPUT_SAMPLE_RATE = 16000
OUTPUT_SAMPLE_RATE = 24000
BYTES_PER_SAMPLE = 2  # 16-bit PCM

# Loudness approximation for visuals: every Nth sample, RMS, fixed gain
LEVEL_STRIDE = 100
LEVEL_GAIN = 5.0


@dataclass(frozen=True)
class AudioBlock:
    """One encoded frame as it goes over the wire."""
    data: str
    mime_type: str = f"audio/pcm;rate={INPUT_SAMPLE_RATE}"

    def __len__(self) -> int:
        return len(self.data)


@dataclass
class AudioBuffer:
    """Decoded, playable audio. `samples` has shape (channels, frames)."""
    samples: np.ndarray
    sample_rate: int

    @property
    def channels(self) -> int:
        return self.samples.shape[0]

    @property
    def frames(self) -> int:
        return self.samples.shape[1]

    @property
    def duration(self) -> float:
        return self.frames / self.sample_rate

    def channel_data(self, channel: int = 0) -> np.ndarray:
        return self.samples[channel]


def resample(samples: np.ndarray, source_rate: int, target_rate: int) -> np.ndarray:
    """Resample a mono float signal by linear interpolation."""
    if source_rate == target_rate or len(samples) == 0:
        return samples
    out_len = int(len(samples) * target_rate / source_rate)
    if out_len == 0:
        return np.zeros(0, dtype=np.float32)
    positions = np.arange(out_len) * (source_rate / target_rate)
    return np.interp(positions, np.arange(len(samples)), samples).astype(np.float32)


def encode_samples(samples, source_rate: int = INPUT_SAMPLE_RATE) -> AudioBlock:
    """Float samples -> base64 int16 block at the protocol input rate."""
    arr = np.asarray(samples, dtype=np.float32).reshape(-1)
    arr = resample(arr, source_rate, INPUT_SAMPLE_RATE)
    pcm = (np.clip(arr, -1.0, 1.0) * 32767.0).astype('<i2')
    return AudioBlock(data=base64.b64encode(pcm.tobytes()).decode('ascii'))


def decode_block(data, sample_rate: int = OUTPUT_SAMPLE_RATE, channels: int = 1,
                 target_rate: int | None = None) -> AudioBuffer:
    """Base64 (or raw bytes) interleaved int16 PCM -> AudioBuffer.

    Raises DecodeError for anything that isn't whole int16 frames.
    """
    if channels < 1:
        raise DecodeError(f"Invalid channel count: {channels}")

    if isinstance(data, str):
        try:
            raw = base64.b64decode(data, validate=True)
        except (binascii.Error, ValueError) as e:
            raise DecodeError(f"Malformed audio payload: {e}") from e
    elif isinstance(data, (bytes, bytearray, memoryview)):
        raw = bytes(data)
    else:
        raise DecodeError(f"Unsupported audio payload type: {type(data).__name__}")

    frame_bytes = BYTES_PER_SAMPLE * channels
    if len(raw) % frame_bytes:
        raise DecodeError(
            f"Audio payload of {len(raw)} bytes is not a whole number of "
            f"{channels}-channel 16-bit frames")

    pcm = np.frombuffer(raw, dtype='<i2').astype(np.float32) / 32768.0
    samples = pcm.reshape(-1, channels).T

    rate = sample_rate
    if target_rate and target_rate != sample_rate:
        samples = np.stack([resample(ch, sample_rate, target_rate) for ch in samples]) \
            if samples.shape[1] else np.zeros((channels, 0), dtype=np.float32)
        rate = target_rate

    return AudioBuffer(samples=np.ascontiguousarray(samples, dtype=np.float32),
                       sample_rate=rate)


async def decode_block_async(data, sample_rate: int = OUTPUT_SAMPLE_RATE,
                             channels: int = 1, target_rate: int | None = None) -> AudioBuffer:
    """decode_block() in the default executor so the event loop keeps running."""
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(
        None, decode_block, data, sample_rate, channels, target_rate)


def audio_level(buffer: AudioBuffer, stride: int = LEVEL_STRIDE,
                gain: float = LEVEL_GAIN) -> float:
    """Cheap visual loudness: RMS over every `stride`-th sample of channel 0, times `gain`."""
    if buffer.frames == 0:
        return 0.0
    sampled = buffer.channel_data(0)[::stride].astype(np.float64)
    return float(np.sqrt(np.mean(sampled * sampled)) * gain)
