from __future__ import annotations

import struct
from pathlib import Path

import numpy as np

HEADER_SIZE = 44

# RIFF, size, WAVE, "fmt ", 16, format, channels, rate, byte rate, block align, bits, "data", size
_HEADER = struct.Struct("<4sI4s4sIHHIIHH4sI")


def wav_header(*, frames: int, channels: int, sample_rate: int) -> bytes:
    data_len = frames * channels * 2
    return _HEADER.pack(
        b"RIFF",
        HEADER_SIZE + data_len - 8,
        b"WAVE",
        b"fmt ",
        16,
        1,  # integer PCM
        channels,
        sample_rate,
        sample_rate * channels * 2,
        channels * 2,
        16,
        b"data",
        data_len,
    )


def quantize_i16(samples: np.ndarray) -> np.ndarray:
    """Clamp to [-1, 1] and scale asymmetrically (32768 below zero, 32767 above),
    truncating toward zero."""
    s = np.clip(np.asarray(samples, dtype=np.float64), -1.0, 1.0)
    scaled = np.where(s < 0, s * 32768.0, s * 32767.0)
    return np.trunc(scaled).astype(np.int32).astype("<i2")


def encode_wav(buffer: np.ndarray, sample_rate: int) -> bytes:
    """Serialize float (channels, frames) audio as a 16-bit PCM WAV byte string."""
    data = np.asarray(buffer)
    if data.ndim == 1:
        data = data.reshape(1, -1)
    if data.ndim != 2 or data.shape[0] < 1:
        raise ValueError(f"buffer must be (channels, frames), got {data.shape}")
    channels, frames = int(data.shape[0]), int(data.shape[1])
    # frame-major order interleaves the channels
    payload = quantize_i16(data.T).tobytes()
    return wav_header(frames=frames, channels=channels, sample_rate=int(sample_rate)) + payload


def write_wav(path: Path, buffer: np.ndarray, *, sample_rate: int) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(encode_wav(buffer, sample_rate))
    return path
