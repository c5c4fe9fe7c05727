from __future__ import annotations

import logging
import struct
import wave
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable

import numpy as np

from beatgrid.model.types import Instrument

logger = logging.getLogger(__name__)


class SampleLoadError(RuntimeError):
    pass


@dataclass(frozen=True, eq=False)
class SampleBuffer:
    """Decoded PCM, float32 shaped (channels, frames). Never mutated after load."""

    data: np.ndarray
    sample_rate: int

    def __post_init__(self) -> None:
        arr = np.array(self.data, dtype=np.float32, order="C", copy=True)
        if arr.ndim == 1:
            arr = arr.reshape(1, -1)
        if arr.ndim != 2 or arr.shape[0] < 1:
            raise ValueError(f"sample data must be (channels, frames), got {arr.shape}")
        if self.sample_rate <= 0:
            raise ValueError(f"sample_rate must be > 0: {self.sample_rate}")
        arr.flags.writeable = False
        object.__setattr__(self, "data", arr)

    @property
    def channels(self) -> int:
        return int(self.data.shape[0])

    @property
    def frames(self) -> int:
        return int(self.data.shape[1])

    @property
    def duration(self) -> float:
        return self.frames / float(self.sample_rate)


def _pcm_to_float(raw: bytes, width: int, channels: int) -> np.ndarray:
    if width == 1:
        # 8-bit WAV is unsigned with 128 as zero.
        ints = np.frombuffer(raw, dtype=np.uint8).astype(np.float32) - 128.0
        scale = 128.0
    elif width == 2:
        ints = np.frombuffer(raw, dtype="<i2").astype(np.float32)
        scale = 32768.0
    elif width == 3:
        b = np.frombuffer(raw[: len(raw) - len(raw) % 3], dtype=np.uint8).reshape(-1, 3).astype(np.int32)
        v = b[:, 0] | (b[:, 1] << 8) | (b[:, 2] << 16)
        v = np.where(v & 0x800000, v - 0x1000000, v)
        ints = v.astype(np.float32)
        scale = 8388608.0
    elif width == 4:
        ints = np.frombuffer(raw, dtype="<i4").astype(np.float64)
        scale = 2147483648.0
    else:
        raise SampleLoadError(f"unsupported sample width: {width}")
    frames = len(ints) // channels
    data = (ints[: frames * channels] / scale).astype(np.float32)
    return data.reshape(frames, channels).T


def _buffer(data: np.ndarray, sample_rate: int, path: Path) -> SampleBuffer:
    try:
        return SampleBuffer(data=data, sample_rate=sample_rate)
    except ValueError as e:
        raise SampleLoadError(f"could not decode {path.name}: {e}") from e


def _read_float_wav(path: Path) -> SampleBuffer:
    with open(path, "rb") as f:
        header = f.read(12)
        if len(header) < 12 or header[0:4] != b"RIFF" or header[8:12] != b"WAVE":
            raise SampleLoadError(f"invalid WAV header: {path}")

        fmt_chunk: bytes | None = None
        data_chunk: bytes | None = None
        while True:
            chunk_hdr = f.read(8)
            if len(chunk_hdr) < 8:
                break
            cid = chunk_hdr[0:4]
            size = struct.unpack("<I", chunk_hdr[4:8])[0]
            payload = f.read(size)
            if cid == b"fmt ":
                fmt_chunk = payload
            elif cid == b"data":
                data_chunk = payload
            # pad to even
            if size % 2 == 1:
                f.read(1)

    if fmt_chunk is None or data_chunk is None or len(fmt_chunk) < 16:
        raise SampleLoadError(f"missing fmt/data chunk in WAV: {path}")

    fmt_tag, ch, sr, _byte_rate, _block_align, bits = struct.unpack("<HHIIHH", fmt_chunk[:16])
    if fmt_tag != 3:
        raise SampleLoadError(f"unsupported WAV format tag: {fmt_tag}")
    if bits == 32:
        vals = np.frombuffer(data_chunk[: len(data_chunk) - len(data_chunk) % 4], dtype="<f4")
    elif bits == 64:
        vals = np.frombuffer(data_chunk[: len(data_chunk) - len(data_chunk) % 8], dtype="<f8")
    else:
        raise SampleLoadError(f"unsupported float WAV bit depth: {bits}")
    if sr <= 0 or ch < 1:
        raise SampleLoadError(f"invalid WAV format in {path}")
    frames = len(vals) // ch
    data = vals[: frames * ch].astype(np.float32).reshape(frames, ch).T
    return _buffer(data, int(sr), path)


def decode_wav(path: str | Path) -> SampleBuffer:
    """Decode a WAV file (integer PCM or IEEE float) into a SampleBuffer."""
    p = Path(path).expanduser()
    if not p.is_file():
        raise SampleLoadError(f"sample not found: {p}")
    try:
        with wave.open(str(p), "rb") as wf:
            sr = int(wf.getframerate())
            ch = int(wf.getnchannels())
            sw = int(wf.getsampwidth())
            raw = wf.readframes(wf.getnframes())
    except wave.Error as e:
        # wave only understands integer PCM; float WAVs report format 3.
        if "unknown format: 3" not in str(e):
            raise SampleLoadError(f"could not decode {p.name}: {e}") from e
        return _read_float_wav(p)
    except EOFError as e:
        raise SampleLoadError(f"truncated WAV: {p}") from e

    if sr <= 0 or ch < 1:
        raise SampleLoadError(f"invalid WAV format in {p}")
    return _buffer(_pcm_to_float(raw, sw, ch), sr, p)


class SampleStore:
    """One decoded buffer per instrument slot.

    Replacing a slot swaps the reference; buffers already captured by a render
    keep playing the old data.
    """

    def __init__(self) -> None:
        self._buffers: dict[int, SampleBuffer] = {}

    def lookup(self, instrument_index: int) -> SampleBuffer | None:
        return self._buffers.get(instrument_index)

    def put(self, instrument_index: int, buffer: SampleBuffer) -> None:
        if instrument_index < 0:
            raise IndexError(f"instrument index out of range: {instrument_index}")
        self._buffers[instrument_index] = buffer

    def remove(self, instrument_index: int) -> None:
        self._buffers.pop(instrument_index, None)

    def decode(self, path: str | Path) -> SampleBuffer:
        return decode_wav(path)

    def load(self, instrument_index: int, path: str | Path) -> bool:
        """Decode ``path`` into a slot. Failures are logged and leave the slot as it was."""
        try:
            buf = self.decode(path)
        except (SampleLoadError, OSError) as e:
            logger.error("failed to load sample for slot %d from %s: %s", instrument_index, path, e)
            return False
        self.put(instrument_index, buf)
        logger.info(
            "slot %d <- %s (%d ch, %d Hz, %.3fs)",
            instrument_index,
            Path(path).name,
            buf.channels,
            buf.sample_rate,
            buf.duration,
        )
        return True

    def load_all(self, instruments: Iterable[Instrument], *, base_dir: Path | None = None) -> int:
        loaded = 0
        for idx, inst in enumerate(instruments):
            if not inst.sample_ref:
                continue
            p = Path(inst.sample_ref).expanduser()
            if base_dir is not None and not p.is_absolute():
                p = base_dir / p
            if self.load(idx, p):
                loaded += 1
        return loaded

    def snapshot(self) -> dict[int, SampleBuffer]:
        return dict(self._buffers)
