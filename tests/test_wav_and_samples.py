from __future__ import annotations

import struct
import wave
from pathlib import Path

import numpy as np
import pytest

from beatgrid.audio.sample_store import SampleBuffer, SampleLoadError, SampleStore, decode_wav
from beatgrid.audio.wav import HEADER_SIZE, encode_wav, quantize_i16, wav_header, write_wav
from beatgrid.model.types import Instrument


def _write_wav(path: Path, samples: list[list[int]], *, sr: int = 8000, width: int = 2) -> None:
    """samples: one list of ints per channel."""
    path.parent.mkdir(parents=True, exist_ok=True)
    ch = len(samples)
    with wave.open(str(path), "wb") as wf:
        wf.setnchannels(ch)
        wf.setsampwidth(width)
        wf.setframerate(sr)
        frames = bytearray()
        for i in range(len(samples[0])):
            for c in range(ch):
                v = samples[c][i]
                if width == 1:
                    frames += int.to_bytes(v + 128, 1, "little", signed=False)
                else:
                    frames += int.to_bytes(v, width, "little", signed=True)
        wf.writeframes(bytes(frames))


def _write_float_wav(path: Path, values: list[float], *, sr: int = 8000) -> None:
    data = struct.pack(f"<{len(values)}f", *values)
    fmt = struct.pack("<HHIIHH", 3, 1, sr, sr * 4, 4, 32)
    body = b"WAVE" + b"fmt " + struct.pack("<I", len(fmt)) + fmt + b"data" + struct.pack("<I", len(data)) + data
    path.write_bytes(b"RIFF" + struct.pack("<I", len(body)) + body)


def test_header_layout() -> None:
    h = wav_header(frames=100, channels=2, sample_rate=44100)
    assert len(h) == HEADER_SIZE == 44
    assert h[0:4] == b"RIFF"
    assert h[8:12] == b"WAVE"
    assert h[12:16] == b"fmt "
    assert struct.unpack_from("<I", h, 4)[0] == 36 + 400
    assert struct.unpack_from("<I", h, 16)[0] == 16
    assert struct.unpack_from("<H", h, 20)[0] == 1
    assert struct.unpack_from("<H", h, 22)[0] == 2
    assert struct.unpack_from("<I", h, 24)[0] == 44100
    assert struct.unpack_from("<I", h, 28)[0] == 44100 * 4
    assert struct.unpack_from("<H", h, 32)[0] == 4
    assert struct.unpack_from("<H", h, 34)[0] == 16
    assert h[36:40] == b"data"
    assert struct.unpack_from("<I", h, 40)[0] == 400


def test_quantization_is_asymmetric_and_clamped() -> None:
    q = quantize_i16(np.array([-1.0, -0.5, 0.0, 0.5, 1.0, 2.0, -2.0]))
    assert q.tolist() == [-32768, -16384, 0, 16383, 32767, 32767, -32768]


def test_encode_interleaves_channels() -> None:
    buf = np.array([[0.5, 0.5], [-0.5, -0.5]], dtype=np.float32)
    data = encode_wav(buf, 8000)
    assert len(data) == 44 + 2 * 2 * 2
    assert list(struct.unpack("<4h", data[44:])) == [16383, -16384, 16383, -16384]


def test_written_file_reads_back_with_wave(tmp_path: Path) -> None:
    buf = np.zeros((2, 2 * 44100), dtype=np.float32)
    out = write_wav(tmp_path / "sub" / "loop.wav", buf, sample_rate=44100)
    assert out.stat().st_size == 44 + 88200 * 2 * 2
    with wave.open(str(out), "rb") as wf:
        assert wf.getnchannels() == 2
        assert wf.getsampwidth() == 2
        assert wf.getframerate() == 44100
        assert wf.getnframes() == 88200


def test_decode_16bit_mono(tmp_path: Path) -> None:
    p = tmp_path / "kick.wav"
    _write_wav(p, [[0, 16384, -16384, 32767]])
    buf = decode_wav(p)
    assert buf.channels == 1
    assert buf.frames == 4
    assert buf.sample_rate == 8000
    np.testing.assert_allclose(buf.data[0], [0.0, 0.5, -0.5, 32767 / 32768])


def test_decode_stereo_deinterleaves(tmp_path: Path) -> None:
    p = tmp_path / "hat.wav"
    _write_wav(p, [[16384, 16384], [-16384, 0]])
    buf = decode_wav(p)
    assert buf.data.shape == (2, 2)
    np.testing.assert_allclose(buf.data, [[0.5, 0.5], [-0.5, 0.0]])


def test_decode_8bit_and_24bit(tmp_path: Path) -> None:
    p8 = tmp_path / "a8.wav"
    _write_wav(p8, [[0, 64, -128]], width=1)
    np.testing.assert_allclose(decode_wav(p8).data[0], [0.0, 0.5, -1.0])

    p24 = tmp_path / "a24.wav"
    _write_wav(p24, [[0, 4194304, -8388608]], width=3)
    np.testing.assert_allclose(decode_wav(p24).data[0], [0.0, 0.5, -1.0])


def test_decode_float_wav(tmp_path: Path) -> None:
    p = tmp_path / "f.wav"
    _write_float_wav(p, [0.25, -0.75, 1.0])
    buf = decode_wav(p)
    np.testing.assert_allclose(buf.data[0], [0.25, -0.75, 1.0])


def test_decode_errors(tmp_path: Path) -> None:
    with pytest.raises(SampleLoadError):
        decode_wav(tmp_path / "missing.wav")
    bad = tmp_path / "bad.wav"
    bad.write_bytes(b"not a wav file at all")
    with pytest.raises(SampleLoadError):
        decode_wav(bad)


def test_buffer_is_read_only() -> None:
    buf = SampleBuffer(np.zeros(4, dtype=np.float32), 8000)
    assert buf.data.shape == (1, 4)
    with pytest.raises(ValueError):
        buf.data[0, 0] = 1.0
    with pytest.raises(ValueError):
        SampleBuffer(np.zeros(4), 0)


def test_failed_load_keeps_previous_buffer(tmp_path: Path) -> None:
    good = tmp_path / "good.wav"
    _write_wav(good, [[100, 200, 300]])
    bad = tmp_path / "bad.wav"
    bad.write_bytes(b"RIFF....garbage")

    store = SampleStore()
    assert store.load(0, good) is True
    before = store.lookup(0)
    assert store.load(0, bad) is False
    assert store.lookup(0) is before
    assert store.load(1, tmp_path / "nope.wav") is False
    assert store.lookup(1) is None


def test_load_all_resolves_relative_refs(tmp_path: Path) -> None:
    _write_wav(tmp_path / "samples" / "kick.wav", [[1000] * 10])
    insts = [Instrument(name="Kick", sample_ref="samples/kick.wav"), Instrument(name="Snare"),
             Instrument(name="Hat", sample_ref="samples/missing.wav")]
    store = SampleStore()
    assert store.load_all(insts, base_dir=tmp_path) == 1
    assert store.lookup(0) is not None
    assert store.lookup(1) is None
    assert store.lookup(2) is None
    assert set(store.snapshot()) == {0}


def test_float_wav_with_zero_rate_fails_cleanly(tmp_path: Path) -> None:
    p = tmp_path / "zero.wav"
    _write_float_wav(p, [0.25, -0.25], sr=0)
    with pytest.raises(SampleLoadError):
        decode_wav(p)

    store = SampleStore()
    store.put(0, SampleBuffer(np.zeros(4, dtype=np.float32), 8000))
    before = store.lookup(0)
    assert store.load(0, p) is False
    assert store.lookup(0) is before
