from __future__ import annotations

import io
from pathlib import Path

import numpy as np
import pytest
import soundfile as sf

from xformed.audio import (
    SampleBuffer,
    decode_wav_bytes,
    encode_wav_bytes,
    ensure_audio_contract,
    read_wav,
    to_pcm16,
    write_wav,
)
from xformed.errors import InvalidConfigError, UnsupportedSampleFormatError


def _wav_bytes(frames: np.ndarray, sample_rate: int, subtype: str) -> bytes:
    handle = io.BytesIO()
    sf.write(handle, frames, sample_rate, format="WAV", subtype=subtype)
    return handle.getvalue()


def test_ensure_audio_contract_normalizes_hot_input() -> None:
    out = ensure_audio_contract([2.0, -1.0, 0.5])
    assert out.dtype == np.float32
    assert np.allclose(out, [1.0, -0.5, 0.25])


def test_sample_buffer_accepts_sequence() -> None:
    buffer = SampleBuffer(samples=[0.0, 0.1, -0.1, 0.0], sample_rate=22_050)
    assert len(buffer) == 4
    assert buffer.samples.dtype == np.float32
    assert buffer.duration == pytest.approx(4 / 22_050)
    assert buffer.peak == pytest.approx(0.1)


def test_to_pcm16_clamps() -> None:
    pcm = to_pcm16([0.0, 0.5, 1.0, -1.0, 2.0, -2.0])
    assert pcm.dtype == np.int16
    assert pcm.tolist() == [0, 16383, 32767, -32767, 32767, -32768]


def test_encode_decode_mono_pcm16() -> None:
    t = np.arange(4_000) / 8_000
    buffer = SampleBuffer(samples=0.5 * np.sin(2 * np.pi * 220 * t), sample_rate=8_000)

    data = encode_wav_bytes(buffer)
    info = sf.info(io.BytesIO(data))
    assert info.channels == 1
    assert info.subtype == "PCM_16"
    assert info.samplerate == 8_000

    decoded = decode_wav_bytes(data)
    assert decoded.sample_rate == 8_000
    assert len(decoded) == len(buffer)
    assert np.allclose(decoded.samples, buffer.samples, atol=1e-3)


def test_decode_averages_stereo() -> None:
    left = np.full(100, 0.5, dtype=np.float32)
    right = np.full(100, -0.25, dtype=np.float32)
    data = _wav_bytes(np.stack([left, right], axis=1), 16_000, "FLOAT")

    decoded = decode_wav_bytes(data)

    assert len(decoded) == 100
    assert np.allclose(decoded.samples, 0.125, atol=1e-6)


@pytest.mark.parametrize("subtype", ["PCM_16", "PCM_24", "PCM_32", "FLOAT", "DOUBLE"])
def test_decode_supported_sample_formats(subtype: str) -> None:
    frames = np.linspace(-0.5, 0.5, 64)
    decoded = decode_wav_bytes(_wav_bytes(frames, 11_025, subtype))
    assert decoded.sample_rate == 11_025
    assert np.allclose(decoded.samples, frames, atol=1e-3)


def test_decode_garbage_raises() -> None:
    with pytest.raises(UnsupportedSampleFormatError):
        decode_wav_bytes(b"definitely not a wav file")


def test_encode_rejects_zero_sample_rate() -> None:
    with pytest.raises(InvalidConfigError):
        encode_wav_bytes(SampleBuffer(samples=[0.0, 0.1], sample_rate=0))


def test_write_and_read_wav(tmp_path: Path) -> None:
    target = tmp_path / "nested" / "seq.wav"
    buffer = SampleBuffer(samples=[0.0, 0.25, -0.25, 0.0], sample_rate=22_050)

    path = write_wav(target, buffer)

    assert path == target
    assert target.stat().st_size > 0
    restored = read_wav(target)
    assert np.allclose(restored.samples, buffer.samples, atol=1e-3)
    assert buffer.save(tmp_path / "again.wav").read_bytes() == target.read_bytes()
