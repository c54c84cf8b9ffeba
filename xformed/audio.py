from __future__ import annotations

import io
import logging
from collections.abc import Sequence
from pathlib import Path
from typing import Any

import numpy as np
import soundfile as sf  # type: ignore[import]
from numpy.typing import DTypeLike, NDArray
from pydantic import BaseModel, ConfigDict, Field, model_validator

from .errors import InvalidConfigError, UnsupportedSampleFormatError

FloatArray = NDArray[np.float32]
AudioNumbers = NDArray[np.floating[Any]] | Sequence[float] | FloatArray

SAMPLE_RATE = 44_100
PCM16_MAX = 32_767

_LOGGER = logging.getLogger("xformed.audio")


def ensure_audio_contract(audio: AudioNumbers) -> FloatArray:
    """Normalize dtype/range/shape to the audio contract."""

    mono: FloatArray = np.asarray(audio, dtype=np.float32).reshape(-1)
    if mono.size == 0:
        return mono
    peak = float(np.max(np.abs(mono)))
    if peak > 1.0:
        mono = mono / peak
    return mono


class SampleBuffer(BaseModel):
    """Mono float32 samples paired with their sample rate."""

    samples: FloatArray
    sample_rate: int = Field(default=SAMPLE_RATE, ge=0)

    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
        arbitrary_types_allowed=True,
    )

    @model_validator(mode="before")
    @classmethod
    def _coerce_samples(cls, data: object) -> object:
        if isinstance(data, dict) and "samples" in data:
            merged = dict(data)
            merged["samples"] = ensure_audio_contract(merged["samples"])
            return merged
        return data

    @property
    def duration(self) -> float:
        if self.sample_rate <= 0:
            return 0.0
        return self.samples.size / self.sample_rate

    @property
    def peak(self) -> float:
        if self.samples.size == 0:
            return 0.0
        return float(np.max(np.abs(self.samples)))

    def __len__(self) -> int:
        return int(self.samples.size)

    def __array__(self, dtype: DTypeLike | None = None, copy: bool | None = None) -> NDArray[np.generic]:
        return np.asarray(self.samples, dtype=dtype)

    def to_wav_bytes(self) -> bytes:
        return encode_wav_bytes(self)

    def save(self, path: str | Path) -> Path:
        return write_wav(path, self)


def _downmix(frames: NDArray[np.float32]) -> FloatArray:
    if frames.ndim == 1:
        return frames.astype(np.float32, copy=False)
    if frames.shape[1] == 1:
        return frames[:, 0].astype(np.float32, copy=False)
    # Average (not sum) across channels so the mono mix keeps the input scale.
    return frames.mean(axis=1, dtype=np.float64).astype(np.float32)


def decode_wav_bytes(data: bytes) -> SampleBuffer:
    """Decode an in-memory audio container into a mono sample buffer.

    16/24/32-bit integer PCM and 32/64-bit float are read as float32 in
    [-1, 1]; multi-channel input is averaged across channels.
    """

    try:
        frames, sample_rate = sf.read(io.BytesIO(data), dtype="float32", always_2d=True)
    except (RuntimeError, TypeError, ValueError) as exc:
        raise UnsupportedSampleFormatError(f"cannot decode audio container: {exc}") from exc

    mono = _downmix(np.asarray(frames, dtype=np.float32))
    _LOGGER.debug(
        "Decoded %d frames x %d channels at %d Hz",
        frames.shape[0],
        frames.shape[1],
        sample_rate,
    )
    return SampleBuffer(samples=mono, sample_rate=int(sample_rate))


def read_wav(path: str | Path) -> SampleBuffer:
    return decode_wav_bytes(Path(path).read_bytes())


def to_pcm16(samples: AudioNumbers) -> NDArray[np.int16]:
    """Scale float samples by the int16 magnitude and clamp to its range."""

    scaled = np.asarray(samples, dtype=np.float64).reshape(-1) * PCM16_MAX
    return np.clip(scaled, -PCM16_MAX - 1, PCM16_MAX).astype(np.int16)


def encode_wav_bytes(buffer: SampleBuffer) -> bytes:
    """Encode a sample buffer as a mono 16-bit PCM WAV container."""

    if buffer.sample_rate <= 0:
        raise InvalidConfigError("cannot encode audio with a non-positive sample rate")
    handle = io.BytesIO()
    sf.write(handle, to_pcm16(buffer.samples), buffer.sample_rate, format="WAV", subtype="PCM_16")
    return handle.getvalue()


def write_wav(path: str | Path, buffer: SampleBuffer) -> Path:
    """Write a sample buffer to a mono 16-bit PCM wav file."""

    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_bytes(encode_wav_bytes(buffer))
    return target
