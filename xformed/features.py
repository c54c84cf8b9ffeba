"""
Statistical fingerprint of a mono sample buffer.

Pipeline:

1. Amplitude: peak, RMS, crest factor, zero-crossing rate, amplitude entropy
2. Spectrum: Hann-windowed frames -> centroid, bandwidth, rolloff, flatness, entropy
3. Rhythm: rectified spectral flux -> onset rate and autocorrelation tempo
4. Pitch: normalized autocorrelation over long windows -> F0 mean/std/voicing
"""

from __future__ import annotations

import logging
import math
from collections.abc import Iterator
from dataclasses import dataclass
from functools import lru_cache

import numpy as np
from numpy.typing import NDArray
from pydantic import BaseModel, ConfigDict
from scipy.signal import get_window  # type: ignore[import]

from .audio import SampleBuffer
from .config import AnalysisSettings
from .errors import EmptySignalError

_LOGGER = logging.getLogger("xformed.features")

FloatArray = NDArray[np.float64]

# =============================================================================
# CONSTANTS
# =============================================================================

ONSET_THRESHOLD_SCALE = 1.5
# Flux must also exceed this share of the mean per-frame magnitude to count.
ONSET_FLOOR_RATIO = 0.05
TEMPO_MIN_BPM = 50.0
TEMPO_MAX_BPM = 200.0
TEMPO_MIN_FRAMES = 4
TEMPO_MIN_ONSETS = 2

AMPLITUDE_HIST_BINS = 64
FLATNESS_EPS = 1e-12
ROLLOFF_LOW = 0.85
ROLLOFF_HIGH = 0.95

PITCH_FMIN_HZ = 60.0
PITCH_FMAX_HZ = 1000.0
PITCH_MIN_WINDOW = 1024
PITCH_MIN_STEP = 256
VOICING_THRESHOLD = 1e-4
# First autocorrelation peak within this ratio of the best one wins (octave guard).
PITCH_PEAK_RATIO = 0.9

# Frames transformed per FFT call; bounds scratch memory on long inputs.
_FRAME_BLOCK = 256


# =============================================================================
# REPORT
# =============================================================================


class PitchStats(BaseModel):
    mean_hz: float = 0.0
    std_hz: float = 0.0
    voiced_ratio: float = 0.0

    model_config = ConfigDict(frozen=True, extra="forbid")


class FeatureReport(BaseModel):
    """Scalar features of one sample buffer. Zero means "absent or degenerate"."""

    sample_rate: int
    num_samples: int
    duration_sec: float
    frame_size: int
    hop_size: int

    peak: float = 0.0
    rms: float = 0.0
    crest_factor: float = 0.0
    zero_crossing_rate: float = 0.0
    amplitude_entropy: float = 0.0

    spectral_centroid_hz: float = 0.0
    spectral_bandwidth_hz: float = 0.0
    spectral_rolloff85_hz: float = 0.0
    spectral_rolloff95_hz: float = 0.0
    spectral_flatness: float = 0.0
    spectral_entropy: float = 0.0

    onset_rate: float = 0.0
    tempo_bpm: float = 0.0

    f0: PitchStats = PitchStats()

    model_config = ConfigDict(frozen=True, extra="forbid")


@dataclass(frozen=True)
class FrameFeatures:
    """Per-frame spectral series (bin units are already converted to Hz)."""

    centroid_hz: FloatArray
    bandwidth_hz: FloatArray
    rolloff85_hz: FloatArray
    rolloff95_hz: FloatArray
    flatness: FloatArray
    entropy: FloatArray
    flux: FloatArray
    total_magnitude: FloatArray

    @property
    def frame_count(self) -> int:
        return int(self.flux.size)


# =============================================================================
# PART 1: TIME-DOMAIN STATISTICS
# =============================================================================


def amplitude_stats(x: FloatArray) -> tuple[float, float, float]:
    """Return (peak, rms, crest_factor)."""
    if x.size == 0:
        return 0.0, 0.0, 0.0
    peak = float(np.max(np.abs(x)))
    rms = math.sqrt(float(np.mean(np.square(x, dtype=np.float64))))
    crest = peak / rms if rms > 0.0 else 0.0
    return peak, rms, crest


def zero_crossing_rate(x: FloatArray, sample_rate: int) -> float:
    """Sign changes per second, counting >=0 as positive."""
    if x.size < 2:
        return 0.0
    non_negative = x >= 0.0
    crossings = int(np.count_nonzero(non_negative[1:] != non_negative[:-1]))
    return crossings * sample_rate / (x.size - 1)


def amplitude_entropy(x: FloatArray, bins: int = AMPLITUDE_HIST_BINS) -> float:
    """Normalized Shannon entropy of the sample-value histogram over [-1, 1]."""
    if x.size == 0:
        return 0.0
    index = np.floor((x + 1.0) * 0.5 * bins).astype(np.int64)
    counts = np.bincount(np.clip(index, 0, bins - 1), minlength=bins)
    return _normalized_entropy(counts.astype(np.float64), bins)


def _normalized_entropy(weights: FloatArray, bins: int) -> float:
    total = float(weights.sum())
    if total <= 0.0 or bins < 2:
        return 0.0
    p = weights[weights > 0.0] / total
    # A single occupied bin sums to -0.0; report a plain zero.
    return max(0.0, float(-(p * np.log(p)).sum() / math.log(bins)))


# =============================================================================
# PART 2: SPECTRAL FRAMES
# =============================================================================


@lru_cache(maxsize=16)
def hann(size: int) -> FloatArray:
    """Periodic Hann window."""
    window = np.asarray(get_window("hann", size, fftbins=True), dtype=np.float64)
    window.setflags(write=False)
    return window


def frame_count(num_samples: int, frame_size: int, hop_size: int) -> int:
    if num_samples < frame_size:
        return 0
    return 1 + (num_samples - frame_size) // hop_size


def _iter_magnitude_blocks(
    x: FloatArray, frame_size: int, hop_size: int, frames: int
) -> Iterator[FloatArray]:
    window = hann(frame_size)
    view = np.lib.stride_tricks.sliding_window_view(x, frame_size)[::hop_size][:frames]
    for start in range(0, frames, _FRAME_BLOCK):
        block = view[start : start + _FRAME_BLOCK] * window
        yield np.abs(np.fft.rfft(block, n=frame_size, axis=1))


def spectral_frames(
    x: FloatArray, sample_rate: int, frame_size: int, hop_size: int
) -> FrameFeatures:
    """Compute per-frame spectral shape and rectified flux."""
    frames = frame_count(x.size, frame_size, hop_size)
    bins = frame_size // 2 + 1
    bin_hz = sample_rate / frame_size
    k = np.arange(bins, dtype=np.float64)

    parts: dict[str, list[FloatArray]] = {
        name: []
        for name in (
            "centroid",
            "bandwidth",
            "rolloff85",
            "rolloff95",
            "flatness",
            "entropy",
            "flux",
            "total",
        )
    }
    previous: FloatArray | None = None

    for mags in _iter_magnitude_blocks(x, frame_size, hop_size, frames):
        total = mags.sum(axis=1)
        silent = total <= 0.0
        safe_total = np.where(silent, 1.0, total)

        centroid = (mags @ k) / safe_total
        spread = ((k[None, :] - centroid[:, None]) ** 2 * mags).sum(axis=1) / safe_total
        bandwidth = np.sqrt(np.maximum(spread, 0.0))

        cumulative = np.cumsum(mags, axis=1)
        rolloff85 = np.argmax(cumulative >= ROLLOFF_LOW * total[:, None], axis=1)
        rolloff95 = np.argmax(cumulative >= ROLLOFF_HIGH * total[:, None], axis=1)

        geometric = np.exp(np.mean(np.log(mags + FLATNESS_EPS), axis=1))
        arithmetic = np.mean(mags, axis=1) + FLATNESS_EPS
        flatness = np.clip(geometric / arithmetic, 0.0, 1.0)

        pmf = mags / safe_total[:, None]
        with np.errstate(divide="ignore", invalid="ignore"):
            plogp = np.where(pmf > 0.0, pmf * np.log(pmf), 0.0)
        entropy = -plogp.sum(axis=1) / math.log(bins) if bins > 1 else np.zeros_like(total)

        if previous is None:
            shifted = mags[:1]
        else:
            shifted = previous[None, :]
        prior = np.vstack((shifted, mags[:-1]))
        flux = np.maximum(mags - prior, 0.0).sum(axis=1)
        previous = mags[-1]

        parts["centroid"].append(np.where(silent, 0.0, centroid) * bin_hz)
        parts["bandwidth"].append(np.where(silent, 0.0, bandwidth) * bin_hz)
        parts["rolloff85"].append(np.where(silent, 0, rolloff85) * bin_hz)
        parts["rolloff95"].append(np.where(silent, 0, rolloff95) * bin_hz)
        parts["flatness"].append(np.where(silent, 0.0, flatness))
        parts["entropy"].append(np.where(silent, 0.0, entropy))
        parts["flux"].append(flux)
        parts["total"].append(total)

    def _join(name: str) -> FloatArray:
        chunks = parts[name]
        if not chunks:
            return np.zeros(0, dtype=np.float64)
        return np.concatenate(chunks).astype(np.float64, copy=False)

    return FrameFeatures(
        centroid_hz=_join("centroid"),
        bandwidth_hz=_join("bandwidth"),
        rolloff85_hz=_join("rolloff85"),
        rolloff95_hz=_join("rolloff95"),
        flatness=_join("flatness"),
        entropy=_join("entropy"),
        flux=_join("flux"),
        total_magnitude=_join("total"),
    )


# =============================================================================
# PART 3: RHYTHM
# =============================================================================


def count_onsets(frames: FrameFeatures) -> int:
    """Frames whose flux exceeds 1.5x the mean flux and the magnitude floor."""
    if frames.frame_count == 0:
        return 0
    threshold = ONSET_THRESHOLD_SCALE * float(frames.flux.mean())
    floor = ONSET_FLOOR_RATIO * float(frames.total_magnitude.mean())
    hits = (frames.flux > threshold) & (frames.flux > floor)
    return int(np.count_nonzero(hits))


def autocorrelation(series: FloatArray) -> FloatArray:
    """Linear (non-circular) autocorrelation for lags 0..len-1."""
    n = series.size
    if n == 0:
        return np.zeros(0, dtype=np.float64)
    nfft = 1 << (2 * n - 1).bit_length()
    spectrum = np.fft.rfft(series, n=nfft)
    return np.fft.irfft(spectrum * np.conj(spectrum), n=nfft)[:n]


def estimate_tempo(flux: FloatArray, sample_rate: int, hop_size: int, onsets: int) -> float:
    """Pick the strongest flux periodicity that lands in the 50-200 BPM window."""
    frames = flux.size
    if frames < TEMPO_MIN_FRAMES or onsets < TEMPO_MIN_ONSETS:
        return 0.0

    ac = autocorrelation(flux)
    lags = np.arange(1, frames, dtype=np.float64)
    frames_per_second = sample_rate / hop_size
    bpm = 60.0 / (lags / frames_per_second)
    scores = ac[1:]

    eligible = (bpm >= TEMPO_MIN_BPM) & (bpm <= TEMPO_MAX_BPM) & (scores > 0.0)
    if not np.any(eligible):
        return 0.0
    best = int(np.argmax(np.where(eligible, scores, -np.inf)))
    return float(bpm[best])


# =============================================================================
# PART 4: PITCH STATISTICS
# =============================================================================


def _parabolic_offset(left: float, center: float, right: float) -> float:
    denom = left - 2.0 * center + right
    if abs(denom) <= 1e-12:
        return 0.0
    return float(np.clip(0.5 * (left - right) / denom, -0.5, 0.5))


def autocorrelation_pitch(
    segment: FloatArray, min_lag: int, max_lag: int
) -> tuple[float, float]:
    """Return (lag in samples, normalized score) for one mean-removed window.

    One guard lag is scored on each side of [min_lag, max_lag] so a period
    sitting on either bound still reads as a local maximum.
    """
    size = segment.size
    acf = autocorrelation(segment)
    energy = np.concatenate(([0.0], np.cumsum(segment * segment)))

    lags = np.arange(max(1, min_lag - 1), min(max_lag + 1, size - 1) + 1)
    head = energy[size - lags]
    tail = energy[size] - energy[lags]
    denom = np.sqrt(head * tail)
    scores = np.divide(acf[lags], denom, out=np.zeros(lags.size), where=denom > 0.0)

    in_range = (lags >= min_lag) & (lags <= max_lag)
    best = float(scores[in_range].max())
    if best <= 0.0:
        return 0.0, best

    interior = np.arange(1, scores.size - 1)
    peaks = interior[
        in_range[interior]
        & (scores[interior] >= scores[interior - 1])
        & (scores[interior] >= scores[interior + 1])
        & (scores[interior] >= PITCH_PEAK_RATIO * best)
    ]
    if peaks.size == 0:
        index = int(np.argmax(np.where(in_range, scores, -np.inf)))
        return float(lags[index]), best

    index = int(peaks[0])
    offset = _parabolic_offset(scores[index - 1], scores[index], scores[index + 1])
    return float(lags[index]) + offset, float(scores[index])


def pitch_stats(x: FloatArray, sample_rate: int, hop_size: int) -> PitchStats:
    window = max(sample_rate // 50, PITCH_MIN_WINDOW)
    step = max(hop_size, PITCH_MIN_STEP)
    total = frame_count(x.size, window, step)
    if total == 0:
        return PitchStats()

    min_lag = max(1, int(sample_rate / PITCH_FMAX_HZ))
    max_lag = min(int(sample_rate / PITCH_FMIN_HZ), window - 2)
    if max_lag <= min_lag + 1:
        return PitchStats()

    pitches: list[float] = []
    for index in range(total):
        segment = x[index * step : index * step + window]
        segment = segment - segment.mean()
        energy = float(np.mean(segment * segment))
        if energy <= VOICING_THRESHOLD:
            continue
        lag, score = autocorrelation_pitch(segment, min_lag, max_lag)
        if score > VOICING_THRESHOLD and lag > 0.0:
            pitches.append(sample_rate / lag)

    if not pitches:
        return PitchStats()
    values = np.asarray(pitches, dtype=np.float64)
    return PitchStats(
        mean_hz=float(values.mean()),
        std_hz=float(values.std()),
        voiced_ratio=len(pitches) / total,
    )


# =============================================================================
# PART 5: ENTRY POINT
# =============================================================================


def analyze(
    buffer: SampleBuffer,
    frame_size: int = 2048,
    hop_size: int = 512,
) -> FeatureReport:
    """Compute the feature report for a mono sample buffer.

    Raises:
        EmptySignalError: the buffer has no samples or a zero sample rate.
        InvalidConfigError: frame/hop sizes are unusable.
    """
    settings = AnalysisSettings(frame_size=frame_size, hop_size=hop_size)
    sample_rate = buffer.sample_rate
    if buffer.samples.size == 0 or sample_rate <= 0:
        raise EmptySignalError(
            f"cannot analyze {buffer.samples.size} samples at {sample_rate} Hz"
        )

    # Work on a float64 copy; the caller's buffer is never touched.
    x = np.array(buffer.samples, dtype=np.float64)
    n = x.size
    peak, rms, crest = amplitude_stats(x)
    base = {
        "sample_rate": sample_rate,
        "num_samples": n,
        "duration_sec": n / sample_rate,
        "frame_size": settings.frame_size,
        "hop_size": settings.hop_size,
        "peak": peak,
        "rms": rms,
        "crest_factor": crest,
        "zero_crossing_rate": zero_crossing_rate(x, sample_rate),
        "amplitude_entropy": amplitude_entropy(x),
    }

    if n < settings.frame_size:
        _LOGGER.debug(
            "Signal shorter than one frame (%d < %d); skipping spectral analysis",
            n,
            settings.frame_size,
        )
        return FeatureReport(**base)

    frames = spectral_frames(x, sample_rate, settings.frame_size, settings.hop_size)
    onsets = count_onsets(frames)
    tempo = estimate_tempo(frames.flux, sample_rate, settings.hop_size, onsets)
    pitch = pitch_stats(x, sample_rate, settings.hop_size)

    _LOGGER.debug(
        "Analyzed %d frames: %d onsets, tempo %.1f BPM, voiced %.2f",
        frames.frame_count,
        onsets,
        tempo,
        pitch.voiced_ratio,
    )
    return FeatureReport(
        **base,
        spectral_centroid_hz=float(frames.centroid_hz.mean()),
        spectral_bandwidth_hz=float(frames.bandwidth_hz.mean()),
        spectral_rolloff85_hz=float(frames.rolloff85_hz.mean()),
        spectral_rolloff95_hz=float(frames.rolloff95_hz.mean()),
        spectral_flatness=float(frames.flatness.mean()),
        spectral_entropy=float(frames.entropy.mean()),
        onset_rate=onsets / base["duration_sec"],
        tempo_bpm=tempo,
        f0=pitch,
    )
