"""
Monophonic melody tracking: YIN pitch per frame plus flux peak-picking onsets.

The YIN difference function is computed from an FFT autocorrelation:

    d(tau) = sum(x[:n-tau]^2) + sum(x[tau:]^2) - 2 * acf(tau)

which equals the direct squared-difference sum but costs O(n log n) per frame.
"""

from __future__ import annotations

import logging

import numpy as np
from pydantic import BaseModel, ConfigDict

from .audio import SampleBuffer
from .features import FloatArray, autocorrelation, frame_count, hann

_LOGGER = logging.getLogger("xformed.melody")

MELODY_WINDOW = 2048
MELODY_HOP = 256
MELODY_FMIN_HZ = 80.0
MELODY_FMAX_HZ = 1000.0
YIN_THRESHOLD = 0.1
ONSET_THRESHOLD = 0.2
# Frames skipped after a detected onset before the next can fire.
ONSET_REFRACTORY_FRAMES = 2


class MelodyExtraction(BaseModel):
    times: list[float]
    f0_hz: list[float]
    confidence: list[float]
    onsets_sec: list[float]

    model_config = ConfigDict(frozen=True)

    @property
    def voiced_f0(self) -> list[float]:
        return [hz for hz in self.f0_hz if hz > 0.0]


def _frames(samples: FloatArray, win: int, hop: int) -> FloatArray:
    count = frame_count(samples.size, win, hop)
    if count == 0:
        return np.zeros((0, win), dtype=np.float64)
    return np.lib.stride_tricks.sliding_window_view(samples, win)[::hop][:count]


# -----------------------------------------------------------------------------
# YIN
# -----------------------------------------------------------------------------


def yin_difference(frame: FloatArray, tau_max: int) -> FloatArray:
    """Squared-difference function d(tau) for tau in 0..tau_max."""
    n = frame.size
    energy = np.concatenate(([0.0], np.cumsum(frame * frame)))
    acf = autocorrelation(frame)
    tau = np.arange(tau_max + 1)
    diff = energy[n - tau] + (energy[n] - energy[tau]) - 2.0 * acf[tau]
    diff[0] = 0.0
    return np.maximum(diff, 0.0)


def yin_cmnd(diff: FloatArray) -> FloatArray:
    """Cumulative mean normalized difference; 1.0 where the running sum is zero."""
    cmnd = np.ones_like(diff)
    if diff.size < 2:
        return cmnd
    running = np.cumsum(diff[1:])
    tau = np.arange(1, diff.size, dtype=np.float64)
    cmnd[1:] = np.divide(diff[1:] * tau, running, out=np.ones(tau.size), where=running > 0.0)
    return cmnd


def yin_frame(
    frame: FloatArray, sample_rate: int, fmin: float, fmax: float, threshold: float
) -> tuple[float, float] | None:
    """Estimate (f0 Hz, confidence) for one frame, or None when unvoiced."""
    tau_min = int(sample_rate / fmax)
    tau_max = int(sample_rate / fmin)
    if tau_max + 1 >= frame.size:
        return None

    cmnd = yin_cmnd(yin_difference(frame, tau_max))
    below = np.flatnonzero(cmnd[tau_min : tau_max + 1] < threshold)
    if below.size == 0:
        return None

    tau = tau_min + int(below[0])
    # Follow the dip down to its local minimum before refining.
    while tau + 1 <= tau_max and cmnd[tau + 1] < cmnd[tau]:
        tau += 1
    left = cmnd[max(tau - 1, 1)]
    center = cmnd[tau]
    right = cmnd[min(tau + 1, tau_max)]
    refined = float(tau)
    denom = left - 2.0 * center + right
    if abs(denom) > 1e-9:
        refined = tau + 0.5 * (left - right) / denom
    confidence = float(np.clip(1.0 - center, 0.0, 1.0))
    return sample_rate / max(refined, 1.0), confidence


def yin_track(
    samples: FloatArray,
    sample_rate: int,
    win: int = MELODY_WINDOW,
    hop: int = MELODY_HOP,
    fmin: float = MELODY_FMIN_HZ,
    fmax: float = MELODY_FMAX_HZ,
    threshold: float = YIN_THRESHOLD,
) -> tuple[FloatArray, FloatArray, FloatArray]:
    """Frame-wise f0 track. Returns (times_sec, f0_hz, confidence); 0 marks unvoiced."""
    x = np.asarray(samples, dtype=np.float64).reshape(-1)
    frames = _frames(x, win, hop)
    count = frames.shape[0]
    times = (np.arange(count) * hop + win // 2) / sample_rate
    f0 = np.zeros(count, dtype=np.float64)
    confidence = np.zeros(count, dtype=np.float64)
    window = hann(win)

    for index in range(count):
        estimate = yin_frame(frames[index] * window, sample_rate, fmin, fmax, threshold)
        if estimate is not None:
            f0[index], confidence[index] = estimate
    return times, f0, confidence


# -----------------------------------------------------------------------------
# Onsets
# -----------------------------------------------------------------------------


def spectral_flux(samples: FloatArray, sample_rate: int, win: int, hop: int) -> FloatArray:
    """Rectified spectral flux per frame, normalized to a peak of 1."""
    _ = sample_rate
    x = np.asarray(samples, dtype=np.float64).reshape(-1)
    frames = _frames(x, win, hop)
    if frames.shape[0] == 0:
        return np.zeros(0, dtype=np.float64)
    mags = np.abs(np.fft.rfft(frames * hann(win), n=win, axis=1))[:, : win // 2]
    # The first frame is compared against silence.
    prior = np.vstack((np.zeros((1, mags.shape[1])), mags[:-1]))
    flux = np.maximum(mags - prior, 0.0).sum(axis=1)
    return flux / max(float(flux.max()), 1e-9)


def onset_times(
    samples: FloatArray,
    sample_rate: int,
    win: int = MELODY_WINDOW,
    hop: int = MELODY_HOP,
    threshold: float = ONSET_THRESHOLD,
) -> list[float]:
    """Local maxima of normalized flux above `threshold`, in seconds."""
    flux = spectral_flux(samples, sample_rate, win, hop)
    times: list[float] = []
    index = 1
    while index + 1 < flux.size:
        if flux[index] > threshold and flux[index] > flux[index - 1] and flux[index] > flux[index + 1]:
            times.append((index * hop + win // 2) / sample_rate)
            index += ONSET_REFRACTORY_FRAMES
        else:
            index += 1
    return times


def extract_melody_features(buffer: SampleBuffer) -> MelodyExtraction:
    """Onsets and a frame-wise monophonic f0 track with the default settings."""
    samples = np.asarray(buffer.samples, dtype=np.float64)
    if samples.size == 0 or buffer.sample_rate <= 0:
        return MelodyExtraction(times=[], f0_hz=[], confidence=[], onsets_sec=[])

    times, f0, confidence = yin_track(samples, buffer.sample_rate)
    onsets = onset_times(samples, buffer.sample_rate)
    _LOGGER.debug(
        "Tracked %d frames (%d voiced), %d onsets",
        times.size,
        int(np.count_nonzero(f0)),
        len(onsets),
    )
    return MelodyExtraction(
        times=times.tolist(),
        f0_hz=f0.tolist(),
        confidence=confidence.tolist(),
        onsets_sec=onsets,
    )
