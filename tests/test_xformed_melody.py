from __future__ import annotations

import numpy as np
import pytest

from xformed.audio import SampleBuffer
from xformed.melody import (
    MelodyExtraction,
    extract_melody_features,
    onset_times,
    spectral_flux,
    yin_cmnd,
    yin_difference,
    yin_frame,
    yin_track,
)

SR = 44_100


def _sine(freq: float, seconds: float, amp: float = 0.5) -> np.ndarray:
    t = np.arange(int(seconds * SR)) / SR
    return amp * np.sin(2.0 * np.pi * freq * t)


def _bursts(starts: list[float], seconds: float = 2.0, length: float = 0.1) -> np.ndarray:
    signal = np.zeros(int(seconds * SR))
    burst = _sine(440.0, length)
    for start in starts:
        index = int(start * SR)
        signal[index : index + burst.size] += burst
    return signal


def test_yin_difference_matches_direct_sum() -> None:
    rng = np.random.default_rng(5)
    frame = rng.standard_normal(256)
    direct = np.array([np.sum((frame[: 256 - tau] - frame[tau:]) ** 2) for tau in range(65)])
    assert np.allclose(yin_difference(frame, 64), direct, atol=1e-8)


def test_yin_cmnd_of_silence_is_one() -> None:
    cmnd = yin_cmnd(np.zeros(32))
    assert np.all(cmnd == 1.0)


def test_yin_frame_rejects_short_frames() -> None:
    assert yin_frame(np.ones(128), SR, 80.0, 1000.0, 0.1) is None


def test_yin_track_sine() -> None:
    times, f0, confidence = yin_track(_sine(440.0, 0.5), SR)

    assert times.size == f0.size == confidence.size
    assert np.all(np.diff(times) > 0.0)
    voiced = f0[f0 > 0.0]
    assert voiced.size == f0.size
    assert float(np.median(voiced)) == pytest.approx(440.0, rel=0.01)
    assert float(np.median(confidence)) > 0.9


def test_yin_track_silence_is_unvoiced() -> None:
    _, f0, confidence = yin_track(np.zeros(SR // 2), SR)
    assert np.all(f0 == 0.0)
    assert np.all(confidence == 0.0)


def test_spectral_flux_is_normalized() -> None:
    flux = spectral_flux(_bursts([0.5, 1.0]), SR, 2048, 256)
    assert flux.max() == pytest.approx(1.0)
    assert flux.min() >= 0.0


def test_spectral_flux_of_short_signal_is_empty() -> None:
    assert spectral_flux(np.zeros(100), SR, 2048, 256).size == 0


def test_onsets_land_near_burst_starts() -> None:
    starts = [0.5, 1.0, 1.5]
    onsets = onset_times(_bursts(starts), SR)

    assert len(onsets) >= len(starts)
    for start in starts:
        assert min(abs(onset - start) for onset in onsets) < 0.06


def test_extract_melody_features_sine() -> None:
    extraction = extract_melody_features(
        SampleBuffer(samples=_sine(440.0, 1.0), sample_rate=SR)
    )

    assert len(extraction.times) == len(extraction.f0_hz) == len(extraction.confidence)
    assert float(np.median(extraction.voiced_f0)) == pytest.approx(440.0, rel=0.01)


def test_extract_melody_features_empty_buffer() -> None:
    extraction = extract_melody_features(SampleBuffer(samples=np.zeros(0), sample_rate=SR))
    assert extraction == MelodyExtraction(times=[], f0_hz=[], confidence=[], onsets_sec=[])
