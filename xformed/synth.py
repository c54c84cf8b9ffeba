"""
Architecture:

1. Primitives: oscillators, envelope, filters, deterministic hash noise
2. Event preparation: tempo, swing/humanize jitter, polyphony expansion
3. Assembler: layered note rendering, percussion, soft normalization
"""

from __future__ import annotations

import logging
import math
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, replace
from functools import lru_cache
from types import MappingProxyType
from typing import Callable, TypeAlias

import numpy as np
from numpy.typing import NDArray
from scipy.signal import butter, lfilter  # type: ignore[import]

from .audio import SAMPLE_RATE, SampleBuffer, encode_wav_bytes
from .config import OscShape, StyleParams
from .errors import EmptyTimelineError, InvalidConfigError
from .timeline import NoteTimeline, midi_to_hz, third_interval

_LOGGER = logging.getLogger("xformed.synth")

# =============================================================================
# CONSTANTS
# =============================================================================

TRAILING_SILENCE_SEC = 0.5
NORMALIZE_PEAK = 0.99

TEMPO_MIN_BPM = 50.0
TEMPO_MAX_BPM = 200.0
# Median note length is read as an eighth note when inferring tempo.
INFERRED_NOTE_BEATS = 0.5

TIMING_JITTER = 0.02
VELOCITY_JITTER = 0.12
FIFTH = 7

ATTACK_FRACTION = 0.02
DECAY_POWER = 1.5
WOBBLE_DEPTH = 0.03
WOBBLE_RATE_HZ = 0.25

SECTION_SECONDS = 8.0
NOTE_BUCKET = 16

# Secondary layer recipes: (detune cents, gain) per shape
SECONDARY_RECIPES: Mapping[OscShape, tuple[float, float]] = MappingProxyType(
    {
        "saw": (7.0, 0.35),
        "sine": (-5.0, 0.5),
        "square": (4.0, 0.22),
    }
)
SECONDARY_FALLOFF = 0.8

KICK_SECONDS = 0.25
KICK_FREQS = (75.0, 45.0)
KICK_GAIN = 0.8
SNARE_SECONDS = 0.18
SNARE_TONE_HZ = 185.0
SNARE_GAIN = 0.45
HAT_SECONDS = 0.05
HAT_CUTOFF_HZ = 7000.0
HAT_GAIN = 0.2

_MASK64 = (1 << 64) - 1
_SALT_START = 0x51A7
_SALT_END = 0xE4D
_SALT_VELOCITY = 0x7E1
_SALT_SNARE = 0x5A4E
_SALT_HAT = 0x4A7

FloatArray: TypeAlias = NDArray[np.float64]
OscFn: TypeAlias = Callable[[float, FloatArray], FloatArray]


# =============================================================================
# PART 1: SYNTHESIS PRIMITIVES
# =============================================================================


def mix64(value: int) -> int:
    """SplitMix64 finalizer: a stateless 64-bit integer mixing hash."""
    z = (value + 0x9E3779B97F4A7C15) & _MASK64
    z = ((z ^ (z >> 30)) * 0xBF58476D1CE4E5B9) & _MASK64
    z = ((z ^ (z >> 27)) * 0x94D049BB133111EB) & _MASK64
    return z ^ (z >> 31)


def hash01(index: int, salt: int = 0) -> float:
    """Map (index, salt) to a reproducible value in [0, 1)."""
    return (mix64(mix64(salt) ^ (index & _MASK64)) >> 11) / float(1 << 53)


def osc_sine(freq: float, t: FloatArray) -> FloatArray:
    return np.sin(2.0 * np.pi * freq * t)


def osc_square(freq: float, t: FloatArray) -> FloatArray:
    return np.where(np.sin(2.0 * np.pi * freq * t) >= 0.0, 1.0, -1.0)


def osc_saw(freq: float, t: FloatArray) -> FloatArray:
    phase = freq * t
    return 2.0 * (phase - np.floor(phase)) - 1.0


OSCILLATORS: Mapping[OscShape, OscFn] = MappingProxyType(
    {
        "sine": osc_sine,
        "square": osc_square,
        "saw": osc_saw,
    }
)


def note_envelope(num_samples: int) -> FloatArray:
    """Linear attack over the first 2% times a (1 - x)^1.5 decay over the whole span."""
    i = np.arange(num_samples, dtype=np.float64)
    attack = max(1, int(ATTACK_FRACTION * num_samples))
    ramp = np.minimum(i / attack, 1.0)
    decay = (1.0 - i / num_samples) ** DECAY_POWER
    return ramp * decay


def generate_noise(num_samples: int, rng: np.random.Generator, amp: float = 1.0) -> FloatArray:
    """Generate white noise from a caller-owned generator."""
    return amp * rng.standard_normal(num_samples)


def _quantize(value: float, step: float = 0.001) -> float:
    return round(value / step) * step


@lru_cache(maxsize=64)
def _butter_cached(
    kind: str, normalized_cutoff: float
) -> tuple[NDArray[np.float64], NDArray[np.float64]]:
    coeffs = butter(2, normalized_cutoff, btype=kind, output="ba")
    assert isinstance(coeffs, tuple)
    assert len(coeffs) == 2
    b_raw, a_raw = coeffs
    assert isinstance(b_raw, np.ndarray)
    assert isinstance(a_raw, np.ndarray)
    return b_raw, a_raw


def apply_highpass(signal: FloatArray, cutoff: float, sr: int = SAMPLE_RATE) -> FloatArray:
    """Apply highpass filter (causal, analog-style)."""
    nyquist = sr / 2
    normalized = min(max(cutoff / nyquist, 0.001), 0.99)
    b, a = _butter_cached("high", _quantize(normalized))
    filtered = lfilter(b, a, signal)
    return np.asarray(filtered, dtype=np.float64)


def add_note(signal: FloatArray, note: FloatArray, start_index: int, sr: int = SAMPLE_RATE) -> None:
    """Safely adds a note to the signal buffer, clipping if necessary."""
    if start_index >= len(signal) or note.size == 0:
        return

    end_index = start_index + len(note)

    if end_index <= len(signal):
        signal[start_index:end_index] += note
    else:
        # Clip the note to fit the remaining signal space
        available = len(signal) - start_index
        clipped = note[:available].copy()

        # Apply quick fade-out to prevent click from abrupt cutoff
        fade_samples = min(int(sr * 0.01), available // 4)  # 10ms max
        if fade_samples > 1:
            clipped[-fade_samples:] *= np.linspace(1, 0, fade_samples)

        signal[start_index:] += clipped


def soft_normalize(signal: FloatArray, target: float = NORMALIZE_PEAK) -> FloatArray:
    """Scale down in place so the peak is `target`; never applies gain above 1."""
    if signal.size == 0:
        return signal
    peak = float(np.max(np.abs(signal)))
    if peak > target:
        signal *= target / peak
    return signal


# =============================================================================
# PART 2: EVENT PREPARATION
# =============================================================================


@dataclass(frozen=True)
class NoteEvent:
    """A working copy of a timeline note; `index` is its position in the timeline."""

    index: int
    pitch: int
    start: float
    end: float
    velocity: int

    @property
    def duration(self) -> float:
        return self.end - self.start


@dataclass(frozen=True)
class LayerRecipe:
    shape: OscShape
    detune_cents: float
    gain: float


def infer_tempo(durations: Sequence[float]) -> float:
    """BPM implied by reading the median duration as an eighth note, clamped to 50-200."""
    if not durations:
        return TEMPO_MIN_BPM
    median = float(np.median(np.asarray(durations, dtype=np.float64)))
    if median <= 0.0:
        return TEMPO_MAX_BPM
    bpm = 60.0 / (median / INFERRED_NOTE_BEATS)
    return float(np.clip(bpm, TEMPO_MIN_BPM, TEMPO_MAX_BPM))


def resolve_tempo(timeline: NoteTimeline) -> float:
    if timeline.tempo_bpm > 0:
        return float(timeline.tempo_bpm)
    return infer_tempo([note.duration for note in timeline.playable_notes()])


def prepare_events(timeline: NoteTimeline, style: StyleParams, bpm: float) -> list[NoteEvent]:
    """Apply swing and humanize jitter to the playable notes, in timeline order."""
    eighth = 30.0 / bpm
    swing_delay = style.swing * 0.5 * eighth
    events: list[NoteEvent] = []

    for index, note in enumerate(timeline.notes):
        if not note.is_playable:
            continue
        start, end, velocity = note.start, note.end, note.velocity

        # Alternation follows timeline order, not chronological order.
        if index % 2 == 1:
            start += swing_delay
            end += swing_delay

        if style.humanize > 0.0:
            span = TIMING_JITTER * style.humanize * note.duration
            start += (2.0 * hash01(index, _SALT_START) - 1.0) * span
            end += (2.0 * hash01(index, _SALT_END) - 1.0) * span
            if velocity > 0:
                scale = 1.0 + (2.0 * hash01(index, _SALT_VELOCITY) - 1.0) * VELOCITY_JITTER * style.humanize
                velocity = int(min(127, max(1, round(velocity * scale))))

        start = max(start, 0.0)
        if end <= start:
            continue
        events.append(NoteEvent(index=index, pitch=note.pitch, start=start, end=end, velocity=velocity))

    return events


def expand_polyphony(events: Sequence[NoteEvent], style: StyleParams) -> list[NoteEvent]:
    """Add harmony copies (third, then fifth) and resort by start time."""
    intervals: list[int] = []
    if style.polyphony >= 2:
        intervals.append(third_interval(style.scale))
    if style.polyphony >= 3:
        intervals.append(FIFTH)

    expanded = list(events)
    for interval in intervals:
        for event in events:
            pitch = event.pitch + interval
            if pitch <= 127:
                expanded.append(replace(event, pitch=pitch))
    expanded.sort(key=lambda event: event.start)
    return expanded


def layer_recipe(shape: OscShape, position: int) -> LayerRecipe:
    """Primary layer is full gain and in tune; later layers are quieter and detuned."""
    if position == 0:
        return LayerRecipe(shape=shape, detune_cents=0.0, gain=1.0)
    detune, gain = SECONDARY_RECIPES[shape]
    sign = 1.0 if position % 2 == 1 else -1.0
    return LayerRecipe(
        shape=shape,
        detune_cents=sign * detune,
        gain=gain * SECONDARY_FALLOFF ** (position - 1),
    )


def rotated_layers(layering: Sequence[OscShape], event: NoteEvent) -> tuple[LayerRecipe, ...]:
    """Rotate the layer order per ~8 s section and per block of 16 notes."""
    count = len(layering)
    offset = (int(event.start // SECTION_SECONDS) + event.index // NOTE_BUCKET) % count
    order = tuple(layering[offset:]) + tuple(layering[:offset])
    return tuple(layer_recipe(shape, position) for position, shape in enumerate(order))


# =============================================================================
# PART 3: ASSEMBLER
# =============================================================================


def render_note(event: NoteEvent, recipe: LayerRecipe, sr: int) -> FloatArray:
    num_samples = int(round(event.duration * sr))
    if num_samples <= 0:
        return np.zeros(0, dtype=np.float64)

    freq = midi_to_hz(event.pitch) * 2.0 ** (recipe.detune_cents / 1200.0)
    t = np.arange(num_samples, dtype=np.float64) / sr
    wave = OSCILLATORS[recipe.shape](freq, t)
    wobble = 1.0 + WOBBLE_DEPTH * np.sin(2.0 * np.pi * WOBBLE_RATE_HZ * (event.start + t))
    level = (event.velocity / 127.0) * recipe.gain
    return wave * note_envelope(num_samples) * wobble * level


def _kick(sr: int) -> FloatArray:
    n = int(KICK_SECONDS * sr)
    progress = np.arange(n, dtype=np.float64) / n
    start_hz, end_hz = KICK_FREQS
    freq = start_hz + (end_hz - start_hz) * progress
    phase = 2.0 * np.pi * np.cumsum(freq) / sr
    return KICK_GAIN * np.sin(phase) * (1.0 - progress) ** 4


def _snare(sr: int, step: int) -> FloatArray:
    n = int(SNARE_SECONDS * sr)
    progress = np.arange(n, dtype=np.float64) / n
    rng = np.random.default_rng(mix64(mix64(_SALT_SNARE) ^ step))
    tone = np.sin(2.0 * np.pi * SNARE_TONE_HZ * np.arange(n) / sr)
    noise = generate_noise(n, rng, amp=0.5)
    return SNARE_GAIN * (0.35 * tone + 0.65 * noise) * (1.0 - progress) ** 3


def _hat(sr: int, step: int) -> FloatArray:
    n = int(HAT_SECONDS * sr)
    progress = np.arange(n, dtype=np.float64) / n
    rng = np.random.default_rng(mix64(mix64(_SALT_HAT) ^ step))
    noise = apply_highpass(generate_noise(n, rng, amp=0.5), HAT_CUTOFF_HZ, sr)
    return HAT_GAIN * noise * (1.0 - progress) ** 4


def render_percussion(length: int, sr: int, bpm: float, until: float) -> FloatArray:
    """Fixed 4/4 kit: kick on 1 and 3, snare on 2 and 4, hats on every eighth."""
    signal = np.zeros(length, dtype=np.float64)
    eighth = 30.0 / bpm
    steps = int(math.ceil(until / eighth))
    kick = _kick(sr)

    for step in range(steps):
        start = int(round(step * eighth * sr))
        beat, offbeat = divmod(step, 2)
        if not offbeat:
            if beat % 4 in (0, 2):
                add_note(signal, kick, start, sr)
            else:
                add_note(signal, _snare(sr, step), start, sr)
        add_note(signal, _hat(sr, step), start, sr)

    return signal


def render(
    timeline: NoteTimeline,
    sample_rate: int = SAMPLE_RATE,
    style: StyleParams | None = None,
) -> SampleBuffer:
    """Render a note timeline to a mono sample buffer.

    The caller's timeline is read, never modified, and the same arguments
    always produce the same samples.

    Raises:
        EmptyTimelineError: the timeline has no notes.
        InvalidConfigError: the sample rate is not positive.
    """
    style = style or StyleParams()
    if sample_rate <= 0:
        raise InvalidConfigError(f"sample_rate must be positive, got {sample_rate}")
    if not timeline.notes:
        raise EmptyTimelineError("timeline has no notes to render")

    sr = sample_rate
    tail = int(TRAILING_SILENCE_SEC * sr)
    bpm = resolve_tempo(timeline)
    events = expand_polyphony(prepare_events(timeline, style, bpm), style)
    if not events:
        _LOGGER.debug("No playable notes; rendering trailing silence only")
        return SampleBuffer(samples=np.zeros(tail, dtype=np.float32), sample_rate=sr)

    latest = max(event.end for event in events)
    length = int(math.ceil(latest * sr)) + tail
    signal = np.zeros(length, dtype=np.float64)

    for event in events:
        offset = int(round(event.start * sr))
        for recipe in rotated_layers(style.layering, event):
            add_note(signal, render_note(event, recipe, sr), offset, sr)

    if style.percussion:
        signal += render_percussion(length, sr, bpm, latest)

    soft_normalize(signal)
    _LOGGER.debug(
        "Rendered %d events x %d layers at %.1f BPM into %d samples",
        len(events),
        len(style.layering),
        bpm,
        length,
    )
    return SampleBuffer(samples=signal.astype(np.float32), sample_rate=sr)


def render_wav_bytes(
    timeline: NoteTimeline,
    sample_rate: int = SAMPLE_RATE,
    style: StyleParams | None = None,
) -> bytes:
    """Render and encode as mono 16-bit PCM WAV."""
    return encode_wav_bytes(render(timeline, sample_rate, style))
