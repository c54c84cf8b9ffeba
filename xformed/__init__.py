from __future__ import annotations

from .audio import (
    SAMPLE_RATE,
    SampleBuffer,
    decode_wav_bytes,
    encode_wav_bytes,
    read_wav,
    write_wav,
)
from .config import AnalysisSettings, OscShape, ScaleName, StyleParams
from .errors import (
    EmptySignalError,
    EmptyTimelineError,
    InvalidConfigError,
    UnsupportedSampleFormatError,
    XformedError,
)
from .features import FeatureReport, PitchStats, analyze
from .logging_utils import configure_logging as _configure_logging
from .melody import MelodyExtraction, extract_melody_features, onset_times, yin_track
from .synth import render, render_wav_bytes
from .timeline import Note, NoteTimeline, degree_to_midi, hz_to_midi, midi_to_hz, scale_steps

__all__ = [
    "SAMPLE_RATE",
    "AnalysisSettings",
    "EmptySignalError",
    "EmptyTimelineError",
    "FeatureReport",
    "InvalidConfigError",
    "MelodyExtraction",
    "Note",
    "NoteTimeline",
    "OscShape",
    "PitchStats",
    "SampleBuffer",
    "ScaleName",
    "StyleParams",
    "UnsupportedSampleFormatError",
    "XformedError",
    "analyze",
    "decode_wav_bytes",
    "degree_to_midi",
    "encode_wav_bytes",
    "extract_melody_features",
    "hz_to_midi",
    "midi_to_hz",
    "onset_times",
    "read_wav",
    "render",
    "render_wav_bytes",
    "scale_steps",
    "write_wav",
    "yin_track",
]

__version__ = "0.1.0"

_configure_logging()
del _configure_logging
