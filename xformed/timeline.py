"""Note timeline model shared by the synthesis engine and MIDI export."""

from __future__ import annotations

import io
import logging
import math
from collections import defaultdict, deque
from pathlib import Path
from types import MappingProxyType
from typing import Any, Mapping

from pydantic import BaseModel, ConfigDict, Field

from .config import ScaleName

_LOGGER = logging.getLogger("xformed.timeline")

TICKS_PER_BEAT = 480
DEFAULT_TEMPO_BPM = 120

SCALE_STEPS: Mapping[ScaleName, tuple[int, ...]] = MappingProxyType(
    {
        "major": (0, 2, 4, 5, 7, 9, 11),
        "minor": (0, 2, 3, 5, 7, 8, 10),
    }
)


def hz_to_midi(hz: float) -> float:
    return 69.0 + 12.0 * math.log2(hz / 440.0)


def midi_to_hz(midi: float) -> float:
    return 440.0 * 2.0 ** ((midi - 69.0) / 12.0)


def scale_steps(scale: ScaleName) -> tuple[int, ...]:
    """Semitone offsets of the seven diatonic degrees."""
    return SCALE_STEPS[scale]


def degree_to_midi(root: int, degree: int, scale: ScaleName) -> int:
    """Map a diatonic degree (any integer, wraps across octaves) to a MIDI pitch."""
    steps = scale_steps(scale)
    octave, index = divmod(degree, len(steps))
    return root + steps[index] + 12 * octave


def third_interval(scale: ScaleName) -> int:
    return scale_steps(scale)[2]


class Note(BaseModel):
    """A timed pitch event. Times are in seconds."""

    pitch: int = Field(ge=0, le=127)
    start: float = Field(ge=0.0)
    end: float
    velocity: int = Field(default=100, ge=0, le=127)

    model_config = ConfigDict(frozen=True)

    @property
    def duration(self) -> float:
        return self.end - self.start

    @property
    def is_playable(self) -> bool:
        return self.end > self.start


class NoteTimeline(BaseModel):
    """Notes in producer order plus a tempo (0 when unknown)."""

    notes: list[Note] = Field(default_factory=list)
    tempo_bpm: int = Field(default=DEFAULT_TEMPO_BPM, ge=0)

    def push(self, pitch: int, start: float, end: float, velocity: int = 100) -> Note:
        note = Note(pitch=pitch, start=start, end=end, velocity=velocity)
        self.notes.append(note)
        return note

    def append(self, note: Note) -> None:
        self.notes.append(note)

    def __len__(self) -> int:
        return len(self.notes)

    def playable_notes(self) -> list[Note]:
        playable = [note for note in self.notes if note.is_playable]
        dropped = len(self.notes) - len(playable)
        if dropped:
            _LOGGER.debug("Skipping %d note(s) with end <= start", dropped)
        return playable

    def sorted_notes(self) -> list[Note]:
        return sorted(self.playable_notes(), key=lambda note: note.start)

    @property
    def end_time(self) -> float:
        return max((note.end for note in self.playable_notes()), default=0.0)

    # -----------------------------------------------------------------------------
    # MIDI
    # -----------------------------------------------------------------------------

    def to_midi_file(self) -> Any:
        import mido  # type: ignore[import]

        bpm = self.tempo_bpm if self.tempo_bpm > 0 else DEFAULT_TEMPO_BPM
        tempo = mido.bpm2tempo(bpm)

        events: list[tuple[int, int, int, Any]] = []
        for note in self.playable_notes():
            on_tick = int(round(mido.second2tick(note.start, TICKS_PER_BEAT, tempo)))
            off_tick = int(round(mido.second2tick(note.end, TICKS_PER_BEAT, tempo)))
            events.append(
                (on_tick, 1, note.pitch, mido.Message("note_on", note=note.pitch, velocity=note.velocity))
            )
            events.append((off_tick, 0, note.pitch, mido.Message("note_off", note=note.pitch, velocity=0)))

        # note_off before note_on at the same tick so retriggers stay paired.
        events.sort(key=lambda event: (event[0], event[1], event[2]))

        track = mido.MidiTrack()
        track.append(mido.MetaMessage("set_tempo", tempo=tempo, time=0))
        last_tick = 0
        for tick, _, _, message in events:
            message.time = tick - last_tick
            last_tick = tick
            track.append(message)
        track.append(mido.MetaMessage("end_of_track", time=0))

        midi_file = mido.MidiFile(type=0, ticks_per_beat=TICKS_PER_BEAT)
        midi_file.tracks.append(track)
        return midi_file

    def to_midi_bytes(self) -> bytes:
        handle = io.BytesIO()
        self.to_midi_file().save(file=handle)
        return handle.getvalue()

    def save_midi(self, path: str | Path) -> Path:
        target = Path(path).expanduser()
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(self.to_midi_bytes())
        return target

    @classmethod
    def from_midi_bytes(cls, data: bytes) -> "NoteTimeline":
        """Read note-on/note-off pairs of a MIDI file back into a timeline."""
        import mido  # type: ignore[import]

        midi_file = mido.MidiFile(file=io.BytesIO(data))
        tempo_bpm: int | None = None
        open_notes: defaultdict[int, deque[tuple[float, int]]] = defaultdict(deque)
        notes: list[Note] = []
        now = 0.0

        # Iterating a MidiFile yields delta times in seconds with tempo applied.
        for message in midi_file:
            now += message.time
            if message.type == "set_tempo" and tempo_bpm is None:
                tempo_bpm = int(round(mido.tempo2bpm(message.tempo)))
            elif message.type == "note_on" and message.velocity > 0:
                open_notes[message.note].append((now, message.velocity))
            elif message.type in ("note_off", "note_on") and open_notes[message.note]:
                start, velocity = open_notes[message.note].popleft()
                notes.append(Note(pitch=message.note, start=start, end=now, velocity=velocity))

        unclosed = sum(len(pending) for pending in open_notes.values())
        if unclosed:
            _LOGGER.debug("Ignoring %d note(s) without a matching note_off", unclosed)

        notes.sort(key=lambda note: (note.start, note.pitch))
        return cls(notes=notes, tempo_bpm=tempo_bpm or DEFAULT_TEMPO_BPM)
