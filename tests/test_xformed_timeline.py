from __future__ import annotations

import io

import mido
import pytest
from pydantic import ValidationError

from xformed.timeline import (
    TICKS_PER_BEAT,
    Note,
    NoteTimeline,
    degree_to_midi,
    hz_to_midi,
    midi_to_hz,
    scale_steps,
)


def _absolute_messages(data: bytes) -> list[tuple[int, mido.Message]]:
    midi_file = mido.MidiFile(file=io.BytesIO(data))
    now = 0
    messages: list[tuple[int, mido.Message]] = []
    for message in midi_file.tracks[0]:
        now += message.time
        messages.append((now, message))
    return messages


def test_note_bounds_are_validated() -> None:
    with pytest.raises(ValidationError):
        Note(pitch=128, start=0.0, end=1.0)
    with pytest.raises(ValidationError):
        Note(pitch=60, start=-0.1, end=1.0)
    with pytest.raises(ValidationError):
        Note(pitch=60, start=0.0, end=1.0, velocity=200)


def test_push_keeps_insertion_order() -> None:
    timeline = NoteTimeline()
    timeline.push(64, 1.0, 1.5)
    timeline.push(60, 0.0, 0.5, velocity=80)

    assert [note.pitch for note in timeline.notes] == [64, 60]
    assert [note.pitch for note in timeline.sorted_notes()] == [60, 64]
    assert timeline.notes[1].velocity == 80
    assert len(timeline) == 2


def test_degenerate_notes_are_kept_but_not_playable() -> None:
    timeline = NoteTimeline()
    timeline.push(60, 1.0, 1.0)
    timeline.append(Note(pitch=62, start=0.0, end=0.5))

    assert len(timeline) == 2
    assert [note.pitch for note in timeline.playable_notes()] == [62]
    assert timeline.end_time == pytest.approx(0.5)


def test_pitch_conversions() -> None:
    assert midi_to_hz(69) == pytest.approx(440.0)
    assert midi_to_hz(81) == pytest.approx(880.0)
    assert hz_to_midi(261.6256) == pytest.approx(60.0, abs=1e-3)


def test_scale_degrees_wrap_octaves() -> None:
    assert scale_steps("minor")[2] == 3
    assert degree_to_midi(60, 0, "major") == 60
    assert degree_to_midi(60, 2, "major") == 64
    assert degree_to_midi(60, 7, "major") == 72
    assert degree_to_midi(60, -1, "minor") == 58


def test_midi_export_header_and_ticks() -> None:
    timeline = NoteTimeline(notes=[Note(pitch=60, start=0.5, end=1.0, velocity=90)])
    data = timeline.to_midi_bytes()
    midi_file = mido.MidiFile(file=io.BytesIO(data))

    assert midi_file.type == 0
    assert midi_file.ticks_per_beat == TICKS_PER_BEAT

    messages = _absolute_messages(data)
    tick, tempo = messages[0]
    assert tick == 0
    assert tempo.type == "set_tempo"
    assert tempo.tempo == 500_000

    notes = [(tick, message) for tick, message in messages if message.type.startswith("note")]
    assert [(tick, message.type, message.note) for tick, message in notes] == [
        (480, "note_on", 60),
        (960, "note_off", 60),
    ]
    assert notes[0][1].velocity == 90
    assert messages[-1][1].type == "end_of_track"


def test_midi_export_uses_timeline_tempo() -> None:
    timeline = NoteTimeline(notes=[Note(pitch=60, start=1.0, end=2.0)], tempo_bpm=60)
    messages = _absolute_messages(timeline.to_midi_bytes())

    assert messages[0][1].tempo == mido.bpm2tempo(60)
    note_on = next(tick for tick, message in messages if message.type == "note_on")
    assert note_on == TICKS_PER_BEAT


def test_unknown_tempo_exports_default() -> None:
    timeline = NoteTimeline(notes=[Note(pitch=60, start=0.0, end=0.5)], tempo_bpm=0)
    messages = _absolute_messages(timeline.to_midi_bytes())
    assert messages[0][1].tempo == mido.bpm2tempo(120)


def test_midi_export_orders_off_before_on_at_same_tick() -> None:
    timeline = NoteTimeline(
        notes=[
            Note(pitch=60, start=0.5, end=1.0),
            Note(pitch=60, start=0.0, end=0.5),
        ]
    )
    messages = [
        (tick, message.type)
        for tick, message in _absolute_messages(timeline.to_midi_bytes())
        if message.type.startswith("note")
    ]
    assert messages == [(0, "note_on"), (480, "note_off"), (480, "note_on"), (960, "note_off")]


def test_midi_export_skips_unplayable_notes() -> None:
    timeline = NoteTimeline(notes=[Note(pitch=60, start=0.5, end=0.5)])
    messages = _absolute_messages(timeline.to_midi_bytes())
    assert [message.type for _, message in messages] == ["set_tempo", "end_of_track"]


def test_midi_export_is_deterministic() -> None:
    timeline = NoteTimeline()
    for index in range(6):
        timeline.push(60 + index, index * 0.2, index * 0.2 + 0.3)
    assert timeline.to_midi_bytes() == timeline.to_midi_bytes()


def test_midi_roundtrip_restores_notes() -> None:
    timeline = NoteTimeline(tempo_bpm=100)
    timeline.push(67, 0.6, 0.9, 70)
    timeline.push(60, 0.0, 0.5, 100)
    timeline.push(64, 0.0, 0.5, 110)

    restored = NoteTimeline.from_midi_bytes(timeline.to_midi_bytes())

    assert restored.tempo_bpm == 100
    expected = sorted(timeline.notes, key=lambda note: (note.start, note.pitch))
    assert [note.pitch for note in restored.notes] == [note.pitch for note in expected]
    assert [note.velocity for note in restored.notes] == [note.velocity for note in expected]
    for got, want in zip(restored.notes, expected):
        assert got.start == pytest.approx(want.start, abs=0.002)
        assert got.end == pytest.approx(want.end, abs=0.002)


def test_save_midi_writes_file(tmp_path) -> None:
    timeline = NoteTimeline(notes=[Note(pitch=60, start=0.0, end=0.5)])
    path = timeline.save_midi(tmp_path / "out" / "song.mid")
    assert path.read_bytes() == timeline.to_midi_bytes()


def test_timeline_json_roundtrip() -> None:
    timeline = NoteTimeline(notes=[Note(pitch=60, start=0.0, end=0.5)], tempo_bpm=0)
    assert NoteTimeline.model_validate_json(timeline.model_dump_json()) == timeline
