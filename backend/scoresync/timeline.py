#!/usr/bin/env python3
"""
Expected-note timeline and measure boundaries.

Converts a Score plus a tempo into absolute times (seconds from the start of
the performance). Timelines are rebuilt, never edited in place: a tempo
change produces a new timeline via rescale_timeline().
"""

from dataclasses import dataclass
from typing import List, Optional, Sequence

from scoresync.models.score import Score
from scoresync.notation.fallback import fallback_score
from scoresync.notation.pitch import midi_to_frequency

DEFAULT_FALLBACK_MEASURES = 10


@dataclass(frozen=True)
class ExpectedNote:
    """A note the performer should play, placed on the clock."""
    bar: int
    note_index: int  # position within the bar, by beat offset
    pitch: str
    midi: int
    frequency: float
    beat: float
    time: float  # seconds from performance start
    duration: float  # seconds
    system_index: int = 0
    note_id: str = ""

    @property
    def end_time(self) -> float:
        return self.time + self.duration


@dataclass(frozen=True)
class MeasureBoundary:
    measure_number: int
    start_time: float
    end_time: float

    @property
    def duration(self) -> float:
        return self.end_time - self.start_time


def seconds_per_beat(tempo_bpm: float) -> float:
    if tempo_bpm <= 0:
        raise ValueError(f"Tempo must be positive, got {tempo_bpm}")
    return 60.0 / tempo_bpm


def _resolve(score: Optional[Score], max_measures: Optional[int]):
    if score is None:
        return fallback_score(), (max_measures or DEFAULT_FALLBACK_MEASURES)
    return score, max_measures


def build_timeline(
    score: Optional[Score],
    tempo_bpm: float,
    max_measures: Optional[int] = None,
) -> List[ExpectedNote]:
    """
    Build the ordered expected-note list for a score at a tempo.

    Args:
        score: Parsed score, or None to use the built-in fallback piece.
        tempo_bpm: Beats per minute (quarter-note beats).
        max_measures: Only include the first N measures.

    Returns:
        ExpectedNotes ordered by time, then by position in the bar.
    """
    spb = seconds_per_beat(tempo_bpm)
    score, max_measures = _resolve(score, max_measures)
    measures = score.measures[:max_measures] if max_measures is not None else score.measures

    timeline: List[ExpectedNote] = []
    for measure in measures:
        ordered = sorted(measure.notes, key=lambda n: n.beat_offset)
        for index, note in enumerate(ordered):
            timeline.append(ExpectedNote(
                bar=measure.measure_number,
                note_index=index,
                pitch=note.pitch,
                midi=note.midi_number,
                frequency=midi_to_frequency(note.midi_number),
                beat=note.beat_offset,
                time=note.beat_offset * spb,
                duration=note.duration * spb,
                system_index=measure.system_index,
                note_id=note.id,
            ))
    timeline.sort(key=lambda n: (n.time, n.bar, n.note_index))
    return timeline


def measure_boundaries(
    score: Optional[Score],
    tempo_bpm: float,
    max_measures: Optional[int] = None,
) -> List[MeasureBoundary]:
    spb = seconds_per_beat(tempo_bpm)
    score, max_measures = _resolve(score, max_measures)
    measures = score.measures[:max_measures] if max_measures is not None else score.measures
    return [
        MeasureBoundary(
            measure_number=m.measure_number,
            start_time=m.start_beat * spb,
            end_time=m.end_beat * spb,
        )
        for m in measures
    ]


def rescale_time(value: float, change_time: float, ratio: float) -> float:
    """Map a time after the change instant onto the new tempo; earlier times stay."""
    if value <= change_time:
        return value
    return change_time + (value - change_time) * ratio


def rescale_boundaries(
    boundaries: Sequence[MeasureBoundary],
    change_time: float,
    old_tempo: float,
    new_tempo: float,
) -> List[MeasureBoundary]:
    """
    Recompute boundaries after a tempo change at change_time (seconds).

    Boundaries at or before the change are untouched; later ones are
    stretched by old_tempo / new_tempo relative to the change instant.
    """
    ratio = seconds_per_beat(new_tempo) / seconds_per_beat(old_tempo)
    return [
        MeasureBoundary(
            measure_number=b.measure_number,
            start_time=rescale_time(b.start_time, change_time, ratio),
            end_time=rescale_time(b.end_time, change_time, ratio),
        )
        for b in boundaries
    ]


def rescale_timeline(
    timeline: Sequence[ExpectedNote],
    change_time: float,
    old_tempo: float,
    new_tempo: float,
) -> List[ExpectedNote]:
    """
    Same rule as rescale_boundaries, applied to note onsets and ends.

    A note sounding across the change instant keeps its onset and the part
    of its duration before the change; only the remainder is rescaled.
    """
    ratio = seconds_per_beat(new_tempo) / seconds_per_beat(old_tempo)
    rescaled = []
    for note in timeline:
        start = rescale_time(note.time, change_time, ratio)
        end = rescale_time(note.end_time, change_time, ratio)
        rescaled.append(ExpectedNote(
            bar=note.bar,
            note_index=note.note_index,
            pitch=note.pitch,
            midi=note.midi,
            frequency=note.frequency,
            beat=note.beat,
            time=start,
            duration=end - start,
            system_index=note.system_index,
            note_id=note.note_id,
        ))
    return rescaled


def notes_in_bar(timeline: Sequence[ExpectedNote], bar: int) -> List[ExpectedNote]:
    return [n for n in timeline if n.bar == bar]
