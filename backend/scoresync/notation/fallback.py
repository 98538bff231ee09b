"""
Built-in fallback piece used when no score could be parsed.

A short Twinkle-Twinkle pattern in 4/4 so the timeline, scheduler and
position tracker always have material to work with.
"""

from functools import lru_cache
from typing import List, Tuple

from scoresync.models.score import Measure, Note, Score, TimeSignature, group_systems
from scoresync.notation.pitch import pitch_to_midi

# (pitch, beats) per measure; three-note bars close on a half note
FALLBACK_PATTERN: Tuple[Tuple[Tuple[str, float], ...], ...] = (
    (("C4", 1.0), ("C4", 1.0), ("G4", 1.0), ("G4", 1.0)),
    (("A4", 1.0), ("A4", 1.0), ("G4", 2.0)),
    (("F4", 1.0), ("F4", 1.0), ("E4", 2.0)),
    (("E4", 1.0), ("E4", 1.0), ("D4", 2.0)),
    (("D4", 1.0), ("D4", 1.0), ("C4", 2.0)),
)
FALLBACK_TITLE = "Twinkle, Twinkle, Little Star"
FALLBACK_TEMPO = 120.0


@lru_cache(maxsize=8)
def fallback_score(measures_per_system: int = 4) -> Score:
    time_signature = TimeSignature(4, 4)
    measures: List[Measure] = []
    all_notes: List[Note] = []
    beat = 0.0

    for idx, bar in enumerate(FALLBACK_PATTERN):
        number = idx + 1
        system_index = idx // measures_per_system
        start = beat
        notes = []
        for k, (pitch, beats) in enumerate(bar):
            notes.append(Note(
                id=f"note-{number}-{k}",
                pitch=pitch,
                midi_number=pitch_to_midi(pitch),
                duration=beats,
                beat_offset=beat,
                measure_number=number,
                system_index=system_index,
            ))
            beat += beats
        measures.append(Measure(
            measure_number=number,
            system_index=system_index,
            start_beat=start,
            duration=beat - start,
            time_signature=time_signature,
            notes=tuple(notes),
        ))
        all_notes.extend(notes)

    return Score(
        title=FALLBACK_TITLE,
        composer=None,
        time_signature=time_signature,
        key_signature=None,
        tempo=FALLBACK_TEMPO,
        measures=tuple(measures),
        systems=group_systems(tuple(measures)),
        notes=tuple(all_notes),
        total_beats=beat,
    )
