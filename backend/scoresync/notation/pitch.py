"""
Pitch name, MIDI number and frequency conversions.
"""

import math
import re
from typing import Optional

NOTE_NAMES = ["C", "C#", "D", "D#", "E", "F", "F#", "G", "G#", "A", "A#", "B"]
STEP_TO_SEMITONE = {"C": 0, "D": 2, "E": 4, "F": 5, "G": 7, "A": 9, "B": 11}
ALTER_TO_SYMBOL = {2: "##", 1: "#", 0: "", -1: "b", -2: "bb"}

_PITCH_RE = re.compile(r"^([A-G])(##|#|bb|b)?(-?\d+)$")


def midi_from_pitch(step: str, alter: int, octave: int) -> int:
    return (octave + 1) * 12 + STEP_TO_SEMITONE[step] + int(alter)


def pitch_name(step: str, alter: int, octave: int) -> str:
    """Build "C#4" style names; alterations beyond a double sharp/flat are dropped."""
    return f"{step}{ALTER_TO_SYMBOL.get(int(alter), '')}{octave}"


def pitch_to_midi(pitch: str) -> int:
    """Convert a name like "C4", "F#5" or "Bb3" to a MIDI number."""
    match = _PITCH_RE.match(pitch.strip())
    if not match:
        raise ValueError(f"Invalid pitch name: {pitch!r}")
    step, accidentals, octave = match.groups()
    accidentals = accidentals or ""
    alter = accidentals.count("#") - accidentals.count("b")
    return midi_from_pitch(step, alter, int(octave))


def midi_to_note_name(midi_note: int) -> str:
    octave = (midi_note // 12) - 1
    name = NOTE_NAMES[midi_note % 12]
    return f"{name}{octave}"


def midi_to_frequency(midi_note: float) -> float:
    return 440.0 * (2.0 ** ((midi_note - 69) / 12.0))


def pitch_to_frequency(pitch: str) -> float:
    return midi_to_frequency(pitch_to_midi(pitch))


def frequency_to_note(frequency: float) -> Optional[str]:
    """Convert frequency to the nearest equal-tempered note name."""
    if frequency <= 0:
        return None

    semitones_from_a4 = 12 * math.log2(frequency / 440.0)
    midi = 69 + round(semitones_from_a4)
    if not 0 <= midi <= 127:
        return None
    return midi_to_note_name(midi)
