"""
In-memory score model.

Notes are owned by their Measure, measures are grouped into Systems (one
printed line each). Everything is immutable once parsed.
"""

from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple


@dataclass(frozen=True)
class TimeSignature:
    numerator: int = 4
    denominator: int = 4

    @property
    def beats_per_measure(self) -> float:
        """Measure length in quarter-note beats."""
        return self.numerator * 4.0 / self.denominator


@dataclass(frozen=True)
class KeySignature:
    fifths: int = 0
    mode: Optional[str] = None  # "major" | "minor"


@dataclass(frozen=True)
class Note:
    """A pitched note; rests never become Notes."""
    id: str
    pitch: str  # scientific notation, e.g. "C4", "F#5", "Bb3"
    midi_number: int
    duration: float  # beats
    beat_offset: float  # beats from the start of the piece
    measure_number: int
    system_index: int
    staff: int = 1
    voice: int = 1
    stem: Optional[str] = None  # "up" | "down"
    accidental: Optional[str] = None  # "sharp" | "flat" | "natural" | ...
    tie: Optional[str] = None  # "start" | "stop" | "continue"
    slur: Optional[str] = None  # "start" | "stop"
    is_chord: bool = False


@dataclass(frozen=True)
class Measure:
    measure_number: int  # unique within the score
    system_index: int
    start_beat: float
    duration: float  # beats
    time_signature: TimeSignature
    notes: Tuple[Note, ...] = ()
    label: Optional[str] = None  # @number as written in the source

    @property
    def end_beat(self) -> float:
        return self.start_beat + self.duration


@dataclass(frozen=True)
class System:
    system_index: int
    measure_numbers: Tuple[int, ...]
    start_beat: float
    end_beat: float


@dataclass(frozen=True)
class Score:
    title: str
    composer: Optional[str]
    time_signature: TimeSignature
    key_signature: Optional[KeySignature]
    tempo: float  # BPM hint from the source
    measures: Tuple[Measure, ...]
    systems: Tuple[System, ...]
    notes: Tuple[Note, ...]
    total_beats: float
    _by_number: Dict[int, Measure] = field(default_factory=dict, init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "_by_number", {m.measure_number: m for m in self.measures})

    def system_of(self, measure_number: int) -> int:
        m = self._by_number.get(measure_number)
        return m.system_index if m is not None else 0


def group_systems(measures: Tuple[Measure, ...]) -> Tuple[System, ...]:
    """Collapse consecutive measures sharing a system index into Systems."""
    systems = []
    current = None
    for measure in measures:
        if current is None or current["system_index"] != measure.system_index:
            if current is not None:
                systems.append(System(**current))
            current = {
                "system_index": measure.system_index,
                "measure_numbers": (measure.measure_number,),
                "start_beat": measure.start_beat,
                "end_beat": measure.end_beat,
            }
        else:
            current["measure_numbers"] = current["measure_numbers"] + (measure.measure_number,)
            current["end_beat"] = measure.end_beat
    if current is not None:
        systems.append(System(**current))
    return tuple(systems)
