"""
MusicXML (score-partwise subset) to Score.

Walks the children of each measure in document order, keeping a running
clock in beats:
- rests and unpitched notes advance the clock without producing a Note
- <chord/> notes share the previous note's beat offset and do not advance it
- <backup>/<forward> move the clock inside the measure
- <print new-system="yes"> starts a new system
"""

import logging
from pathlib import Path
from typing import List, Optional, Set, Union
from xml.etree import ElementTree as ET

from scoresync.errors import ParseError
from scoresync.models.score import (
    KeySignature,
    Measure,
    Note,
    Score,
    TimeSignature,
    group_systems,
)
from scoresync.notation.pitch import midi_from_pitch, pitch_name
from scoresync.notation.xml import F, FA, get_ns, iter_local, local, text

logger = logging.getLogger(__name__)

DEFAULT_TEMPO = 120.0
DEFAULT_DIVISIONS = 1.0


def _to_int(value: Optional[str], default: int) -> int:
    try:
        return int(value) if value is not None else default
    except ValueError:
        return default


def _measure_number(raw: Optional[str], previous: int, used: Set[int]) -> int:
    """
    The integer @number when it is free, otherwise the next unused number
    after the previous measure. Implicit and non-numeric labels ("X1", "12a")
    never share a number with another measure.
    """
    number = _to_int(raw, -1)
    if number < 0 or number in used:
        number = previous + 1
        while number in used:
            number += 1
    used.add(number)
    return number


def _to_float(value: Optional[str], default: float) -> float:
    try:
        return float(value) if value is not None else default
    except ValueError:
        return default


def _read_time(elem: ET.Element, ns: dict) -> Optional[TimeSignature]:
    time_el = F(elem, "time", ns)
    if time_el is None:
        return None
    beats = _to_int(text(time_el, "beats", ns), 4)
    beat_type = _to_int(text(time_el, "beat-type", ns), 4)
    if beats <= 0 or beat_type <= 0:
        return None
    return TimeSignature(beats, beat_type)


def _read_tempo(part: ET.Element) -> float:
    for sound in iter_local(part, "sound"):
        if "tempo" in sound.attrib:
            tempo = _to_float(sound.attrib["tempo"], 0.0)
            if tempo > 0:
                return tempo
    for per_minute in iter_local(part, "per-minute"):
        tempo = _to_float((per_minute.text or "").strip(), 0.0)
        if tempo > 0:
            return tempo
    return DEFAULT_TEMPO


def _read_slur(note_el: ET.Element, ns: dict) -> Optional[str]:
    for notations in FA(note_el, "notations", ns):
        slur = F(notations, "slur", ns)
        if slur is not None:
            return slur.attrib.get("type")
    return None


def _read_tie(note_el: ET.Element, ns: dict) -> Optional[str]:
    tie = F(note_el, "tie", ns)
    if tie is not None:
        return tie.attrib.get("type")
    for notations in FA(note_el, "notations", ns):
        tied = F(notations, "tied", ns)
        if tied is not None:
            return tied.attrib.get("type")
    return None


def parse_musicxml(
    source: Union[str, bytes],
    measures_per_system: Optional[int] = None,
    dot_scales_duration: bool = True,
) -> Score:
    """
    Parse a MusicXML document into a Score.

    Args:
        source: MusicXML text.
        measures_per_system: Group measures into systems of this size when
            the document carries no explicit system breaks. None keeps every
            measure in system 0.
        dot_scales_duration: Multiply <duration> by 1.5 for dotted notes.

    Raises:
        ParseError: malformed XML, or no part/measure to read.
    """
    try:
        root = ET.fromstring(source)
    except ET.ParseError as e:
        raise ParseError(f"MusicXML parsing error: {e}") from e

    if local(root.tag) == "score-timewise":
        raise ParseError("score-timewise documents are not supported")

    ns = get_ns(root)
    parts = FA(root, "part", ns)
    if not parts:
        raise ParseError("MusicXML document has no <part>")
    part = parts[0]
    measure_elements = FA(part, "measure", ns)
    if not measure_elements:
        raise ParseError(f"Part {part.attrib.get('id', '?')} has no <measure>")

    title = (
        text(root, "work/work-title", ns)
        or text(root, "movement-title", ns)
        or "Untitled"
    )
    composer = None
    for creator in FA(root, "identification/creator", ns):
        if creator.attrib.get("type") == "composer" and creator.text and creator.text.strip():
            composer = creator.text.strip()
            break

    default_time: Optional[TimeSignature] = None
    key: Optional[KeySignature] = None
    tempo = _read_tempo(part)

    divisions = DEFAULT_DIVISIONS
    current_time = TimeSignature()
    system_index = 0
    has_explicit_breaks = any(
        p.attrib.get("new-system") == "yes"
        for i, m in enumerate(measure_elements) if i > 0
        for p in FA(m, "print", ns)
    )

    measures: List[Measure] = []
    all_notes: List[Note] = []
    current_beat = 0.0
    used_numbers: Set[int] = set()
    measure_number = 0

    for idx, meas in enumerate(measure_elements):
        raw_number = meas.attrib.get("number")
        measure_number = _measure_number(raw_number, measure_number, used_numbers)

        if has_explicit_breaks:
            for p in FA(meas, "print", ns):
                if p.attrib.get("new-system") == "yes" and idx > 0:
                    system_index += 1
                    break
        elif measures_per_system:
            system_index = idx // measures_per_system

        measure_start = current_beat
        clock = measure_start
        furthest = measure_start
        measure_notes: List[Note] = []

        for child in list(meas):
            tag = local(child.tag)

            if tag == "attributes":
                div_value = _to_float(text(child, "divisions", ns), 0.0)
                if div_value > 0:
                    divisions = div_value
                ts = _read_time(child, ns)
                if ts is not None:
                    current_time = ts
                    if default_time is None:
                        default_time = ts
                key_el = F(child, "key", ns)
                if key_el is not None and key is None:
                    key = KeySignature(
                        fifths=_to_int(text(key_el, "fifths", ns), 0),
                        mode=text(key_el, "mode", ns),
                    )
                continue

            if tag in ("backup", "forward"):
                amount = _to_float(text(child, "duration", ns), 0.0) / divisions
                clock = clock + amount if tag == "forward" else max(measure_start, clock - amount)
                furthest = max(furthest, clock)
                continue

            if tag != "note":
                continue

            if F(child, "grace", ns) is not None:
                # Grace notes carry no duration of their own
                continue

            duration = _to_float(text(child, "duration", ns), 0.0) / divisions
            if dot_scales_duration and F(child, "dot", ns) is not None:
                duration *= 1.5
            is_chord = F(child, "chord", ns) is not None
            pitch_el = F(child, "pitch", ns)

            if F(child, "rest", ns) is not None or pitch_el is None:
                if not is_chord:
                    clock += duration
                    furthest = max(furthest, clock)
                continue

            step = text(pitch_el, "step", ns, "C")
            if step not in ("C", "D", "E", "F", "G", "A", "B"):
                raise ParseError(f"Invalid pitch step {step!r} in measure {measure_number}")
            octave = _to_int(text(pitch_el, "octave", ns), 4)
            alter = int(round(_to_float(text(pitch_el, "alter", ns), 0.0)))

            if is_chord and measure_notes:
                beat_offset = measure_notes[-1].beat_offset
            else:
                beat_offset = clock

            stem = text(child, "stem", ns)
            note = Note(
                id=f"note-{measure_number}-{len(measure_notes)}",
                pitch=pitch_name(step, alter, octave),
                midi_number=midi_from_pitch(step, alter, octave),
                duration=duration,
                beat_offset=beat_offset,
                measure_number=measure_number,
                system_index=system_index,
                staff=_to_int(text(child, "staff", ns), 1),
                voice=_to_int(text(child, "voice", ns), 1),
                stem=stem if stem in ("up", "down") else None,
                accidental=text(child, "accidental", ns),
                tie=_read_tie(child, ns),
                slur=_read_slur(child, ns),
                is_chord=is_chord,
            )
            measure_notes.append(note)

            if not is_chord:
                clock += duration
                furthest = max(furthest, clock)

        measure_duration = furthest - measure_start
        if measure_duration <= 0:
            measure_duration = current_time.beats_per_measure

        ordered = tuple(sorted(measure_notes, key=lambda n: n.beat_offset))
        measures.append(Measure(
            measure_number=measure_number,
            system_index=system_index,
            start_beat=measure_start,
            duration=measure_duration,
            time_signature=current_time,
            notes=ordered,
            label=raw_number,
        ))
        all_notes.extend(ordered)
        current_beat = measure_start + measure_duration

    score = Score(
        title=title,
        composer=composer,
        time_signature=default_time or TimeSignature(),
        key_signature=key,
        tempo=tempo,
        measures=tuple(measures),
        systems=group_systems(tuple(measures)),
        notes=tuple(all_notes),
        total_beats=current_beat,
    )
    logger.debug(
        "[parser] %r: %d measures, %d systems, %d notes",
        score.title, len(score.measures), len(score.systems), len(score.notes),
    )
    return score


def load_musicxml(path: Union[str, Path], **kwargs) -> Score:
    """Read a MusicXML file and parse it. OSError propagates to the caller."""
    data = Path(path).read_bytes()
    return parse_musicxml(data, **kwargs)
