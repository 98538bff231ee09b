#!/usr/bin/env python3
"""
Beat-driven score position for the live ticker.

The metronome delivers beat numbers (1 on the first tick of the recording).
Each new beat is mapped to elapsed seconds at the current tempo and then to
the expected note sounding at that instant. The result says which note and
system are current, where the ticker sits across the system's frame, and
whether the system was just finished (the host scrolls on that flag).
"""

import logging
from bisect import bisect_right
from typing import Dict, List, Optional, Sequence, Set

from scoresync.models.position import FrameBounds, PositionState
from scoresync.timeline import ExpectedNote, seconds_per_beat

logger = logging.getLogger(__name__)


def default_frames(timeline: Sequence[ExpectedNote]) -> Dict[int, FrameBounds]:
    """Frame of each system spans its first onset to its last note end."""
    frames: Dict[int, FrameBounds] = {}
    for note in timeline:
        frame = frames.get(note.system_index)
        if frame is None:
            frames[note.system_index] = FrameBounds(left=note.time, right=note.end_time)
        else:
            frames[note.system_index] = FrameBounds(
                left=min(frame.left, note.time),
                right=max(frame.right, note.end_time),
            )
    return frames


class ScorePositionTracker:
    """
    Holds only its own beat anchor and last-seen beat; no shared clock.

    Args:
        timeline: Expected notes ordered by time.
        tempo_bpm: Metronome tempo.
        frames: Optional per-system frame bounds from the host's layout, in
            the same seconds as the timeline. Missing systems use the span
            of their notes.
        beats_per_measure / measures_per_system: Only used when the timeline
            is empty, to advance the ticker by beat count alone.
    """

    def __init__(
        self,
        timeline: Sequence[ExpectedNote],
        tempo_bpm: float,
        frames: Optional[Dict[int, FrameBounds]] = None,
        beats_per_measure: float = 4,
        measures_per_system: int = 4,
    ):
        self.beats_per_system = max(1, int(round(beats_per_measure * measures_per_system)))
        self._custom_frames = dict(frames or {})
        self.load(timeline, tempo_bpm)

    # ------------------------------------------------------------------
    # Setup
    # ------------------------------------------------------------------

    def load(self, timeline: Sequence[ExpectedNote], tempo_bpm: float) -> None:
        """Swap in a timeline and tempo and reset to the initial position."""
        self._spb = seconds_per_beat(tempo_bpm)
        self.tempo = tempo_bpm
        self._set_timeline(timeline)
        self.stop()

    def set_frames(self, frames: Dict[int, FrameBounds]) -> None:
        self._custom_frames = dict(frames)

    def _set_timeline(self, timeline: Sequence[ExpectedNote]) -> None:
        self.timeline: List[ExpectedNote] = list(timeline)
        self._times = [n.time for n in self.timeline]
        self._frames = default_frames(self.timeline)
        self._last_index: Dict[int, int] = {}
        for index, note in enumerate(self.timeline):
            self._last_index[note.system_index] = index

    def frame_for(self, system_index: int) -> Optional[FrameBounds]:
        return self._custom_frames.get(system_index) or self._frames.get(system_index)

    # ------------------------------------------------------------------
    # Beats
    # ------------------------------------------------------------------

    @property
    def state(self) -> PositionState:
        return self._state

    @property
    def last_beat(self) -> int:
        return self._last_beat

    def elapsed_for_beat(self, beat: int) -> float:
        return self._anchor_seconds + (beat - self._anchor_beat) * self._spb

    def on_beat(self, beat: int) -> PositionState:
        """
        Advance to a metronome beat.

        Beats that are non-positive, repeated or older than the last one
        leave the state unchanged.
        """
        if beat <= 0 or beat <= self._last_beat:
            return self._state
        self._last_beat = beat

        if not self.timeline:
            self._state = self._proportional(beat)
        else:
            self._state = self._locate(beat, self.elapsed_for_beat(beat))
        return self._state

    def _proportional(self, beat: int) -> PositionState:
        per_system = self.beats_per_system
        within = (beat - 1) % per_system
        return PositionState(
            note_index=0,
            system_index=(beat - 1) // per_system,
            measure_number=None,
            position=within / per_system * 100.0,
            system_completed=within == per_system - 1,
            beat=beat,
        )

    def _locate(self, beat: int, elapsed: float) -> PositionState:
        index = max(0, bisect_right(self._times, elapsed) - 1)
        note = self.timeline[index]
        system = note.system_index
        previous_system = self._state.system_index

        completed = False
        if index == self._last_index[system] and system not in self._flagged:
            completed = True
            self._flagged.add(system)
        elif system > previous_system and previous_system not in self._flagged:
            # Skipped past the end of the previous system between two beats
            completed = True
            self._flagged.update(range(previous_system, system))

        position = 0.0
        frame = self.frame_for(system)
        if frame is not None and frame.right > frame.left:
            position = (note.time - frame.left) / (frame.right - frame.left) * 100.0
            position = min(100.0, max(0.0, position))

        if completed:
            logger.debug("[tracker] system %d completed at beat %d", system, beat)
        return PositionState(
            note_index=index,
            system_index=system,
            measure_number=note.bar,
            position=position,
            system_completed=completed,
            beat=beat,
        )

    # ------------------------------------------------------------------
    # Tempo / reset
    # ------------------------------------------------------------------

    def change_tempo(self, new_tempo: float, timeline: Optional[Sequence[ExpectedNote]] = None) -> None:
        """
        Re-anchor at the last seen beat so later beats advance at new_tempo.

        Pass the rescaled timeline so note times agree with the new clock.
        """
        spb = seconds_per_beat(new_tempo)
        if self._last_beat > 0:
            self._anchor_seconds = self.elapsed_for_beat(self._last_beat)
            self._anchor_beat = self._last_beat
        self._spb = spb
        self.tempo = new_tempo
        if timeline is not None:
            self._set_timeline(timeline)

    def stop(self) -> None:
        """Back to the first note of the first system."""
        self._last_beat = 0
        self._anchor_beat = 1
        self._anchor_seconds = 0.0
        self._flagged: Set[int] = set()
        self._state = PositionState()
