"""
Per-note pitch and timing classification.

For each expected note a fixed analysis window is cut at the note's
position in the captured audio, YIN estimates the fundamental, and the
estimate is graded against the notated pitch:

    |detected - expected| / expected  < 2%  -> correct
                                      < 5%  -> slightly_off (Slightly flat/sharp)
                                      else  -> wrong (Flat/Sharp note, or
                                               Wrong note when it lands on a
                                               different notated pitch)

No estimate, or one outside [100 Hz, 2000 Hz], is a "Missed entry".
Onsets are not detected acoustically, so timing only reflects how far the
window had to move from the expected onset.
"""

import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np

from scoresync.audio.codec import AudioSegment
from scoresync.config import EngineSettings
from scoresync.errors import ClassificationError
from scoresync.models.feedback import (
    Accuracy,
    IssueTag,
    NoteFeedback,
    NoteResult,
    RangeAnalysis,
    SessionIssue,
)
from scoresync.notation.pitch import frequency_to_note
from scoresync.timeline import ExpectedNote
from scoresync.tools.pitch_detection import PitchEstimate, detect_fundamental

logger = logging.getLogger(__name__)


def classify_pitch(
    detected_hz: float,
    expected_hz: float,
    notated_hz: Iterable[float] = (),
    correct_tolerance: float = 0.02,
    slight_tolerance: float = 0.05,
) -> Tuple[Accuracy, List[IssueTag]]:
    """
    Grade a detected frequency against the expected one.

    Args:
        detected_hz: Estimated fundamental.
        expected_hz: Notated frequency of the expected note.
        notated_hz: Frequencies of other notes in the passage; landing on one
            of them (within correct_tolerance) is reported as "Wrong note".
    """
    if expected_hz <= 0:
        raise ValueError(f"Expected frequency must be positive, got {expected_hz}")

    percent_diff = abs(detected_hz - expected_hz) / expected_hz
    if percent_diff < correct_tolerance:
        return Accuracy.CORRECT, []
    if percent_diff < slight_tolerance:
        tag = IssueTag.SLIGHTLY_FLAT if detected_hz < expected_hz else IssueTag.SLIGHTLY_SHARP
        return Accuracy.SLIGHTLY_OFF, [tag]

    for other in notated_hz:
        if other <= 0 or abs(other - expected_hz) / expected_hz < correct_tolerance:
            continue
        if abs(detected_hz - other) / other < correct_tolerance:
            return Accuracy.WRONG, [IssueTag.WRONG_NOTE]
    tag = IssueTag.FLAT_NOTE if detected_hz < expected_hz else IssueTag.SHARP_NOTE
    return Accuracy.WRONG, [tag]


@dataclass
class _Window:
    samples: np.ndarray
    start_time: float  # seconds, absolute


class PitchClassifier:
    """Grades expected notes against captured audio."""

    def __init__(self, settings: Optional[EngineSettings] = None):
        self.settings = settings or EngineSettings()

    # ------------------------------------------------------------------
    # Single window
    # ------------------------------------------------------------------

    def estimate(self, samples: np.ndarray, sample_rate: int) -> Optional[PitchEstimate]:
        """Run YIN; estimator failures surface as ClassificationError."""
        s = self.settings
        try:
            return detect_fundamental(
                samples,
                sample_rate,
                threshold=s.yin_threshold,
                silence_rms=s.silence_rms,
            )
        except Exception as e:
            raise ClassificationError(f"pitch estimation failed: {e}") from e

    def classify_note(
        self,
        samples: np.ndarray,
        expected_freq_hz: float,
        sample_rate: Optional[int] = None,
        notated_hz: Iterable[float] = (),
    ) -> NoteResult:
        s = self.settings
        sample_rate = sample_rate or s.sample_rate
        missed = NoteResult(
            expected_frequency=expected_freq_hz,
            accuracy=Accuracy.WRONG,
            issues=[IssueTag.MISSED_ENTRY],
        )

        if len(samples) < s.min_extract_samples:
            return missed
        try:
            estimate = self.estimate(samples, sample_rate)
        except ClassificationError as e:
            logger.warning("[classifier] %s", e)
            return missed

        if estimate is None or not s.min_frequency <= estimate.frequency <= s.max_frequency:
            return missed

        accuracy, issues = classify_pitch(
            estimate.frequency,
            expected_freq_hz,
            notated_hz,
            correct_tolerance=s.correct_tolerance,
            slight_tolerance=s.slight_tolerance,
        )
        return NoteResult(
            expected_frequency=expected_freq_hz,
            detected_frequency=round(estimate.frequency, 2),
            played_note=frequency_to_note(estimate.frequency),
            confidence=round(estimate.confidence, 2),
            accuracy=accuracy,
            issues=issues,
        )

    # ------------------------------------------------------------------
    # Range
    # ------------------------------------------------------------------

    def _window_for(self, segment: AudioSegment, note: ExpectedNote) -> Optional[_Window]:
        sr = segment.sample_rate
        offset = int(round((note.time - segment.start_time) * sr))
        # Notes expected just before the segment start are read from its first sample
        offset = max(0, offset)
        if offset >= len(segment.samples):
            return None
        window = segment.samples[offset:offset + self.settings.analysis_window]
        return _Window(samples=window, start_time=segment.start_time + offset / sr)

    def classify_range(
        self,
        segment: AudioSegment,
        expected_notes: Sequence[ExpectedNote],
    ) -> RangeAnalysis:
        """
        Classify every expected note that falls inside an audio segment.

        Returns the per-note feedback, the worst accuracy per bar and the
        session-level issues (flat/sharp tendencies, rushing).
        """
        s = self.settings
        notated = sorted({n.frequency for n in expected_notes})
        feedback: List[NoteFeedback] = []
        by_bar: Dict[int, List[Accuracy]] = {}
        session_issues: List[SessionIssue] = []

        def roll_up(issue: SessionIssue) -> None:
            if issue not in session_issues:
                session_issues.append(issue)

        for note in expected_notes:
            window = self._window_for(segment, note)
            if window is None:
                result = NoteResult(
                    expected_frequency=note.frequency,
                    accuracy=Accuracy.WRONG,
                    issues=[IssueTag.MISSED_ENTRY],
                )
            else:
                result = self.classify_note(
                    window.samples, note.frequency, segment.sample_rate, notated,
                )

            issues = list(result.issues)
            timing_ms = 0.0
            if result.detected_frequency is not None:
                timing_ms = round((window.start_time - note.time) * 1000.0, 1)
                if abs(timing_ms) > s.timing_tolerance_ms:
                    issues.append(IssueTag.LATE if timing_ms > 0 else IssueTag.EARLY)
                    roll_up(SessionIssue.RUSHING)
                if IssueTag.FLAT_NOTE in issues:
                    roll_up(SessionIssue.FLAT_NOTES)
                elif IssueTag.SHARP_NOTE in issues:
                    roll_up(SessionIssue.SHARP_NOTES)

            feedback.append(NoteFeedback(
                bar=note.bar,
                note_index=note.note_index,
                expected_note=note.pitch,
                played_note=result.played_note,
                detected_frequency=result.detected_frequency,
                accuracy=result.accuracy,
                issues=issues,
                timing_ms=timing_ms,
            ))
            by_bar.setdefault(note.bar, []).append(result.accuracy)

        return RangeAnalysis(
            feedback=feedback,
            measure_accuracy={bar: Accuracy.worst(values) for bar, values in by_bar.items()},
            session_issues=session_issues,
        )
