"""
Practice session orchestration.

Ties the engine together for one performer: pick a piece, pick a tempo,
record while the metronome drives the ticker and completed measures get
delayed feedback, then run a full-performance pass when recording stops.
"""

import asyncio
import logging
import time
from pathlib import Path
from typing import Callable, Dict, List, Optional, Union

from scoresync.audio.capture import AudioCaptureSession, StreamFactory
from scoresync.audio.codec import AudioBlob, decode_full
from scoresync.config import EngineSettings
from scoresync.errors import ParseError
from scoresync.models.feedback import NoteFeedback, PerformanceReport
from scoresync.models.position import FrameBounds, PositionState
from scoresync.models.score import Score
from scoresync.notation.fallback import fallback_score
from scoresync.notation.musicxml_parser import load_musicxml, parse_musicxml
from scoresync.position_tracker import ScorePositionTracker
from scoresync.scheduler import MeasureFeedbackScheduler, MeasureFeedbackState, MeasureStatus, UpdateCallback
from scoresync.timeline import ExpectedNote, MeasureBoundary, build_timeline, measure_boundaries
from scoresync.tools.classifier import PitchClassifier
from scoresync.tools.insights import summarize_performance

logger = logging.getLogger(__name__)

PieceSource = Union[Score, str, bytes, Path, None]


class PracticeSession:
    """Manages state for a single performer practising one piece at a time."""

    def __init__(
        self,
        settings: Optional[EngineSettings] = None,
        stream_factory: Optional[StreamFactory] = None,
        clock: Callable[[], float] = time.monotonic,
        on_measure_update: Optional[UpdateCallback] = None,
    ):
        self.settings = settings or EngineSettings()
        self.capture = AudioCaptureSession(self.settings, stream_factory=stream_factory)
        self.classifier = PitchClassifier(self.settings)
        self.scheduler = MeasureFeedbackScheduler(
            self.capture,
            self.classifier,
            self.settings,
            clock=clock,
            on_update=on_measure_update,
        )

        self.tempo = self.settings.default_tempo
        self.score: Score = fallback_score(self.settings.fallback_measures_per_system)
        self.is_fallback = True
        self.timeline: List[ExpectedNote] = []
        self.boundaries: List[MeasureBoundary] = []
        self.tracker = ScorePositionTracker(
            [], self.tempo,
            beats_per_measure=self.score.time_signature.beats_per_measure,
            measures_per_system=self.settings.fallback_measures_per_system,
        )
        self.last_report: Optional[PerformanceReport] = None
        self.last_recording: Optional[AudioBlob] = None
        self._rebuild()

    # ------------------------------------------------------------------
    # Piece / tempo
    # ------------------------------------------------------------------

    @property
    def is_recording(self) -> bool:
        return self.capture.is_recording

    def _max_measures(self) -> Optional[int]:
        return self.settings.fallback_max_measures if self.is_fallback else None

    def _rebuild(self) -> None:
        self.timeline = build_timeline(self.score, self.tempo, self._max_measures())
        self.boundaries = measure_boundaries(self.score, self.tempo, self._max_measures())
        self.tracker.beats_per_system = max(1, int(round(
            self.score.time_signature.beats_per_measure
            * (self.settings.measures_per_system or self.settings.fallback_measures_per_system)
        )))
        self.tracker.load(self.timeline, self.tempo)

    def _parse(self, source: PieceSource) -> Score:
        kwargs = {
            "measures_per_system": self.settings.measures_per_system,
            "dot_scales_duration": self.settings.dot_scales_duration,
        }
        if isinstance(source, Score):
            return source
        if isinstance(source, bytes):
            return parse_musicxml(source, **kwargs)
        if isinstance(source, str) and source.lstrip().startswith("<"):
            return parse_musicxml(source, **kwargs)
        return load_musicxml(source, **kwargs)

    def load_piece(self, source: PieceSource = None, use_score_tempo: bool = False) -> Score:
        """
        Select the piece to practise.

        Args:
            source: A parsed Score, MusicXML text/bytes, a path to a MusicXML
                file, or None for the built-in piece. Unparseable input falls
                back to the built-in piece.
            use_score_tempo: Adopt the score's tempo marking (clamped).

        Any recording in progress is abandoned.
        """
        self._abandon_recording()

        if source is None:
            score, fallback = None, True
        else:
            try:
                score, fallback = self._parse(source), False
            except ParseError as e:
                logger.warning("[session] could not parse piece, using built-in piece: %s", e)
                score, fallback = None, True

        self.score = score or fallback_score(self.settings.fallback_measures_per_system)
        self.is_fallback = fallback
        if use_score_tempo:
            self.tempo = self.settings.clamp_tempo(self.score.tempo)
        self.last_report = None
        self._rebuild()
        logger.info("[session] loaded %r (%d notes in timeline)", self.score.title, len(self.timeline))
        return self.score

    def set_tempo(self, bpm: float) -> float:
        """Set the tempo, clamped to the configured range. Applies mid-recording too."""
        if bpm <= 0:
            raise ValueError(f"Tempo must be positive, got {bpm}")
        tempo = self.settings.clamp_tempo(bpm)
        if tempo == self.tempo:
            return tempo

        if self.is_recording:
            self.scheduler.change_tempo(tempo)
            self.timeline = list(self.scheduler.timeline)
            self.boundaries = list(self.scheduler.boundaries)
            self.tracker.change_tempo(tempo, self.timeline)
            self.tempo = tempo
        else:
            self.tempo = tempo
            self._rebuild()
        return tempo

    def set_frames(self, frames: Dict[int, FrameBounds]) -> None:
        self.tracker.set_frames(frames)

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    async def start_recording(self) -> int:
        """
        Start capturing and scheduling measure feedback.

        Returns the scheduler generation for this recording. CaptureError
        from the device propagates and leaves the session idle.
        """
        self.scheduler.cancel()
        self._rebuild()
        self.capture.start()
        self.last_report = None
        self.last_recording = None
        generation = self.scheduler.begin(self.timeline, self.boundaries, self.tempo)
        self.scheduler.start_polling()
        logger.info("[session] recording %r at %.0f BPM", self.score.title, self.tempo)
        return generation

    def on_beat(self, beat: int) -> PositionState:
        return self.tracker.on_beat(beat)

    @property
    def position(self) -> PositionState:
        return self.tracker.state

    @property
    def measure_states(self) -> Dict[int, MeasureFeedbackState]:
        return self.scheduler.states

    @property
    def live_feedback(self) -> List[NoteFeedback]:
        """Feedback of every measure analysed so far, in bar order."""
        feedback: List[NoteFeedback] = []
        for number, state in sorted(self.scheduler.states.items()):
            if state.status == MeasureStatus.READY:
                feedback.extend(state.feedback)
        return feedback

    async def stop_recording(self) -> PerformanceReport:
        """
        Stop capturing and analyse the whole performance.

        Analysis failures are reported in PerformanceReport.error rather
        than raised.
        """
        blob = self.capture.stop()
        self.last_recording = blob
        self.scheduler.stop()
        self.tracker.stop()

        started = time.perf_counter()
        timeout = self.settings.final_analysis_timeout
        try:
            analysis = await asyncio.wait_for(
                asyncio.to_thread(self._analyze_recording, blob, list(self.timeline)),
                timeout,
            )
        except asyncio.TimeoutError:
            logger.warning("[session] final analysis exceeded %.1fs", timeout)
            report = PerformanceReport(error=f"analysis exceeded {timeout:.1f}s")
        except Exception as e:
            logger.exception("[session] final analysis failed")
            report = PerformanceReport(error=f"analysis failed: {e}")
        else:
            report = summarize_performance(analysis, self.settings.timing_tolerance_ms)
            logger.info("[session] analysed %d notes in %.2fs: %.1f%% correct",
                        len(report.feedback), time.perf_counter() - started, report.overall_accuracy)

        self.last_report = report
        return report

    def _analyze_recording(self, blob: AudioBlob, timeline: List[ExpectedNote]):
        segment = decode_full(blob, self.settings.sample_rate)
        return self.classifier.classify_range(segment, timeline)

    def _abandon_recording(self) -> None:
        self.scheduler.cancel()
        self.tracker.stop()
        if self.is_recording:
            logger.info("[session] recording abandoned")
            self.capture.stop()
