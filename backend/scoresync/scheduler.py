#!/usr/bin/env python3
"""
Delayed per-measure feedback during a live recording.

A fixed-interval poll compares elapsed recording time with the measure
boundary table. Once a measure has fully elapsed it is analysed in a worker
thread (decode the captured audio for that measure, then classify its
notes). Each measure moves through:

    pending -> analyzing -> ready(feedback) | failed(reason)

Failed entries clear after a short display time. Extraction failures (the
audio is not decoded far enough yet) go back to pending and are retried on
a later poll; timeouts and classifier crashes are dropped.
Stopping returns measures still being analysed to pending.

Every recording gets a new generation number. Analyses carry the
generation they were started under and their results are discarded if the
scheduler has moved on.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, replace
from enum import Enum
from typing import Callable, Dict, List, Optional, Sequence, Set, Tuple

from scoresync.audio.capture import AudioCaptureSession
from scoresync.config import EngineSettings
from scoresync.errors import AnalysisTimeoutError, ExtractError
from scoresync.models.feedback import Accuracy, NoteFeedback, RangeAnalysis
from scoresync.timeline import (
    ExpectedNote,
    MeasureBoundary,
    notes_in_bar,
    rescale_boundaries,
    rescale_timeline,
)
from scoresync.tools.classifier import PitchClassifier

logger = logging.getLogger(__name__)


class MeasureStatus(str, Enum):
    PENDING = "pending"
    ANALYZING = "analyzing"
    READY = "ready"
    FAILED = "failed"


@dataclass(frozen=True)
class MeasureFeedbackState:
    measure_number: int
    status: MeasureStatus = MeasureStatus.PENDING
    feedback: Tuple[NoteFeedback, ...] = ()
    accuracy: Optional[Accuracy] = None  # worst case over the measure's notes
    reason: Optional[str] = None
    retryable: bool = False
    attempts: int = 0
    failed_at: Optional[float] = None


UpdateCallback = Callable[[int, MeasureFeedbackState], None]


class MeasureFeedbackScheduler:
    """
    Schedules one classification pass per completed measure.

    poll() must run inside an event loop because it spawns asyncio tasks.
    run() polls every settings.poll_interval seconds until cancelled.
    """

    def __init__(
        self,
        capture: AudioCaptureSession,
        classifier: Optional[PitchClassifier] = None,
        settings: Optional[EngineSettings] = None,
        clock: Callable[[], float] = time.monotonic,
        on_update: Optional[UpdateCallback] = None,
    ):
        self.settings = settings or capture.settings
        self.capture = capture
        self.classifier = classifier or PitchClassifier(self.settings)
        self.clock = clock
        self.on_update = on_update

        self.tempo = self.settings.default_tempo
        self.timeline: List[ExpectedNote] = []
        self.boundaries: List[MeasureBoundary] = []
        self.started_at: Optional[float] = None
        self.current_measure: Optional[int] = None

        self._generation = 0
        self._active = False
        self._states: Dict[int, MeasureFeedbackState] = {}
        self._abandoned: Set[int] = set()
        self._tasks: Dict[int, asyncio.Task] = {}
        self._poll_task: Optional[asyncio.Task] = None
        self._last_poll: Optional[float] = None  # time base for failed_at

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def active(self) -> bool:
        return self._active

    @property
    def states(self) -> Dict[int, MeasureFeedbackState]:
        return dict(self._states)

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    def elapsed(self, now: Optional[float] = None) -> float:
        if self.started_at is None:
            return 0.0
        now = self.clock() if now is None else now
        return max(0.0, now - self.started_at)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def begin(
        self,
        timeline: Sequence[ExpectedNote],
        boundaries: Sequence[MeasureBoundary],
        tempo: float,
        started_at: Optional[float] = None,
    ) -> int:
        """Reset for a new recording; returns the new generation."""
        self.cancel()
        self.timeline = list(timeline)
        self.boundaries = list(boundaries)
        self.tempo = tempo
        self.started_at = self.clock() if started_at is None else started_at
        self._states = {
            b.measure_number: MeasureFeedbackState(measure_number=b.measure_number)
            for b in self.boundaries
        }
        self._active = True
        logger.debug("[scheduler] generation %d: %d measures at %.0f BPM",
                     self._generation, len(self.boundaries), tempo)
        return self._generation

    def stop(self) -> None:
        """Stop polling and invalidate in-flight analyses; finished states stay readable."""
        self._generation += 1
        self._active = False
        for task in self._tasks.values():
            task.cancel()
        self._tasks.clear()
        # Interrupted measures were never analysed
        for number, state in list(self._states.items()):
            if state.status == MeasureStatus.ANALYZING:
                self._set(number, replace(state, status=MeasureStatus.PENDING))
        if self._poll_task is not None:
            self._poll_task.cancel()
            self._poll_task = None

    def cancel(self) -> None:
        """stop() and forget all measure state."""
        self.stop()
        self._states = {}
        self._abandoned = set()
        self.current_measure = None
        self._last_poll = None

    def start_polling(self) -> asyncio.Task:
        if self._poll_task is None or self._poll_task.done():
            self._poll_task = asyncio.create_task(self.run())
        return self._poll_task

    async def run(self) -> None:
        generation = self._generation
        while self._active and generation == self._generation:
            self.poll()
            await asyncio.sleep(self.settings.poll_interval)

    async def drain(self) -> None:
        """Wait for every in-flight analysis of the current generation."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)

    # ------------------------------------------------------------------
    # Tempo
    # ------------------------------------------------------------------

    def change_tempo(self, new_tempo: float, at: Optional[float] = None) -> None:
        """
        Rescale the remaining boundaries and notes for a tempo change.

        Args:
            new_tempo: New tempo in BPM.
            at: Change instant in seconds since recording start (defaults to
                the current elapsed time). Nothing at or before it moves.
        """
        if new_tempo <= 0:
            raise ValueError(f"Tempo must be positive, got {new_tempo}")
        if not self._active:
            self.tempo = new_tempo
            return
        at = self.elapsed() if at is None else at
        self.boundaries = rescale_boundaries(self.boundaries, at, self.tempo, new_tempo)
        self.timeline = rescale_timeline(self.timeline, at, self.tempo, new_tempo)
        logger.info("[scheduler] tempo %.0f -> %.0f BPM at %.2fs", self.tempo, new_tempo, at)
        self.tempo = new_tempo

    # ------------------------------------------------------------------
    # Polling
    # ------------------------------------------------------------------

    def _measure_at(self, elapsed: float) -> Optional[int]:
        for b in self.boundaries:
            if b.start_time <= elapsed < b.end_time:
                return b.measure_number
        return None

    def _clear_failures(self, now: float) -> None:
        s = self.settings
        for number, state in list(self._states.items()):
            if state.status != MeasureStatus.FAILED or state.failed_at is None:
                continue
            if now - state.failed_at < s.failure_display:
                continue
            if state.retryable and state.attempts < s.max_extract_attempts:
                self._set(number, replace(state, status=MeasureStatus.PENDING,
                                          reason=None, failed_at=None))
            else:
                del self._states[number]
                self._abandoned.add(number)
                logger.debug("[scheduler] measure %d dropped after failure", number)

    def poll(self, now: Optional[float] = None) -> List[int]:
        """
        Advance the state machine; returns the measures scheduled this poll.
        """
        if not self._active:
            return []
        now = self.clock() if now is None else now
        elapsed = self.elapsed(now)
        self._last_poll = now

        self._clear_failures(now)
        self.current_measure = self._measure_at(elapsed)

        scheduled = []
        for boundary in self.boundaries:
            if boundary.end_time > elapsed:
                break
            number = boundary.measure_number
            if number in self._abandoned:
                continue
            state = self._states.get(number)
            if state is None:
                state = MeasureFeedbackState(measure_number=number)
            if state.status != MeasureStatus.PENDING:
                continue
            if len(self._tasks) >= self.settings.max_concurrent_analyses:
                break
            self._schedule(boundary, state)
            scheduled.append(number)
        return scheduled

    def _schedule(self, boundary: MeasureBoundary, state: MeasureFeedbackState) -> None:
        number = boundary.measure_number
        self._set(number, replace(state, status=MeasureStatus.ANALYZING,
                                  attempts=state.attempts + 1))
        notes = notes_in_bar(self.timeline, number)
        task = asyncio.create_task(
            self._analyze(self._generation, number, boundary.start_time, boundary.end_time, notes)
        )
        self._tasks[number] = task
        logger.debug("[scheduler] measure %d analyzing [%.2fs, %.2fs)",
                     number, boundary.start_time, boundary.end_time)

    # ------------------------------------------------------------------
    # Analysis
    # ------------------------------------------------------------------

    def _extract_and_classify(
        self, start: float, end: float, notes: List[ExpectedNote]
    ) -> RangeAnalysis:
        if not notes:
            return RangeAnalysis()
        segment = self.capture.get_range(start, end)
        return self.classifier.classify_range(segment, notes)

    async def _analyze(
        self,
        generation: int,
        number: int,
        start: float,
        end: float,
        notes: List[ExpectedNote],
    ) -> None:
        timeout = self.settings.analysis_timeout
        try:
            analysis = await asyncio.wait_for(
                asyncio.to_thread(self._extract_and_classify, start, end, notes),
                timeout,
            )
        except asyncio.TimeoutError:
            self._fail(generation, number, str(AnalysisTimeoutError(timeout)), retryable=False)
        except ExtractError as e:
            self._fail(generation, number, str(e), retryable=True)
        except Exception as e:
            logger.exception("[scheduler] measure %d analysis crashed", number)
            self._fail(generation, number, f"analysis failed: {e}", retryable=False)
        else:
            self._complete(generation, number, analysis)
        finally:
            if generation == self._generation:
                self._tasks.pop(number, None)

    def _current(self, generation: int, number: int) -> Optional[MeasureFeedbackState]:
        if generation != self._generation:
            logger.debug("[scheduler] dropping stale result for measure %d (gen %d)",
                         number, generation)
            return None
        state = self._states.get(number)
        if state is None or state.status != MeasureStatus.ANALYZING:
            logger.debug("[scheduler] measure %d no longer analyzing, result dropped", number)
            return None
        return state

    def _complete(self, generation: int, number: int, analysis: RangeAnalysis) -> None:
        state = self._current(generation, number)
        if state is None:
            return
        self._set(number, replace(
            state,
            status=MeasureStatus.READY,
            feedback=tuple(analysis.feedback),
            accuracy=analysis.measure_accuracy.get(number),
        ))
        logger.info("[scheduler] measure %d ready (%s)", number,
                    analysis.measure_accuracy.get(number, "no notes"))

    def _fail(self, generation: int, number: int, reason: str, retryable: bool) -> None:
        state = self._current(generation, number)
        if state is None:
            return
        self._set(number, replace(
            state,
            status=MeasureStatus.FAILED,
            reason=reason,
            retryable=retryable,
            failed_at=self._last_poll if self._last_poll is not None else self.clock(),
        ))
        logger.warning("[scheduler] measure %d failed: %s", number, reason)

    def _set(self, number: int, state: MeasureFeedbackState) -> None:
        self._states[number] = state
        if self.on_update is not None:
            self.on_update(number, state)
