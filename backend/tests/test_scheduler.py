#!/usr/bin/env python3
"""
Tests for delayed per-measure feedback scheduling.

A FakeClock drives elapsed time; analyses run for real on synthesized audio
fed through a fake input stream.
"""

import asyncio
import threading
import time

import pytest

from scoresync.audio.capture import AudioCaptureSession
from scoresync.config import EngineSettings
from scoresync.models.feedback import Accuracy, RangeAnalysis
from scoresync.scheduler import MeasureFeedbackScheduler, MeasureStatus
from scoresync.tools.classifier import PitchClassifier

from synth import blocks, render_timeline


class BlockingClassifier(PitchClassifier):
    """Holds every classify_range call until released."""

    def __init__(self, settings):
        super().__init__(settings)
        self.release = threading.Event()
        self.calls = 0

    def classify_range(self, segment, expected_notes):
        self.calls += 1
        self.release.wait(timeout=5)
        return super().classify_range(segment, expected_notes)


class SlowClassifier(PitchClassifier):
    def classify_range(self, segment, expected_notes):
        time.sleep(0.3)
        return RangeAnalysis()


def make_capture(settings, stream_factory, audio=None):
    capture = AudioCaptureSession(settings, stream_factory=stream_factory)
    capture.start()
    if audio is not None:
        for block in blocks(audio):
            stream_factory.last.feed(block)
    return capture


@pytest.fixture
def performed(settings, stream_factory, twinkle_timeline):
    """Capture session holding a clean rendition of the whole piece."""
    return make_capture(settings, stream_factory, render_timeline(twinkle_timeline))


def make_scheduler(capture, clock, settings=None, classifier=None, updates=None):
    on_update = (lambda number, state: updates.append((number, state.status))) if updates is not None else None
    return MeasureFeedbackScheduler(
        capture,
        classifier,
        settings=settings or capture.settings,
        clock=clock,
        on_update=on_update,
    )


class TestMeasureScheduling:

    @pytest.mark.asyncio
    async def test_nothing_scheduled_before_measure_ends(self, performed, clock, twinkle_timeline, twinkle_boundaries):
        scheduler = make_scheduler(performed, clock)
        scheduler.begin(twinkle_timeline, twinkle_boundaries, 120, started_at=0.0)

        clock.now = 1.9
        assert scheduler.poll() == []
        assert scheduler.current_measure == 1
        assert scheduler.states[1].status == MeasureStatus.PENDING

    @pytest.mark.asyncio
    async def test_completed_measure_becomes_ready(self, performed, clock, twinkle_timeline, twinkle_boundaries):
        updates = []
        scheduler = make_scheduler(performed, clock, updates=updates)
        scheduler.begin(twinkle_timeline, twinkle_boundaries, 120, started_at=0.0)

        clock.now = 2.1
        assert scheduler.poll() == [1]
        assert scheduler.current_measure == 2
        assert scheduler.states[1].status == MeasureStatus.ANALYZING

        await scheduler.drain()
        state = scheduler.states[1]
        assert state.status == MeasureStatus.READY
        assert state.accuracy == Accuracy.CORRECT
        assert [f.expected_note for f in state.feedback] == ["C4", "C4", "G4", "G4"]
        assert updates == [(1, MeasureStatus.ANALYZING), (1, MeasureStatus.READY)]

    @pytest.mark.asyncio
    async def test_no_duplicate_analysis(self, performed, clock, twinkle_timeline, twinkle_boundaries):
        scheduler = make_scheduler(performed, clock)
        scheduler.begin(twinkle_timeline, twinkle_boundaries, 120, started_at=0.0)

        clock.now = 2.1
        assert scheduler.poll() == [1]
        assert scheduler.poll() == []
        assert scheduler.in_flight == 1
        await scheduler.drain()
        assert scheduler.poll() == []
        assert scheduler.states[1].attempts == 1

    @pytest.mark.asyncio
    async def test_catch_up_respects_concurrency_cap(self, settings, stream_factory, clock,
                                                     twinkle_timeline, twinkle_boundaries):
        capture = make_capture(settings, stream_factory, render_timeline(twinkle_timeline))
        blocking = BlockingClassifier(settings)
        scheduler = make_scheduler(capture, clock, classifier=blocking)
        scheduler.begin(twinkle_timeline, twinkle_boundaries, 120, started_at=0.0)

        clock.now = 10.0
        assert scheduler.poll() == [1, 2]
        analyzing = [n for n, s in scheduler.states.items() if s.status == MeasureStatus.ANALYZING]
        assert analyzing == [1, 2]

        blocking.release.set()
        await scheduler.drain()
        assert scheduler.poll() == [3, 4]
        await scheduler.drain()
        assert scheduler.poll() == [5]
        await scheduler.drain()
        assert all(s.status == MeasureStatus.READY for s in scheduler.states.values())


class TestFailures:

    @pytest.mark.asyncio
    async def test_extract_failure_is_retried(self, settings, stream_factory, clock,
                                              twinkle_timeline, twinkle_boundaries):
        capture = make_capture(settings, stream_factory)  # nothing captured yet
        scheduler = make_scheduler(capture, clock)
        scheduler.begin(twinkle_timeline, twinkle_boundaries, 120, started_at=0.0)

        clock.now = 2.1
        scheduler.poll()
        await scheduler.drain()
        failed = scheduler.states[1]
        assert failed.status == MeasureStatus.FAILED
        assert failed.retryable
        assert failed.failed_at == 2.1

        # Still on display
        clock.now = 4.0
        assert 1 not in scheduler.poll()
        assert scheduler.states[1].status == MeasureStatus.FAILED

        # Audio arrives, display time passes, the measure is retried
        for block in blocks(render_timeline(twinkle_timeline)):
            stream_factory.last.feed(block)
        clock.now = 5.2
        assert 1 in scheduler.poll()
        await scheduler.drain()
        assert scheduler.states[1].status == MeasureStatus.READY
        assert scheduler.states[1].attempts == 2

    @pytest.mark.asyncio
    async def test_retries_are_bounded(self, stream_factory, clock, twinkle_timeline, twinkle_boundaries):
        settings = EngineSettings(max_extract_attempts=2, max_concurrent_analyses=1)
        capture = make_capture(settings, stream_factory)
        scheduler = make_scheduler(capture, clock)
        scheduler.begin(twinkle_timeline[:4], twinkle_boundaries[:1], 120, started_at=0.0)

        clock.now = 2.1
        scheduler.poll()
        await scheduler.drain()
        clock.now = 5.2
        assert scheduler.poll() == [1]
        await scheduler.drain()
        assert scheduler.states[1].attempts == 2

        clock.now = 8.3
        assert scheduler.poll() == []
        assert 1 not in scheduler.states
        clock.now = 20.0
        assert scheduler.poll() == []

    @pytest.mark.asyncio
    async def test_timeout_marks_failed_then_clears(self, stream_factory, clock, twinkle_timeline, twinkle_boundaries):
        settings = EngineSettings(analysis_timeout=0.05)
        capture = make_capture(settings, stream_factory, render_timeline(twinkle_timeline))
        scheduler = make_scheduler(capture, clock, classifier=SlowClassifier(settings))
        scheduler.begin(twinkle_timeline, twinkle_boundaries, 120, started_at=0.0)

        clock.now = 2.1
        scheduler.poll()
        await scheduler.drain()
        state = scheduler.states[1]
        assert state.status == MeasureStatus.FAILED
        assert "exceeded" in state.reason
        assert not state.retryable

        # A failed measure does not hold up the next one
        clock.now = 4.1
        assert scheduler.poll() == [2]
        await scheduler.drain()

        clock.now = 5.2
        scheduler.poll()
        assert 1 not in scheduler.states
        await asyncio.sleep(0.35)  # let the worker threads finish


class TestGenerations:

    @pytest.mark.asyncio
    async def test_stale_completion_is_dropped(self, settings, stream_factory, clock,
                                               twinkle_timeline, twinkle_boundaries):
        capture = make_capture(settings, stream_factory, render_timeline(twinkle_timeline))
        blocking = BlockingClassifier(settings)
        scheduler = make_scheduler(capture, clock, classifier=blocking)
        first = scheduler.begin(twinkle_timeline, twinkle_boundaries, 120, started_at=0.0)

        clock.now = 2.1
        scheduler.poll()
        await asyncio.sleep(0.05)  # worker thread is now inside classify_range

        second = scheduler.begin(twinkle_timeline, twinkle_boundaries, 120, started_at=2.1)
        assert second > first
        blocking.release.set()
        await asyncio.sleep(0.2)

        assert scheduler.states[1].status == MeasureStatus.PENDING
        assert scheduler.in_flight == 0

    @pytest.mark.asyncio
    async def test_cancel_clears_everything(self, performed, clock, twinkle_timeline, twinkle_boundaries):
        scheduler = make_scheduler(performed, clock)
        scheduler.begin(twinkle_timeline, twinkle_boundaries, 120, started_at=0.0)
        clock.now = 2.1
        scheduler.poll()
        scheduler.cancel()

        assert scheduler.states == {}
        assert not scheduler.active
        assert scheduler.poll() == []

    @pytest.mark.asyncio
    async def test_run_polls_until_cancelled(self, performed, twinkle_timeline, twinkle_boundaries):
        settings = EngineSettings(poll_interval=0.01)
        scheduler = MeasureFeedbackScheduler(performed, settings=settings)
        # Started 2.05s ago, so measure 1 has already elapsed
        scheduler.begin(twinkle_timeline, twinkle_boundaries, 120, started_at=time.monotonic() - 2.05)
        task = scheduler.start_polling()

        for _ in range(100):
            await asyncio.sleep(0.02)
            if scheduler.states[1].status == MeasureStatus.READY:
                break
        assert scheduler.states[1].status == MeasureStatus.READY

        scheduler.cancel()
        await asyncio.sleep(0.01)
        assert task.cancelled() or task.done()


class TestTempoChange:

    @pytest.mark.asyncio
    async def test_boundaries_rescaled_after_change(self, performed, clock, twinkle_timeline, twinkle_boundaries):
        scheduler = make_scheduler(performed, clock)
        scheduler.begin(twinkle_timeline, twinkle_boundaries, 120, started_at=0.0)

        clock.now = 3.0
        scheduler.change_tempo(60)
        assert scheduler.tempo == 60
        assert scheduler.boundaries[0] == twinkle_boundaries[0]
        assert (scheduler.boundaries[1].start_time, scheduler.boundaries[1].end_time) == (2.0, 5.0)
        assert scheduler.boundaries[2].start_time == 5.0

        # Measure 2 now ends at 5.0s rather than 4.0s
        clock.now = 4.5
        assert scheduler.poll() == [1]
        assert scheduler.current_measure == 2
        await scheduler.drain()

    @pytest.mark.asyncio
    async def test_completed_measures_never_move(self, performed, clock, twinkle_timeline, twinkle_boundaries):
        scheduler = make_scheduler(performed, clock)
        scheduler.begin(twinkle_timeline, twinkle_boundaries, 120, started_at=0.0)
        scheduler.change_tempo(90, at=4.0)
        scheduler.change_tempo(150, at=6.0)
        assert scheduler.boundaries[:2] == twinkle_boundaries[:2]
        ends = [b.end_time for b in scheduler.boundaries]
        assert ends == sorted(ends)

    def test_invalid_tempo(self, performed, clock):
        scheduler = make_scheduler(performed, clock)
        with pytest.raises(ValueError):
            scheduler.change_tempo(0)


class TestStop:

    @pytest.mark.asyncio
    async def test_stop_returns_interrupted_measures_to_pending(self, settings, stream_factory, clock,
                                                                twinkle_timeline, twinkle_boundaries):
        capture = make_capture(settings, stream_factory, render_timeline(twinkle_timeline))
        blocking = BlockingClassifier(settings)
        updates = []
        scheduler = make_scheduler(capture, clock, classifier=blocking, updates=updates)
        scheduler.begin(twinkle_timeline, twinkle_boundaries, 120, started_at=0.0)

        clock.now = 2.1
        assert scheduler.poll() == [1]
        await asyncio.sleep(0.05)  # worker thread is now inside classify_range
        scheduler.stop()

        assert scheduler.states[1].status == MeasureStatus.PENDING
        assert scheduler.in_flight == 0
        assert updates[-1] == (1, MeasureStatus.PENDING)

        blocking.release.set()
        await asyncio.sleep(0.2)
        assert scheduler.states[1].status == MeasureStatus.PENDING
        assert scheduler.poll() == []

    @pytest.mark.asyncio
    async def test_stop_keeps_finished_measures(self, performed, clock, twinkle_timeline, twinkle_boundaries):
        scheduler = make_scheduler(performed, clock)
        scheduler.begin(twinkle_timeline, twinkle_boundaries, 120, started_at=0.0)
        clock.now = 2.1
        scheduler.poll()
        await scheduler.drain()
        scheduler.stop()
        assert scheduler.states[1].status == MeasureStatus.READY
        assert scheduler.states[2].status == MeasureStatus.PENDING


class TestExplicitTime:

    @pytest.mark.asyncio
    async def test_failure_time_follows_poll_time(self, stream_factory, twinkle_timeline, twinkle_boundaries):
        settings = EngineSettings(max_concurrent_analyses=1)
        capture = make_capture(settings, stream_factory)  # nothing captured
        # Wall clock far from the times the host passes in
        scheduler = make_scheduler(capture, lambda: 1000.0)
        scheduler.begin(twinkle_timeline[:4], twinkle_boundaries[:1], 120, started_at=0.0)

        assert scheduler.poll(now=2.1) == [1]
        await scheduler.drain()
        assert scheduler.states[1].failed_at == 2.1

        assert scheduler.poll(now=4.0) == []
        assert scheduler.states[1].status == MeasureStatus.FAILED

        assert scheduler.poll(now=5.2) == [1]
        await scheduler.drain()
        assert scheduler.states[1].attempts == 2
