#!/usr/bin/env python3
"""
Tests for the expected-note timeline, measure boundaries and tempo rescaling.
"""

import pytest

from scoresync.notation.fallback import FALLBACK_PATTERN, fallback_score
from scoresync.notation.musicxml_parser import parse_musicxml
from scoresync.timeline import (
    build_timeline,
    measure_boundaries,
    notes_in_bar,
    rescale_boundaries,
    rescale_timeline,
    seconds_per_beat,
)


class TestBuildTimeline:

    def test_absolute_times_follow_tempo(self, twinkle):
        timeline = build_timeline(twinkle, 120)
        assert [n.time for n in timeline[:4]] == [0.0, 0.5, 1.0, 1.5]
        assert timeline[6].duration == pytest.approx(1.0)  # half note in bar 2

        slow = build_timeline(twinkle, 60)
        assert [n.time for n in slow[:4]] == [0.0, 1.0, 2.0, 3.0]

    def test_bar_and_index(self, twinkle_timeline):
        bar2 = notes_in_bar(twinkle_timeline, 2)
        assert [n.note_index for n in bar2] == [0, 1, 2]
        assert [n.pitch for n in bar2] == ["A4", "A4", "G4"]
        assert bar2[0].frequency == pytest.approx(440.0)

    def test_deterministic(self, twinkle):
        assert build_timeline(twinkle, 96) == build_timeline(twinkle, 96)

    def test_sorted_by_time(self, simple_xml):
        timeline = build_timeline(parse_musicxml(simple_xml), 96)
        times = [n.time for n in timeline]
        assert times == sorted(times)

    def test_chord_notes_share_time(self, simple_xml):
        timeline = build_timeline(parse_musicxml(simple_xml), 60)
        bar2 = notes_in_bar(timeline, 2)
        assert bar2[1].time == bar2[2].time == pytest.approx(6.25)

    def test_max_measures(self, twinkle):
        timeline = build_timeline(twinkle, 120, max_measures=2)
        assert {n.bar for n in timeline} == {1, 2}
        assert len(timeline) == 7

    def test_fallback_when_no_score(self):
        timeline = build_timeline(None, 120)
        assert len(timeline) == sum(len(bar) for bar in FALLBACK_PATTERN)
        assert timeline[0].pitch == "C4"
        assert timeline[-1].bar == len(FALLBACK_PATTERN)

    def test_fallback_systems(self):
        score = fallback_score(measures_per_system=2)
        assert [m.system_index for m in score.measures] == [0, 0, 1, 1, 2]

    @pytest.mark.parametrize("tempo", [0, -10])
    def test_non_positive_tempo(self, twinkle, tempo):
        with pytest.raises(ValueError):
            build_timeline(twinkle, tempo)
        with pytest.raises(ValueError):
            seconds_per_beat(tempo)


class TestMeasureBoundaries:

    def test_boundaries_tile_the_piece(self, twinkle_boundaries):
        assert [(b.start_time, b.end_time) for b in twinkle_boundaries[:3]] == [
            (0.0, 2.0), (2.0, 4.0), (4.0, 6.0),
        ]
        for prev, cur in zip(twinkle_boundaries, twinkle_boundaries[1:]):
            assert cur.start_time == prev.end_time

    def test_fallback_boundaries(self):
        assert len(measure_boundaries(None, 120)) == len(FALLBACK_PATTERN)


class TestTempoRescaling:

    def test_boundaries_before_change_unchanged(self, twinkle_boundaries):
        rescaled = rescale_boundaries(twinkle_boundaries, 4.0, 120, 60)
        assert rescaled[:2] == twinkle_boundaries[:2]

    def test_boundaries_after_change_scaled(self, twinkle_boundaries):
        # Slowing from 120 to 60 BPM doubles every interval after the change
        rescaled = rescale_boundaries(twinkle_boundaries, 4.0, 120, 60)
        assert (rescaled[2].start_time, rescaled[2].end_time) == (4.0, 8.0)
        assert (rescaled[3].start_time, rescaled[3].end_time) == (8.0, 12.0)

    def test_speed_up(self, twinkle_boundaries):
        rescaled = rescale_boundaries(twinkle_boundaries, 2.0, 120, 180)
        assert rescaled[1].end_time == pytest.approx(2.0 + 2.0 * 120 / 180)

    def test_notes_before_change_unchanged(self, twinkle_timeline):
        rescaled = rescale_timeline(twinkle_timeline, 3.0, 120, 90)
        early = [n for n in twinkle_timeline if n.end_time <= 3.0]
        assert rescaled[:len(early)] == early

    def test_note_spanning_change_is_split(self, twinkle_timeline):
        # G4 half note in bar 2 sounds from 3.0s to 4.0s; change at 3.5s
        rescaled = rescale_timeline(twinkle_timeline, 3.5, 120, 60)
        g4 = rescaled[6]
        assert g4.time == 3.0
        assert g4.duration == pytest.approx(0.5 + 0.5 * 2)
        assert rescaled[7].time == pytest.approx(3.5 + 0.5 * 2)

    def test_rescale_matches_rebuild_from_zero(self, twinkle):
        at_120 = build_timeline(twinkle, 120)
        at_60 = build_timeline(twinkle, 60)
        rescaled = rescale_timeline(at_120, 0.0, 120, 60)
        for a, b in zip(rescaled[1:], at_60[1:]):
            assert a.time == pytest.approx(b.time)
            assert a.duration == pytest.approx(b.duration)
