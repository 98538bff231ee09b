import pytest

from scoresync.config import EngineSettings
from scoresync.notation.fallback import fallback_score
from scoresync.timeline import build_timeline, measure_boundaries

from synth import FakeClock, FakeStreamFactory


@pytest.fixture
def settings():
    return EngineSettings()


@pytest.fixture
def stream_factory():
    return FakeStreamFactory()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def twinkle():
    return fallback_score()


@pytest.fixture
def twinkle_timeline(twinkle):
    return build_timeline(twinkle, 120)


@pytest.fixture
def twinkle_boundaries(twinkle):
    return measure_boundaries(twinkle, 120)


SIMPLE_SCORE = """<?xml version="1.0" encoding="UTF-8"?>
<score-partwise version="3.1">
  <work><work-title>Scale Study</work-title></work>
  <identification><creator type="composer">Anon</creator></identification>
  <part-list><score-part id="P1"><part-name>Violin</part-name></score-part></part-list>
  <part id="P1">
    <measure number="1">
      <attributes>
        <divisions>2</divisions>
        <key><fifths>1</fifths><mode>major</mode></key>
        <time><beats>4</beats><beat-type>4</beat-type></time>
      </attributes>
      <direction><sound tempo="96"/></direction>
      <note><pitch><step>G</step><octave>4</octave></pitch><duration>2</duration><voice>1</voice><stem>up</stem></note>
      <note><pitch><step>A</step><octave>4</octave></pitch><duration>2</duration></note>
      <note><rest/><duration>2</duration></note>
      <note><pitch><step>F</step><alter>1</alter><octave>4</octave></pitch><duration>2</duration><accidental>sharp</accidental></note>
    </measure>
    <measure number="2">
      <print new-system="yes"/>
      <note><pitch><step>G</step><octave>4</octave></pitch><duration>3</duration><dot/></note>
      <note><pitch><step>B</step><alter>-1</alter><octave>4</octave></pitch><duration>2</duration><tie type="start"/></note>
      <note><chord/><pitch><step>D</step><octave>5</octave></pitch><duration>2</duration></note>
    </measure>
  </part>
</score-partwise>
"""


@pytest.fixture
def simple_xml():
    return SIMPLE_SCORE
