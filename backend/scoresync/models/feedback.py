from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class Accuracy(str, Enum):
    CORRECT = "correct"
    SLIGHTLY_OFF = "slightly_off"
    WRONG = "wrong"

    @property
    def severity(self) -> int:
        return _SEVERITY[self]

    @classmethod
    def worst(cls, values) -> "Accuracy":
        """Worst-case accuracy (wrong > slightly_off > correct); CORRECT if empty."""
        worst = cls.CORRECT
        for value in values:
            if value.severity > worst.severity:
                worst = value
        return worst


_SEVERITY = {Accuracy.CORRECT: 0, Accuracy.SLIGHTLY_OFF: 1, Accuracy.WRONG: 2}


class IssueTag(str, Enum):
    MISSED_ENTRY = "Missed entry"
    SLIGHTLY_FLAT = "Slightly flat"
    SLIGHTLY_SHARP = "Slightly sharp"
    FLAT_NOTE = "Flat note"
    SHARP_NOTE = "Sharp note"
    WRONG_NOTE = "Wrong note"
    LATE = "Late"
    EARLY = "Early"


class SessionIssue(str, Enum):
    FLAT_NOTES = "Flat notes"
    SHARP_NOTES = "Sharp notes"
    RUSHING = "Rushing"


class NoteResult(BaseModel):
    """Pitch verdict for a single analysis window."""
    model_config = ConfigDict(frozen=True)

    expected_frequency: float
    detected_frequency: Optional[float] = None
    played_note: Optional[str] = None
    confidence: float = 0.0
    accuracy: Accuracy
    issues: List[IssueTag] = Field(default_factory=list)


class NoteFeedback(BaseModel):
    model_config = ConfigDict(frozen=True)

    bar: int
    note_index: int
    expected_note: str
    played_note: Optional[str] = None
    detected_frequency: Optional[float] = None
    accuracy: Accuracy
    issues: List[IssueTag] = Field(default_factory=list)
    timing_ms: float = 0.0


class RangeAnalysis(BaseModel):
    """Classifier output for a measure or a whole performance."""
    model_config = ConfigDict(frozen=True)

    feedback: List[NoteFeedback] = Field(default_factory=list)
    measure_accuracy: Dict[int, Accuracy] = Field(default_factory=dict)
    session_issues: List[SessionIssue] = Field(default_factory=list)

    def for_bar(self, bar: int) -> List[NoteFeedback]:
        return [f for f in self.feedback if f.bar == bar]


class DifficultMeasure(BaseModel):
    model_config = ConfigDict(frozen=True)

    bar: int
    accuracy: float  # percent correct
    total_notes: int


class PerformanceReport(BaseModel):
    """Final feedback for a recording, consumed by the rendering side."""
    model_config = ConfigDict(frozen=True)

    feedback: List[NoteFeedback] = Field(default_factory=list)
    measure_accuracy: Dict[int, Accuracy] = Field(default_factory=dict)
    measure_scores: Dict[int, float] = Field(default_factory=dict)
    overall_accuracy: float = 0.0
    rhythm_score: float = 0.0
    session_issues: List[SessionIssue] = Field(default_factory=list)
    main_issues: List[str] = Field(default_factory=list)
    difficult_measures: List[DifficultMeasure] = Field(default_factory=list)
    tips: List[str] = Field(default_factory=list)
    error: Optional[str] = None
