"""
Performance summaries built from classifier output.

Turns a RangeAnalysis for a whole recording into the report shown after a
practice run: overall and per-measure accuracy, rhythm score, the main
issues, the measures worth repeating and a couple of practice tips.
"""

from typing import Dict, List, Optional, Sequence

from scoresync.models.feedback import (
    Accuracy,
    DifficultMeasure,
    NoteFeedback,
    PerformanceReport,
    RangeAnalysis,
)

DIFFICULT_THRESHOLD = 70.0  # percent correct
MAX_DIFFICULT_MEASURES = 3
LOW_ACCURACY_THRESHOLD = 50.0
MAX_TIPS = 2


def _percent(part: float, total: int) -> float:
    return round(part / total * 100.0, 1) if total else 0.0


def overall_accuracy(feedback: Sequence[NoteFeedback]) -> float:
    correct = sum(1 for f in feedback if f.accuracy == Accuracy.CORRECT)
    return _percent(correct, len(feedback))


def rhythm_score(feedback: Sequence[NoteFeedback], tolerance_ms: float = 100.0) -> float:
    """Full credit within tolerance, half credit within twice the tolerance."""
    score = 0.0
    for f in feedback:
        offset = abs(f.timing_ms)
        if offset < tolerance_ms:
            score += 1.0
        elif offset < 2 * tolerance_ms:
            score += 0.5
    return _percent(score, len(feedback))


def measure_scores(feedback: Sequence[NoteFeedback]) -> Dict[int, float]:
    """Percent of correct notes per bar."""
    totals: Dict[int, List[int]] = {}
    for f in feedback:
        counts = totals.setdefault(f.bar, [0, 0])
        counts[1] += 1
        if f.accuracy == Accuracy.CORRECT:
            counts[0] += 1
    return {bar: _percent(correct, total) for bar, (correct, total) in sorted(totals.items())}


def difficult_measures(
    feedback: Sequence[NoteFeedback],
    threshold: float = DIFFICULT_THRESHOLD,
    limit: int = MAX_DIFFICULT_MEASURES,
) -> List[DifficultMeasure]:
    """Bars under the threshold, hardest first (ties by bar number)."""
    totals: Dict[int, int] = {}
    for f in feedback:
        totals[f.bar] = totals.get(f.bar, 0) + 1

    scores = measure_scores(feedback)
    candidates = [
        DifficultMeasure(bar=bar, accuracy=score, total_notes=totals[bar])
        for bar, score in scores.items()
        if score < threshold
    ]
    candidates.sort(key=lambda m: (m.accuracy, m.bar))
    return candidates[:limit]


def practice_tips(accuracy: float, main_issues: Sequence[str]) -> List[str]:
    tips = []
    if accuracy < 70:
        tips.append("Practice at a slower tempo; speed will come naturally")
        tips.append("Focus on one measure at a time before moving forward")
    elif accuracy < 85:
        tips.append("You're doing well! Try practicing difficult sections separately")
        tips.append("Use the metronome to help maintain steady rhythm")
    else:
        tips.append("Excellent progress! Try increasing the tempo gradually")
        tips.append("Focus on musical expression and dynamics")

    lowered = [issue.lower() for issue in main_issues]
    if any("rushing" in issue or "rhythm" in issue for issue in lowered):
        tips.insert(0, "Tap the rhythm before playing to internalize the timing")
    if any("flat" in issue or "sharp" in issue for issue in lowered):
        tips.insert(0, "Listen carefully to each note; intonation improves with focused listening")
    return tips[:MAX_TIPS]


def summarize_performance(
    analysis: RangeAnalysis,
    timing_tolerance_ms: float = 100.0,
    error: Optional[str] = None,
) -> PerformanceReport:
    feedback = analysis.feedback
    accuracy = overall_accuracy(feedback)

    main_issues = []
    if analysis.session_issues:
        main_issues.append(f"Main issue: {analysis.session_issues[0].value}")
    if accuracy < LOW_ACCURACY_THRESHOLD:
        main_issues.append("Low accuracy - practice slowly")

    return PerformanceReport(
        feedback=feedback,
        measure_accuracy=analysis.measure_accuracy,
        measure_scores=measure_scores(feedback),
        overall_accuracy=accuracy,
        rhythm_score=rhythm_score(feedback, timing_tolerance_ms),
        session_issues=analysis.session_issues,
        main_issues=main_issues,
        difficult_measures=difficult_measures(feedback),
        tips=practice_tips(accuracy, main_issues) if feedback else [],
        error=error,
    )
