"""
Error taxonomy for the score-sync engine.

Parse and capture-device failures propagate to the caller. Extraction,
classification and timeout failures are absorbed by the scheduler and the
classifier and turned into data (a failed measure or a wrong note).
"""


class ScoreSyncError(Exception):
    """Base class for all engine errors."""


class ParseError(ScoreSyncError):
    """The notation source is not well-formed or lacks part/measure structure."""


class CaptureError(ScoreSyncError):
    """The capture device could not be opened, started or stopped."""


class ExtractError(ScoreSyncError):
    """A time range could not be extracted from the captured audio."""


class OutOfRangeError(ExtractError):
    """Requested range is not decoded yet or is shorter than the minimum window."""

    def __init__(self, start_sec: float, end_sec: float, available_sec: float):
        self.start_sec = start_sec
        self.end_sec = end_sec
        self.available_sec = available_sec
        super().__init__(
            f"range [{start_sec:.3f}s, {end_sec:.3f}s) not available "
            f"({available_sec:.3f}s decoded)"
        )


class ClassificationError(ScoreSyncError):
    """The pitch estimator raised while analysing a window."""


class AnalysisTimeoutError(ScoreSyncError):
    """Decode or classification exceeded the configured time bound."""

    def __init__(self, timeout: float):
        self.timeout = timeout
        super().__init__(f"analysis exceeded {timeout:.1f}s")
