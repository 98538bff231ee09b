"""
YIN fundamental-frequency estimation.

Monophonic estimator tuned for melodic instruments in the 100-2000 Hz range:
- difference function over lags up to sample_rate / 50
- cumulative mean normalized difference (CMND)
- first dip under an absolute threshold, refined by parabolic interpolation
- RMS gate so silence returns None instead of a noise pitch
"""

from dataclasses import dataclass
from typing import Optional, Sequence, Union

import numpy as np

from scoresync.notation.pitch import frequency_to_note

DEFAULT_THRESHOLD = 0.10
DEFAULT_SILENCE_RMS = 0.003
MIN_SAMPLES = 512


@dataclass(frozen=True)
class PitchEstimate:
    frequency: float
    confidence: float
    rms: float

    @property
    def note(self) -> Optional[str]:
        return frequency_to_note(self.frequency)


def cumulative_mean_normalized_difference(audio: np.ndarray, tau_max: int) -> np.ndarray:
    buffer_size = len(audio)
    window = buffer_size - tau_max

    # Difference function
    difference = np.zeros(tau_max)
    for tau in range(1, tau_max):
        delta = audio[:window] - audio[tau:tau + window]
        difference[tau] = np.dot(delta, delta)

    cmnd = np.ones(tau_max)
    cumulative = np.cumsum(difference[1:])
    taus = np.arange(1, tau_max)
    with np.errstate(divide="ignore", invalid="ignore"):
        normalized = np.where(cumulative > 0, difference[1:] * taus / cumulative, 1.0)
    cmnd[1:] = normalized
    return cmnd


def detect_fundamental(
    samples: Union[np.ndarray, Sequence[float]],
    sample_rate: int = 44100,
    threshold: float = DEFAULT_THRESHOLD,
    min_frequency: float = 50.0,
    max_frequency: float = 4500.0,
    silence_rms: float = DEFAULT_SILENCE_RMS,
) -> Optional[PitchEstimate]:
    """
    Estimate the fundamental frequency of a mono window.

    Args:
        samples: Audio samples (float, roughly -1..1).
        sample_rate: Sample rate in Hz.
        threshold: CMND dip threshold; lower is stricter.
        min_frequency: Lowest frequency to report.
        max_frequency: Highest frequency to report.
        silence_rms: Windows quieter than this return None.

    Returns: PitchEstimate, or None if nothing periodic was found.
    """
    audio = np.asarray(samples, dtype=np.float64).ravel()
    if len(audio) < MIN_SAMPLES:
        return None

    rms = float(np.sqrt(np.mean(audio ** 2)))
    if rms < silence_rms:
        return None

    audio = audio - np.mean(audio)
    tau_max = min(len(audio) // 2, int(sample_rate // 50))
    if tau_max < 3:
        return None

    cmnd = cumulative_mean_normalized_difference(audio, tau_max)

    tau = 2
    while tau < tau_max:
        if cmnd[tau] < threshold:
            while tau + 1 < tau_max and cmnd[tau + 1] < cmnd[tau]:
                tau += 1
            break
        tau += 1
    else:
        return None

    # Parabolic interpolation
    refined_tau = float(tau)
    if 0 < tau < tau_max - 1:
        alpha, beta, gamma = cmnd[tau - 1], cmnd[tau], cmnd[tau + 1]
        denominator = 2 * (alpha - 2 * beta + gamma)
        if abs(denominator) > 1e-10:
            refined_tau = tau + (alpha - gamma) / denominator

    if refined_tau <= 0:
        return None
    frequency = sample_rate / refined_tau
    if not min_frequency <= frequency <= max_frequency:
        return None

    base_confidence = 1.0 - float(cmnd[tau])
    volume_boost = min(0.3, rms * 20)
    confidence = min(0.98, max(0.3, base_confidence + volume_boost * 0.3))
    return PitchEstimate(frequency=float(frequency), confidence=float(confidence), rms=rms)
