"""
Chunk encoding and decoding for captured audio.

Captured audio is stored as a log of small self-contained soundfile blobs
(FLAC by default). Decoding is pure: the same chunks always decode to the
same samples, so any number of readers can decode the log independently.
"""

import io
from dataclasses import dataclass
from math import gcd
from typing import Iterable, Optional

import numpy as np
import soundfile as sf
from scipy.signal import resample_poly


@dataclass(frozen=True)
class AudioSegment:
    """Mono float32 samples starting at start_time seconds into the recording."""
    samples: np.ndarray
    sample_rate: int
    start_time: float = 0.0

    @property
    def duration(self) -> float:
        return len(self.samples) / self.sample_rate

    @property
    def end_time(self) -> float:
        return self.start_time + self.duration


@dataclass(frozen=True)
class AudioBlob:
    """A sealed recording."""
    data: bytes
    sample_rate: int
    format: str = "FLAC"

    def __len__(self) -> int:
        return len(self.data)


def to_mono(samples: np.ndarray) -> np.ndarray:
    audio = np.asarray(samples, dtype=np.float32)
    if audio.ndim == 2:
        audio = audio.mean(axis=1)
    return audio.ravel()


def encode_samples(
    samples: np.ndarray,
    sample_rate: int,
    format: str = "FLAC",
    subtype: Optional[str] = "PCM_16",
) -> bytes:
    buffer = io.BytesIO()
    data = np.clip(np.asarray(samples, dtype=np.float32), -1.0, 1.0)
    sf.write(buffer, data, sample_rate, format=format, subtype=subtype)
    return buffer.getvalue()


def decode_chunk(data: bytes) -> np.ndarray:
    """Decode one encoded chunk to mono float32."""
    samples, _ = sf.read(io.BytesIO(data), dtype="float32", always_2d=False)
    return to_mono(samples)


def decode_chunks(chunks: Iterable[bytes]) -> np.ndarray:
    decoded = [decode_chunk(chunk) for chunk in chunks]
    if not decoded:
        return np.zeros(0, dtype=np.float32)
    return np.concatenate(decoded)


def resample(samples: np.ndarray, source_rate: int, target_rate: int) -> np.ndarray:
    if source_rate == target_rate or len(samples) == 0:
        return samples
    divisor = gcd(int(source_rate), int(target_rate))
    up, down = int(target_rate) // divisor, int(source_rate) // divisor
    return resample_poly(samples, up, down).astype(np.float32)


def decode_full(blob: AudioBlob, target_rate: Optional[int] = None) -> AudioSegment:
    """
    Decode a sealed blob to mono samples.

    Args:
        blob: Recording produced by AudioCaptureSession.stop().
        target_rate: Resample to this rate when it differs from the blob's.
    """
    if not blob.data:
        return AudioSegment(np.zeros(0, dtype=np.float32), target_rate or blob.sample_rate)
    samples, rate = sf.read(io.BytesIO(blob.data), dtype="float32", always_2d=False)
    samples = to_mono(samples)
    if target_rate is not None and target_rate != rate:
        samples = resample(samples, rate, target_rate)
        rate = target_rate
    return AudioSegment(samples=samples, sample_rate=int(rate), start_time=0.0)
