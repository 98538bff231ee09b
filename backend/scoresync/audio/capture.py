"""
Live audio capture with arbitrary-range extraction.

The session keeps an append-only log of encoded chunks. Any time range can
be extracted while recording is still running: the whole log is decoded
and sliced. The last full decode is cached by chunk count, so repeated
reads between two appends decode once.
"""

import logging
import threading
from typing import Any, Callable, List, Optional, Tuple

import numpy as np

from scoresync.audio.codec import AudioBlob, AudioSegment, decode_chunks, encode_samples, to_mono
from scoresync.config import EngineSettings
from scoresync.errors import CaptureError, OutOfRangeError

logger = logging.getLogger(__name__)

# (samplerate, channels, blocksize, callback) -> stream with start/stop/close
StreamFactory = Callable[[int, int, int, Callable[..., None]], Any]


def sounddevice_stream(samplerate: int, channels: int, blocksize: int, callback):
    """Open the default input device."""
    import sounddevice as sd

    return sd.InputStream(
        samplerate=samplerate,
        channels=channels,
        blocksize=blocksize,
        dtype="float32",
        callback=callback,
    )


class AudioCaptureSession:
    """
    One recording at a time.

    Lifecycle: start() opens the device and clears the previous log,
    push() appends chunks (called from the device callback), stop() seals
    the log into a blob and releases the device. get_range() is valid during
    and after recording.
    """

    def __init__(
        self,
        settings: Optional[EngineSettings] = None,
        stream_factory: Optional[StreamFactory] = None,
    ):
        self.settings = settings or EngineSettings()
        self.sample_rate = self.settings.sample_rate
        self._stream_factory = stream_factory or sounddevice_stream
        self._stream = None
        self._chunks: List[bytes] = []
        self._samples_captured = 0
        self._recording = False
        self._cache: Optional[Tuple[int, np.ndarray]] = None
        self._cache_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def is_recording(self) -> bool:
        return self._recording

    @property
    def duration(self) -> float:
        """Seconds of audio captured so far."""
        return self._samples_captured / self.sample_rate

    @property
    def chunk_count(self) -> int:
        return len(self._chunks)

    # ------------------------------------------------------------------
    # Capture
    # ------------------------------------------------------------------

    def start(self) -> None:
        if self._recording:
            raise CaptureError("recording already in progress")

        self._chunks = []
        self._samples_captured = 0
        with self._cache_lock:
            self._cache = None

        s = self.settings
        blocksize = max(1, int(s.sample_rate * s.block_duration))
        try:
            self._stream = self._stream_factory(s.sample_rate, s.channels, blocksize, self._callback)
            self._stream.start()
        except Exception as e:
            self._stream = None
            logger.error("[capture] could not open input device: %s", e)
            raise CaptureError(f"could not open input device: {e}") from e

        self._recording = True
        logger.info("[capture] recording at %d Hz, %d-sample blocks", s.sample_rate, blocksize)

    def _callback(self, indata, frames, time_info, status) -> None:
        if status:
            logger.debug("[capture] stream status: %s", status)
        if self._recording:
            self.push(indata.copy())

    def push(self, samples: np.ndarray) -> None:
        """Encode and append one block of samples to the log."""
        if not self._recording:
            raise CaptureError("push() called while not recording")
        mono = to_mono(samples)
        if len(mono) == 0:
            return
        s = self.settings
        chunk = encode_samples(mono, s.sample_rate, format=s.chunk_format, subtype=s.chunk_subtype)
        self._chunks.append(chunk)
        self._samples_captured += len(mono)

    def stop(self) -> AudioBlob:
        """Seal the log into one blob and release the device."""
        if not self._recording:
            raise CaptureError("stop() called while not recording")
        self._recording = False

        stream, self._stream = self._stream, None
        if stream is not None:
            try:
                stream.stop()
                stream.close()
            except Exception as e:
                logger.error("[capture] error closing input device: %s", e)

        s = self.settings
        samples = self._decoded()
        # An empty recording seals to an empty blob
        data = b""
        if len(samples):
            data = encode_samples(samples, s.sample_rate, format=s.chunk_format, subtype=s.chunk_subtype)
        logger.info("[capture] stopped: %.2fs in %d chunks", self.duration, len(self._chunks))
        return AudioBlob(data=data, sample_rate=s.sample_rate, format=s.chunk_format)

    # ------------------------------------------------------------------
    # Extraction
    # ------------------------------------------------------------------

    def _decoded(self) -> np.ndarray:
        # Chunks are append-only, so a prefix snapshot is stable
        count = len(self._chunks)
        with self._cache_lock:
            if self._cache is not None and self._cache[0] == count:
                return self._cache[1]
            samples = decode_chunks(self._chunks[:count])
            self._cache = (count, samples)
            return samples

    def get_range(self, start_sec: float, end_sec: float) -> AudioSegment:
        """
        Extract [start_sec, end_sec) from everything captured so far.

        The end is clipped to the decoded length.

        Raises:
            ValueError: start is negative or the range is empty/inverted.
            OutOfRangeError: start lies past the decoded audio, or the slice is
                shorter than min_extract_samples.
        """
        if start_sec < 0 or end_sec <= start_sec:
            raise ValueError(f"invalid range [{start_sec}, {end_sec})")

        samples = self._decoded()
        sr = self.sample_rate
        available = len(samples) / sr
        if start_sec >= available:
            raise OutOfRangeError(start_sec, end_sec, available)

        start_idx = int(round(start_sec * sr))
        end_idx = min(len(samples), int(round(end_sec * sr)))
        if end_idx - start_idx < self.settings.min_extract_samples:
            raise OutOfRangeError(start_sec, end_sec, available)

        return AudioSegment(
            samples=samples[start_idx:end_idx].copy(),
            sample_rate=sr,
            start_time=start_idx / sr,
        )
