"""Screenshot Capture, Perceptual Fingerprinting and Change Detection.

This module provides functionality for sampling the desktop and deciding
whether a sample differs enough from the last analyzed one to be worth
sending to the vision model. It uses the MSS library for fast
cross-platform screen capture and an average hash (aHash) as the
perceptual fingerprint.

The module handles:
- Primary monitor screenshot capture
- 64-bit average-hash fingerprints, tolerant of any resolution or aspect ratio
- Similarity scoring via Hamming distance
- Skip/analyze decisions against a baseline that survives skipped frames
- JPEG encoding for model upload and on-disk screenshots

Key Classes:
    ScreenCapture: Samples the primary monitor
    ChangeDetector: Two-state skip/analyze gate
    CaptureError: Raised when sampling fails

Example:
    >>> from screenlog.capture import ScreenCapture, ChangeDetector, average_hash
    >>> image = ScreenCapture().grab()
    >>> detector = ChangeDetector()
    >>> decision = detector.check(average_hash(image), skip_unchanged=True, change_threshold=0.95)
    >>> decision.skip
    False
"""

import base64
import io
import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import mss
from PIL import Image

logger = logging.getLogger(__name__)

HASH_SIZE = 8
HASH_BITS = HASH_SIZE * HASH_SIZE


class CaptureError(Exception):
    """Raised when a screen sample cannot be taken.

    Typical causes are a missing display server, no monitors detected,
    or an image conversion failure. The capture loop logs it and skips
    the tick.
    """


class ScreenCapture:
    """Samples the primary monitor as a PIL image.

    Example:
        >>> capture = ScreenCapture()
        >>> image = capture.grab()
        >>> image.size
        (1920, 1080)
    """

    def __init__(self, monitor_index: int = 1):
        """Initialize the capture.

        Args:
            monitor_index: MSS monitor index. 0 is the union of all monitors,
                1 is the primary monitor (default).
        """
        self.monitor_index = monitor_index

    def grab(self) -> Image.Image:
        """Capture the configured monitor.

        Returns:
            RGB PIL image of the monitor.

        Raises:
            CaptureError: If the display cannot be read.
        """
        try:
            with mss.mss() as sct:
                if len(sct.monitors) <= self.monitor_index:
                    raise CaptureError("No monitors detected")
                screenshot = sct.grab(sct.monitors[self.monitor_index])
                return Image.frombytes("RGB", screenshot.size, screenshot.rgb)

        except CaptureError:
            raise
        except OSError as e:
            if "cannot connect to display" in str(e).lower():
                raise CaptureError("Cannot connect to display server. Is a graphical session running?") from e
            raise CaptureError(f"Display server error: {e}") from e
        except Exception as e:
            raise CaptureError(f"Failed to capture screenshot: {e}") from e

    __call__ = grab


def average_hash(img: Image.Image, hash_size: int = HASH_SIZE) -> int:
    """Compute the average hash (aHash) of an image.

    The algorithm:
    1. Convert to grayscale
    2. Resample to hash_size x hash_size, whatever the input size or aspect ratio
    3. Compute the mean luminance of the cells
    4. Set bit i when cell i is brighter than the mean

    Args:
        img: PIL image of any size and mode.
        hash_size: Grid size; 8 gives a 64-bit fingerprint.

    Returns:
        The fingerprint as a non-negative integer below 2 ** (hash_size ** 2).
    """
    small = img.convert("L").resize((hash_size, hash_size), Image.Resampling.BILINEAR)
    pixels = list(small.getdata())
    mean = sum(pixels) / len(pixels)

    value = 0
    for i, pixel in enumerate(pixels):
        if pixel > mean:
            value |= (1 << i)
    return value


def hamming_distance(hash1: int, hash2: int) -> int:
    """Number of differing bits between two fingerprints."""
    return bin(hash1 ^ hash2).count('1')


def hash_similarity(hash1: int, hash2: int, bits: int = HASH_BITS) -> float:
    """Similarity in [0, 1]: 1 - hamming distance / bit length.

    Example:
        >>> hash_similarity(0, 0)
        1.0
        >>> hash_similarity(0, (1 << 64) - 1)
        0.0
    """
    return 1.0 - hamming_distance(hash1, hash2) / bits


def format_hash(value: int) -> str:
    """16-character hex rendering of a 64-bit fingerprint, for logs."""
    return f"{value:016x}"


@dataclass(frozen=True)
class ChangeDecision:
    """Outcome of a change check.

    Attributes:
        skip: True when analysis should be skipped
        similarity: Similarity to the baseline, None when there was no baseline
    """
    skip: bool
    similarity: Optional[float]


class ChangeDetector:
    """Decides whether a frame differs enough from the last analyzed one.

    The detector has two states: no baseline (every frame counts as changed)
    and baseline set. The baseline is only replaced by ``commit`` after a
    frame has actually been analyzed, so skipped frames never move it and a
    slow drift keeps accumulating against the last analyzed frame instead of
    slipping under the threshold one small step at a time.
    """

    def __init__(self):
        self._baseline: Optional[int] = None
        self._lock = threading.Lock()

    @property
    def baseline(self) -> Optional[int]:
        with self._lock:
            return self._baseline

    @property
    def has_baseline(self) -> bool:
        return self.baseline is not None

    def check(self, fingerprint: int, skip_unchanged: bool, change_threshold: float) -> ChangeDecision:
        """Compare ``fingerprint`` against the baseline.

        Args:
            fingerprint: Fingerprint of the current frame.
            skip_unchanged: Whether skipping is enabled at all.
            change_threshold: Similarity at or above which the frame is unchanged.

        Returns:
            ChangeDecision; ``skip`` is True iff skipping is enabled and
            similarity >= change_threshold.
        """
        baseline = self.baseline
        if baseline is None:
            return ChangeDecision(skip=False, similarity=None)

        similarity = hash_similarity(baseline, fingerprint)
        skip = bool(skip_unchanged) and similarity >= change_threshold
        return ChangeDecision(skip=skip, similarity=similarity)

    def commit(self, fingerprint: int) -> None:
        """Record ``fingerprint`` as the last analyzed frame."""
        with self._lock:
            self._baseline = fingerprint

    def reset(self) -> None:
        """Forget the baseline; the next frame is always analyzed."""
        with self._lock:
            self._baseline = None


def prepare_image(img: Image.Image, max_size: int = 1568) -> Image.Image:
    """Downscale to max_size on the longest side and convert to RGB."""
    if img.width > max_size or img.height > max_size:
        if img.width > img.height:
            ratio = max_size / img.width
        else:
            ratio = max_size / img.height
        img = img.resize((max(1, int(img.width * ratio)), max(1, int(img.height * ratio))),
                         Image.Resampling.LANCZOS)
    if img.mode != "RGB":
        img = img.convert("RGB")
    return img


def encode_jpeg(img: Image.Image, quality: int = 80) -> bytes:
    """Encode an image as JPEG bytes at the given quality."""
    buffer = io.BytesIO()
    prepare_image(img).save(buffer, format="JPEG", quality=max(1, min(100, quality)))
    return buffer.getvalue()


def image_to_base64(img: Image.Image, quality: int = 80) -> str:
    """JPEG-encode and base64 an image for a model request."""
    return base64.b64encode(encode_jpeg(img, quality)).decode("utf-8")


def save_jpeg(img: Image.Image, path: Path, quality: int = 80) -> Path:
    """Write an image to ``path`` as JPEG.

    Raises:
        CaptureError: If the file cannot be written.
    """
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(encode_jpeg(img, quality))
    except OSError as e:
        raise CaptureError(f"Failed to save screenshot to {path}: {e}") from e
    return path
