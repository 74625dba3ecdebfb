from __future__ import annotations

import logging
import math
import re
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Deque, Dict, List, Optional, Sequence, Tuple

logger = logging.getLogger(__name__)

BUFFER_SIZE = 300  # ~10 s at 30 fps
SAMPLE_RATE = 30
MIN_BPM = 42
MAX_BPM = 240
MIN_FREQUENCY = 0.7
MAX_FREQUENCY = 4.0
STABILIZATION_WINDOW = 90
SIGNAL_QUALITY_THRESHOLD = 0.15
BPM_CALCULATION_INTERVAL = 10
STABILITY_THRESHOLD = 5
STABLE_COUNT_REQUIRED = 3
PREVIEW_SAMPLES = 60


def extract_green_channel_mean(rgba: Sequence[int]) -> float:
    """Mean of the green channel over every 4th RGBA pixel."""
    samples = rgba[1::16]
    if not samples:
        return 0.0
    return float(sum(samples)) / len(samples)


def moving_average(signal: Sequence[float], window: int) -> List[float]:
    half = window // 2
    n = len(signal)
    out: List[float] = []
    for i in range(n):
        lo = max(0, i - half)
        hi = min(n - 1, i + half)
        chunk = signal[lo : hi + 1]
        out.append(sum(chunk) / len(chunk))
    return out


def detrend(signal: Sequence[float]) -> List[float]:
    """Subtract the least-squares line."""
    n = len(signal)
    if n < 2:
        return list(signal)
    sum_x = n * (n - 1) / 2.0
    sum_x2 = (n - 1) * n * (2 * n - 1) / 6.0
    sum_y = float(sum(signal))
    sum_xy = float(sum(i * v for i, v in enumerate(signal)))
    slope = (n * sum_xy - sum_x * sum_y) / (n * sum_x2 - sum_x * sum_x)
    intercept = (sum_y - slope * sum_x) / n
    return [v - (slope * i + intercept) for i, v in enumerate(signal)]


def bandpass_filter(
    signal: Sequence[float],
    sample_rate: float = SAMPLE_RATE,
    low: float = MIN_FREQUENCY,
    high: float = MAX_FREQUENCY,
) -> List[float]:
    """Moving-average low-pass, then high-pass by removing a wider moving average."""
    nyquist = sample_rate / 2.0
    lowpass_window = max(3, round(1 / (high / nyquist)))
    highpass_window = max(5, round(1 / (low / nyquist)))
    lowpassed = moving_average(signal, lowpass_window)
    baseline = moving_average(lowpassed, highpass_window)
    return [v - b for v, b in zip(lowpassed, baseline)]


def calculate_variance(signal: Sequence[float]) -> float:
    n = len(signal)
    if n < 2:
        return 0.0
    mean = sum(signal) / n
    return sum((v - mean) ** 2 for v in signal) / (n - 1)


def find_dominant_frequency(
    signal: Sequence[float],
    sample_rate: float = SAMPLE_RATE,
    min_f: float = MIN_FREQUENCY,
    max_f: float = MAX_FREQUENCY,
) -> Tuple[float, float]:
    """
    DFT magnitude peak inside [min_f, max_f]. The signal is zero padded to the
    next power of two and Hann windowed over its original length.
    Returns (frequency_hz, magnitude).
    """
    n = len(signal)
    if n < 2:
        return 0.0, 0.0
    size = 1 << (n - 1).bit_length()
    windowed = [v * 0.5 * (1 - math.cos(2 * math.pi * i / (n - 1))) for i, v in enumerate(signal)]

    min_bin = math.floor(min_f * size / sample_rate)
    max_bin = math.ceil(max_f * size / sample_rate)

    best_bin = min_bin
    best_mag = 0.0
    k = min_bin
    while k <= max_bin and k < size / 2:
        real = 0.0
        imag = 0.0
        step = -2 * math.pi * k / size
        # Padding samples are zero, only the original span contributes.
        for i, v in enumerate(windowed):
            angle = step * i
            real += v * math.cos(angle)
            imag += v * math.sin(angle)
        mag = math.hypot(real, imag)
        if mag > best_mag:
            best_mag = mag
            best_bin = k
        k += 1

    return best_bin * sample_rate / size, best_mag


def _round_half_up(value: float) -> int:
    # Halves round up: 112.5 -> 113.
    return int(math.floor(value + 0.5))


def calculate_bpm(signal: Sequence[float], sample_rate: float = SAMPLE_RATE) -> Tuple[Optional[int], float]:
    """Returns (bpm or None, signal quality 0..100)."""
    if len(signal) < STABILIZATION_WINDOW:
        return None, 0
    detrended = detrend(signal)
    variance = calculate_variance(detrended)
    if variance < SIGNAL_QUALITY_THRESHOLD:
        return None, min(50.0, variance / SIGNAL_QUALITY_THRESHOLD * 50)

    filtered = bandpass_filter(detrended, sample_rate, MIN_FREQUENCY, MAX_FREQUENCY)
    frequency, magnitude = find_dominant_frequency(filtered, sample_rate)
    bpm = _round_half_up(frequency * 60)
    if bpm < MIN_BPM or bpm > MAX_BPM:
        return None, 30

    quality = min(100, _round_half_up(magnitude / (variance * len(signal)) * 100 * 2))
    return bpm, max(50, quality)


def generate_ppg_signal(
    bpm: float,
    sample_rate: float = SAMPLE_RATE,
    duration_s: float = 10,
    noise: float = 0.0,
    rng: Optional[Callable[[], float]] = None,
) -> List[float]:
    """Synthetic PPG trace around a green level of 128 (demo and tests)."""
    freq = bpm / 60.0
    count = int(sample_rate * duration_s)
    out: List[float] = []
    for i in range(count):
        t = i / sample_rate
        value = 128 + 10 * math.sin(2 * math.pi * freq * t) + 3 * math.sin(4 * math.pi * freq * t)
        if noise and rng is not None:
            value += (rng() - 0.5) * 2 * noise * 10
        out.append(value)
    return out


@dataclass
class SignalData:
    bpm: Optional[int] = None
    signal_quality: float = 0
    is_stable: bool = False
    raw_signal: Optional[List[float]] = None
    filtered_signal: Optional[List[float]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "bpm": self.bpm,
            "signal_quality": self.signal_quality,
            "is_stable": self.is_stable,
            "raw_signal": list(self.raw_signal or []),
            "filtered_signal": list(self.filtered_signal or []),
        }


class HeartRateEstimator:
    """
    Feed one green-channel sample per frame. Every BPM_CALCULATION_INTERVAL
    frames (once the buffer holds STABILIZATION_WINDOW samples) the BPM is
    recalculated; it counts as stable after STABLE_COUNT_REQUIRED consecutive
    readings within STABILITY_THRESHOLD of the previous one.
    """

    def __init__(
        self,
        sample_rate: float = SAMPLE_RATE,
        on_bpm: Optional[Callable[[int], None]] = None,
    ) -> None:
        self.sample_rate = sample_rate
        self.on_bpm = on_bpm
        self._buffer: Deque[float] = deque(maxlen=BUFFER_SIZE)
        self._frames = 0
        self._last_bpm: Optional[int] = None
        self._stable_count = 0
        self.signal = SignalData()

    @property
    def frame_count(self) -> int:
        return self._frames

    @property
    def buffer_size(self) -> int:
        return len(self._buffer)

    def add_frame(self, rgba: Sequence[int]) -> SignalData:
        return self.add_sample(extract_green_channel_mean(rgba))

    def add_sample(self, green_mean: float) -> SignalData:
        self._buffer.append(float(green_mean))
        self._frames += 1
        if self._frames % BPM_CALCULATION_INTERVAL == 0 and len(self._buffer) >= STABILIZATION_WINDOW:
            self._recalculate()
        return self.signal

    def add_samples(self, samples: Sequence[float]) -> SignalData:
        for value in samples:
            self.add_sample(value)
        return self.signal

    def _recalculate(self) -> None:
        buffer = list(self._buffer)
        bpm, quality = calculate_bpm(buffer, self.sample_rate)

        is_stable = False
        if bpm is not None and self._last_bpm is not None:
            if abs(bpm - self._last_bpm) <= STABILITY_THRESHOLD:
                self._stable_count += 1
                is_stable = self._stable_count >= STABLE_COUNT_REQUIRED
            else:
                self._stable_count = 0
        self._last_bpm = bpm

        preview = buffer[-PREVIEW_SAMPLES:]
        filtered = bandpass_filter(detrend(preview), self.sample_rate) if bpm is not None else []
        self.signal = SignalData(
            bpm=bpm,
            signal_quality=quality,
            is_stable=is_stable,
            raw_signal=preview,
            filtered_signal=filtered,
        )

        if is_stable and bpm is not None and self.on_bpm is not None:
            try:
                self.on_bpm(bpm)
            except Exception:
                logger.exception("[heart-rate] bpm callback failed")

    def status(self) -> Dict[str, Any]:
        out = self.signal.to_dict()
        out["frame_count"] = self._frames
        out["buffer_size"] = len(self._buffer)
        out["stable_count"] = self._stable_count
        return out

    def reset(self) -> None:
        self._buffer.clear()
        self._frames = 0
        self._last_bpm = None
        self._stable_count = 0
        self.signal = SignalData()


def estimate(samples: Sequence[float], sample_rate: float = SAMPLE_RATE) -> Dict[str, Any]:
    """Run a whole recording through a fresh estimator and report the final reading."""
    estimator = HeartRateEstimator(sample_rate=sample_rate)
    estimator.add_samples(samples)
    return estimator.status()


_ANDROID = re.compile(r"android")
_CHROME = re.compile(r"chrome")
_EDGE = re.compile(r"edge|edg")
_IOS = re.compile(r"iphone|ipad|ipod")


@dataclass(frozen=True)
class CameraCapabilities:
    has_torch: bool
    is_mobile: bool
    is_android_chrome: bool
    is_supported: bool
    unsupported_reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "has_torch": self.has_torch,
            "is_mobile": self.is_mobile,
            "is_android_chrome": self.is_android_chrome,
            "is_supported": self.is_supported,
            "unsupported_reason": self.unsupported_reason,
        }


def check_torch_capability(user_agent: Optional[str]) -> CameraCapabilities:
    ua = (user_agent or "").lower()
    is_android = bool(_ANDROID.search(ua))
    is_chrome = bool(_CHROME.search(ua)) and not _EDGE.search(ua)
    is_ios = bool(_IOS.search(ua))
    is_mobile = is_android or is_ios
    android_chrome = is_android and is_chrome

    if is_ios:
        reason = "iOS Safari does not support flash/torch control"
    elif not is_mobile:
        reason = "Desktop webcams do not have flash capability"
    elif not android_chrome:
        reason = "Device camera does not support torch/flash"
    else:
        return CameraCapabilities(True, True, True, True)
    return CameraCapabilities(False, is_mobile, android_chrome, False, reason)


__all__ = [
    "extract_green_channel_mean",
    "moving_average",
    "detrend",
    "bandpass_filter",
    "calculate_variance",
    "find_dominant_frequency",
    "calculate_bpm",
    "generate_ppg_signal",
    "SignalData",
    "HeartRateEstimator",
    "estimate",
    "CameraCapabilities",
    "check_torch_capability",
]
