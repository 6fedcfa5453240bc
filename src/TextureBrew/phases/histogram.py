"""Percentile-based value range normalization before encoding.

The hard-clamp mapping ``(v - offset) / scale`` is linear, so a shader can
restore the original range with ``original = sampled * scale + offset``.
The soft-knee variant bends values near the bounds and is a preprocessing
quality option only; its scale/offset must not be used for GPU inversion.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional

import numpy as np

from ..config import HistogramChannelMode, HistogramMode, HistogramSettings

logger = logging.getLogger("texture_pipeline.histogram")

_BINS = 256


@dataclass
class HistogramResult:
    """Analysis output; ``scale``/``offset`` hold one entry per analyzed channel."""

    success: bool = True
    mode: HistogramMode = HistogramMode.OFF
    channel_mode: HistogramChannelMode = HistogramChannelMode.AVERAGE_LUMINANCE
    scale: List[float] = field(default_factory=lambda: [1.0])
    offset: List[float] = field(default_factory=lambda: [0.0])
    range_low: List[float] = field(default_factory=lambda: [0.0])
    range_high: List[float] = field(default_factory=lambda: [1.0])
    tail_fraction: float = 0.0
    knee_applied: bool = False
    total_pixels: int = 0
    error: Optional[str] = None
    warnings: List[str] = field(default_factory=list)

    @classmethod
    def identity(cls, channels: int = 1, mode: HistogramMode = HistogramMode.OFF,
                 channel_mode: HistogramChannelMode = HistogramChannelMode.AVERAGE_LUMINANCE,
                 error: Optional[str] = None) -> "HistogramResult":
        return cls(
            success=error is None,
            mode=mode,
            channel_mode=channel_mode,
            scale=[1.0] * channels,
            offset=[0.0] * channels,
            range_low=[0.0] * channels,
            range_high=[1.0] * channels,
            error=error,
        )

    @property
    def is_identity(self) -> bool:
        return all(s == 1.0 for s in self.scale) and all(o == 0.0 for o in self.offset)

    @property
    def channel_count(self) -> int:
        return len(self.scale)


def soft_knee_curve(u: np.ndarray, knee: float) -> np.ndarray:
    """Quadratic soft clip of normalized values ``u`` into [0, 1].

    Identity on ``[knee, 1 - knee]``; values within ``knee`` of either bound
    (inside or outside the range) roll off with continuous slope.
    """
    if knee <= 0:
        return np.clip(u, 0.0, 1.0)
    out = np.clip(u, 0.0, 1.0).astype(np.float32)
    low = u < knee
    out[low] = np.where(u[low] <= -knee, 0.0, (u[low] + knee) ** 2 / (4.0 * knee))
    high = u > 1.0 - knee
    out[high] = np.where(u[high] >= 1.0 + knee, 1.0,
                         1.0 - (1.0 + knee - u[high]) ** 2 / (4.0 * knee))
    return out.astype(np.float32)


class HistogramAnalyzer:
    """Analyze and remap texture value ranges."""

    def __init__(self, settings: HistogramSettings):
        self.settings = settings

    def _channel_samples(self, image: np.ndarray) -> List[np.ndarray]:
        mode = self.settings.channel_mode
        if image.ndim == 2:
            return [image.ravel()]
        rgb = image[:, :, :3]
        if mode == HistogramChannelMode.AVERAGE_LUMINANCE:
            return [np.mean(rgb, axis=-1).ravel()]
        if mode == HistogramChannelMode.RGB_ONLY:
            return [rgb.ravel()]
        channels = image.shape[-1]
        if mode == HistogramChannelMode.PER_CHANNEL_RGBA and channels == 4:
            return [image[:, :, c].ravel() for c in range(4)]
        return [image[:, :, c].ravel() for c in range(min(channels, 3))]

    def _percentile_bounds(self, values: np.ndarray):
        quantized = np.clip(np.round(values * (_BINS - 1)), 0, _BINS - 1).astype(np.int64)
        hist = np.bincount(quantized, minlength=_BINS)
        cumulative = np.cumsum(hist)
        total = int(cumulative[-1])
        # At least one sample must be reached, so 0% means the first occupied bin.
        lo_target = max(total * self.settings.percentile_low / 100.0, 1)
        hi_target = max(total * self.settings.percentile_high / 100.0, 1)
        lo_idx = int(np.searchsorted(cumulative, lo_target))
        hi_idx = int(np.searchsorted(cumulative, hi_target))
        lo = min(lo_idx, _BINS - 1) / float(_BINS - 1)
        hi = min(hi_idx, _BINS - 1) / float(_BINS - 1)
        return lo, hi

    def analyze(self, image: np.ndarray) -> HistogramResult:
        """Measure percentile bounds per the configured channel mode."""
        settings = self.settings
        if settings.mode == HistogramMode.OFF:
            return HistogramResult.identity(mode=settings.mode,
                                            channel_mode=settings.channel_mode)
        if settings.mode == HistogramMode.LOCAL_OUTLIER_PATCH:
            return HistogramResult.identity(
                mode=settings.mode, channel_mode=settings.channel_mode,
                error="local_outlier_patch mode is reserved",
            )
        if image.size == 0:
            return HistogramResult.identity(mode=settings.mode,
                                            channel_mode=settings.channel_mode,
                                            error="empty image")

        image = np.clip(image, 0.0, 1.0)
        samples = self._channel_samples(image)
        use_knee = (settings.mode == HistogramMode.PERCENTILE_WITH_KNEE
                    and settings.knee_width > 0)
        result = HistogramResult(
            mode=settings.mode,
            channel_mode=settings.channel_mode,
            scale=[], offset=[], range_low=[], range_high=[],
            knee_applied=use_knee,
            total_pixels=int(image.shape[0] * image.shape[1]),
        )

        tail_total, sample_total = 0, 0
        for index, values in enumerate(samples):
            lo, hi = self._percentile_bounds(values)
            tail_total += int(np.count_nonzero((values < lo) | (values > hi)))
            sample_total += values.size
            if use_knee:
                span = hi - lo
                lo = max(0.0, lo - settings.knee_width * span)
                hi = min(1.0, hi + settings.knee_width * span)

            if hi - lo < settings.min_range_threshold:
                result.warnings.append(
                    f"channel {index}: range {hi - lo:.4f} below min_range_threshold "
                    f"{settings.min_range_threshold}; normalization skipped"
                )
                lo, hi = 0.0, 1.0
            result.range_low.append(float(lo))
            result.range_high.append(float(hi))
            result.scale.append(float(hi - lo))
            result.offset.append(float(lo))

        result.tail_fraction = tail_total / sample_total if sample_total else 0.0
        if result.tail_fraction > settings.tail_threshold:
            result.warnings.append(
                f"tail fraction {result.tail_fraction:.4f} exceeds tail_threshold "
                f"{settings.tail_threshold}; clamped values lose detail"
            )
        for message in result.warnings:
            logger.warning("Histogram: %s", message)
        logger.debug("Histogram analysis: scale=%s offset=%s tail=%.4f",
                     result.scale, result.offset, result.tail_fraction)
        return result

    @staticmethod
    def _per_channel(image: np.ndarray, result: HistogramResult, fn) -> np.ndarray:
        out = np.array(image, dtype=np.float32, copy=True)
        if out.ndim == 2:
            return fn(out, result.scale[0], result.offset[0])
        channels = out.shape[-1]
        for c in range(channels):
            if result.channel_count == 1:
                # Single-range modes leave alpha alone.
                if c >= 3:
                    continue
                scale, offset = result.scale[0], result.offset[0]
            elif c < result.channel_count:
                scale, offset = result.scale[c], result.offset[c]
            else:
                continue
            out[:, :, c] = fn(out[:, :, c], scale, offset)
        return out

    def apply(self, image: np.ndarray, result: HistogramResult) -> np.ndarray:
        """Hard clamp: ``(v - offset) / scale`` clipped to [0, 1]."""
        def _map(values, scale, offset):
            if scale <= 0:
                return values
            return np.clip((values - offset) / scale, 0.0, 1.0)
        return self._per_channel(image, result, _map).astype(np.float32)

    def apply_soft_knee(self, image: np.ndarray, result: HistogramResult,
                        knee: Optional[float] = None) -> np.ndarray:
        knee = self.settings.knee_width if knee is None else knee

        def _map(values, scale, offset):
            if scale <= 0:
                return values
            return soft_knee_curve((values - offset) / scale, knee)
        return self._per_channel(image, result, _map).astype(np.float32)

    def normalize(self, image: np.ndarray, result: HistogramResult) -> np.ndarray:
        """Remap with the variant selected by the settings' mode."""
        if result.is_identity or not result.success:
            return image
        if self.settings.mode == HistogramMode.PERCENTILE_WITH_KNEE:
            return self.apply_soft_knee(image, result)
        return self.apply(image, result)

    @staticmethod
    def restore(normalized: np.ndarray, result: HistogramResult) -> np.ndarray:
        """CPU mirror of the GPU inversion ``sampled * scale + offset``."""
        def _map(values, scale, offset):
            return values * scale + offset
        return HistogramAnalyzer._per_channel(normalized, result, _map).astype(np.float32)
