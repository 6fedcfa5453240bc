"""Toksvig gloss correction: de-sharpen gloss/roughness where normals vary.

Averaging many differing normals into one texel makes the surface look
flatter than it is, which shows up as specular sparkle at coarse mips.
The length of the averaged normal measures that variance; gloss is scaled
down (roughness up) accordingly.
"""

import logging
import os
from dataclasses import dataclass, field
from typing import List, Optional

import cv2
import numpy as np
from scipy.ndimage import gaussian_filter, uniform_filter

from ..config import ToksvigCalculationMode, ToksvigSettings
from ..core.io import ensure_rgb, load_image
from .mipmap import MipModifier, renormalize_normals

logger = logging.getLogger("texture_pipeline.toksvig")

# Variance-to-gloss sensitivity.
TOKSVIG_K = 0.5


@dataclass
class ToksvigOutcome:
    mips: List[np.ndarray]
    variance_mips: List[np.ndarray] = field(default_factory=list)
    applied: bool = False
    normal_map_path: Optional[str] = None


def decode_normal_map(normal_map: np.ndarray) -> np.ndarray:
    """Map an encoded [0, 1] RGB normal map to [-1, 1] vectors."""
    return (ensure_rgb(normal_map).astype(np.float32) * 2.0 - 1.0).astype(np.float32)


def aspect_ratio_matches(a_shape, b_shape, tolerance: float = 0.01) -> bool:
    ah, aw = a_shape[:2]
    bh, bw = b_shape[:2]
    return abs(aw / ah - bw / bh) <= tolerance


class ToksvigCorrector:
    """Compute per-level normal variance and apply the gloss factor."""

    def __init__(self, settings: ToksvigSettings):
        self.settings = settings

    def variance_at(self, decoded_normals: np.ndarray, width: int, height: int) -> np.ndarray:
        """Normal variance of the full-resolution map at ``width`` x ``height``."""
        h, w = decoded_normals.shape[:2]
        if (w, h) != (width, height):
            sampled = cv2.resize(decoded_normals, (width, height),
                                 interpolation=cv2.INTER_AREA)
        else:
            sampled = decoded_normals

        if self.settings.calculation_mode == ToksvigCalculationMode.SIMPLIFIED:
            sampled = renormalize_normals(sampled)
            averaged = uniform_filter(sampled, size=(2, 2, 1), mode="nearest")
        else:
            averaged = uniform_filter(sampled, size=(3, 3, 1), mode="nearest")

        length = np.sqrt(np.sum(averaged ** 2, axis=-1))
        variance = np.clip(1.0 - length, 0.0, 1.0).astype(np.float32)

        if self.settings.calculation_mode == ToksvigCalculationMode.SIMPLIFIED:
            variance[variance < self.settings.variance_threshold] = 0.0
        elif self.settings.smooth_variance and min(width, height) >= 4:
            variance = gaussian_filter(variance, sigma=0.5, mode="nearest")
        return variance.astype(np.float32)

    def factor(self, variance: np.ndarray) -> np.ndarray:
        """Gloss multiplier in [0, 1]; never increases as the power grows."""
        power = self.settings.composite_power
        if self.settings.calculation_mode == ToksvigCalculationMode.SIMPLIFIED:
            return np.clip(1.0 - TOKSVIG_K * power * variance, 0.0, 1.0).astype(np.float32)
        base = np.maximum(0.0, 1.0 - TOKSVIG_K * variance)
        return np.power(base, power).astype(np.float32)

    @staticmethod
    def correct(mip: np.ndarray, factor: np.ndarray, is_gloss: bool) -> np.ndarray:
        if mip.ndim == 3:
            factor = factor[:, :, np.newaxis]
        if is_gloss:
            out = mip * factor
        else:
            out = 1.0 - (1.0 - mip) * factor
        return np.clip(out, 0.0, 1.0).astype(np.float32)

    def apply(self, mips: List[np.ndarray], normal_map: np.ndarray,
              is_gloss: bool = True) -> ToksvigOutcome:
        """Correct every level at or above ``min_toksvig_mip_level``."""
        if not mips:
            return ToksvigOutcome(mips=[])
        if not aspect_ratio_matches(mips[0].shape, normal_map.shape):
            logger.warning(
                "Toksvig skipped: normal map %s and texture %s aspect ratios differ.",
                normal_map.shape[:2], mips[0].shape[:2],
            )
            return ToksvigOutcome(mips=list(mips))

        decoded = decode_normal_map(normal_map)
        corrected, variances = [], []
        for level, mip in enumerate(mips):
            h, w = mip.shape[:2]
            variance = self.variance_at(decoded, w, h)
            variances.append(variance)
            if level < self.settings.min_toksvig_mip_level:
                corrected.append(mip)
                continue
            corrected.append(self.correct(mip, self.factor(variance), is_gloss))
        return ToksvigOutcome(mips=corrected, variance_mips=variances, applied=True)

    def correct_from_path(self, mips: List[np.ndarray], normal_map_path: Optional[str],
                          is_gloss: bool = True, max_pixels: int = 0) -> ToksvigOutcome:
        """Load the paired normal map and apply; any problem skips correction."""
        if not normal_map_path or not os.path.isfile(normal_map_path):
            logger.warning("Toksvig skipped: no paired normal map found (%s).",
                           normal_map_path or "none")
            return ToksvigOutcome(mips=list(mips))
        try:
            normal_map = load_image(normal_map_path, max_pixels=max_pixels)
        except (IOError, ValueError) as exc:
            logger.warning("Toksvig skipped: failed to load normal map %s: %s",
                           normal_map_path, exc)
            return ToksvigOutcome(mips=list(mips))
        outcome = self.apply(mips, normal_map, is_gloss)
        if outcome.applied:
            outcome.normal_map_path = normal_map_path
            logger.info("Toksvig correction applied using %s (power=%.2f, mode=%s)",
                        normal_map_path, self.settings.composite_power,
                        self.settings.calculation_mode.value)
        return outcome


class ToksvigMipModifier(MipModifier):
    """Apply Toksvig correction while a mip chain is being generated."""

    name = "toksvig"

    def __init__(self, settings: ToksvigSettings, normal_map: np.ndarray,
                 is_gloss: bool = True, normal_map_path: Optional[str] = None):
        self.corrector = ToksvigCorrector(settings)
        self.normal_map_path = normal_map_path
        self.decoded = decode_normal_map(normal_map)
        self.is_gloss = is_gloss
        self.applied_levels = 0

    def apply(self, mip: np.ndarray, level: int, total_levels: int) -> np.ndarray:
        if level < self.corrector.settings.min_toksvig_mip_level:
            return mip
        h, w = mip.shape[:2]
        variance = self.corrector.variance_at(self.decoded, w, h)
        self.applied_levels += 1
        return self.corrector.correct(mip, self.corrector.factor(variance), self.is_gloss)
