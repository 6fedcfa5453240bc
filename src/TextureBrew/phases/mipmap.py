"""Build mip chains with per-texture-type resampling policy.

`MipGenerationProfile.create_default` picks the policy for a texture type
(kernel, gamma handling, normal renormalization, energy-preserving
roughness averaging); `MipGenerator` turns one image into its chain.
"""

import copy
import logging
from dataclasses import dataclass, field
from typing import List, Optional

import cv2
import numpy as np
from scipy.ndimage import gaussian_filter

from ..config import FilterType, TextureType

logger = logging.getLogger("texture_pipeline.mipmap")

_FILTER_INTERPOLATION = {
    FilterType.BOX: cv2.INTER_AREA,  # INTER_AREA is the box filter equivalent
    FilterType.BILINEAR: cv2.INTER_LINEAR,
    FilterType.BICUBIC: cv2.INTER_CUBIC,
    FilterType.MITCHELL: cv2.INTER_CUBIC,
    FilterType.LANCZOS3: cv2.INTER_LANCZOS4,
    FilterType.KAISER: cv2.INTER_LANCZOS4,
}

_ENERGY_TYPES = (TextureType.ROUGHNESS, TextureType.GLOSS)


class MipModifier:
    """Post-resample hook run on every level >= 1, in profile order."""

    name = "modifier"

    def apply(self, mip: np.ndarray, level: int, total_levels: int) -> np.ndarray:
        raise NotImplementedError


@dataclass
class MipGenerationProfile:
    """Resampling policy for one texture type."""

    texture_type: TextureType = TextureType.GENERIC
    filter: FilterType = FilterType.KAISER
    apply_gamma_correction: bool = False
    gamma: float = 2.2
    blur_radius: float = 0.0
    normalize_normals: bool = False
    use_energy_preserving: bool = False
    is_gloss: bool = False
    min_mip_size: int = 1
    include_last_level: bool = True
    modifiers: List[MipModifier] = field(default_factory=list)

    @classmethod
    def create_default(cls, texture_type: TextureType) -> "MipGenerationProfile":
        if texture_type in (TextureType.ALBEDO, TextureType.EMISSIVE):
            return cls(texture_type=texture_type, filter=FilterType.KAISER,
                       apply_gamma_correction=True, gamma=2.2)
        if texture_type == TextureType.NORMAL:
            return cls(texture_type=texture_type, filter=FilterType.KAISER,
                       normalize_normals=True)
        if texture_type == TextureType.ROUGHNESS:
            return cls(texture_type=texture_type, filter=FilterType.KAISER,
                       use_energy_preserving=True)
        if texture_type == TextureType.GLOSS:
            return cls(texture_type=texture_type, filter=FilterType.KAISER,
                       use_energy_preserving=True, is_gloss=True)
        if texture_type == TextureType.METALLIC:
            # Metalness is mostly binary; averaging with wide kernels creates
            # non-physical in-between values.
            return cls(texture_type=texture_type, filter=FilterType.BOX)
        if texture_type == TextureType.HEIGHT:
            return cls(texture_type=texture_type, filter=FilterType.BILINEAR)
        return cls(texture_type=texture_type, filter=FilterType.KAISER)

    def clone(self) -> "MipGenerationProfile":
        return copy.deepcopy(self)

    def validation_errors(self, prefix: str = "") -> List[str]:
        errors = []
        if self.apply_gamma_correction and self.gamma <= 0:
            errors.append(f"{prefix}gamma must be > 0")
        if self.blur_radius < 0:
            errors.append(f"{prefix}blur_radius must be >= 0")
        if self.min_mip_size < 1:
            errors.append(f"{prefix}min_mip_size must be >= 1")
        return errors


def calculate_mip_levels(width: int, height: int, min_size: int = 1,
                         include_last_level: bool = True,
                         max_levels: Optional[int] = None) -> int:
    """Count levels from ``width`` x ``height`` down to ``min_size``.

    The chain halves until the larger dimension is at or below ``min_size``;
    ``include_last_level=False`` drops that final level.
    """
    if width < 1 or height < 1:
        raise ValueError(f"Invalid image size {width}x{height}")
    min_size = max(1, int(min_size))
    levels = 1
    w, h = width, height
    while max(w, h) > min_size:
        w = max(1, w // 2)
        h = max(1, h // 2)
        levels += 1
    if not include_last_level and levels > 1:
        levels -= 1
    if max_levels is not None and max_levels > 0:
        levels = min(levels, max_levels)
    return levels


def mip_size(width: int, height: int, level: int):
    return max(1, width >> level), max(1, height >> level)


def renormalize_normals(decoded: np.ndarray) -> np.ndarray:
    length = np.sqrt(np.sum(decoded ** 2, axis=-1, keepdims=True))
    length = np.maximum(length, 1e-8)
    return (decoded / length).astype(np.float32)


class MipGenerator:
    """Generate mip chains from in-memory float32 images."""

    def generate(self, image: np.ndarray, profile: MipGenerationProfile,
                 max_levels: Optional[int] = None,
                 smallest_dimension: int = 1) -> List[np.ndarray]:
        """Return ``[level0, level1, ...]``; level 0 is ``image`` unchanged.

        Accepts (H, W) grayscale or (H, W, C) images with values in [0, 1].
        """
        if image.ndim not in (2, 3) or image.size == 0:
            raise ValueError(f"Cannot build mips for array of shape {image.shape}")
        base = np.clip(image, 0.0, 1.0).astype(np.float32)
        height, width = base.shape[:2]
        min_size = max(profile.min_mip_size, smallest_dimension)
        count = calculate_mip_levels(width, height, min_size,
                                     profile.include_last_level, max_levels)
        interp = _FILTER_INTERPOLATION.get(profile.filter, cv2.INTER_LANCZOS4)

        mips = [base]
        working = self._to_working(base, profile)
        for level in range(1, count):
            tw, th = mip_size(width, height, level)
            working = self._resample(working, tw, th, interp, profile)
            mip = self._from_working(working, profile)
            if profile.blur_radius > 0:
                mip = self._blur(mip, profile.blur_radius)
            for modifier in profile.modifiers:
                mip = modifier.apply(mip, level, count)
            mips.append(np.clip(mip, 0.0, 1.0).astype(np.float32))

        logger.debug(
            "Generated %d mip level(s) for %s (%dx%d, filter=%s)",
            len(mips), profile.texture_type.value, width, height, profile.filter.value,
        )
        return mips

    @staticmethod
    def _is_normal_profile(profile: MipGenerationProfile, arr: np.ndarray) -> bool:
        return (profile.texture_type == TextureType.NORMAL
                and profile.normalize_normals
                and arr.ndim == 3 and arr.shape[-1] >= 3)

    @staticmethod
    def _is_energy_profile(profile: MipGenerationProfile) -> bool:
        return profile.use_energy_preserving and profile.texture_type in _ENERGY_TYPES

    def _to_working(self, arr: np.ndarray, profile: MipGenerationProfile) -> np.ndarray:
        if self._is_normal_profile(profile, arr):
            # Downsample normals in vector space, not encoded [0,1] color space.
            out = arr.copy()
            out[..., :3] = arr[..., :3] * 2.0 - 1.0
            return out
        if self._is_energy_profile(profile):
            rough = 1.0 - arr if profile.is_gloss else arr
            # Average in roughness^2 (GGX alpha) space.
            return (rough ** 2).astype(np.float32)
        if profile.apply_gamma_correction:
            return self._apply_gamma(arr, profile.gamma)
        return arr

    def _from_working(self, arr: np.ndarray, profile: MipGenerationProfile) -> np.ndarray:
        if self._is_normal_profile(profile, arr):
            out = arr.copy()
            out[..., :3] = renormalize_normals(arr[..., :3]) * 0.5 + 0.5
            return out
        if self._is_energy_profile(profile):
            rough = np.sqrt(np.clip(arr, 0.0, 1.0))
            return (1.0 - rough if profile.is_gloss else rough).astype(np.float32)
        if profile.apply_gamma_correction:
            return self._apply_gamma(arr, 1.0 / profile.gamma)
        return arr

    def _resample(self, arr: np.ndarray, width: int, height: int, interp: int,
                  profile: MipGenerationProfile) -> np.ndarray:
        out = cv2.resize(arr, (width, height), interpolation=interp)
        if arr.ndim == 3 and out.ndim == 2:
            out = out[:, :, np.newaxis]
        if self._is_normal_profile(profile, arr):
            out[..., :3] = renormalize_normals(out[..., :3])
            return out.astype(np.float32)
        return np.clip(out, 0.0, 1.0).astype(np.float32)

    @staticmethod
    def _apply_gamma(arr: np.ndarray, exponent: float) -> np.ndarray:
        out = np.clip(arr, 0.0, 1.0).astype(np.float32)
        if out.ndim == 3 and out.shape[-1] == 4:
            out = out.copy()
            out[..., :3] = np.power(out[..., :3], exponent)
            return out
        return np.power(out, exponent).astype(np.float32)

    @staticmethod
    def _blur(mip: np.ndarray, radius: float) -> np.ndarray:
        sigma = (radius, radius, 0) if mip.ndim == 3 else radius
        return gaussian_filter(mip, sigma=sigma, mode="nearest").astype(np.float32)
