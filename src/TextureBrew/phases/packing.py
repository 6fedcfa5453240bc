"""Pack AO / gloss / metallic / height maps into one RGBA mip chain."""

import logging
import os
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

import numpy as np

from ..config import (
    AOProcessingMode,
    PackingValidationError,
    ChannelPackingMode,
    ChannelPackingSettings,
    ChannelSourceSettings,
    ChannelType,
)
from ..core.io import load_grayscale, load_image, resize_to, save_image
from .matching import NormalMapMatcher
from .mipmap import MipGenerationProfile, MipGenerator
from .toksvig import ToksvigMipModifier, aspect_ratio_matches

logger = logging.getLogger("texture_pipeline.packing")


def _block_view(source: np.ndarray, out_w: int, out_h: int) -> np.ndarray:
    """Return ``source`` as (out_h, fy, out_w, fx) down-sample windows."""
    h, w = source.shape[:2]
    fy = max(1, -(-h // out_h))
    fx = max(1, -(-w // out_w))
    if (h, w) != (out_h * fy, out_w * fx):
        # Non-integer ratios: stretch by edge replication onto an exact grid.
        rows = np.minimum((np.arange(out_h * fy) * h) // (out_h * fy), h - 1)
        cols = np.minimum((np.arange(out_w * fx) * w) // (out_w * fx), w - 1)
        source = source[rows][:, cols]
    return source.reshape(out_h, fy, out_w, fx)


class AOProcessor:
    """Keep ambient occlusion from washing out at coarse mip levels."""

    def process(self, mips: List[np.ndarray], settings: ChannelSourceSettings) -> List[np.ndarray]:
        mode = settings.ao_processing
        if mode == AOProcessingMode.NONE or len(mips) < 2:
            return mips
        base = mips[0]
        out = [base]
        for level in range(1, len(mips)):
            mip = mips[level]
            h, w = mip.shape[:2]
            windows = _block_view(base, w, h)
            if mode == AOProcessingMode.PERCENTILE:
                target = np.percentile(windows, settings.ao_percentile, axis=(1, 3))
            else:
                target = windows.min(axis=(1, 3))
            # lerp(mean, target, bias): the resampled texel is the window mean.
            processed = mip + (target.astype(np.float32) - mip) * settings.ao_bias
            out.append(np.clip(processed, 0.0, 1.0).astype(np.float32))
        logger.debug("AO %s applied to %d level(s) (bias=%.2f)",
                     mode.value, len(mips) - 1, settings.ao_bias)
        return out


@dataclass
class PackedTexture:
    """Interleaved RGBA levels plus what happened while building them."""

    mode: ChannelPackingMode
    mips: List[np.ndarray] = field(default_factory=list)
    toksvig_applied: bool = False
    normal_map_used: Optional[str] = None

    @property
    def size(self) -> Tuple[int, int]:
        h, w = self.mips[0].shape[:2]
        return w, h


class ChannelPacker:
    """Combine independently processed grayscale channels into RGBA levels."""

    def __init__(self, max_image_pixels: int = 0,
                 matcher: Optional[NormalMapMatcher] = None):
        self.max_image_pixels = max_image_pixels
        self.matcher = matcher or NormalMapMatcher()
        self.mip_generator = MipGenerator()
        self.ao_processor = AOProcessor()

    def _load_sources(self, settings: ChannelPackingSettings) -> Dict[str, Optional[np.ndarray]]:
        loaded = {}
        for slot, source in settings.active_slots():
            if source.source_path:
                loaded[slot] = load_grayscale(source.source_path, self.max_image_pixels)
                logger.debug("Packing %s <- %s (%dx%d)", slot, source.source_path,
                             loaded[slot].shape[1], loaded[slot].shape[0])
            else:
                loaded[slot] = None
                logger.debug("Packing %s <- constant %.3f", slot, source.fallback_value)
        return loaded

    @staticmethod
    def _working_size(loaded: Dict[str, Optional[np.ndarray]],
                      output_size: Optional[Tuple[int, int]]) -> Tuple[int, int]:
        if output_size is not None:
            return int(output_size[0]), int(output_size[1])
        sizes = [(arr.shape[1], arr.shape[0]) for arr in loaded.values() if arr is not None]
        if not sizes:
            raise PackingValidationError(
                "Channel packing",
                ["output size is required when no channel has a source image"],
            )
        return max(sizes, key=lambda s: s[0] * s[1])

    def _channel_profile(self, source: ChannelSourceSettings) -> MipGenerationProfile:
        if source.mip_profile is not None:
            return source.mip_profile.clone()
        return MipGenerationProfile.create_default(source.texture_type)

    def _gloss_modifier(self, source: ChannelSourceSettings,
                        shape) -> Optional[ToksvigMipModifier]:
        normal_path = source.toksvig.normal_map_path
        if not normal_path and source.source_path:
            normal_path = self.matcher.find(source.source_path)
        if not normal_path or not os.path.isfile(normal_path):
            logger.warning("Toksvig skipped for gloss channel %s: no paired normal map found.",
                           source.source_path or "(constant)")
            return None
        try:
            normal_map = load_image(normal_path, self.max_image_pixels)
        except (IOError, ValueError) as exc:
            logger.warning("Toksvig skipped: failed to load normal map %s: %s", normal_path, exc)
            return None
        if not aspect_ratio_matches(shape, normal_map.shape):
            logger.warning("Toksvig skipped: normal map %s aspect ratio differs from gloss %s.",
                           normal_path, shape[:2])
            return None
        return ToksvigMipModifier(source.toksvig, normal_map, is_gloss=True,
                                  normal_map_path=normal_path)

    def pack(self, settings: ChannelPackingSettings,
             output_size: Optional[Tuple[int, int]] = None,
             smallest_dimension: int = 1) -> PackedTexture:
        """Validate, then build one RGBA level per mip down to ``smallest_dimension``.

        Raises PackingValidationError before touching any image file.
        """
        settings.validate()
        loaded = self._load_sources(settings)
        width, height = self._working_size(loaded, output_size)
        max_levels = settings.mipmap_count if settings.mipmap_count > 0 else None

        packed = PackedTexture(mode=settings.mode)
        chains: Dict[str, List[np.ndarray]] = {}
        for slot, source in settings.active_slots():
            image = loaded[slot]
            if image is None:
                image = np.full((height, width), source.fallback_value, dtype=np.float32)
            else:
                image = resize_to(image, width, height)

            profile = self._channel_profile(source)
            modifier = None
            if source.channel_type == ChannelType.GLOSS and source.apply_toksvig:
                modifier = self._gloss_modifier(source, image.shape)
                if modifier is not None:
                    profile.modifiers.append(modifier)

            mips = self.mip_generator.generate(image, profile, max_levels=max_levels,
                                               smallest_dimension=smallest_dimension)
            if modifier is not None and modifier.applied_levels > 0:
                packed.toksvig_applied = True
                packed.normal_map_used = modifier.normal_map_path
            if source.channel_type == ChannelType.AO:
                mips = self.ao_processor.process(mips, source)
            chains[slot] = mips

        level_count = max(len(m) for m in chains.values())
        for level in range(level_count):
            packed.mips.append(self._interleave(settings.mode, chains, level))
        logger.info("Packed %s texture %dx%d with %d level(s)", settings.mode.value.upper(),
                    width, height, level_count)
        return packed

    @staticmethod
    def _level(chain: List[np.ndarray], level: int, shape) -> np.ndarray:
        # Shorter chains reuse their last level, resized to the target.
        mip = chain[min(level, len(chain) - 1)]
        if mip.shape[:2] != shape:
            mip = resize_to(mip, shape[1], shape[0])
        return mip

    def _interleave(self, mode: ChannelPackingMode, chains: Dict[str, List[np.ndarray]],
                    level: int) -> np.ndarray:
        reference = max(chains.values(), key=len)
        shape = reference[min(level, len(reference) - 1)].shape[:2]
        ones = np.ones(shape, dtype=np.float32)
        if mode == ChannelPackingMode.OG:
            ao = self._level(chains["red"], level, shape)
            rgba = [ao, ao, ao, self._level(chains["alpha"], level, shape)]
        else:
            rgba = [
                self._level(chains["red"], level, shape),
                self._level(chains["green"], level, shape),
                self._level(chains["blue"], level, shape),
                self._level(chains["alpha"], level, shape) if "alpha" in chains else ones,
            ]
        return np.stack(rgba, axis=-1).astype(np.float32)


def save_levels(packed: PackedTexture, directory: str, base_name: str) -> List[str]:
    """Write ``{base}_packed_mip{i}.png`` for every level and return the paths."""
    paths = []
    for index, mip in enumerate(packed.mips):
        path = os.path.join(directory, f"{base_name}_packed_mip{index}.png")
        save_image(mip, path)
        paths.append(path)
    return paths
