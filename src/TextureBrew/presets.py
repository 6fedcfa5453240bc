"""Named conversion presets and ORM packing presets.

`PresetRegistry` is a plain value: build one with `with_builtins()`, add
user presets, pass it to the pipeline. Nothing here is global.
"""

import copy
import dataclasses
import logging
import os
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import yaml

from .config import (
    AOProcessingMode,
    ChannelPackingMode,
    ChannelPackingSettings,
    ChannelType,
    ColorSpace,
    CompressionFormat,
    CompressionSettings,
    EncoderMipFilter,
    FilterType,
    HistogramSettings,
    Supercompression,
    TextureType,
    ToksvigSettings,
    WrapMode,
    _merge_dict_to_dataclass,
    _to_plain,
)
from .phases.mipmap import MipGenerationProfile

logger = logging.getLogger("texture_pipeline.presets")

_PROFILE_FILTERS = {
    EncoderMipFilter.BOX: FilterType.BOX,
    EncoderMipFilter.TENT: FilterType.BILINEAR,
    EncoderMipFilter.MITCHELL: FilterType.MITCHELL,
    EncoderMipFilter.CATMULLROM: FilterType.BICUBIC,
    EncoderMipFilter.LANCZOS3: FilterType.LANCZOS3,
    EncoderMipFilter.LANCZOS4: FilterType.LANCZOS3,
    EncoderMipFilter.LANCZOS6: FilterType.LANCZOS3,
    EncoderMipFilter.LANCZOS12: FilterType.LANCZOS3,
    EncoderMipFilter.KAISER: FilterType.KAISER,
}


@dataclass
class TextureConversionPreset:
    """Settings bundle selected by name or by file-name suffix."""

    name: str
    description: str = ""
    built_in: bool = False
    suffixes: List[str] = field(default_factory=list)
    compression: CompressionSettings = field(default_factory=CompressionSettings)
    mip_filter: EncoderMipFilter = EncoderMipFilter.KAISER
    apply_gamma_correction: bool = False
    normalize_normals: bool = False
    toksvig: ToksvigSettings = field(default_factory=ToksvigSettings)
    histogram: Optional[HistogramSettings] = None

    def matches_filename(self, filename: str) -> bool:
        stem = Path(filename).stem.lower()
        return any(stem.endswith(suffix.lower()) for suffix in self.suffixes)

    def to_compression_settings(self) -> CompressionSettings:
        settings = self.compression.copy()
        settings.mip_filter = self.mip_filter
        return settings

    def to_mip_profile(self, texture_type: TextureType) -> MipGenerationProfile:
        profile = MipGenerationProfile.create_default(texture_type)
        profile.filter = _PROFILE_FILTERS.get(self.mip_filter, profile.filter)
        profile.apply_gamma_correction = self.apply_gamma_correction
        profile.gamma = 2.2
        profile.normalize_normals = self.normalize_normals
        profile.include_last_level = True
        profile.min_mip_size = 1
        return profile


def _builtin_presets() -> List[TextureConversionPreset]:
    def preset(name, description, compression=None, **kwargs):
        return TextureConversionPreset(
            name=name, description=description, built_in=True,
            compression=compression or CompressionSettings(), **kwargs,
        )

    albedo = CompressionSettings(quality_level=128, color_space=ColorSpace.SRGB)
    normal = CompressionSettings(
        compression_format=CompressionFormat.UASTC, uastc_quality=3,
        use_uastc_rdo=True, uastc_rdo_quality=1.0, color_space=ColorSpace.LINEAR,
    )
    gloss = CompressionSettings(color_space=ColorSpace.LINEAR, use_custom_mipmaps=True)
    height = CompressionSettings(color_space=ColorSpace.LINEAR, wrap_mode=WrapMode.CLAMP)

    return [
        preset("Default ETC1S", "Small files, moderate quality.",
               CompressionSettings.etc1s_default()),
        preset("Default UASTC", "Higher quality, larger files.",
               CompressionSettings.uastc_default()),
        preset("High Quality", "UASTC level 4 with strong zstd supercompression.",
               CompressionSettings.high_quality()),
        preset("Minimum Size", "Most aggressive ETC1S settings.",
               CompressionSettings.min_size()),
        preset("Albedo/Color (sRGB)", "Color maps, gamma-correct mip filtering.", albedo,
               suffixes=["_albedo", "_diffuse", "_color", "_basecolor", "_diff", "_base"],
               apply_gamma_correction=True),
        preset("Normal (Linear)", "Tangent-space normals, renormalized per level.", normal,
               suffixes=["_normal", "_norm", "_nrm", "_n", "_normals"],
               normalize_normals=True),
        preset("Roughness/Metallic/AO", "Linear single-channel data.",
               CompressionSettings(color_space=ColorSpace.LINEAR),
               suffixes=["_roughness", "_rough", "_metallic", "_metal", "_ao",
                         "_ambient", "_occlusion"]),
        preset("Gloss (Linear + Toksvig)", "Gloss with normal-variance correction.", gloss,
               suffixes=["_gloss", "_glossiness", "_smoothness"],
               toksvig=ToksvigSettings(enabled=True, composite_power=1.0)),
        preset("Height (Linear with Clamp)", "Height/displacement, clamped edges.", height,
               suffixes=["_height", "_displacement", "_disp", "_bump"]),
        preset("Emissive", "Emissive color in sRGB.",
               CompressionSettings(color_space=ColorSpace.SRGB),
               suffixes=["_emissive", "_emission", "_glow", "_light"],
               apply_gamma_correction=True),
    ]


@dataclass
class OrmPreset:
    """Channel processing and compression for packed AO/Gloss/Metallic/Height."""

    name: str
    description: str = ""
    filter: FilterType = FilterType.KAISER
    metallic_filter: FilterType = FilterType.BOX
    ao_processing: AOProcessingMode = AOProcessingMode.BIASED_DARKENING
    ao_bias: float = 0.5
    apply_toksvig: bool = True
    toksvig_power: float = 4.0
    compression: CompressionSettings = field(default_factory=CompressionSettings)

    def build(self, mode: ChannelPackingMode = ChannelPackingMode.OGM,
              **sources: Optional[str]) -> Tuple[ChannelPackingSettings, CompressionSettings]:
        packing = ChannelPackingSettings.for_mode(mode, **sources)
        for _, source in packing.active_slots():
            profile = MipGenerationProfile.create_default(source.texture_type)
            profile.filter = (self.metallic_filter
                              if source.channel_type == ChannelType.METALLIC else self.filter)
            source.mip_profile = profile
            if source.channel_type == ChannelType.AO:
                source.ao_processing = self.ao_processing
                source.ao_bias = self.ao_bias
            elif source.channel_type == ChannelType.GLOSS and self.apply_toksvig:
                source.apply_toksvig = True
                source.toksvig = ToksvigSettings(enabled=True,
                                                 composite_power=self.toksvig_power)
        compression = self.compression.copy()
        # Packed levels are always built here and handed over as a chain.
        compression.use_custom_mipmaps = True
        compression.color_space = ColorSpace.LINEAR
        return packing, compression


ORM_PRESETS: Dict[str, OrmPreset] = {
    "standard": OrmPreset(
        name="standard", description="Balanced ORM packing.",
        compression=CompressionSettings(quality_level=128),
    ),
    "high_quality": OrmPreset(
        name="high_quality", description="UASTC ORM packing.",
        compression=CompressionSettings(
            compression_format=CompressionFormat.UASTC, uastc_quality=2,
            supercompression=Supercompression.ZSTANDARD, supercompression_level=3,
        ),
    ),
    "fast": OrmPreset(
        name="fast", description="Box filtering, no AO or Toksvig processing.",
        filter=FilterType.BOX, ao_processing=AOProcessingMode.NONE,
        apply_toksvig=False, compression=CompressionSettings(quality_level=64),
    ),
}


class PresetRegistry:
    """Ordered collection of texture presets; built-ins cannot be removed."""

    def __init__(self, presets: Optional[List[TextureConversionPreset]] = None):
        self._presets: Dict[str, TextureConversionPreset] = {}
        for preset in presets or []:
            self._presets[preset.name] = preset

    @classmethod
    def with_builtins(cls) -> "PresetRegistry":
        return cls(_builtin_presets())

    def __len__(self):
        return len(self._presets)

    def __contains__(self, name):
        return name in self._presets

    def names(self) -> List[str]:
        return list(self._presets)

    def get(self, name: str) -> Optional[TextureConversionPreset]:
        return self._presets.get(name)

    def add(self, preset: TextureConversionPreset, replace: bool = False):
        existing = self._presets.get(preset.name)
        if existing is not None:
            if existing.built_in:
                raise ValueError(f"Cannot replace built-in preset '{preset.name}'")
            if not replace:
                raise ValueError(f"Preset '{preset.name}' already exists")
        self._presets[preset.name] = preset

    def remove(self, name: str):
        preset = self._presets.get(name)
        if preset is None:
            raise KeyError(name)
        if preset.built_in:
            raise ValueError(f"Cannot remove built-in preset '{name}'")
        del self._presets[name]

    def match(self, filename: str) -> Optional[TextureConversionPreset]:
        """First user preset, then first built-in, whose suffix matches."""
        ordered = ([p for p in self._presets.values() if not p.built_in]
                   + [p for p in self._presets.values() if p.built_in])
        for preset in ordered:
            if preset.matches_filename(filename):
                logger.debug("Preset '%s' matched %s", preset.name, filename)
                return preset
        return None

    def orm_preset(self, name: str, mode: ChannelPackingMode = ChannelPackingMode.OGM,
                   **sources: Optional[str]) -> Tuple[ChannelPackingSettings, CompressionSettings]:
        if name not in ORM_PRESETS:
            raise KeyError(f"Unknown ORM preset '{name}' "
                           f"(expected one of: {', '.join(ORM_PRESETS)})")
        return ORM_PRESETS[name].build(mode, **sources)

    def load_yaml(self, path: str) -> int:
        """Add user presets from ``path``; returns how many were loaded."""
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        entries = data.get("presets", []) if isinstance(data, dict) else data
        if not isinstance(entries, list):
            raise ValueError(f"Preset file '{path}' must contain a list of presets")
        loaded = 0
        for entry in entries:
            if not isinstance(entry, dict) or not entry.get("name"):
                logger.warning("Skipping preset entry without a name in %s", path)
                continue
            entry = dict(entry)
            histogram_data = entry.pop("histogram", None)
            preset = TextureConversionPreset(name=str(entry.pop("name")))
            entry.pop("built_in", None)
            _merge_dict_to_dataclass(preset, entry, f"{preset.name}.")
            if isinstance(histogram_data, dict):
                preset.histogram = HistogramSettings()
                _merge_dict_to_dataclass(preset.histogram, histogram_data,
                                         f"{preset.name}.histogram.")
            errors = preset.compression.validation_errors("compression.")
            errors.extend(preset.toksvig.validation_errors("toksvig."))
            if preset.histogram is not None:
                errors.extend(preset.histogram.validation_errors("histogram."))
            if errors:
                raise ValueError(
                    f"Preset '{preset.name}' in {path} is invalid:\n" +
                    "\n".join(f"  - {e}" for e in errors)
                )
            self.add(preset, replace=True)
            loaded += 1
        logger.info("Loaded %d user preset(s) from %s", loaded, path)
        return loaded

    def save_yaml(self, path: str):
        """Write the user (non built-in) presets to ``path`` atomically."""
        entries = []
        for preset in self._presets.values():
            if preset.built_in:
                continue
            data = _to_plain(dataclasses.asdict(preset))
            data.pop("built_in", None)
            entries.append(data)
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        tmp_path = f"{path}.tmp.{os.getpid()}.{threading.get_ident()}"
        try:
            with open(tmp_path, "w", encoding="utf-8") as f:
                yaml.safe_dump({"presets": entries}, f, default_flow_style=False,
                               sort_keys=False)
            os.replace(tmp_path, path)
        finally:
            if os.path.exists(tmp_path):
                try:
                    os.remove(tmp_path)
                except OSError:
                    pass

    def copy(self) -> "PresetRegistry":
        return PresetRegistry(copy.deepcopy(list(self._presets.values())))
