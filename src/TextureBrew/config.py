"""Define typed configuration models for texture conversion.

Use `PipelineConfig` to load, validate, and persist runtime settings, and
`ConversionOptions` as the immutable per-conversion settings value.
"""

import copy
import dataclasses
import os
import logging
import threading
import yaml
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, List, Optional
from enum import Enum

if TYPE_CHECKING:
    from .phases.mipmap import MipGenerationProfile
    from .presets import PresetRegistry

logger = logging.getLogger("texture_pipeline.config")


class SettingsValidationError(ValueError):
    """Raised when settings violate a range or cross-field invariant."""

    def __init__(self, title: str, errors: List[str]):
        self.errors = list(errors)
        super().__init__(
            f"{title} validation failed:\n" +
            "\n".join(f"  - {e}" for e in self.errors)
        )


class PackingValidationError(SettingsValidationError):
    """Raised when channel packing settings are inconsistent."""


class TextureType(Enum):
    """Enumerate supported texture semantic types."""

    ALBEDO = "albedo"
    NORMAL = "normal"
    ROUGHNESS = "roughness"
    METALLIC = "metallic"
    AMBIENT_OCCLUSION = "ao"
    EMISSIVE = "emissive"
    GLOSS = "gloss"
    HEIGHT = "height"
    GENERIC = "generic"


SRGB_TEXTURE_TYPES = frozenset({TextureType.ALBEDO, TextureType.EMISSIVE})


class CompressionFormat(Enum):
    """Encoder compression families."""

    ETC1S = "etc1s"
    UASTC = "uastc"


class OutputFormat(Enum):
    KTX2 = "ktx2"
    BASIS = "basis"


class ColorSpace(Enum):
    AUTO = "auto"
    LINEAR = "linear"
    SRGB = "srgb"


class WrapMode(Enum):
    CLAMP = "clamp"
    WRAP = "wrap"


class AlphaMode(Enum):
    """Alpha channel policy applied before encoding."""

    LEAVE = "leave"
    FORCE = "force"
    REMOVE = "remove"


class Supercompression(Enum):
    NONE = "none"
    ZSTANDARD = "zstd"
    ZLIB = "zlib"


class EncoderMipFilter(Enum):
    """Filter names understood by ``ktx create --mipmap-filter``."""

    BOX = "box"
    TENT = "tent"
    BELL = "bell"
    B_SPLINE = "b-spline"
    MITCHELL = "mitchell"
    BLACKMAN = "blackman"
    LANCZOS3 = "lanczos3"
    LANCZOS4 = "lanczos4"
    LANCZOS6 = "lanczos6"
    LANCZOS12 = "lanczos12"
    KAISER = "kaiser"
    GAUSSIAN = "gaussian"
    CATMULLROM = "catmullrom"
    QUADRATIC_INTERP = "quadratic_interp"
    QUADRATIC_APPROX = "quadratic_approx"
    QUADRATIC_MIX = "quadratic_mix"


class FilterType(Enum):
    """Resampling kernels used when this pipeline builds mip chains."""

    BOX = "box"
    BILINEAR = "bilinear"
    BICUBIC = "bicubic"
    LANCZOS3 = "lanczos3"
    MITCHELL = "mitchell"
    KAISER = "kaiser"


class ToksvigCalculationMode(Enum):
    CLASSIC = "classic"
    SIMPLIFIED = "simplified"


class HistogramMode(Enum):
    OFF = "off"
    PERCENTILE = "percentile"
    PERCENTILE_WITH_KNEE = "percentile_with_knee"
    # Reserved; rejected by validation until implemented.
    LOCAL_OUTLIER_PATCH = "local_outlier_patch"


class HistogramChannelMode(Enum):
    AVERAGE_LUMINANCE = "average_luminance"
    RGB_ONLY = "rgb_only"
    PER_CHANNEL = "per_channel"
    PER_CHANNEL_RGBA = "per_channel_rgba"


class HistogramProcessing(Enum):
    """Whether normalization rewrites pixels or only records metadata."""

    PREPROCESS = "preprocess"
    METADATA_ONLY = "metadata_only"


class HistogramQuantization(Enum):
    HALF16 = "half16"
    FLOAT32 = "float32"


class ChannelPackingMode(Enum):
    """ORM layouts: OG = AO+Gloss, OGM = +Metallic, OGMH = +Height."""

    NONE = "none"
    OG = "og"
    OGM = "ogm"
    OGMH = "ogmh"


class ChannelType(Enum):
    AO = "ao"
    GLOSS = "gloss"
    METALLIC = "metallic"
    HEIGHT = "height"


class AOProcessingMode(Enum):
    NONE = "none"
    BIASED_DARKENING = "biased_darkening"
    PERCENTILE = "percentile"


CHANNEL_TEXTURE_TYPES = {
    ChannelType.AO: TextureType.AMBIENT_OCCLUSION,
    ChannelType.GLOSS: TextureType.GLOSS,
    ChannelType.METALLIC: TextureType.METALLIC,
    ChannelType.HEIGHT: TextureType.HEIGHT,
}

CHANNEL_DEFAULT_VALUES = {
    ChannelType.AO: 1.0,
    ChannelType.GLOSS: 0.5,
    ChannelType.METALLIC: 0.0,
    ChannelType.HEIGHT: 0.5,
}


@dataclass
class CompressionSettings:
    """Encoder tunables for one conversion.

    ETC1S-only fields (``compression_level``, ``quality_level``,
    ``use_etc1s_rdo``) and UASTC-only fields (``uastc_*``, supercompression)
    are ignored when the other family is active.
    """

    compression_format: CompressionFormat = CompressionFormat.ETC1S
    output_format: OutputFormat = OutputFormat.KTX2

    compression_level: int = 1
    quality_level: int = 128
    use_etc1s_rdo: bool = True

    uastc_quality: int = 2
    use_uastc_rdo: bool = False
    uastc_rdo_quality: float = 1.0

    generate_mipmaps: bool = True
    use_custom_mipmaps: bool = False
    mip_smallest_dimension: int = 1
    mip_filter: EncoderMipFilter = EncoderMipFilter.KAISER
    wrap_mode: WrapMode = WrapMode.CLAMP

    color_space: ColorSpace = ColorSpace.AUTO
    alpha_mode: AlphaMode = AlphaMode.LEAVE

    supercompression: Supercompression = Supercompression.ZSTANDARD
    supercompression_level: int = 3

    use_multithreading: bool = True
    thread_count: int = 0
    convert_to_normal_map: bool = False
    normalize_vectors: bool = False
    remove_temporary_mipmaps: bool = True

    @classmethod
    def etc1s_default(cls) -> "CompressionSettings":
        return cls()

    @classmethod
    def uastc_default(cls) -> "CompressionSettings":
        return cls(
            compression_format=CompressionFormat.UASTC,
            uastc_quality=2,
            use_uastc_rdo=True,
            uastc_rdo_quality=1.0,
            supercompression=Supercompression.ZSTANDARD,
            supercompression_level=3,
        )

    @classmethod
    def high_quality(cls) -> "CompressionSettings":
        return cls(
            compression_format=CompressionFormat.UASTC,
            uastc_quality=4,
            use_uastc_rdo=False,
            supercompression=Supercompression.ZSTANDARD,
            supercompression_level=9,
        )

    @classmethod
    def min_size(cls) -> "CompressionSettings":
        return cls(
            compression_format=CompressionFormat.ETC1S,
            compression_level=5,
            quality_level=64,
            use_etc1s_rdo=True,
        )

    @property
    def is_uastc(self) -> bool:
        return self.compression_format == CompressionFormat.UASTC

    @property
    def uses_manual_mipmaps(self) -> bool:
        return self.use_custom_mipmaps

    @property
    def delegates_mipmaps(self) -> bool:
        return self.generate_mipmaps and not self.use_custom_mipmaps

    def is_srgb(self, texture_type: Optional[TextureType] = None) -> bool:
        """Resolve the color space, using the texture type when set to AUTO."""
        if self.color_space == ColorSpace.SRGB:
            return True
        if self.color_space == ColorSpace.LINEAR:
            return False
        return texture_type in SRGB_TEXTURE_TYPES

    def copy(self) -> "CompressionSettings":
        return copy.deepcopy(self)

    def validation_errors(self, prefix: str = "") -> List[str]:
        errors = []
        if self.output_format != OutputFormat.KTX2:
            errors.append(
                f"{prefix}output_format '{self.output_format.value}' is not supported "
                "by the ktx create encoder (KTX2 only)"
            )
        if self.is_uastc:
            if not (0 <= self.uastc_quality <= 4):
                errors.append(f"{prefix}uastc_quality must be in [0, 4]")
            if self.use_uastc_rdo and not (0.001 <= self.uastc_rdo_quality <= 10.0):
                errors.append(f"{prefix}uastc_rdo_quality must be in [0.001, 10.0]")
            if self.supercompression == Supercompression.ZSTANDARD:
                if not (1 <= self.supercompression_level <= 22):
                    errors.append(f"{prefix}supercompression_level must be in [1, 22] for zstd")
            elif self.supercompression == Supercompression.ZLIB:
                if not (1 <= self.supercompression_level <= 9):
                    errors.append(f"{prefix}supercompression_level must be in [1, 9] for zlib")
        else:
            if not (0 <= self.compression_level <= 5):
                errors.append(f"{prefix}compression_level must be in [0, 5]")
            if not (1 <= self.quality_level <= 255):
                errors.append(f"{prefix}quality_level must be in [1, 255]")
        if self.mip_smallest_dimension < 1:
            errors.append(f"{prefix}mip_smallest_dimension must be >= 1")
        if self.thread_count < 0:
            errors.append(f"{prefix}thread_count must be >= 0 (0 = encoder default)")
        return errors

    def validate(self):
        errors = self.validation_errors()
        if errors:
            raise SettingsValidationError("Compression settings", errors)


@dataclass
class ToksvigSettings:
    """Variance-based gloss correction driven by a paired normal map."""

    enabled: bool = False
    composite_power: float = 1.0
    min_toksvig_mip_level: int = 1
    smooth_variance: bool = True
    calculation_mode: ToksvigCalculationMode = ToksvigCalculationMode.CLASSIC
    variance_threshold: float = 0.002
    normal_map_path: Optional[str] = None

    def validation_errors(self, prefix: str = "") -> List[str]:
        errors = []
        if not (0.5 <= self.composite_power <= 8.0):
            errors.append(
                f"{prefix}composite_power must be in [0.5, 8.0], got {self.composite_power}"
            )
        if not (0.0 <= self.variance_threshold <= 1.0):
            errors.append(
                f"{prefix}variance_threshold must be in [0.0, 1.0], "
                f"got {self.variance_threshold}"
            )
        if self.min_toksvig_mip_level < 0:
            errors.append(f"{prefix}min_toksvig_mip_level must be >= 0")
        return errors

    def validate(self):
        errors = self.validation_errors()
        if errors:
            raise SettingsValidationError("Toksvig settings", errors)


@dataclass
class HistogramSettings:
    """Percentile range normalization applied before encoding."""

    mode: HistogramMode = HistogramMode.OFF
    channel_mode: HistogramChannelMode = HistogramChannelMode.PER_CHANNEL
    processing: HistogramProcessing = HistogramProcessing.PREPROCESS
    percentile_low: float = 5.0
    percentile_high: float = 95.0
    knee_width: float = 0.02
    min_range_threshold: float = 0.01
    tail_threshold: float = 0.005
    quantization: HistogramQuantization = HistogramQuantization.HALF16

    @classmethod
    def high_quality(cls) -> "HistogramSettings":
        return cls(mode=HistogramMode.PERCENTILE, percentile_low=5.0,
                   percentile_high=95.0, knee_width=0.0)

    @classmethod
    def fast(cls) -> "HistogramSettings":
        return cls(mode=HistogramMode.PERCENTILE, percentile_low=10.0,
                   percentile_high=90.0, knee_width=0.0)

    @property
    def enabled(self) -> bool:
        return self.mode != HistogramMode.OFF

    def validation_errors(self, prefix: str = "") -> List[str]:
        errors = []
        if self.mode == HistogramMode.LOCAL_OUTLIER_PATCH:
            errors.append(f"{prefix}mode 'local_outlier_patch' is reserved and not implemented")
        if self.mode == HistogramMode.PERCENTILE_WITH_KNEE and \
                self.processing == HistogramProcessing.METADATA_ONLY:
            errors.append(
                f"{prefix}soft-knee normalization is not linearly invertible and "
                "cannot be combined with metadata_only processing"
            )
        if not (0.0 <= self.percentile_low < 50.0):
            errors.append(f"{prefix}percentile_low must be in [0, 50)")
        if not (50.0 < self.percentile_high <= 100.0):
            errors.append(f"{prefix}percentile_high must be in (50, 100]")
        if not (0.0 <= self.knee_width <= 0.5):
            errors.append(f"{prefix}knee_width must be in [0, 0.5]")
        if not (0.0 <= self.min_range_threshold < 1.0):
            errors.append(f"{prefix}min_range_threshold must be in [0, 1)")
        if not (0.0 <= self.tail_threshold <= 1.0):
            errors.append(f"{prefix}tail_threshold must be in [0, 1]")
        return errors

    def validate(self):
        errors = self.validation_errors()
        if errors:
            raise SettingsValidationError("Histogram settings", errors)


@dataclass
class ChannelSourceSettings:
    """One grayscale input feeding a packed texture lane."""

    channel_type: ChannelType = ChannelType.AO
    source_path: Optional[str] = None
    default_value: Optional[float] = None
    apply_toksvig: bool = False
    toksvig: ToksvigSettings = field(default_factory=ToksvigSettings)
    ao_processing: AOProcessingMode = AOProcessingMode.NONE
    ao_bias: float = 0.5
    ao_percentile: float = 10.0
    mip_profile: Optional["MipGenerationProfile"] = None

    @classmethod
    def create_default(cls, channel_type: ChannelType,
                       source_path: Optional[str] = None) -> "ChannelSourceSettings":
        settings = cls(channel_type=channel_type, source_path=source_path,
                       default_value=CHANNEL_DEFAULT_VALUES[channel_type])
        if channel_type == ChannelType.AO:
            settings.ao_processing = AOProcessingMode.BIASED_DARKENING
        return settings

    @property
    def texture_type(self) -> TextureType:
        return CHANNEL_TEXTURE_TYPES[self.channel_type]

    @property
    def fallback_value(self) -> float:
        if self.default_value is not None:
            return float(self.default_value)
        return CHANNEL_DEFAULT_VALUES[self.channel_type]

    def validation_errors(self, prefix: str = "") -> List[str]:
        errors = []
        if self.default_value is not None and not (0.0 <= self.default_value <= 1.0):
            errors.append(f"{prefix}default_value must be in [0, 1]")
        if self.apply_toksvig:
            if self.channel_type != ChannelType.GLOSS:
                errors.append(
                    f"{prefix}Toksvig correction can only be applied to the gloss channel, "
                    f"not {self.channel_type.value}"
                )
            errors.extend(self.toksvig.validation_errors(f"{prefix}toksvig."))
        if self.ao_processing != AOProcessingMode.NONE:
            if self.channel_type != ChannelType.AO:
                errors.append(
                    f"{prefix}AO processing can only be applied to the AO channel, "
                    f"not {self.channel_type.value}"
                )
            if not (0.0 <= self.ao_bias <= 1.0):
                errors.append(f"{prefix}ao_bias must be in [0, 1]")
            if not (0.0 <= self.ao_percentile <= 100.0):
                errors.append(f"{prefix}ao_percentile must be in [0, 100]")
        if self.source_path and not os.path.isfile(self.source_path):
            errors.append(f"{prefix}source image not found: {self.source_path}")
        return errors


# Slot -> channel type each packing mode requires.
PACKING_LAYOUTS = {
    ChannelPackingMode.OG: {"red": ChannelType.AO, "alpha": ChannelType.GLOSS},
    ChannelPackingMode.OGM: {
        "red": ChannelType.AO,
        "green": ChannelType.GLOSS,
        "blue": ChannelType.METALLIC,
    },
    ChannelPackingMode.OGMH: {
        "red": ChannelType.AO,
        "green": ChannelType.GLOSS,
        "blue": ChannelType.METALLIC,
        "alpha": ChannelType.HEIGHT,
    },
}

PACKING_SLOTS = ("red", "green", "blue", "alpha")


@dataclass
class ChannelPackingSettings:
    """Packing mode plus one source per occupied RGBA slot."""

    mode: ChannelPackingMode = ChannelPackingMode.NONE
    red: Optional[ChannelSourceSettings] = None
    green: Optional[ChannelSourceSettings] = None
    blue: Optional[ChannelSourceSettings] = None
    alpha: Optional[ChannelSourceSettings] = None
    mipmap_count: int = -1

    @classmethod
    def for_mode(cls, mode: ChannelPackingMode, **sources: Optional[str]) -> "ChannelPackingSettings":
        """Build settings with default channel sources for every slot ``mode`` needs.

        ``sources`` maps channel names (``ao``, ``gloss``, ``metallic``,
        ``height``) to optional source image paths.
        """
        settings = cls(mode=mode)
        for slot, channel_type in PACKING_LAYOUTS.get(mode, {}).items():
            setattr(settings, slot, ChannelSourceSettings.create_default(
                channel_type, sources.get(channel_type.value)))
        return settings

    def slot(self, name: str) -> Optional[ChannelSourceSettings]:
        return getattr(self, name)

    def active_slots(self):
        """Yield ``(slot_name, source)`` for every slot the mode uses."""
        for slot in PACKING_LAYOUTS.get(self.mode, {}):
            yield slot, getattr(self, slot)

    def validation_errors(self) -> List[str]:
        errors = []
        if self.mode == ChannelPackingMode.NONE:
            return ["packing mode is 'none'; choose og, ogm or ogmh"]
        layout = PACKING_LAYOUTS[self.mode]
        for slot_name in PACKING_SLOTS:
            source = getattr(self, slot_name)
            required = layout.get(slot_name)
            if required is None:
                if source is not None:
                    logger.debug(
                        "Slot %s is not used by %s packing and will be ignored.",
                        slot_name, self.mode.value,
                    )
                continue
            if source is None:
                errors.append(
                    f"{self.mode.value.upper()} mode requires a {required.value} "
                    f"channel in the {slot_name} slot"
                )
                continue
            if source.channel_type != required:
                errors.append(
                    f"{self.mode.value.upper()} mode requires {slot_name} to be "
                    f"{required.value}, got {source.channel_type.value}"
                )
            errors.extend(source.validation_errors(f"{slot_name}."))
        if self.mipmap_count == 0 or self.mipmap_count < -1:
            errors.append("mipmap_count must be -1 (auto) or >= 1")
        return errors

    def validate(self):
        errors = self.validation_errors()
        if errors:
            raise PackingValidationError("Channel packing", errors)


@dataclass(frozen=True)
class ConversionOptions:
    """Settings for exactly one conversion, assembled once and never mutated.

    ``None`` means "not set": no histogram pass, no Toksvig pass, profile
    from the texture type factory.
    """

    compression: CompressionSettings = field(default_factory=CompressionSettings)
    histogram: Optional[HistogramSettings] = None
    toksvig: Optional[ToksvigSettings] = None
    texture_type: TextureType = TextureType.GENERIC
    mip_profile: Optional["MipGenerationProfile"] = None
    save_separate_mipmaps: bool = False
    mipmap_output_dir: Optional[str] = None
    preset_name: Optional[str] = None

    @property
    def active_toksvig(self) -> Optional[ToksvigSettings]:
        """The Toksvig settings when present and enabled, else None."""
        if self.toksvig is not None and self.toksvig.enabled:
            return self.toksvig
        return None

    def validation_errors(self) -> List[str]:
        errors = self.compression.validation_errors("compression.")
        if self.histogram is not None:
            errors.extend(self.histogram.validation_errors("histogram."))
        if self.active_toksvig is not None:
            errors.extend(self.active_toksvig.validation_errors("toksvig."))
        return errors

    def validate(self):
        errors = self.validation_errors()
        if errors:
            raise SettingsValidationError("Conversion options", errors)


_SUPPORTED_CONFIG_VERSION = 1


@dataclass
class PipelineConfig:
    """Master pipeline configuration."""

    config_version: int = 1
    ktx_path: str = ""
    encoder_timeout_seconds: int = 600
    max_workers: int = 4
    log_level: str = "INFO"
    temp_dir: str = ""
    debug_mipmap_dir: str = ""
    supported_formats: List[str] = field(default_factory=lambda: [
        ".png", ".jpg", ".jpeg", ".tga", ".bmp"
    ])
    max_image_pixels: int = 67108864  # 8192x8192
    save_separate_mipmaps: bool = False
    mipmap_output_dir: str = ""
    auto_preset: bool = True
    preset_name: str = ""

    compression: CompressionSettings = field(default_factory=CompressionSettings)
    histogram: HistogramSettings = field(default_factory=HistogramSettings)
    toksvig: ToksvigSettings = field(default_factory=ToksvigSettings)

    @classmethod
    def from_yaml(cls, path: str) -> "PipelineConfig":
        """Load pipeline configuration from YAML or return defaults."""
        if not os.path.exists(path):
            logger.info("Config file '%s' not found. Using defaults.", path)
            config = cls()
            config.validate()
            return config
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as exc:
            raise ValueError(
                f"Failed to parse YAML config '{path}': {exc}"
            ) from exc
        if not isinstance(data, dict):
            raise ValueError(
                f"Config file '{path}' must contain a YAML mapping, "
                f"got {type(data).__name__}"
            )
        yaml_version = data.get("config_version", 1)
        if isinstance(yaml_version, int) and yaml_version > _SUPPORTED_CONFIG_VERSION:
            logger.warning(
                "Config file '%s' has config_version=%d, but this build only "
                "supports up to version %d. Some settings may be ignored.",
                path, yaml_version, _SUPPORTED_CONFIG_VERSION,
            )
        config = cls()
        _merge_dict_to_dataclass(config, data)
        try:
            config.validate()
        except ValueError as exc:
            raise ValueError(f"{path}: {exc}") from exc
        return config

    def to_yaml(self, path: str):
        """Write pipeline configuration to a YAML file."""
        data = _to_plain(dataclasses.asdict(self))
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        ext = os.path.splitext(path)[1]
        tmp_path = f"{path}.tmp.{os.getpid()}.{threading.get_ident()}{ext}"
        try:
            with open(tmp_path, "w", encoding="utf-8") as f:
                yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False)
            os.replace(tmp_path, path)
        finally:
            if os.path.exists(tmp_path):
                try:
                    os.remove(tmp_path)
                except OSError:
                    pass

    def validate(self):
        """Validate configuration values. Raises ValueError on invalid config."""
        errors = []

        valid_log_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if self.log_level.upper() not in valid_log_levels:
            errors.append(
                f"log_level must be one of {sorted(valid_log_levels)}, "
                f"got '{self.log_level}'"
            )
        if self.max_workers < 1:
            errors.append("max_workers must be >= 1")
        if self.max_workers > 128:
            errors.append("max_workers must be <= 128")
        if self.encoder_timeout_seconds < 1:
            errors.append("encoder_timeout_seconds must be >= 1")
        if self.max_image_pixels < 0:
            errors.append("max_image_pixels must be >= 0 (0 = unlimited)")
        if not self.supported_formats:
            errors.append(
                "supported_formats must not be empty; no files would be processed"
            )

        errors.extend(self.compression.validation_errors("compression."))
        errors.extend(self.histogram.validation_errors("histogram."))
        errors.extend(self.toksvig.validation_errors("toksvig."))

        if self.toksvig.enabled and not self.compression.use_custom_mipmaps:
            logger.warning(
                "toksvig.enabled is set but compression.use_custom_mipmaps is off. "
                "Toksvig correction needs pipeline-generated mipmaps and will be skipped."
            )

        if errors:
            raise ValueError(
                "Configuration validation failed:\n" +
                "\n".join(f"  - {e}" for e in errors)
            )

    def to_options(self, texture_path: Optional[str] = None,
                   presets: Optional["PresetRegistry"] = None,
                   texture_type: Optional[TextureType] = None) -> ConversionOptions:
        """Assemble the immutable options for converting ``texture_path``.

        An explicit ``preset_name`` wins; otherwise, with ``auto_preset``, the
        first preset whose suffix matches the file name is used; otherwise
        the sections of this config apply as-is.
        """
        from .phases.matching import texture_type_for_filename

        if texture_type is None:
            texture_type = (
                texture_type_for_filename(texture_path) if texture_path
                else TextureType.GENERIC
            )

        preset = None
        if presets is not None:
            if self.preset_name:
                preset = presets.get(self.preset_name)
            elif self.auto_preset and texture_path:
                preset = presets.match(texture_path)

        if preset is not None:
            compression = preset.to_compression_settings()
            histogram = copy.deepcopy(preset.histogram) if preset.histogram else None
            toksvig = copy.deepcopy(preset.toksvig)
            profile = preset.to_mip_profile(texture_type)
            preset_name = preset.name
        else:
            compression = self.compression.copy()
            histogram = copy.deepcopy(self.histogram) if self.histogram.enabled else None
            toksvig = copy.deepcopy(self.toksvig)
            profile = None
            preset_name = None

        if toksvig is not None and not toksvig.enabled:
            toksvig = None

        return ConversionOptions(
            compression=compression,
            histogram=histogram,
            toksvig=toksvig,
            texture_type=texture_type,
            mip_profile=profile,
            save_separate_mipmaps=self.save_separate_mipmaps,
            mipmap_output_dir=self.mipmap_output_dir or None,
            preset_name=preset_name,
        )


def _to_plain(value):
    """Convert enums nested in dict/list data to their YAML-safe values."""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: _to_plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_to_plain(v) for v in value]
    return value


def _merge_dict_to_dataclass(obj, data: dict, _path: str = ""):
    for key, value in data.items():
        full_key = f"{_path}{key}"
        if not hasattr(obj, key):
            logger.warning("Unknown config key ignored: '%s'", full_key)
            continue
        field_val = getattr(obj, key)
        if dataclasses.is_dataclass(field_val) and isinstance(value, dict):
            _merge_dict_to_dataclass(field_val, value, f"{full_key}.")
            continue
        if value is None and field_val is not None:
            logger.warning(
                "Config key '%s' is null but field default is %s. Using default value.",
                full_key, type(field_val).__name__,
            )
            continue
        if isinstance(field_val, Enum):
            try:
                value = type(field_val)(value)
            except ValueError:
                allowed = ", ".join(m.value for m in type(field_val))
                logger.warning(
                    "Config key '%s' has invalid value %r (expected one of: %s). "
                    "Using default value.", full_key, value, allowed,
                )
                continue
            setattr(obj, key, value)
            continue
        expected_type = type(field_val)
        # Allow int->float and exact float->int promotion.
        if (field_val is not None
                and not isinstance(value, expected_type)
                and not (expected_type is float and isinstance(value, int))
                and not (expected_type is int
                         and isinstance(value, float)
                         and value == int(value))):
            logger.warning(
                "Config type mismatch for '%s': expected %s, got %s (%r). "
                "Using default value.",
                full_key, expected_type.__name__, type(value).__name__, value,
            )
            continue
        if expected_type is int and isinstance(value, float):
            value = int(value)
        elif expected_type is float and isinstance(value, int):
            value = float(value)
        setattr(obj, key, value)
