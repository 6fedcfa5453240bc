"""Tests for config validation, YAML persistence and per-conversion options."""

import os
import tempfile
import unittest

import yaml

from TextureBrew.config import (
    ChannelPackingMode,
    ChannelPackingSettings,
    ChannelSourceSettings,
    ChannelType,
    ColorSpace,
    CompressionFormat,
    CompressionSettings,
    ConversionOptions,
    EncoderMipFilter,
    HistogramMode,
    HistogramProcessing,
    HistogramSettings,
    OutputFormat,
    PackingValidationError,
    PipelineConfig,
    SettingsValidationError,
    TextureType,
    ToksvigSettings,
    _merge_dict_to_dataclass,
)


class TestConfigValidation(unittest.TestCase):
    def test_default_config_valid(self):
        config = PipelineConfig()
        config.validate()

    def test_invalid_workers(self):
        config = PipelineConfig()
        config.max_workers = 0
        with self.assertRaises(ValueError):
            config.validate()

    def test_max_workers_upper_bound(self):
        config = PipelineConfig()
        config.max_workers = 129
        with self.assertRaises(ValueError):
            config.validate()

    def test_invalid_log_level(self):
        config = PipelineConfig()
        config.log_level = "LOUD"
        with self.assertRaises(ValueError) as ctx:
            config.validate()
        self.assertIn("log_level", str(ctx.exception))

    def test_errors_are_collected(self):
        config = PipelineConfig()
        config.max_workers = 0
        config.encoder_timeout_seconds = 0
        config.compression.quality_level = 0
        with self.assertRaises(ValueError) as ctx:
            config.validate()
        message = str(ctx.exception)
        self.assertIn("max_workers", message)
        self.assertIn("encoder_timeout_seconds", message)
        self.assertIn("compression.quality_level", message)

    def test_toksvig_without_custom_mipmaps_warns(self):
        config = PipelineConfig()
        config.toksvig.enabled = True
        with self.assertLogs("texture_pipeline.config", level="WARNING") as cm:
            config.validate()
        self.assertTrue(any("use_custom_mipmaps" in msg for msg in cm.output))


class TestCompressionSettings(unittest.TestCase):
    def test_defaults_are_etc1s(self):
        settings = CompressionSettings()
        self.assertEqual(settings.compression_format, CompressionFormat.ETC1S)
        self.assertEqual(settings.output_format, OutputFormat.KTX2)
        self.assertTrue(settings.generate_mipmaps)
        self.assertFalse(settings.use_custom_mipmaps)
        self.assertTrue(settings.remove_temporary_mipmaps)
        self.assertEqual(settings.validation_errors(), [])

    def test_factories_validate(self):
        for factory in (CompressionSettings.etc1s_default, CompressionSettings.uastc_default,
                        CompressionSettings.high_quality, CompressionSettings.min_size):
            with self.subTest(factory=factory.__name__):
                factory().validate()

    def test_basis_output_rejected(self):
        settings = CompressionSettings(output_format=OutputFormat.BASIS)
        with self.assertRaises(SettingsValidationError) as ctx:
            settings.validate()
        self.assertIn("KTX2 only", str(ctx.exception))

    def test_etc1s_fields_ignored_for_uastc(self):
        settings = CompressionSettings(compression_format=CompressionFormat.UASTC,
                                       quality_level=999, compression_level=42)
        self.assertEqual(settings.validation_errors(), [])

    def test_uastc_ranges(self):
        settings = CompressionSettings(compression_format=CompressionFormat.UASTC,
                                       uastc_quality=5)
        self.assertTrue(any("uastc_quality" in e for e in settings.validation_errors()))
        settings = CompressionSettings.uastc_default()
        settings.supercompression_level = 23
        self.assertTrue(any("zstd" in e for e in settings.validation_errors()))

    def test_is_srgb_auto_follows_texture_type(self):
        settings = CompressionSettings()
        self.assertTrue(settings.is_srgb(TextureType.ALBEDO))
        self.assertTrue(settings.is_srgb(TextureType.EMISSIVE))
        self.assertFalse(settings.is_srgb(TextureType.NORMAL))
        self.assertFalse(settings.is_srgb(TextureType.ROUGHNESS))
        settings.color_space = ColorSpace.LINEAR
        self.assertFalse(settings.is_srgb(TextureType.ALBEDO))
        settings.color_space = ColorSpace.SRGB
        self.assertTrue(settings.is_srgb(TextureType.NORMAL))

    def test_copy_is_independent(self):
        settings = CompressionSettings()
        clone = settings.copy()
        clone.quality_level = 12
        self.assertEqual(settings.quality_level, 128)


class TestHistogramAndToksvigSettings(unittest.TestCase):
    def test_knee_with_metadata_only_rejected(self):
        settings = HistogramSettings(mode=HistogramMode.PERCENTILE_WITH_KNEE,
                                     processing=HistogramProcessing.METADATA_ONLY)
        with self.assertRaises(SettingsValidationError):
            settings.validate()

    def test_reserved_mode_rejected(self):
        settings = HistogramSettings(mode=HistogramMode.LOCAL_OUTLIER_PATCH)
        self.assertTrue(any("reserved" in e for e in settings.validation_errors()))

    def test_percentile_bounds(self):
        settings = HistogramSettings(mode=HistogramMode.PERCENTILE, percentile_low=60.0)
        self.assertTrue(any("percentile_low" in e for e in settings.validation_errors()))

    def test_toksvig_power_range(self):
        with self.assertRaises(SettingsValidationError):
            ToksvigSettings(composite_power=9.0).validate()
        ToksvigSettings(composite_power=0.5).validate()


class TestPackingSettings(unittest.TestCase):
    def test_none_mode_rejected(self):
        with self.assertRaises(PackingValidationError):
            ChannelPackingSettings().validate()

    def test_for_mode_fills_required_slots(self):
        settings = ChannelPackingSettings.for_mode(ChannelPackingMode.OGMH)
        self.assertEqual(settings.red.channel_type, ChannelType.AO)
        self.assertEqual(settings.green.channel_type, ChannelType.GLOSS)
        self.assertEqual(settings.blue.channel_type, ChannelType.METALLIC)
        self.assertEqual(settings.alpha.channel_type, ChannelType.HEIGHT)
        settings.validate()

    def test_og_requires_gloss_in_alpha(self):
        settings = ChannelPackingSettings.for_mode(ChannelPackingMode.OG)
        settings.alpha = ChannelSourceSettings.create_default(ChannelType.METALLIC)
        with self.assertRaises(PackingValidationError) as ctx:
            settings.validate()
        self.assertIn("alpha", str(ctx.exception))

    def test_missing_slot_rejected(self):
        settings = ChannelPackingSettings.for_mode(ChannelPackingMode.OGM)
        settings.blue = None
        with self.assertRaises(PackingValidationError) as ctx:
            settings.validate()
        self.assertIn("metallic", str(ctx.exception))

    def test_toksvig_only_on_gloss(self):
        settings = ChannelPackingSettings.for_mode(ChannelPackingMode.OGM)
        settings.red.apply_toksvig = True
        with self.assertRaises(PackingValidationError) as ctx:
            settings.validate()
        self.assertIn("gloss channel", str(ctx.exception))

    def test_ao_processing_only_on_ao(self):
        settings = ChannelPackingSettings.for_mode(ChannelPackingMode.OGM)
        settings.blue.ao_processing = settings.red.ao_processing
        with self.assertRaises(PackingValidationError):
            settings.validate()

    def test_missing_source_file_rejected(self):
        settings = ChannelPackingSettings.for_mode(
            ChannelPackingMode.OG, ao=os.path.join("does", "not", "exist.png"))
        with self.assertRaises(PackingValidationError) as ctx:
            settings.validate()
        self.assertIn("not found", str(ctx.exception))

    def test_ao_default_uses_biased_darkening(self):
        ao = ChannelSourceSettings.create_default(ChannelType.AO)
        self.assertEqual(ao.ao_processing.value, "biased_darkening")
        self.assertEqual(ao.fallback_value, 1.0)
        gloss = ChannelSourceSettings.create_default(ChannelType.GLOSS)
        self.assertEqual(gloss.fallback_value, 0.5)


class TestConfigYaml(unittest.TestCase):
    def test_missing_file_uses_defaults(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            config = PipelineConfig.from_yaml(os.path.join(tmpdir, "missing.yaml"))
        self.assertEqual(config.max_workers, PipelineConfig().max_workers)

    def test_round_trip(self):
        config = PipelineConfig()
        config.max_workers = 7
        config.compression.compression_format = CompressionFormat.UASTC
        config.compression.mip_filter = EncoderMipFilter.LANCZOS3
        config.histogram.mode = HistogramMode.PERCENTILE
        config.toksvig.composite_power = 2.5
        with tempfile.TemporaryDirectory() as tmpdir:
            path = os.path.join(tmpdir, "config.yaml")
            config.to_yaml(path)
            with open(path, "r", encoding="utf-8") as f:
                raw = yaml.safe_load(f)
            loaded = PipelineConfig.from_yaml(path)
        self.assertEqual(raw["compression"]["compression_format"], "uastc")
        self.assertEqual(loaded.max_workers, 7)
        self.assertEqual(loaded.compression.compression_format, CompressionFormat.UASTC)
        self.assertEqual(loaded.compression.mip_filter, EncoderMipFilter.LANCZOS3)
        self.assertEqual(loaded.histogram.mode, HistogramMode.PERCENTILE)
        self.assertAlmostEqual(loaded.toksvig.composite_power, 2.5)

    def test_invalid_yaml_raises_value_error(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = os.path.join(tmpdir, "bad.yaml")
            with open(path, "w", encoding="utf-8") as f:
                f.write("compression: [unclosed\n")
            with self.assertRaises(ValueError):
                PipelineConfig.from_yaml(path)

    def test_non_mapping_rejected(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = os.path.join(tmpdir, "list.yaml")
            with open(path, "w", encoding="utf-8") as f:
                f.write("- a\n- b\n")
            with self.assertRaises(ValueError):
                PipelineConfig.from_yaml(path)

    def test_invalid_values_fail_with_path(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = os.path.join(tmpdir, "invalid.yaml")
            with open(path, "w", encoding="utf-8") as f:
                f.write("compression:\n  quality_level: 400\n")
            with self.assertRaises(ValueError) as ctx:
                PipelineConfig.from_yaml(path)
        self.assertIn("invalid.yaml", str(ctx.exception))


class TestMergeDict(unittest.TestCase):
    def test_unknown_key_warns(self):
        config = PipelineConfig()
        with self.assertLogs("texture_pipeline.config", level="WARNING") as cm:
            _merge_dict_to_dataclass(config, {"no_such_key": 1})
        self.assertTrue(any("no_such_key" in msg for msg in cm.output))

    def test_enum_coercion(self):
        config = PipelineConfig()
        _merge_dict_to_dataclass(config, {"compression": {"color_space": "srgb"}})
        self.assertEqual(config.compression.color_space, ColorSpace.SRGB)

    def test_invalid_enum_keeps_default(self):
        config = PipelineConfig()
        with self.assertLogs("texture_pipeline.config", level="WARNING"):
            _merge_dict_to_dataclass(config, {"compression": {"color_space": "cmyk"}})
        self.assertEqual(config.compression.color_space, ColorSpace.AUTO)

    def test_type_mismatch_keeps_default(self):
        config = PipelineConfig()
        with self.assertLogs("texture_pipeline.config", level="WARNING"):
            _merge_dict_to_dataclass(config, {"max_workers": "many"})
        self.assertEqual(config.max_workers, 4)

    def test_int_promoted_to_float(self):
        config = PipelineConfig()
        _merge_dict_to_dataclass(config, {"toksvig": {"composite_power": 2}})
        self.assertIsInstance(config.toksvig.composite_power, float)


class TestConversionOptions(unittest.TestCase):
    def test_options_are_frozen(self):
        options = ConversionOptions()
        with self.assertRaises(Exception):
            options.texture_type = TextureType.NORMAL

    def test_to_options_without_presets(self):
        config = PipelineConfig()
        options = config.to_options("rock_normal.png")
        self.assertEqual(options.texture_type, TextureType.NORMAL)
        self.assertIsNone(options.histogram)
        self.assertIsNone(options.toksvig)
        self.assertIsNone(options.preset_name)
        options.compression.quality_level = 1
        self.assertEqual(config.compression.quality_level, 128)

    def test_enabled_sections_carried(self):
        config = PipelineConfig()
        config.histogram.mode = HistogramMode.PERCENTILE
        config.toksvig.enabled = True
        options = config.to_options("rock_gloss.png")
        self.assertIsNotNone(options.histogram)
        self.assertIsNotNone(options.toksvig)
        self.assertIsNot(options.histogram, config.histogram)


if __name__ == "__main__":
    unittest.main(verbosity=2)
