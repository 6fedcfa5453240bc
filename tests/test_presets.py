"""Tests for the preset registry and ORM presets."""

import os
import tempfile
import unittest

import yaml

from TextureBrew.config import (
    AOProcessingMode,
    ChannelPackingMode,
    ColorSpace,
    CompressionFormat,
    EncoderMipFilter,
    FilterType,
    HistogramMode,
    TextureType,
)
from TextureBrew.presets import PresetRegistry, TextureConversionPreset

BUILTIN_NAMES = [
    "Default ETC1S",
    "Default UASTC",
    "High Quality",
    "Minimum Size",
    "Albedo/Color (sRGB)",
    "Normal (Linear)",
    "Roughness/Metallic/AO",
    "Gloss (Linear + Toksvig)",
    "Height (Linear with Clamp)",
    "Emissive",
]


class TestBuiltins(unittest.TestCase):
    def setUp(self):
        self.registry = PresetRegistry.with_builtins()

    def test_builtin_names_in_order(self):
        self.assertEqual(self.registry.names(), BUILTIN_NAMES)

    def test_builtins_cannot_be_removed_or_replaced(self):
        with self.assertRaises(ValueError):
            self.registry.remove("Default ETC1S")
        with self.assertRaises(ValueError):
            self.registry.add(TextureConversionPreset(name="Emissive"), replace=True)
        with self.assertRaises(KeyError):
            self.registry.remove("nope")

    def test_match_by_suffix(self):
        self.assertEqual(self.registry.match("wall_albedo.png").name, "Albedo/Color (sRGB)")
        self.assertEqual(self.registry.match("wall_Normal.png").name, "Normal (Linear)")
        self.assertEqual(self.registry.match("wall_gloss.png").name,
                         "Gloss (Linear + Toksvig)")
        self.assertIsNone(self.registry.match("logo.png"))

    def test_gloss_preset_needs_custom_mips(self):
        gloss = self.registry.get("Gloss (Linear + Toksvig)")
        self.assertTrue(gloss.compression.use_custom_mipmaps)
        self.assertTrue(gloss.toksvig.enabled)
        self.assertEqual(gloss.compression.color_space, ColorSpace.LINEAR)

    def test_user_preset_wins_over_builtin(self):
        self.registry.add(TextureConversionPreset(name="Mine", suffixes=["_albedo"]))
        self.assertEqual(self.registry.match("wall_albedo.png").name, "Mine")

    def test_duplicate_user_preset(self):
        self.registry.add(TextureConversionPreset(name="Mine"))
        with self.assertRaises(ValueError):
            self.registry.add(TextureConversionPreset(name="Mine"))
        self.registry.add(TextureConversionPreset(name="Mine", description="v2"), replace=True)
        self.assertEqual(self.registry.get("Mine").description, "v2")
        self.registry.remove("Mine")
        self.assertNotIn("Mine", self.registry)

    def test_copy_is_independent(self):
        clone = self.registry.copy()
        clone.add(TextureConversionPreset(name="Mine"))
        self.assertNotIn("Mine", self.registry)
        self.assertEqual(len(clone), len(self.registry) + 1)


class TestPresetConversion(unittest.TestCase):
    def test_compression_settings_take_preset_filter(self):
        preset = TextureConversionPreset(name="x", mip_filter=EncoderMipFilter.BOX)
        settings = preset.to_compression_settings()
        self.assertEqual(settings.mip_filter, EncoderMipFilter.BOX)
        self.assertIsNot(settings, preset.compression)

    def test_mip_profile(self):
        preset = TextureConversionPreset(name="x", mip_filter=EncoderMipFilter.TENT,
                                         apply_gamma_correction=True)
        profile = preset.to_mip_profile(TextureType.ALBEDO)
        self.assertEqual(profile.filter, FilterType.BILINEAR)
        self.assertTrue(profile.apply_gamma_correction)
        self.assertEqual(profile.gamma, 2.2)
        self.assertEqual(profile.min_mip_size, 1)


class TestOrmPresets(unittest.TestCase):
    def test_standard_builds_ogm(self):
        packing, compression = PresetRegistry().orm_preset("standard")
        self.assertEqual(packing.mode, ChannelPackingMode.OGM)
        self.assertTrue(compression.use_custom_mipmaps)
        self.assertEqual(compression.color_space, ColorSpace.LINEAR)
        self.assertEqual(packing.red.ao_processing, AOProcessingMode.BIASED_DARKENING)
        self.assertTrue(packing.green.apply_toksvig)
        self.assertEqual(packing.green.toksvig.composite_power, 4.0)
        self.assertEqual(packing.blue.mip_profile.filter, FilterType.BOX)

    def test_fast_disables_processing(self):
        packing, _ = PresetRegistry().orm_preset("fast", ChannelPackingMode.OG,
                                                 ao="a.png", gloss="g.png")
        self.assertEqual(packing.red.source_path, "a.png")
        self.assertEqual(packing.alpha.source_path, "g.png")
        self.assertEqual(packing.red.ao_processing, AOProcessingMode.NONE)
        self.assertFalse(packing.alpha.apply_toksvig)

    def test_high_quality_is_uastc(self):
        _, compression = PresetRegistry().orm_preset("high_quality")
        self.assertEqual(compression.compression_format, CompressionFormat.UASTC)

    def test_unknown_orm_preset(self):
        with self.assertRaises(KeyError):
            PresetRegistry().orm_preset("ultra")


class TestPresetYaml(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.path = os.path.join(self._tmp.name, "presets.yaml")

    def tearDown(self):
        self._tmp.cleanup()

    def test_round_trip_user_presets(self):
        registry = PresetRegistry.with_builtins()
        preset = TextureConversionPreset(name="Terrain", suffixes=["_terrain"],
                                         mip_filter=EncoderMipFilter.MITCHELL)
        preset.compression.compression_format = CompressionFormat.UASTC
        preset.compression.uastc_quality = 3
        registry.add(preset)
        registry.save_yaml(self.path)

        with open(self.path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
        self.assertEqual([p["name"] for p in data["presets"]], ["Terrain"])

        loaded = PresetRegistry.with_builtins()
        self.assertEqual(loaded.load_yaml(self.path), 1)
        terrain = loaded.get("Terrain")
        self.assertFalse(terrain.built_in)
        self.assertEqual(terrain.suffixes, ["_terrain"])
        self.assertEqual(terrain.mip_filter, EncoderMipFilter.MITCHELL)
        self.assertEqual(terrain.compression.compression_format, CompressionFormat.UASTC)
        self.assertEqual(terrain.compression.uastc_quality, 3)

    def test_load_histogram_section(self):
        with open(self.path, "w", encoding="utf-8") as f:
            yaml.safe_dump({"presets": [{
                "name": "Normalized",
                "histogram": {"mode": "percentile", "percentile_low": 2.0},
            }]}, f)
        registry = PresetRegistry()
        registry.load_yaml(self.path)
        histogram = registry.get("Normalized").histogram
        self.assertEqual(histogram.mode, HistogramMode.PERCENTILE)
        self.assertEqual(histogram.percentile_low, 2.0)

    def test_invalid_preset_rejected(self):
        with open(self.path, "w", encoding="utf-8") as f:
            yaml.safe_dump({"presets": [{
                "name": "Broken",
                "compression": {"quality_level": 999},
            }]}, f)
        with self.assertRaises(ValueError):
            PresetRegistry().load_yaml(self.path)

    def test_entries_without_name_skipped(self):
        with open(self.path, "w", encoding="utf-8") as f:
            yaml.safe_dump({"presets": [{"description": "anonymous"}]}, f)
        with self.assertLogs("texture_pipeline.presets", level="WARNING"):
            self.assertEqual(PresetRegistry().load_yaml(self.path), 0)


if __name__ == "__main__":
    unittest.main(verbosity=2)
