"""Command-line interface for the texture conversion pipeline."""

import argparse
import logging
import os
import signal
import sys
from pathlib import Path

from .config import (
    ChannelPackingMode,
    CompressionFormat,
    ConversionOptions,
    PipelineConfig,
    TextureType,
)
from .core import setup_logging
from .phases.matching import OrmTextureDetector

logger = logging.getLogger("texture_pipeline")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="texturebrew",
        description="Convert textures to KTX2 with the ktx create encoder",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  texturebrew brick_albedo.png
  texturebrew ./textures -o ./textures_ktx2 --workers 8
  texturebrew rock_gloss.png --custom-mipmaps --preset "Gloss (Linear + Toksvig)"
  texturebrew --pack ogm --ao a_ao.png --gloss a_gloss.png --metallic a_metallic.png -o a_orm.ktx2
  texturebrew --generate-config
        """
    )
    parser.add_argument("input", nargs="?", help="Texture file or directory")
    parser.add_argument("--output", "-o", help="Output file (single) or directory (batch)")
    parser.add_argument("--config", "-c", help="Path to config YAML")
    parser.add_argument("--preset", help="Conversion preset name")
    parser.add_argument("--presets-file", help="YAML file with user presets")
    parser.add_argument("--list-presets", action="store_true",
                        help="Print preset names and exit")
    parser.add_argument("--type", choices=[t.value for t in TextureType],
                        help="Override texture type detection")
    parser.add_argument("--format", choices=[f.value for f in CompressionFormat],
                        help="Compression family (disables automatic presets)")
    parser.add_argument("--ktx", help="Path to the ktx executable")
    parser.add_argument("--workers", type=int, help="Max parallel conversions")
    parser.add_argument("--custom-mipmaps", action="store_true",
                        help="Generate mip levels here instead of in the encoder")
    parser.add_argument("--pack", choices=[m.value for m in ChannelPackingMode
                                           if m != ChannelPackingMode.NONE],
                        help="Pack AO/gloss/metallic/height into one texture")
    parser.add_argument("--orm-preset", default="standard",
                        choices=["standard", "high_quality", "fast"])
    parser.add_argument("--ao", help="AO source for --pack")
    parser.add_argument("--gloss", help="Gloss source for --pack")
    parser.add_argument("--metallic", help="Metallic source for --pack")
    parser.add_argument("--height", help="Height source for --pack")
    parser.add_argument("--generate-config", action="store_true",
                        help="Generate default config.yaml")
    parser.add_argument("--log-level",
                        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"])
    return parser


def _fail(message: str):
    logger.error(message)
    print(f"Error: {message}")
    sys.exit(1)


def _load_config(args) -> PipelineConfig:
    if args.config:
        if not os.path.exists(args.config):
            _fail(f"Config file not found: {args.config}")
        try:
            config = PipelineConfig.from_yaml(args.config)
        except ValueError as e:
            _fail(f"Invalid config: {e}")
    else:
        config = PipelineConfig()

    if args.ktx:
        config.ktx_path = args.ktx
    if args.workers is not None:
        config.max_workers = args.workers
    if args.log_level:
        config.log_level = args.log_level
    if args.format:
        config.compression.compression_format = CompressionFormat(args.format)
        config.auto_preset = False
    if args.custom_mipmaps:
        config.compression.use_custom_mipmaps = True
    if args.preset:
        config.preset_name = args.preset
    return config


def _pack_base_name(path: str) -> str:
    stem = Path(path).stem
    for suffix in ("_ao", "_AO", "_gloss", "_Gloss", "_metallic", "_Metallic",
                   "_height", "_Height"):
        if stem.endswith(suffix):
            return stem[:-len(suffix)]
    return OrmTextureDetector.base_name(stem)


def _run_pack(args, presets, pipeline) -> int:
    sources = {"ao": args.ao, "gloss": args.gloss,
               "metallic": args.metallic, "height": args.height}
    if not any(sources.values()):
        if not args.input or not os.path.isfile(args.input):
            _fail("--pack needs --ao/--gloss/--metallic/--height or an input texture")
        found = OrmTextureDetector().detect(args.input)
        sources = {"ao": found.ao_path, "gloss": found.gloss_path,
                   "metallic": found.metallic_path, "height": found.height_path}
        logger.info("Detected %d ORM source(s) next to %s", found.found_count, args.input)

    mode = ChannelPackingMode(args.pack)
    packing, compression = presets.orm_preset(args.orm_preset, mode, **sources)
    first = next((p for p in sources.values() if p), None)
    output = args.output
    if not output:
        if first:
            base = _pack_base_name(first)
            output = os.path.join(os.path.dirname(first), f"{base}_{mode.value}.ktx2")
        else:
            output = f"packed_{mode.value}.ktx2"

    result = pipeline.pack(packing, output, ConversionOptions(compression=compression))
    if not result.success:
        print(f"Error: {result.error}")
        return 1
    print(f"Packed {mode.value.upper()} -> {result.output_path} ({result.mip_levels} levels)")
    return 0


def main(argv=None):
    """Parse CLI arguments, run conversions, and exit non-zero on any failure."""
    args = _build_parser().parse_args(argv)

    if args.generate_config:
        config = PipelineConfig()
        dest = args.config or args.output or "config.yaml"
        if os.path.isdir(dest):
            dest = os.path.join(dest, "config.yaml")
        config.to_yaml(dest)
        logger.info("Generated default %s", dest)
        print(f"Generated default {dest}")
        return

    # Ensure early validation warnings from from_yaml() are visible on stderr
    # before logging is fully configured.
    logging.basicConfig(level=logging.WARNING, format="%(levelname)s: %(message)s")

    config = _load_config(args)
    setup_logging(config.log_level)
    try:
        config.validate()
    except ValueError as e:
        _fail(str(e))

    from .presets import PresetRegistry
    presets = PresetRegistry.with_builtins()
    if args.presets_file:
        try:
            presets.load_yaml(args.presets_file)
        except (OSError, ValueError) as e:
            _fail(f"Cannot load presets: {e}")
    if args.list_presets:
        for name in presets.names():
            print(name)
        return
    if config.preset_name and config.preset_name not in presets:
        _fail(f"Unknown preset '{config.preset_name}'")

    from .pipeline import BatchConverter, TextureConversionPipeline
    pipeline = TextureConversionPipeline(config, presets)

    def _sigterm_handler(signum, frame):
        logger.warning("Received SIGTERM. Cancelling conversions...")
        pipeline.request_cancel()
        sys.exit(143)

    if hasattr(signal, "SIGTERM"):
        signal.signal(signal.SIGTERM, _sigterm_handler)

    texture_type = TextureType(args.type) if args.type else None
    try:
        if args.pack:
            if _run_pack(args, presets, pipeline):
                sys.exit(1)
            return

        if not args.input or not os.path.exists(args.input):
            _fail(f"Input not found: {args.input}")

        if os.path.isdir(args.input):
            output_dir = args.output or args.input.rstrip("/\\") + "_ktx2"
            batch = BatchConverter(pipeline).convert_directory(
                args.input, output_dir,
                options_factory=lambda p: config.to_options(p, presets, texture_type),
            )
            for failed in batch.failures():
                print(f"FAILED {failed.input_path}: {failed.error}")
            print(f"Converted {batch.success_count}/{batch.total} texture(s) "
                  f"into {output_dir}")
            if batch.failure_count:
                sys.exit(1)
            return

        output = args.output or str(Path(args.input).with_suffix(".ktx2"))
        if os.path.isdir(output):
            output = os.path.join(output, Path(args.input).stem + ".ktx2")
        options = config.to_options(args.input, presets, texture_type)
        result = pipeline.convert(args.input, output, options)
        if not result.success:
            print(f"Error: {result.error}")
            sys.exit(1)
        print(f"Converted {args.input} -> {result.output_path} "
              f"({result.mip_levels} levels)")
    except KeyboardInterrupt:
        logger.warning("Interrupted by user. Cancelling...")
        pipeline.request_cancel()
        sys.exit(130)


if __name__ == "__main__":
    main()
