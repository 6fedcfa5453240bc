"""Orchestrate single-texture conversion and ORM packing end-to-end.

`TextureConversionPipeline` walks one texture through
Resampling -> (Normalizing) -> (Packing) -> Encoding and always returns an
immutable `ConversionResult`. `BatchConverter` fans a directory out over a
bounded thread pool.
"""

import asyncio
import logging
import os
import shutil
import tempfile
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

import numpy as np
from tqdm import tqdm

from .config import (
    AlphaMode,
    ChannelPackingSettings,
    ColorSpace,
    CompressionSettings,
    ConversionOptions,
    HistogramProcessing,
    HistogramSettings,
    PipelineConfig,
    SettingsValidationError,
    TextureType,
    ToksvigSettings,
)
from .core import (
    BatchResult,
    ConversionResult,
    ConversionState,
    ensure_rgb,
    extract_alpha,
    find_textures,
    get_output_path,
    load_image,
    make_local_temp_dir,
    merge_alpha,
    save_image,
)
from .phases.encoder import (
    EncoderCancelledError,
    EncoderError,
    KtxEncoder,
)
from .phases.histogram import HistogramAnalyzer, HistogramResult
from .phases.ktx2 import (
    METADATA_KEY,
    Ktx2FormatError,
    build_metadata_payload,
    inject_key_value,
    normal_layout_for,
)
from .phases.matching import NormalMapMatcher, is_gloss_by_name
from .phases.mipmap import MipGenerationProfile, MipGenerator, calculate_mip_levels
from .phases.packing import ChannelPacker
from .phases.toksvig import ToksvigCorrector
from .presets import PresetRegistry

logger = logging.getLogger("texture_pipeline.pipeline")

__all__ = [
    "BatchConverter",
    "ConversionCancelledError",
    "ConversionResult",
    "ConversionState",
    "TextureConversionPipeline",
]

StateCallback = Callable[[str, ConversionState], None]


class ConversionCancelledError(RuntimeError):
    """Raised when a user-requested cancellation is observed between stages."""


class _CancelToken:
    """Set when either the pipeline-wide or the per-call event is set."""

    def __init__(self, *events: Optional[threading.Event]):
        self._events = [e for e in events if e is not None]

    def is_set(self) -> bool:
        return any(e.is_set() for e in self._events)


class _Run:
    """Mutable bookkeeping for one conversion; never shared between runs."""

    def __init__(self, input_path: str, output_path: str, cancel: _CancelToken):
        self.input_path = input_path
        self.output_path = output_path
        self.cancel = cancel
        self.state = ConversionState.IDLE
        self.started = time.monotonic()
        self.mip_levels = 0
        self.toksvig_applied = False
        self.normal_map_used: Optional[str] = None
        self.histogram_applied = False
        self.mipmaps_saved_path: Optional[str] = None

    @property
    def elapsed(self) -> float:
        return time.monotonic() - self.started


class TextureConversionPipeline:
    """Convert textures into KTX2 through the external `ktx create` encoder.

    The pipeline itself holds no per-conversion state, so one instance can
    serve many concurrent conversions.
    """

    def __init__(self, config: Optional[PipelineConfig] = None,
                 presets: Optional[PresetRegistry] = None,
                 encoder: Optional[KtxEncoder] = None,
                 state_callback: Optional[StateCallback] = None):
        self.config = config or PipelineConfig()
        self.presets = presets if presets is not None else PresetRegistry.with_builtins()
        self.encoder = encoder or KtxEncoder(
            self.config.ktx_path, timeout=self.config.encoder_timeout_seconds,
        )
        self.state_callback = state_callback
        self._cancel_event = threading.Event()
        self.mip_generator = MipGenerator()
        self.matcher = NormalMapMatcher()
        self.packer = ChannelPacker(self.config.max_image_pixels, self.matcher)

    # ------------------------------------------
    # Cancellation and state
    # ------------------------------------------

    def request_cancel(self):
        logger.warning("Cancellation requested")
        self._cancel_event.set()

    def reset_cancel(self):
        self._cancel_event.clear()

    @property
    def cancel_requested(self) -> bool:
        return self._cancel_event.is_set()

    def _notify(self, run: _Run, state: ConversionState):
        run.state = state
        if self.state_callback is not None:
            try:
                self.state_callback(run.input_path, state)
            except Exception:
                logger.exception("State callback raised for %s", run.input_path)

    def _enter_stage(self, run: _Run, state: ConversionState):
        if run.cancel.is_set():
            raise ConversionCancelledError(f"Cancelled before {state.value}")
        logger.debug("%s: %s -> %s", run.input_path, run.state.value, state.value)
        self._notify(run, state)

    def _finish(self, run: _Run, error: Optional[str] = None) -> ConversionResult:
        state = ConversionState.DONE if error is None else ConversionState.FAILED
        self._notify(run, state)
        result = ConversionResult(
            success=error is None,
            input_path=run.input_path,
            output_path=run.output_path,
            mip_levels=run.mip_levels if error is None else 0,
            toksvig_applied=run.toksvig_applied,
            normal_map_used=run.normal_map_used,
            histogram_applied=run.histogram_applied,
            state=state,
            error=error,
            duration_seconds=run.elapsed,
            mipmaps_saved_path=run.mipmaps_saved_path,
        )
        if error is None:
            logger.info("Converted %s -> %s (%d level(s), %.2fs)", run.input_path,
                        run.output_path, run.mip_levels, run.elapsed)
        else:
            logger.error("Conversion of %s failed: %s", run.input_path, error)
        return result

    async def _guarded(self, run: _Run, body) -> ConversionResult:
        try:
            await body
        except (ConversionCancelledError, EncoderCancelledError):
            return self._finish(run, "Conversion cancelled")
        except (SettingsValidationError, EncoderError, Ktx2FormatError,
                OSError, ValueError) as exc:
            return self._finish(run, str(exc))
        except Exception as exc:
            logger.exception("Unexpected error converting %s", run.input_path)
            return self._finish(run, f"{type(exc).__name__}: {exc}")
        return self._finish(run)

    # ------------------------------------------
    # Single texture conversion
    # ------------------------------------------

    async def convert_async(self, input_path: str, output_path: str,
                            options: Optional[ConversionOptions] = None,
                            cancel_event: Optional[threading.Event] = None) -> ConversionResult:
        """Convert one image file to KTX2. Never raises for conversion errors."""
        run = _Run(input_path, output_path, _CancelToken(self._cancel_event, cancel_event))
        return await self._guarded(run, self._convert(run, options))

    def convert(self, input_path: str, output_path: str,
                options: Optional[ConversionOptions] = None,
                cancel_event: Optional[threading.Event] = None) -> ConversionResult:
        return asyncio.run(self.convert_async(input_path, output_path, options, cancel_event))

    async def _convert(self, run: _Run, options: Optional[ConversionOptions]):
        if options is None:
            options = self.config.to_options(run.input_path, self.presets)
        errors = options.validation_errors()
        if not os.path.isfile(run.input_path):
            errors.append(f"input file not found: {run.input_path}")
        if errors:
            raise SettingsValidationError("Conversion options", errors)

        compression = options.compression
        texture_type = options.texture_type
        logger.info("Converting %s (type=%s, format=%s%s)", run.input_path, texture_type.value,
                    compression.compression_format.value,
                    f", preset={options.preset_name}" if options.preset_name else "")

        self._enter_stage(run, ConversionState.RESAMPLING)
        image = await asyncio.to_thread(load_image, run.input_path,
                                        self.config.max_image_pixels)
        image = self._apply_alpha_mode(image, compression.alpha_mode)

        debug_sets: Dict[str, List[np.ndarray]] = {}
        if compression.use_custom_mipmaps:
            levels = await asyncio.to_thread(self._build_mips, run, image, options, debug_sets)
            run.mip_levels = len(levels)
        else:
            levels = [image]
            if options.active_toksvig is not None and texture_type in (
                    TextureType.GLOSS, TextureType.ROUGHNESS):
                logger.error(
                    "Toksvig correction for %s requires use_custom_mipmaps; skipped.",
                    run.input_path,
                )
            if compression.delegates_mipmaps:
                h, w = image.shape[:2]
                run.mip_levels = calculate_mip_levels(w, h, compression.mip_smallest_dimension)
            else:
                run.mip_levels = 1

        histogram_result = None
        if options.histogram is not None and options.histogram.enabled:
            self._enter_stage(run, ConversionState.NORMALIZING)
            histogram_result, levels = await asyncio.to_thread(
                self._normalize, levels, options.histogram)
            run.histogram_applied = histogram_result.success and not histogram_result.is_identity

        normal_layout = None
        if texture_type == TextureType.NORMAL or compression.convert_to_normal_map:
            normal_layout = normal_layout_for(compression)
        payload = build_metadata_payload(
            histogram_result if run.histogram_applied else None,
            options.histogram, normal_layout,
        )
        await self._encode(run, levels, compression, compression.is_srgb(texture_type),
                           options, debug_sets, payload)

    @staticmethod
    def _apply_alpha_mode(image: np.ndarray, alpha_mode: AlphaMode) -> np.ndarray:
        if alpha_mode == AlphaMode.REMOVE:
            return ensure_rgb(image)
        if alpha_mode == AlphaMode.FORCE and extract_alpha(image) is None:
            rgb = ensure_rgb(image)
            return merge_alpha(rgb, np.ones(rgb.shape[:2], dtype=np.float32))
        return image

    @staticmethod
    def _normalize(levels: List[np.ndarray],
                   settings: HistogramSettings) -> Tuple[HistogramResult, List[np.ndarray]]:
        # Measured on level 0, then the same remap goes to every level.
        analyzer = HistogramAnalyzer(settings)
        result = analyzer.analyze(levels[0])
        if not result.success:
            logger.warning("Histogram analysis failed: %s", result.error)
            return result, levels
        if settings.processing == HistogramProcessing.PREPROCESS:
            levels = [analyzer.normalize(level, result) for level in levels]
        return result, levels

    def _build_mips(self, run: _Run, image: np.ndarray, options: ConversionOptions,
                    debug_sets: Dict[str, List[np.ndarray]]) -> List[np.ndarray]:
        profile = (options.mip_profile.clone() if options.mip_profile is not None
                   else MipGenerationProfile.create_default(options.texture_type))
        mips = self.mip_generator.generate(
            image, profile, smallest_dimension=options.compression.mip_smallest_dimension,
        )
        if options.active_toksvig is not None and options.texture_type in (
                TextureType.GLOSS, TextureType.ROUGHNESS):
            mips = self._apply_toksvig(run, mips, options, debug_sets)
        return mips

    def _apply_toksvig(self, run: _Run, mips: List[np.ndarray], options: ConversionOptions,
                       debug_sets: Dict[str, List[np.ndarray]]) -> List[np.ndarray]:
        settings: ToksvigSettings = options.active_toksvig
        is_gloss = is_gloss_by_name(run.input_path)
        if is_gloss is None:
            is_gloss = options.texture_type == TextureType.GLOSS
        normal_path = settings.normal_map_path or self.matcher.find(run.input_path)

        alphas = [extract_alpha(m) for m in mips]
        colors = [ensure_rgb(m) if a is not None else m for m, a in zip(mips, alphas)]
        outcome = ToksvigCorrector(settings).correct_from_path(
            colors, normal_path, is_gloss=is_gloss, max_pixels=self.config.max_image_pixels,
        )
        if not outcome.applied:
            return mips
        run.toksvig_applied = True
        run.normal_map_used = outcome.normal_map_path
        debug_sets["gloss"] = list(mips)
        debug_sets["toksvig_variance"] = outcome.variance_mips
        return [merge_alpha(m, a) for m, a in zip(outcome.mips, alphas)]

    # ------------------------------------------
    # ORM packing
    # ------------------------------------------

    async def pack_async(self, packing: ChannelPackingSettings, output_path: str,
                         options: Optional[ConversionOptions] = None,
                         output_size: Optional[Tuple[int, int]] = None,
                         cancel_event: Optional[threading.Event] = None) -> ConversionResult:
        """Pack grayscale channels into one RGBA KTX2 texture."""
        label = next((s.source_path for _, s in packing.active_slots()
                      if s is not None and s.source_path), "") or output_path
        run = _Run(label, output_path, _CancelToken(self._cancel_event, cancel_event))
        return await self._guarded(run, self._pack(run, packing, options, output_size))

    def pack(self, packing: ChannelPackingSettings, output_path: str,
             options: Optional[ConversionOptions] = None,
             output_size: Optional[Tuple[int, int]] = None,
             cancel_event: Optional[threading.Event] = None) -> ConversionResult:
        return asyncio.run(self.pack_async(packing, output_path, options, output_size,
                                           cancel_event))

    async def _pack(self, run: _Run, packing: ChannelPackingSettings,
                    options: Optional[ConversionOptions],
                    output_size: Optional[Tuple[int, int]]):
        if options is None:
            options = ConversionOptions(
                compression=CompressionSettings(use_custom_mipmaps=True,
                                                color_space=ColorSpace.LINEAR),
            )
        errors = packing.validation_errors() + options.validation_errors()
        if errors:
            raise SettingsValidationError("Packed conversion", errors)

        compression = options.compression
        if not compression.use_custom_mipmaps:
            compression = compression.copy()
            compression.use_custom_mipmaps = True

        self._enter_stage(run, ConversionState.PACKING)
        packed = await asyncio.to_thread(self.packer.pack, packing, output_size,
                                         compression.mip_smallest_dimension)
        run.mip_levels = len(packed.mips)
        run.toksvig_applied = packed.toksvig_applied
        run.normal_map_used = packed.normal_map_used
        await self._encode(run, packed.mips, compression, False, options, {}, b"")

    # ------------------------------------------
    # Encoding
    # ------------------------------------------

    def _temp_base(self) -> str:
        return self.config.temp_dir or os.path.join(tempfile.gettempdir(), "TextureBrew")

    async def _encode(self, run: _Run, levels: List[np.ndarray],
                      compression: CompressionSettings, srgb: bool,
                      options: ConversionOptions, debug_sets: Dict[str, List[np.ndarray]],
                      metadata: bytes):
        self._enter_stage(run, ConversionState.ENCODING)
        stem = Path(run.output_path).stem
        temp_dir = make_local_temp_dir(self._temp_base(), prefix="mips_")
        try:
            inputs = await asyncio.to_thread(self._write_levels, levels, temp_dir, stem)
            if compression.use_custom_mipmaps:
                if not compression.remove_temporary_mipmaps:
                    await asyncio.to_thread(self._keep_debug_mips, run, inputs,
                                            debug_sets, stem)
                if options.save_separate_mipmaps:
                    target = options.mipmap_output_dir or os.path.join(
                        os.path.dirname(run.output_path) or ".", f"{stem}_mipmaps")
                    await asyncio.to_thread(self._copy_levels, inputs, target)
                    run.mipmaps_saved_path = target

            result = await self.encoder.encode(inputs, run.output_path, compression,
                                               srgb=srgb, cancel_event=run.cancel)
            if not result.success:
                raise EncoderError(result.error or "Encoder failed", result)
            if metadata:
                await asyncio.to_thread(inject_key_value, run.output_path,
                                        METADATA_KEY, metadata)
                logger.debug("Wrote %d byte(s) of %s metadata to %s", len(metadata),
                             METADATA_KEY, run.output_path)
        finally:
            shutil.rmtree(temp_dir, ignore_errors=True)

    @staticmethod
    def _write_levels(levels: List[np.ndarray], directory: str, stem: str) -> List[str]:
        paths = []
        for index, level in enumerate(levels):
            path = os.path.join(directory, f"{stem}_mip{index}.png")
            save_image(level, path)
            paths.append(path)
        return paths

    @staticmethod
    def _copy_levels(paths: List[str], target: str):
        os.makedirs(target, exist_ok=True)
        for path in paths:
            shutil.copy2(path, os.path.join(target, os.path.basename(path)))
        logger.info("Saved %d mip level(s) to %s", len(paths), target)

    def _keep_debug_mips(self, run: _Run, paths: List[str],
                         debug_sets: Dict[str, List[np.ndarray]], stem: str):
        target = self.config.debug_mipmap_dir or os.path.join(
            os.path.dirname(run.output_path) or ".", "mipmaps")
        self._copy_levels(paths, target)
        for name, levels in debug_sets.items():
            for index, level in enumerate(levels):
                save_image(level, os.path.join(target, f"{stem}_{name}_mip{index}.png"))
        if run.mipmaps_saved_path is None:
            run.mipmaps_saved_path = target


class BatchConverter:
    """Convert every texture under a directory with a bounded thread pool."""

    def __init__(self, pipeline: TextureConversionPipeline):
        self.pipeline = pipeline

    def find_textures(self, directory: str) -> List[str]:
        return find_textures(directory, self.pipeline.config.supported_formats)

    def convert_directory(
        self,
        input_dir: str,
        output_dir: str,
        options_factory: Optional[Callable[[str], Optional[ConversionOptions]]] = None,
        max_workers: Optional[int] = None,
        progress_callback: Optional[Callable[[int, int, ConversionResult], None]] = None,
    ) -> BatchResult:
        """Convert all textures; individual failures are recorded, not raised."""
        started = time.monotonic()
        files = self.find_textures(input_dir)
        batch = BatchResult(input_dir=input_dir, output_dir=output_dir)
        if not files:
            logger.warning("No textures found under %s", input_dir)
            return batch

        workers = max(1, min(max_workers or self.pipeline.config.max_workers, len(files)))
        logger.info("Converting %d texture(s) from %s with %d worker(s)",
                    len(files), input_dir, workers)

        def _convert_one(path: str) -> ConversionResult:
            rel = os.path.relpath(path, input_dir)
            out = get_output_path(rel, output_dir, ext=".ktx2")
            try:
                options = options_factory(path) if options_factory else None
            except Exception as exc:
                logger.error("Cannot build options for %s: %s", path, exc)
                return ConversionResult(success=False, input_path=path, output_path=out,
                                        state=ConversionState.FAILED, error=str(exc))
            return self.pipeline.convert(path, out, options)

        results: Dict[str, ConversionResult] = {}
        done = 0
        with ThreadPoolExecutor(max_workers=workers) as executor:
            futures = {executor.submit(_convert_one, path): path for path in files}
            with tqdm(total=len(futures), desc="Converting") as pbar:
                for future in as_completed(futures):
                    path = futures[future]
                    result = future.result()
                    results[path] = result
                    done += 1
                    pbar.update(1)
                    if progress_callback is not None:
                        progress_callback(done, len(files), result)

        batch.results = [results[path] for path in files]
        batch.duration_seconds = time.monotonic() - started
        logger.info("Batch complete: %d succeeded, %d failed (%.1fs)",
                    batch.success_count, batch.failure_count, batch.duration_seconds)
        return batch
