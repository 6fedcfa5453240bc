"""Core utilities -- re-exports all public symbols for convenience."""

from .records import BatchResult, ConversionResult, ConversionState
from .io import (
    read_image_size,
    load_image,
    load_grayscale,
    save_image,
    ensure_rgb,
    extract_alpha,
    merge_alpha,
    to_grayscale,
    resize_to,
)
from .scanning import DEFAULT_TEXTURE_EXTENSIONS, find_textures
from .paths import get_output_path, make_local_temp_dir
from .logging import setup_logging

__all__ = [
    "BatchResult", "ConversionResult", "ConversionState",
    "read_image_size", "load_image", "load_grayscale", "save_image",
    "ensure_rgb", "extract_alpha", "merge_alpha", "to_grayscale", "resize_to",
    "DEFAULT_TEXTURE_EXTENSIONS", "find_textures",
    "get_output_path", "make_local_temp_dir",
    "setup_logging",
]
