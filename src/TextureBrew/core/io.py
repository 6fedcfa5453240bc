"""Image I/O utilities -- load/save numpy arrays with explicit bit-depth handling."""

import logging
import os
import threading
from pathlib import Path
from typing import Optional, Tuple

import cv2
import numpy as np
from PIL import Image

# Pixel limits are checked per call in load_image() against the header size.
Image.MAX_IMAGE_PIXELS = None

logger = logging.getLogger("texture_pipeline.io")


def read_image_size(path: str) -> Tuple[int, int]:
    """Return ``(width, height)`` from the image header without decoding pixels."""
    with Image.open(path) as img:
        return img.width, img.height


def load_image(path: str, max_pixels: int = 0) -> np.ndarray:
    """Load image as float32 numpy array in [0, 1].

    Grayscale sources are expanded to RGB; palette and LA images become RGBA.
    """
    ext = Path(path).suffix.lower()
    try:
        with Image.open(path) as img:
            if max_pixels > 0 and img.width * img.height > max_pixels:
                raise ValueError(
                    f"Image too large: {img.width}x{img.height} = "
                    f"{img.width * img.height:,} pixels (max {max_pixels:,})."
                )

            if img.mode in ("I;16", "I;16B", "I;16L", "I;16N"):
                logger.debug("Loading %s as 16-bit integer mode %s", path, img.mode)
                arr = np.asarray(img, dtype=np.float32) / 65535.0
            elif img.mode == "I":
                arr = np.clip(np.asarray(img, dtype=np.float32) / 65535.0, 0.0, 1.0)
            elif img.mode == "F":
                arr = np.clip(np.asarray(img, dtype=np.float32), 0.0, 1.0)
            elif img.mode in ("P", "LA", "PA"):
                with img.convert("RGBA") as converted:
                    arr = np.asarray(converted, dtype=np.float32) / 255.0
            elif img.mode in ("L", "1", "CMYK", "YCbCr"):
                with img.convert("RGB") as converted:
                    arr = np.asarray(converted, dtype=np.float32) / 255.0
            else:
                arr = np.asarray(img, dtype=np.float32) / 255.0

            if arr.ndim == 2:
                arr = np.stack([arr] * 3, axis=-1)
            return arr.astype(np.float32, copy=False)
    except ValueError:
        raise
    except Exception as e:
        logger.error("Failed to open image '%s' (ext=%s): %s", path, ext, e)
        raise IOError(f"Failed to open image: {path} ({e})") from e


def load_grayscale(path: str, max_pixels: int = 0) -> np.ndarray:
    """Load an image and reduce it to a single (H, W) float32 channel."""
    return to_grayscale(load_image(path, max_pixels=max_pixels))


def save_image(arr: np.ndarray, path: str, bits: int = 8):
    """Save float32 [0,1] numpy array as image.

    Handles RGB, RGBA, and grayscale (2D). Uses atomic write (temp file +
    ``os.replace``) to prevent truncated output on crash. 16-bit output is
    written through cv2 and only for PNG.
    """
    arr = np.clip(arr, 0, 1)
    if arr.size == 0 or arr.ndim < 2:
        raise ValueError(
            f"Cannot save empty or degenerate array (shape={arr.shape}) to {path}"
        )
    if arr.ndim == 3 and arr.shape[-1] == 1:
        arr = arr[:, :, 0]

    ext = Path(path).suffix.lower()
    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    # Keep original extension so Pillow/cv2 can infer the format.
    tmp_path = f"{path}.tmp.{os.getpid()}.{threading.get_ident()}{ext}"

    try:
        if bits == 16 and ext == ".png":
            arr_16 = np.round(arr * 65535.0).astype(np.uint16)
            if arr_16.ndim == 2:
                png_data = arr_16
            elif arr_16.shape[-1] == 4:
                png_data = arr_16[:, :, [2, 1, 0, 3]]  # RGBA -> BGRA
            else:
                png_data = arr_16[:, :, :3][:, :, ::-1]  # RGB -> BGR
            if not cv2.imwrite(tmp_path, np.ascontiguousarray(png_data)):
                raise IOError(f"cv2.imwrite failed for 16-bit PNG: {path}")
            os.replace(tmp_path, path)
            logger.debug("Saved: %s (16bit)", path)
            return

        arr_out = np.round(arr * 255).astype(np.uint8)
        with Image.fromarray(arr_out) as img:
            if ext in (".jpg", ".jpeg") and img.mode == "RGBA":
                with img.convert("RGB") as converted:
                    converted.save(tmp_path, quality=95)
            else:
                img.save(tmp_path)
        os.replace(tmp_path, path)
        logger.debug("Saved: %s (%s, 8bit)", path, arr_out.shape)
    finally:
        if os.path.exists(tmp_path):
            try:
                os.remove(tmp_path)
            except OSError:
                pass


def ensure_rgb(arr: np.ndarray) -> np.ndarray:
    """Ensure array is (H, W, 3)."""
    if arr.ndim == 2:
        return np.stack([arr] * 3, axis=-1)
    if arr.shape[-1] == 4:
        return arr[:, :, :3]
    if arr.shape[-1] == 1:
        return np.concatenate([arr] * 3, axis=-1)
    return arr


def extract_alpha(arr: np.ndarray) -> Optional[np.ndarray]:
    """Extract alpha channel if present."""
    if arr.ndim == 3 and arr.shape[-1] == 4:
        return arr[:, :, 3]
    return None


def merge_alpha(rgb: np.ndarray, alpha: Optional[np.ndarray]) -> np.ndarray:
    """Merge RGB with alpha channel."""
    if alpha is None:
        return rgb
    rgb = ensure_rgb(rgb)
    if alpha.shape != rgb.shape[:2]:
        raise ValueError(
            f"alpha shape {alpha.shape} does not match rgb shape {rgb.shape[:2]}"
        )
    return np.dstack([rgb, np.clip(alpha, 0, 1).astype(rgb.dtype, copy=False)])


def to_grayscale(arr: np.ndarray) -> np.ndarray:
    """Reduce an image to one channel by averaging its color channels."""
    if arr.ndim == 2:
        return arr.astype(np.float32, copy=False)
    if arr.shape[-1] == 1:
        return arr[:, :, 0].astype(np.float32, copy=False)
    return np.mean(arr[:, :, :3], axis=-1).astype(np.float32)


def resize_to(arr: np.ndarray, width: int, height: int) -> np.ndarray:
    """Resize to ``width`` x ``height`` using area when shrinking, cubic otherwise."""
    h, w = arr.shape[:2]
    if (w, h) == (width, height):
        return arr.astype(np.float32, copy=False)
    interp = cv2.INTER_AREA if width <= w and height <= h else cv2.INTER_CUBIC
    out = cv2.resize(arr.astype(np.float32, copy=False), (width, height),
                     interpolation=interp)
    return np.clip(out, 0.0, 1.0).astype(np.float32)
