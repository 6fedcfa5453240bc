"""Texture discovery for batch conversion."""

import logging
import os
from pathlib import Path
from typing import Iterable, List

logger = logging.getLogger("texture_pipeline.scanning")

DEFAULT_TEXTURE_EXTENSIONS = (".png", ".jpg", ".jpeg", ".tga", ".bmp")


def find_textures(input_dir: str,
                  extensions: Iterable[str] = DEFAULT_TEXTURE_EXTENSIONS) -> List[str]:
    """Return texture files under ``input_dir`` recursively, in stable order."""
    supported = {e.lower() for e in extensions}
    input_root_real = os.path.realpath(input_dir)
    found = []

    for root, dirs, files in os.walk(input_dir):
        dirs.sort()
        for fname in sorted(files):
            if Path(fname).suffix.lower() not in supported:
                continue
            fpath = os.path.join(root, fname)
            real_fpath = os.path.realpath(fpath)
            # Guard against symlink/path escapes outside input_dir.
            try:
                if os.path.commonpath([input_root_real, real_fpath]) != input_root_real:
                    logger.warning(
                        "Skipping file outside input root via symlink: %s", fpath
                    )
                    continue
            except ValueError:
                logger.warning("Skipping file with incompatible path root: %s", fpath)
                continue
            found.append(fpath)

    logger.debug("Found %d texture(s) under %s", len(found), input_dir)
    return found
