"""Output and temporary path helpers."""

import os
from pathlib import Path, PurePosixPath
from uuid import uuid4


def _normalize_rel_texture_path(input_rel_path: str) -> Path:
    """Normalize a relative texture path to a canonical, traversal-free form."""
    raw = str(input_rel_path).replace("\\", "/")
    p = PurePosixPath(raw)
    if p.is_absolute():
        raise ValueError(f"Texture path must be relative, got absolute path: {input_rel_path}")

    parts = []
    for part in p.parts:
        if part in ("", "."):
            continue
        if part == "..":
            if parts:
                parts.pop()
            else:
                raise ValueError(
                    f"Texture path escapes root via '..': {input_rel_path}"
                )
            continue
        parts.append(part)

    if not parts:
        raise ValueError(f"Texture path is empty after normalization: {input_rel_path}")
    return Path(*parts)


def get_output_path(input_rel_path: str, output_dir: str,
                    suffix: str = "", ext: str = None) -> str:
    """Return the output path mirroring ``input_rel_path`` under ``output_dir``."""
    p = _normalize_rel_texture_path(input_rel_path)
    stem = p.stem + suffix
    extension = ext or p.suffix
    parent = "" if str(p.parent) == "." else str(p.parent)
    return os.path.join(output_dir, parent, stem + extension)


def make_local_temp_dir(base_dir: str, prefix: str = "tmp_") -> str:
    """Create a writable temp directory without relying on tempfile ACL quirks."""
    os.makedirs(base_dir, exist_ok=True)
    for _ in range(256):
        candidate = os.path.join(base_dir, f"{prefix}{uuid4().hex}")
        try:
            os.makedirs(candidate, exist_ok=False)
            return candidate
        except FileExistsError:
            continue
    raise RuntimeError(f"Unable to allocate temp directory under {base_dir}")
