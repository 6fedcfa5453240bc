"""Name-convention lookups: paired normal maps, ORM source sets, texture types."""

import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from ..config import ChannelPackingMode, TextureType
from ..core.io import read_image_size

logger = logging.getLogger("texture_pipeline.matching")

_TOKEN_SPLIT = re.compile(r"[_\-\s.]+")

# Token rules are tried on the last name token first; substrings are the fallback.
_TYPE_RULES = [
    (TextureType.NORMAL, {"normal", "normals", "norm", "nrm", "n"}, ("normal",)),
    (TextureType.GLOSS, {"gloss", "glossiness", "smoothness", "g"}, ("gloss", "smoothness")),
    (TextureType.ROUGHNESS, {"rough", "roughness", "r"}, ("rough",)),
    (TextureType.METALLIC, {"metal", "metallic", "metalness", "m"}, ("metal",)),
    (TextureType.AMBIENT_OCCLUSION, {"ao", "ambient", "occlusion", "ambientocclusion"},
     ("occlusion",)),
    (TextureType.EMISSIVE, {"emissive", "emission", "emit", "glow"}, ("emissive", "emission")),
    (TextureType.HEIGHT, {"height", "displacement", "disp", "bump"}, ("height", "displacement")),
    (TextureType.ALBEDO, {"albedo", "diffuse", "diff", "color", "colour", "basecolor", "base"},
     ("albedo", "diffuse", "basecolor")),
]


def texture_type_for_filename(path: str) -> TextureType:
    """Guess the texture type from naming conventions (``brick_normal.png``)."""
    stem = Path(path).stem.lower()
    tokens = [t for t in _TOKEN_SPLIT.split(stem) if t]
    # The map kind is a suffix ("rusty_metal_albedo" is albedo, "n_rock" is nothing).
    for token in reversed(tokens[1:]):
        for texture_type, token_names, _ in _TYPE_RULES:
            if token in token_names:
                return texture_type
    for texture_type, _, substrings in _TYPE_RULES:
        if any(s in stem for s in substrings):
            return texture_type
    return TextureType.GENERIC


def is_gloss_by_name(path: str) -> Optional[bool]:
    """True for gloss names, False for roughness names, None when unknown."""
    stem = Path(path).stem.lower()
    if "gloss" in stem or "_g_" in stem or stem.endswith("_g"):
        return True
    if "roughness" in stem or "_r_" in stem or stem.endswith("_r"):
        return False
    return None


def _dimensions_match(path: str, size) -> bool:
    try:
        return read_image_size(path) == size
    except OSError as exc:
        logger.debug("Cannot read header of %s: %s", path, exc)
        return False


class NormalMapMatcher:
    """Find the normal map paired with a gloss/roughness texture."""

    def __init__(self, validate_dimensions: bool = True):
        self.validate_dimensions = validate_dimensions

    @staticmethod
    def candidate_names(stem: str) -> List[str]:
        names = []
        for old, new in (("_roughness", "_normal"), ("_gloss", "_normal"),
                         ("_Roughness", "_Normal"), ("_Gloss", "_Normal")):
            if old in stem:
                names.append(stem.replace(old, new))
        names.append(f"{stem}_normal")
        names.append(f"{stem}_Normal")
        for old in ("_r", "_g", "_R", "_G"):
            if stem.endswith(old):
                names.append(stem[:-len(old)] + ("_n" if old.islower() else "_N"))
        seen, unique = set(), []
        for name in names:
            if name != stem and name not in seen:
                seen.add(name)
                unique.append(name)
        return unique

    def find(self, texture_path: str) -> Optional[str]:
        p = Path(texture_path)
        size = None
        if self.validate_dimensions and p.is_file():
            size = read_image_size(str(p))
        for name in self.candidate_names(p.stem):
            candidate = p.with_name(name + p.suffix)
            if not candidate.is_file():
                continue
            if size is not None and not _dimensions_match(str(candidate), size):
                logger.debug("Normal map candidate %s rejected: size differs from %s",
                             candidate, size)
                continue
            logger.debug("Paired normal map for %s: %s", texture_path, candidate)
            return str(candidate)
        return None


_ORM_SUFFIXES = {
    "ao": ["_ao", "_AO", "_ambientocclusion", "_AmbientOcclusion", "_occlusion", "_Occlusion"],
    "gloss": ["_gloss", "_Gloss", "_glossiness", "_Glossiness", "_smoothness", "_Smoothness"],
    "metallic": ["_metallic", "_Metallic", "_metalness", "_Metalness", "_metal", "_Metal"],
    "height": ["_height", "_Height", "_displacement", "_Displacement", "_disp", "_Disp"],
}

_BASE_SUFFIXES = ["_albedo", "_diffuse", "_color", "_basecolor", "_normal", "_roughness",
                  "_Albedo", "_Diffuse", "_Color", "_BaseColor", "_Normal", "_Roughness"]


@dataclass
class OrmTextureSet:
    base_name: str
    ao_path: Optional[str] = None
    gloss_path: Optional[str] = None
    metallic_path: Optional[str] = None
    height_path: Optional[str] = None

    @property
    def found_count(self) -> int:
        return sum(1 for p in (self.ao_path, self.gloss_path,
                               self.metallic_path, self.height_path) if p)

    @property
    def recommended_mode(self) -> ChannelPackingMode:
        if self.ao_path and self.gloss_path and self.metallic_path and self.height_path:
            return ChannelPackingMode.OGMH
        if self.ao_path and self.gloss_path and self.metallic_path:
            return ChannelPackingMode.OGM
        if self.ao_path and self.gloss_path:
            return ChannelPackingMode.OG
        return ChannelPackingMode.NONE


class OrmTextureDetector:
    """Find AO/gloss/metallic/height siblings of a material texture."""

    def __init__(self, validate_dimensions: bool = True):
        self.validate_dimensions = validate_dimensions

    @staticmethod
    def base_name(stem: str) -> str:
        for suffix in _BASE_SUFFIXES:
            if stem.endswith(suffix):
                return stem[:-len(suffix)]
        return stem

    def _find_channel(self, p: Path, suffixes: List[str], size) -> Optional[str]:
        stem = p.stem
        base = self.base_name(stem)
        names = []
        for suffix in suffixes:
            for known in _BASE_SUFFIXES:
                if known in stem:
                    names.append(stem.replace(known, suffix))
            names.append(base + suffix)
        for name in dict.fromkeys(names):
            candidate = p.with_name(name + p.suffix)
            if not candidate.is_file() or (p.is_file() and os.path.samefile(candidate, p)):
                continue
            if size is not None and not _dimensions_match(str(candidate), size):
                logger.debug("ORM candidate %s rejected: size differs from %s", candidate, size)
                continue
            return str(candidate)
        return None

    def detect(self, texture_path: str) -> OrmTextureSet:
        p = Path(texture_path)
        size = None
        if self.validate_dimensions and p.is_file():
            size = read_image_size(str(p))
        found = OrmTextureSet(base_name=self.base_name(p.stem))
        found.ao_path = self._find_channel(p, _ORM_SUFFIXES["ao"], size)
        found.gloss_path = self._find_channel(p, _ORM_SUFFIXES["gloss"], size)
        found.metallic_path = self._find_channel(p, _ORM_SUFFIXES["metallic"], size)
        found.height_path = self._find_channel(p, _ORM_SUFFIXES["height"], size)
        logger.debug("ORM detection for %s: %d source(s), mode=%s", texture_path,
                     found.found_count, found.recommended_mode.value)
        return found
