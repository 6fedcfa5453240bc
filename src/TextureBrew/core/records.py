"""Conversion result records."""

from dataclasses import dataclass, asdict, field
from enum import Enum
from typing import List, Optional


class ConversionState(str, Enum):
    """States a single texture conversion moves through."""

    IDLE = "idle"
    RESAMPLING = "resampling"
    NORMALIZING = "normalizing"
    PACKING = "packing"
    ENCODING = "encoding"
    DONE = "done"
    FAILED = "failed"


@dataclass(frozen=True)
class ConversionResult:
    """Outcome of converting one texture."""

    success: bool
    input_path: str
    output_path: str = ""
    mip_levels: int = 0
    toksvig_applied: bool = False
    normal_map_used: Optional[str] = None
    histogram_applied: bool = False
    state: ConversionState = ConversionState.IDLE
    error: Optional[str] = None
    duration_seconds: float = 0.0
    mipmaps_saved_path: Optional[str] = None

    def to_dict(self) -> dict:
        """Return dataclass fields as a plain dictionary."""
        data = asdict(self)
        data["state"] = self.state.value
        return data


@dataclass
class BatchResult:
    """Aggregated results of a directory conversion."""

    input_dir: str
    output_dir: str
    results: List[ConversionResult] = field(default_factory=list)
    duration_seconds: float = 0.0

    @property
    def success_count(self) -> int:
        return sum(1 for r in self.results if r.success)

    @property
    def failure_count(self) -> int:
        return sum(1 for r in self.results if not r.success)

    @property
    def total(self) -> int:
        return len(self.results)

    def failures(self) -> List[ConversionResult]:
        return [r for r in self.results if not r.success]

    def to_dict(self) -> dict:
        return {
            "input_dir": self.input_dir,
            "output_dir": self.output_dir,
            "total": self.total,
            "success_count": self.success_count,
            "failure_count": self.failure_count,
            "duration_seconds": round(self.duration_seconds, 3),
            "results": [r.to_dict() for r in self.results],
        }
