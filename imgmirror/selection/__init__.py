"""Selection engine: post filtering, image fingerprints, and cycle pacing."""

from imgmirror.selection.filters import FilterCriteria, FilterResult, PostFilter
from imgmirror.selection.fingerprint import (
    FingerprintEngine,
    GradientHash,
    PerceptualHash,
    build_fingerprint_engine,
)
from imgmirror.selection.scheduler import Scheduler

__all__ = [
    "FilterCriteria",
    "FilterResult",
    "PostFilter",
    "FingerprintEngine",
    "GradientHash",
    "PerceptualHash",
    "build_fingerprint_engine",
    "Scheduler",
]
