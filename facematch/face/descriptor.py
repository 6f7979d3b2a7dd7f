from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Sequence, Union

import numpy as np

from facematch.config import DEFAULT_ALGORITHM

VectorLike = Union[np.ndarray, Sequence[float]]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_readonly_vector(values: VectorLike) -> np.ndarray:
    """Copy `values` into a flat, read-only float32 array."""
    arr = np.array(values, dtype=np.float32, copy=True).reshape(-1)
    arr.flags.writeable = False
    return arr


@dataclass(frozen=True, eq=False)
class FaceDescriptor:
    """One face embedding plus the capture metadata needed to trust it.

    The vector is copied on construction and frozen, so a descriptor never
    changes after it is created; operations that combine descriptors return
    new ones.
    """

    vector: np.ndarray
    algorithm_id: str = DEFAULT_ALGORITHM
    confidence: float = 1.0
    captured_at: datetime = field(default_factory=_utcnow)

    def __post_init__(self) -> None:
        object.__setattr__(self, "vector", as_readonly_vector(self.vector))
        object.__setattr__(self, "confidence", float(self.confidence))
        object.__setattr__(self, "algorithm_id", str(self.algorithm_id))

    def __len__(self) -> int:
        return int(self.vector.shape[0])

    def __repr__(self) -> str:
        return (
            f"FaceDescriptor(len={len(self)}, algorithm_id={self.algorithm_id!r}, "
            f"confidence={self.confidence:.3f}, captured_at={self.captured_at.isoformat()})"
        )
