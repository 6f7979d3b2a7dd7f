from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional, Sequence

import numpy as np

from facematch.config import (
    AVERAGE_CONFIDENCE_FACTOR,
    DEFAULT_ALGORITHM,
    DESCRIPTOR_LENGTH,
    MATCH_THRESHOLD,
    MIN_CONFIDENCE,
    STORED_CONFIDENCE,
)
from facematch.face.descriptor import FaceDescriptor, VectorLike
from facematch.utils.math import cosine_similarity, euclidean_distance
from facematch.utils.serializer import (
    DecodeError,
    descriptor_from_base64,
    descriptor_from_bytes,
    descriptor_to_base64,
    descriptor_to_bytes,
)

__all__ = ["DecodeError", "FaceDescriptorMatcher", "MatchResult", "MatcherConfig"]


@dataclass
class MatcherConfig:
    # Cosine similarity needed for a match.
    threshold: float = MATCH_THRESHOLD
    # Descriptors below this confidence fail validation.
    min_confidence: float = MIN_CONFIDENCE
    descriptor_length: int = DESCRIPTOR_LENGTH
    default_algorithm: str = DEFAULT_ALGORITHM
    # Confidence given to descriptors decoded from storage when the caller has none.
    stored_confidence: float = STORED_CONFIDENCE
    # average(): aggregate confidence = mean(confidences) * factor (multi-sample only).
    average_confidence_factor: float = AVERAGE_CONFIDENCE_FACTOR


@dataclass(frozen=True)
class MatchResult:
    is_match: bool
    similarity: float
    distance: float
    message: str


def _verdict(similarity: float, threshold: float, is_match: bool) -> str:
    pct = int(round(similarity * 100))
    if is_match:
        return f"Face match confirmed ({pct}% similarity)"
    return f"Face mismatch detected ({pct}% similarity, threshold: {int(round(threshold * 100))}%)"


class FaceDescriptorMatcher:
    """Stateless comparison/validation/codec/averaging over face descriptors.

    Nothing here raises on bad vectors: wrong lengths, zero vectors and NaNs
    come back as a negative match or a failed validation. The one exception
    is decoding a corrupt blob, which raises `DecodeError`.
    """

    def __init__(self, config: Optional[MatcherConfig] = None):
        self.config = config or MatcherConfig()

    def _mismatch(self, threshold: float, reason: str) -> MatchResult:
        message = f"{reason} (threshold: {int(round(threshold * 100))}%)"
        return MatchResult(is_match=False, similarity=0.0, distance=float("inf"), message=message)

    def compare(self, a: VectorLike, b: VectorLike, threshold: Optional[float] = None) -> MatchResult:
        thr = float(self.config.threshold if threshold is None else threshold)
        va = np.asarray(a, dtype=np.float32).reshape(-1)
        vb = np.asarray(b, dtype=np.float32).reshape(-1)

        if va.shape[0] != vb.shape[0]:
            return self._mismatch(thr, f"Descriptor length mismatch: {va.shape[0]} vs {vb.shape[0]}")

        if not (np.all(np.isfinite(va)) and np.all(np.isfinite(vb))):
            return self._mismatch(thr, "Descriptor contains invalid values")

        sim = cosine_similarity(va, vb)
        dist = euclidean_distance(va, vb)
        is_match = bool(sim >= thr)
        return MatchResult(is_match=is_match, similarity=sim, distance=dist, message=_verdict(sim, thr, is_match))

    def compare_descriptors(
        self,
        a: FaceDescriptor,
        b: FaceDescriptor,
        threshold: Optional[float] = None,
    ) -> MatchResult:
        """Like `compare`, but embeddings from different algorithms never match."""
        thr = float(self.config.threshold if threshold is None else threshold)
        if a.algorithm_id != b.algorithm_id:
            return self._mismatch(thr, f"Descriptor algorithm mismatch: {a.algorithm_id} vs {b.algorithm_id}")
        return self.compare(a.vector, b.vector, thr)

    def validate(self, descriptor: Optional[FaceDescriptor]) -> bool:
        if descriptor is None:
            return False
        vec = getattr(descriptor, "vector", None)
        if vec is None:
            return False
        vec = np.asarray(vec)
        if vec.ndim != 1 or int(vec.shape[0]) != int(self.config.descriptor_length):
            return False
        if not np.all(np.isfinite(vec)):
            return False
        conf = float(getattr(descriptor, "confidence", 0.0))
        # NaN confidence must fail too, hence the positive comparison.
        if not conf >= float(self.config.min_confidence):
            return False
        return True

    def serialize(self, descriptor: FaceDescriptor) -> bytes:
        return descriptor_to_bytes(descriptor)

    def deserialize(
        self,
        data: bytes,
        algorithm_id: Optional[str] = None,
        confidence: Optional[float] = None,
    ) -> FaceDescriptor:
        return descriptor_from_bytes(
            data,
            self.config.default_algorithm if algorithm_id is None else algorithm_id,
            confidence=self.config.stored_confidence if confidence is None else confidence,
            expected_length=self.config.descriptor_length,
        )

    def to_base64(self, descriptor: FaceDescriptor) -> str:
        return descriptor_to_base64(descriptor)

    def from_base64(
        self,
        text: str,
        algorithm_id: Optional[str] = None,
        confidence: Optional[float] = None,
    ) -> FaceDescriptor:
        return descriptor_from_base64(
            text,
            self.config.default_algorithm if algorithm_id is None else algorithm_id,
            confidence=self.config.stored_confidence if confidence is None else confidence,
            expected_length=self.config.descriptor_length,
        )

    def average(self, descriptors: Sequence[FaceDescriptor]) -> Optional[FaceDescriptor]:
        """Element-wise mean of several captures of the same subject.

        Returns None for an empty list, or when lengths/algorithms disagree.
        """
        items: List[FaceDescriptor] = [d for d in (descriptors or []) if d is not None]
        if not items:
            return None

        algorithm_id = items[0].algorithm_id
        dim = len(items[0])
        if any(d.algorithm_id != algorithm_id or len(d) != dim for d in items):
            return None

        if len(items) == 1:
            only = items[0]
            return FaceDescriptor(vector=only.vector, algorithm_id=algorithm_id, confidence=only.confidence)

        mat = np.stack([np.asarray(d.vector, dtype=np.float64) for d in items], axis=0)
        mean_vec = np.mean(mat, axis=0).astype(np.float32)
        mean_conf = float(np.mean([d.confidence for d in items]))
        conf = mean_conf * float(self.config.average_confidence_factor)
        return FaceDescriptor(vector=mean_vec, algorithm_id=algorithm_id, confidence=conf)
