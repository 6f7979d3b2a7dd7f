from __future__ import annotations

import numpy as np


def l2_normalize(vec: np.ndarray) -> np.ndarray:
    """L2-normalize a vector (or 2D array row-wise) safely.

    Only exactly-zero rows are left as they are; tiny but non-zero vectors are
    still scaled to unit length (norms are taken in float64).
    """
    arr = np.asarray(vec, dtype=np.float64)
    if arr.ndim == 1:
        denom = float(np.linalg.norm(arr))
        if denom == 0.0:
            return arr.astype(np.float32)
        return (arr / denom).astype(np.float32)
    if arr.ndim == 2:
        norms = np.linalg.norm(arr, axis=1, keepdims=True)
        norms = np.where(norms == 0.0, 1.0, norms)
        return (arr / norms).astype(np.float32)
    raise ValueError(f"Unsupported ndim={arr.ndim}")


def cosine_similarity(a: np.ndarray, b: np.ndarray) -> float:
    """Cosine similarity for 1D vectors, clamped to [-1, 1].

    Zero-norm and non-finite inputs give 0.0. Identical vectors give exactly 1.0.
    """
    va = np.asarray(a, dtype=np.float64).reshape(-1)
    vb = np.asarray(b, dtype=np.float64).reshape(-1)
    if va.shape != vb.shape:
        raise ValueError(f"Shape mismatch: {va.shape} vs {vb.shape}")
    if not (np.all(np.isfinite(va)) and np.all(np.isfinite(vb))):
        return 0.0
    # float64 squares of float32 values never underflow to 0, so only true zero vectors land here.
    aa = float(np.dot(va, va))
    bb = float(np.dot(vb, vb))
    if aa == 0.0 or bb == 0.0:
        return 0.0
    sim = float(np.dot(va, vb)) / float(np.sqrt(aa * bb))
    return max(-1.0, min(1.0, sim))


def euclidean_distance(a: np.ndarray, b: np.ndarray) -> float:
    va = np.asarray(a, dtype=np.float64).reshape(-1)
    vb = np.asarray(b, dtype=np.float64).reshape(-1)
    if va.shape != vb.shape:
        raise ValueError(f"Shape mismatch: {va.shape} vs {vb.shape}")
    return float(np.linalg.norm(va - vb))
