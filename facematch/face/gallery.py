from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

import numpy as np
import torch

from facematch.face.descriptor import FaceDescriptor
from facematch.face.matcher import FaceDescriptorMatcher, MatchResult
from facematch.utils.log import get_logger
from facematch.utils.math import l2_normalize
from facematch.utils.serializer import parse_timestamp

logger = get_logger(__name__)


@dataclass
class GalleryConfig:
    # Keep at most K samples per person (highest-confidence first) when building a template.
    max_samples_per_person: int = 5
    # Require Top-1 to be sufficiently above Top-2 to avoid ambiguous identifications.
    margin: float = 0.03
    unknown_label: str = "unknown"
    # 1:N search backend: "auto" (torch on CUDA when available, else numpy), "torch", "numpy".
    backend: str = "auto"
    # File name for persisted gallery.
    filename: str = "face_gallery.json"
    # Schema version to support future migrations.
    schema_version: str = "v1"


class Gallery:
    """In-memory enrollment gallery with persistence.

    Each enrolled person has one template: the average of their best valid
    captures. Templates are stored and exported in the same shape as the
    `face_embedding` / `face_embedding_algorithm` columns of the student and
    TA tables (base64 float32 blob + algorithm name).
    """

    def __init__(self, config: Optional[GalleryConfig] = None, matcher: Optional[FaceDescriptorMatcher] = None):
        self.config = config or GalleryConfig()
        self.matcher = matcher or FaceDescriptorMatcher()
        self.templates: Dict[str, FaceDescriptor] = {}
        self.stats: Dict[str, dict] = {}

        # Flattened index for 1:N search, rebuilt lazily after any change:
        # - matrix: (N, D) float32 of normalized templates
        # - names: list[str] length N, row -> person
        self._dirty = True
        self._cache_algorithm: Optional[str] = None
        self._cache_names: List[str] = []
        self._cache_matrix: Optional[np.ndarray] = None

        # Optional torch copy of the matrix, see `GalleryConfig.backend`.
        self._cache_matrix_t = None
        self._cache_device: Optional[str] = None

    def __len__(self) -> int:
        return len(self.templates)

    def __contains__(self, person_id: object) -> bool:
        return str(person_id) in self.templates

    def _invalidate(self) -> None:
        self._dirty = True
        self._cache_matrix_t = None
        self._cache_device = None

    def enroll(self, person_id: str, descriptors: Iterable[FaceDescriptor]) -> Optional[FaceDescriptor]:
        """Build and store a template from several captures of one person."""
        name = str(person_id)
        valid: List[FaceDescriptor] = []
        rejected = 0
        for d in descriptors:
            if self.matcher.validate(d):
                valid.append(d)
            else:
                rejected += 1
        if rejected:
            logger.warning(f"{name}: rejected {rejected} invalid face sample(s), please recapture")
        if not valid:
            logger.warning(f"{name}: no valid face samples, enrollment skipped")
            return None

        # Keep top-K by confidence
        valid.sort(key=lambda d: d.confidence, reverse=True)
        valid = valid[: int(self.config.max_samples_per_person)]

        template = self.matcher.average(valid)
        if template is None:
            logger.warning(f"{name}: face samples disagree on length/algorithm, enrollment skipped")
            return None

        self._store(name, template, count=len(valid))
        logger.info(f"Enrolled {name} from {len(valid)} sample(s) (confidence {template.confidence:.3f})")
        return template

    def _store(self, name: str, template: FaceDescriptor, count: int) -> None:
        self.templates[name] = template
        self.stats[name] = {
            "count": int(count),
            "confidence": float(template.confidence),
        }
        self._invalidate()

    def remove(self, person_id: str) -> bool:
        name = str(person_id)
        if name not in self.templates:
            return False
        del self.templates[name]
        self.stats.pop(name, None)
        self._invalidate()
        logger.info(f"Removed {name} from gallery")
        return True

    def verify(self, person_id: str, descriptor: FaceDescriptor, threshold: Optional[float] = None) -> MatchResult:
        """1:1 check of a fresh capture against one enrolled person."""
        name = str(person_id)
        template = self.templates.get(name)
        if template is None:
            thr = float(self.matcher.config.threshold if threshold is None else threshold)
            return MatchResult(
                is_match=False,
                similarity=0.0,
                distance=float("inf"),
                message=f"No face enrolled for {name} (threshold: {int(round(thr * 100))}%)",
            )
        return self.matcher.compare_descriptors(template, descriptor, threshold)

    def _build_index(self, algorithm_id: str) -> None:
        names: List[str] = []
        rows: List[np.ndarray] = []
        dim = int(self.matcher.config.descriptor_length)
        for name, template in self.templates.items():
            # Skip templates of other embedding models or dims
            if template.algorithm_id != algorithm_id or len(template) != dim:
                continue
            names.append(name)
            rows.append(np.asarray(template.vector, dtype=np.float32))

        self._cache_algorithm = algorithm_id
        self._dirty = False
        self._cache_matrix_t = None
        self._cache_device = None
        if not rows:
            self._cache_names = []
            self._cache_matrix = None
            return
        self._cache_names = names
        self._cache_matrix = np.ascontiguousarray(l2_normalize(np.stack(rows, axis=0)))

    def _ensure_index(self, algorithm_id: str) -> None:
        if self._dirty or self._cache_algorithm != algorithm_id:
            self._build_index(algorithm_id)

    def _torch_device(self) -> Optional[str]:
        """Device for the torch backend, or None to search with numpy."""
        backend = str(self.config.backend)
        if backend == "numpy":
            return None
        try:
            cuda = bool(torch.cuda.is_available())
        except Exception:
            cuda = False
        if cuda:
            return "cuda"
        return "cpu" if backend == "torch" else None

    def _ensure_torch_index(self) -> bool:
        device = self._torch_device()
        if device is None or self._cache_matrix is None:
            return False
        if self._cache_matrix_t is not None and self._cache_device == device:
            return True
        try:
            self._cache_matrix_t = torch.from_numpy(self._cache_matrix).to(device, non_blocking=True)
            self._cache_device = device
            return True
        except Exception as e:
            logger.debug(f"torch gallery index unavailable, using numpy: {e}")
            self._cache_matrix_t = None
            self._cache_device = None
            return False

    def _similarities(self, q: np.ndarray) -> np.ndarray:
        # Prefer the torch backend when one is selected
        if self._ensure_torch_index():
            try:
                q_t = torch.from_numpy(q).to(self._cache_device, non_blocking=True)
                sims_t = self._cache_matrix_t @ q_t
                return sims_t.detach().cpu().numpy().astype(np.float32, copy=False)
            except Exception as e:
                logger.debug(f"torch gallery search failed, falling back to numpy: {e}")
        return self._cache_matrix @ q

    def identify(self, descriptor: FaceDescriptor, topk: int = 5) -> Tuple[str, float, List[Tuple[str, float]]]:
        """Return (identity, best_similarity, topk) for a capture against all templates."""
        unknown = self.config.unknown_label
        if not self.templates or descriptor is None:
            return unknown, 0.0, []

        q = np.asarray(descriptor.vector, dtype=np.float32).reshape(-1)
        if q.shape[0] != int(self.matcher.config.descriptor_length) or not np.all(np.isfinite(q)):
            return unknown, 0.0, []
        if float(np.linalg.norm(q.astype(np.float64))) == 0.0:
            return unknown, 0.0, []
        q = np.ascontiguousarray(l2_normalize(q))

        self._ensure_index(descriptor.algorithm_id)
        if self._cache_matrix is None or not self._cache_names:
            return unknown, 0.0, []

        sims = np.clip(self._similarities(q), -1.0, 1.0)
        order = np.argsort(-sims)
        best_idx = int(order[0])
        best_name = self._cache_names[best_idx]
        best_sim = float(sims[best_idx])
        second_sim = float(sims[int(order[1])]) if len(order) >= 2 else -1.0

        k = int(max(1, topk))
        topk_list = [(self._cache_names[int(i)], float(sims[int(i)])) for i in order[:k]]

        if best_sim >= float(self.matcher.config.threshold) and (best_sim - second_sim) >= float(self.config.margin):
            return best_name, best_sim, topk_list
        return unknown, best_sim, topk_list

    def to_records(self) -> List[dict]:
        records: List[dict] = []
        for name, template in self.templates.items():
            records.append(
                {
                    "person_id": name,
                    "face_embedding": self.matcher.to_base64(template),
                    "face_embedding_algorithm": template.algorithm_id,
                    "confidence": float(template.confidence),
                    "sample_count": int(self.stats.get(name, {}).get("count", 1)),
                    "captured_at": template.captured_at.isoformat(),
                }
            )
        return records

    def _decode_records(self, records: Sequence[Mapping]) -> List[Tuple[str, FaceDescriptor, int]]:
        decoded: List[Tuple[str, FaceDescriptor, int]] = []
        for rec in records:
            blob = rec.get("face_embedding")
            if not blob:
                continue
            name = str(rec["person_id"])
            stored = self.matcher.from_base64(
                blob,
                rec.get("face_embedding_algorithm"),
                confidence=rec.get("confidence"),
            )
            captured_at = stored.captured_at
            if rec.get("captured_at"):
                captured_at = parse_timestamp(rec["captured_at"])
            template = FaceDescriptor(
                vector=stored.vector,
                algorithm_id=stored.algorithm_id,
                confidence=stored.confidence,
                captured_at=captured_at,
            )
            decoded.append((name, template, int(rec.get("sample_count", 1) or 1)))
        return decoded

    def from_records(self, records: Sequence[Mapping]) -> int:
        """Add templates from storage rows; returns how many were loaded.

        Rows without an embedding are skipped. A corrupt row raises `DecodeError`
        and leaves the gallery untouched.
        """
        decoded = self._decode_records(records)
        for name, template, count in decoded:
            self._store(name, template, count=count)
        return len(decoded)

    def save(self, gallery_dir: Path) -> Path:
        gallery_dir = Path(gallery_dir)
        gallery_dir.mkdir(parents=True, exist_ok=True)
        fp = gallery_dir / self.config.filename
        data = {
            "schema_version": self.config.schema_version,
            "threshold": float(self.matcher.config.threshold),
            "descriptor_length": int(self.matcher.config.descriptor_length),
            "records": self.to_records(),
        }
        with open(fp, "w", encoding="utf-8") as f:
            json.dump(data, f, ensure_ascii=False, indent=2)
        logger.info(f"Saved {len(self.templates)} template(s) to {fp}")
        return fp

    def load(self, gallery_dir: Path) -> bool:
        gallery_dir = Path(gallery_dir)
        fp = gallery_dir / self.config.filename
        if not fp.exists():
            return False
        with open(fp, "r", encoding="utf-8") as f:
            data = json.load(f)

        if not isinstance(data, dict) or data.get("schema_version") != self.config.schema_version:
            logger.warning(f"Unknown gallery schema in {fp}, ignoring")
            return False

        # Decode everything first so a corrupt file leaves the current gallery as it was.
        decoded = self._decode_records(data.get("records", []) or [])
        self.templates = {}
        self.stats = {}
        for name, template, count in decoded:
            self._store(name, template, count=count)
        self._invalidate()
        logger.info(f"Loaded {len(decoded)} template(s) from {fp}")
        return True
