from __future__ import annotations

from pathlib import Path

import json
import logging
import sys
from datetime import datetime, timezone

import numpy as np
import pytest

repo_root = Path(__file__).resolve().parents[1]
if str(repo_root) not in sys.path:
    sys.path.insert(0, str(repo_root))

from facematch.face.descriptor import FaceDescriptor
from facematch.face.gallery import Gallery, GalleryConfig
from facematch.utils.serializer import DecodeError


def _mock_vector(seed: int, dim: int = 128) -> np.ndarray:
    rng = np.random.default_rng(seed)
    i = np.arange(dim, dtype=np.float64)
    return (np.sin(i * seed) * 0.1 + rng.random(dim) * 0.01).astype(np.float32)


def _captures(seed: int, n: int = 3, variation: float = 0.03, confidence: float = 0.9):
    base = _mock_vector(seed)
    out = []
    for k in range(n):
        rng = np.random.default_rng(seed * 100 + k)
        vec = base + (rng.random(base.shape[0]) - 0.5) * variation
        out.append(FaceDescriptor(vector=vec, confidence=confidence))
    return out


@pytest.fixture
def gallery() -> Gallery:
    g = Gallery()
    g.enroll("alice", _captures(3))
    g.enroll("bob", _captures(7))
    g.enroll("carol", _captures(11))
    return g


def test_enroll_builds_averaged_template(gallery: Gallery):
    assert len(gallery) == 3
    assert "alice" in gallery
    template = gallery.templates["alice"]
    assert len(template) == 128
    assert gallery.stats["alice"]["count"] == 3
    assert gallery.stats["alice"]["confidence"] == pytest.approx(0.9 * 0.95)


def test_enroll_skips_invalid_samples(caplog: pytest.LogCaptureFixture):
    g = Gallery()
    good = _captures(3, n=2)
    low = FaceDescriptor(vector=_mock_vector(3), confidence=0.2)
    short = FaceDescriptor(vector=_mock_vector(3)[:64], confidence=0.9)

    with caplog.at_level(logging.WARNING, logger="facematch.face.gallery"):
        template = g.enroll("alice", good + [low, short])

    assert template is not None
    assert g.stats["alice"]["count"] == 2
    assert any("rejected 2 invalid" in r.getMessage() for r in caplog.records)


def test_enroll_without_valid_samples_stores_nothing():
    g = Gallery()
    low = FaceDescriptor(vector=_mock_vector(3), confidence=0.1)
    assert g.enroll("alice", [low]) is None
    assert g.enroll("bob", []) is None
    assert len(g) == 0


def test_enroll_keeps_highest_confidence_samples():
    g = Gallery(GalleryConfig(max_samples_per_person=5))
    samples = [
        FaceDescriptor(vector=d.vector, confidence=c)
        for d, c in zip(_captures(3, n=7), [0.6, 0.7, 0.8, 0.9, 0.95, 0.55, 0.65])
    ]
    template = g.enroll("alice", samples)
    assert g.stats["alice"]["count"] == 5
    expected = np.mean([0.95, 0.9, 0.8, 0.7, 0.65]) * 0.95
    assert template.confidence == pytest.approx(expected)


def test_verify_accepts_same_person_and_rejects_others(gallery: Gallery):
    query = _captures(7, n=1, variation=0.05)[0]
    assert gallery.verify("bob", query).is_match
    assert not gallery.verify("alice", query).is_match


def test_verify_unknown_person_is_negative(gallery: Gallery):
    result = gallery.verify("mallory", _captures(7, n=1)[0])
    assert not result.is_match
    assert result.similarity == 0.0
    assert "No face enrolled" in result.message


def test_identify_finds_enrolled_person(gallery: Gallery):
    query = _captures(11, n=1, variation=0.05)[0]
    identity, sim, topk = gallery.identify(query, topk=2)
    assert identity == "carol"
    assert sim > 0.6
    assert len(topk) == 2
    assert topk[0][0] == "carol"
    assert topk[0][1] >= topk[1][1]


def test_identify_stranger_is_unknown(gallery: Gallery):
    stranger = FaceDescriptor(vector=_mock_vector(5), confidence=0.9)
    identity, sim, _ = gallery.identify(stranger)
    assert identity == gallery.config.unknown_label
    assert sim < 0.6


def test_identify_ambiguous_match_is_unknown():
    g = Gallery()
    base = _captures(3, n=2)
    g.enroll("twin_a", base)
    g.enroll("twin_b", [FaceDescriptor(vector=d.vector + 0.0005, confidence=0.9) for d in base])
    identity, sim, _ = g.identify(_captures(3, n=1)[0])
    assert identity == "unknown"
    assert sim > 0.9


def test_identify_ignores_other_algorithms(gallery: Gallery):
    query = FaceDescriptor(vector=_mock_vector(3), algorithm_id="3d-depth-features-v1", confidence=0.9)
    assert gallery.identify(query) == ("unknown", 0.0, [])


def test_identify_on_empty_gallery():
    assert Gallery().identify(_captures(3, n=1)[0]) == ("unknown", 0.0, [])


def test_remove_drops_person_from_search(gallery: Gallery):
    query = _captures(7, n=1)[0]
    assert gallery.identify(query)[0] == "bob"
    assert gallery.remove("bob")
    assert not gallery.remove("bob")
    assert gallery.identify(query)[0] == "unknown"


def test_records_mirror_storage_columns(gallery: Gallery):
    records = gallery.to_records()
    assert {r["person_id"] for r in records} == {"alice", "bob", "carol"}
    rec = records[0]
    assert set(rec) == {
        "person_id",
        "face_embedding",
        "face_embedding_algorithm",
        "confidence",
        "sample_count",
        "captured_at",
    }
    assert rec["face_embedding_algorithm"] == "face-api.js-facenet"
    json.dumps(records)


def test_save_and_load_round_trip(gallery: Gallery, tmp_path: Path):
    fp = gallery.save(tmp_path)
    assert fp.exists()

    restored = Gallery()
    assert restored.load(tmp_path)
    assert set(restored.templates) == {"alice", "bob", "carol"}
    for name, template in gallery.templates.items():
        np.testing.assert_allclose(restored.templates[name].vector, template.vector, atol=1e-6)
        assert restored.templates[name].confidence == pytest.approx(template.confidence)
        assert restored.templates[name].captured_at == template.captured_at
    assert restored.stats["bob"]["count"] == 3

    query = _captures(7, n=1, variation=0.05)[0]
    assert restored.identify(query)[0] == "bob"


def test_load_missing_or_unknown_schema(tmp_path: Path):
    g = Gallery()
    assert not g.load(tmp_path)

    (tmp_path / g.config.filename).write_text(json.dumps({"schema_version": "v0", "records": []}))
    assert not g.load(tmp_path)


def test_from_records_rejects_corrupt_embedding():
    g = Gallery()
    with pytest.raises(DecodeError):
        g.from_records([{"person_id": "alice", "face_embedding": "AAAA"}])


def test_from_records_skips_rows_without_embedding():
    g = Gallery()
    assert g.from_records([{"person_id": "alice", "face_embedding": None}]) == 0
    assert len(g) == 0


def test_failed_load_keeps_current_gallery(gallery: Gallery, tmp_path: Path):
    fp = gallery.save(tmp_path)
    data = json.loads(fp.read_text())
    data["records"][1]["face_embedding"] = "AAAA"
    fp.write_text(json.dumps(data))

    with pytest.raises(DecodeError):
        gallery.load(tmp_path)

    assert sorted(gallery.templates) == ["alice", "bob", "carol"]
    assert sorted(gallery.stats) == ["alice", "bob", "carol"]
    assert gallery.identify(_captures(7, n=1)[0])[0] == "bob"


def test_from_records_is_all_or_nothing(gallery: Gallery):
    dave = FaceDescriptor(vector=_mock_vector(13), confidence=0.9)
    records = [
        {"person_id": "dave", "face_embedding": gallery.matcher.to_base64(dave)},
        {"person_id": "erin", "face_embedding": "AAAA"},
    ]
    with pytest.raises(DecodeError):
        gallery.from_records(records)
    assert "dave" not in gallery
    assert len(gallery) == 3


def test_from_records_accepts_storage_timestamps():
    g = Gallery()
    blob = g.matcher.to_base64(FaceDescriptor(vector=_mock_vector(3), confidence=0.9))
    loaded = g.from_records(
        [
            {"person_id": "alice", "face_embedding": blob, "captured_at": "2025-10-15T09:19:09.12Z"},
            {"person_id": "bob", "face_embedding": blob, "captured_at": "2025-10-15 09:19:09+00"},
        ]
    )
    assert loaded == 2
    assert g.templates["alice"].captured_at == datetime(2025, 10, 15, 9, 19, 9, 120000, tzinfo=timezone.utc)
    assert g.templates["bob"].captured_at == datetime(2025, 10, 15, 9, 19, 9, tzinfo=timezone.utc)


def test_from_records_rejects_bad_timestamp():
    g = Gallery()
    blob = g.matcher.to_base64(FaceDescriptor(vector=_mock_vector(3), confidence=0.9))
    with pytest.raises(DecodeError):
        g.from_records([{"person_id": "alice", "face_embedding": blob, "captured_at": "yesterday"}])
    assert len(g) == 0


def test_identify_tiny_magnitude_query(gallery: Gallery):
    query = _captures(7, n=1, variation=0.05)[0]
    tiny = FaceDescriptor(vector=query.vector * 1e-20, confidence=0.9)
    identity, sim, _ = gallery.identify(tiny)
    assert identity == "bob"
    assert sim > 0.6


def test_identify_zero_query_is_unknown(gallery: Gallery):
    zero = FaceDescriptor(vector=np.zeros(128, dtype=np.float32), confidence=0.9)
    assert gallery.identify(zero) == ("unknown", 0.0, [])


def test_torch_backend_agrees_with_numpy():
    g_np = Gallery(GalleryConfig(backend="numpy"))
    g_t = Gallery(GalleryConfig(backend="torch"))
    for g in (g_np, g_t):
        g.enroll("alice", _captures(3))
        g.enroll("bob", _captures(7))
        g.enroll("carol", _captures(11))

    query = _captures(11, n=1, variation=0.05)[0]
    name_np, sim_np, topk_np = g_np.identify(query, topk=3)
    name_t, sim_t, topk_t = g_t.identify(query, topk=3)

    assert g_t._cache_matrix_t is not None
    assert g_np._cache_matrix_t is None
    assert name_t == name_np == "carol"
    assert sim_t == pytest.approx(sim_np, abs=1e-5)
    assert [n for n, _ in topk_t] == [n for n, _ in topk_np]


def test_torch_failure_falls_back_to_numpy(monkeypatch: pytest.MonkeyPatch):
    g = Gallery(GalleryConfig(backend="torch"))
    g.enroll("alice", _captures(3))
    g.enroll("bob", _captures(7))
    query = _captures(7, n=1, variation=0.05)[0]
    assert g.identify(query)[0] == "bob"

    # A matrix that cannot be multiplied forces the numpy path.
    monkeypatch.setattr(g, "_ensure_torch_index", lambda: True)
    g._cache_matrix_t = object()
    g._cache_device = "cpu"
    identity, sim, _ = g.identify(query)
    assert identity == "bob"
    assert sim > 0.6
