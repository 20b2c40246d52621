from __future__ import annotations

import logging

import numpy as np
import pytest

from escort import diagnostics
from escort.config import EscortConfig
from escort.core.types import Candidate, ExpressionMatrix
from escort.diagnostics import (
    align_clusters,
    check_goodness_of_fit,
    check_low_dim_disconnection,
    check_similarity_retention,
    detect_ambiguous_region,
    evaluate_candidate,
    run_diagnostics,
)
from escort.errors import DegenerateCandidate, DuplicateCandidateId


def _band(n: int = 120, seed: int = 0) -> np.ndarray:
    rng = np.random.default_rng(seed)
    x = np.linspace(0.0, 10.0, n) + rng.normal(0.0, 0.05, size=n)
    y = rng.uniform(0.0, 2.0, size=n)
    return np.c_[x, y]


def _two_blobs(n: int = 120, seed: int = 0) -> np.ndarray:
    rng = np.random.default_rng(seed)
    half = n // 2
    left = rng.normal(0.0, 0.5, size=(half, 2))
    right = rng.normal(0.0, 0.5, size=(n - half, 2)) + np.array([50.0, 0.0])
    return np.vstack([left, right])


def _band_candidate(cid: str, n: int = 120, seed: int = 0) -> Candidate:
    emb = _band(n, seed)
    return Candidate(
        id=cid,
        embedding=emb,
        pseudotime=emb[:, 0] / emb[:, 0].max(),
        fit_line=np.array([[0.0, 1.0, 10.0, 1.0]]),
    )


def _u_candidate(cid: str = "U") -> Candidate:
    x = np.linspace(0.0, 10.0, 50)
    lower = np.c_[x, np.zeros_like(x)]
    upper = np.c_[x[::-1], np.full_like(x, 0.3)]
    emb = np.vstack([lower, upper])
    pse = np.r_[x / 20.0, 0.5 + (10.0 - x[::-1]) / 20.0]
    return Candidate(id=cid, embedding=emb, pseudotime=pse, fit_line=np.array([[0.0, 0.0, 10.0, 0.15]]))


def test_low_dim_disconnection_detects_separated_blobs():
    res = check_low_dim_disconnection(_two_blobs(), config=EscortConfig())
    assert not res.if_connected
    assert res.k >= 2


def test_low_dim_disconnection_accepts_continuous_band():
    res = check_low_dim_disconnection(_band(), config=EscortConfig())
    assert res.if_connected


def test_low_dim_disconnection_rejects_single_point():
    with pytest.raises(DegenerateCandidate, match="dc_check undefined"):
        check_low_dim_disconnection(np.zeros((1, 2)), candidate_id="P")


def test_similarity_retention_with_matching_clusters():
    emb = _two_blobs()
    clusters = np.r_[np.ones(60, dtype=int), np.full(60, 2)]
    res = check_similarity_retention(emb, clusters)
    assert res.good_rate == pytest.approx(1.0)
    assert res.knn_overlap is None


def test_similarity_retention_reports_knn_overlap():
    emb = _two_blobs()
    clusters = np.r_[np.ones(60, dtype=int), np.full(60, 2)]
    norm = ExpressionMatrix(np.vstack([emb.T, emb.T * 2.0]))
    res = check_similarity_retention(emb, clusters, normalized=norm)
    assert 0.0 <= res.knn_overlap <= 1.0
    assert res.knn_overlap > 0.5


def test_similarity_retention_cluster_length_mismatch():
    with pytest.raises(DegenerateCandidate, match="cluster assignments cover 10 cells"):
        check_similarity_retention(_band(), np.ones(10), candidate_id="A")


def test_goodness_of_fit_full_grid():
    g = np.linspace(0.0, 1.0, 20)
    xx, yy = np.meshgrid(g, g)
    emb = np.c_[xx.ravel(), yy.ravel()]
    assert check_goodness_of_fit(emb) == pytest.approx(1.0)


def test_goodness_of_fit_penalises_empty_hull():
    rng = np.random.default_rng(2)
    corner_a = rng.uniform(0.0, 0.2, size=(200, 2))
    corner_b = rng.uniform(0.8, 1.0, size=(200, 2))
    assert check_goodness_of_fit(np.vstack([corner_a, corner_b])) < 0.6


def test_goodness_of_fit_degenerate_geometry():
    line = np.c_[np.arange(10.0), np.arange(10.0)]
    with pytest.raises(DegenerateCandidate, match="collinear"):
        check_goodness_of_fit(line)
    flat = np.c_[np.arange(10.0), np.zeros(10)]
    with pytest.raises(DegenerateCandidate, match="zero extent"):
        check_goodness_of_fit(flat)


def test_ambiguity_zero_for_straight_path():
    res = detect_ambiguous_region(_band_candidate("S"))
    assert res.amb_pct == pytest.approx(0.0)
    assert res.n_assigned == 120


def test_ambiguity_flags_folded_path():
    res = detect_ambiguous_region(_u_candidate())
    assert res.amb_pct > 0.5


def test_ambiguity_requires_fit_line():
    cand = Candidate(id="E", embedding=_band(), pseudotime=np.linspace(0, 1, 120), fit_line=[])
    with pytest.raises(DegenerateCandidate, match="no fitted curve"):
        detect_ambiguous_region(cand)


def test_evaluate_candidate_collects_metrics():
    row = evaluate_candidate(_band_candidate("A"), np.ones(120, dtype=int))
    assert row.dc_check is True
    assert row.simi_retain == pytest.approx(1.0)
    assert row.gof > 0.8
    assert row.ushape == pytest.approx(0.0)
    assert row.notes == ()
    assert row.complete


def test_evaluate_candidate_degenerate_check_warns_and_continues(caplog):
    caplog.set_level(logging.WARNING)
    cand = Candidate(id="E", embedding=_band(), pseudotime=np.linspace(0, 1, 120), fit_line=[])
    row = evaluate_candidate(cand, np.ones(120, dtype=int), logger=logging.getLogger("test"))
    assert np.isnan(row.ushape)
    assert row.dc_check is True
    assert any(n.startswith("ushape unavailable") for n in row.notes)
    assert "ushape skipped" in caplog.text
    assert "candidate=E" in caplog.text


def test_evaluate_candidate_without_clusters():
    row = evaluate_candidate(_band_candidate("A"), None)
    assert np.isnan(row.simi_retain)
    assert "simi_retain unavailable: no high-dimensional clusters" in row.notes


def test_evaluate_candidate_unexpected_error_propagates(monkeypatch):
    def _raise(*_args, **_kwargs):
        raise RuntimeError("unexpected")

    monkeypatch.setattr(diagnostics, "check_goodness_of_fit", _raise)
    with pytest.raises(RuntimeError, match="unexpected"):
        evaluate_candidate(_band_candidate("A"), np.ones(120, dtype=int))


def test_run_diagnostics_keys_rows_by_id():
    batch = [_band_candidate("b", seed=1), _band_candidate("a", seed=2)]
    rows = run_diagnostics(batch, np.ones(120, dtype=int), n_jobs=1)
    assert list(rows) == ["a", "b"]
    assert all(r.dc_check for r in rows.values())


def test_run_diagnostics_parallel_matches_serial():
    batch = [_band_candidate(f"c{i}", seed=i) for i in range(3)]
    clusters = np.ones(120, dtype=int)
    cfg = EscortConfig(backend="threading")
    serial = run_diagnostics(batch, clusters, config=cfg, n_jobs=1)
    parallel = run_diagnostics(batch, clusters, config=cfg, n_jobs=2)
    assert serial == parallel


def test_run_diagnostics_rejects_duplicate_ids():
    with pytest.raises(DuplicateCandidateId, match="dup"):
        run_diagnostics([_band_candidate("dup"), _band_candidate("dup", seed=3)], None, n_jobs=1)


def _named_blob_candidate(order: np.ndarray, names: tuple[str, ...]) -> Candidate:
    emb = _two_blobs()[order]
    return Candidate(
        id="P",
        embedding=emb,
        pseudotime=np.linspace(0.0, 1.0, emb.shape[0]),
        fit_line=np.array([[0.0, 0.0, 50.0, 0.0]]),
        cells=tuple(names[i] for i in order),
    )


def test_evaluate_candidate_matches_clusters_by_cell_name():
    names = tuple(f"cell{i}" for i in range(120))
    clusters = np.r_[np.ones(60, dtype=int), np.full(60, 2)]
    order = np.random.default_rng(5).permutation(120)
    row = evaluate_candidate(_named_blob_candidate(order, names), clusters, cluster_cells=names)
    assert row.simi_retain == pytest.approx(1.0)
    assert not any(n.startswith("simi_retain") for n in row.notes)


def test_run_diagnostics_matches_clusters_by_cell_name():
    names = tuple(f"cell{i}" for i in range(120))
    clusters = np.r_[np.ones(60, dtype=int), np.full(60, 2)]
    order = np.random.default_rng(6).permutation(120)
    rows = run_diagnostics([_named_blob_candidate(order, names)], clusters, n_jobs=1, cluster_cells=names)
    assert rows["P"].simi_retain == pytest.approx(1.0)


def test_evaluate_candidate_unlabelled_cell_fails_similarity():
    names = tuple(f"cell{i}" for i in range(120))
    clusters = np.r_[np.ones(60, dtype=int), np.full(60, 2)]
    other = tuple(f"other{i}" for i in range(120))
    row = evaluate_candidate(_named_blob_candidate(np.arange(120), other), clusters, cluster_cells=names)
    assert np.isnan(row.simi_retain)
    assert any("no Stage-1 cluster label" in n for n in row.notes)
    assert not row.complete


def test_align_clusters_falls_back_to_position_without_names():
    clusters = np.r_[np.ones(60, dtype=int), np.full(60, 2)]
    cand = _named_blob_candidate(np.arange(120), tuple(f"cell{i}" for i in range(120)))
    assert np.array_equal(align_clusters(clusters, (), cand), clusters)


def test_evaluate_candidate_reports_knn_overlap():
    emb = _two_blobs()
    norm = ExpressionMatrix(np.vstack([emb.T, emb.T * 2.0]))
    cand = Candidate(
        id="K",
        embedding=emb,
        pseudotime=np.linspace(0.0, 1.0, 120),
        fit_line=np.array([[0.0, 0.0, 50.0, 0.0]]),
        normalized=norm,
    )
    row = evaluate_candidate(cand, np.r_[np.ones(60, dtype=int), np.full(60, 2)])
    assert row.knn_overlap is not None
    assert row.knn_overlap > 0.5
    assert evaluate_candidate(_band_candidate("A"), np.ones(120, dtype=int)).knn_overlap is None
