from __future__ import annotations

import logging

import numpy as np
import pytest

from escort.core.types import ExpressionMatrix
from escort.diagnostics import evaluate_candidate
from escort.errors import InputMissing
from escort.store import MatrixStore
from escort.trajectory import (
    embed_2d,
    fit_lineages,
    prepare_candidate,
    prepare_from_store,
    resolve_gene_count,
)


def _normalized(n_cells: int = 90, n_genes: int = 40, seed: int = 0) -> ExpressionMatrix:
    rng = np.random.default_rng(seed)
    t = np.linspace(0.0, 1.0, n_cells)
    slopes = rng.uniform(1.0, 3.0, size=n_genes) * rng.choice([-1.0, 1.0], size=n_genes)
    values = 4.0 + slopes[:, None] * t[None, :] + rng.normal(0.0, 0.2, size=(n_genes, n_cells))
    return ExpressionMatrix(values)


@pytest.mark.parametrize(
    ("requested", "expected", "message"),
    [
        (None, 10, "Defaulting to 10 genes"),
        ("abc", 10, "Defaulting to 10 genes"),
        (float("nan"), 10, "Defaulting to 10 genes"),
        (3, 10, "below the minimum"),
        (500, 40, "exceeds the maximum"),
        (25, 25, None),
    ],
)
def test_resolve_gene_count(caplog, requested, expected, message):
    caplog.set_level(logging.INFO)
    assert resolve_gene_count(requested, 40) == expected
    if message is None:
        assert caplog.text == ""
    else:
        assert message in caplog.text


def test_embed_2d_rejects_unknown_method():
    with pytest.raises(ValueError, match="Unknown dimension reduction"):
        embed_2d(np.ones((10, 3)), "LLE")


def test_embed_2d_pca_and_mds_shapes():
    x = np.random.default_rng(0).normal(size=(30, 5))
    assert embed_2d(x, "pca").shape == (30, 2)
    assert embed_2d(x, "MDS", seed=1).shape == (30, 2)


def test_fit_lineages_chain_gives_one_ordered_lineage():
    rng = np.random.default_rng(0)
    centres = np.array([[0.0, 0.0], [5.0, 0.0], [10.0, 0.0]])
    emb = np.vstack([c + rng.normal(0.0, 0.3, size=(20, 2)) for c in centres])
    clusters = np.repeat([1, 2, 3], 20)
    pse, fit = fit_lineages(emb, clusters)
    assert pse.shape == (60, 1)
    assert np.nanmax(pse) == pytest.approx(1.0)
    assert np.isfinite(pse).all()
    assert np.mean(pse[:20]) < np.mean(pse[20:40]) < np.mean(pse[40:])
    assert fit.shape == (59, 4)


def test_fit_lineages_branching_tree():
    rng = np.random.default_rng(1)
    centres = np.array([[-6.0, 6.0], [0.0, 0.0], [6.0, 6.0], [0.0, -8.0]])
    emb = np.vstack([c + rng.normal(0.0, 0.3, size=(15, 2)) for c in centres])
    clusters = np.repeat([1, 2, 3, 4], 15)
    pse, fit = fit_lineages(emb, clusters)
    assert pse.shape == (60, 2)
    assert np.isfinite(pse[:30]).all()
    assert np.isnan(pse[30:45, 0]).all() != np.isnan(pse[30:45, 1]).all()
    assert list(np.nanmax(pse, axis=0)) == pytest.approx([1.0, 1.0])
    assert fit.shape[1] == 4


def test_fit_lineages_single_cluster_uses_principal_axis():
    x = np.linspace(0.0, 4.0, 25)
    emb = np.c_[x, 0.5 * x + np.random.default_rng(2).normal(0.0, 0.05, size=25)]
    pse, _ = fit_lineages(emb, np.ones(25, dtype=int))
    order = np.argsort(pse[:, 0])
    assert order[0] in (0, 24)
    assert np.nanmax(pse) == pytest.approx(1.0)


def test_prepare_candidate_builds_a_scorable_candidate(caplog):
    caplog.set_level(logging.INFO)
    norm = _normalized()
    cand = prepare_candidate(norm, n_genes=5, method="PCA", seed=0)
    assert cand.id == "PCA_10_mst"
    assert cand.embedding.shape == (90, 2)
    assert cand.normalized is not None and cand.normalized.n_genes == 10
    assert cand.cells == norm.cells
    assert np.nanmax(cand.pseudotime) == pytest.approx(1.0)
    assert cand.fit_line.shape[0] > 0
    assert "Adjusted to 10" in caplog.text

    row = evaluate_candidate(cand, np.ones(90, dtype=int))
    assert row.dc_check is True
    assert np.isfinite(row.gof)
    assert np.isfinite(row.ushape)


def test_prepare_candidate_custom_id():
    cand = prepare_candidate(_normalized(), n_genes=20, method="pca", candidate_id="mine")
    assert cand.id == "mine"


def test_prepare_from_store_requires_counts():
    store = MatrixStore()
    with pytest.raises(InputMissing, match="normalized"):
        prepare_from_store(store)
    store.load_embedding_counts(_normalized(n_cells=40))
    assert prepare_from_store(store, n_genes=12).id == "PCA_12_mst"
