from __future__ import annotations

import numpy as np
import pytest

from escort.core.types import ExpressionMatrix, StructureCheckResult
from escort.reports import (
    DE_COLUMNS,
    bh_fdr,
    de_between_clusters,
    explain_structure,
    gene_set_enrichment,
    highly_variable_genes,
    model_gene_var,
)


def _counts(seed: int = 0) -> ExpressionMatrix:
    rng = np.random.default_rng(seed)
    values = rng.poisson(5, size=(200, 40)).astype(float)
    values[0, :20] += 60.0
    genes = ("MARKER",) + tuple(f"G{i}" for i in range(1, 200))
    return ExpressionMatrix(values, genes=genes)


def test_bh_fdr_monotone_and_bounded():
    q = bh_fdr(np.array([0.01, 0.04, 0.03, np.nan]))
    assert q[3] == 1.0
    assert np.all((q >= 0.0) & (q <= 1.0))
    assert q[0] <= q[2] <= q[1]
    with pytest.raises(ValueError):
        bh_fdr(np.array([1.5]))


def test_de_between_clusters_ranks_marker_first():
    raw = _counts()
    clusters = np.r_[np.ones(20, dtype=int), np.full(20, 2)]
    df = de_between_clusters(raw, clusters)
    assert list(df.columns) == DE_COLUMNS
    assert df.loc[0, "gene"] == "MARKER"
    assert df.loc[0, "top_cluster"] == 1
    assert df.loc[0, "log2_fc"] > 0


def test_de_between_clusters_single_cluster_is_empty():
    df = de_between_clusters(_counts(), np.ones(40, dtype=int))
    assert df.empty


def test_model_gene_var_sorted_by_biological_component():
    df = model_gene_var(_counts())
    assert list(df.columns) == ["mean", "total", "tech", "bio"]
    assert df.index[0] == "MARKER"
    assert df["bio"].is_monotonic_decreasing
    hvg = highly_variable_genes(_counts(), n_top=3)
    assert len(hvg) <= 3
    assert (hvg["bio"] > 0).all()


def test_gene_set_enrichment_matches_case_insensitively():
    universe = ["mki67", "TOP2A", "ACTB", "GAPDH", "PCNA"] + [f"X{i}" for i in range(50)]
    df = gene_set_enrichment(["MKI67", "top2a", "ACTB"], universe)
    assert df is not None
    assert df.loc[df["term"] == "cell_cycle", "n_overlap"].item() == 2
    assert gene_set_enrichment(["ACTB"], universe) is None


def test_explain_structure_for_disconnected_data():
    raw = _counts()
    result = StructureCheckResult(False, np.r_[np.ones(20), np.full(20, 2)], 2, 0.9)
    report = explain_structure(raw, raw, result, 0.46)
    assert not report.proceed
    assert report.de_table is not None
    assert report.hvg_table is None
    assert report.decision_message == "Not suitable for trajectory fitting."


def test_explain_structure_go_message():
    raw = _counts()
    result = StructureCheckResult(True, np.ones(40), 1, 0.2)
    report = explain_structure(raw, raw, result, 0.46)
    assert report.de_table is None
    assert report.hvg_table is not None
    assert report.enrichment_message == "There are no genes overlapping Gene Ontology (GO) sets."
    ok = explain_structure(raw, raw, StructureCheckResult(True, np.ones(40), 1, 0.6), 0.46)
    assert ok.proceed
    assert ok.decision_message == "Go to STEP 2"
