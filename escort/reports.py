"""Explanatory Stage-1 sub-reports shown when trajectory fitting is rejected."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Mapping

import numpy as np
import pandas as pd
from scipy.stats import hypergeom, kruskal

from escort.core.types import ExpressionMatrix, StructureCheckResult

EPS = 1e-12

DEFAULT_GENE_SETS: dict[str, list[str]] = {
    "cell_cycle": [
        "MKI67", "TOP2A", "PCNA", "MCM2", "MCM3", "MCM4", "MCM5", "MCM6", "MCM7",
        "CCNA2", "CCNB1", "CCNB2", "CCNE1", "CCNE2", "CDK1", "CDK2", "CDC20",
        "CDC6", "CDKN1A", "CDKN3", "BUB1", "BUB1B", "AURKA", "AURKB", "PLK1",
        "E2F1", "TYMS", "RRM2", "HIST1H4C", "KIF11", "KIF2C", "CENPF", "CENPE",
        "TPX2", "NUSAP1", "UBE2C", "BIRC5", "MAD2L1", "CHEK1", "GMNN",
    ],
    "mitotic_cell_cycle": [
        "CDK1", "CCNB1", "CCNB2", "CDC20", "PLK1", "AURKA", "AURKB", "BUB1",
        "BUB1B", "KIF11", "KIF2C", "CENPE", "CENPF", "TPX2", "NUSAP1", "UBE2C",
        "MAD2L1", "TTK", "ESPL1", "NDC80",
    ],
    "dna_replication": [
        "PCNA", "MCM2", "MCM3", "MCM4", "MCM5", "MCM6", "MCM7", "RRM1", "RRM2",
        "POLA1", "POLD1", "POLE", "RFC4", "GINS2", "CDC6", "CDT1", "TYMS",
    ],
}

DE_COLUMNS = ["gene", "statistic", "p_value", "q_value", "top_cluster", "log2_fc"]
ENRICHMENT_COLUMNS = ["term", "n_overlap", "set_size", "n_query", "p_value", "q_value", "genes"]


def bh_fdr(pvals: np.ndarray) -> np.ndarray:
    arr = np.asarray(pvals, dtype=float)
    flat = arr.ravel()
    q = np.ones_like(flat)
    finite = np.isfinite(flat)
    if np.any((flat[finite] < 0.0) | (flat[finite] > 1.0)):
        raise ValueError("p-values must be in [0,1] or NaN.")
    if np.any(finite):
        p = flat[finite]
        m = int(p.size)
        order = np.argsort(p, kind="mergesort")
        ranked = p[order]
        ranks = np.arange(1, m + 1, dtype=float)
        adj = ranked * (float(m) / ranks)
        adj = np.minimum.accumulate(adj[::-1])[::-1]
        adj = np.clip(adj, 0.0, 1.0)
        q_valid = np.empty_like(adj)
        q_valid[order] = adj
        q[finite] = q_valid
    return q.reshape(arr.shape)


def de_between_clusters(raw: ExpressionMatrix, clusters: np.ndarray) -> pd.DataFrame:
    """Kruskal-Wallis test per gene on log-CPM across disconnected clusters."""
    labels = np.asarray(clusters).ravel()
    if labels.size != raw.n_cells:
        raise ValueError("clusters length must match the number of cells.")
    uniq = np.unique(labels)
    if uniq.size < 2:
        return pd.DataFrame(columns=DE_COLUMNS)

    values = np.asarray(raw.values, dtype=float)
    lib = values.sum(axis=0)
    logcpm = np.log1p(values / np.maximum(lib, EPS) * 1e6)
    masks = [labels == c for c in uniq]

    rows = []
    for gi, gene in enumerate(raw.genes):
        x = logcpm[gi]
        groups = [x[m] for m in masks]
        if np.ptp(x) <= EPS:
            stat, p = float("nan"), 1.0
        else:
            res = kruskal(*groups)
            stat, p = float(res.statistic), float(res.pvalue)
        means = np.array([g.mean() for g in groups])
        top = int(np.argmax(means))
        rest = np.concatenate([g for i, g in enumerate(groups) if i != top])
        log2_fc = (means[top] - float(rest.mean())) / np.log(2.0)
        rows.append(
            {
                "gene": gene,
                "statistic": stat,
                "p_value": p if np.isfinite(p) else 1.0,
                "top_cluster": int(uniq[top]),
                "log2_fc": float(log2_fc),
            }
        )
    df = pd.DataFrame(rows)
    df["q_value"] = bh_fdr(df["p_value"].to_numpy(dtype=float))
    df = df.sort_values(["q_value", "p_value", "gene"], kind="mergesort").reset_index(drop=True)
    return df[DE_COLUMNS]


def model_gene_var(normalized: ExpressionMatrix, n_bins: int = 20) -> pd.DataFrame:
    """Split per-gene variance into a mean-dependent technical trend and a biological part."""
    values = np.asarray(normalized.values, dtype=float)
    mean = values.mean(axis=1)
    total = values.var(axis=1, ddof=1) if normalized.n_cells > 1 else np.zeros(normalized.n_genes)

    order = np.argsort(mean, kind="mergesort")
    chunks = [c for c in np.array_split(order, max(1, min(int(n_bins), order.size))) if c.size]
    knot_x = np.array([float(np.median(mean[c])) for c in chunks])
    knot_y = np.array([float(np.median(total[c])) for c in chunks])
    knot_x, uniq_idx = np.unique(knot_x, return_index=True)
    knot_y = knot_y[uniq_idx]
    tech = np.interp(mean, knot_x, knot_y)

    df = pd.DataFrame(
        {"mean": mean, "total": total, "tech": tech, "bio": total - tech},
        index=pd.Index(list(normalized.genes), name="gene"),
    )
    return df.sort_values("bio", ascending=False, kind="mergesort")


def highly_variable_genes(normalized: ExpressionMatrix, n_top: int | None = None) -> pd.DataFrame:
    df = model_gene_var(normalized)
    df = df[df["bio"] > 0]
    if n_top is not None:
        df = df.head(int(n_top))
    return df


def gene_set_enrichment(
    genes: Iterable[str],
    universe: Iterable[str],
    gene_sets: Mapping[str, Iterable[str]] | None = None,
) -> pd.DataFrame | None:
    """Hypergeometric over-representation of `genes` in each gene set.

    Returns None when no query gene overlaps any gene set.
    """
    sets = DEFAULT_GENE_SETS if gene_sets is None else gene_sets
    universe_u = {str(g).upper() for g in universe}
    query = {str(g).upper() for g in genes} & universe_u
    rows = []
    for term, members in sets.items():
        member_u = {str(g).upper() for g in members} & universe_u
        overlap = sorted(query & member_u)
        if not overlap:
            continue
        p = float(hypergeom.sf(len(overlap) - 1, len(universe_u), len(member_u), len(query)))
        rows.append(
            {
                "term": term,
                "n_overlap": len(overlap),
                "set_size": len(member_u),
                "n_query": len(query),
                "p_value": p,
                "genes": ",".join(overlap),
            }
        )
    if not rows:
        return None
    df = pd.DataFrame(rows)
    df["q_value"] = bh_fdr(df["p_value"].to_numpy(dtype=float))
    df = df.sort_values(["p_value", "term"], kind="mergesort").reset_index(drop=True)
    return df[ENRICHMENT_COLUMNS]


@dataclass(frozen=True)
class StructureReport:
    proceed: bool
    dc_message: str
    homogeneity_message: str
    decision_message: str
    de_table: pd.DataFrame | None = None
    hvg_table: pd.DataFrame | None = None
    enrichment_table: pd.DataFrame | None = None
    enrichment_message: str | None = None


def explain_structure(
    raw: ExpressionMatrix,
    normalized: ExpressionMatrix,
    result: StructureCheckResult,
    threshold: float,
    gene_sets: Mapping[str, Iterable[str]] | None = None,
    n_top_hvg: int = 500,
) -> StructureReport:
    """Gate the DE and HVG/enrichment sub-reports on the Stage-1 outcome."""
    proceed = result.proceed(threshold)
    if result.if_connected:
        dc_message = "No disconnected clusters detected."
        de_table = None
    else:
        dc_message = (
            "Disconnected clusters detected: the cells likely comprise distinct cell types, "
            "so trajectory fitting is inappropriate. Differential expression between clusters is reported."
        )
        de_table = de_between_clusters(raw, result.clusters)

    hvg_table = None
    enrichment_table = None
    enrichment_message = None
    if result.signal_pct >= float(threshold):
        homogeneity_message = "Trajectory signal detected."
    else:
        homogeneity_message = (
            "No trajectory signal detected: the dataset looks homogeneous, so trajectory fitting "
            "is inappropriate. Highly variable genes and cell-cycle enrichment are reported."
        )
        hvg_table = highly_variable_genes(normalized, n_top=n_top_hvg)
        enrichment_table = gene_set_enrichment(hvg_table.index, normalized.genes, gene_sets)
        if enrichment_table is None:
            enrichment_message = "There are no genes overlapping Gene Ontology (GO) sets."

    decision_message = (
        "Go to STEP 2" if proceed else "Not suitable for trajectory fitting."
    )
    return StructureReport(
        proceed=proceed,
        dc_message=dc_message,
        homogeneity_message=homogeneity_message,
        decision_message=decision_message,
        de_table=de_table,
        hvg_table=hvg_table,
        enrichment_table=enrichment_table,
        enrichment_message=enrichment_message,
    )
