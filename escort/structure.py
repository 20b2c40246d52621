"""Stage 1: decide whether the primary dataset supports trajectory fitting."""

from __future__ import annotations

import logging
from typing import Iterable

import numpy as np
from scipy.cluster.hierarchy import fcluster, linkage
from scipy.sparse import csr_matrix
from scipy.sparse.csgraph import connected_components
from scipy.spatial import cKDTree
from sklearn.decomposition import PCA
from sklearn.metrics import silhouette_score

from escort.config import EscortConfig
from escort.core.types import (
    DisconnectionResult,
    ExpressionMatrix,
    HomogeneityResult,
    StructureCheckResult,
)
from escort.store import validate_pair
from escort.utils import get_logger

EPS = 1e-12


def _single_cluster(n_cells: int) -> DisconnectionResult:
    return DisconnectionResult(if_connected=True, clusters=np.ones(n_cells, dtype=np.int64), k=1)


def relabel_clusters(labels: np.ndarray) -> np.ndarray:
    """Map arbitrary labels onto 1..k in order of first appearance."""
    _, first_idx, inverse = np.unique(labels, return_index=True, return_inverse=True)
    order = np.argsort(np.argsort(first_idx, kind="mergesort"), kind="mergesort")
    return order[inverse].astype(np.int64) + 1


def reduce_cells(values: np.ndarray, n_pcs: int) -> np.ndarray:
    """Project cells (columns of a genes x cells matrix) onto leading PCs."""
    cells_x_genes = np.asarray(values, dtype=float).T
    n_cells, n_genes = cells_x_genes.shape
    n_comp = min(int(n_pcs), n_cells - 1, n_genes)
    centered = cells_x_genes - cells_x_genes.mean(axis=0, keepdims=True)
    if n_comp < 1:
        return centered
    return PCA(n_components=n_comp, svd_solver="full").fit_transform(cells_x_genes)


def cluster_graph_connected(k: int, links: Iterable[tuple[int, int]]) -> bool:
    """True when clusters 1..k form one component under the given links."""
    if k <= 1:
        return True
    rows: list[int] = []
    cols: list[int] = []
    for a, b in links:
        rows.append(int(a) - 1)
        cols.append(int(b) - 1)
    if not rows:
        return False
    adj = csr_matrix((np.ones(len(rows)), (rows, cols)), shape=(k, k))
    n_components, _ = connected_components(adj, directed=False)
    return int(n_components) == 1


def _within_spacing(points: np.ndarray) -> float:
    if points.shape[0] < 2:
        return 0.0
    dist, _ = cKDTree(points).query(points, k=2)
    return float(np.quantile(dist[:, 1], 0.9))


def _gap_links(coords: np.ndarray, labels: np.ndarray, k: int, gap_factor: float) -> list[tuple[int, int]]:
    members = {c: coords[labels == c] for c in range(1, k + 1)}
    spacing = {c: _within_spacing(pts) for c, pts in members.items()}
    trees = {c: cKDTree(pts) for c, pts in members.items()}
    links: list[tuple[int, int]] = []
    for a in range(1, k + 1):
        for b in range(a + 1, k + 1):
            gap_dist, _ = trees[b].query(members[a], k=1)
            gap = float(np.min(gap_dist))
            scale = max(spacing[a], spacing[b])
            if gap <= float(gap_factor) * scale + EPS:
                links.append((a, b))
    return links


def check_high_dim_disconnection(
    raw: ExpressionMatrix,
    normalized: ExpressionMatrix,
    max_clusters: int = 5,
    config: EscortConfig | None = None,
) -> DisconnectionResult:
    """Partition cells into at most `max_clusters` groups and test their connectivity.

    Cells are reduced with PCA on the normalized values (genes with no raw
    counts or no variance are ignored), clustered with Ward linkage, and the
    number of clusters is chosen by mean silhouette. Two clusters are linked
    when their closest cells are within `gap_factor` times the typical
    nearest-neighbour spacing inside either cluster.
    """
    cfg = config or EscortConfig()
    pair = validate_pair(raw, normalized)
    n_cells = pair.n_cells
    if n_cells < 3 or int(max_clusters) <= 1:
        return _single_cluster(n_cells)

    keep = (pair.raw.values.sum(axis=1) > 0) & (pair.normalized.values.var(axis=1) > EPS)
    if not np.any(keep):
        return _single_cluster(n_cells)

    coords = reduce_cells(pair.normalized.values[keep], cfg.n_pcs)
    tree = linkage(coords, method="ward")

    best_k = 1
    best_sil = -np.inf
    best_labels = np.ones(n_cells, dtype=np.int64)
    for k in range(2, min(int(max_clusters), n_cells - 1) + 1):
        labels = fcluster(tree, t=k, criterion="maxclust")
        if np.unique(labels).size < 2:
            continue
        sil = float(silhouette_score(coords, labels))
        if sil > best_sil + EPS:
            best_sil = sil
            best_k = int(np.unique(labels).size)
            best_labels = labels

    if best_k == 1 or best_sil < cfg.min_silhouette:
        return _single_cluster(n_cells)

    clusters = relabel_clusters(best_labels)
    links = _gap_links(coords, clusters, best_k, cfg.gap_factor)
    return DisconnectionResult(
        if_connected=cluster_graph_connected(best_k, links),
        clusters=clusters,
        k=best_k,
    )


def _standardize_rows(values: np.ndarray) -> np.ndarray:
    centered = values - values.mean(axis=1, keepdims=True)
    scale = np.sqrt(np.mean(centered**2, axis=1, keepdims=True))
    return centered / np.maximum(scale, EPS)


def check_homogeneity(
    normalized: ExpressionMatrix,
    num_sim: int = 1000,
    seed: int = 0,
    config: EscortConfig | None = None,
) -> HomogeneityResult:
    """Estimate the fraction of gene-gene co-variation that exceeds a permutation null.

    The most variable genes are standardized; the null is built from
    `num_sim` random gene pairs with one gene permuted across cells. The
    returned `signal_pct` is the share of observed pairs whose absolute
    correlation exceeds the null `1 - null_alpha` quantile.
    """
    cfg = config or EscortConfig()
    if int(num_sim) <= 0:
        raise ValueError("num_sim must be positive.")
    values = np.asarray(normalized.values, dtype=float)
    var = values.var(axis=1)
    variable = np.flatnonzero(var > EPS)
    n_cells = normalized.n_cells
    if n_cells < 3 or variable.size < 2:
        return HomogeneityResult(
            signal_pct=0.0,
            null_cutoff=float("nan"),
            num_sim=int(num_sim),
            seed=int(seed),
            n_genes_tested=int(variable.size),
        )

    order = variable[np.argsort(-var[variable], kind="mergesort")]
    top = order[: int(cfg.n_hvg_signal)]
    z = _standardize_rows(values[top])
    m = z.shape[0]

    corr = (z @ z.T) / float(n_cells)
    iu = np.triu_indices(m, k=1)
    observed = np.abs(corr[iu])

    rng = np.random.default_rng(int(seed))
    null = np.empty(int(num_sim), dtype=float)
    for s in range(int(num_sim)):
        i, j = rng.choice(m, size=2, replace=False)
        perm = rng.permutation(n_cells)
        null[s] = abs(float(z[i] @ z[j][perm])) / float(n_cells)
    cutoff = float(np.quantile(null, 1.0 - float(cfg.null_alpha)))
    signal_pct = float(np.mean(observed > cutoff))
    return HomogeneityResult(
        signal_pct=signal_pct,
        null_cutoff=cutoff,
        num_sim=int(num_sim),
        seed=int(seed),
        n_genes_tested=int(m),
    )


def evaluate_structure(
    raw: ExpressionMatrix,
    normalized: ExpressionMatrix,
    config: EscortConfig | None = None,
    logger: logging.Logger | None = None,
) -> StructureCheckResult:
    """Run both Stage-1 checks on a verified raw/normalized pair."""
    cfg = config or EscortConfig()
    log = get_logger(logger, "structure")
    pair = validate_pair(raw, normalized)
    disconnection = check_high_dim_disconnection(
        pair.raw, pair.normalized, max_clusters=cfg.max_clusters, config=cfg
    )
    homogeneity = check_homogeneity(
        pair.normalized, num_sim=cfg.num_sim, seed=cfg.seed, config=cfg
    )
    log.info(
        "Structure check: k=%s connected=%s signal_pct=%.3f (n_cells=%s, n_genes=%s)",
        disconnection.k,
        disconnection.if_connected,
        homogeneity.signal_pct,
        pair.n_cells,
        pair.n_genes,
    )
    return StructureCheckResult.from_checks(disconnection, homogeneity, cells=pair.normalized.cells)


def proceed_gate(result: StructureCheckResult, threshold: float) -> bool:
    """Trajectory fitting is justified only for connected data with enough signal."""
    return result.proceed(threshold)
