"""Build candidate embeddings and trajectory fits from normalized counts."""

from __future__ import annotations

import logging
import math

import numpy as np
from scipy.sparse import csr_matrix
from scipy.sparse.csgraph import breadth_first_order, minimum_spanning_tree
from scipy.spatial.distance import pdist, squareform
from sklearn.decomposition import PCA
from sklearn.manifold import MDS, TSNE

from escort.config import EscortConfig
from escort.core.types import Candidate, ExpressionMatrix
from escort.diagnostics import gmm_clusters
from escort.errors import InputMissing
from escort.reports import model_gene_var
from escort.store import MatrixStore
from escort.utils import get_logger

DR_METHODS = ("PCA", "MDS", "TSNE", "UMAP")
MIN_GENES = 10
TRAJECTORY_NAME = "mst"
EPS = 1e-12


def resolve_gene_count(
    requested: object, n_genes: int, logger: logging.Logger | None = None
) -> int:
    """Validate the number of highly variable genes used for the embedding.

    Missing or non-numeric input falls back to 10; other values are clamped
    into [10, n_genes].
    """
    log = get_logger(logger, "trajectory")
    try:
        value = int(requested)
    except (TypeError, ValueError, OverflowError):
        log.info("No input detected or input is invalid. Defaulting to %s genes.", MIN_GENES)
        return MIN_GENES
    validated = min(max(value, MIN_GENES), int(n_genes))
    if value < MIN_GENES:
        log.info("Input is below the minimum allowed number (%s). Adjusted to %s.", MIN_GENES, validated)
    elif value > int(n_genes):
        log.info("Input exceeds the maximum number of genes. Adjusted to %s.", validated)
    return validated


def _umap(values: np.ndarray, seed: int) -> np.ndarray:
    import anndata as ad
    import scanpy as sc

    adata = ad.AnnData(values.astype(np.float32))
    sc.pp.neighbors(adata, n_neighbors=min(15, values.shape[0] - 1), use_rep="X", random_state=seed)
    sc.tl.umap(adata, random_state=seed)
    return np.asarray(adata.obsm["X_umap"], dtype=float)


def embed_2d(values: np.ndarray, method: str = "PCA", seed: int = 0) -> np.ndarray:
    """Reduce a cells x genes matrix to two dimensions."""
    x = np.asarray(values, dtype=float)
    name = str(method).upper()
    if name not in DR_METHODS:
        raise ValueError(f"Unknown dimension reduction '{method}'; expected one of {', '.join(DR_METHODS)}.")
    if x.ndim != 2 or x.shape[0] < 3 or x.shape[1] < 2:
        raise ValueError(f"A 2D embedding needs at least 3 cells and 2 genes; received {x.shape}.")

    if name == "PCA":
        return PCA(n_components=2, svd_solver="full").fit_transform(x)
    if name == "MDS":
        return MDS(n_components=2, n_init=4, random_state=int(seed)).fit_transform(x)
    if name == "TSNE":
        perplexity = min(30.0, (x.shape[0] - 1) / 3.0)
        return TSNE(
            n_components=2, perplexity=perplexity, init="pca", random_state=int(seed)
        ).fit_transform(x)
    return _umap(x, int(seed))


def _lineage_paths(centroids: np.ndarray) -> list[list[int]]:
    """Root-to-leaf paths of the minimum spanning tree over cluster centroids."""
    k = centroids.shape[0]
    if k == 1:
        return [[0]]
    dist = squareform(pdist(centroids))
    off_diag = ~np.eye(k, dtype=bool)
    dist[off_diag & (dist <= EPS)] = EPS
    tree = minimum_spanning_tree(csr_matrix(dist))
    adj = ((tree + tree.T) > 0).astype(np.int8)
    degree = np.asarray(adj.sum(axis=1)).ravel()
    leaves = [int(i) for i in np.flatnonzero(degree == 1)]
    root = leaves[0]
    _, predecessors = breadth_first_order(adj, root, directed=False, return_predecessors=True)

    paths: list[list[int]] = []
    for leaf in leaves[1:]:
        path = [leaf]
        while path[-1] != root:
            path.append(int(predecessors[path[-1]]))
        paths.append(path[::-1])
    return paths


def _principal_segment(points: np.ndarray) -> np.ndarray:
    centre = points.mean(axis=0)
    _, _, vt = np.linalg.svd(points - centre, full_matrices=False)
    axis = vt[0]
    proj = (points - centre) @ axis
    return np.vstack([centre + axis * proj.min(), centre + axis * proj.max()])


def _project_onto(points: np.ndarray, polyline: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    """Arc length and location of each point's closest projection on a polyline."""
    best_dist = np.full(points.shape[0], np.inf)
    arc = np.zeros(points.shape[0])
    where = np.zeros_like(points)
    offset = 0.0
    for a, b in zip(polyline[:-1], polyline[1:]):
        v = b - a
        length2 = float(v @ v)
        t = np.zeros(points.shape[0]) if length2 <= EPS else np.clip((points - a) @ v / length2, 0.0, 1.0)
        proj = a + t[:, None] * v
        d = np.linalg.norm(points - proj, axis=1)
        closer = d < best_dist
        best_dist[closer] = d[closer]
        arc[closer] = offset + t[closer] * math.sqrt(length2)
        where[closer] = proj[closer]
        offset += math.sqrt(length2)
    return arc, where


def fit_lineages(embedding: np.ndarray, clusters: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    """Fit piecewise-linear lineages through cluster centroids.

    Returns `(pseudotime, fit_line)`: pseudotime is cells x lineages (NaN off
    a lineage), each lineage scaled so its own maximum is 1; fit_line holds
    segments joining consecutive projected cells along each lineage.
    """
    points = np.asarray(embedding, dtype=float)
    labels = np.asarray(clusters).ravel()
    ids = np.unique(labels)
    centroids = np.vstack([points[labels == c].mean(axis=0) for c in ids])
    paths = _lineage_paths(centroids)

    pseudotime = np.full((points.shape[0], len(paths)), np.nan)
    segments: list[np.ndarray] = []
    for j, path in enumerate(paths):
        members = np.flatnonzero(np.isin(labels, ids[path]))
        if len(path) == 1:
            polyline = _principal_segment(points[members])
        else:
            polyline = centroids[path]
        arc, where = _project_onto(points[members], polyline)
        pseudotime[members, j] = arc
        ordered = where[np.argsort(arc, kind="mergesort")]
        if ordered.shape[0] > 1:
            segments.append(np.hstack([ordered[:-1], ordered[1:]]))

    for j in range(pseudotime.shape[1]):
        column = pseudotime[:, j]
        top = np.nanmax(column) if np.isfinite(column).any() else 0.0
        if top > EPS:
            pseudotime[:, j] = column / top
    fit_line = np.vstack(segments) if segments else np.empty((0, 4))
    return pseudotime, fit_line


def prepare_candidate(
    normalized: ExpressionMatrix,
    n_genes: object = MIN_GENES,
    method: str = "PCA",
    seed: int = 0,
    candidate_id: str | None = None,
    config: EscortConfig | None = None,
    logger: logging.Logger | None = None,
) -> Candidate:
    """Embed the top variable genes in 2D and fit lineages on Gaussian-mixture clusters."""
    cfg = config or EscortConfig()
    log = get_logger(logger, "trajectory")
    n_top = resolve_gene_count(n_genes, normalized.n_genes, log)
    genes = list(model_gene_var(normalized).index[:n_top])
    sub = normalized.subset_genes(genes)

    dimred = embed_2d(sub.values.T, method, seed)
    clusters = gmm_clusters(dimred, cfg.ld_max_clusters, seed)
    pseudotime, fit_line = fit_lineages(dimred, clusters)
    cid = candidate_id or f"{str(method).upper()}_{n_top}_{TRAJECTORY_NAME}"
    log.info(
        "Prepared candidate %s: n_cells=%s n_genes=%s clusters=%s lineages=%s",
        cid,
        sub.n_cells,
        n_top,
        int(clusters.max()),
        pseudotime.shape[1],
    )
    return Candidate(
        id=cid,
        embedding=dimred,
        pseudotime=pseudotime,
        fit_line=fit_line,
        normalized=sub,
        cells=sub.cells,
    )


def prepare_from_store(
    store: MatrixStore,
    n_genes: object = MIN_GENES,
    method: str = "PCA",
    seed: int = 0,
    config: EscortConfig | None = None,
    logger: logging.Logger | None = None,
) -> Candidate:
    source = store.embedding_source()
    if source is None:
        raise InputMissing("No normalized counts available for embedding.")
    return prepare_candidate(source, n_genes, method, seed, config=config, logger=logger)
