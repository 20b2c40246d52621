"""Stage 2: per-candidate embedding and trajectory diagnostics."""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass
from typing import Callable, Iterable, TypeVar

import numpy as np
from joblib import Parallel, delayed
from scipy.spatial import Delaunay, QhullError
from sklearn.mixture import GaussianMixture
from sklearn.neighbors import NearestNeighbors

from escort.config import EscortConfig, resolve_n_jobs
from escort.core.types import Candidate, DiagnosticRow, DisconnectionResult, ExpressionMatrix
from escort.errors import DegenerateCandidate, DuplicateCandidateId
from escort.structure import cluster_graph_connected, reduce_cells, relabel_clusters
from escort.utils import get_logger

EPS = 1e-12

T = TypeVar("T")


@dataclass(frozen=True)
class SimilarityResult:
    good_rate: float
    knn_overlap: float | None = None


@dataclass(frozen=True)
class AmbiguityResult:
    amb_pct: float
    n_assigned: int
    n_ambiguous: int


def _validate_embedding(
    embedding: np.ndarray,
    check: str,
    candidate_id: str | None = None,
    require_area: bool = False,
) -> np.ndarray:
    arr = np.asarray(embedding, dtype=float)
    if arr.ndim != 2 or arr.shape[1] != 2:
        raise DegenerateCandidate(candidate_id, check, f"embedding has shape {arr.shape}")
    if arr.shape[0] < 3:
        raise DegenerateCandidate(candidate_id, check, f"only {arr.shape[0]} cell(s) embedded")
    if not np.isfinite(arr).all():
        raise DegenerateCandidate(candidate_id, check, "embedding contains NaN or infinite values")
    extent = np.ptp(arr, axis=0)
    if np.all(extent <= EPS) or (require_area and np.any(extent <= EPS)):
        raise DegenerateCandidate(candidate_id, check, "embedding has zero extent")
    return arr


def _knn_indices(points: np.ndarray, n_neighbors: int) -> np.ndarray:
    k = min(int(n_neighbors), points.shape[0] - 1)
    nn = NearestNeighbors(n_neighbors=k + 1).fit(points)
    idx = nn.kneighbors(points, return_distance=False)
    return idx[:, 1:]


def gmm_clusters(points: np.ndarray, max_clusters: int, seed: int) -> np.ndarray:
    best_bic = np.inf
    best_labels = np.zeros(points.shape[0], dtype=np.int64)
    for k in range(1, min(int(max_clusters), points.shape[0] - 1) + 1):
        gmm = GaussianMixture(
            n_components=k, covariance_type="full", reg_covar=1e-6, random_state=int(seed)
        ).fit(points)
        bic = float(gmm.bic(points))
        if bic < best_bic - EPS:
            best_bic = bic
            best_labels = gmm.predict(points)
    return relabel_clusters(best_labels)


def check_low_dim_disconnection(
    embedding: np.ndarray,
    min_connected_cells: int = 1,
    config: EscortConfig | None = None,
    candidate_id: str | None = None,
) -> DisconnectionResult:
    """Test whether a 2D embedding keeps the cells in one connected structure.

    Cells are clustered with a BIC-selected Gaussian mixture. Two clusters
    are linked when at least `min_connected_cells` cells have one of their
    k nearest neighbours in the other cluster.
    """
    cfg = config or EscortConfig()
    arr = _validate_embedding(embedding, "dc_check", candidate_id)
    clusters = gmm_clusters(arr, cfg.ld_max_clusters, cfg.seed)
    k = int(clusters.max())
    if k == 1:
        return DisconnectionResult(if_connected=True, clusters=clusters, k=1)

    neighbours = clusters[_knn_indices(arr, cfg.n_neighbors)]
    bridges = np.zeros((k + 1, k + 1), dtype=np.int64)
    for own, row in zip(clusters, neighbours):
        for other in np.unique(row[row != own]):
            bridges[min(own, other), max(own, other)] += 1
    links = [
        (a, b)
        for a in range(1, k + 1)
        for b in range(a + 1, k + 1)
        if bridges[a, b] >= int(min_connected_cells)
    ]
    return DisconnectionResult(
        if_connected=cluster_graph_connected(k, links), clusters=clusters, k=k
    )


def check_similarity_retention(
    embedding: np.ndarray,
    clusters: np.ndarray,
    normalized: ExpressionMatrix | None = None,
    config: EscortConfig | None = None,
    candidate_id: str | None = None,
) -> SimilarityResult:
    """Fraction of cells whose embedding neighbours mostly share their high-dimensional cluster."""
    cfg = config or EscortConfig()
    arr = _validate_embedding(embedding, "simi_retain", candidate_id)
    labels = np.asarray(clusters).ravel()
    if labels.size != arr.shape[0]:
        raise DegenerateCandidate(
            candidate_id,
            "simi_retain",
            f"cluster assignments cover {labels.size} cells but the embedding has {arr.shape[0]}",
        )
    ld_idx = _knn_indices(arr, cfg.n_neighbors)
    same = labels[ld_idx] == labels[:, None]
    good_rate = float(np.mean(same.mean(axis=1) >= 0.5))

    overlap = None
    if normalized is not None and normalized.n_cells == arr.shape[0]:
        hd_idx = _knn_indices(reduce_cells(normalized.values, cfg.n_pcs), cfg.n_neighbors)
        shared = [np.intersect1d(h, l).size for h, l in zip(hd_idx, ld_idx)]
        overlap = float(np.mean(shared) / ld_idx.shape[1])
    return SimilarityResult(good_rate=good_rate, knn_overlap=overlap)


def align_clusters(
    clusters: np.ndarray,
    cluster_cells: Iterable[str],
    candidate: Candidate,
) -> np.ndarray:
    """Reorder high-dimensional cluster labels into the candidate's cell order.

    Labels are taken positionally when either side carries no cell names.
    """
    labels = np.asarray(clusters).ravel()
    names = tuple(str(c) for c in cluster_cells)
    if not names or not candidate.cells:
        return labels
    if len(names) != labels.size:
        raise DegenerateCandidate(
            candidate.id,
            "simi_retain",
            f"{len(names)} cell names for {labels.size} cluster assignments",
        )
    position = {name: i for i, name in enumerate(names)}
    missing = [c for c in candidate.cells if c not in position]
    if missing:
        raise DegenerateCandidate(
            candidate.id,
            "simi_retain",
            f"{len(missing)} cell(s) have no Stage-1 cluster label (first: '{missing[0]}')",
        )
    return labels[[position[c] for c in candidate.cells]]


def check_goodness_of_fit(
    embedding: np.ndarray,
    config: EscortConfig | None = None,
    candidate_id: str | None = None,
) -> float:
    """Share of grid squares inside the cells' convex hull that hold at least one cell."""
    cfg = config or EscortConfig()
    arr = _validate_embedding(embedding, "gof", candidate_id, require_area=True)
    lo = arr.min(axis=0)
    scaled = (arr - lo) / np.ptp(arr, axis=0)

    n_bins = int(round(np.sqrt(arr.shape[0] / float(cfg.gof_cells_per_bin))))
    n_bins = int(np.clip(n_bins, cfg.gof_min_bins, cfg.gof_max_bins))
    try:
        hull = Delaunay(scaled)
    except QhullError as exc:
        raise DegenerateCandidate(candidate_id, "gof", "cells are collinear") from exc

    centres = (np.arange(n_bins) + 0.5) / n_bins
    gx, gy = np.meshgrid(centres, centres, indexing="ij")
    inside = (hull.find_simplex(np.c_[gx.ravel(), gy.ravel()]) >= 0).reshape(n_bins, n_bins)

    bins = np.clip(np.floor(scaled * n_bins).astype(int), 0, n_bins - 1)
    occupied = np.zeros((n_bins, n_bins), dtype=bool)
    occupied[bins[:, 0], bins[:, 1]] = True

    region = inside | occupied
    return float(occupied.sum() / region.sum())


def detect_ambiguous_region(
    candidate: Candidate,
    config: EscortConfig | None = None,
) -> AmbiguityResult:
    """Estimate the share of cells sitting in folded ("U-shaped") parts of a trajectory.

    Along each lineage, a cell is ambiguous when its embedding neighbours on
    the same lineage span more than `ambiguity_gap` of the lineage's
    pseudotime range: nearby cells with distant pseudotimes mark a fold.
    """
    cfg = config or EscortConfig()
    cid = candidate.id
    arr = _validate_embedding(candidate.embedding, "ushape", cid)
    if candidate.fit_line.shape[0] == 0:
        raise DegenerateCandidate(cid, "ushape", "no fitted curve")
    pse = np.asarray(candidate.pseudotime, dtype=float)
    assigned = np.isfinite(pse).any(axis=1)
    n_assigned = int(assigned.sum())
    if n_assigned < 3:
        raise DegenerateCandidate(cid, "ushape", "fewer than 3 cells assigned to a lineage")

    ambiguous = np.zeros(arr.shape[0], dtype=bool)
    for lineage in range(pse.shape[1]):
        on = np.flatnonzero(np.isfinite(pse[:, lineage]))
        if on.size < 3:
            continue
        t = pse[on, lineage]
        span = float(np.ptp(t))
        if span <= EPS:
            continue
        idx = _knn_indices(arr[on], cfg.n_neighbors)
        spread = np.max(np.abs(t[idx] - t[:, None]), axis=1) / span
        ambiguous[on[spread > float(cfg.ambiguity_gap)]] = True

    n_ambiguous = int(np.sum(ambiguous & assigned))
    return AmbiguityResult(
        amb_pct=float(n_ambiguous / n_assigned),
        n_assigned=n_assigned,
        n_ambiguous=n_ambiguous,
    )


def _safe_check(
    func: Callable[[], T],
    candidate_id: str,
    check: str,
    logger: logging.Logger,
    notes: list[str],
) -> T | None:
    try:
        return func()
    except ValueError as exc:
        reason = exc.reason if isinstance(exc, DegenerateCandidate) else str(exc)
        logger.warning("%s skipped for candidate=%s: %s", check, candidate_id, reason)
        notes.append(f"{check} unavailable: {reason}")
        return None


def evaluate_candidate(
    candidate: Candidate,
    clusters: np.ndarray | None,
    config: EscortConfig | None = None,
    logger: logging.Logger | None = None,
    cluster_cells: Iterable[str] = (),
) -> DiagnosticRow:
    """Run the four diagnostics for one candidate; failures become NaN plus a note.

    `cluster_cells` names the cells behind `clusters`; when both it and
    `candidate.cells` are given, labels are matched by cell name.
    """
    cfg = config or EscortConfig()
    log = get_logger(logger, "diagnostics")
    cid = candidate.id
    notes: list[str] = []

    dc = _safe_check(
        lambda: check_low_dim_disconnection(
            candidate.embedding, cfg.min_connected_cells, cfg, candidate_id=cid
        ),
        cid,
        "dc_check",
        log,
        notes,
    )
    if clusters is None:
        notes.append("simi_retain unavailable: no high-dimensional clusters")
        simi = None
    else:
        simi = _safe_check(
            lambda: check_similarity_retention(
                candidate.embedding,
                align_clusters(clusters, cluster_cells, candidate),
                candidate.normalized,
                cfg,
                candidate_id=cid,
            ),
            cid,
            "simi_retain",
            log,
            notes,
        )
    gof = _safe_check(
        lambda: check_goodness_of_fit(candidate.embedding, cfg, candidate_id=cid),
        cid,
        "gof",
        log,
        notes,
    )
    amb = _safe_check(lambda: detect_ambiguous_region(candidate, cfg), cid, "ushape", log, notes)

    return DiagnosticRow(
        id=cid,
        dc_check=None if dc is None else dc.if_connected,
        simi_retain=float("nan") if simi is None else simi.good_rate,
        gof=float("nan") if gof is None else gof,
        ushape=float("nan") if amb is None else amb.amb_pct,
        notes=tuple(notes),
        knn_overlap=None if simi is None else simi.knn_overlap,
    )


def validate_batch(candidates: Iterable[Candidate]) -> list[Candidate]:
    batch = list(candidates)
    counts = Counter(c.id for c in batch)
    duplicates = [cid for cid, n in counts.items() if n > 1]
    if duplicates:
        raise DuplicateCandidateId(duplicates)
    return batch


def run_diagnostics(
    candidates: Iterable[Candidate],
    clusters: np.ndarray | None,
    config: EscortConfig | None = None,
    n_jobs: int | None = None,
    logger: logging.Logger | None = None,
    cluster_cells: Iterable[str] = (),
) -> dict[str, DiagnosticRow]:
    """Evaluate a candidate batch on a bounded worker pool; rows are keyed by id."""
    cfg = config or EscortConfig()
    log = get_logger(logger, "diagnostics")
    batch = validate_batch(candidates)
    names = tuple(cluster_cells)
    if not batch:
        return {}
    jobs = min(max(1, int(n_jobs)) if n_jobs is not None else resolve_n_jobs(cfg), len(batch))
    log.info("Running diagnostics: n_candidates=%s n_jobs=%s", len(batch), jobs)
    if jobs == 1:
        rows = [evaluate_candidate(c, clusters, cfg, log, names) for c in batch]
    else:
        rows = Parallel(n_jobs=jobs, backend=cfg.backend)(
            delayed(evaluate_candidate)(c, clusters, cfg, cluster_cells=names) for c in batch
        )
    return {row.id: row for row in sorted(rows, key=lambda r: r.id)}
