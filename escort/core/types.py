"""Immutable value objects shared by every pipeline stage."""

from __future__ import annotations

import math
from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterable

import numpy as np
import pandas as pd

FIT_LINE_COLUMNS = ("x0", "y0", "x1", "y1")


def _readonly(values, dtype) -> np.ndarray:
    arr = np.array(values, dtype=dtype, copy=True)
    arr.setflags(write=False)
    return arr


def arrays_identical(left: np.ndarray, right: np.ndarray) -> bool:
    """Byte-for-byte comparison of two arrays (NaN payloads included)."""
    a = np.asarray(left)
    b = np.asarray(right)
    return a.shape == b.shape and a.dtype == b.dtype and a.tobytes() == b.tobytes()


def _names(values: Iterable[Any], n: int, prefix: str, what: str) -> tuple[str, ...]:
    out = tuple(str(v) for v in values)
    if not out:
        return tuple(f"{prefix}{i + 1}" for i in range(n))
    if len(out) != n:
        raise ValueError(f"Expected {n} {what} names, got {len(out)}.")
    if len(set(out)) != len(out):
        raise ValueError(f"{what.capitalize()} names must be unique.")
    return out


@dataclass(frozen=True, eq=False)
class ExpressionMatrix:
    """Numeric expression table with genes as rows and cells as columns."""

    values: np.ndarray
    genes: tuple[str, ...] = ()
    cells: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        arr = np.array(self.values, dtype=float, copy=True)
        if arr.ndim != 2:
            raise ValueError(f"Expression values must be 2D; received shape {arr.shape}.")
        if not np.isfinite(arr).all():
            raise ValueError("Expression values contain NaN or infinite entries.")
        arr.setflags(write=False)
        object.__setattr__(self, "values", arr)
        object.__setattr__(self, "genes", _names(self.genes, arr.shape[0], "Gene", "gene"))
        object.__setattr__(self, "cells", _names(self.cells, arr.shape[1], "Cell", "cell"))

    @property
    def shape(self) -> tuple[int, int]:
        return (int(self.values.shape[0]), int(self.values.shape[1]))

    @property
    def n_genes(self) -> int:
        return self.shape[0]

    @property
    def n_cells(self) -> int:
        return self.shape[1]

    def subset_genes(self, genes: Iterable[str]) -> "ExpressionMatrix":
        index = {g: i for i, g in enumerate(self.genes)}
        keep = [str(g) for g in genes]
        missing = [g for g in keep if g not in index]
        if missing:
            raise KeyError(f"Genes not found: {', '.join(missing[:5])}")
        rows = [index[g] for g in keep]
        return ExpressionMatrix(self.values[rows], genes=tuple(keep), cells=self.cells)

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame(np.array(self.values), index=list(self.genes), columns=list(self.cells))

    @classmethod
    def from_frame(cls, frame: pd.DataFrame) -> "ExpressionMatrix":
        non_numeric = [
            str(c) for c in frame.columns if not pd.api.types.is_numeric_dtype(frame[c])
        ]
        if non_numeric:
            raise ValueError(
                "The table must contain a numeric matrix; non-numeric columns: "
                + ", ".join(non_numeric[:5])
            )
        return cls(
            frame.to_numpy(dtype=float),
            genes=tuple(str(i) for i in frame.index),
            cells=tuple(str(c) for c in frame.columns),
        )

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ExpressionMatrix):
            return NotImplemented
        return (
            self.genes == other.genes
            and self.cells == other.cells
            and arrays_identical(self.values, other.values)
        )


@dataclass(frozen=True, eq=False)
class DisconnectionResult:
    """Outcome of a disconnected-cluster check (high or low dimensional)."""

    if_connected: bool
    clusters: np.ndarray
    k: int

    def __post_init__(self) -> None:
        object.__setattr__(self, "if_connected", bool(self.if_connected))
        object.__setattr__(self, "clusters", _readonly(np.ravel(self.clusters), np.int64))
        object.__setattr__(self, "k", int(self.k))

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, DisconnectionResult):
            return NotImplemented
        return (
            self.if_connected == other.if_connected
            and self.k == other.k
            and arrays_identical(self.clusters, other.clusters)
        )


@dataclass(frozen=True)
class HomogeneityResult:
    """Outcome of the simulation-based trajectory signal test."""

    signal_pct: float
    null_cutoff: float
    num_sim: int
    seed: int
    n_genes_tested: int


@dataclass(frozen=True, eq=False)
class StructureCheckResult:
    """Stage-1 summary of the primary dataset.

    Built either by `escort.structure.evaluate_structure` (source="computed")
    or by `escort.io.load_structure_result` (source="loaded").
    """

    if_connected: bool
    clusters: np.ndarray
    k: int
    signal_pct: float
    cells: tuple[str, ...] = ()
    source: str = "computed"

    def __post_init__(self) -> None:
        clusters = _readonly(np.ravel(self.clusters), np.int64)
        pct = float(self.signal_pct)
        if not (0.0 <= pct <= 1.0):
            raise ValueError(f"signal_pct must lie in [0, 1]; received {pct}.")
        cells = tuple(str(c) for c in self.cells)
        if cells and len(cells) != clusters.size:
            raise ValueError("cells and clusters must have the same length.")
        object.__setattr__(self, "if_connected", bool(self.if_connected))
        object.__setattr__(self, "clusters", clusters)
        object.__setattr__(self, "k", int(self.k))
        object.__setattr__(self, "signal_pct", pct)
        object.__setattr__(self, "cells", cells)

    @classmethod
    def from_checks(
        cls,
        disconnection: DisconnectionResult,
        homogeneity: HomogeneityResult,
        cells: Iterable[str] = (),
    ) -> "StructureCheckResult":
        return cls(
            if_connected=disconnection.if_connected,
            clusters=disconnection.clusters,
            k=disconnection.k,
            signal_pct=homogeneity.signal_pct,
            cells=tuple(cells),
            source="computed",
        )

    def proceed(self, threshold: float) -> bool:
        return bool(self.signal_pct >= float(threshold) and self.if_connected)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, StructureCheckResult):
            return NotImplemented
        return (
            self.if_connected == other.if_connected
            and self.k == other.k
            and self.cells == other.cells
            and np.float64(self.signal_pct).tobytes() == np.float64(other.signal_pct).tobytes()
            and arrays_identical(self.clusters, other.clusters)
        )


@dataclass(frozen=True)
class FitSegment:
    x0: float
    y0: float
    x1: float
    y1: float


@dataclass(frozen=True, eq=False)
class Candidate:
    """One alternative embedding plus trajectory fit for the same cells.

    - `embedding`: cells x 2 coordinates.
    - `pseudotime`: cells x lineages, NaN where a cell is not on a lineage.
    - `fit_line`: segments x 4 in (x0, y0, x1, y1) order.
    """

    id: str
    embedding: np.ndarray
    pseudotime: np.ndarray
    fit_line: np.ndarray
    normalized: ExpressionMatrix | None = None
    cells: tuple[str, ...] = ()
    lineages: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if not str(self.id):
            raise ValueError("Candidate id must be a non-empty string.")
        emb = np.array(self.embedding, dtype=float, copy=True)
        if emb.ndim == 1 and emb.size == 2:
            emb = emb.reshape(1, 2)
        if emb.ndim != 2 or emb.shape[1] != 2:
            raise ValueError(f"Embedding must have shape (N, 2); received {emb.shape}.")
        pse = np.array(self.pseudotime, dtype=float, copy=True)
        if pse.ndim == 1:
            pse = pse.reshape(-1, 1)
        if pse.ndim != 2 or pse.shape[0] != emb.shape[0]:
            raise ValueError(
                f"Pseudotime must have one row per cell ({emb.shape[0]}); received {pse.shape}."
            )
        fit = np.array(self.fit_line, dtype=float, copy=True)
        if fit.size == 0:
            fit = fit.reshape(0, 4)
        if fit.ndim != 2 or fit.shape[1] != 4:
            raise ValueError(f"Fit line must have shape (M, 4); received {fit.shape}.")
        if self.normalized is not None and self.normalized.n_cells != emb.shape[0]:
            raise ValueError("Candidate normalized counts must have one column per embedded cell.")
        for arr in (emb, pse, fit):
            arr.setflags(write=False)
        object.__setattr__(self, "id", str(self.id))
        object.__setattr__(self, "embedding", emb)
        object.__setattr__(self, "pseudotime", pse)
        object.__setattr__(self, "fit_line", fit)
        cells = tuple(str(c) for c in self.cells)
        if cells and len(cells) != emb.shape[0]:
            raise ValueError("Candidate cell names must match embedding rows.")
        object.__setattr__(self, "cells", cells)
        object.__setattr__(
            self, "lineages", _names(self.lineages, pse.shape[1], "Lineage", "lineage")
        )

    @property
    def n_cells(self) -> int:
        return int(self.embedding.shape[0])

    def segments(self) -> list[FitSegment]:
        return [FitSegment(*(float(v) for v in row)) for row in self.fit_line]

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Candidate):
            return NotImplemented
        return (
            self.id == other.id
            and self.cells == other.cells
            and self.lineages == other.lineages
            and arrays_identical(self.embedding, other.embedding)
            and arrays_identical(self.pseudotime, other.pseudotime)
            and arrays_identical(self.fit_line, other.fit_line)
            and self.normalized == other.normalized
        )


@dataclass(frozen=True)
class DiagnosticRow:
    """Stage-2 metrics for one candidate; NaN marks a metric that failed.

    `knn_overlap` is informational (None when no normalized counts were
    attached): it is reported but not scored.
    """

    id: str
    dc_check: bool | None
    simi_retain: float
    gof: float
    ushape: float
    notes: tuple[str, ...] = ()
    knn_overlap: float | None = None

    @property
    def complete(self) -> bool:
        return self.dc_check is not None and all(
            math.isfinite(v) for v in (self.simi_retain, self.gof, self.ushape)
        )


class Decision(str, Enum):
    RECOMMENDED = "Recommended"
    NOT_RECOMMENDED = "NotRecommended"


@dataclass(frozen=True)
class RankedResult:
    id: str
    dc_check: bool | None
    simi_retain: float
    gof: float
    ushape: float
    score: float
    rank: int | None
    decision: Decision
    note: str = ""
    knn_overlap: float | None = None

    def as_row(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "dcCheck": self.dc_check,
            "simiRetain": self.simi_retain,
            "gof": self.gof,
            "ushape": self.ushape,
            "score": self.score,
            "rank": self.rank,
            "decision": self.decision.value,
            "note": self.note,
        }
