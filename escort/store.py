"""Holder for the primary dataset and the optional embedding-only matrix."""

from __future__ import annotations

import threading
from dataclasses import dataclass

from escort.core.types import ExpressionMatrix
from escort.errors import DatasetMismatch, InputMissing


@dataclass(frozen=True)
class DatasetPair:
    raw: ExpressionMatrix
    normalized: ExpressionMatrix

    @property
    def n_genes(self) -> int:
        return self.normalized.n_genes

    @property
    def n_cells(self) -> int:
        return self.normalized.n_cells


def validate_pair(
    raw: ExpressionMatrix | None, normalized: ExpressionMatrix | None
) -> DatasetPair:
    """Return the pair if it is usable, else raise `InputMissing`/`DatasetMismatch`."""
    if raw is None or normalized is None:
        missing = [n for n, m in (("raw", raw), ("normalized", normalized)) if m is None]
        raise InputMissing(f"Missing {' and '.join(missing)} counts matrix.")
    if raw.shape != normalized.shape:
        raise DatasetMismatch(
            f"Raw counts {raw.shape[0]}x{raw.shape[1]} and normalized counts "
            f"{normalized.shape[0]}x{normalized.shape[1]} have different dimensions."
        )
    if raw.cells != normalized.cells:
        raise DatasetMismatch("Raw and normalized counts list cells in a different order.")
    return DatasetPair(raw=raw, normalized=normalized)


class MatrixStore:
    """Single-writer, multi-reader store for the loaded matrices.

    Every load replaces the held matrices and bumps `version`; matrices are
    never mutated in place.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._raw: ExpressionMatrix | None = None
        self._normalized: ExpressionMatrix | None = None
        self._embedding_counts: ExpressionMatrix | None = None
        self._version = 0

    @property
    def version(self) -> int:
        return self._version

    @property
    def raw(self) -> ExpressionMatrix | None:
        return self._raw

    @property
    def normalized(self) -> ExpressionMatrix | None:
        return self._normalized

    def load(self, raw: ExpressionMatrix | None, normalized: ExpressionMatrix | None) -> None:
        with self._lock:
            self._raw = raw
            self._normalized = normalized
            self._version += 1

    def load_embedding_counts(self, normalized: ExpressionMatrix | None) -> None:
        """Register a normalized matrix used only for building candidates."""
        with self._lock:
            self._embedding_counts = normalized
            self._version += 1

    def reset(self) -> None:
        with self._lock:
            self._raw = None
            self._normalized = None
            self._version += 1

    def paired(self) -> bool:
        try:
            validate_pair(self._raw, self._normalized)
        except (InputMissing, DatasetMismatch):
            return False
        return True

    def pair(self) -> DatasetPair:
        return validate_pair(self._raw, self._normalized)

    def dimensions(self) -> dict[str, int | None]:
        """Gene and cell counts of a verified pair, None when unverified."""
        normalized = self._normalized
        if normalized is None or not self.paired():
            return {"n_genes": None, "n_cells": None}
        return {"n_genes": normalized.n_genes, "n_cells": normalized.n_cells}

    def embedding_source(self) -> ExpressionMatrix | None:
        """Normalized counts for candidate preparation; the paired dataset wins."""
        if self._normalized is not None:
            return self._normalized
        return self._embedding_counts
