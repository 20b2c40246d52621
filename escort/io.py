"""Reading count matrices, persisting candidates and Stage-1 results, exporting rankings."""

from __future__ import annotations

import json
import logging
from collections import Counter
from pathlib import Path
from typing import Any, Iterable

import numpy as np
import pandas as pd
from scipy import sparse

from escort.core.types import Candidate, ExpressionMatrix, StructureCheckResult
from escort.errors import DuplicateCandidateId, UnsupportedFormat
from escort.scoring import RankingTable
from escort.utils import ensure_dir, get_logger

BLOB_VERSION = 1
MATRIX_FORMAT = "escort.matrix"
CANDIDATE_FORMAT = "escort.candidate"
STRUCTURE_FORMAT = "escort.structure"
DEFAULT_RANKING_FILE = "final_res.csv"

MATRIX_SUFFIXES = (".csv", ".tsv", ".txt", ".npz", ".h5ad")


def _existing(path: str | Path) -> Path:
    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(f"Input file '{p}' not found.")
    return p


def _write_blob(path: str | Path, fmt: str, meta: dict[str, Any], arrays: dict[str, np.ndarray]) -> Path:
    out = Path(path)
    ensure_dir(out.parent)
    record = dict(meta, format=fmt, version=BLOB_VERSION)
    payload = {k: np.ascontiguousarray(v) for k, v in arrays.items()}
    payload["meta"] = np.array(json.dumps(record, sort_keys=True))
    # File handle keeps numpy from appending ".npz" to the name.
    with out.open("wb") as fh:
        np.savez_compressed(fh, **payload)
    return out


def _read_blob(path: str | Path, fmt: str, required: Iterable[str]) -> tuple[dict[str, Any], dict[str, np.ndarray]]:
    p = _existing(path)
    try:
        with np.load(p, allow_pickle=False) as data:
            if not hasattr(data, "files"):
                raise ValueError("not an npz archive")
            arrays = {k: np.asarray(data[k]) for k in data.files}
    except (OSError, ValueError) as exc:
        raise ValueError(f"'{p}' is not a readable Escort file: {exc}") from exc

    if "meta" not in arrays:
        raise ValueError(f"'{p}' has no metadata record.")
    try:
        meta = json.loads(str(arrays.pop("meta").item()))
    except json.JSONDecodeError as exc:
        raise ValueError(f"'{p}' has a corrupt metadata record.") from exc
    if not isinstance(meta, dict):
        raise ValueError(f"'{p}' has a corrupt metadata record.")
    found = meta.get("format")
    if found != fmt:
        raise ValueError(f"'{p}' holds '{found}' data; expected '{fmt}'.")
    if int(meta.get("version", 0)) > BLOB_VERSION:
        raise ValueError(f"'{p}' was written by a newer version (format version {meta['version']}).")
    missing = [k for k in required if k not in arrays]
    if missing:
        raise ValueError(f"'{p}' is missing arrays: {', '.join(missing)}")
    return meta, arrays


def save_matrix(matrix: ExpressionMatrix, path: str | Path) -> Path:
    return _write_blob(
        path,
        MATRIX_FORMAT,
        {"genes": list(matrix.genes), "cells": list(matrix.cells)},
        {"values": matrix.values},
    )


def _load_matrix_blob(path: Path) -> ExpressionMatrix:
    meta, arrays = _read_blob(path, MATRIX_FORMAT, ("values",))
    return ExpressionMatrix(arrays["values"], genes=meta.get("genes", ()), cells=meta.get("cells", ()))


def _read_h5ad(path: Path, layer: str | None) -> ExpressionMatrix:
    import anndata as ad

    adata = ad.read_h5ad(path)
    if layer is None:
        values = adata.X
    elif layer in adata.layers:
        values = adata.layers[layer]
    else:
        raise KeyError(f"adata.layers['{layer}'] not found.")
    if sparse.issparse(values):
        values = values.toarray()
    # AnnData stores cells x genes.
    return ExpressionMatrix(
        np.asarray(values, dtype=float).T,
        genes=tuple(str(g) for g in adata.var_names),
        cells=tuple(str(c) for c in adata.obs_names),
    )


def read_matrix(path: str | Path, layer: str | None = None) -> ExpressionMatrix:
    """Read a genes x cells count matrix.

    Delimited tables carry gene names in the first column and cell names in
    the header. `.h5ad` files are read with anndata (cells x genes, so they
    are transposed); `layer` selects an entry of `adata.layers`.
    """
    p = _existing(path)
    suffix = p.suffix.lower()
    if suffix not in MATRIX_SUFFIXES:
        raise UnsupportedFormat(
            f"Unsupported matrix format '{suffix or p.name}'; expected one of {', '.join(MATRIX_SUFFIXES)}."
        )
    if suffix == ".npz":
        return _load_matrix_blob(p)
    if suffix == ".h5ad":
        return _read_h5ad(p, layer)

    sep = "," if suffix == ".csv" else "\t"
    frame = pd.read_csv(p, sep=sep, index_col=0)
    if frame.shape[0] == 0 or frame.shape[1] == 0:
        raise ValueError(f"'{p.name}' must contain a matrix with at least one gene and one cell.")
    return ExpressionMatrix.from_frame(frame)


def save_candidate(candidate: Candidate, path: str | Path) -> Path:
    arrays = {
        "embedding": candidate.embedding,
        "pseudotime": candidate.pseudotime,
        "fit_line": candidate.fit_line,
    }
    meta: dict[str, Any] = {
        "id": candidate.id,
        "cells": list(candidate.cells),
        "lineages": list(candidate.lineages),
        "has_normalized": candidate.normalized is not None,
    }
    if candidate.normalized is not None:
        arrays["normalized"] = candidate.normalized.values
        meta["normalized_genes"] = list(candidate.normalized.genes)
        meta["normalized_cells"] = list(candidate.normalized.cells)
    return _write_blob(path, CANDIDATE_FORMAT, meta, arrays)


def load_candidate(path: str | Path, candidate_id: str | None = None) -> Candidate:
    """Load a candidate; `candidate_id` replaces the stored id when given."""
    meta, arrays = _read_blob(path, CANDIDATE_FORMAT, ("embedding", "pseudotime", "fit_line"))
    normalized = None
    if meta.get("has_normalized"):
        if "normalized" not in arrays:
            raise ValueError(f"'{path}' declares normalized counts but does not contain them.")
        normalized = ExpressionMatrix(
            arrays["normalized"],
            genes=meta.get("normalized_genes", ()),
            cells=meta.get("normalized_cells", ()),
        )
    return Candidate(
        id=str(candidate_id) if candidate_id is not None else str(meta["id"]),
        embedding=arrays["embedding"],
        pseudotime=arrays["pseudotime"],
        fit_line=arrays["fit_line"],
        normalized=normalized,
        cells=tuple(meta.get("cells", ())),
        lineages=tuple(meta.get("lineages", ())),
    )


def load_candidate_batch(
    paths: Iterable[str | Path],
    use_file_names: bool = True,
    logger: logging.Logger | None = None,
) -> list[Candidate]:
    """Load several candidates; duplicate ids reject the whole batch.

    With `use_file_names` the id of each candidate is its file name without
    the extension, and duplicates are detected before any file is read.
    """
    log = get_logger(logger, "io")
    path_list = [Path(p) for p in paths]
    if use_file_names:
        ids = [p.stem for p in path_list]
        dups = [cid for cid, n in Counter(ids).items() if n > 1]
        if dups:
            raise DuplicateCandidateId(dups)
        batch = [load_candidate(p, candidate_id=cid) for p, cid in zip(path_list, ids)]
    else:
        batch = [load_candidate(p) for p in path_list]
        dups = [cid for cid, n in Counter(c.id for c in batch).items() if n > 1]
        if dups:
            raise DuplicateCandidateId(dups)
    log.info("Loaded candidate batch: %s", ", ".join(c.id for c in batch))
    return batch


def save_structure_result(result: StructureCheckResult, path: str | Path) -> Path:
    meta = {
        "if_connected": bool(result.if_connected),
        "k": int(result.k),
        "signal_pct": float(result.signal_pct),
        "cells": list(result.cells),
    }
    return _write_blob(path, STRUCTURE_FORMAT, meta, {"clusters": result.clusters})


def load_structure_result(path: str | Path) -> StructureCheckResult:
    meta, arrays = _read_blob(path, STRUCTURE_FORMAT, ("clusters",))
    missing = [k for k in ("if_connected", "k", "signal_pct") if k not in meta]
    if missing:
        raise ValueError(f"'{path}' metadata is missing: {', '.join(missing)}")
    return StructureCheckResult(
        if_connected=bool(meta["if_connected"]),
        clusters=arrays["clusters"],
        k=int(meta["k"]),
        signal_pct=float(meta["signal_pct"]),
        cells=tuple(meta.get("cells", ())),
        source="loaded",
    )


def export_ranking(table: RankingTable, path: str | Path) -> Path:
    """Write the ranking as CSV; a directory target receives `final_res.csv`."""
    out = Path(path)
    if out.is_dir() or out.suffix == "":
        out = out / DEFAULT_RANKING_FILE
    ensure_dir(out.parent)
    table.to_frame().to_csv(out, index=False)
    return out
