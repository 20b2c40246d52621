"""Configuration loading utilities for Escort pipelines."""

from __future__ import annotations

import json
import os
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any

DEFAULT_SIGNAL_THRESHOLD = 0.46


@dataclass(frozen=True)
class EscortConfig:
    """Policy constants and algorithm parameters for one pipeline run."""

    # Stage 1
    signal_threshold: float = DEFAULT_SIGNAL_THRESHOLD
    max_clusters: int = 5
    num_sim: int = 1000
    seed: int = 0
    n_pcs: int = 20
    min_silhouette: float = 0.25
    gap_factor: float = 2.0
    n_hvg_signal: int = 200
    null_alpha: float = 0.05
    # Stage 2
    min_connected_cells: int = 1
    ld_max_clusters: int = 9
    n_neighbors: int = 10
    gof_cells_per_bin: float = 4.0
    gof_min_bins: int = 5
    gof_max_bins: int = 50
    ambiguity_gap: float = 0.3
    # Scoring
    weight_simi: float = 1.0
    weight_gof: float = 1.0
    weight_ushape: float = 1.0
    recommend_top_n: int = 1
    min_recommend_score: float = 0.5
    # Execution
    n_jobs: int | None = None
    reserve_cores: int = 1
    backend: str = "loky"

    def to_json(self) -> dict[str, Any]:
        return asdict(self)


def _validate(cfg: EscortConfig) -> EscortConfig:
    if not (0.0 <= cfg.signal_threshold <= 1.0):
        raise ValueError("signal_threshold must lie in [0, 1].")
    if cfg.max_clusters < 1 or cfg.ld_max_clusters < 1:
        raise ValueError("max_clusters and ld_max_clusters must be positive.")
    if cfg.num_sim <= 0:
        raise ValueError("num_sim must be positive.")
    if cfg.min_connected_cells < 1:
        raise ValueError("min_connected_cells must be at least 1.")
    if cfg.n_neighbors < 1:
        raise ValueError("n_neighbors must be positive.")
    weights = (cfg.weight_simi, cfg.weight_gof, cfg.weight_ushape)
    if min(weights) < 0.0 or sum(weights) <= 0.0:
        raise ValueError("Score weights must be non-negative with a positive sum.")
    if cfg.recommend_top_n < 1:
        raise ValueError("recommend_top_n must be at least 1.")
    if cfg.reserve_cores < 1:
        raise ValueError("reserve_cores must be at least 1.")
    if cfg.backend not in {"loky", "threading", "multiprocessing"}:
        raise ValueError(f"Unsupported backend '{cfg.backend}'.")
    return cfg


def config_from_dict(params: dict[str, Any] | None = None) -> EscortConfig:
    """Build an `EscortConfig`, applying defaults and rejecting unknown keys."""
    params = dict(params or {})
    known = {f.name: f for f in fields(EscortConfig)}
    unknown = sorted(set(params) - set(known))
    if unknown:
        raise ValueError(f"Unknown config keys: {', '.join(unknown)}")
    defaults = EscortConfig()
    kwargs: dict[str, Any] = {}
    for name, value in params.items():
        default = getattr(defaults, name)
        if value is None or default is None:
            kwargs[name] = None if value is None else int(value)
        elif isinstance(default, bool):
            kwargs[name] = bool(value)
        elif isinstance(default, int):
            kwargs[name] = int(value)
        elif isinstance(default, float):
            kwargs[name] = float(value)
        else:
            kwargs[name] = str(value)
    return _validate(EscortConfig(**kwargs))


def load_json_config(path: str | Path) -> dict[str, Any]:
    """Read an Escort JSON config; the file must hold a single object."""
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")
    if config_path.suffix.lower() != ".json":
        raise ValueError(
            f"Unsupported config format for '{config_path}'. Use a .json config file."
        )

    try:
        with open(config_path, "r", encoding="utf-8") as fh:
            data = json.load(fh)
    except json.JSONDecodeError as exc:
        raise ValueError(
            f"Invalid JSON in config '{config_path}' at line {exc.lineno}, "
            f"column {exc.colno}: {exc.msg}"
        ) from exc

    if not isinstance(data, dict):
        raise ValueError(
            f"Invalid config root in '{config_path}': expected JSON object, got {type(data).__name__}."
        )
    return data


def load_config(path: str | Path | None) -> EscortConfig:
    if path is None:
        return EscortConfig()
    return config_from_dict(load_json_config(path))


def default_n_jobs(reserve: int = 1) -> int:
    """Worker count for the candidate pool: available cores minus a reserve."""
    if int(reserve) < 1:
        raise ValueError("reserve must be at least 1.")
    cpus = os.cpu_count() or 1
    return max(1, int(cpus) - int(reserve))


def resolve_n_jobs(cfg: EscortConfig) -> int:
    if cfg.n_jobs is not None:
        return max(1, int(cfg.n_jobs))
    return default_n_jobs(cfg.reserve_cores)
