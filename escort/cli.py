"""Command-line entry points for the Escort pipeline."""

from __future__ import annotations

import argparse
import sys
from pathlib import Path
from typing import Iterable

from escort.config import EscortConfig, config_from_dict, load_config
from escort.io import (
    export_ranking,
    load_candidate_batch,
    load_structure_result,
    read_matrix,
    save_candidate,
    save_structure_result,
)
from escort.pipeline import EscortSession, GateState
from escort.trajectory import DR_METHODS, prepare_candidate
from escort.utils import LOGGER_NAME, ensure_dir, setup_logger, write_json


def _log_path(outdir: str, name: str) -> Path:
    return Path(outdir) / "logs" / f"{name}.log"


def _session(args: argparse.Namespace, cfg: EscortConfig, name: str) -> EscortSession:
    logger = setup_logger(_log_path(args.outdir, name), LOGGER_NAME)
    return EscortSession(config=cfg, logger=logger)


def _config_with_jobs(path: str | None, n_jobs: int | None) -> EscortConfig:
    cfg = load_config(path)
    if n_jobs is None:
        return cfg
    return config_from_dict(dict(cfg.to_json(), n_jobs=int(n_jobs)))


def step1_main(argv: Iterable[str] | None = None) -> int:
    """Run the Stage-1 structure check on a raw/normalized pair.

    Writes the Stage-1 result (for reuse by `escort-rank --stage1`) and a
    JSON summary. Returns 2 when the inputs cannot be evaluated.
    """
    parser = argparse.ArgumentParser(description="Escort step 1: is trajectory fitting justified?")
    parser.add_argument("--raw", required=True, help="Raw counts (genes x cells)")
    parser.add_argument("--normalized", required=True, help="Normalized counts (genes x cells)")
    parser.add_argument("--config", default=None, help="JSON config file")
    parser.add_argument("--outdir", default=".", help="Output directory")
    parser.add_argument("--explain", action="store_true", help="Write DE/HVG/GO tables")
    args = parser.parse_args(list(argv) if argv is not None else None)

    cfg = load_config(args.config)
    session = _session(args, cfg, "step1")
    session.load_dataset(read_matrix(args.raw), read_matrix(args.normalized))
    status = session.status()
    if status.state in {GateState.INPUT_MISSING, GateState.DATASET_MISMATCH}:
        print(f"error={status.message}", file=sys.stderr)
        return 2

    result = session.structure()
    proceed = session.proceed()
    ensure_dir(args.outdir)
    out_npz = save_structure_result(result, Path(args.outdir) / "stage1_result.npz")
    write_json(
        Path(args.outdir) / "stage1_summary.json",
        {
            "if_connected": bool(result.if_connected),
            "k": int(result.k),
            "signal_pct": float(result.signal_pct),
            "threshold": float(cfg.signal_threshold),
            "proceed": bool(proceed),
        },
    )
    if args.explain:
        report = session.explain()
        tables = Path(args.outdir) / "tables"
        ensure_dir(tables)
        if report.de_table is not None:
            report.de_table.to_csv(tables / "de_clusters.csv", index=False)
        if report.hvg_table is not None:
            report.hvg_table.to_csv(tables / "hvg.csv")
        if report.enrichment_table is not None:
            report.enrichment_table.to_csv(tables / "go_enrichment.csv", index=False)
        for line in (report.dc_message, report.homogeneity_message, report.enrichment_message):
            if line:
                print(line)

    print(f"if_connected={result.if_connected}")
    print(f"signal_pct={result.signal_pct:.4f}")
    print(f"decision={'Go to STEP 2' if proceed else 'Not suitable for trajectory fitting.'}")
    print(f"stage1_result={out_npz}")
    return 0


def prepare_main(argv: Iterable[str] | None = None) -> int:
    """Build one candidate embedding + trajectory from normalized counts."""
    parser = argparse.ArgumentParser(description="Escort: prepare a candidate trajectory")
    parser.add_argument("--normalized", required=True, help="Normalized counts (genes x cells)")
    parser.add_argument("--genes", default="10", help="Number of highly variable genes")
    parser.add_argument("--method", default="PCA", choices=DR_METHODS, type=str.upper)
    parser.add_argument("--seed", type=int, default=0, help="Random seed")
    parser.add_argument("--id", default=None, help="Candidate id (default <method>_<genes>_mst)")
    parser.add_argument("--config", default=None, help="JSON config file")
    parser.add_argument("--outdir", default=".", help="Output directory")
    args = parser.parse_args(list(argv) if argv is not None else None)

    cfg = load_config(args.config)
    logger = setup_logger(_log_path(args.outdir, "prepare"), LOGGER_NAME)
    candidate = prepare_candidate(
        read_matrix(args.normalized),
        n_genes=args.genes,
        method=args.method,
        seed=args.seed,
        candidate_id=args.id,
        config=cfg,
        logger=logger,
    )
    out = save_candidate(candidate, Path(args.outdir) / f"{candidate.id}.npz")
    print(f"candidate={candidate.id}")
    print(f"path={out}")
    return 0


def rank_main(argv: Iterable[str] | None = None) -> int:
    """Evaluate and rank a batch of candidates; writes `final_res.csv`."""
    parser = argparse.ArgumentParser(description="Escort steps 2-3: evaluate and rank candidates")
    parser.add_argument("--candidates", nargs="+", required=True, help="Candidate .npz files")
    parser.add_argument("--raw", default=None, help="Raw counts (genes x cells)")
    parser.add_argument("--normalized", default=None, help="Normalized counts (genes x cells)")
    parser.add_argument("--stage1", default=None, help="Stage-1 result from escort-step1")
    parser.add_argument("--config", default=None, help="JSON config file")
    parser.add_argument("--n-jobs", type=int, default=None, help="Worker count")
    parser.add_argument("--outdir", default=".", help="Output directory")
    args = parser.parse_args(list(argv) if argv is not None else None)

    cfg = _config_with_jobs(args.config, args.n_jobs)
    session = _session(args, cfg, "rank")
    if args.raw is not None or args.normalized is not None:
        raw = read_matrix(args.raw) if args.raw is not None else None
        normalized = read_matrix(args.normalized) if args.normalized is not None else None
        session.load_dataset(raw, normalized)
    if args.stage1 is not None:
        session.load_stage1_result(load_structure_result(args.stage1))
    session.load_candidates(load_candidate_batch(args.candidates, logger=session.logger))

    status = session.status()
    if status.state not in {GateState.RANKED, GateState.NO_VIABLE_CANDIDATE}:
        print(f"status={status.state.value}", file=sys.stderr)
        print(f"error={status.message}", file=sys.stderr)
        return 2

    out = export_ranking(session.last_ranking, args.outdir)
    print(f"status={status.state.value}")
    print(status.message)
    for row in session.last_ranking.ranked():
        print(f"{row.rank}. {row.id} score={row.score:.4f} {row.decision.value}")
    print(f"ranking={out}")
    return 0


def main(argv: Iterable[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Escort CLI")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("step1", help="Run the Stage-1 structure check")
    sub.add_parser("prepare", help="Prepare a candidate trajectory")
    sub.add_parser("rank", help="Evaluate and rank candidates")

    args, remainder = parser.parse_known_args(list(argv) if argv is not None else None)
    if args.command == "step1":
        return step1_main(remainder)
    if args.command == "prepare":
        return prepare_main(remainder)
    if args.command == "rank":
        return rank_main(remainder)
    return 1


if __name__ == "__main__":
    raise SystemExit(main())
