"""Stage 3: merge per-candidate diagnostics into a ranked recommendation."""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Iterable, Mapping

import numpy as np
import pandas as pd

from escort.config import EscortConfig
from escort.core.types import Decision, DiagnosticRow, RankedResult, StructureCheckResult
from escort.errors import DuplicateCandidateId

EXPORT_COLUMNS = [
    "id",
    "dcCheck",
    "simiRetain",
    "gof",
    "ushape",
    "score",
    "rank",
    "decision",
    "note",
]

DISCONNECTED_NOTE = "Disconnected clusters detected in embedding"


def composite_score(
    simi_retain: float,
    gof: float,
    ushape: float,
    weights: tuple[float, float, float] = (1.0, 1.0, 1.0),
) -> float:
    """Weighted mean of `simi_retain`, `gof` and `1 - ushape` (higher is better).

    Inputs are clipped to [0, 1]; any non-finite input yields NaN. The result
    is rounded to 12 decimals so equal inputs always compare equal.
    """
    metrics = (float(simi_retain), float(gof), 1.0 - float(ushape))
    if not all(math.isfinite(v) for v in metrics):
        return float("nan")
    w = np.asarray(weights, dtype=float)
    vals = np.clip(np.asarray(metrics, dtype=float), 0.0, 1.0)
    return round(float(np.dot(w, vals) / np.sum(w)), 12)


@dataclass(frozen=True)
class RankingTable:
    """Ranked candidates plus the unranked ones kept for reporting.

    `viable` is False when no candidate kept a connected embedding; the
    table is then empty.
    """

    rows: tuple[RankedResult, ...]
    viable: bool
    if_connected: bool | None = None
    signal_pct: float | None = None

    def __len__(self) -> int:
        return len(self.rows)

    def ranked(self) -> list[RankedResult]:
        return sorted((r for r in self.rows if r.rank is not None), key=lambda r: r.rank)

    def recommended(self) -> list[RankedResult]:
        return [r for r in self.ranked() if r.decision is Decision.RECOMMENDED]

    def top(self, n: int = 6) -> list[str]:
        return [r.id for r in self.ranked()[: int(n)]]

    def get(self, candidate_id: str) -> RankedResult:
        for row in self.rows:
            if row.id == candidate_id:
                return row
        raise KeyError(f"Candidate '{candidate_id}' not in ranking.")

    def to_frame(self) -> pd.DataFrame:
        frame = pd.DataFrame([r.as_row() for r in self.rows], columns=EXPORT_COLUMNS)
        frame["rank"] = frame["rank"].astype("Int64")
        return frame


def _rows_list(rows: Mapping[str, DiagnosticRow] | Iterable[DiagnosticRow]) -> list[DiagnosticRow]:
    items = list(rows.values()) if isinstance(rows, Mapping) else list(rows)
    seen: set[str] = set()
    dups: list[str] = []
    for r in items:
        if r.id in seen:
            dups.append(r.id)
        seen.add(r.id)
    if dups:
        raise DuplicateCandidateId(dups)
    return items


def _unscored_note(row: DiagnosticRow) -> str:
    parts = []
    if row.dc_check is False:
        parts.append(DISCONNECTED_NOTE)
    parts.extend(row.notes)
    if not parts:
        missing = [
            name
            for name, value in (("simiRetain", row.simi_retain), ("gof", row.gof), ("ushape", row.ushape))
            if not math.isfinite(value)
        ]
        parts.append("Missing " + ", ".join(missing) if missing else "Not scored")
    return "; ".join(parts)


def rank_candidates(
    rows: Mapping[str, DiagnosticRow] | Iterable[DiagnosticRow],
    config: EscortConfig | None = None,
    context: StructureCheckResult | None = None,
) -> RankingTable:
    """Score, rank and label candidates.

    Candidates without a connected embedding or with any missing metric keep
    `score = NaN` and a note and are left out of the ordering. Ties in score
    are broken by candidate id. When no candidate has a connected embedding
    the returned table is empty and not viable.
    """
    cfg = config or EscortConfig()
    items = _rows_list(rows)
    if_connected = None if context is None else context.if_connected
    signal_pct = None if context is None else context.signal_pct
    if not any(r.dc_check is True for r in items):
        return RankingTable(rows=(), viable=False, if_connected=if_connected, signal_pct=signal_pct)

    weights = (cfg.weight_simi, cfg.weight_gof, cfg.weight_ushape)
    scored: list[tuple[float, DiagnosticRow]] = []
    unscored: list[RankedResult] = []
    for r in items:
        score = composite_score(r.simi_retain, r.gof, r.ushape, weights)
        if r.dc_check is True and r.complete and math.isfinite(score):
            scored.append((score, r))
            continue
        unscored.append(
            RankedResult(
                id=r.id,
                dc_check=r.dc_check,
                simi_retain=r.simi_retain,
                gof=r.gof,
                ushape=r.ushape,
                score=float("nan"),
                rank=None,
                decision=Decision.NOT_RECOMMENDED,
                note=_unscored_note(r),
                knn_overlap=r.knn_overlap,
            )
        )

    scored.sort(key=lambda pair: (-pair[0], pair[1].id))
    ranked: list[RankedResult] = []
    for rank, (score, r) in enumerate(scored, start=1):
        recommended = rank <= cfg.recommend_top_n and score >= cfg.min_recommend_score
        ranked.append(
            RankedResult(
                id=r.id,
                dc_check=r.dc_check,
                simi_retain=r.simi_retain,
                gof=r.gof,
                ushape=r.ushape,
                score=score,
                rank=rank,
                decision=Decision.RECOMMENDED if recommended else Decision.NOT_RECOMMENDED,
                note="",
                knn_overlap=r.knn_overlap,
            )
        )
    unscored.sort(key=lambda r: r.id)
    return RankingTable(
        rows=tuple(ranked + unscored),
        viable=True,
        if_connected=if_connected,
        signal_pct=signal_pct,
    )
