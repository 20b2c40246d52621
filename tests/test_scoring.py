from __future__ import annotations

import math

import numpy as np
import pytest

from escort.config import EscortConfig
from escort.core.types import Decision, DiagnosticRow, StructureCheckResult
from escort.errors import DuplicateCandidateId
from escort.scoring import (
    DISCONNECTED_NOTE,
    EXPORT_COLUMNS,
    composite_score,
    rank_candidates,
)


def _row(cid: str, dc: bool | None, score: float = 0.5, **kw) -> DiagnosticRow:
    # simi = gof = score and ushape = 1 - score give a composite equal to `score`.
    return DiagnosticRow(
        id=cid,
        dc_check=dc,
        simi_retain=kw.get("simi", score),
        gof=kw.get("gof", score),
        ushape=kw.get("ushape", 1.0 - score),
        notes=kw.get("notes", ()),
        knn_overlap=kw.get("knn"),
    )


def test_composite_score_is_deterministic():
    assert composite_score(0.8, 0.6, 0.2) == composite_score(0.8, 0.6, 0.2)
    assert composite_score(0.8, 0.6, 0.2) == pytest.approx((0.8 + 0.6 + 0.8) / 3.0)


def test_composite_score_is_monotone_in_each_metric():
    grid = np.linspace(0.0, 1.0, 11)
    base = (0.5, 0.5, 0.5)
    for pos in range(3):
        scores = []
        for v in grid:
            vals = list(base)
            vals[pos] = v
            scores.append(composite_score(*vals))
        diffs = np.diff(scores)
        if pos == 2:
            assert np.all(diffs <= 0.0)
        else:
            assert np.all(diffs >= 0.0)


def test_composite_score_clips_and_propagates_nan():
    assert composite_score(1.5, 1.0, -0.2) == pytest.approx(1.0)
    assert math.isnan(composite_score(float("nan"), 0.5, 0.5))


def test_composite_score_weights():
    assert composite_score(1.0, 0.0, 1.0, weights=(1.0, 0.0, 0.0)) == pytest.approx(1.0)


def test_abc_scenario():
    rows = {r.id: r for r in (_row("A", True, 0.9), _row("B", True, 0.7), _row("C", False, 0.95))}
    table = rank_candidates(rows)
    assert table.viable
    assert table.top() == ["A", "B"]
    a, b, c = table.get("A"), table.get("B"), table.get("C")
    assert (a.rank, b.rank, c.rank) == (1, 2, None)
    assert a.score == pytest.approx(0.9)
    assert a.decision is Decision.RECOMMENDED
    assert b.decision is Decision.NOT_RECOMMENDED
    assert c.decision is Decision.NOT_RECOMMENDED
    assert math.isnan(c.score)
    assert DISCONNECTED_NOTE in c.note
    assert [r.id for r in table.rows] == ["A", "B", "C"]


def test_no_connected_candidate_gives_empty_table():
    table = rank_candidates([_row("A", False), _row("B", None)])
    assert not table.viable
    assert len(table) == 0
    assert table.top() == []
    assert list(table.to_frame().columns) == EXPORT_COLUMNS


def test_ties_are_broken_by_id():
    table = rank_candidates([_row("zeta", True, 0.6), _row("alpha", True, 0.6), _row("mid", True, 0.6)])
    assert table.top() == ["alpha", "mid", "zeta"]
    assert [r.rank for r in table.ranked()] == [1, 2, 3]


def test_ranking_independent_of_input_order():
    rows = [_row("A", True, 0.3), _row("B", True, 0.8), _row("C", True, 0.55)]
    assert rank_candidates(rows).top() == rank_candidates(rows[::-1]).top() == ["B", "C", "A"]


def test_incomplete_rows_are_listed_with_notes():
    rows = [
        _row("A", True, 0.9),
        _row("B", True, simi=float("nan"), notes=("simi_retain unavailable: only 2 cell(s) embedded",)),
        _row("C", True, ushape=float("nan")),
    ]
    table = rank_candidates(rows)
    assert table.top() == ["A"]
    assert table.get("B").rank is None
    assert "simi_retain unavailable" in table.get("B").note
    assert table.get("C").note == "Missing ushape"


def test_recommendation_policy():
    rows = [_row("A", True, 0.9), _row("B", True, 0.8), _row("C", True, 0.4)]
    table = rank_candidates(rows, EscortConfig(recommend_top_n=3, min_recommend_score=0.5))
    assert [r.id for r in table.recommended()] == ["A", "B"]
    low = rank_candidates([_row("A", True, 0.3)])
    assert low.get("A").decision is Decision.NOT_RECOMMENDED


def test_context_is_carried_on_table():
    ctx = StructureCheckResult(True, np.ones(3), 1, 0.7)
    table = rank_candidates([_row("A", True, 0.9)], context=ctx)
    assert table.if_connected is True
    assert table.signal_pct == pytest.approx(0.7)


def test_duplicate_rows_rejected():
    with pytest.raises(DuplicateCandidateId):
        rank_candidates([_row("A", True), _row("A", True)])


def test_to_frame_column_order_and_rank_dtype():
    frame = rank_candidates([_row("A", True, 0.9), _row("C", False)]).to_frame()
    assert list(frame.columns) == EXPORT_COLUMNS
    assert str(frame["rank"].dtype) == "Int64"
    assert frame.loc[0, "decision"] == "Recommended"


def test_knn_overlap_is_carried_but_not_exported():
    table = rank_candidates([_row("A", True, 0.9, knn=0.7), _row("B", True, 0.6)])
    assert table.get("A").knn_overlap == pytest.approx(0.7)
    assert table.get("B").knn_overlap is None
    assert "knn_overlap" not in table.to_frame().columns
