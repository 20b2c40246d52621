from __future__ import annotations

import logging

import pytest

from escort import diagnostics
from escort.errors import (
    DatasetMismatch,
    DegenerateCandidate,
    DuplicateCandidateId,
    EscortError,
    InputMissing,
    UnsupportedFormat,
)


def test_safe_check_expected_error_warns_and_continues(caplog):
    caplog.set_level(logging.WARNING)
    notes: list[str] = []

    def _raise():
        raise DegenerateCandidate("GENE_A", "gof", "cells are collinear")

    val = diagnostics._safe_check(_raise, "GENE_A", "gof", logging.getLogger("test"), notes)
    assert val is None
    assert notes == ["gof unavailable: cells are collinear"]
    assert "gof skipped" in caplog.text
    assert "GENE_A" in caplog.text


def test_safe_check_plain_value_error_is_downgraded(caplog):
    caplog.set_level(logging.WARNING)
    notes: list[str] = []

    def _raise():
        raise ValueError("bad embedding")

    assert diagnostics._safe_check(_raise, "X", "dc_check", logging.getLogger("test"), notes) is None
    assert notes == ["dc_check unavailable: bad embedding"]


def test_safe_check_unexpected_error_propagates():
    def _raise():
        raise RuntimeError("unexpected")

    with pytest.raises(RuntimeError, match="unexpected"):
        diagnostics._safe_check(_raise, "X", "gof", logging.getLogger("test"), [])


def test_error_taxonomy():
    for exc_type in (DatasetMismatch, UnsupportedFormat, DegenerateCandidate, DuplicateCandidateId):
        assert issubclass(exc_type, ValueError)
        assert issubclass(exc_type, EscortError)
    assert issubclass(InputMissing, LookupError)
    err = DegenerateCandidate(None, "ushape", "no fitted curve")
    assert str(err) == "ushape undefined for candidate '<unnamed>': no fitted curve"
    dup = DuplicateCandidateId(["b", "a"])
    assert dup.duplicates == ["b", "a"]
    assert str(dup).endswith("a, b")
