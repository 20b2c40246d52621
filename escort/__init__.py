"""Escort public API."""

from escort._version import __version__
from escort.config import EscortConfig, load_config
from escort.core.types import Candidate, ExpressionMatrix, StructureCheckResult
from escort.errors import (
    DatasetMismatch,
    DegenerateCandidate,
    DuplicateCandidateId,
    EscortError,
    InputMissing,
    TrajectoryNotSuitable,
    UnsupportedFormat,
)
from escort.pipeline import EscortSession, GateState, PipelineStatus
from escort.scoring import RankingTable, rank_candidates
from escort.structure import evaluate_structure


def prepare_candidate(*args, **kwargs):
    """Lazy wrapper to avoid importing the embedding backends at import time."""
    from escort.trajectory import prepare_candidate as _prepare_candidate

    return _prepare_candidate(*args, **kwargs)


__all__ = [
    "__version__",
    "Candidate",
    "DatasetMismatch",
    "DegenerateCandidate",
    "DuplicateCandidateId",
    "EscortConfig",
    "EscortError",
    "EscortSession",
    "ExpressionMatrix",
    "GateState",
    "InputMissing",
    "PipelineStatus",
    "RankingTable",
    "StructureCheckResult",
    "TrajectoryNotSuitable",
    "UnsupportedFormat",
    "evaluate_structure",
    "load_config",
    "prepare_candidate",
    "rank_candidates",
]
