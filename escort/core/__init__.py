"""Core value objects."""

from escort.core.types import (
    FIT_LINE_COLUMNS,
    Candidate,
    Decision,
    DiagnosticRow,
    DisconnectionResult,
    ExpressionMatrix,
    FitSegment,
    HomogeneityResult,
    RankedResult,
    StructureCheckResult,
    arrays_identical,
)

__all__ = [
    "FIT_LINE_COLUMNS",
    "Candidate",
    "Decision",
    "DiagnosticRow",
    "DisconnectionResult",
    "ExpressionMatrix",
    "FitSegment",
    "HomogeneityResult",
    "RankedResult",
    "StructureCheckResult",
    "arrays_identical",
]
