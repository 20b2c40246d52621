"""Exception taxonomy for the Escort evaluation pipeline."""

from __future__ import annotations


class EscortError(Exception):
    """Base class for all pipeline errors."""


class InputMissing(EscortError, LookupError):
    """A required matrix, candidate batch or Stage-1 result is absent."""


class DatasetMismatch(EscortError, ValueError):
    """Raw and normalized matrices do not describe the same cells and genes."""


class TrajectoryNotSuitable(EscortError):
    """Stage 1 rejected the dataset; downstream stages do not run."""


class UnsupportedFormat(EscortError, ValueError):
    """A file could not be read because its format is not recognised."""


class DegenerateCandidate(EscortError, ValueError):
    """A diagnostic could not be computed for one candidate."""

    def __init__(self, candidate_id: str | None, check: str, reason: str):
        self.candidate_id = candidate_id
        self.check = check
        self.reason = reason
        label = candidate_id if candidate_id is not None else "<unnamed>"
        super().__init__(f"{check} undefined for candidate '{label}': {reason}")


class DuplicateCandidateId(EscortError, ValueError):
    """A candidate batch contains the same id more than once."""

    def __init__(self, duplicates: list[str]):
        self.duplicates = list(duplicates)
        super().__init__(
            "Candidate ids must be unique within a batch; duplicated: "
            + ", ".join(sorted(self.duplicates))
        )
