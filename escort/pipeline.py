"""Gated, demand-driven controller for the Stage 1 -> Stage 2 -> ranking flow."""

from __future__ import annotations

import logging
import threading
from collections import Counter
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Iterable, Mapping

from escort.config import EscortConfig
from escort.core.types import Candidate, DiagnosticRow, ExpressionMatrix, StructureCheckResult
from escort.diagnostics import run_diagnostics, validate_batch
from escort.errors import (
    DatasetMismatch,
    EscortError,
    InputMissing,
    TrajectoryNotSuitable,
)
from escort.io import export_ranking
from escort.reports import StructureReport, explain_structure
from escort.scoring import RankingTable, rank_candidates
from escort.store import DatasetPair, MatrixStore, validate_pair
from escort.structure import evaluate_structure
from escort.utils import get_logger

_MISSING = object()


class _Upstream:
    """Lazy accessor restricted to the inputs a node declared."""

    def __init__(self, graph: "DependencyGraph", node: str, allowed: tuple[str, ...]):
        self._graph = graph
        self._node = node
        self._allowed = allowed

    def __getitem__(self, name: str) -> Any:
        if name not in self._allowed:
            raise KeyError(f"Node '{self._node}' did not declare upstream '{name}'.")
        return self._graph.get(name)


@dataclass
class _Memo:
    key: tuple[int, ...]
    value: Any = None
    error: EscortError | None = None


class DependencyGraph:
    """Explicit DAG of named inputs and derived nodes.

    A node is recomputed only when the version of one of its (transitive)
    inputs changed since its cached value was produced. Results computed
    against inputs that changed mid-flight are discarded and recomputed.
    Expected pipeline errors (`EscortError`) are memoised like values.
    Threads reading the same stale node share a single computation.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._inputs: dict[str, Any] = {}
        self._versions: dict[str, int] = {}
        self._nodes: dict[str, tuple[tuple[str, ...], Callable[[_Upstream], Any]]] = {}
        self._memo: dict[str, _Memo] = {}
        self._node_locks: dict[str, threading.Lock] = {}
        self.compute_counts: Counter[str] = Counter()

    def add_input(self, name: str, value: Any = _MISSING) -> None:
        if name in self._nodes or name in self._inputs:
            raise ValueError(f"'{name}' is already defined.")
        self._inputs[name] = value
        self._versions[name] = 0

    def add_node(self, name: str, inputs: Iterable[str], func: Callable[[_Upstream], Any]) -> None:
        upstream = tuple(inputs)
        if name in self._nodes or name in self._inputs:
            raise ValueError(f"'{name}' is already defined.")
        unknown = [u for u in upstream if u not in self._nodes and u not in self._inputs]
        if unknown:
            raise KeyError(f"Node '{name}' depends on undefined: {', '.join(unknown)}")
        self._nodes[name] = (upstream, func)
        self._node_locks[name] = threading.Lock()

    def set_input(self, name: str, value: Any) -> None:
        if name not in self._inputs:
            raise KeyError(f"Unknown input '{name}'.")
        with self._lock:
            self._inputs[name] = value
            self._versions[name] += 1

    def input_version(self, name: str) -> int:
        return self._versions[name]

    def roots(self, name: str) -> tuple[str, ...]:
        if name in self._inputs:
            return (name,)
        found: set[str] = set()
        for upstream in self._nodes[name][0]:
            found.update(self.roots(upstream))
        return tuple(sorted(found))

    def _stamp(self, name: str) -> tuple[int, ...]:
        with self._lock:
            return tuple(self._versions[r] for r in self.roots(name))

    def is_fresh(self, name: str) -> bool:
        memo = self._memo.get(name)
        return memo is not None and memo.key == self._stamp(name)

    def get(self, name: str) -> Any:
        if name in self._inputs:
            value = self._inputs[name]
            if value is _MISSING:
                raise InputMissing(f"Input '{name}' has not been provided.")
            return value
        if name not in self._nodes:
            raise KeyError(f"Unknown node '{name}'.")

        memo = self._memo.get(name)
        if memo is not None and memo.key == self._stamp(name):
            if memo.error is not None:
                raise memo.error
            return memo.value
        # Concurrent readers of a stale node wait here for the one computation.
        with self._node_locks[name]:
            return self._compute(name)

    def _compute(self, name: str) -> Any:
        upstream, func = self._nodes[name]
        while True:
            stamp = self._stamp(name)
            memo = self._memo.get(name)
            if memo is not None and memo.key == stamp:
                if memo.error is not None:
                    raise memo.error
                return memo.value
            try:
                value = func(_Upstream(self, name, upstream))
                result = _Memo(key=stamp, value=value)
            except EscortError as exc:
                result = _Memo(key=stamp, error=exc)
            with self._lock:
                self.compute_counts[name] += 1
                if self._stamp(name) != stamp:
                    continue
                self._memo[name] = result
            if result.error is not None:
                raise result.error
            return result.value


class GateState(str, Enum):
    INPUT_MISSING = "input_missing"
    DATASET_MISMATCH = "dataset_mismatch"
    NOT_SUITABLE = "not_suitable"
    AWAITING_CANDIDATES = "awaiting_candidates"
    RANKED = "ranked"
    NO_VIABLE_CANDIDATE = "no_viable_candidate"


@dataclass(frozen=True)
class PipelineStatus:
    state: GateState
    message: str
    proceed: bool | None = None

    @property
    def halted(self) -> bool:
        return self.state in {GateState.DATASET_MISMATCH, GateState.NOT_SUITABLE}


class EscortSession:
    """One analysis session: loaded inputs, the dependency graph and the last ranking.

    Gates:
    - G0: raw and normalized counts loaded with matching dimensions.
    - G1: Stage-1 structure check passes the proceed gate.
    - G2: a non-empty, duplicate-free candidate batch, plus G1 or a Stage-1
      result loaded from a previous run.
    - G3: diagnostics and ranking computed.
    """

    def __init__(
        self,
        config: EscortConfig | None = None,
        logger: logging.Logger | None = None,
        store: MatrixStore | None = None,
    ) -> None:
        self.logger = get_logger(logger, "pipeline")
        self.store = store or MatrixStore()
        self.last_ranking: RankingTable | None = None
        self.graph = DependencyGraph()
        g = self.graph
        g.add_input("raw", self.store.raw)
        g.add_input("normalized", self.store.normalized)
        g.add_input("candidates", None)
        g.add_input("stage1_override", None)
        g.add_input("config", config or EscortConfig())
        g.add_node("dataset", ("raw", "normalized"), self._node_dataset)
        g.add_node("structure", ("dataset", "config"), self._node_structure)
        g.add_node("gate", ("structure", "config"), self._node_gate)
        g.add_node("stage1", ("stage1_override", "structure", "gate"), self._node_stage1)
        g.add_node("batch", ("candidates",), self._node_batch)
        g.add_node("diagnostics", ("batch", "stage1", "config"), self._node_diagnostics)
        g.add_node("ranking", ("diagnostics", "stage1", "config"), self._node_ranking)

    # -- node functions -------------------------------------------------
    @staticmethod
    def _node_dataset(up: _Upstream) -> DatasetPair:
        return validate_pair(up["raw"], up["normalized"])

    def _node_structure(self, up: _Upstream) -> StructureCheckResult:
        pair = up["dataset"]
        return evaluate_structure(pair.raw, pair.normalized, up["config"], self.logger)

    @staticmethod
    def _node_gate(up: _Upstream) -> bool:
        return up["structure"].proceed(up["config"].signal_threshold)

    @staticmethod
    def _node_stage1(up: _Upstream) -> StructureCheckResult:
        override = up["stage1_override"]
        if override is not None:
            return override
        if not up["gate"]:
            raise TrajectoryNotSuitable("Not suitable for trajectory fitting.")
        return up["structure"]

    @staticmethod
    def _node_batch(up: _Upstream) -> tuple[Candidate, ...]:
        batch = up["candidates"]
        if not batch:
            raise InputMissing("No candidate batch has been loaded.")
        return tuple(validate_batch(batch))

    def _node_diagnostics(self, up: _Upstream) -> dict[str, DiagnosticRow]:
        batch = up["batch"]
        stage1 = up["stage1"]
        return run_diagnostics(
            batch, stage1.clusters, up["config"], logger=self.logger, cluster_cells=stage1.cells
        )

    @staticmethod
    def _node_ranking(up: _Upstream) -> RankingTable:
        return rank_candidates(up["diagnostics"], up["config"], context=up["stage1"])

    # -- inputs -----------------------------------------------------------
    @property
    def config(self) -> EscortConfig:
        return self.graph.get("config")

    def set_config(self, config: EscortConfig) -> None:
        self.graph.set_input("config", config)
        self.last_ranking = None

    def load_dataset(
        self, raw: ExpressionMatrix | None, normalized: ExpressionMatrix | None
    ) -> None:
        self.store.load(raw, normalized)
        self.graph.set_input("raw", raw)
        self.graph.set_input("normalized", normalized)
        self.last_ranking = None
        dims = self.store.dimensions()
        if dims["n_cells"] is None:
            self.logger.info("No verified dataset after upload.")
        else:
            self.logger.info(
                "Datasets verified: n_genes=%s n_cells=%s", dims["n_genes"], dims["n_cells"]
            )

    def clear_dataset(self) -> None:
        self.store.reset()
        self.graph.set_input("raw", None)
        self.graph.set_input("normalized", None)
        self.last_ranking = None

    def load_embedding_counts(self, normalized: ExpressionMatrix | None) -> None:
        self.store.load_embedding_counts(normalized)

    def load_candidates(self, candidates: Iterable[Candidate]) -> None:
        """Replace the candidate batch; duplicate ids reject the whole batch."""
        batch = validate_batch(candidates)
        if not batch:
            raise InputMissing("Candidate batch is empty.")
        self.graph.set_input("candidates", tuple(batch))
        self.last_ranking = None
        self.logger.info("Loaded %s candidate(s): %s", len(batch), ", ".join(c.id for c in batch))

    def load_stage1_result(self, result: StructureCheckResult | None) -> None:
        """Use a previously computed Stage-1 result in place of re-running Stage 1."""
        self.graph.set_input("stage1_override", result)
        self.last_ranking = None

    # -- outputs ----------------------------------------------------------
    def dataset(self) -> DatasetPair:
        return self.graph.get("dataset")

    def structure(self) -> StructureCheckResult:
        return self.graph.get("structure")

    def proceed(self) -> bool:
        return bool(self.graph.get("gate"))

    def stage1(self) -> StructureCheckResult:
        return self.graph.get("stage1")

    def explain(self, gene_sets: Mapping[str, Iterable[str]] | None = None) -> StructureReport:
        pair = self.dataset()
        return explain_structure(
            pair.raw,
            pair.normalized,
            self.structure(),
            self.config.signal_threshold,
            gene_sets=gene_sets,
        )

    def diagnostics(self) -> dict[str, DiagnosticRow]:
        return self.graph.get("diagnostics")

    def ranking(self) -> RankingTable:
        table = self.graph.get("ranking")
        self.last_ranking = table
        return table

    def export_ranking(self, path: str | Path) -> Path:
        if self.last_ranking is None:
            raise InputMissing("No ranking has been computed for the current batch.")
        return export_ranking(self.last_ranking, path)

    def status(self) -> PipelineStatus:
        override = self.graph.get("stage1_override")
        proceed: bool | None = None
        try:
            self.dataset()
        except DatasetMismatch as exc:
            return PipelineStatus(GateState.DATASET_MISMATCH, str(exc))
        except InputMissing:
            if override is None:
                return PipelineStatus(GateState.INPUT_MISSING, "No datasets detected.")
        else:
            if override is None:
                proceed = self.proceed()
                if not proceed:
                    return PipelineStatus(
                        GateState.NOT_SUITABLE,
                        "Not suitable for trajectory fitting.",
                        proceed=False,
                    )

        if not self.graph.get("candidates"):
            return PipelineStatus(
                GateState.AWAITING_CANDIDATES, "Waiting for candidate trajectories.", proceed=proceed
            )
        table = self.ranking()
        if not table.viable:
            return PipelineStatus(
                GateState.NO_VIABLE_CANDIDATE,
                "No candidate keeps a connected embedding.",
                proceed=proceed,
            )
        best = table.top(1)
        message = f"Ranked {len(table.ranked())} candidate(s); best: {best[0]}" if best else "Ranked."
        return PipelineStatus(GateState.RANKED, message, proceed=proceed)
