from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
import threading
import time
from typing import Any, Callable, Optional

from enplan.io_utils import get_logger

from .data_loading import apply_overlay, restrict_years
from .errors import PhaseCancelledError, TimeLimitError
from .index_builder import build_indices
from .model import build_model, extract_values, model_statistics
from .param_table import INF
from .results import Solution, merge_solutions
from .settings import CalculationOptions
from .solver import SolverHandle, solve_model
from .validate import validate_constraints


logger = get_logger(__name__)


class PhaseState(str, Enum):
    IDLE = "Idle"
    BUILDING = "BuildingPhase"
    SOLVED = "Solved"
    CARRY_FORWARD = "CarryForward"
    DONE = "Done"
    FAILED = "Failed"
    CANCELLED = "Cancelled"


@dataclass
class PhaseResult:
    index: int
    years: list[int]
    objective: Optional[float]
    termination: str
    build_seconds: float
    solve_seconds: float
    statistics: dict[str, int] = field(default_factory=dict)
    time_limited: bool = False
    validation: dict[str, Any] = field(default_factory=dict)


class PhaseOrchestrator:
    """
    Solve year blocks in sequence, carrying decisions of each block forward.

    The overlay built here is the only place where scenario parameters are
    changed between phases; the loaded scenario itself is never mutated.
    Nothing is written to the store: the caller commits the merged solution
    once every phase has succeeded.
    """

    def __init__(
        self,
        loaded: dict[str, Any],
        plan: list[list[int]],
        handle: SolverHandle,
        options: CalculationOptions,
        *,
        on_phase_solved: Optional[Callable[["PhaseOrchestrator", PhaseResult], None]] = None,
    ) -> None:
        self.loaded = loaded
        self.plan = [list(block) for block in plan]
        self.handle = handle
        self.options = options
        self.on_phase_solved = on_phase_solved
        self.overlay: dict[str, dict[tuple, float]] = {}
        self.line_years: dict[str, int] = {}
        self.results: list[PhaseResult] = []
        self.history: list[tuple[PhaseState, Optional[int]]] = []
        self._cancel = threading.Event()
        self._state = PhaseState.IDLE
        self._enter(PhaseState.IDLE, None)

    @property
    def state(self) -> PhaseState:
        return self._state

    def _enter(self, state: PhaseState, phase: Optional[int]) -> None:
        self._state = state
        self.history.append((state, phase))
        logger.debug("Phase plan state -> %s (phase %s)", state.value, phase)

    def cancel(self) -> None:
        """Request cancellation; honoured before the next phase starts building."""
        self._cancel.set()

    @property
    def first_year(self) -> int:
        return self.plan[0][0]

    @property
    def last_year(self) -> int:
        return self.plan[-1][-1]

    def phase_scenario(self, years: list[int]) -> dict[str, Any]:
        return apply_overlay(restrict_years(self.loaded, years), self.overlay, self.line_years)

    def run(self) -> Solution:
        parts: list[Solution] = []
        try:
            for i, years in enumerate(self.plan, start=1):
                if self._cancel.is_set():
                    self._enter(PhaseState.CANCELLED, i)
                    raise PhaseCancelledError(f"Phase plan cancelled before phase {i} of {len(self.plan)}")
                values = self._run_phase(i, years)
                parts.append(values)
                if i < len(self.plan):
                    self._enter(PhaseState.CARRY_FORWARD, i)
                    self._carry_forward(i, years, values)
        except PhaseCancelledError:
            raise
        except Exception:
            self._enter(PhaseState.FAILED, len(self.results) + 1)
            raise
        self._enter(PhaseState.DONE, None)
        return merge_solutions(parts)

    def _run_phase(self, i: int, years: list[int]) -> Solution:
        self._enter(PhaseState.BUILDING, i)
        logger.info("Phase %d/%d: years %s-%s", i, len(self.plan), years[0], years[-1])
        started = time.perf_counter()
        scenario = self.phase_scenario(years)
        ix = build_indices(
            scenario,
            restrict=self.options.restrictvars,
            topology=self.options.transmission_topology,
            workers=self.options.workers,
        )
        model = build_model(
            scenario,
            ix,
            first_year=self.first_year,
            last_year=self.last_year,
            default_discount_rate=self.options.default_discount_rate,
            continuous_transmission=self.options.continuoustransmission,
            integer_support=self.handle.integer_support,
            name=f"enplan_phase{i}",
        )
        build_seconds = time.perf_counter() - started

        time_limited = False
        try:
            outcome = solve_model(self.handle, model, phase=i, years=tuple(years))
            objective, termination, solve_seconds = outcome.objective, outcome.termination, outcome.seconds
        except TimeLimitError as exc:
            if not (self.options.accept_time_limited and exc.solution is not None):
                raise
            logger.warning("%s; accepting the best solution found (bound %s)", exc, exc.best_bound)
            objective, termination, solve_seconds, time_limited = None, exc.termination or "maxTimeLimit", 0.0, True

        values = extract_values(model)
        result = PhaseResult(
            index=i,
            years=list(years),
            objective=objective,
            termination=termination,
            build_seconds=build_seconds,
            solve_seconds=solve_seconds,
            statistics=model_statistics(model),
            time_limited=time_limited,
            validation=validate_constraints(model, self.options.tolerance),
        )
        self.results.append(result)
        self._enter(PhaseState.SOLVED, i)
        if self.on_phase_solved is not None:
            self.on_phase_solved(self, result)
        return values

    def _carry_forward(self, i: int, years: list[int], values: Solution) -> None:
        """
        Seed later phases with the decisions of phase i.

        Rules:
          1) ResidualCapacity / ResidualStorageCapacity of later years grow by
             capacity built in phase i that is still within its operational life
          2) StorageLevelStart becomes the year-end level of the last phase year
          3) lines built in phase i get yconstruction
          4) model-period budgets (emissions, activity) shrink by what phase i used
        """
        params = self.phase_scenario(years)["params"]
        later = [y for block in self.plan[i:] for y in block]
        last = years[-1]
        updates: dict[str, dict[tuple, float]] = {}

        def _grow(table: str, life_table: str, built: dict[tuple, float]) -> None:
            added: dict[tuple, float] = {}
            for (r, x, y), val in built.items():
                if val == 0.0:
                    continue
                life = params[life_table].get((r, x), 1.0)
                for yy in later:
                    if yy - y < life:
                        added[(r, x, yy)] = added.get((r, x, yy), 0.0) + val
            for key, val in added.items():
                updates.setdefault(table, {})[key] = params[table].get(key, 0.0) + val

        _grow("ResidualCapacity", "OperationalLife", values.get("vnewcapacity", {}))
        _grow("ResidualStorageCapacity", "OperationalLifeStorage", values.get("vnewstoragecapacity", {}))

        for (r, s, y), level in values.get("vstoragelevelyearend", {}).items():
            if y == last:
                updates.setdefault("StorageLevelStart", {})[(r, s)] = level

        for (tr, y), built in values.get("vtransmissionbuilt", {}).items():
            if built >= 0.5 and tr not in self.line_years:
                self.line_years[tr] = y
                if built < 1.0 - self.options.tolerance:
                    logger.warning("Line %s built fractionally (%.4f) in %s; treated as built", tr, built, y)

        for (r, e), used in values.get("vmodelperiodemissions", {}).items():
            limit = params["ModelPeriodEmissionLimit"].get((r, e))
            if limit is not None and limit != INF:
                updates.setdefault("ModelPeriodEmissionLimit", {})[(r, e)] = limit - used
            if params["ModelPeriodExogenousEmission"].get((r, e), 0.0) != 0.0:
                updates.setdefault("ModelPeriodExogenousEmission", {})[(r, e)] = 0.0

        for (r, t), used in values.get("vtotaltechnologymodelperiodactivity", {}).items():
            upper = params["TotalTechnologyModelPeriodActivityUpperLimit"].get((r, t))
            if upper is not None and upper != INF:
                updates.setdefault("TotalTechnologyModelPeriodActivityUpperLimit", {})[(r, t)] = max(0.0, upper - used)
            lower = params["TotalTechnologyModelPeriodActivityLowerLimit"].get((r, t), 0.0)
            if lower > 0.0:
                updates.setdefault("TotalTechnologyModelPeriodActivityLowerLimit", {})[(r, t)] = max(0.0, lower - used)

        for table, rows in updates.items():
            self.overlay.setdefault(table, {}).update(rows)
        logger.info(
            "Carried forward %d parameter rows and %d built lines after phase %d",
            sum(len(rows) for rows in updates.values()),
            len(self.line_years),
            i,
        )
