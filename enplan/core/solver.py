from __future__ import annotations

from dataclasses import dataclass, field
import time
from typing import Any, Optional

import pyomo.environ as pyo
from pyomo.common.errors import ApplicationError
from pyomo.opt import TerminationCondition

from enplan.io_utils import get_logger

from .errors import (
    InfeasibleError,
    SolverError,
    SolverUnavailableError,
    TimeLimitError,
    UnboundedError,
)
from .model import extract_values


logger = get_logger(__name__)

DEFAULT_SOLVER_NAME = "appsi_highs"
DEFAULT_TOL = 1e-6
AUTO_PREFERENCE = ("appsi_highs", "highs", "cbc", "glpk")

# Solver families able to handle integer and binary variables.
MIP_CAPABLE = ("highs", "cbc", "glpk", "gurobi", "cplex", "xpress", "scip")

TIME_LIMIT_OPTION = {
    "appsi_highs": "time_limit",
    "highs": "time_limit",
    "cbc": "seconds",
    "glpk": "tmlim",
    "gurobi": "TimeLimit",
    "gurobi_direct": "TimeLimit",
    "gurobi_persistent": "TimeLimit",
    "appsi_gurobi": "TimeLimit",
    "cplex": "timelimit",
    "cplex_direct": "timelimit",
}

OPTIMAL_CONDITIONS = {
    TerminationCondition.optimal,
    TerminationCondition.locallyOptimal,
    TerminationCondition.globallyOptimal,
}
INFEASIBLE_CONDITIONS = {TerminationCondition.infeasible, TerminationCondition.infeasibleOrUnbounded}
TIME_LIMIT_CONDITIONS = {TerminationCondition.maxTimeLimit, TerminationCondition.maxIterations}


def supports_integer(solver_name: str) -> bool:
    base = solver_name.lower().replace("appsi_", "").split("_")[0]
    return base in MIP_CAPABLE


@dataclass
class SolverHandle:
    """A configured, available solver."""

    name: str
    solver: Any
    options: dict[str, Any] = field(default_factory=dict)
    time_limit: Optional[float] = None
    tee: bool = False

    @property
    def integer_support(self) -> bool:
        return supports_integer(self.name)


@dataclass
class SolveOutcome:
    termination: str
    objective: Optional[float]
    best_bound: Optional[float]
    seconds: float


def _is_available(name: str) -> bool:
    try:
        solver = pyo.SolverFactory(name)
    except (ApplicationError, RuntimeError, ValueError):
        return False
    if solver is None:
        return False
    try:
        return bool(solver.available(exception_flag=False))
    except (ApplicationError, RuntimeError, OSError):
        return False


def create_solver(
    solver_name: str = DEFAULT_SOLVER_NAME,
    *,
    options: Optional[dict[str, Any]] = None,
    time_limit: Optional[float] = None,
    tee: bool = False,
) -> SolverHandle:
    """
    Resolve and check a solver before any model is built.

    "auto" picks the first available entry of AUTO_PREFERENCE. Raises
    SolverUnavailableError when nothing usable is found.
    """
    candidates = AUTO_PREFERENCE if solver_name == "auto" else (solver_name,)
    for name in candidates:
        if not _is_available(name):
            logger.debug("Solver %s is not available", name)
            continue
        opt = pyo.SolverFactory(name)
        merged = dict(options or {})
        if time_limit is not None:
            key = TIME_LIMIT_OPTION.get(name)
            if key is None:
                logger.warning("No time limit option known for solver %s; time_limit ignored", name)
            else:
                merged.setdefault(key, time_limit)
        for key, value in merged.items():
            opt.options[key] = value
        logger.info("Using solver %s", name)
        return SolverHandle(name=name, solver=opt, options=merged, time_limit=time_limit, tee=tee)

    tried = ", ".join(candidates)
    raise SolverUnavailableError(f"Solver '{solver_name}' is not available in this environment (tried: {tried})", solver_name=solver_name)


def _objective_value(model: pyo.ConcreteModel) -> Optional[float]:
    for obj in model.component_data_objects(pyo.Objective, active=True):
        return pyo.value(obj, exception=False)
    return None


def _bound(result) -> Optional[float]:
    problem = getattr(result, "problem", None)
    if problem is None:
        return None
    for attr in ("lower_bound", "upper_bound"):
        val = getattr(problem, attr, None)
        try:
            val = float(val) if val is not None else None
        except (TypeError, ValueError):
            val = None
        if val is not None and val not in (float("inf"), float("-inf")):
            return val
    return None


def solve_model(
    handle: SolverHandle,
    model: pyo.ConcreteModel,
    *,
    phase: Optional[int] = None,
    years: tuple = (),
) -> SolveOutcome:
    """
    Solve one model and load its primal values.

    Termination mapping:
      optimal / locally / globally optimal -> return
      infeasible, infeasibleOrUnbounded    -> InfeasibleError
      unbounded                            -> UnboundedError
      maxTimeLimit, maxIterations          -> TimeLimitError (best bound, solution if any)
      anything else                        -> SolverError
    """
    started = time.perf_counter()
    try:
        result = handle.solver.solve(model, tee=handle.tee, load_solutions=False)
    except (ApplicationError, RuntimeError, OSError) as exc:
        raise SolverError(
            f"Solver '{handle.name}' failed to run: {exc}", phase=phase, years=years, termination="error"
        ) from exc
    seconds = time.perf_counter() - started

    term = result.solver.termination_condition
    has_solution = len(result.solution) > 0
    if has_solution:
        model.solutions.load_from(result)
    logger.info("Solver %s finished in %.2fs: termination=%s", handle.name, seconds, term)

    if term in OPTIMAL_CONDITIONS and has_solution:
        return SolveOutcome(termination=str(term), objective=_objective_value(model), best_bound=_bound(result), seconds=seconds)
    if term in INFEASIBLE_CONDITIONS:
        raise InfeasibleError("Model is infeasible", phase=phase, years=years, termination=str(term))
    if term == TerminationCondition.unbounded:
        raise UnboundedError("Model is unbounded", phase=phase, years=years, termination=str(term))
    if term in TIME_LIMIT_CONDITIONS:
        raise TimeLimitError(
            "Solver stopped at its limit",
            best_bound=_bound(result),
            solution=extract_values(model) if has_solution else None,
            phase=phase,
            years=years,
            termination=str(term),
        )
    raise SolverError(f"Solver ended with termination '{term}'", phase=phase, years=years, termination=str(term))
