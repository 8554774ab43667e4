from __future__ import annotations

from enum import Enum
from typing import Any, Optional, Sequence


class SolveStatus(str, Enum):
    OPTIMAL = "Optimal"
    INFEASIBLE = "Infeasible"
    UNBOUNDED = "Unbounded"
    TIME_LIMIT = "TimeLimit"
    SOLVER_UNAVAILABLE = "SolverUnavailable"
    DATA_ERROR = "DataError"


class EnplanError(Exception):
    """Base class for every error raised by the optimizer."""

    status: Optional[SolveStatus] = None


class DataError(EnplanError):
    """Scenario input is missing or malformed. Raised before any solve attempt."""

    status = SolveStatus.DATA_ERROR


class ModelConstructionError(EnplanError):
    """An internal invariant of the model build was violated."""


class StoreIOError(EnplanError):
    """Reading or writing the scenario store failed. Callers may retry."""


class PhaseCancelledError(EnplanError):
    """The phase plan was cancelled between two phases."""


class SolverUnavailableError(EnplanError):
    """The configured solver cannot be used for this model."""

    status = SolveStatus.SOLVER_UNAVAILABLE

    def __init__(self, message: str, *, solver_name: str | None = None) -> None:
        super().__init__(message)
        self.solver_name = solver_name


class PhaseSolveError(EnplanError):
    """Solver-reported outcome of one phase, with phase and year context."""

    def __init__(
        self,
        message: str,
        *,
        phase: int | None = None,
        years: Sequence[int] = (),
        termination: str | None = None,
    ) -> None:
        self.phase = phase
        self.years = list(years)
        self.termination = termination
        super().__init__(self._with_context(message))

    def _with_context(self, message: str) -> str:
        if self.phase is None:
            return message
        span = f"{self.years[0]}-{self.years[-1]}" if self.years else "no years"
        return f"{message} (phase {self.phase}, years {span})"


class InfeasibleError(PhaseSolveError):
    status = SolveStatus.INFEASIBLE


class UnboundedError(PhaseSolveError):
    status = SolveStatus.UNBOUNDED


class SolverError(PhaseSolveError):
    """Solver stopped with a termination condition that has no better mapping."""


class TimeLimitError(PhaseSolveError):
    status = SolveStatus.TIME_LIMIT

    def __init__(
        self,
        message: str,
        *,
        best_bound: float | None = None,
        solution: Any = None,
        **kwargs: Any,
    ) -> None:
        self.best_bound = best_bound
        self.solution = solution
        super().__init__(message, **kwargs)
