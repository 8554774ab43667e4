from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union

import yaml

from enplan.io_utils import set_debug_mode, set_quiet

from .errors import DataError
from .solver import DEFAULT_SOLVER_NAME, DEFAULT_TOL


DEFAULT_VARSTOSAVE: List[str] = [
    "vdemand",
    "vnewstoragecapacity",
    "vaccumulatednewstoragecapacity",
    "vstorageupperlimit",
    "vstoragelowerlimit",
    "vcapitalinvestmentstorage",
    "vdiscountedcapitalinvestmentstorage",
    "vsalvagevaluestorage",
    "vdiscountedsalvagevaluestorage",
    "vnewcapacity",
    "vaccumulatednewcapacity",
    "vtotalcapacityannual",
    "vtotaltechnologyannualactivity",
    "vtotalannualtechnologyactivitybymode",
    "vproductionbytechnologyannual",
    "vproduction",
    "vusebytechnologyannual",
    "vuse",
    "vtrade",
    "vtradeannual",
    "vproductionannual",
    "vuseannual",
    "vcapitalinvestment",
    "vdiscountedcapitalinvestment",
    "vsalvagevalue",
    "vdiscountedsalvagevalue",
    "voperatingcost",
    "vdiscountedoperatingcost",
    "vtotaldiscountedcost",
]

TOPOLOGY_CHOICES = ("auto", "lineflow", "transshipment")


@dataclass
class SolverSettings:
    name: str = DEFAULT_SOLVER_NAME
    options: Dict[str, Any] = field(default_factory=dict)
    time_limit: Optional[float] = None
    tee: bool = False

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "SolverSettings":
        if not data:
            return cls()
        time_limit = data.get("time_limit")
        return cls(
            name=str(data.get("name", DEFAULT_SOLVER_NAME)),
            options=dict(data.get("options") or {}),
            time_limit=float(time_limit) if time_limit is not None else None,
            tee=bool(data.get("tee", False)),
        )


@dataclass
class CalculationOptions:
    """Options of one solve or write-model call."""

    calcyears: List[List[int]] = field(default_factory=list)
    varstosave: List[str] = field(default_factory=lambda: list(DEFAULT_VARSTOSAVE))
    restrictvars: bool = True
    reportzeros: bool = False
    continuoustransmission: bool = False
    transmission_topology: str = "auto"
    solver: SolverSettings = field(default_factory=SolverSettings)
    tolerance: float = DEFAULT_TOL
    default_discount_rate: float = 0.05
    workers: int = 1
    accept_time_limited: bool = False
    quiet: bool = False
    debug: bool = False

    def __post_init__(self) -> None:
        self.calcyears = parse_calcyears(self.calcyears)
        if self.transmission_topology not in TOPOLOGY_CHOICES:
            raise DataError(
                f"Unknown transmission topology {self.transmission_topology!r}; expected one of {TOPOLOGY_CHOICES}"
            )
        if self.workers < 1:
            raise DataError("workers must be at least 1")


def parse_calcyears(value: Union[None, str, Iterable]) -> List[List[int]]:
    """
    Normalize calcyears into a list of year blocks.

    Accepted forms:
      None / "" / []            -> [] (every year in one block)
      "2020|2021,2022"          -> [[2020, 2021], [2022]]
      [2020, 2021]              -> [[2020, 2021]]
      [[2020, 2021], [2022]]    -> unchanged
    """
    if value is None:
        return []
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return []
        blocks = [[_year(y) for y in block.split("|") if y.strip()] for block in text.split(",")]
        return [b for b in blocks if b]
    items = list(value)
    if not items:
        return []
    if all(not isinstance(v, (list, tuple)) for v in items):
        return [[_year(v) for v in items]]
    return [[_year(y) for y in block] if isinstance(block, (list, tuple)) else [_year(block)] for block in items]


def _year(value: Any) -> int:
    try:
        return int(str(value).strip())
    except ValueError as exc:
        raise DataError(f"calcyears entry {value!r} is not a year") from exc


def resolve_phase_plan(calcyears: List[List[int]], model_years: List[int]) -> List[List[int]]:
    """
    Year blocks to solve, in order.

    Years missing from YEAR are dropped (and blocks left empty with them).
    Blocks must be chronological and may not overlap.
    """
    if not model_years:
        raise DataError("Scenario has no YEAR members")
    if not calcyears:
        return [sorted(model_years)]
    known = set(model_years)
    plan: List[List[int]] = []
    for block in calcyears:
        kept = sorted({y for y in block if y in known})
        if kept:
            plan.append(kept)
    if not plan:
        raise DataError(f"None of the requested calcyears {calcyears} are in YEAR")
    for prev, nxt in zip(plan, plan[1:]):
        if prev[-1] >= nxt[0]:
            raise DataError(f"calcyears blocks must be chronological and non-overlapping: {prev} then {nxt}")
    return plan


def _load_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        raise FileNotFoundError(f"Settings file not found: {path}")
    with path.open("r", encoding="utf-8") as fh:
        return yaml.safe_load(fh) or {}


def load_settings(path: Union[str, Path]) -> CalculationOptions:
    raw = _load_yaml(Path(path))
    calc = raw.get("calculation", {}) or {}
    return CalculationOptions(
        calcyears=calc.get("calcyears", []),
        varstosave=[str(v) for v in calc.get("varstosave", DEFAULT_VARSTOSAVE)],
        restrictvars=bool(calc.get("restrictvars", True)),
        reportzeros=bool(calc.get("reportzeros", False)),
        continuoustransmission=bool(calc.get("continuoustransmission", False)),
        transmission_topology=str(calc.get("transmission_topology", "auto")),
        solver=SolverSettings.from_dict(raw.get("solver")),
        tolerance=float(calc.get("tolerance", DEFAULT_TOL)),
        default_discount_rate=float(calc.get("default_discount_rate", 0.05)),
        workers=int(calc.get("workers", 1)),
        accept_time_limited=bool(calc.get("accept_time_limited", False)),
        quiet=bool(calc.get("quiet", False)),
        debug=bool(calc.get("debug", False)),
    )


def apply_log_settings(options: CalculationOptions) -> None:
    """Raise or lower package logging for debug/quiet settings; unset flags leave it alone."""
    if options.debug:
        set_debug_mode(True)
    if options.quiet:
        set_quiet(True)
