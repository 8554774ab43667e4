from __future__ import annotations

from pathlib import Path

import pytest

from enplan.core.param_table import PARAMETERS
from enplan.core.settings import CalculationOptions, SolverSettings
from enplan.core.solver import DEFAULT_SOLVER_NAME, _is_available
from enplan.core.store import ScenarioStore, create_store


class ScenarioBuilder:
    """Collects inserts for a fresh scenario database and commits them in one go."""

    def __init__(self, path: Path, *, defaultvals: bool = True) -> None:
        self.path = Path(path)
        self.store = create_store(self.path, defaultvals=defaultvals)
        self.statements: list = []

    def set(self, name: str, *values) -> "ScenarioBuilder":
        for v in values:
            self.statements.append((f"INSERT INTO {name} (val) VALUES (?)", (str(v),)))
        return self

    def storage(self, s: str, *, netzeroyear: int = 1, netzerotg1: int = 0, netzerotg2: int = 0) -> "ScenarioBuilder":
        self.statements.append(
            (
                "INSERT INTO STORAGE (val, netzeroyear, netzerotg1, netzerotg2) VALUES (?, ?, ?, ?)",
                (s, netzeroyear, netzerotg1, netzerotg2),
            )
        )
        return self

    def param(self, name: str, *rows: tuple) -> "ScenarioBuilder":
        cols = list(PARAMETERS[name].index) + ["val"]
        placeholders = ", ".join("?" for _ in cols)
        for row in rows:
            assert len(row) == len(cols), f"{name} expects {cols}"
            self.statements.append((f"INSERT INTO {name} ({', '.join(cols)}) VALUES ({placeholders})", tuple(row)))
        return self

    def node(self, n: str, r: str) -> "ScenarioBuilder":
        self.statements.append(("INSERT INTO NODE (val, r) VALUES (?, ?)", (n, r)))
        return self

    def enable_transmission(self, r: str, f: str, y: int) -> "ScenarioBuilder":
        self.statements.append(("INSERT INTO TransmissionModelingEnabled (r, f, y, type) VALUES (?, ?, ?, 1)", (r, f, y)))
        return self

    def line(self, tr: str, n1: str, n2: str, f: str, maxflow: float, **extra) -> "ScenarioBuilder":
        cols = ["id", "n1", "n2", "f", "maxflow"] + list(extra)
        values = (tr, n1, n2, f, maxflow) + tuple(extra.values())
        placeholders = ", ".join("?" for _ in cols)
        self.statements.append((f"INSERT INTO TransmissionLine ({', '.join(cols)}) VALUES ({placeholders})", values))
        return self

    def timeslice_group(self, l: str, lorder: int, tg1: str, tg2: str) -> "ScenarioBuilder":
        self.statements.append(("INSERT INTO LTsGroup (l, lorder, tg1, tg2) VALUES (?, ?, ?, ?)", (l, lorder, tg1, tg2)))
        return self

    def tsgroup(self, table: str, name: str, order: int) -> "ScenarioBuilder":
        self.statements.append((f'INSERT INTO {table} (name, "order") VALUES (?, ?)', (name, order)))
        return self

    def commit(self) -> ScenarioStore:
        self.store.execute(self.statements)
        self.statements = []
        return self.store


def single_region(
    builder: ScenarioBuilder,
    *,
    years=(2020,),
    timeslices=(("D", 0.5), ("N", 0.5)),
    demand: float = 10.0,
    capital_cost: float = 100.0,
    life: float = 1.0,
) -> ScenarioBuilder:
    """One region, one generator meeting a flat electricity demand."""
    builder.set("REGION", "R1")
    builder.set("TECHNOLOGY", "GEN")
    builder.set("TIMESLICE", *[l for l, _ in timeslices])
    builder.set("FUEL", "ELC")
    builder.set("EMISSION", "CO2")
    builder.set("MODE_OF_OPERATION", "1")
    builder.set("YEAR", *years)
    builder.param("DiscountRate", ("R1", 0.05))
    builder.param("OperationalLife", ("R1", "GEN", life))
    for y in years:
        builder.param("YearSplit", *[(l, y, share) for l, share in timeslices])
        builder.param("SpecifiedAnnualDemand", ("R1", "ELC", y, demand))
        builder.param("SpecifiedDemandProfile", *[("R1", "ELC", l, y, share) for l, share in timeslices])
        builder.param("OutputActivityRatio", ("R1", "GEN", "ELC", "1", y, 1.0))
        builder.param("CapitalCost", ("R1", "GEN", y, capital_cost))
        builder.param("EmissionActivityRatio", ("R1", "GEN", "CO2", "1", y, 0.1))
    return builder


def storage_region(
    builder: ScenarioBuilder,
    *,
    years=(2020,),
    timeslices=(("D", 0.5), ("N", 0.5)),
    dark=("N",),
    netzeroyear: int = 1,
    netzerotg1: int = 0,
    level_start: float = 0.0,
    residual: float = 0.0,
) -> ScenarioBuilder:
    """Generator that only runs outside the dark timeslices; a battery carries energy across them."""
    single_region(builder, years=years, timeslices=timeslices)
    builder.set("TECHNOLOGY", "BATT")
    builder.set("MODE_OF_OPERATION", "2")
    builder.storage("BAT", netzeroyear=netzeroyear, netzerotg1=netzerotg1)
    builder.param("TechnologyToStorage", ("R1", "BATT", "BAT", "1", 1.0))
    builder.param("TechnologyFromStorage", ("R1", "BATT", "BAT", "2", 1.0))
    if level_start:
        builder.param("StorageLevelStart", ("R1", "BAT", level_start))
    for y in years:
        builder.param("CapacityFactor", *[("R1", "GEN", l, y, 0.0) for l in dark])
        builder.param("InputActivityRatio", ("R1", "BATT", "ELC", "1", y, 1.0))
        builder.param("OutputActivityRatio", ("R1", "BATT", "ELC", "2", y, 1.0))
        builder.param("CapitalCostStorage", ("R1", "BAT", y, 1.0))
        if residual:
            builder.param("ResidualStorageCapacity", ("R1", "BAT", y, residual))
    return builder


@pytest.fixture
def scenario_builder(tmp_path):
    counter = {"n": 0}

    def _make(name: str = "", **kwargs) -> ScenarioBuilder:
        counter["n"] += 1
        return ScenarioBuilder(tmp_path / f"{name or 'scenario'}_{counter['n']}.sqlite", **kwargs)

    return _make


@pytest.fixture
def simple_db(scenario_builder) -> Path:
    """Two years, two timeslices, a single generator with a one-year life."""
    builder = single_region(scenario_builder("simple"), years=(2020, 2021))
    builder.commit()
    return builder.path


@pytest.fixture(scope="session")
def solver_name() -> str:
    if not _is_available(DEFAULT_SOLVER_NAME):
        pytest.skip(f"{DEFAULT_SOLVER_NAME} is not available")
    return DEFAULT_SOLVER_NAME


@pytest.fixture
def options(solver_name):
    def _make(**kwargs) -> CalculationOptions:
        kwargs.setdefault("solver", SolverSettings(name=solver_name))
        return CalculationOptions(**kwargs)

    return _make
