from __future__ import annotations

from dataclasses import dataclass, field
import math
from typing import Dict, Iterator, Optional, Tuple

import pandas as pd

from .errors import DataError
from .utils import _clean_str, _to_float, _to_int


INF = math.inf

# Index column -> set name. "rr" is the partner region of a trade route.
INDEX_SETS: dict[str, str] = {
    "r": "REGION",
    "rr": "REGION",
    "t": "TECHNOLOGY",
    "f": "FUEL",
    "m": "MODE_OF_OPERATION",
    "y": "YEAR",
    "l": "TIMESLICE",
    "e": "EMISSION",
    "s": "STORAGE",
    "n": "NODE",
}

SET_TABLES = (
    "REGION",
    "TECHNOLOGY",
    "TIMESLICE",
    "FUEL",
    "EMISSION",
    "MODE_OF_OPERATION",
    "YEAR",
    "STORAGE",
)
REQUIRED_SET_TABLES = SET_TABLES


@dataclass(frozen=True)
class ParamSpec:
    index: Tuple[str, ...]
    default: Optional[float]
    required: bool = False
    doc: str = ""


# Built-in defaults apply when DefaultParams has no row for the table.
# A default of None means "no value"; such tables are resolved through a fallback chain.
# INF marks limits that are unconstrained unless given.
PARAMETERS: dict[str, ParamSpec] = {
    "YearSplit": ParamSpec(("l", "y"), 0.0, True, "Fraction of the year covered by a timeslice"),
    "DiscountRate": ParamSpec(("r",), None, True, "Regional discount rate"),
    "DepreciationMethod": ParamSpec(("r",), 1.0, doc="1 = sinking fund, 2 = straight line"),
    "InterestRateTechnology": ParamSpec(("r", "t", "y"), None, doc="Technology-specific interest rate"),
    "InterestRateStorage": ParamSpec(("r", "s", "y"), None, doc="Storage-specific interest rate"),
    "SpecifiedAnnualDemand": ParamSpec(("r", "f", "y"), 0.0, True),
    "SpecifiedDemandProfile": ParamSpec(("r", "f", "l", "y"), 0.0, True),
    "AccumulatedAnnualDemand": ParamSpec(("r", "f", "y"), 0.0),
    "CapacityToActivityUnit": ParamSpec(("r", "t"), 1.0, True),
    "CapacityFactor": ParamSpec(("r", "t", "l", "y"), 1.0, True),
    "AvailabilityFactor": ParamSpec(("r", "t", "y"), 1.0),
    "OperationalLife": ParamSpec(("r", "t"), 1.0, True),
    "ResidualCapacity": ParamSpec(("r", "t", "y"), 0.0, True),
    "InputActivityRatio": ParamSpec(("r", "t", "f", "m", "y"), 0.0, True),
    "OutputActivityRatio": ParamSpec(("r", "t", "f", "m", "y"), 0.0, True),
    "CapitalCost": ParamSpec(("r", "t", "y"), 0.0, True),
    "VariableCost": ParamSpec(("r", "t", "m", "y"), 0.0, True),
    "FixedCost": ParamSpec(("r", "t", "y"), 0.0, True),
    "CapacityOfOneTechnologyUnit": ParamSpec(("r", "t", "y"), 0.0),
    "TotalAnnualMaxCapacity": ParamSpec(("r", "t", "y"), INF),
    "TotalAnnualMinCapacity": ParamSpec(("r", "t", "y"), 0.0),
    "TotalAnnualMaxCapacityInvestment": ParamSpec(("r", "t", "y"), INF),
    "TotalAnnualMinCapacityInvestment": ParamSpec(("r", "t", "y"), 0.0),
    "TotalTechnologyAnnualActivityUpperLimit": ParamSpec(("r", "t", "y"), INF),
    "TotalTechnologyAnnualActivityLowerLimit": ParamSpec(("r", "t", "y"), 0.0),
    "TotalTechnologyModelPeriodActivityUpperLimit": ParamSpec(("r", "t"), INF),
    "TotalTechnologyModelPeriodActivityLowerLimit": ParamSpec(("r", "t"), 0.0),
    "TechnologyToStorage": ParamSpec(("r", "t", "s", "m"), 0.0),
    "TechnologyFromStorage": ParamSpec(("r", "t", "s", "m"), 0.0),
    "StorageLevelStart": ParamSpec(("r", "s"), 0.0),
    "StorageMaxChargeRate": ParamSpec(("r", "s"), 0.0, doc="0 means unlimited"),
    "StorageMaxDischargeRate": ParamSpec(("r", "s"), 0.0, doc="0 means unlimited"),
    "MinStorageCharge": ParamSpec(("r", "s", "y"), 0.0),
    "OperationalLifeStorage": ParamSpec(("r", "s"), 1.0),
    "CapitalCostStorage": ParamSpec(("r", "s", "y"), 0.0),
    "ResidualStorageCapacity": ParamSpec(("r", "s", "y"), 0.0),
    "TotalAnnualMaxCapacityStorage": ParamSpec(("r", "s", "y"), INF),
    "TotalAnnualMinCapacityStorage": ParamSpec(("r", "s", "y"), 0.0),
    "TotalAnnualMaxCapacityInvestmentStorage": ParamSpec(("r", "s", "y"), INF),
    "TotalAnnualMinCapacityInvestmentStorage": ParamSpec(("r", "s", "y"), 0.0),
    "ReserveMarginTagTechnology": ParamSpec(("r", "t", "y"), 0.0),
    "ReserveMarginTagFuel": ParamSpec(("r", "f", "y"), 0.0),
    "ReserveMargin": ParamSpec(("r", "y"), 0.0),
    "RETagTechnology": ParamSpec(("r", "t", "y"), 0.0),
    "RETagFuel": ParamSpec(("r", "f", "y"), 0.0),
    "REMinProductionTarget": ParamSpec(("r", "y"), 0.0),
    "EmissionActivityRatio": ParamSpec(("r", "t", "e", "m", "y"), 0.0),
    "EmissionsPenalty": ParamSpec(("r", "e", "y"), 0.0),
    "AnnualExogenousEmission": ParamSpec(("r", "e", "y"), 0.0),
    "AnnualEmissionLimit": ParamSpec(("r", "e", "y"), INF),
    "ModelPeriodExogenousEmission": ParamSpec(("r", "e"), 0.0),
    "ModelPeriodEmissionLimit": ParamSpec(("r", "e"), INF),
    "TradeRoute": ParamSpec(("r", "rr", "f", "y"), 0.0),
    "NodalDistributionDemand": ParamSpec(("n", "f", "y"), None, doc="Share of regional demand at a node"),
    "NodalDistributionTechnologyCapacity": ParamSpec(("n", "t", "y"), None, doc="Share of technology capacity at a node"),
    "NodalDistributionStorageCapacity": ParamSpec(("n", "s", "y"), None, doc="Share of storage capacity at a node"),
}

# Activity ratios default to 0 and are read sparsely even when DefaultParams lists them.
SPARSE_ONLY = {"InputActivityRatio", "OutputActivityRatio", "EmissionActivityRatio", "TechnologyToStorage", "TechnologyFromStorage"}


def norm(value) -> str:
    """Normalize text values and convert None/empty to ''."""
    return _clean_str(value) or ""


def coerce_key(index: Tuple[str, ...], raw: Tuple) -> tuple:
    """Normalize one raw row key: years become int, everything else a stripped string."""
    out = []
    for col, value in zip(index, raw):
        if col == "y":
            year = _to_int(value, default=None)
            if year is None:
                raise DataError(f"Non-integer year value {value!r}")
            out.append(year)
        else:
            out.append(norm(value))
    return tuple(out)


@dataclass
class ParamTable:
    """
    Sparse parameter: explicit rows plus one declared default.

    Lookup order:
      1) carry-forward overlay row (set by the phase orchestrator)
      2) explicit scenario row
      3) declared default (DefaultParams row, else built-in default)
    """

    name: str
    index: Tuple[str, ...]
    default: Optional[float]
    values: Dict[tuple, float] = field(default_factory=dict)
    overlay: Dict[tuple, float] = field(default_factory=dict)
    default_declared: bool = False

    def get(self, key: tuple, fallback: Optional[float] = None) -> Optional[float]:
        if key in self.overlay:
            return self.overlay[key]
        if key in self.values:
            return self.values[key]
        if self.default is not None:
            return self.default
        return fallback

    def __getitem__(self, key: tuple) -> float:
        value = self.get(key)
        if value is None:
            raise KeyError(f"{self.name}{key} has no row and no default")
        return value

    def has_row(self, key: tuple) -> bool:
        return key in self.overlay or key in self.values

    def rows(self) -> Dict[tuple, float]:
        """Explicit rows with overlay rows taking precedence."""
        merged = dict(self.values)
        merged.update(self.overlay)
        return merged

    def nonzero(self) -> Iterator[tuple[tuple, float]]:
        for key, value in sorted(self.rows().items()):
            if value != 0.0:
                yield key, value

    def with_overlay(self, overlay: Dict[tuple, float]) -> "ParamTable":
        merged = dict(self.overlay)
        merged.update(overlay)
        return ParamTable(
            name=self.name,
            index=self.index,
            default=self.default,
            values=self.values,
            overlay=merged,
            default_declared=self.default_declared,
        )

    def __len__(self) -> int:
        return len(self.rows())


def build_default_lookup(dat_defaults: pd.DataFrame) -> dict[str, float]:
    """DefaultParams rows keyed by table name. Later rows win."""
    lookup: dict[str, float] = {}
    if dat_defaults is None or dat_defaults.empty:
        return lookup
    for name, value in dat_defaults[["tablename", "val"]].itertuples(index=False, name=None):
        key = norm(name)
        if not key:
            continue
        val = _to_float(value, default=None)
        if val is None:
            raise DataError(f"DefaultParams value for {key!r} is not numeric: {value!r}")
        lookup[key] = val
    return lookup


def build_param_table(
    name: str,
    df: Optional[pd.DataFrame],
    defaults: dict[str, float],
    members: dict[str, set],
) -> tuple[ParamTable, int]:
    """
    Build one ParamTable from raw rows.

    Rows whose index values are not members of the loaded sets are dropped
    (this is how year filtering reaches parameters). Returns the table and the
    number of dropped rows.
    """
    spec = PARAMETERS[name]
    default = spec.default
    declared = False
    if name in defaults and name not in SPARSE_ONLY:
        default = defaults[name]
        declared = True

    table = ParamTable(name=name, index=spec.index, default=default, default_declared=declared)
    if df is None or df.empty:
        return table, 0

    missing = set(spec.index) | {"val"}
    missing -= set(df.columns)
    if missing:
        raise DataError(f"Missing required columns in {name}: {sorted(missing)}")

    dropped = 0
    for raw in df[list(spec.index) + ["val"]].itertuples(index=False, name=None):
        key = coerce_key(spec.index, raw[:-1])
        val = _to_float(raw[-1], default=None)
        if val is None:
            raise DataError(f"{name}{key}: value {raw[-1]!r} is not numeric")
        if any(k not in members[INDEX_SETS[col]] for col, k in zip(spec.index, key)):
            dropped += 1
            continue
        if key in table.values:
            raise DataError(f"{name}{key}: duplicate row")
        table.values[key] = val
    return table, dropped


def entity_rate(
    params: dict[str, ParamTable],
    override: Optional[str],
    key: Optional[tuple],
    region: str,
    default_rate: float,
    explicit: Optional[float] = None,
) -> float:
    """
    Interest rate used to discount an entity's costs.

    Rules:
      1) explicit value passed by the caller (e.g. TransmissionLine.interestrate)
      2) override table row, or its declared default (InterestRateTechnology / InterestRateStorage)
      3) DiscountRate(r), explicit or declared
      4) configured default rate
    """
    if explicit is not None:
        return float(explicit)
    if override is not None and override in params:
        val = params[override].get(key)
        if val is not None:
            return float(val)
    val = params["DiscountRate"].get((region,)) if "DiscountRate" in params else None
    if val is not None:
        return float(val)
    return float(default_rate)
