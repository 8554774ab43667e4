from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Any, Iterable, Optional

import pandas as pd

from enplan.io_utils import get_logger

from .errors import DataError
from .param_table import (
    PARAMETERS,
    REQUIRED_SET_TABLES,
    ParamTable,
    build_default_lookup,
    build_param_table,
    norm,
)
from .store import ScenarioStore
from .utils import _normalize_columns, _to_float, _to_int


logger = get_logger(__name__)


@dataclass(frozen=True)
class LineRecord:
    """One row of TransmissionLine."""

    id: str
    n1: str
    n2: str
    f: str
    maxflow: float
    yconstruction: Optional[int]
    capitalcost: float
    fixedcost: float
    variablecost: float
    operationallife: int
    efficiency: float
    interestrate: Optional[float]
    reactance: Optional[float] = None


@dataclass(frozen=True)
class StorageFlags:
    netzeroyear: bool = True
    netzerotg1: bool = False
    netzerotg2: bool = False


def _read_optional(store: ScenarioStore, name: str) -> Optional[pd.DataFrame]:
    if not store.table_exists(name):
        return None
    return _normalize_columns(store.read_table(name))


def _require_columns(df: pd.DataFrame, name: str, required: Iterable[str]) -> None:
    missing = set(required) - set(df.columns)
    if missing:
        raise DataError(f"Missing required columns in {name}: {sorted(missing)}")


def _load_set_values(store: ScenarioStore, name: str) -> list:
    df = _normalize_columns(store.read_table(name, order_by="rowid"))
    _require_columns(df, name, ["val"])
    values: list = []
    for raw in df["val"].tolist():
        v = norm(raw)
        if not v:
            continue
        if name == "YEAR":
            year = _to_int(v, default=None)
            if year is None:
                raise DataError(f"YEAR member {raw!r} is not an integer")
            v = year
        values.append(v)
    if len(values) != len(set(values)):
        raise DataError(f"Set {name} has duplicate members")
    return values


def _timeslice_order(timeslices: list[str], dat_lts: Optional[pd.DataFrame], dat_tg1, dat_tg2) -> tuple[list[str], dict, dict]:
    """
    Chronological timeslice order from LTsGroup.

    Sort key: (TSGROUP1.order, TSGROUP2.order, lorder). Timeslices without an
    LTsGroup row keep their declared order after the grouped ones.
    """
    if dat_lts is None or dat_lts.empty:
        return timeslices, {}, {}
    _require_columns(dat_lts, "LTsGroup", ["l", "lorder", "tg1", "tg2"])

    def _group_order(df: Optional[pd.DataFrame], name: str) -> dict[str, int]:
        if df is None or df.empty:
            return {}
        _require_columns(df, name, ["name", "order"])
        return {norm(n): _to_int(o, default=0) for n, o in df[["name", "order"]].itertuples(index=False, name=None)}

    tg1_order = _group_order(dat_tg1, "TSGROUP1")
    tg2_order = _group_order(dat_tg2, "TSGROUP2")

    tg1_of: dict[str, str] = {}
    tg2_of: dict[str, str] = {}
    keys: dict[str, tuple] = {}
    for l, lorder, tg1, tg2 in dat_lts[["l", "lorder", "tg1", "tg2"]].itertuples(index=False, name=None):
        l = norm(l)
        if l not in timeslices:
            continue
        tg1_of[l] = norm(tg1)
        tg2_of[l] = norm(tg2)
        keys[l] = (tg1_order.get(norm(tg1), 0), tg2_order.get(norm(tg2), 0), _to_int(lorder, default=0))

    grouped = sorted((l for l in timeslices if l in keys), key=lambda l: (keys[l], timeslices.index(l)))
    rest = [l for l in timeslices if l not in keys]
    return grouped + rest, tg1_of, tg2_of


def _load_storage_flags(store: ScenarioStore, storages: list[str]) -> dict[str, StorageFlags]:
    df = _normalize_columns(store.read_table("STORAGE"))
    flags: dict[str, StorageFlags] = {}
    for _, row in df.iterrows():
        s = norm(row.get("val"))
        if s not in storages:
            continue
        flags[s] = StorageFlags(
            netzeroyear=bool(_to_int(row.get("netzeroyear", 1), default=1)),
            netzerotg1=bool(_to_int(row.get("netzerotg1", 0), default=0)),
            netzerotg2=bool(_to_int(row.get("netzerotg2", 0), default=0)),
        )
    return {s: flags.get(s, StorageFlags()) for s in storages}


def _load_nodes(dat_nodes: Optional[pd.DataFrame], regions: list[str]) -> dict[str, str]:
    if dat_nodes is None or dat_nodes.empty:
        return {}
    _require_columns(dat_nodes, "NODE", ["val", "r"])
    nodes: dict[str, str] = {}
    for n, r in dat_nodes[["val", "r"]].itertuples(index=False, name=None):
        n, r = norm(n), norm(r)
        if not n:
            continue
        if r not in regions:
            raise DataError(f"NODE {n!r} references unknown region {r!r}")
        nodes[n] = r
    return nodes


def _load_lines(dat_lines: Optional[pd.DataFrame], nodes: dict[str, str], fuels: list[str]) -> dict[str, LineRecord]:
    if dat_lines is None or dat_lines.empty:
        return {}
    _require_columns(dat_lines, "TransmissionLine", ["id", "n1", "n2", "f", "maxflow"])
    lines: dict[str, LineRecord] = {}
    for _, row in dat_lines.iterrows():
        tr = norm(row["id"])
        n1, n2, f = norm(row["n1"]), norm(row["n2"]), norm(row["f"])
        if n1 not in nodes or n2 not in nodes:
            raise DataError(f"TransmissionLine {tr!r} references unknown node ({n1!r}, {n2!r})")
        if f not in fuels:
            raise DataError(f"TransmissionLine {tr!r} references unknown fuel {f!r}")
        maxflow = _to_float(row["maxflow"], default=None)
        if maxflow is None:
            raise DataError(f"TransmissionLine {tr!r} has no maxflow")
        lines[tr] = LineRecord(
            id=tr,
            n1=n1,
            n2=n2,
            f=f,
            maxflow=maxflow,
            yconstruction=_to_int(row.get("yconstruction"), default=None),
            capitalcost=_to_float(row.get("capitalcost"), default=0.0),
            fixedcost=_to_float(row.get("fixedcost"), default=0.0),
            variablecost=_to_float(row.get("variablecost"), default=0.0),
            operationallife=max(1, _to_int(row.get("operationallife"), default=1) or 1),
            efficiency=_to_float(row.get("efficiency"), default=1.0),
            interestrate=_to_float(row.get("interestrate"), default=None),
            reactance=_to_float(row.get("reactance"), default=None),
        )
    return dict(sorted(lines.items()))


def _load_transmission_enabled(dat_tme: Optional[pd.DataFrame], members: dict[str, set]) -> dict[tuple, int]:
    if dat_tme is None or dat_tme.empty:
        return {}
    _require_columns(dat_tme, "TransmissionModelingEnabled", ["r", "f", "y"])
    enabled: dict[tuple, int] = {}
    for _, row in dat_tme.iterrows():
        key = (norm(row["r"]), norm(row["f"]), _to_int(row["y"], default=None))
        if key[0] in members["REGION"] and key[1] in members["FUEL"] and key[2] in members["YEAR"]:
            enabled[key] = _to_int(row.get("type", 1), default=1)
    return dict(sorted(enabled.items()))


def load_scenario(store: ScenarioStore, *, years: Optional[Iterable[int]] = None) -> dict[str, Any]:
    """
    Load sets and parameters of one scenario.

    years restricts YEAR (and therefore every year-indexed row) to the given
    members. Raises DataError when a required table is absent or malformed.
    """
    tables = set(store.list_tables())
    missing_sets = [name for name in REQUIRED_SET_TABLES if name not in tables]
    missing_params = [name for name, spec in PARAMETERS.items() if spec.required and name not in tables]
    if missing_sets or missing_params or "DefaultParams" not in tables:
        absent = missing_sets + missing_params + ([] if "DefaultParams" in tables else ["DefaultParams"])
        raise DataError(f"Scenario database {store.path} is missing required tables: {absent}")

    # STEP 1: sets
    sets: dict[str, list] = {name: _load_set_values(store, name) for name in REQUIRED_SET_TABLES}
    sets["YEAR"] = sorted(sets["YEAR"])
    if years is not None:
        wanted = {int(y) for y in years}
        sets["YEAR"] = [y for y in sets["YEAR"] if y in wanted]

    ordered_ts, tg1_of, tg2_of = _timeslice_order(
        sets["TIMESLICE"],
        _read_optional(store, "LTsGroup"),
        _read_optional(store, "TSGROUP1"),
        _read_optional(store, "TSGROUP2"),
    )
    sets["TIMESLICE"] = ordered_ts

    nodes = _load_nodes(_read_optional(store, "NODE"), sets["REGION"])
    sets["NODE"] = list(nodes)

    members = {name: set(values) for name, values in sets.items()}

    # STEP 2: parameters
    defaults = build_default_lookup(_read_optional(store, "DefaultParams"))
    params: dict[str, ParamTable] = {}
    dropped_rows: dict[str, int] = {}
    for name in PARAMETERS:
        df = _read_optional(store, name) if name in tables else None
        params[name], dropped = build_param_table(name, df, defaults, members)
        if dropped:
            dropped_rows[name] = dropped

    lines = _load_lines(_read_optional(store, "TransmissionLine"), nodes, sets["FUEL"])
    enabled = _load_transmission_enabled(_read_optional(store, "TransmissionModelingEnabled"), members)

    if dropped_rows:
        logger.debug("Rows outside the loaded sets were skipped: %s", dropped_rows)
    logger.info(
        "Loaded scenario %s: %d regions, %d technologies, %d timeslices, %d years, %d storages",
        store.path,
        len(sets["REGION"]),
        len(sets["TECHNOLOGY"]),
        len(sets["TIMESLICE"]),
        len(sets["YEAR"]),
        len(sets["STORAGE"]),
    )

    return {
        "sets": sets,
        "params": params,
        "defaults": defaults,
        "storage_flags": _load_storage_flags(store, sets["STORAGE"]),
        "tg1_of": tg1_of,
        "tg2_of": tg2_of,
        "nodes": nodes,
        "lines": lines,
        "transmission_enabled": enabled,
        "dropped_rows": dropped_rows,
        "store_path": str(store.path),
    }


def restrict_years(loaded: dict[str, Any], years: Iterable[int]) -> dict[str, Any]:
    """Shallow copy of a loaded scenario whose YEAR set is limited to years (rows are kept)."""
    wanted = {int(y) for y in years}
    out = dict(loaded)
    out["sets"] = dict(loaded["sets"])
    out["sets"]["YEAR"] = [y for y in loaded["sets"]["YEAR"] if y in wanted]
    return out


def apply_overlay(loaded: dict[str, Any], overlay: dict[str, dict[tuple, float]], line_years: Optional[dict[str, int]] = None) -> dict[str, Any]:
    """Shallow copy of a loaded scenario whose parameters consult the overlay first."""
    out = dict(loaded)
    params = dict(loaded["params"])
    for name, rows in overlay.items():
        if name not in params:
            raise DataError(f"Overlay names unknown parameter {name!r}")
        params[name] = params[name].with_overlay(rows)
    out["params"] = params
    if line_years:
        lines = dict(loaded["lines"])
        for tr, year in line_years.items():
            lines[tr] = replace(lines[tr], yconstruction=int(year))
        out["lines"] = lines
    return out
