from __future__ import annotations

from datetime import datetime
from typing import Iterable, Optional

import pandas as pd

from enplan.io_utils import get_logger

from .errors import DataError
from .model import VARIABLE_FAMILIES
from .store import ScenarioStore


logger = get_logger(__name__)

Solution = dict[str, dict[tuple, float]]


def check_varstosave(varstosave: Iterable[str]) -> list[str]:
    """Validate and de-duplicate requested families, keeping their order."""
    names = list(dict.fromkeys(str(v).strip().lower() for v in varstosave if str(v).strip()))
    unknown = [v for v in names if v not in VARIABLE_FAMILIES]
    if unknown:
        raise DataError(f"Unknown variable families in varstosave: {unknown}")
    return names


def merge_solutions(parts: list[Solution]) -> Solution:
    """
    Combine phase solutions in phase order.

    Year-indexed families never overlap between phases. Families without a
    year dimension (model-period totals) are summed across phases.
    """
    merged: Solution = {}
    for part in parts:
        for family, values in part.items():
            target = merged.setdefault(family, {})
            has_year = "y" in VARIABLE_FAMILIES.get(family, ("y",))
            for key, val in values.items():
                if key in target and not has_year:
                    target[key] += val
                else:
                    target[key] = val
    return merged


def solution_frames(
    solution: Solution,
    varstosave: Iterable[str],
    *,
    reportzeros: bool = False,
    solvedtm: Optional[str] = None,
) -> dict[str, pd.DataFrame]:
    """
    One DataFrame per saved family: index columns, val, solvedtm.

    Values are written as solved. Only rows equal to exactly 0.0 are left out,
    and only when reportzeros is False.
    """
    stamp = solvedtm or datetime.now().isoformat(timespec="milliseconds")
    frames: dict[str, pd.DataFrame] = {}
    for family in check_varstosave(varstosave):
        dims = list(VARIABLE_FAMILIES[family])
        values = solution.get(family, {})
        rows = [
            list(key) + [val, stamp]
            for key, val in values.items()
            if val is not None and (reportzeros or val != 0.0)
        ]
        frames[family] = pd.DataFrame(rows, columns=dims + ["val", "solvedtm"])
    return frames


def write_results(
    store: ScenarioStore,
    solution: Solution,
    varstosave: Iterable[str],
    *,
    reportzeros: bool = False,
    solvedtm: Optional[str] = None,
) -> list[str]:
    """Replace the store's result tables with the saved families. Returns the table names."""
    frames = solution_frames(solution, varstosave, reportzeros=reportzeros, solvedtm=solvedtm)
    store.replace_result_tables(frames)
    for name, df in frames.items():
        logger.debug("Result table %s: %d rows", name, len(df))
    return sorted(frames)


def read_result(store: ScenarioStore, family: str) -> pd.DataFrame:
    dims = list(VARIABLE_FAMILIES[family])
    return store.read_table(family, order_by="rowid")[dims + ["val", "solvedtm"]]
