from __future__ import annotations

from pathlib import Path
import argparse
import sys

import pyomo.environ as pyo

from enplan.core.data_loading import load_scenario, restrict_years
from enplan.core.index_builder import build_indices
from enplan.core.model import build_model
from enplan.core.settings import parse_calcyears, resolve_phase_plan
from enplan.core.store import ScenarioStore


def _iter_param_names(model: pyo.ConcreteModel) -> list[str]:
    return sorted(param.local_name for param in model.component_objects(pyo.Param, active=True))


def _print_param_summary(model: pyo.ConcreteModel, param_name: str, sample_limit: int) -> bool:
    if not hasattr(model, param_name):
        print(f"[MISSING] {param_name}")
        return False

    component = getattr(model, param_name)
    if not isinstance(component, pyo.Param):
        print(f"[NOT_PARAM] {param_name}: component exists but is not a Pyomo Param")
        return False

    # Sparse view: explicit rows only; the declared default covers the rest.
    rows = list(component.sparse_items())
    default = component.default()
    if default is pyo.Param.NoValue:
        default = None
    print(f"[OK] {param_name} | dim={component.dim()} | rows={len(rows)} | default={default}")

    for idx, value in rows[:sample_limit]:
        print(f"  {param_name}[{idx}] = {pyo.value(value)}")

    if len(rows) > sample_limit:
        print(f"  ... ({len(rows) - sample_limit} more rows)")

    return True


def build_first_block(db_path: Path, calcyears: str | None = None) -> pyo.ConcreteModel:
    """Model of the first year block, as write-model would build it."""
    loaded = load_scenario(ScenarioStore(db_path))
    plan = resolve_phase_plan(parse_calcyears(calcyears), loaded["sets"]["YEAR"])
    scenario = restrict_years(loaded, plan[0])
    ix = build_indices(scenario)
    return build_model(scenario, ix, first_year=plan[0][0], last_year=plan[-1][-1])


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        description="Check Pyomo Param components of the model built from a scenario database."
    )
    parser.add_argument("db", help="Path to the scenario database")
    parser.add_argument(
        "--params",
        nargs="*",
        default=None,
        help="Param names to check. If omitted, all model Params are checked.",
    )
    parser.add_argument("--calcyears", default=None, help="Year blocks; only the first block is built")
    parser.add_argument(
        "--sample",
        type=int,
        default=10,
        help="How many rows to print per Param (default: 10)",
    )
    parser.add_argument(
        "--fail-on-missing",
        action="store_true",
        help="Exit with code 2 if any requested Param is missing or invalid.",
    )
    args = parser.parse_args(argv)

    db_path = Path(args.db).resolve()
    model = build_first_block(db_path, args.calcyears)
    param_names = _iter_param_names(model) if not args.params else sorted(set(args.params))

    print(f"Input: {db_path}")

    ok_count = 0
    fail_count = 0
    for name in param_names:
        if _print_param_summary(model, name, args.sample):
            ok_count += 1
        else:
            fail_count += 1

    print(f"\nSummary: {ok_count} OK, {fail_count} failed")

    if args.fail_on_missing and fail_count > 0:
        return 2
    return 0


if __name__ == "__main__":
    sys.exit(main())
