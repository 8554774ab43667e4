from __future__ import annotations

from pathlib import Path
import argparse
import sys
from typing import Any

from enplan.core.data_loading import load_scenario
from enplan.core.store import ScenarioStore


def collect_input_issues(loaded: dict[str, Any], tol: float = 1e-6) -> dict[str, list[str]]:
    """
    Consistency checks that do not stop a solve but usually point at data mistakes.

    Sections:
      year_split         YearSplit does not sum to 1 in a year
      demand_profile     SpecifiedDemandProfile does not sum to 1 where demand is given
      unknown_members    rows skipped because an index value is not a set member
      inactive_techs     technologies without any activity ratio
      capacity_factor    CapacityFactor outside [0, 1]
      transmission       lines whose endpoints have no nodal modelling enabled
    """
    sets = loaded["sets"]
    params = loaded["params"]
    issues: dict[str, list[str]] = {
        "year_split": [],
        "demand_profile": [],
        "unknown_members": [],
        "inactive_techs": [],
        "capacity_factor": [],
        "transmission": [],
    }

    for y in sets["YEAR"]:
        total = sum(params["YearSplit"].get((l, y), 0.0) for l in sets["TIMESLICE"])
        if abs(total - 1.0) > tol:
            issues["year_split"].append(f"YearSplit sums to {total:.6f} in {y}")

    for (r, f, y), demand in params["SpecifiedAnnualDemand"].nonzero():
        total = sum(params["SpecifiedDemandProfile"].get((r, f, l, y), 0.0) for l in sets["TIMESLICE"])
        if abs(total - 1.0) > tol:
            issues["demand_profile"].append(f"SpecifiedDemandProfile[{r},{f},*,{y}] sums to {total:.6f}")

    for table, count in sorted(loaded.get("dropped_rows", {}).items()):
        issues["unknown_members"].append(f"{table}: {count} rows reference values outside the sets")

    active = {key[1] for name in ("InputActivityRatio", "OutputActivityRatio") for key, _ in params[name].nonzero()}
    active |= {key[1] for name in ("TechnologyToStorage", "TechnologyFromStorage") for key, _ in params[name].nonzero()}
    for t in sets["TECHNOLOGY"]:
        if t not in active:
            issues["inactive_techs"].append(f"{t} has no activity ratio and will never operate")

    for key, val in sorted(params["CapacityFactor"].rows().items()):
        if val < -tol or val > 1.0 + tol:
            issues["capacity_factor"].append(f"CapacityFactor{key} = {val}")

    enabled = {(r, f) for (r, f, _) in loaded.get("transmission_enabled", {})}
    nodes = loaded.get("nodes", {})
    for tr, rec in loaded.get("lines", {}).items():
        for n in (rec.n1, rec.n2):
            if (nodes[n], rec.f) not in enabled:
                issues["transmission"].append(f"Line {tr}: region {nodes[n]} has no TransmissionModelingEnabled row for {rec.f}")

    return issues


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Report consistency issues in a scenario database.")
    parser.add_argument("db", help="Path to the scenario database")
    parser.add_argument("--tol", type=float, default=1e-6, help="Tolerance for sum checks")
    args = parser.parse_args(argv)

    db_path = Path(args.db).resolve()
    loaded = load_scenario(ScenarioStore(db_path))
    sets = loaded["sets"]

    print("Input loaded")
    print(f"File: {db_path}")
    for name in ("REGION", "TECHNOLOGY", "TIMESLICE", "FUEL", "EMISSION", "MODE_OF_OPERATION", "YEAR", "STORAGE", "NODE"):
        print(f"{name}: {len(sets.get(name, []))}")
    print(f"Parameter rows: {sum(len(t) for t in loaded['params'].values())}")
    print(f"Transmission lines: {len(loaded['lines'])}")

    issues = collect_input_issues(loaded, args.tol)
    fail_count = 0
    for section, messages in issues.items():
        print(f"{section}: {len(messages)}")
        for msg in messages[:25]:
            print(f"  - {msg}")
        fail_count += len(messages)

    print(f"INPUT VALIDATION SUMMARY: {'PASS' if fail_count == 0 else 'FAIL'} (issues={fail_count})")
    return 0 if fail_count == 0 else 1


if __name__ == "__main__":
    sys.exit(main())
