from __future__ import annotations

from pathlib import Path
import csv
from datetime import datetime
import json
import math
from typing import Any, Iterable

import pandas as pd


def collect_cost_summary(solution: dict[str, dict[tuple, float]]) -> dict[str, Any]:
    """Discounted cost totals by year and by component."""
    by_year: dict[int, float] = {}
    for (_, y), val in solution.get("vtotaldiscountedcost", {}).items():
        by_year[int(y)] = by_year.get(int(y), 0.0) + val

    def _sum(family: str) -> float:
        return float(sum(solution.get(family, {}).values()))

    return {
        "total_discounted_cost": float(sum(by_year.values())),
        "by_year": {str(y): by_year[y] for y in sorted(by_year)},
        "discounted_capital_investment": _sum("vdiscountedcapitalinvestment"),
        "discounted_operating_cost": _sum("vdiscountedoperatingcost"),
        "discounted_salvage_value": _sum("vdiscountedsalvagevalue"),
        "discounted_emissions_penalty": _sum("vdiscountedtechnologyemissionspenalty"),
        "discounted_storage_cost": _sum("vtotaldiscountedstoragecost"),
        "discounted_transmission_cost": _sum("vtotaldiscountedtransmissioncostbyregion"),
    }


def collect_top_variable_values(
    solution: dict[str, dict[tuple, float]],
    families: Iterable[str],
    tol: float,
    top_n: int,
) -> dict[str, list[dict]]:
    out: dict[str, list[dict]] = {}
    for family in families:
        rows = [
            (abs(val), key, val)
            for key, val in solution.get(family, {}).items()
            if not math.isnan(val) and abs(val) > tol
        ]
        rows.sort(key=lambda x: x[0], reverse=True)
        out[family] = [{"index": ",".join(str(k) for k in key), "value": val} for _, key, val in rows[:top_n]]
    return out


def write_json_report(report: dict, output_path: Path) -> None:
    output_path.parent.mkdir(parents=True, exist_ok=True)
    with output_path.open("w", encoding="utf-8") as f:
        json.dump(report, f, indent=2, default=str)


def export_results_csv(frames: dict[str, pd.DataFrame], output_dir: Path) -> dict[str, dict[str, str | int]]:
    """One CSV per saved family, same columns as the result tables."""
    output_dir.mkdir(parents=True, exist_ok=True)
    exported: dict[str, dict[str, str | int]] = {}
    for name in sorted(frames):
        path = output_dir / f"{name}.csv"
        frames[name].to_csv(path, index=False)
        exported[name] = {"file": str(path), "rows": int(len(frames[name]))}
    return exported


def _format_timestamp_display(timestamp: str) -> str:
    try:
        parsed = datetime.strptime(str(timestamp), "%Y%m%d_%H%M%S")
    except ValueError:
        return str(timestamp)
    return parsed.strftime("%d/%m/%Y %H:%M:%S")


def append_run_log(
    *,
    log_path: Path,
    scenario: str,
    timestamp: str,
    solver: str,
    status: str,
    objective: float,
    phases: int,
    solve_seconds: float,
    violated_constraints: int,
    max_violation: float,
) -> str:
    log_path.parent.mkdir(parents=True, exist_ok=True)
    file_exists = log_path.exists()
    with log_path.open("a", newline="", encoding="utf-8") as f:
        writer = csv.DictWriter(
            f,
            fieldnames=[
                "timestamp",
                "scenario",
                "solver",
                "status",
                "objective",
                "phases",
                "solve_seconds",
                "violated_constraints",
                "max_violation",
            ],
        )
        if not file_exists:
            writer.writeheader()
        writer.writerow(
            {
                "timestamp": _format_timestamp_display(timestamp),
                "scenario": str(scenario),
                "solver": str(solver),
                "status": str(status),
                "objective": float(objective),
                "phases": int(phases),
                "solve_seconds": float(solve_seconds),
                "violated_constraints": int(violated_constraints),
                "max_violation": float(max_violation),
            }
        )

    return str(log_path)
