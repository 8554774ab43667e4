from __future__ import annotations

import math
from typing import Any

import pyomo.environ as pyo


def _value_or_nan(expr) -> float:
    val = pyo.value(expr, exception=False)
    if val is None:
        return math.nan
    try:
        return float(val)
    except (TypeError, ValueError):
        return math.nan


def constraint_violation(con: pyo.ConstraintData) -> float:
    """Distance of the body from its bounds; inf when the body has no value."""
    body = _value_or_nan(con.body)
    if math.isnan(body):
        return math.inf
    below = max(0.0, _value_or_nan(con.lower) - body) if con.has_lb() else 0.0
    above = max(0.0, body - _value_or_nan(con.upper)) if con.has_ub() else 0.0
    return max(below, above)


def validate_constraints(model: pyo.ConcreteModel, tol: float) -> dict[str, Any]:
    """
    Re-evaluate every active constraint at the loaded solution.

    Violations above tol are counted per constraint family so that a broken
    family shows up by name in the solve report.
    """
    checked = 0
    by_family: dict[str, int] = {}
    worst: dict[str, Any] | None = None
    worst_violation = 0.0

    for family in model.component_objects(pyo.Constraint, active=True):
        for idx, con in family.items():
            if not con.active:
                continue
            checked += 1
            violation = constraint_violation(con)
            if violation > tol:
                by_family[family.local_name] = by_family.get(family.local_name, 0) + 1
            if violation > worst_violation:
                worst_violation = violation
                worst = {"name": family.local_name, "index": str(idx), "violation": violation}

    violated = sum(by_family.values())
    return {
        "total_constraints": checked,
        "violated_constraints": violated,
        "violations_by_family": dict(sorted(by_family.items())),
        "max_violation": worst_violation,
        "feasible_by_tolerance": violated == 0,
        "worst_constraint": worst,
    }


def check_cost_accounting(solution: dict[str, dict[tuple, float]], tol: float) -> dict[str, Any]:
    """
    Recompute vtotaldiscountedcost[r,y] from its technology, storage and
    transmission subtotals and report the largest residual.
    """
    expected: dict[tuple, float] = {}
    for (r, t, y), val in solution.get("vtotaldiscountedcostbytechnology", {}).items():
        expected[(r, y)] = expected.get((r, y), 0.0) + val
    for (r, s, y), val in solution.get("vtotaldiscountedstoragecost", {}).items():
        expected[(r, y)] = expected.get((r, y), 0.0) + val
    for (r, y), val in solution.get("vtotaldiscountedtransmissioncostbyregion", {}).items():
        expected[(r, y)] = expected.get((r, y), 0.0) + val

    violations: list[dict[str, Any]] = []
    max_residual = 0.0
    totals = solution.get("vtotaldiscountedcost", {})
    for key in sorted(set(totals) | set(expected)):
        residual = totals.get(key, 0.0) - expected.get(key, 0.0)
        max_residual = max(max_residual, abs(residual))
        if abs(residual) > tol:
            violations.append(
                {
                    "r": key[0],
                    "y": int(key[1]),
                    "total": totals.get(key, 0.0),
                    "subtotals": expected.get(key, 0.0),
                    "residual": residual,
                }
            )

    return {
        "checked": len(totals),
        "max_abs_residual": max_residual,
        "violation_count": len(violations),
        "violations": violations,
        "holds": len(violations) == 0,
    }


def check_storage_net_zero(
    solution: dict[str, dict[tuple, float]],
    storage_flags: dict[str, Any],
    tol: float,
) -> dict[str, Any]:
    """Year-end level equals year-start level for every storage flagged net-zero-year."""
    starts = solution.get("vstoragelevelyearstart", {})
    violations = []
    for (r, s, y), end in solution.get("vstoragelevelyearend", {}).items():
        flags = storage_flags.get(s)
        if flags is None or not flags.netzeroyear:
            continue
        gap = end - starts.get((r, s, y), 0.0)
        if abs(gap) > tol:
            violations.append({"r": r, "s": s, "y": int(y), "gap": gap})
    return {"violation_count": len(violations), "violations": violations}
