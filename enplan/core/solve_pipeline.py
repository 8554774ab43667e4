from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from datetime import datetime
import argparse
import sys
from typing import Callable, Optional, Union

from enplan.io_utils import get_logger

from .data_loading import load_scenario, restrict_years
from .errors import (
    DataError,
    InfeasibleError,
    SolveStatus,
    SolverUnavailableError,
    TimeLimitError,
    UnboundedError,
)
from .index_builder import build_indices
from .model import build_model, model_statistics, write_model_file
from .phases import PhaseOrchestrator, PhaseResult
from .report import (
    append_run_log,
    collect_cost_summary,
    collect_top_variable_values,
    export_results_csv,
    write_json_report,
)
from .results import Solution, check_varstosave, solution_frames, write_results
from .settings import CalculationOptions, apply_log_settings, load_settings, parse_calcyears, resolve_phase_plan
from .solver import DEFAULT_SOLVER_NAME, DEFAULT_TOL, create_solver
from .store import ScenarioStore
from .validate import check_cost_accounting, check_storage_net_zero


logger = get_logger(__name__)

# Outcomes reported through the status enum instead of propagating.
REPORTED_ERRORS = (DataError, SolverUnavailableError, InfeasibleError, UnboundedError, TimeLimitError)


@dataclass
class SolveRun:
    status: SolveStatus
    tables: list[str]
    solution: Solution
    phases: list[PhaseResult] = field(default_factory=list)
    solver: str = ""
    plan: list[list[int]] = field(default_factory=list)
    store_path: str = ""
    storage_flags: dict = field(default_factory=dict)


def calculate(
    db_path: Union[str, Path],
    options: Optional[CalculationOptions] = None,
    *,
    on_phase_solved: Optional[Callable] = None,
) -> SolveRun:
    """
    Load, build, solve every phase and commit the saved families.

    The solver is resolved before the scenario is read. Result tables are
    replaced only after the last phase solved; any error leaves them as they were.
    """
    options = options or CalculationOptions()
    handle = create_solver(
        options.solver.name,
        options=options.solver.options,
        time_limit=options.solver.time_limit,
        tee=options.solver.tee,
    )
    varstosave = check_varstosave(options.varstosave)

    store = ScenarioStore(db_path)
    loaded = load_scenario(store)
    plan = resolve_phase_plan(options.calcyears, loaded["sets"]["YEAR"])
    logger.info("Phase plan: %s", [f"{b[0]}-{b[-1]}" for b in plan])

    orchestrator = PhaseOrchestrator(loaded, plan, handle, options, on_phase_solved=on_phase_solved)
    solution = orchestrator.run()

    tables = write_results(store, solution, varstosave, reportzeros=options.reportzeros)
    status = SolveStatus.TIME_LIMIT if any(p.time_limited for p in orchestrator.results) else SolveStatus.OPTIMAL
    return SolveRun(
        status=status,
        tables=tables,
        solution=solution,
        phases=orchestrator.results,
        solver=handle.name,
        plan=plan,
        store_path=str(store.path),
        storage_flags=loaded["storage_flags"],
    )


def solve(db_path: Union[str, Path], options: Optional[CalculationOptions] = None) -> tuple[SolveStatus, list[str]]:
    """
    Solve a scenario and return (status, written result tables).

    Data, solver-availability and solver-outcome errors are reported through
    the status; store and internal errors propagate.
    """
    try:
        run = calculate(db_path, options)
    except REPORTED_ERRORS as exc:
        logger.error("%s", exc)
        return exc.status, []
    return run.status, run.tables


def write_model(
    db_path: Union[str, Path],
    options: Optional[CalculationOptions],
    output_path: Union[str, Path],
) -> Path:
    """
    Build the model of the first year block and write it as .lp or .mps.

    Result tables are not touched.
    """
    options = options or CalculationOptions()
    store = ScenarioStore(db_path)
    loaded = load_scenario(store)
    plan = resolve_phase_plan(options.calcyears, loaded["sets"]["YEAR"])
    if len(plan) > 1:
        logger.warning("Writing the first of %d year blocks; later blocks depend on solved values", len(plan))

    years = plan[0]
    scenario = restrict_years(loaded, years)
    ix = build_indices(
        scenario,
        restrict=options.restrictvars,
        topology=options.transmission_topology,
        workers=options.workers,
    )
    model = build_model(
        scenario,
        ix,
        first_year=plan[0][0],
        last_year=plan[-1][-1],
        default_discount_rate=options.default_discount_rate,
        continuous_transmission=options.continuoustransmission,
    )
    out = Path(output_path)
    out.parent.mkdir(parents=True, exist_ok=True)
    fmt = write_model_file(model, out)
    stats = model_statistics(model)
    logger.info(
        "Wrote %s model to %s (%d variables, %d constraints)", fmt, out, stats["variables"], stats["constraints"]
    )
    return out


def build_report(run: SolveRun, tol: float, top_n: int) -> dict:
    accounting = check_cost_accounting(run.solution, tol)
    return {
        "input": run.store_path,
        "solver": run.solver,
        "status": run.status.value,
        "plan": [[int(y) for y in block] for block in run.plan],
        "phases": [
            {
                "phase": p.index,
                "years": p.years,
                "termination": p.termination,
                "objective": p.objective,
                "build_seconds": p.build_seconds,
                "solve_seconds": p.solve_seconds,
                "statistics": p.statistics,
                "constraint_check": p.validation,
                "time_limited": p.time_limited,
            }
            for p in run.phases
        ],
        "cost_summary": collect_cost_summary(run.solution),
        "cost_accounting": accounting,
        "storage_net_zero": check_storage_net_zero(run.solution, run.storage_flags, tol),
        "top_variables": collect_top_variable_values(
            run.solution,
            ["vnewcapacity", "vtotalcapacityannual", "vnewstoragecapacity", "vtransmissionbuilt"],
            tol=tol,
            top_n=top_n,
        ),
        "tables": run.tables,
    }


def _timestamp_yyyymmdd_hhmmss() -> str:
    return datetime.now().strftime("%Y%m%d_%H%M%S")


def print_report(report: dict, tol: float) -> None:
    print("=== Solve Report ===")
    print(f"Input: {report['input']}")
    print(f"Solver: {report['solver']}")
    print(f"Status: {report['status']}")
    print(f"Year blocks: {len(report['plan'])}")

    print("\n=== Phases ===")
    for p in report["phases"]:
        check = p["constraint_check"]
        objective = p["objective"]
        print(
            f"Phase {p['phase']} ({p['years'][0]}-{p['years'][-1]}): termination={p['termination']} "
            f"objective={objective if objective is None else format(objective, '.8f')} "
            f"build={p['build_seconds']:.2f}s solve={p['solve_seconds']:.2f}s"
        )
        print(
            f"  variables={p['statistics'].get('variables', 0)} constraints={p['statistics'].get('constraints', 0)} "
            f"violated (> {tol})={check.get('violated_constraints', 0)} max violation={check.get('max_violation', 0.0):.8e}"
        )
        for family, count in check.get("violations_by_family", {}).items():
            print(f"    {family}: {count}")

    costs = report["cost_summary"]
    print("\n=== Cost Summary ===")
    print(f"Total discounted cost: {costs['total_discounted_cost']:.8f}")
    for year, value in costs["by_year"].items():
        print(f"  {year}: {value:.8f}")
    for key in (
        "discounted_capital_investment",
        "discounted_operating_cost",
        "discounted_salvage_value",
        "discounted_emissions_penalty",
        "discounted_storage_cost",
        "discounted_transmission_cost",
    ):
        print(f"{key}: {costs[key]:.8f}")

    acc = report["cost_accounting"]
    print("\n=== Cost Accounting Check ===")
    print(f"max |total - subtotals|: {acc['max_abs_residual']:.8e}")
    print(f"violations (> {tol}): {acc['violation_count']}")

    print("\n=== Top Nonzero Variables ===")
    for name, entries in report["top_variables"].items():
        print(f"{name}: {len(entries)} shown")
        for row in entries:
            print(f"  {name}[{row['index']}] = {row['value']:.8f}")

    print(f"\nResult tables written: {len(report['tables'])}")


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Solve a scenario database and write result tables.")
    parser.add_argument("db", help="Path to the scenario database")
    parser.add_argument("--config", default="", help="Optional YAML settings file (calculation/solver sections)")
    parser.add_argument("--solver", default=None, help=f"Pyomo solver name or 'auto' (default: {DEFAULT_SOLVER_NAME})")
    parser.add_argument("--tol", type=float, default=None, help=f"Validation tolerance (default: {DEFAULT_TOL})")
    parser.add_argument("--calcyears", default=None, help="Year blocks, e.g. '2020|2021,2022|2023'")
    parser.add_argument("--time-limit", type=float, default=None, help="Solver time limit in seconds")
    parser.add_argument("--top-n", type=int, default=10, help="Top nonzero entries to print per key variable")
    parser.add_argument("--tee", action="store_true", help="Show solver log")
    parser.add_argument("--output-json", default="", help="Optional path to write JSON report")
    parser.add_argument("--export-dir", default="", help="Optional folder for CSV copies of the saved families")
    parser.add_argument("--run-log", default="", help="Optional CSV file that collects one row per run")
    args = parser.parse_args(argv)

    options = load_settings(args.config) if args.config else CalculationOptions()
    apply_log_settings(options)
    if args.solver is not None:
        options.solver.name = args.solver
    if args.tol is not None:
        options.tolerance = args.tol
    if args.calcyears is not None:
        options.calcyears = parse_calcyears(args.calcyears)
    if args.time_limit is not None:
        options.solver.time_limit = args.time_limit
    if args.tee:
        options.solver.tee = True

    timestamp = _timestamp_yyyymmdd_hhmmss()
    run = calculate(args.db, options)
    report = build_report(run, options.tolerance, max(1, args.top_n))

    if args.export_dir:
        frames = solution_frames(run.solution, options.varstosave, reportzeros=options.reportzeros)
        export_dir = Path(args.export_dir).resolve() / f"results_{timestamp}"
        report["csv_exports"] = export_results_csv(frames, export_dir)

    print_report(report, options.tolerance)
    if args.output_json:
        out_path = Path(args.output_json).resolve()
        write_json_report(report, out_path)
        print(f"\nJSON report written: {out_path}")

    if args.run_log:
        worst = max((p.validation.get("max_violation", 0.0) for p in run.phases), default=0.0)
        log_path = append_run_log(
            log_path=Path(args.run_log).resolve(),
            scenario=Path(args.db).stem,
            timestamp=timestamp,
            solver=run.solver,
            status=run.status.value,
            objective=report["cost_summary"]["total_discounted_cost"],
            phases=len(run.phases),
            solve_seconds=sum(p.solve_seconds for p in run.phases),
            violated_constraints=sum(p.validation.get("violated_constraints", 0) for p in run.phases),
            max_violation=worst,
        )
        print(f"Run log updated: {log_path}")

    if not report["cost_accounting"]["holds"]:
        return 5
    return 0


if __name__ == "__main__":
    sys.exit(main())
