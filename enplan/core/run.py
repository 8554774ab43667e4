from __future__ import annotations

import argparse
from pathlib import Path
import sys
from typing import Optional

from enplan.io_utils import configure_logging, get_logger, set_debug_mode, set_quiet
from enplan.core.errors import (
    DataError,
    EnplanError,
    InfeasibleError,
    SolverUnavailableError,
    TimeLimitError,
    UnboundedError,
)
from enplan.core.settings import CalculationOptions, apply_log_settings, load_settings, parse_calcyears
from enplan.core.solve_pipeline import main as solve_main
from enplan.core.solve_pipeline import write_model
from enplan.core.store import compact_store, create_store, drop_result_tables, set_parameter_default


logger = get_logger(__name__)

EXIT_OK = 0
EXIT_SOLVER_UNAVAILABLE = 2
EXIT_SOLVE_FAILED = 3
EXIT_DATA_ERROR = 4
EXIT_OTHER = 5


def exit_code_for(exc: EnplanError) -> int:
    if isinstance(exc, SolverUnavailableError):
        return EXIT_SOLVER_UNAVAILABLE
    if isinstance(exc, (InfeasibleError, UnboundedError, TimeLimitError)):
        return EXIT_SOLVE_FAILED
    if isinstance(exc, DataError):
        return EXIT_DATA_ERROR
    return EXIT_OTHER


def _write_model_cmd(args: argparse.Namespace) -> int:
    options = load_settings(args.config) if args.config else CalculationOptions()
    apply_log_settings(options)
    if args.calcyears is not None:
        options.calcyears = parse_calcyears(args.calcyears)
    out = write_model(args.db, options, args.output)
    print(f"Model written: {Path(out).resolve()}")
    return EXIT_OK


def _create_db_cmd(args: argparse.Namespace) -> int:
    create_store(args.db, defaultvals=not args.no_defaults)
    print(f"Scenario database created: {Path(args.db).resolve()}")
    return EXIT_OK


def _set_default_cmd(args: argparse.Namespace) -> int:
    set_parameter_default(args.db, args.table, args.value)
    print(f"Default for {args.table} set to {args.value}")
    return EXIT_OK


def _drop_results_cmd(args: argparse.Namespace) -> int:
    names = drop_result_tables(args.db)
    print(f"Dropped {len(names)} result tables")
    return EXIT_OK


def _compact_cmd(args: argparse.Namespace) -> int:
    compact_store(args.db)
    print(f"Compacted {Path(args.db).resolve()}")
    return EXIT_OK


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="enplan",
        description="Energy system planning optimizer: solve scenarios and maintain scenario databases.",
    )
    parser.add_argument("--debug", action="store_true", help="Verbose logging")
    parser.add_argument("--quiet", action="store_true", help="Only log warnings and errors")
    sub = parser.add_subparsers(dest="command", required=True)

    p_solve = sub.add_parser("solve", help="Solve a scenario and write result tables", add_help=False)
    p_solve.add_argument("rest", nargs=argparse.REMAINDER)

    p_write = sub.add_parser("write-model", help="Write the model to an .lp or .mps file without solving")
    p_write.add_argument("db", help="Path to the scenario database")
    p_write.add_argument("output", help="Output file (.lp or .mps)")
    p_write.add_argument("--config", default="", help="Optional YAML settings file")
    p_write.add_argument("--calcyears", default=None, help="Year blocks, e.g. '2020|2021,2022'")
    p_write.set_defaults(func=_write_model_cmd)

    p_create = sub.add_parser("create-db", help="Create an empty scenario database")
    p_create.add_argument("db", help="Path of the new database")
    p_create.add_argument("--no-defaults", action="store_true", help="Leave DefaultParams empty")
    p_create.set_defaults(func=_create_db_cmd)

    p_default = sub.add_parser("set-default", help="Set the default value of a parameter table")
    p_default.add_argument("db", help="Path to the scenario database")
    p_default.add_argument("table", help="Parameter table name, e.g. CapacityFactor")
    p_default.add_argument("value", type=float, help="Default value")
    p_default.set_defaults(func=_set_default_cmd)

    p_drop = sub.add_parser("drop-results", help="Drop every result table")
    p_drop.add_argument("db", help="Path to the scenario database")
    p_drop.set_defaults(func=_drop_results_cmd)

    p_compact = sub.add_parser("compact", help="Reclaim unused space in the database file")
    p_compact.add_argument("db", help="Path to the scenario database")
    p_compact.set_defaults(func=_compact_cmd)

    args = parser.parse_args(argv)

    configure_logging()
    set_debug_mode(args.debug)
    set_quiet(args.quiet)

    try:
        if args.command == "solve":
            return solve_main(args.rest)
        return args.func(args)
    except EnplanError as exc:
        logger.error("%s", exc)
        return exit_code_for(exc)
    except FileNotFoundError as exc:
        logger.error("%s", exc)
        return EXIT_DATA_ERROR


if __name__ == "__main__":
    sys.exit(main())
