from __future__ import annotations

import logging

from enplan.core.data_loading import load_scenario
from enplan.core.errors import SolveStatus
from enplan.core.run import EXIT_DATA_ERROR, EXIT_OK, EXIT_OTHER, EXIT_SOLVER_UNAVAILABLE, main
from enplan.core.settings import CalculationOptions, SolverSettings
from enplan.core.solve_pipeline import solve
from enplan.core.store import ScenarioStore
from enplan.io_utils import get_logger, set_debug_mode
from enplan.tools import check_params
from enplan.tools.validate_inputs import collect_input_issues

from conftest import single_region


class TestSolverChecks:
    def test_unknown_solver_is_reported_before_loading(self, tmp_path):
        options = CalculationOptions(solver=SolverSettings(name="nonexistent_solver"))
        status, tables = solve(tmp_path / "never_created.sqlite", options)
        assert status == SolveStatus.SOLVER_UNAVAILABLE
        assert tables == []

    def test_data_error_status(self, tmp_path, solver_name):
        options = CalculationOptions(solver=SolverSettings(name=solver_name))
        status, tables = solve(tmp_path / "missing.sqlite", options)
        assert status == SolveStatus.DATA_ERROR
        assert tables == []


class TestCommandLine:
    def test_create_db_and_set_default(self, tmp_path):
        db = tmp_path / "cli.sqlite"
        assert main(["create-db", str(db)]) == EXIT_OK
        assert main(["set-default", str(db), "CapacityFactor", "0.8"]) == EXIT_OK
        defaults = ScenarioStore(db).read_table("DefaultParams")
        assert defaults.loc[defaults["tablename"] == "CapacityFactor", "val"].iloc[0] == 0.8

    def test_create_db_twice(self, tmp_path):
        db = tmp_path / "twice.sqlite"
        assert main(["create-db", str(db)]) == EXIT_OK
        assert main(["create-db", str(db)]) == EXIT_OTHER

    def test_unknown_parameter_table(self, tmp_path):
        db = tmp_path / "cli.sqlite"
        main(["create-db", str(db)])
        assert main(["set-default", str(db), "Nope", "1"]) == EXIT_DATA_ERROR

    def test_solve_with_unavailable_solver(self, simple_db):
        assert main(["--quiet", "solve", str(simple_db), "--solver", "nonexistent_solver"]) == EXIT_SOLVER_UNAVAILABLE
        assert ScenarioStore(simple_db).result_tables() == []

    def test_write_model(self, simple_db, tmp_path):
        out = tmp_path / "model.mps"
        assert main(["write-model", str(simple_db), str(out)]) == EXIT_OK
        assert out.exists()

    def test_drop_results_and_compact(self, simple_db):
        assert main(["drop-results", str(simple_db)]) == EXIT_OK
        assert main(["compact", str(simple_db)]) == EXIT_OK

    def test_missing_config_file(self, simple_db, tmp_path):
        assert main(["write-model", str(simple_db), str(tmp_path / "m.lp"), "--config", str(tmp_path / "no.yaml")]) == EXIT_DATA_ERROR

    def test_quiet_setting_from_config(self, simple_db, tmp_path):
        cfg = tmp_path / "quiet.yaml"
        cfg.write_text("calculation:\n  quiet: true\n")
        try:
            assert main(["write-model", str(simple_db), str(tmp_path / "m.lp"), "--config", str(cfg)]) == EXIT_OK
            assert get_logger().level == logging.WARNING
        finally:
            set_debug_mode(False)


class TestInputIssues:
    def test_clean_scenario(self, simple_db):
        issues = collect_input_issues(load_scenario(ScenarioStore(simple_db)))
        assert all(not messages for messages in issues.values())

    def test_flags_year_split_and_inactive_technologies(self, scenario_builder):
        builder = single_region(scenario_builder(), timeslices=(("D", 0.5), ("N", 0.4)))
        builder.set("TECHNOLOGY", "IDLE")
        builder.param("CapacityFactor", ("R1", "GEN", "D", 2020, 1.5))
        builder.commit()
        issues = collect_input_issues(load_scenario(ScenarioStore(builder.path)))
        assert len(issues["year_split"]) == 1
        assert len(issues["demand_profile"]) == 1
        assert issues["inactive_techs"] == ["IDLE has no activity ratio and will never operate"]
        assert len(issues["capacity_factor"]) == 1


class TestCheckParams:
    def test_reports_present_and_missing_params(self, simple_db, capsys):
        code = check_params.main([str(simple_db), "--params", "CapitalCost", "NoSuchParam", "--fail-on-missing"])
        out = capsys.readouterr().out
        assert code == 2
        assert "[OK] CapitalCost" in out
        assert "[MISSING] NoSuchParam" in out
        assert "Summary: 1 OK, 1 failed" in out

    def test_first_block_only(self, simple_db):
        model = check_params.build_first_block(simple_db, "2020,2021")
        assert list(model.Y) == [2020]
