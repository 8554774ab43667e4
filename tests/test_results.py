from __future__ import annotations

import pytest

from enplan.core.data_loading import StorageFlags
from enplan.core.errors import DataError
from enplan.core.report import append_run_log, collect_cost_summary
from enplan.core.results import check_varstosave, merge_solutions, read_result, solution_frames, write_results
from enplan.core.store import create_store
from enplan.core.validate import check_cost_accounting, check_storage_net_zero


SOLUTION = {
    "vnewcapacity": {("R1", "GEN", 2020): 10.0, ("R1", "GEN", 2021): 0.0, ("R1", "PV", 2020): 1e-12},
    "vtotaldiscountedcost": {("R1", 2020): 1000.0, ("R1", 2021): 952.0},
    "vtotaldiscountedcostbytechnology": {("R1", "GEN", 2020): 990.0, ("R1", "GEN", 2021): 952.0},
    "vtotaldiscountedstoragecost": {("R1", "BAT", 2020): 10.0, ("R1", "BAT", 2021): 0.0},
    "vtotaldiscountedtransmissioncostbyregion": {("R1", 2020): 0.0, ("R1", 2021): 0.0},
}


class TestVarsToSave:
    def test_normalizes_and_dedups(self):
        assert check_varstosave(["vNewCapacity", "vdemand", "vnewcapacity", " "]) == ["vnewcapacity", "vdemand"]

    def test_unknown_family(self):
        with pytest.raises(DataError):
            check_varstosave(["vnewcapacity", "vmagic"])


class TestSolutionFrames:
    def test_exact_zeros_are_left_out(self):
        frame = solution_frames(SOLUTION, ["vnewcapacity"], solvedtm="stamp")["vnewcapacity"]
        assert list(frame.columns) == ["r", "t", "y", "val", "solvedtm"]
        assert len(frame) == 2
        # Tiny values are written as solved.
        assert 1e-12 in frame["val"].tolist()
        assert set(frame["solvedtm"]) == {"stamp"}

    def test_reportzeros(self):
        frame = solution_frames(SOLUTION, ["vnewcapacity"], reportzeros=True)["vnewcapacity"]
        assert len(frame) == 3

    def test_empty_family_has_columns(self):
        frame = solution_frames(SOLUTION, ["vdemand"])["vdemand"]
        assert frame.empty
        assert list(frame.columns) == ["r", "l", "f", "y", "val", "solvedtm"]

    def test_write_and_read(self, tmp_path):
        store = create_store(tmp_path / "results.sqlite")
        tables = write_results(store, SOLUTION, ["vtotaldiscountedcost", "vnewcapacity"], solvedtm="stamp")
        assert tables == ["vnewcapacity", "vtotaldiscountedcost"]
        df = read_result(store, "vtotaldiscountedcost")
        assert [int(y) for y in df["y"]] == [2020, 2021]
        assert df["val"].tolist() == pytest.approx([1000.0, 952.0])


class TestMergeSolutions:
    def test_year_families_concatenate_and_period_totals_add(self):
        first = {"vnewcapacity": {("R1", "GEN", 2020): 5.0}, "vmodelperiodemissions": {("R1", "CO2"): 2.0}}
        second = {"vnewcapacity": {("R1", "GEN", 2021): 3.0}, "vmodelperiodemissions": {("R1", "CO2"): 1.5}}
        merged = merge_solutions([first, second])
        assert merged["vnewcapacity"] == {("R1", "GEN", 2020): 5.0, ("R1", "GEN", 2021): 3.0}
        assert merged["vmodelperiodemissions"][("R1", "CO2")] == pytest.approx(3.5)


class TestChecks:
    def test_cost_accounting_holds(self):
        report = check_cost_accounting(SOLUTION, 1e-6)
        assert report["holds"]
        assert report["checked"] == 2

    def test_cost_accounting_residual(self):
        broken = dict(SOLUTION, vtotaldiscountedcost={("R1", 2020): 1001.0, ("R1", 2021): 952.0})
        report = check_cost_accounting(broken, 1e-6)
        assert not report["holds"]
        assert report["violation_count"] == 1
        assert report["max_abs_residual"] == pytest.approx(1.0)
        assert report["violations"][0]["y"] == 2020

    def test_storage_net_zero(self):
        solution = {
            "vstoragelevelyearstart": {("R1", "BAT", 2020): 5.0, ("R1", "BAT2", 2020): 5.0},
            "vstoragelevelyearend": {("R1", "BAT", 2020): 5.0, ("R1", "BAT2", 2020): 0.0},
        }
        flags = {"BAT": StorageFlags(), "BAT2": StorageFlags(netzeroyear=True)}
        assert check_storage_net_zero(solution, flags, 1e-6)["violation_count"] == 1
        flags["BAT2"] = StorageFlags(netzeroyear=False)
        assert check_storage_net_zero(solution, flags, 1e-6)["violation_count"] == 0


class TestReport:
    def test_cost_summary(self):
        summary = collect_cost_summary(SOLUTION)
        assert summary["total_discounted_cost"] == pytest.approx(1952.0)
        assert summary["by_year"] == {"2020": 1000.0, "2021": 952.0}
        assert summary["discounted_storage_cost"] == pytest.approx(10.0)

    def test_run_log_header_written_once(self, tmp_path):
        log_path = tmp_path / "logs" / "runs.csv"
        for _ in range(2):
            append_run_log(
                log_path=log_path,
                scenario="simple",
                timestamp="20240101_120000",
                solver="appsi_highs",
                status="Optimal",
                objective=1952.0,
                phases=1,
                solve_seconds=0.1,
                violated_constraints=0,
                max_violation=0.0,
            )
        lines = log_path.read_text(encoding="utf-8").splitlines()
        assert len(lines) == 3
        assert lines[0].startswith("timestamp,scenario")
        assert lines[1].startswith("01/01/2024 12:00:00,simple")
