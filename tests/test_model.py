from __future__ import annotations

import pyomo.environ as pyo
from pyomo.repn import generate_standard_repn
import pytest

from enplan.core.data_loading import load_scenario
from enplan.core.errors import SolverUnavailableError
from enplan.core.index_builder import build_indices
from enplan.core.model import (
    VARIABLE_FAMILIES,
    build_model,
    model_statistics,
    requires_integer,
    salvage_factor,
)
from enplan.core.settings import CalculationOptions, DEFAULT_VARSTOSAVE
from enplan.core.solve_pipeline import write_model
from enplan.core.store import ScenarioStore

from conftest import single_region, storage_region


def _build(db, *, restrict=True, integer_support=True, **kwargs):
    loaded = load_scenario(ScenarioStore(db))
    ix = build_indices(loaded, restrict=restrict)
    years = loaded["sets"]["YEAR"]
    model = build_model(
        loaded, ix, first_year=years[0], last_year=years[-1], integer_support=integer_support, **kwargs
    )
    return loaded, ix, model


class TestSalvageFactor:
    def test_retires_inside_horizon(self):
        assert salvage_factor(0.05, 1, 1, 2020, 2020) == 0.0
        assert salvage_factor(0.05, 1, 5, 2020, 2024) == 0.0

    def test_sinking_fund(self):
        expected = 1.0 - (1.05 - 1.0) / (1.05**10 - 1.0)
        assert salvage_factor(0.05, 1, 10, 2020, 2020) == pytest.approx(expected)

    def test_straight_line(self):
        assert salvage_factor(0.05, 2, 10, 2020, 2021) == pytest.approx(0.8)
        # Zero rate falls back to straight line even for sinking fund.
        assert salvage_factor(0.0, 1, 4, 2020, 2020) == pytest.approx(0.75)


class TestBuildModel:
    def test_saved_families_are_known(self):
        assert set(DEFAULT_VARSTOSAVE) <= set(VARIABLE_FAMILIES)

    def test_components(self, simple_db):
        _, _, model = _build(simple_db)
        assert list(model.Y) == [2020, 2021]
        assert list(model.L) == ["D", "N"]
        assert model.obj.sense == pyo.minimize
        assert len(model.vrateofactivity) == 2 * 2
        assert ("R1", 2021) in model.tdc2_total_cost
        assert pyo.value(model.CapitalCost["R1", "GEN", 2020]) == pytest.approx(100.0)

    def test_dense_mode_fixes_invalid_tuples(self, scenario_builder):
        builder = single_region(scenario_builder())
        builder.set("TECHNOLOGY", "IDLE")
        builder.commit()
        _, _, restricted = _build(builder.path, restrict=True)
        _, _, dense = _build(builder.path, restrict=False)

        assert len(restricted.vrateofactivity) == 2
        assert len(dense.vrateofactivity) == 4
        assert dense.vrateofactivity["R1", "D", "IDLE", "1", 2020].fixed
        assert dense.vrateofactivity["R1", "D", "IDLE", "1", 2020].value == 0.0
        assert not dense.vrateofactivity["R1", "D", "GEN", "1", 2020].fixed
        assert model_statistics(dense)["constraints"] == model_statistics(restricted)["constraints"]

    def test_unit_sizes_need_integer_solver(self, scenario_builder):
        builder = single_region(scenario_builder())
        builder.param("CapacityOfOneTechnologyUnit", ("R1", "GEN", 2020, 2.5))
        builder.commit()

        loaded, ix, model = _build(builder.path)
        assert requires_integer(ix, loaded, continuous_transmission=False)
        assert model_statistics(model)["integer_variables"] == 1

        with pytest.raises(SolverUnavailableError):
            _build(builder.path, integer_support=False)

    def test_lp_solver_relaxes_line_builds(self, scenario_builder):
        builder = single_region(scenario_builder())
        builder.set("REGION", "R2")
        builder.node("N1", "R1").node("N2", "R2")
        builder.line("L12", "N1", "N2", "ELC", 20.0, capitalcost=10.0)
        builder.enable_transmission("R1", "ELC", 2020).enable_transmission("R2", "ELC", 2020)
        builder.commit()

        _, _, mip = _build(builder.path)
        _, _, lp = _build(builder.path, integer_support=False)
        assert not mip.vtransmissionbuilt["L12", 2020].is_continuous()
        assert lp.vtransmissionbuilt["L12", 2020].is_continuous()
        assert model_statistics(lp)["integer_variables"] == 0

    def test_storage_technologies_follow_storage_placement(self, scenario_builder):
        builder = storage_region(scenario_builder())
        builder.node("N1", "R1").node("N2", "R1")
        builder.line("L12", "N1", "N2", "ELC", 20.0, yconstruction=2020)
        builder.enable_transmission("R1", "ELC", 2020)
        builder.param("NodalDistributionStorageCapacity", ("N1", "BAT", 2020, 0.25), ("N2", "BAT", 2020, 0.75))
        builder.commit()
        _, _, model = _build(builder.path)

        def coefficient(con, var):
            repn = generate_standard_repn(con.body)
            return {id(v): c for v, c in zip(repn.linear_vars, repn.linear_coefs)}[id(var)]

        con = model.ebn1_nodal_production["N1", "D", "ELC", 2020]
        battery = model.vproductionbytechnology["R1", "D", "BATT", "ELC", 2020]
        generator = model.vproductionbytechnology["R1", "D", "GEN", "ELC", 2020]
        assert abs(coefficient(con, battery)) == pytest.approx(0.25)
        # Without placement rows capacity is split evenly over the nodes.
        assert abs(coefficient(con, generator)) == pytest.approx(0.5)

    def test_storage_limits_are_generated_only_when_given(self, scenario_builder):
        builder = storage_region(scenario_builder())
        builder.param("TotalAnnualMaxCapacityStorage", ("R1", "BAT", 2020, 8.0))
        builder.commit()
        _, _, model = _build(builder.path)
        assert ("R1", "BAT", 2020) in model.ns14_max_storage_capacity
        assert pyo.value(model.ns14_max_storage_capacity["R1", "BAT", 2020].upper) == pytest.approx(8.0)
        assert len(model.ns15_min_storage_capacity) == 0
        assert len(model.ns16_max_storage_investment) == 0


class TestWriteModel:
    def test_writes_lp_without_results(self, simple_db, tmp_path):
        out = write_model(simple_db, CalculationOptions(), tmp_path / "out" / "model.lp")
        assert out.exists()
        text = out.read_text()
        assert "vnewcapacity" in text
        assert ScenarioStore(simple_db).result_tables() == []

    def test_first_block_only(self, simple_db, tmp_path):
        options = CalculationOptions(calcyears="2020,2021")
        out = write_model(simple_db, options, tmp_path / "block.lp")
        text = out.read_text()
        assert "_2020)" in text
        assert "_2021)" not in text

    def test_same_file_for_any_worker_count(self, simple_db, tmp_path):
        serial = write_model(simple_db, CalculationOptions(workers=1), tmp_path / "serial.lp")
        threaded = write_model(simple_db, CalculationOptions(workers=4), tmp_path / "threaded.lp")
        assert serial.read_text() == threaded.read_text()
