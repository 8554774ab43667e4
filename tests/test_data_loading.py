from __future__ import annotations

import sqlite3

import pytest

from enplan.core.data_loading import apply_overlay, load_scenario, restrict_years
from enplan.core.errors import DataError
from enplan.core.param_table import INF, entity_rate
from enplan.core.store import ScenarioStore, set_parameter_default

from conftest import single_region


class TestLoadScenario:
    def test_sets_and_rows(self, simple_db):
        loaded = load_scenario(ScenarioStore(simple_db))
        sets = loaded["sets"]
        assert sets["REGION"] == ["R1"]
        assert sets["YEAR"] == [2020, 2021]
        assert sets["TIMESLICE"] == ["D", "N"]
        assert sets["NODE"] == []
        assert loaded["params"]["SpecifiedAnnualDemand"][("R1", "ELC", 2021)] == pytest.approx(10.0)
        assert loaded["params"]["OutputActivityRatio"][("R1", "GEN", "ELC", "1", 2020)] == pytest.approx(1.0)

    def test_declared_and_builtin_defaults(self, simple_db):
        set_parameter_default(simple_db, "CapacityFactor", 0.5)
        params = load_scenario(ScenarioStore(simple_db))["params"]
        assert params["CapacityFactor"].get(("R1", "GEN", "D", 2020)) == pytest.approx(0.5)
        assert params["CapacityFactor"].default_declared
        # No DefaultParams row: built-in value.
        assert params["TotalAnnualMaxCapacity"].get(("R1", "GEN", 2020)) == INF
        # No default at all.
        assert params["InterestRateTechnology"].get(("R1", "GEN", 2020)) is None

    def test_year_filter(self, simple_db):
        loaded = load_scenario(ScenarioStore(simple_db), years=[2021])
        assert loaded["sets"]["YEAR"] == [2021]
        assert not loaded["params"]["CapitalCost"].has_row(("R1", "GEN", 2020))
        assert loaded["dropped_rows"]["CapitalCost"] == 1

    def test_unknown_members_are_skipped(self, scenario_builder):
        builder = single_region(scenario_builder())
        builder.param("OutputActivityRatio", ("R1", "NOPE", "ELC", "1", 2020, 1.0))
        builder.commit()
        loaded = load_scenario(ScenarioStore(builder.path))
        assert loaded["dropped_rows"]["OutputActivityRatio"] == 1
        assert len(loaded["params"]["OutputActivityRatio"]) == 1

    def test_duplicate_rows(self, scenario_builder):
        builder = single_region(scenario_builder())
        builder.param("CapitalCost", ("R1", "GEN", 2020, 50.0))
        builder.commit()
        with pytest.raises(DataError, match="duplicate"):
            load_scenario(ScenarioStore(builder.path))

    def test_missing_required_table(self, tmp_path):
        path = tmp_path / "partial.sqlite"
        conn = sqlite3.connect(str(path))
        conn.execute("CREATE TABLE REGION (val TEXT PRIMARY KEY, desc TEXT)")
        conn.commit()
        conn.close()
        with pytest.raises(DataError, match="missing required tables"):
            load_scenario(ScenarioStore(path))

    def test_storage_flags(self, scenario_builder):
        builder = single_region(scenario_builder())
        builder.storage("BAT", netzeroyear=0, netzerotg1=1)
        builder.commit()
        flags = load_scenario(ScenarioStore(builder.path))["storage_flags"]["BAT"]
        assert not flags.netzeroyear
        assert flags.netzerotg1
        assert not flags.netzerotg2


class TestTimesliceOrder:
    def test_ltsgroup_sorts_timeslices(self, scenario_builder):
        builder = single_region(scenario_builder(), timeslices=(("WN", 0.25), ("SD", 0.25), ("WD", 0.25), ("SN", 0.25)))
        builder.tsgroup("TSGROUP1", "SUMMER", 1).tsgroup("TSGROUP1", "WINTER", 2)
        builder.tsgroup("TSGROUP2", "DAY", 1).tsgroup("TSGROUP2", "NIGHT", 2)
        builder.timeslice_group("SD", 1, "SUMMER", "DAY")
        builder.timeslice_group("SN", 1, "SUMMER", "NIGHT")
        builder.timeslice_group("WD", 1, "WINTER", "DAY")
        builder.timeslice_group("WN", 1, "WINTER", "NIGHT")
        builder.commit()

        loaded = load_scenario(ScenarioStore(builder.path))
        assert loaded["sets"]["TIMESLICE"] == ["SD", "SN", "WD", "WN"]
        assert loaded["tg1_of"]["WN"] == "WINTER"
        assert loaded["tg2_of"]["SN"] == "NIGHT"


class TestOverlay:
    def test_overlay_does_not_touch_the_loaded_scenario(self, simple_db):
        loaded = load_scenario(ScenarioStore(simple_db))
        phase = apply_overlay(restrict_years(loaded, [2021]), {"ResidualCapacity": {("R1", "GEN", 2021): 7.0}})

        assert phase["sets"]["YEAR"] == [2021]
        assert phase["params"]["ResidualCapacity"][("R1", "GEN", 2021)] == pytest.approx(7.0)
        assert loaded["sets"]["YEAR"] == [2020, 2021]
        assert loaded["params"]["ResidualCapacity"][("R1", "GEN", 2021)] == pytest.approx(0.0)

    def test_unknown_overlay_table(self, simple_db):
        loaded = load_scenario(ScenarioStore(simple_db))
        with pytest.raises(DataError):
            apply_overlay(loaded, {"NoSuchTable": {("R1",): 1.0}})


class TestEntityRate:
    def test_fallback_chain(self, scenario_builder):
        builder = single_region(scenario_builder())
        builder.param("InterestRateTechnology", ("R1", "GEN", 2020, 0.08))
        builder.commit()
        params = load_scenario(ScenarioStore(builder.path))["params"]

        assert entity_rate(params, "InterestRateTechnology", ("R1", "GEN", 2020), "R1", 0.03) == pytest.approx(0.08)
        assert entity_rate(params, "InterestRateStorage", ("R1", "BAT", 2020), "R1", 0.03) == pytest.approx(0.05)
        assert entity_rate(params, None, None, "R2", 0.03) == pytest.approx(0.03)
        assert entity_rate(params, None, None, "R1", 0.03, explicit=0.1) == pytest.approx(0.1)
