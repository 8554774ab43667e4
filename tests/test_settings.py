from __future__ import annotations

import pytest

from enplan.core.errors import DataError
from enplan.core.settings import (
    DEFAULT_VARSTOSAVE,
    CalculationOptions,
    load_settings,
    parse_calcyears,
    resolve_phase_plan,
)
from enplan.core.solver import DEFAULT_SOLVER_NAME


class TestParseCalcyears:
    @pytest.mark.parametrize(
        "value, expected",
        [
            (None, []),
            ("", []),
            ([], []),
            ("2020|2021,2022", [[2020, 2021], [2022]]),
            (" 2020 | 2021 , 2022 ", [[2020, 2021], [2022]]),
            ([2020, 2021], [[2020, 2021]]),
            ([[2020, 2021], [2022]], [[2020, 2021], [2022]]),
            (["2020", "2021"], [[2020, 2021]]),
        ],
    )
    def test_forms(self, value, expected):
        assert parse_calcyears(value) == expected

    def test_rejects_non_years(self):
        with pytest.raises(DataError):
            parse_calcyears("2020|soon")


class TestPhasePlan:
    def test_empty_means_whole_horizon(self):
        assert resolve_phase_plan([], [2022, 2020, 2021]) == [[2020, 2021, 2022]]

    def test_unknown_years_are_dropped(self):
        plan = resolve_phase_plan([[2019, 2020], [2021], [2035]], [2020, 2021, 2022])
        assert plan == [[2020], [2021]]

    def test_overlapping_blocks(self):
        with pytest.raises(DataError):
            resolve_phase_plan([[2020, 2021], [2021, 2022]], [2020, 2021, 2022])

    def test_out_of_order_blocks(self):
        with pytest.raises(DataError):
            resolve_phase_plan([[2022], [2020]], [2020, 2021, 2022])

    def test_no_known_year(self):
        with pytest.raises(DataError):
            resolve_phase_plan([[1999]], [2020])


class TestCalculationOptions:
    def test_defaults(self):
        options = CalculationOptions()
        assert options.calcyears == []
        assert options.varstosave == DEFAULT_VARSTOSAVE
        assert options.restrictvars
        assert not options.reportzeros
        assert options.solver.name == DEFAULT_SOLVER_NAME

    def test_invalid_topology(self):
        with pytest.raises(DataError):
            CalculationOptions(transmission_topology="mesh")

    def test_invalid_workers(self):
        with pytest.raises(DataError):
            CalculationOptions(workers=0)

    def test_load_settings(self, tmp_path):
        path = tmp_path / "settings.yaml"
        path.write_text(
            "calculation:\n"
            "  calcyears: '2020|2021,2022'\n"
            "  varstosave: [vnewcapacity, vdemand]\n"
            "  restrictvars: false\n"
            "  reportzeros: true\n"
            "  workers: 2\n"
            "solver:\n"
            "  name: cbc\n"
            "  time_limit: 60\n"
            "  options:\n"
            "    ratio: 0.01\n",
            encoding="utf-8",
        )
        options = load_settings(path)
        assert options.calcyears == [[2020, 2021], [2022]]
        assert options.varstosave == ["vnewcapacity", "vdemand"]
        assert not options.restrictvars
        assert options.reportzeros
        assert options.workers == 2
        assert options.solver.name == "cbc"
        assert options.solver.time_limit == pytest.approx(60.0)
        assert options.solver.options == {"ratio": 0.01}

    def test_missing_settings_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_settings(tmp_path / "nope.yaml")
