from __future__ import annotations

import pandas as pd
import pytest

from enplan.core.errors import DataError, StoreIOError
from enplan.core.store import (
    ScenarioStore,
    compact_store,
    create_store,
    drop_result_tables,
    set_parameter_default,
)


def _result_frame(**cols) -> pd.DataFrame:
    data = {k: list(v) for k, v in cols.items()}
    data["solvedtm"] = ["2024-01-01T00:00:00.000"] * len(next(iter(cols.values())))
    return pd.DataFrame(data)


class TestCreateStore:
    def test_creates_schema_and_defaults(self, tmp_path):
        store = create_store(tmp_path / "new.sqlite")
        tables = set(store.list_tables())
        assert {"REGION", "YEAR", "STORAGE", "DefaultParams", "OutputActivityRatio", "TransmissionLine"} <= tables
        defaults = store.read_table("DefaultParams")
        lookup = dict(zip(defaults["tablename"], defaults["val"]))
        assert lookup["CapacityFactor"] == 1.0
        # Unbounded limits and tables without a built-in default get no row.
        assert "TotalAnnualMaxCapacity" not in lookup
        assert "DiscountRate" not in lookup

    def test_without_defaults(self, tmp_path):
        store = create_store(tmp_path / "bare.sqlite", defaultvals=False)
        assert store.read_table("DefaultParams").empty

    def test_refuses_existing_file(self, tmp_path):
        path = tmp_path / "twice.sqlite"
        create_store(path)
        with pytest.raises(StoreIOError):
            create_store(path)

    def test_missing_database(self, tmp_path):
        with pytest.raises(DataError):
            ScenarioStore(tmp_path / "absent.sqlite")


class TestMaintenance:
    def test_set_parameter_default_replaces_row(self, tmp_path):
        path = tmp_path / "defaults.sqlite"
        store = create_store(path)
        set_parameter_default(path, "CapacityFactor", 0.4)
        set_parameter_default(path, "CapacityFactor", 0.6)
        defaults = store.read_table("DefaultParams")
        rows = defaults[defaults["tablename"] == "CapacityFactor"]
        assert len(rows) == 1
        assert rows["val"].iloc[0] == pytest.approx(0.6)

    def test_set_parameter_default_unknown_table(self, tmp_path):
        path = tmp_path / "unknown.sqlite"
        create_store(path)
        with pytest.raises(DataError):
            set_parameter_default(path, "NotATable", 1.0)

    def test_drop_and_compact(self, tmp_path):
        path = tmp_path / "results.sqlite"
        store = create_store(path)
        store.replace_result_tables({"vdemand": _result_frame(r=["R1"], l=["D"], f=["ELC"], y=[2020], val=[1.0])})
        assert store.result_tables() == ["vdemand"]

        dropped = drop_result_tables(path)
        assert dropped == ["vdemand"]
        assert store.result_tables() == []
        compact_store(path)
        assert store.table_exists("VariableCost")


class TestResultTables:
    def test_replace_clears_previous_families(self, tmp_path):
        store = create_store(tmp_path / "replace.sqlite")
        store.replace_result_tables(
            {"vnewcapacity": _result_frame(r=["R1"], t=["GEN"], y=[2020], val=[5.0])}
        )
        store.replace_result_tables({"vdemand": _result_frame(r=["R1"], l=["D"], f=["ELC"], y=[2020], val=[2.5])})

        assert store.result_tables() == ["vdemand"]
        # Input tables whose names start with an upper-case V are not result tables.
        assert store.table_exists("Version")
        assert store.table_exists("VariableCost")

    def test_column_types(self, tmp_path):
        store = create_store(tmp_path / "types.sqlite")
        store.replace_result_tables({"vnewcapacity": _result_frame(r=["R1"], t=["GEN"], y=[2020], val=[5.0])})
        df = store.read_table("vnewcapacity")
        assert list(df.columns) == ["r", "t", "y", "val", "solvedtm"]
        assert int(df["y"].iloc[0]) == 2020
        assert df["val"].iloc[0] == pytest.approx(5.0)

    def test_failed_write_keeps_previous_tables(self, tmp_path):
        store = create_store(tmp_path / "atomic.sqlite")
        store.replace_result_tables({"vdemand": _result_frame(r=["R1"], l=["D"], f=["ELC"], y=[2020], val=[2.5])})

        bad = pd.DataFrame({"r": ["R1", "R1"], "val": [1.0, 2.0]})
        bad.columns = ["r", "r"]
        with pytest.raises(StoreIOError):
            store.replace_result_tables({"vnewcapacity": bad})

        assert store.result_tables() == ["vdemand"]
        assert store.read_table("vdemand")["val"].tolist() == [2.5]
