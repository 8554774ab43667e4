from __future__ import annotations

import pytest

from enplan.core.data_loading import load_scenario
from enplan.core.errors import DataError, ModelConstructionError
from enplan.core.index_builder import (
    build_indices,
    check_references,
    nodal_share,
    partition_map_merge,
    resolve_topology,
)
from enplan.core.store import ScenarioStore

from conftest import single_region


def _two_region_scenario(builder):
    single_region(builder)
    builder.set("REGION", "R2")
    builder.set("TECHNOLOGY", "IMP")
    builder.set("MODE_OF_OPERATION", "2")
    builder.param("OutputActivityRatio", ("R2", "IMP", "ELC", "1", 2020, 1.0), ("R2", "GEN", "ELC", "2", 2020, 0.9))
    builder.param("InputActivityRatio", ("R1", "GEN", "ELC", "2", 2020, 0.0))
    builder.param("TradeRoute", ("R1", "R2", "ELC", 2020, 1.0))
    builder.commit()
    return load_scenario(ScenarioStore(builder.path))


class TestPartitionMapMerge:
    def test_result_does_not_depend_on_workers(self):
        items = [((r, i), i * 1.5) for r in ("R3", "R1", "R2") for i in range(50)]

        def mapper(chunk):
            return {key: val * 2 for key, val in chunk}

        serial = partition_map_merge(items, lambda item: item[0][0], mapper, workers=1)
        threaded = partition_map_merge(items, lambda item: item[0][0], mapper, workers=4)
        assert list(serial.items()) == list(threaded.items())
        assert list(serial) == sorted(serial)

    def test_overlapping_partitions(self):
        items = [("a", 1), ("b", 1)]
        with pytest.raises(ModelConstructionError):
            partition_map_merge(items, lambda item: item[0], lambda chunk: {"same": chunk[0][1]})


class TestReferences:
    def test_missing_reference(self):
        with pytest.raises(ModelConstructionError, match="1 referenced tuples"):
            check_references("vrateofactivity", {("R1", "D", "GEN", "1", 2020)}, [("R1", "N", "GEN", "1", 2020)])

    def test_all_declared(self):
        check_references("vrateofactivity", [("R1", "D", "GEN", "1", 2020)], [("R1", "D", "GEN", "1", 2020)])


class TestBuildIndices:
    def test_valid_tuples(self, scenario_builder):
        loaded = _two_region_scenario(scenario_builder())
        ix = build_indices(loaded)

        assert ix.topology == "transshipment"
        assert ix.rtmy == [("R1", "GEN", "1", 2020), ("R2", "GEN", "2", 2020), ("R2", "IMP", "1", 2020)]
        assert ix.modes_of[("R2", "GEN", 2020)] == ["2"]
        assert ix.output_coeffs[("R2", "GEN", "ELC", 2020)] == [("2", 0.9)]
        # Zero ratios do not make a mode active.
        assert ("R1", "GEN", "ELC", 2020) not in ix.input_coeffs
        assert ix.trade_routes == [("R1", "R2", "ELC", 2020), ("R2", "R1", "ELC", 2020)]
        assert ix.emission_coeffs == {("R1", "GEN", "CO2", 2020): [("1", 0.1)]}

    def test_restricted_and_dense_domains(self, scenario_builder):
        loaded = _two_region_scenario(scenario_builder())
        restricted = build_indices(loaded, restrict=True)
        dense = build_indices(loaded, restrict=False)

        family = "vrateofactivity"
        assert len(restricted.domain(family)) == 3 * 2
        assert len(dense.domain(family)) == 2 * 2 * 2 * 2 * 1
        assert restricted.fixed_zero(family) == []
        assert set(dense.domain(family)) - set(dense.fixed_zero(family)) == set(restricted.domain(family))

    def test_deterministic_across_workers(self, scenario_builder):
        loaded = _two_region_scenario(scenario_builder())
        one = build_indices(loaded, workers=1)
        many = build_indices(loaded, workers=3)
        assert one.rtmy == many.rtmy
        assert list(one.output_coeffs.items()) == list(many.output_coeffs.items())
        assert one.domain("vproductionbytechnology") == many.domain("vproductionbytechnology")

    def test_declared_order(self, scenario_builder):
        loaded = _two_region_scenario(scenario_builder())
        ix = build_indices(loaded)
        domain = ix.domain("vproductionbytechnology")
        assert domain == ix.order(domain, ("r", "l", "t", "f", "y"))
        assert domain[0] == ("R1", "D", "GEN", "ELC", 2020)


class TestTopology:
    def test_auto_without_lines(self, simple_db):
        loaded = load_scenario(ScenarioStore(simple_db))
        assert resolve_topology(loaded) == "transshipment"
        assert resolve_topology(loaded, "lineflow") == "lineflow"

    def test_unknown(self, simple_db):
        loaded = load_scenario(ScenarioStore(simple_db))
        with pytest.raises(DataError):
            resolve_topology(loaded, "mesh")

    def test_nodal_share_even_split_and_explicit(self, scenario_builder):
        builder = single_region(scenario_builder())
        builder.node("N1", "R1").node("N2", "R1")
        builder.param("NodalDistributionDemand", ("N1", "ELC", 2020, 0.25), ("N2", "ELC", 2020, 0.75))
        builder.commit()
        params = load_scenario(ScenarioStore(builder.path))["params"]

        assert nodal_share(params, "NodalDistributionDemand", ["N1", "N2"], "N2", "ELC", 2020) == pytest.approx(0.75)
        assert nodal_share(params, "NodalDistributionTechnologyCapacity", ["N1", "N2"], "N1", "GEN", 2020) == pytest.approx(0.5)
