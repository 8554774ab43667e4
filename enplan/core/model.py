from __future__ import annotations

from typing import Any, Iterable, Iterator, Optional
import time

import pyomo.environ as pyo

from enplan.io_utils import get_logger

from .errors import SolverUnavailableError
from .index_builder import (
    DIM_SETS,
    RESTRICTABLE_FAMILIES,
    IndexSets,
    check_references,
    line_region,
    nodal_share,
)
from .param_table import INF, PARAMETERS, ParamTable, entity_rate


logger = get_logger(__name__)

SET_ATTRS = {
    "REGION": "R",
    "TECHNOLOGY": "T",
    "TIMESLICE": "L",
    "FUEL": "F",
    "EMISSION": "E",
    "MODE_OF_OPERATION": "M",
    "YEAR": "Y",
    "STORAGE": "S",
    "NODE": "N",
    "TRANSMISSIONLINE": "TR",
}

# Result families and their index columns.
VARIABLE_FAMILIES: dict[str, tuple[str, ...]] = {
    "vrateofactivity": ("r", "l", "t", "m", "y"),
    "vrateoftotalactivity": ("r", "t", "l", "y"),
    "vtotalannualtechnologyactivitybymode": ("r", "t", "m", "y"),
    "vtotaltechnologyannualactivity": ("r", "t", "y"),
    "vtotaltechnologymodelperiodactivity": ("r", "t"),
    "vnewcapacity": ("r", "t", "y"),
    "vaccumulatednewcapacity": ("r", "t", "y"),
    "vtotalcapacityannual": ("r", "t", "y"),
    "vnumberofnewtechnologyunits": ("r", "t", "y"),
    "vproductionbytechnology": ("r", "l", "t", "f", "y"),
    "vusebytechnology": ("r", "l", "t", "f", "y"),
    "vproductionbytechnologyannual": ("r", "t", "f", "y"),
    "vusebytechnologyannual": ("r", "t", "f", "y"),
    "vproduction": ("r", "l", "f", "y"),
    "vuse": ("r", "l", "f", "y"),
    "vdemand": ("r", "l", "f", "y"),
    "vproductionannual": ("r", "f", "y"),
    "vuseannual": ("r", "f", "y"),
    "vtrade": ("r", "rr", "l", "f", "y"),
    "vtradeannual": ("r", "rr", "f", "y"),
    "vrateofstoragecharge": ("r", "s", "l", "y"),
    "vrateofstoragedischarge": ("r", "s", "l", "y"),
    "vstorageleveltsend": ("r", "s", "l", "y"),
    "vstoragelevelyearstart": ("r", "s", "y"),
    "vstoragelevelyearend": ("r", "s", "y"),
    "vstoragelowerlimit": ("r", "s", "y"),
    "vstorageupperlimit": ("r", "s", "y"),
    "vnewstoragecapacity": ("r", "s", "y"),
    "vaccumulatednewstoragecapacity": ("r", "s", "y"),
    "vcapitalinvestmentstorage": ("r", "s", "y"),
    "vdiscountedcapitalinvestmentstorage": ("r", "s", "y"),
    "vsalvagevaluestorage": ("r", "s", "y"),
    "vdiscountedsalvagevaluestorage": ("r", "s", "y"),
    "vtotaldiscountedstoragecost": ("r", "s", "y"),
    "vcapitalinvestment": ("r", "t", "y"),
    "vdiscountedcapitalinvestment": ("r", "t", "y"),
    "vsalvagevalue": ("r", "t", "y"),
    "vdiscountedsalvagevalue": ("r", "t", "y"),
    "vannualvariableoperatingcost": ("r", "t", "y"),
    "vannualfixedoperatingcost": ("r", "t", "y"),
    "voperatingcost": ("r", "t", "y"),
    "vdiscountedoperatingcost": ("r", "t", "y"),
    "vtotaldiscountedcostbytechnology": ("r", "t", "y"),
    "vtotaldiscountedcost": ("r", "y"),
    "vtotalcapacityinreservemargin": ("r", "y"),
    "vdemandneedingreservemargin": ("r", "l", "y"),
    "vtotalreproductionannual": ("r", "y"),
    "vretotalproductionoftargetfuelannual": ("r", "y"),
    "vannualtechnologyemissionbymode": ("r", "t", "e", "m", "y"),
    "vannualtechnologyemission": ("r", "t", "e", "y"),
    "vannualtechnologyemissionpenaltybyemission": ("r", "t", "e", "y"),
    "vannualtechnologyemissionspenalty": ("r", "t", "y"),
    "vdiscountedtechnologyemissionspenalty": ("r", "t", "y"),
    "vannualemissions": ("r", "e", "y"),
    "vmodelperiodemissions": ("r", "e"),
    "vtransmissionbuilt": ("tr", "y"),
    "vtransmissionexists": ("tr", "y"),
    "vtransmissionflowforward": ("tr", "l", "f", "y"),
    "vtransmissionflowreverse": ("tr", "l", "f", "y"),
    "vtransmissionbyline": ("tr", "l", "f", "y"),
    "vcapitalinvestmenttransmission": ("tr", "y"),
    "vdiscountedcapitalinvestmenttransmission": ("tr", "y"),
    "vsalvagevaluetransmission": ("tr", "y"),
    "vdiscountedsalvagevaluetransmission": ("tr", "y"),
    "voperatingcosttransmission": ("tr", "y"),
    "vdiscountedoperatingcosttransmission": ("tr", "y"),
    "vtotaldiscountedtransmissioncostbyregion": ("r", "y"),
    "vproductionnodal": ("n", "l", "f", "y"),
    "vusenodal": ("n", "l", "f", "y"),
    "vproductionannualnodal": ("n", "f", "y"),
    "vuseannualnodal": ("n", "f", "y"),
}


def salvage_factor(rate: float, method: float, life: float, y: int, last_year: int) -> float:
    """
    Share of an investment made in year y still valuable after last_year.

    Rules:
      1) asset retires inside the horizon (y + life - 1 <= last_year): 0
      2) sinking fund (method 1, rate > 0): 1 - ((1+rate)^(last-y+1) - 1) / ((1+rate)^life - 1)
      3) otherwise straight line: 1 - (last-y+1) / life
    """
    life = max(float(life), 1.0)
    if y + life - 1 <= last_year:
        return 0.0
    span = last_year - y + 1
    if int(method) == 1 and rate > 0:
        return 1.0 - ((1.0 + rate) ** span - 1.0) / ((1.0 + rate) ** life - 1.0)
    return 1.0 - span / life


def requires_integer(ix: IndexSets, loaded: dict[str, Any], continuous_transmission: bool) -> bool:
    endogenous = any(loaded["lines"][tr].yconstruction is None for tr, _ in ix.line_years)
    return bool(ix.unit_tuples) or (endogenous and not continuous_transmission)


def referenced_tuples(ix: IndexSets) -> dict[str, Iterator[tuple]]:
    """Tuples of each restrictable family that the constraint families refer to."""
    timeslices = ix.sets["TIMESLICE"]
    years = ix.sets["YEAR"]

    def _activity() -> Iterator[tuple]:
        for coeffs in (ix.output_coeffs, ix.input_coeffs):
            for (r, t, f, y), modes in coeffs.items():
                for m, _ in modes:
                    for l in timeslices:
                        yield (r, l, t, m, y)
        for links in (ix.charge_links, ix.discharge_links):
            for (r, s), entries in links.items():
                for t, m, _ in entries:
                    for y in years:
                        for l in timeslices:
                            yield (r, l, t, m, y)
        for (r, t, y), modes in ix.modes_of.items():
            for m in modes:
                for l in timeslices:
                    yield (r, l, t, m, y)

    def _by_mode() -> Iterator[tuple]:
        for (r, t, y), modes in ix.modes_of.items():
            for m in modes:
                yield (r, t, m, y)
        for (r, t, e, y), modes in ix.emission_coeffs.items():
            for m, _ in modes:
                yield (r, t, m, y)

    def _by_tech(coeffs: dict) -> Iterator[tuple]:
        for (r, t, f, y) in coeffs:
            for l in timeslices:
                yield (r, l, t, f, y)

    def _emission_by_mode() -> Iterator[tuple]:
        for (r, t, e, y), modes in ix.emission_coeffs.items():
            for m, _ in modes:
                yield (r, t, e, m, y)

    return {
        "vrateofactivity": _activity(),
        "vtotalannualtechnologyactivitybymode": _by_mode(),
        "vproductionbytechnology": _by_tech(ix.output_coeffs),
        "vusebytechnology": _by_tech(ix.input_coeffs),
        "vproductionbytechnologyannual": iter(ix.output_coeffs),
        "vusebytechnologyannual": iter(ix.input_coeffs),
        "vannualtechnologyemissionbymode": _emission_by_mode(),
        "vannualtechnologyemission": iter(ix.emission_coeffs),
        "vannualtechnologyemissionpenaltybyemission": iter(ix.emission_coeffs),
    }


def _unwrap(key: tuple):
    return key[0] if len(key) == 1 else key


def _declare_params(model: pyo.ConcreteModel, params: dict[str, ParamTable], sets: dict[str, list]) -> None:
    members = {name: set(values) for name, values in sets.items()}
    for name, table in params.items():
        dims = [DIM_SETS[c] for c in table.index]
        index_sets = [getattr(model, SET_ATTRS[d]) for d in dims]
        rows = {
            _unwrap(key): val
            for key, val in table.rows().items()
            if all(k in members[d] for k, d in zip(key, dims))
        }
        kwargs: dict[str, Any] = {} if table.default is None else {"default": table.default}
        setattr(
            model,
            name,
            pyo.Param(*index_sets, initialize=rows, mutable=False, doc=PARAMETERS[name].doc or name, **kwargs),
        )


def _contiguous_groups(timeslices: list[str], group_of) -> list[list[str]]:
    groups: list[list[str]] = []
    last_key = object()
    for l in timeslices:
        key = group_of(l)
        if key is None:
            last_key = object()
            continue
        if groups and key == last_key:
            groups[-1].append(l)
        else:
            groups.append([l])
        last_key = key
    return groups


def build_model(
    loaded: dict[str, Any],
    ix: IndexSets,
    *,
    first_year: int,
    last_year: int,
    default_discount_rate: float = 0.05,
    continuous_transmission: bool = False,
    integer_support: bool = True,
    name: str = "enplan",
) -> pyo.ConcreteModel:
    """
    Capacity expansion and dispatch model for the years in loaded["sets"]["YEAR"].

    first_year is the discounting base year and last_year the salvage horizon;
    both refer to the whole plan, not only to this phase.
    """
    started = time.perf_counter()
    P: dict[str, ParamTable] = loaded["params"]
    sets = ix.sets
    timeslices = sets["TIMESLICE"]
    years = sets["YEAR"]
    lines = loaded.get("lines", {})

    # STEP 0: integer capability
    relax_lines = continuous_transmission
    if not integer_support:
        if ix.unit_tuples:
            raise SolverUnavailableError(
                "Configured solver does not support integer variables required by CapacityOfOneTechnologyUnit"
            )
        if requires_integer(ix, loaded, continuous_transmission):
            logger.warning("Solver is LP-only: transmission build decisions are relaxed to [0, 1]")
            relax_lines = True

    # STEP 1: restricted families must cover every referenced tuple
    for family, refs in referenced_tuples(ix).items():
        check_references(family, set(ix.domain(family)), refs)

    model = pyo.ConcreteModel(name=name)

    # STEP 2: sets
    for set_name, attr in SET_ATTRS.items():
        setattr(model, attr, pyo.Set(initialize=list(sets.get(set_name, [])), ordered=True, doc=set_name))

    def _index(attr: str, tuples: list, dimen: int, doc: str) -> pyo.Set:
        comp = pyo.Set(initialize=tuples, dimen=dimen, ordered=True, doc=doc)
        setattr(model, attr, comp)
        return comp

    for family, dims in RESTRICTABLE_FAMILIES.items():
        _index(f"{family}_index", ix.domain(family), len(dims), f"Declared tuples of {family}")

    rs = ix.storage_pairs
    rsy = [(r, s, y) for (r, s) in rs for y in years]
    rsly = [(r, s, l, y) for (r, s) in rs for y in years for l in timeslices]
    _index("RSY", rsy, 3, "Storage x year")
    _index("RSLY", rsly, 4, "Storage x timeslice x year")
    _index("RTY_UNITS", ix.unit_tuples, 3, "Technologies built in discrete units")
    trade = [(r, rr, l, f, y) for (r, rr, f, y) in ix.trade_routes for l in timeslices]
    _index("TRADE_ANNUAL", ix.trade_routes, 4, "Trade routes")
    _index("TRADE", trade, 5, "Trade routes x timeslice")
    endogenous = [(tr, y) for tr, y in ix.line_years if lines[tr].yconstruction is None]
    _index("LINE_YEARS", ix.line_years, 2, "Line x year")
    _index("LINE_BUILD", endogenous, 2, "Buildable line x year")
    _index("LINE_FLOW", ix.line_flow_index, 4, "Line x timeslice x fuel x year")
    nodal_nlfy = [
        (n, l, f, y) for (r, f, y) in ix.nodal_rfy for n in ix.nodes_of[r] for l in timeslices
    ]
    nodal_set = set(ix.nodal_rfy)
    _index("NODAL", nodal_nlfy, 4, "Node x timeslice x fuel x year")
    nodal_nfy = [(n, f, y) for (r, f, y) in ix.nodal_rfy for n in ix.nodes_of[r]]
    _index("NODAL_ANNUAL", nodal_nfy, 3, "Node x fuel x year")

    # STEP 3: parameters
    _declare_params(model, P, sets)

    def pv(param: str, *key) -> float:
        return float(P[param][key])

    def rate_tech(r: str, t: str, y: int) -> float:
        return entity_rate(P, "InterestRateTechnology", (r, t, y), r, default_discount_rate)

    def rate_storage(r: str, s: str, y: int) -> float:
        return entity_rate(P, "InterestRateStorage", (r, s, y), r, default_discount_rate)

    def rate_line(tr: str, y: int) -> float:
        r = line_region(loaded, tr)
        return entity_rate(P, None, None, r, default_discount_rate, explicit=lines[tr].interestrate)

    def disc(rate: float, y: int, mid: bool = False) -> float:
        return (1.0 + rate) ** (y - first_year + (0.5 if mid else 0.0))

    salvage_disc_exp = 1 + last_year - first_year

    # STEP 4: variables
    # Activity and capacity:
    # vrateofactivity(r,l,t,m,y)            activity rate per mode
    # vrateoftotalactivity(r,t,l,y)         activity rate over modes
    # vtotalannualtechnologyactivitybymode  annual activity per mode
    # vnewcapacity / vaccumulatednewcapacity / vtotalcapacityannual
    NN = pyo.NonNegativeReals
    model.vrateofactivity = pyo.Var(model.vrateofactivity_index, domain=NN, doc="Rate of activity")
    model.vrateoftotalactivity = pyo.Var(model.R, model.T, model.L, model.Y, domain=NN)
    model.vtotalannualtechnologyactivitybymode = pyo.Var(model.vtotalannualtechnologyactivitybymode_index, domain=NN)
    model.vtotaltechnologyannualactivity = pyo.Var(model.R, model.T, model.Y, domain=NN)
    model.vtotaltechnologymodelperiodactivity = pyo.Var(model.R, model.T, domain=NN)
    model.vnewcapacity = pyo.Var(model.R, model.T, model.Y, domain=NN, doc="New capacity")
    model.vaccumulatednewcapacity = pyo.Var(model.R, model.T, model.Y, domain=NN)
    model.vtotalcapacityannual = pyo.Var(model.R, model.T, model.Y, domain=NN)
    model.vnumberofnewtechnologyunits = pyo.Var(model.RTY_UNITS, domain=pyo.NonNegativeIntegers)

    # Production and use (energy per timeslice or year):
    model.vproductionbytechnology = pyo.Var(model.vproductionbytechnology_index, domain=NN)
    model.vusebytechnology = pyo.Var(model.vusebytechnology_index, domain=NN)
    model.vproductionbytechnologyannual = pyo.Var(model.vproductionbytechnologyannual_index, domain=NN)
    model.vusebytechnologyannual = pyo.Var(model.vusebytechnologyannual_index, domain=NN)
    model.vproduction = pyo.Var(model.R, model.L, model.F, model.Y, domain=NN)
    model.vuse = pyo.Var(model.R, model.L, model.F, model.Y, domain=NN)
    model.vdemand = pyo.Var(model.R, model.L, model.F, model.Y, domain=NN)
    model.vproductionannual = pyo.Var(model.R, model.F, model.Y, domain=NN)
    model.vuseannual = pyo.Var(model.R, model.F, model.Y, domain=NN)
    model.vtrade = pyo.Var(model.TRADE, domain=pyo.Reals, doc="Net export from r to rr")
    model.vtradeannual = pyo.Var(model.TRADE_ANNUAL, domain=pyo.Reals)

    # Storage:
    model.vrateofstoragecharge = pyo.Var(model.RSLY, domain=NN)
    model.vrateofstoragedischarge = pyo.Var(model.RSLY, domain=NN)
    model.vstorageleveltsend = pyo.Var(model.RSLY, domain=NN)
    model.vstoragelevelyearstart = pyo.Var(model.RSY, domain=NN)
    model.vstoragelevelyearend = pyo.Var(model.RSY, domain=NN)
    model.vstoragelowerlimit = pyo.Var(model.RSY, domain=NN)
    model.vstorageupperlimit = pyo.Var(model.RSY, domain=NN)
    model.vnewstoragecapacity = pyo.Var(model.RSY, domain=NN)
    model.vaccumulatednewstoragecapacity = pyo.Var(model.RSY, domain=NN)
    model.vcapitalinvestmentstorage = pyo.Var(model.RSY, domain=NN)
    model.vdiscountedcapitalinvestmentstorage = pyo.Var(model.RSY, domain=NN)
    model.vsalvagevaluestorage = pyo.Var(model.RSY, domain=NN)
    model.vdiscountedsalvagevaluestorage = pyo.Var(model.RSY, domain=NN)
    model.vtotaldiscountedstoragecost = pyo.Var(model.RSY, domain=pyo.Reals)

    # Costs:
    for family in (
        "vcapitalinvestment",
        "vdiscountedcapitalinvestment",
        "vsalvagevalue",
        "vdiscountedsalvagevalue",
        "vannualvariableoperatingcost",
        "vannualfixedoperatingcost",
        "voperatingcost",
        "vdiscountedoperatingcost",
    ):
        setattr(model, family, pyo.Var(model.R, model.T, model.Y, domain=pyo.Reals))
    model.vtotaldiscountedcostbytechnology = pyo.Var(model.R, model.T, model.Y, domain=pyo.Reals)
    model.vtotaldiscountedcost = pyo.Var(model.R, model.Y, domain=pyo.Reals)

    # Reserve margin and renewable target:
    model.vtotalcapacityinreservemargin = pyo.Var(model.R, model.Y, domain=NN)
    model.vdemandneedingreservemargin = pyo.Var(model.R, model.L, model.Y, domain=NN)
    model.vtotalreproductionannual = pyo.Var(model.R, model.Y, domain=pyo.Reals)
    model.vretotalproductionoftargetfuelannual = pyo.Var(model.R, model.Y, domain=pyo.Reals)

    # Emissions (ratios may be negative):
    model.vannualtechnologyemissionbymode = pyo.Var(model.vannualtechnologyemissionbymode_index, domain=pyo.Reals)
    model.vannualtechnologyemission = pyo.Var(model.vannualtechnologyemission_index, domain=pyo.Reals)
    model.vannualtechnologyemissionpenaltybyemission = pyo.Var(
        model.vannualtechnologyemissionpenaltybyemission_index, domain=pyo.Reals
    )
    model.vannualtechnologyemissionspenalty = pyo.Var(model.R, model.T, model.Y, domain=pyo.Reals)
    model.vdiscountedtechnologyemissionspenalty = pyo.Var(model.R, model.T, model.Y, domain=pyo.Reals)
    model.vannualemissions = pyo.Var(model.R, model.E, model.Y, domain=pyo.Reals)
    model.vmodelperiodemissions = pyo.Var(model.R, model.E, domain=pyo.Reals)

    # Transmission (lineflow topology):
    model.vtransmissionbuilt = pyo.Var(model.LINE_BUILD, domain=pyo.UnitInterval if relax_lines else pyo.Binary)
    model.vtransmissionexists = pyo.Var(model.LINE_YEARS, domain=pyo.UnitInterval)
    model.vtransmissionflowforward = pyo.Var(model.LINE_FLOW, domain=NN)
    model.vtransmissionflowreverse = pyo.Var(model.LINE_FLOW, domain=NN)
    model.vtransmissionbyline = pyo.Var(model.LINE_FLOW, domain=pyo.Reals, doc="Net flow n1 -> n2")
    model.vcapitalinvestmenttransmission = pyo.Var(model.LINE_BUILD, domain=NN)
    model.vdiscountedcapitalinvestmenttransmission = pyo.Var(model.LINE_BUILD, domain=NN)
    model.vsalvagevaluetransmission = pyo.Var(model.LINE_BUILD, domain=NN)
    model.vdiscountedsalvagevaluetransmission = pyo.Var(model.LINE_BUILD, domain=NN)
    model.voperatingcosttransmission = pyo.Var(model.LINE_YEARS, domain=NN)
    model.vdiscountedoperatingcosttransmission = pyo.Var(model.LINE_YEARS, domain=NN)
    model.vtotaldiscountedtransmissioncostbyregion = pyo.Var(model.R, model.Y, domain=pyo.Reals)
    model.vproductionnodal = pyo.Var(model.NODAL, domain=NN)
    model.vusenodal = pyo.Var(model.NODAL, domain=NN)
    model.vproductionannualnodal = pyo.Var(model.NODAL_ANNUAL, domain=NN)
    model.vuseannualnodal = pyo.Var(model.NODAL_ANNUAL, domain=NN)

    # Tuples excluded by data stay declared but fixed when variables are not restricted.
    for family in RESTRICTABLE_FAMILIES:
        var = getattr(model, family)
        for idx in ix.fixed_zero(family):
            var[idx].fix(0.0)

    # STEP 5: activity and capacity accounting
    modes_of = ix.modes_of
    rtmy_set = set(ix.rtmy)

    model.caa3_total_activity = pyo.Constraint(
        model.R,
        model.L,
        model.T,
        model.Y,
        rule=lambda mm, r, l, t, y: mm.vrateoftotalactivity[r, t, l, y]
        == sum(mm.vrateofactivity[r, l, t, m, y] for m in modes_of.get((r, t, y), [])),
        doc="Rate of total activity sums the active modes",
    )
    model.acc3_activity_by_mode = pyo.Constraint(
        pyo.Set(initialize=ix.rtmy, dimen=4, ordered=True),
        rule=lambda mm, r, t, m, y: mm.vtotalannualtechnologyactivitybymode[r, t, m, y]
        == sum(mm.vrateofactivity[r, l, t, m, y] * pv("YearSplit", l, y) for l in mm.L),
        doc="Annual activity by mode",
    )
    model.aac1_annual_activity = pyo.Constraint(
        model.R,
        model.T,
        model.Y,
        rule=lambda mm, r, t, y: mm.vtotaltechnologyannualactivity[r, t, y]
        == sum(mm.vrateoftotalactivity[r, t, l, y] * pv("YearSplit", l, y) for l in mm.L),
        doc="Annual activity",
    )
    model.tac1_model_period_activity = pyo.Constraint(
        model.R,
        model.T,
        rule=lambda mm, r, t: mm.vtotaltechnologymodelperiodactivity[r, t]
        == sum(mm.vtotaltechnologyannualactivity[r, t, y] for y in mm.Y),
        doc="Model period activity",
    )
    model.cab1_accumulated_new_capacity = pyo.Constraint(
        model.R,
        model.T,
        model.Y,
        rule=lambda mm, r, t, y: mm.vaccumulatednewcapacity[r, t, y]
        == sum(mm.vnewcapacity[r, t, yy] for yy in mm.Y if yy <= y and y - yy < pv("OperationalLife", r, t)),
        doc="New capacity still within its operational life",
    )
    model.cac1_total_capacity = pyo.Constraint(
        model.R,
        model.T,
        model.Y,
        rule=lambda mm, r, t, y: mm.vtotalcapacityannual[r, t, y]
        == mm.vaccumulatednewcapacity[r, t, y] + pv("ResidualCapacity", r, t, y),
        doc="Total capacity",
    )
    model.caa5_technology_units = pyo.Constraint(
        model.RTY_UNITS,
        rule=lambda mm, r, t, y: mm.vnewcapacity[r, t, y]
        == pv("CapacityOfOneTechnologyUnit", r, t, y) * mm.vnumberofnewtechnologyunits[r, t, y],
        doc="New capacity comes in whole units",
    )
    model.caa4_capacity_factor = pyo.Constraint(
        model.R,
        model.T,
        model.L,
        model.Y,
        rule=lambda mm, r, t, l, y: mm.vrateoftotalactivity[r, t, l, y]
        <= mm.vtotalcapacityannual[r, t, y] * pv("CapacityFactor", r, t, l, y) * pv("CapacityToActivityUnit", r, t),
        doc="Activity limited by available capacity",
    )
    model.caa6_availability_factor = pyo.Constraint(
        model.R,
        model.T,
        model.Y,
        rule=lambda mm, r, t, y: (
            pyo.Constraint.Skip
            if pv("AvailabilityFactor", r, t, y) >= 1.0
            else mm.vtotaltechnologyannualactivity[r, t, y]
            <= mm.vtotalcapacityannual[r, t, y] * pv("AvailabilityFactor", r, t, y) * pv("CapacityToActivityUnit", r, t)
        ),
        doc="Annual activity limited by availability",
    )

    # Capacity and activity limits; infinite upper and zero lower limits are not generated.
    def _upper(var_name: str, param: str):
        def rule(mm, *idx):
            bound = pv(param, *idx)
            return pyo.Constraint.Skip if bound == INF else getattr(mm, var_name)[idx] <= bound

        return rule

    def _lower(var_name: str, param: str):
        def rule(mm, *idx):
            bound = pv(param, *idx)
            return pyo.Constraint.Skip if bound <= 0.0 else getattr(mm, var_name)[idx] >= bound

        return rule

    model.tcc1_max_capacity = pyo.Constraint(model.R, model.T, model.Y, rule=_upper("vtotalcapacityannual", "TotalAnnualMaxCapacity"))
    model.tcc2_min_capacity = pyo.Constraint(model.R, model.T, model.Y, rule=_lower("vtotalcapacityannual", "TotalAnnualMinCapacity"))
    model.ncc1_max_investment = pyo.Constraint(model.R, model.T, model.Y, rule=_upper("vnewcapacity", "TotalAnnualMaxCapacityInvestment"))
    model.ncc2_min_investment = pyo.Constraint(model.R, model.T, model.Y, rule=_lower("vnewcapacity", "TotalAnnualMinCapacityInvestment"))
    model.aac2_max_annual_activity = pyo.Constraint(
        model.R, model.T, model.Y, rule=_upper("vtotaltechnologyannualactivity", "TotalTechnologyAnnualActivityUpperLimit")
    )
    model.aac3_min_annual_activity = pyo.Constraint(
        model.R, model.T, model.Y, rule=_lower("vtotaltechnologyannualactivity", "TotalTechnologyAnnualActivityLowerLimit")
    )
    model.tac2_max_period_activity = pyo.Constraint(
        model.R, model.T, rule=_upper("vtotaltechnologymodelperiodactivity", "TotalTechnologyModelPeriodActivityUpperLimit")
    )
    model.tac3_min_period_activity = pyo.Constraint(
        model.R, model.T, rule=_lower("vtotaltechnologymodelperiodactivity", "TotalTechnologyModelPeriodActivityLowerLimit")
    )

    # STEP 6: production, use and demand
    out_coeffs = ix.output_coeffs
    in_coeffs = ix.input_coeffs
    producers: dict[tuple, list[str]] = {}
    for (r, t, f, y) in out_coeffs:
        producers.setdefault((r, f, y), []).append(t)
    users: dict[tuple, list[str]] = {}
    for (r, t, f, y) in in_coeffs:
        users.setdefault((r, f, y), []).append(t)

    model.pro1_production_by_technology = pyo.Constraint(
        pyo.Set(initialize=ix.order(ix.valid["vproductionbytechnology"], ("r", "l", "t", "f", "y")), dimen=5, ordered=True),
        rule=lambda mm, r, l, t, f, y: mm.vproductionbytechnology[r, l, t, f, y]
        == sum(mm.vrateofactivity[r, l, t, m, y] * ratio for m, ratio in out_coeffs[(r, t, f, y)]) * pv("YearSplit", l, y),
        doc="Production by technology from output activity ratios",
    )
    model.use1_use_by_technology = pyo.Constraint(
        pyo.Set(initialize=ix.order(ix.valid["vusebytechnology"], ("r", "l", "t", "f", "y")), dimen=5, ordered=True),
        rule=lambda mm, r, l, t, f, y: mm.vusebytechnology[r, l, t, f, y]
        == sum(mm.vrateofactivity[r, l, t, m, y] * ratio for m, ratio in in_coeffs[(r, t, f, y)]) * pv("YearSplit", l, y),
        doc="Use by technology from input activity ratios",
    )
    model.pro2_production_by_technology_annual = pyo.Constraint(
        pyo.Set(initialize=list(out_coeffs), dimen=4, ordered=True),
        rule=lambda mm, r, t, f, y: mm.vproductionbytechnologyannual[r, t, f, y]
        == sum(mm.vproductionbytechnology[r, l, t, f, y] for l in mm.L),
    )
    model.use2_use_by_technology_annual = pyo.Constraint(
        pyo.Set(initialize=list(in_coeffs), dimen=4, ordered=True),
        rule=lambda mm, r, t, f, y: mm.vusebytechnologyannual[r, t, f, y]
        == sum(mm.vusebytechnology[r, l, t, f, y] for l in mm.L),
    )
    model.pro3_production = pyo.Constraint(
        model.R,
        model.L,
        model.F,
        model.Y,
        rule=lambda mm, r, l, f, y: mm.vproduction[r, l, f, y]
        == sum(mm.vproductionbytechnology[r, l, t, f, y] for t in producers.get((r, f, y), [])),
    )
    model.use3_use = pyo.Constraint(
        model.R,
        model.L,
        model.F,
        model.Y,
        rule=lambda mm, r, l, f, y: mm.vuse[r, l, f, y]
        == sum(mm.vusebytechnology[r, l, t, f, y] for t in users.get((r, f, y), [])),
    )
    model.pro4_production_annual = pyo.Constraint(
        model.R,
        model.F,
        model.Y,
        rule=lambda mm, r, f, y: mm.vproductionannual[r, f, y] == sum(mm.vproduction[r, l, f, y] for l in mm.L),
    )
    model.use4_use_annual = pyo.Constraint(
        model.R,
        model.F,
        model.Y,
        rule=lambda mm, r, f, y: mm.vuseannual[r, f, y] == sum(mm.vuse[r, l, f, y] for l in mm.L),
    )
    model.eq_specified_demand = pyo.Constraint(
        model.R,
        model.L,
        model.F,
        model.Y,
        rule=lambda mm, r, l, f, y: mm.vdemand[r, l, f, y]
        == pv("SpecifiedAnnualDemand", r, f, y) * pv("SpecifiedDemandProfile", r, f, l, y),
        doc="Demand per timeslice",
    )

    # STEP 7: energy balances (regional, or nodal where transmission is modelled)
    routes_from: dict[tuple, list[str]] = {}
    for (r, rr, f, y) in ix.trade_routes:
        routes_from.setdefault((r, f, y), []).append(rr)

    def trade_value(r: str, rr: str, f: str, y: int) -> float:
        # A route declared in one direction is open both ways.
        if P["TradeRoute"].has_row((r, rr, f, y)):
            return pv("TradeRoute", r, rr, f, y)
        return pv("TradeRoute", rr, r, f, y)

    model.eba11_energy_balance = pyo.Constraint(
        model.R,
        model.L,
        model.F,
        model.Y,
        rule=lambda mm, r, l, f, y: (
            pyo.Constraint.Skip
            if (r, f, y) in nodal_set
            else mm.vproduction[r, l, f, y]
            >= mm.vdemand[r, l, f, y]
            + mm.vuse[r, l, f, y]
            + sum(mm.vtrade[r, rr, l, f, y] * trade_value(r, rr, f, y) for rr in routes_from.get((r, f, y), []))
        ),
        doc="Timeslice energy balance",
    )
    model.eba10_trade_antisymmetry = pyo.Constraint(
        model.TRADE,
        rule=lambda mm, r, rr, l, f, y: (
            pyo.Constraint.Skip
            if ix.positions["REGION"][r] > ix.positions["REGION"][rr]
            else mm.vtrade[r, rr, l, f, y] == -mm.vtrade[rr, r, l, f, y]
        ),
        doc="Exports from r to rr are imports of rr from r",
    )
    model.ebb1_trade_annual = pyo.Constraint(
        model.TRADE_ANNUAL,
        rule=lambda mm, r, rr, f, y: mm.vtradeannual[r, rr, f, y] == sum(mm.vtrade[r, rr, l, f, y] for l in mm.L),
    )
    model.ebb4_annual_balance = pyo.Constraint(
        model.R,
        model.F,
        model.Y,
        rule=lambda mm, r, f, y: (
            pyo.Constraint.Skip
            if (r, f, y) in nodal_set
            else mm.vproductionannual[r, f, y]
            >= mm.vuseannual[r, f, y]
            + sum(mm.vtradeannual[r, rr, f, y] * trade_value(r, rr, f, y) for rr in routes_from.get((r, f, y), []))
            + pv("AccumulatedAnnualDemand", r, f, y)
        ),
        doc="Annual energy balance",
    )

    node_region = loaded.get("nodes", {})
    line_years_set = set(ix.line_years)
    lines_into: dict[str, list[str]] = {}
    lines_out_of: dict[str, list[str]] = {}
    for tr, rec in lines.items():
        lines_out_of.setdefault(rec.n1, []).append(tr)
        lines_into.setdefault(rec.n2, []).append(tr)

    storage_of: dict[tuple, str] = {}
    for links in (ix.charge_links, ix.discharge_links):
        for (r, s), entries in links.items():
            for t, _, _ in entries:
                storage_of.setdefault((r, t), s)

    def _tech_share(n: str, t: str, y: int) -> float:
        # Storage technologies follow their storage unless placed explicitly.
        r = node_region[n]
        nodes = ix.nodes_of[r]
        s = storage_of.get((r, t))
        placed = any(P["NodalDistributionTechnologyCapacity"].has_row((nn, t, y)) for nn in nodes)
        if s is not None and not placed:
            return nodal_share(P, "NodalDistributionStorageCapacity", nodes, n, s, y)
        return nodal_share(P, "NodalDistributionTechnologyCapacity", nodes, n, t, y)

    model.ebn1_nodal_production = pyo.Constraint(
        model.NODAL,
        rule=lambda mm, n, l, f, y: mm.vproductionnodal[n, l, f, y]
        == sum(
            _tech_share(n, t, y) * mm.vproductionbytechnology[node_region[n], l, t, f, y]
            for t in producers.get((node_region[n], f, y), [])
        ),
    )
    model.ebn2_nodal_use = pyo.Constraint(
        model.NODAL,
        rule=lambda mm, n, l, f, y: mm.vusenodal[n, l, f, y]
        == sum(
            _tech_share(n, t, y) * mm.vusebytechnology[node_region[n], l, t, f, y]
            for t in users.get((node_region[n], f, y), [])
        )
        + nodal_share(P, "NodalDistributionDemand", ix.nodes_of[node_region[n]], n, f, y) * mm.vdemand[node_region[n], l, f, y],
    )

    def _nodal_balance(mm, n, l, f, y):
        inflow = sum(
            lines[tr].efficiency * mm.vtransmissionflowforward[tr, l, f, y]
            for tr in lines_into.get(n, [])
            if (tr, y) in line_years_set and lines[tr].f == f
        ) + sum(
            lines[tr].efficiency * mm.vtransmissionflowreverse[tr, l, f, y]
            for tr in lines_out_of.get(n, [])
            if (tr, y) in line_years_set and lines[tr].f == f
        )
        outflow = sum(
            mm.vtransmissionflowforward[tr, l, f, y]
            for tr in lines_out_of.get(n, [])
            if (tr, y) in line_years_set and lines[tr].f == f
        ) + sum(
            mm.vtransmissionflowreverse[tr, l, f, y]
            for tr in lines_into.get(n, [])
            if (tr, y) in line_years_set and lines[tr].f == f
        )
        return mm.vproductionnodal[n, l, f, y] + inflow - outflow >= mm.vusenodal[n, l, f, y]

    model.ebn3_nodal_balance = pyo.Constraint(model.NODAL, rule=_nodal_balance, doc="Nodal energy balance")
    model.ebn4_nodal_production_annual = pyo.Constraint(
        model.NODAL_ANNUAL,
        rule=lambda mm, n, f, y: mm.vproductionannualnodal[n, f, y]
        == sum(mm.vproductionnodal[n, l, f, y] for l in mm.L),
    )
    model.ebn5_nodal_use_annual = pyo.Constraint(
        model.NODAL_ANNUAL,
        rule=lambda mm, n, f, y: mm.vuseannualnodal[n, f, y] == sum(mm.vusenodal[n, l, f, y] for l in mm.L),
    )

    # Nodes have no trade; the annual balance only places AccumulatedAnnualDemand.
    def _nodal_annual_balance(mm, n, f, y):
        r = node_region[n]
        demand = pv("AccumulatedAnnualDemand", r, f, y)
        if demand <= 0.0:
            return pyo.Constraint.Skip
        share = nodal_share(P, "NodalDistributionDemand", ix.nodes_of[r], n, f, y)
        return mm.vproductionannualnodal[n, f, y] >= mm.vuseannualnodal[n, f, y] + demand * share

    model.ebn6_nodal_annual_balance = pyo.Constraint(
        model.NODAL_ANNUAL, rule=_nodal_annual_balance, doc="Annual nodal energy balance"
    )

    # STEP 8: transmission lines
    build_set = set(endogenous)

    def _line_exists(mm, tr, y):
        rec = lines[tr]
        if rec.yconstruction is not None:
            in_service = rec.yconstruction <= y < rec.yconstruction + rec.operationallife
            return mm.vtransmissionexists[tr, y] == (1.0 if in_service else 0.0)
        return mm.vtransmissionexists[tr, y] == sum(
            mm.vtransmissionbuilt[tr, yy]
            for yy in mm.Y
            if (tr, yy) in build_set and yy <= y and y - yy < rec.operationallife
        )

    model.tr1_line_exists = pyo.Constraint(model.LINE_YEARS, rule=_line_exists, doc="Line availability")
    model.tr2_build_once = pyo.Constraint(
        pyo.Set(initialize=sorted({tr for tr, _ in endogenous}), ordered=True),
        rule=lambda mm, tr: sum(mm.vtransmissionbuilt[tr, y] for y in mm.Y if (tr, y) in build_set) <= 1.0,
        doc="A line is built at most once",
    )
    model.tr3_forward_limit = pyo.Constraint(
        model.LINE_FLOW,
        rule=lambda mm, tr, l, f, y: mm.vtransmissionflowforward[tr, l, f, y]
        <= lines[tr].maxflow * pv("YearSplit", l, y) * mm.vtransmissionexists[tr, y],
    )
    model.tr4_reverse_limit = pyo.Constraint(
        model.LINE_FLOW,
        rule=lambda mm, tr, l, f, y: mm.vtransmissionflowreverse[tr, l, f, y]
        <= lines[tr].maxflow * pv("YearSplit", l, y) * mm.vtransmissionexists[tr, y],
    )
    model.tr5_net_flow = pyo.Constraint(
        model.LINE_FLOW,
        rule=lambda mm, tr, l, f, y: mm.vtransmissionbyline[tr, l, f, y]
        == mm.vtransmissionflowforward[tr, l, f, y] - mm.vtransmissionflowreverse[tr, l, f, y],
    )
    model.ctr1_capital = pyo.Constraint(
        model.LINE_BUILD,
        rule=lambda mm, tr, y: mm.vcapitalinvestmenttransmission[tr, y]
        == lines[tr].capitalcost * lines[tr].maxflow * mm.vtransmissionbuilt[tr, y],
    )
    model.ctr2_discounted_capital = pyo.Constraint(
        model.LINE_BUILD,
        rule=lambda mm, tr, y: mm.vdiscountedcapitalinvestmenttransmission[tr, y]
        == mm.vcapitalinvestmenttransmission[tr, y] / disc(rate_line(tr, y), y),
    )
    model.ctr3_salvage = pyo.Constraint(
        model.LINE_BUILD,
        rule=lambda mm, tr, y: mm.vsalvagevaluetransmission[tr, y]
        == mm.vcapitalinvestmenttransmission[tr, y]
        * salvage_factor(
            rate_line(tr, y),
            pv("DepreciationMethod", line_region(loaded, tr)),
            lines[tr].operationallife,
            y,
            last_year,
        ),
    )
    model.ctr4_discounted_salvage = pyo.Constraint(
        model.LINE_BUILD,
        rule=lambda mm, tr, y: mm.vdiscountedsalvagevaluetransmission[tr, y]
        == mm.vsalvagevaluetransmission[tr, y] / (1.0 + rate_line(tr, y)) ** salvage_disc_exp,
    )
    model.ctr5_operating = pyo.Constraint(
        model.LINE_YEARS,
        rule=lambda mm, tr, y: mm.voperatingcosttransmission[tr, y]
        == lines[tr].variablecost
        * sum(
            mm.vtransmissionflowforward[tr, l, lines[tr].f, y] + mm.vtransmissionflowreverse[tr, l, lines[tr].f, y]
            for l in mm.L
        )
        + lines[tr].fixedcost * lines[tr].maxflow * mm.vtransmissionexists[tr, y],
    )
    model.ctr6_discounted_operating = pyo.Constraint(
        model.LINE_YEARS,
        rule=lambda mm, tr, y: mm.vdiscountedoperatingcosttransmission[tr, y]
        == mm.voperatingcosttransmission[tr, y] / disc(rate_line(tr, y), y, mid=True),
    )
    lines_of_region: dict[str, list[str]] = {}
    for tr in lines:
        lines_of_region.setdefault(line_region(loaded, tr), []).append(tr)

    model.ctr7_regional_transmission_cost = pyo.Constraint(
        model.R,
        model.Y,
        rule=lambda mm, r, y: mm.vtotaldiscountedtransmissioncostbyregion[r, y]
        == sum(
            mm.vdiscountedoperatingcosttransmission[tr, y]
            for tr in lines_of_region.get(r, [])
            if (tr, y) in line_years_set
        )
        + sum(
            mm.vdiscountedcapitalinvestmenttransmission[tr, y] - mm.vdiscountedsalvagevaluetransmission[tr, y]
            for tr in lines_of_region.get(r, [])
            if (tr, y) in build_set
        ),
        doc="Discounted transmission cost carried by the region of the sending node",
    )

    # STEP 9: storage
    charge_links = ix.charge_links
    discharge_links = ix.discharge_links
    flags = loaded.get("storage_flags", {})
    prev_ts = {l: (timeslices[i - 1] if i > 0 else None) for i, l in enumerate(timeslices)}
    prev_year = {y: (years[i - 1] if i > 0 else None) for i, y in enumerate(years)}

    model.s1_charge = pyo.Constraint(
        model.RSLY,
        rule=lambda mm, r, s, l, y: mm.vrateofstoragecharge[r, s, l, y]
        == sum(ratio * mm.vrateofactivity[r, l, t, m, y] for t, m, ratio in charge_links.get((r, s), [])),
    )
    model.s2_discharge = pyo.Constraint(
        model.RSLY,
        rule=lambda mm, r, s, l, y: mm.vrateofstoragedischarge[r, s, l, y]
        == sum(ratio * mm.vrateofactivity[r, l, t, m, y] for t, m, ratio in discharge_links.get((r, s), [])),
    )

    def _level_before(mm, r, s, l, y):
        p = prev_ts[l]
        return mm.vstoragelevelyearstart[r, s, y] if p is None else mm.vstorageleveltsend[r, s, p, y]

    model.s3_level_timeslice = pyo.Constraint(
        model.RSLY,
        rule=lambda mm, r, s, l, y: mm.vstorageleveltsend[r, s, l, y]
        == _level_before(mm, r, s, l, y)
        + (mm.vrateofstoragecharge[r, s, l, y] - mm.vrateofstoragedischarge[r, s, l, y]) * pv("YearSplit", l, y),
        doc="Chronological storage level",
    )
    model.s4_level_year_start = pyo.Constraint(
        model.RSY,
        rule=lambda mm, r, s, y: (
            mm.vstoragelevelyearstart[r, s, y] == pv("StorageLevelStart", r, s)
            if prev_year[y] is None
            else mm.vstoragelevelyearstart[r, s, y] == mm.vstoragelevelyearend[r, s, prev_year[y]]
        ),
        doc="Storage level carried from the previous year",
    )
    model.s5_level_year_end = pyo.Constraint(
        model.RSY,
        rule=lambda mm, r, s, y: (
            mm.vstoragelevelyearend[r, s, y] == mm.vstoragelevelyearstart[r, s, y]
            if not timeslices
            else mm.vstoragelevelyearend[r, s, y] == mm.vstorageleveltsend[r, s, timeslices[-1], y]
        ),
    )
    model.s6_net_zero_year = pyo.Constraint(
        model.RSY,
        rule=lambda mm, r, s, y: (
            mm.vstoragelevelyearend[r, s, y] == mm.vstoragelevelyearstart[r, s, y]
            if flags.get(s) is not None and flags[s].netzeroyear
            else pyo.Constraint.Skip
        ),
        doc="Storage returns to its opening level at the end of each year",
    )

    tg1_of = loaded.get("tg1_of", {})
    tg2_of = loaded.get("tg2_of", {})
    groups1 = _contiguous_groups(timeslices, lambda l: tg1_of.get(l))
    groups2 = _contiguous_groups(timeslices, lambda l: (tg1_of[l], tg2_of[l]) if l in tg1_of and l in tg2_of else None)
    group_rows = []
    for r, s in rs:
        fl = flags.get(s)
        if fl is None:
            continue
        for y in years:
            if fl.netzerotg1:
                group_rows.extend((r, s, g[0], g[-1], y) for g in groups1)
            if fl.netzerotg2:
                group_rows.extend((r, s, g[0], g[-1], y) for g in groups2)
    model.s7_net_zero_group = pyo.Constraint(
        pyo.Set(initialize=list(dict.fromkeys(group_rows)), dimen=5, ordered=True),
        rule=lambda mm, r, s, lfirst, llast, y: mm.vstorageleveltsend[r, s, llast, y] == _level_before(mm, r, s, lfirst, y),
        doc="Storage returns to its opening level at the end of each timeslice group",
    )

    model.s8_accumulated_storage_capacity = pyo.Constraint(
        model.RSY,
        rule=lambda mm, r, s, y: mm.vaccumulatednewstoragecapacity[r, s, y]
        == sum(
            mm.vnewstoragecapacity[r, s, yy] for yy in mm.Y if yy <= y and y - yy < pv("OperationalLifeStorage", r, s)
        ),
    )
    model.s9_upper_limit = pyo.Constraint(
        model.RSY,
        rule=lambda mm, r, s, y: mm.vstorageupperlimit[r, s, y]
        == mm.vaccumulatednewstoragecapacity[r, s, y] + pv("ResidualStorageCapacity", r, s, y),
    )
    model.ns14_max_storage_capacity = pyo.Constraint(model.RSY, rule=_upper("vstorageupperlimit", "TotalAnnualMaxCapacityStorage"))
    model.ns15_min_storage_capacity = pyo.Constraint(model.RSY, rule=_lower("vstorageupperlimit", "TotalAnnualMinCapacityStorage"))
    model.ns16_max_storage_investment = pyo.Constraint(
        model.RSY, rule=_upper("vnewstoragecapacity", "TotalAnnualMaxCapacityInvestmentStorage")
    )
    model.ns17_min_storage_investment = pyo.Constraint(
        model.RSY, rule=_lower("vnewstoragecapacity", "TotalAnnualMinCapacityInvestmentStorage")
    )
    model.s10_lower_limit = pyo.Constraint(
        model.RSY,
        rule=lambda mm, r, s, y: mm.vstoragelowerlimit[r, s, y]
        == pv("MinStorageCharge", r, s, y) * mm.vstorageupperlimit[r, s, y],
    )
    model.s11_level_max = pyo.Constraint(
        model.RSLY,
        rule=lambda mm, r, s, l, y: mm.vstorageleveltsend[r, s, l, y] <= mm.vstorageupperlimit[r, s, y],
    )
    model.s12_level_min = pyo.Constraint(
        model.RSLY,
        rule=lambda mm, r, s, l, y: mm.vstorageleveltsend[r, s, l, y] >= mm.vstoragelowerlimit[r, s, y],
    )
    model.s13_max_charge = pyo.Constraint(
        model.RSLY,
        rule=lambda mm, r, s, l, y: (
            pyo.Constraint.Skip
            if pv("StorageMaxChargeRate", r, s) <= 0.0
            else mm.vrateofstoragecharge[r, s, l, y] <= pv("StorageMaxChargeRate", r, s)
        ),
    )
    model.s14_max_discharge = pyo.Constraint(
        model.RSLY,
        rule=lambda mm, r, s, l, y: (
            pyo.Constraint.Skip
            if pv("StorageMaxDischargeRate", r, s) <= 0.0
            else mm.vrateofstoragedischarge[r, s, l, y] <= pv("StorageMaxDischargeRate", r, s)
        ),
    )
    model.si1_storage_capital = pyo.Constraint(
        model.RSY,
        rule=lambda mm, r, s, y: mm.vcapitalinvestmentstorage[r, s, y]
        == pv("CapitalCostStorage", r, s, y) * mm.vnewstoragecapacity[r, s, y],
    )
    model.si2_storage_discounted_capital = pyo.Constraint(
        model.RSY,
        rule=lambda mm, r, s, y: mm.vdiscountedcapitalinvestmentstorage[r, s, y]
        == mm.vcapitalinvestmentstorage[r, s, y] / disc(rate_storage(r, s, y), y),
    )
    model.si3_storage_salvage = pyo.Constraint(
        model.RSY,
        rule=lambda mm, r, s, y: mm.vsalvagevaluestorage[r, s, y]
        == mm.vcapitalinvestmentstorage[r, s, y]
        * salvage_factor(
            rate_storage(r, s, y), pv("DepreciationMethod", r), pv("OperationalLifeStorage", r, s), y, last_year
        ),
    )
    model.si4_storage_discounted_salvage = pyo.Constraint(
        model.RSY,
        rule=lambda mm, r, s, y: mm.vdiscountedsalvagevaluestorage[r, s, y]
        == mm.vsalvagevaluestorage[r, s, y] / (1.0 + rate_storage(r, s, y)) ** salvage_disc_exp,
    )
    model.si5_storage_total_cost = pyo.Constraint(
        model.RSY,
        rule=lambda mm, r, s, y: mm.vtotaldiscountedstoragecost[r, s, y]
        == mm.vdiscountedcapitalinvestmentstorage[r, s, y] - mm.vdiscountedsalvagevaluestorage[r, s, y],
    )

    # STEP 10: technology costs
    model.cc1_capital = pyo.Constraint(
        model.R,
        model.T,
        model.Y,
        rule=lambda mm, r, t, y: mm.vcapitalinvestment[r, t, y] == pv("CapitalCost", r, t, y) * mm.vnewcapacity[r, t, y],
    )
    model.cc2_discounted_capital = pyo.Constraint(
        model.R,
        model.T,
        model.Y,
        rule=lambda mm, r, t, y: mm.vdiscountedcapitalinvestment[r, t, y]
        == mm.vcapitalinvestment[r, t, y] / disc(rate_tech(r, t, y), y),
    )
    model.sv1_salvage = pyo.Constraint(
        model.R,
        model.T,
        model.Y,
        rule=lambda mm, r, t, y: mm.vsalvagevalue[r, t, y]
        == mm.vcapitalinvestment[r, t, y]
        * salvage_factor(rate_tech(r, t, y), pv("DepreciationMethod", r), pv("OperationalLife", r, t), y, last_year),
        doc="Salvage value at the end of the horizon",
    )
    model.sv4_discounted_salvage = pyo.Constraint(
        model.R,
        model.T,
        model.Y,
        rule=lambda mm, r, t, y: mm.vdiscountedsalvagevalue[r, t, y]
        == mm.vsalvagevalue[r, t, y] / (1.0 + rate_tech(r, t, y)) ** salvage_disc_exp,
    )
    model.oc1_variable_cost = pyo.Constraint(
        model.R,
        model.T,
        model.Y,
        rule=lambda mm, r, t, y: mm.vannualvariableoperatingcost[r, t, y]
        == sum(
            pv("VariableCost", r, t, m, y) * mm.vtotalannualtechnologyactivitybymode[r, t, m, y]
            for m in modes_of.get((r, t, y), [])
        ),
    )
    model.oc2_fixed_cost = pyo.Constraint(
        model.R,
        model.T,
        model.Y,
        rule=lambda mm, r, t, y: mm.vannualfixedoperatingcost[r, t, y]
        == pv("FixedCost", r, t, y) * mm.vtotalcapacityannual[r, t, y],
    )
    model.oc3_operating_cost = pyo.Constraint(
        model.R,
        model.T,
        model.Y,
        rule=lambda mm, r, t, y: mm.voperatingcost[r, t, y]
        == mm.vannualvariableoperatingcost[r, t, y] + mm.vannualfixedoperatingcost[r, t, y],
    )
    model.oc4_discounted_operating_cost = pyo.Constraint(
        model.R,
        model.T,
        model.Y,
        rule=lambda mm, r, t, y: mm.vdiscountedoperatingcost[r, t, y]
        == mm.voperatingcost[r, t, y] / disc(rate_tech(r, t, y), y, mid=True),
        doc="Operating cost discounted to mid-year",
    )

    # STEP 11: emissions
    em_coeffs = ix.emission_coeffs
    em_of_tech: dict[tuple, list[str]] = {}
    em_of_region: dict[tuple, list[str]] = {}
    for (r, t, e, y) in em_coeffs:
        em_of_tech.setdefault((r, t, y), []).append(e)
        em_of_region.setdefault((r, e, y), []).append(t)

    model.e1_emission_by_mode = pyo.Constraint(
        pyo.Set(initialize=ix.order(ix.valid["vannualtechnologyemissionbymode"], ("r", "t", "e", "m", "y")), dimen=5, ordered=True),
        rule=lambda mm, r, t, e, m, y: mm.vannualtechnologyemissionbymode[r, t, e, m, y]
        == dict(em_coeffs[(r, t, e, y)])[m] * mm.vtotalannualtechnologyactivitybymode[r, t, m, y],
    )
    model.e2_technology_emission = pyo.Constraint(
        pyo.Set(initialize=list(em_coeffs), dimen=4, ordered=True),
        rule=lambda mm, r, t, e, y: mm.vannualtechnologyemission[r, t, e, y]
        == sum(mm.vannualtechnologyemissionbymode[r, t, e, m, y] for m, _ in em_coeffs[(r, t, e, y)]),
    )
    model.e3_emission_penalty_by_emission = pyo.Constraint(
        pyo.Set(initialize=list(em_coeffs), dimen=4, ordered=True),
        rule=lambda mm, r, t, e, y: mm.vannualtechnologyemissionpenaltybyemission[r, t, e, y]
        == mm.vannualtechnologyemission[r, t, e, y] * pv("EmissionsPenalty", r, e, y),
    )
    model.e4_emissions_penalty = pyo.Constraint(
        model.R,
        model.T,
        model.Y,
        rule=lambda mm, r, t, y: mm.vannualtechnologyemissionspenalty[r, t, y]
        == sum(mm.vannualtechnologyemissionpenaltybyemission[r, t, e, y] for e in em_of_tech.get((r, t, y), [])),
    )
    model.e5_discounted_emissions_penalty = pyo.Constraint(
        model.R,
        model.T,
        model.Y,
        rule=lambda mm, r, t, y: mm.vdiscountedtechnologyemissionspenalty[r, t, y]
        == mm.vannualtechnologyemissionspenalty[r, t, y] / disc(rate_tech(r, t, y), y, mid=True),
    )
    model.e6_annual_emissions = pyo.Constraint(
        model.R,
        model.E,
        model.Y,
        rule=lambda mm, r, e, y: mm.vannualemissions[r, e, y]
        == sum(mm.vannualtechnologyemission[r, t, e, y] for t in em_of_region.get((r, e, y), [])),
    )
    model.e7_model_period_emissions = pyo.Constraint(
        model.R,
        model.E,
        rule=lambda mm, r, e: mm.vmodelperiodemissions[r, e]
        == sum(mm.vannualemissions[r, e, y] for y in mm.Y) + pv("ModelPeriodExogenousEmission", r, e),
    )
    model.e8_annual_emission_limit = pyo.Constraint(
        model.R,
        model.E,
        model.Y,
        rule=lambda mm, r, e, y: (
            pyo.Constraint.Skip
            if pv("AnnualEmissionLimit", r, e, y) == INF
            else mm.vannualemissions[r, e, y] + pv("AnnualExogenousEmission", r, e, y) <= pv("AnnualEmissionLimit", r, e, y)
        ),
    )
    model.e9_model_period_emission_limit = pyo.Constraint(
        model.R,
        model.E,
        rule=lambda mm, r, e: (
            pyo.Constraint.Skip
            if pv("ModelPeriodEmissionLimit", r, e) == INF
            else mm.vmodelperiodemissions[r, e] <= pv("ModelPeriodEmissionLimit", r, e)
        ),
    )

    # STEP 12: reserve margin and renewable production target
    model.rm1_capacity_in_reserve_margin = pyo.Constraint(
        model.R,
        model.Y,
        rule=lambda mm, r, y: mm.vtotalcapacityinreservemargin[r, y]
        == sum(
            mm.vtotalcapacityannual[r, t, y] * pv("ReserveMarginTagTechnology", r, t, y) * pv("CapacityToActivityUnit", r, t)
            for t in mm.T
            if pv("ReserveMarginTagTechnology", r, t, y) != 0.0
        ),
    )
    model.rm2_demand_needing_reserve_margin = pyo.Constraint(
        model.R,
        model.L,
        model.Y,
        rule=lambda mm, r, l, y: mm.vdemandneedingreservemargin[r, l, y]
        == sum(
            mm.vproduction[r, l, f, y] * pv("ReserveMarginTagFuel", r, f, y) / pv("YearSplit", l, y)
            for f in mm.F
            if pv("ReserveMarginTagFuel", r, f, y) != 0.0 and pv("YearSplit", l, y) > 0.0
        ),
    )
    model.rm3_reserve_margin = pyo.Constraint(
        model.R,
        model.L,
        model.Y,
        rule=lambda mm, r, l, y: (
            pyo.Constraint.Skip
            if pv("ReserveMargin", r, y) <= 0.0
            else mm.vdemandneedingreservemargin[r, l, y] * pv("ReserveMargin", r, y)
            <= mm.vtotalcapacityinreservemargin[r, y]
        ),
    )
    produced_in: dict[tuple, list[tuple]] = {}
    for (r, t, f, y) in out_coeffs:
        produced_in.setdefault((r, y), []).append((t, f))

    model.re2_renewable_production = pyo.Constraint(
        model.R,
        model.Y,
        rule=lambda mm, r, y: mm.vtotalreproductionannual[r, y]
        == sum(
            mm.vproductionbytechnologyannual[r, t, f, y] * pv("RETagTechnology", r, t, y)
            for t, f in produced_in.get((r, y), [])
            if pv("RETagTechnology", r, t, y) != 0.0
        ),
    )
    model.re3_target_fuel_production = pyo.Constraint(
        model.R,
        model.Y,
        rule=lambda mm, r, y: mm.vretotalproductionoftargetfuelannual[r, y]
        == sum(
            mm.vproductionannual[r, f, y] * pv("RETagFuel", r, f, y) for f in mm.F if pv("RETagFuel", r, f, y) != 0.0
        ),
    )
    model.re4_renewable_target = pyo.Constraint(
        model.R,
        model.Y,
        rule=lambda mm, r, y: (
            pyo.Constraint.Skip
            if pv("REMinProductionTarget", r, y) <= 0.0
            else pv("REMinProductionTarget", r, y) * mm.vretotalproductionoftargetfuelannual[r, y]
            <= mm.vtotalreproductionannual[r, y]
        ),
    )

    # STEP 13: cost totals and objective
    storages_of: dict[str, list[str]] = {}
    for r, s in rs:
        storages_of.setdefault(r, []).append(s)

    model.tdc1_cost_by_technology = pyo.Constraint(
        model.R,
        model.T,
        model.Y,
        rule=lambda mm, r, t, y: mm.vtotaldiscountedcostbytechnology[r, t, y]
        == mm.vdiscountedoperatingcost[r, t, y]
        + mm.vdiscountedcapitalinvestment[r, t, y]
        + mm.vdiscountedtechnologyemissionspenalty[r, t, y]
        - mm.vdiscountedsalvagevalue[r, t, y],
    )
    model.tdc2_total_cost = pyo.Constraint(
        model.R,
        model.Y,
        rule=lambda mm, r, y: mm.vtotaldiscountedcost[r, y]
        == sum(mm.vtotaldiscountedcostbytechnology[r, t, y] for t in mm.T)
        + sum(mm.vtotaldiscountedstoragecost[r, s, y] for s in storages_of.get(r, []))
        + mm.vtotaldiscountedtransmissioncostbyregion[r, y],
        doc="Total discounted cost equals the technology, storage and transmission subtotals",
    )
    model.obj = pyo.Objective(
        expr=sum(model.vtotaldiscountedcost[r, y] for r in model.R for y in model.Y),
        sense=pyo.minimize,
    )

    logger.info(
        "Built model %s for years %s-%s in %.2fs",
        name,
        years[0] if years else None,
        years[-1] if years else None,
        time.perf_counter() - started,
    )
    return model


def model_statistics(model: pyo.ConcreteModel) -> dict[str, int]:
    n_vars = sum(len(v) for v in model.component_objects(pyo.Var, active=True))
    n_cons = sum(len(c) for c in model.component_objects(pyo.Constraint, active=True))
    n_int = sum(
        1
        for v in model.component_objects(pyo.Var, active=True)
        for idx in v
        if not v[idx].is_continuous()
    )
    return {"variables": n_vars, "constraints": n_cons, "integer_variables": n_int}


def extract_values(model: pyo.ConcreteModel, families: Optional[Iterable[str]] = None) -> dict[str, dict[tuple, float]]:
    """Solved values per family; tuples without a value (never sent to the solver) are left out."""
    names = list(VARIABLE_FAMILIES) if families is None else [f for f in families if f in VARIABLE_FAMILIES]
    out: dict[str, dict[tuple, float]] = {}
    for family in names:
        var = getattr(model, family, None)
        if var is None:
            continue
        values: dict[tuple, float] = {}
        for idx in var:
            val = var[idx].value
            if val is None:
                continue
            key = idx if isinstance(idx, tuple) else (idx,)
            values[key] = float(val)
        out[family] = values
    return out


def write_model_file(model: pyo.ConcreteModel, path, *, symbolic: bool = True) -> str:
    fmt = "mps" if str(path).lower().endswith(".mps") else "lp"
    model.write(str(path), format=fmt, io_options={"symbolic_solver_labels": symbolic})
    return fmt

