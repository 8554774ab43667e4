from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
import itertools
from typing import Any, Callable, Hashable, Iterable, Sequence

from enplan.io_utils import get_logger

from .errors import DataError, ModelConstructionError


logger = get_logger(__name__)

TOPOLOGIES = ("lineflow", "transshipment")

# Families that shrink to their valid tuples when restrictvars is on.
# Without it they span the full set product and invalid tuples are fixed at zero.
RESTRICTABLE_FAMILIES: dict[str, tuple[str, ...]] = {
    "vrateofactivity": ("r", "l", "t", "m", "y"),
    "vtotalannualtechnologyactivitybymode": ("r", "t", "m", "y"),
    "vproductionbytechnology": ("r", "l", "t", "f", "y"),
    "vusebytechnology": ("r", "l", "t", "f", "y"),
    "vproductionbytechnologyannual": ("r", "t", "f", "y"),
    "vusebytechnologyannual": ("r", "t", "f", "y"),
    "vannualtechnologyemissionbymode": ("r", "t", "e", "m", "y"),
    "vannualtechnologyemission": ("r", "t", "e", "y"),
    "vannualtechnologyemissionpenaltybyemission": ("r", "t", "e", "y"),
}

DIM_SETS = {"r": "REGION", "rr": "REGION", "t": "TECHNOLOGY", "f": "FUEL", "m": "MODE_OF_OPERATION",
            "y": "YEAR", "l": "TIMESLICE", "e": "EMISSION", "s": "STORAGE", "n": "NODE", "tr": "TRANSMISSIONLINE"}


def partition_map_merge(
    items: Iterable[Any],
    key: Callable[[Any], Hashable],
    mapper: Callable[[list], dict],
    *,
    workers: int = 1,
) -> dict:
    """
    Partition items by key, map each partition to a dict, and merge the parts.

    Partitions are dispatched in sorted key order and the merged dict is
    sorted by its keys, so the result does not depend on the worker count.
    Partitions must produce disjoint keys.
    """
    partitions: dict[Hashable, list] = {}
    for item in items:
        partitions.setdefault(key(item), []).append(item)
    ordered = [partitions[p] for p in sorted(partitions)]

    if workers <= 1 or len(ordered) <= 1:
        parts = [mapper(chunk) for chunk in ordered]
    else:
        with ThreadPoolExecutor(max_workers=workers) as pool:
            parts = list(pool.map(mapper, ordered))

    merged: dict = {}
    for part in parts:
        overlap = merged.keys() & part.keys()
        if overlap:
            raise ModelConstructionError(f"Partitions produced overlapping keys: {sorted(overlap)[:5]}")
        merged.update(part)
    return dict(sorted(merged.items()))


def _group_coefficients(rows: list[tuple]) -> dict[tuple, list[tuple]]:
    """(key..., m, value) rows -> {key: [(m, value), ...]} with modes in row order."""
    out: dict[tuple, list[tuple]] = {}
    for row in rows:
        out.setdefault(row[0], []).append((row[1], row[2]))
    return out


def check_references(family: str, declared: Iterable[tuple], referenced: Iterable[tuple]) -> None:
    """Raise ModelConstructionError when a referenced tuple of a family was not declared."""
    declared_set = declared if isinstance(declared, (set, frozenset, dict)) else set(declared)
    missing = [idx for idx in referenced if idx not in declared_set]
    if missing:
        raise ModelConstructionError(
            f"{len(missing)} referenced tuples of {family} were not declared, e.g. {missing[:3]}"
        )


def resolve_topology(loaded: dict[str, Any], requested: str = "auto") -> str:
    if requested not in ("auto",) + TOPOLOGIES:
        raise DataError(f"Unknown transmission topology {requested!r}; expected auto, lineflow or transshipment")
    if requested != "auto":
        return requested
    if loaded.get("lines") and loaded.get("transmission_enabled"):
        return "lineflow"
    return "transshipment"


@dataclass
class IndexSets:
    """Valid index tuples and coefficient maps for one model build."""

    sets: dict[str, list]
    restrict: bool
    topology: str
    positions: dict[str, dict] = field(default_factory=dict)
    rtmy: list[tuple] = field(default_factory=list)
    output_coeffs: dict[tuple, list[tuple]] = field(default_factory=dict)
    input_coeffs: dict[tuple, list[tuple]] = field(default_factory=dict)
    emission_coeffs: dict[tuple, list[tuple]] = field(default_factory=dict)
    modes_of: dict[tuple, list] = field(default_factory=dict)
    storage_pairs: list[tuple] = field(default_factory=list)
    charge_links: dict[tuple, list[tuple]] = field(default_factory=dict)
    discharge_links: dict[tuple, list[tuple]] = field(default_factory=dict)
    unit_tuples: list[tuple] = field(default_factory=list)
    trade_routes: list[tuple] = field(default_factory=list)
    line_years: list[tuple] = field(default_factory=list)
    line_flow_index: list[tuple] = field(default_factory=list)
    nodal_rfy: list[tuple] = field(default_factory=list)
    nodes_of: dict[str, list[str]] = field(default_factory=dict)
    valid: dict[str, set] = field(default_factory=dict)

    def order(self, tuples: Iterable[tuple], dims: Sequence[str]) -> list[tuple]:
        """Sort tuples lexicographically by declared set positions."""
        pos = [self.positions[DIM_SETS[d]] for d in dims]
        return sorted(tuples, key=lambda idx: tuple(p[v] for p, v in zip(pos, idx)))

    def product(self, dims: Sequence[str]) -> list[tuple]:
        return list(itertools.product(*(self.sets[DIM_SETS[d]] for d in dims)))

    def domain(self, family: str) -> list[tuple]:
        """Tuples to declare for a restrictable family."""
        dims = RESTRICTABLE_FAMILIES[family]
        if self.restrict:
            return self.order(self.valid[family], dims)
        return self.product(dims)

    def fixed_zero(self, family: str) -> list[tuple]:
        """Declared tuples that are excluded by data (empty when restricting)."""
        if self.restrict:
            return []
        valid = self.valid[family]
        return [idx for idx in self.domain(family) if idx not in valid]


def build_indices(
    loaded: dict[str, Any],
    *,
    restrict: bool = True,
    topology: str = "auto",
    workers: int = 1,
) -> IndexSets:
    sets = dict(loaded["sets"])
    sets["TRANSMISSIONLINE"] = list(loaded.get("lines", {}))
    params = loaded["params"]
    years = set(sets["YEAR"])
    regions = set(sets["REGION"])
    resolved = resolve_topology(loaded, topology)

    ix = IndexSets(sets=sets, restrict=restrict, topology=resolved)
    ix.positions = {name: {v: i for i, v in enumerate(values)} for name, values in sets.items()}

    # STEP 1: activity ratios -> per (r,t,f,y) mode coefficients, partitioned by region
    def _ratio_rows(name: str) -> list[tuple]:
        return [
            ((r, t, f, y), m, val)
            for (r, t, f, m, y), val in params[name].nonzero()
            if y in years
        ]

    ix.output_coeffs = partition_map_merge(_ratio_rows("OutputActivityRatio"), lambda row: row[0][0], _group_coefficients, workers=workers)
    ix.input_coeffs = partition_map_merge(_ratio_rows("InputActivityRatio"), lambda row: row[0][0], _group_coefficients, workers=workers)

    # STEP 2: storage links
    def _link_rows(name: str) -> list[tuple]:
        return [((r, s), (t, m), val) for (r, t, s, m), val in params[name].nonzero()]

    def _group_links(rows: list[tuple]) -> dict[tuple, list[tuple]]:
        out: dict[tuple, list[tuple]] = {}
        for key, (t, m), val in rows:
            out.setdefault(key, []).append((t, m, val))
        return out

    ix.charge_links = partition_map_merge(_link_rows("TechnologyToStorage"), lambda row: row[0][0], _group_links, workers=workers)
    ix.discharge_links = partition_map_merge(_link_rows("TechnologyFromStorage"), lambda row: row[0][0], _group_links, workers=workers)
    ix.storage_pairs = ix.order(set(ix.charge_links) | set(ix.discharge_links), ("r", "s"))

    # STEP 3: valid technology x mode x year tuples
    rtmy: set[tuple] = set()
    for coeffs in (ix.output_coeffs, ix.input_coeffs):
        for (r, t, f, y), modes in coeffs.items():
            rtmy.update((r, t, m, y) for m, _ in modes)
    for links in (ix.charge_links, ix.discharge_links):
        for (r, s), entries in links.items():
            rtmy.update((r, t, m, y) for t, m, _ in entries for y in years)
    ix.rtmy = ix.order(rtmy, ("r", "t", "m", "y"))
    for r, t, m, y in ix.rtmy:
        ix.modes_of.setdefault((r, t, y), []).append(m)

    # STEP 4: emissions, only on active technology modes
    ear_rows = [
        ((r, t, e, y), m, val)
        for (r, t, e, m, y), val in params["EmissionActivityRatio"].nonzero()
        if y in years and (r, t, m, y) in rtmy
    ]
    ix.emission_coeffs = partition_map_merge(ear_rows, lambda row: row[0][0], _group_coefficients, workers=workers)

    timeslices = sets["TIMESLICE"]
    ix.valid = {
        "vrateofactivity": {(r, l, t, m, y) for (r, t, m, y) in rtmy for l in timeslices},
        "vtotalannualtechnologyactivitybymode": set(rtmy),
        "vproductionbytechnology": {(r, l, t, f, y) for (r, t, f, y) in ix.output_coeffs for l in timeslices},
        "vusebytechnology": {(r, l, t, f, y) for (r, t, f, y) in ix.input_coeffs for l in timeslices},
        "vproductionbytechnologyannual": set(ix.output_coeffs),
        "vusebytechnologyannual": set(ix.input_coeffs),
        "vannualtechnologyemissionbymode": {
            (r, t, e, m, y) for (r, t, e, y), modes in ix.emission_coeffs.items() for m, _ in modes
        },
        "vannualtechnologyemission": set(ix.emission_coeffs),
        "vannualtechnologyemissionpenaltybyemission": set(ix.emission_coeffs),
    }

    # STEP 5: integer technology units
    ix.unit_tuples = ix.order(
        [(r, t, y) for (r, t, y), val in params["CapacityOfOneTechnologyUnit"].nonzero() if y in years and val > 0],
        ("r", "t", "y"),
    )

    # STEP 6: transmission, one topology per build
    if resolved == "transshipment":
        routes = set()
        for (r, rr, f, y), val in params["TradeRoute"].nonzero():
            if y in years and r != rr and r in regions and rr in regions:
                routes.add((r, rr, f, y))
                routes.add((rr, r, f, y))
        ix.trade_routes = ix.order(routes, ("r", "rr", "f", "y"))
    else:
        if len(params["TradeRoute"]):
            logger.warning("TradeRoute rows are ignored: transmission topology is lineflow")
        nodes = loaded.get("nodes", {})
        for n, r in nodes.items():
            ix.nodes_of.setdefault(r, []).append(n)
        # Nodal balances replace the regional balance only where the region has nodes.
        nodal = [key for key in loaded.get("transmission_enabled", {}) if key[2] in years and ix.nodes_of.get(key[0])]
        ix.nodal_rfy = ix.order(nodal, ("r", "f", "y"))
        nodal_set = set(nodal)

        line_years = []
        for tr, rec in loaded.get("lines", {}).items():
            for y in sets["YEAR"]:
                if rec.yconstruction is not None and y < rec.yconstruction:
                    continue
                if (nodes[rec.n1], rec.f, y) in nodal_set and (nodes[rec.n2], rec.f, y) in nodal_set:
                    line_years.append((tr, y))
        ix.line_years = ix.order(line_years, ("tr", "y"))
        ix.line_flow_index = ix.order(
            [(tr, l, loaded["lines"][tr].f, y) for tr, y in line_years for l in timeslices],
            ("tr", "l", "f", "y"),
        )

    logger.info(
        "Index sets: %d activity tuples, %d storage pairs, %d trade routes, %d line-years (topology=%s, restrict=%s)",
        len(ix.rtmy),
        len(ix.storage_pairs),
        len(ix.trade_routes),
        len(ix.line_years),
        resolved,
        restrict,
    )
    return ix


def nodal_share(
    params: dict[str, Any],
    table: str,
    nodes: list[str],
    n: str,
    key: str,
    y: int,
) -> float:
    """
    Share of a regional quantity located at node n.

    Uses the explicit NodalDistribution* row when the region has any row for
    (key, y); otherwise the quantity is split evenly over the region's nodes.
    """
    if not nodes:
        return 0.0
    tab = params[table]
    if any(tab.has_row((nn, key, y)) for nn in nodes):
        return float(tab.get((n, key, y), 0.0) or 0.0)
    return 1.0 / len(nodes)


def line_region(loaded: dict[str, Any], tr: str) -> str:
    """Region that carries the costs of a line (the region of its first node)."""
    return loaded["nodes"][loaded["lines"][tr].n1]
