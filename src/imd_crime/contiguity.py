"""
Contiguity neighbour graphs and row-standardised weights.

Candidate pairs come from the GeoDataFrame's spatial index (bounding-box
query refined by `intersects`), so the full pairwise comparison is never
materialised.

Rules:
    queen: any shared boundary point, a single vertex is enough
    rook:  a shared boundary segment of positive length

The graph is symmetric with no self loops. Areas without neighbours
(islands) are valid: they keep an empty weight row and are reported as
DisconnectedArea conditions.
"""

from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Iterable, List, Mapping, Optional, Sequence, Set, Tuple

import geopandas as gpd
import numpy as np
import shapely
from libpysal.weights import W

from imd_crime.diagnostics import Diagnostics, DisconnectedArea
from imd_crime.io_utils import load_params
from imd_crime.keys import DEFAULT_CANONICAL_KEY

CONTIGUITY_RULES = ("queen", "rook")

# Minimum shared boundary length (CRS units) for rook adjacency
ROOK_MIN_SHARED_LENGTH = 0.0


def _load_contiguity_config() -> dict:
    return load_params().get("contiguity", {})


# =============================================================================
# Graph
# =============================================================================

@dataclass(frozen=True)
class NeighborGraph:
    """area_id -> frozenset of neighbouring area ids."""
    neighbors: Dict[str, FrozenSet[str]]
    rule: str = "queen"

    def __post_init__(self):
        for area_id, adjacent in self.neighbors.items():
            if area_id in adjacent:
                raise ValueError(f"Self loop on area {area_id}")
            for other in adjacent:
                if other not in self.neighbors:
                    raise ValueError(f"Neighbour {other} of {area_id} is not in the graph")
                if area_id not in self.neighbors[other]:
                    raise ValueError(f"Asymmetric link {area_id} -> {other}")

    @classmethod
    def from_pairs(cls, area_ids: Iterable[str], pairs: Iterable[Tuple[str, str]], rule: str = "queen") -> "NeighborGraph":
        """Symmetrised graph over `area_ids` from (a, b) links; self pairs are ignored."""
        adjacency: Dict[str, Set[str]] = {a: set() for a in area_ids}
        for a, b in pairs:
            if a == b:
                continue
            adjacency[a].add(b)
            adjacency[b].add(a)
        return cls({a: frozenset(n) for a, n in adjacency.items()}, rule=rule)

    def __len__(self) -> int:
        return len(self.neighbors)

    def __getitem__(self, area_id: str) -> FrozenSet[str]:
        return self.neighbors[area_id]

    @property
    def ids(self) -> List[str]:
        return list(self.neighbors)

    @property
    def islands(self) -> List[str]:
        return [a for a, n in self.neighbors.items() if not n]

    @property
    def cardinalities(self) -> Dict[str, int]:
        return {a: len(n) for a, n in self.neighbors.items()}

    @property
    def n_links(self) -> int:
        """Number of undirected links."""
        return sum(len(n) for n in self.neighbors.values()) // 2

    def is_symmetric(self) -> bool:
        return all(a in self.neighbors[b] for a, n in self.neighbors.items() for b in n)

    def subgraph(self, area_ids: Iterable[str]) -> "NeighborGraph":
        """Graph restricted to `area_ids`; links leaving the set are dropped."""
        wanted = set(area_ids)
        keep = [a for a in self.neighbors if a in wanted]
        keep_set = set(keep)
        return NeighborGraph(
            {a: frozenset(self.neighbors[a] & keep_set) for a in keep},
            rule=self.rule,
        )

    def components(self) -> List[List[str]]:
        """Connected components, each sorted, in order of first member."""
        if not self.neighbors:
            return []
        w = W(
            {a: sorted(n) for a, n in self.neighbors.items()},
            id_order=self.ids,
            silence_warnings=True,
        )
        groups: Dict[int, List[str]] = {}
        for area_id, label in zip(w.id_order, w.component_labels):
            groups.setdefault(int(label), []).append(area_id)
        return [sorted(members) for members in groups.values()]


# =============================================================================
# Weights
# =============================================================================

@dataclass(frozen=True)
class RowStandardizedWeights:
    """area_id -> {neighbour: weight}; non-empty rows sum to 1."""
    rows: Dict[str, Dict[str, float]]
    islands: Tuple[str, ...] = field(default_factory=tuple)

    @property
    def ids(self) -> List[str]:
        return list(self.rows)

    def __len__(self) -> int:
        return len(self.rows)

    def row_sum(self, area_id: str) -> float:
        return float(sum(self.rows[area_id].values()))

    def restrict(self, area_ids: Sequence[str]) -> "RowStandardizedWeights":
        """
        Keep only `area_ids` and re-standardise the surviving rows.

        Areas that lose every neighbour become islands of the restricted
        weights.
        """
        keep = set(area_ids)
        rows = {}
        for area_id in area_ids:
            kept = {j: w for j, w in self.rows[area_id].items() if j in keep}
            total = sum(kept.values())
            rows[area_id] = {j: w / total for j, w in kept.items()} if total > 0 else {}
        return RowStandardizedWeights(rows, islands=tuple(a for a, r in rows.items() if not r))

    def to_libpysal(self, ids: Optional[Sequence[str]] = None):
        """
        Equivalent `libpysal.weights.W`, row-standardised (transform "r").

        Args:
            ids: Row order; defaults to the weights' own order

        Returns:
            libpysal.weights.W keyed by area id
        """
        order = list(ids) if ids is not None else self.ids
        neighbors = {i: sorted(self.rows[i]) for i in order}
        binary = {i: [1.0] * len(neighbors[i]) for i in order}
        w = W(neighbors, binary, id_order=order, silence_warnings=True)
        w.transform = "r"
        return w

    def to_dense(self, ids: Optional[Sequence[str]] = None) -> np.ndarray:
        order = list(ids) if ids is not None else self.ids
        position = {a: i for i, a in enumerate(order)}
        matrix = np.zeros((len(order), len(order)))
        for a in order:
            for b, w in self.rows[a].items():
                matrix[position[a], position[b]] = w
        return matrix


# =============================================================================
# Builder
# =============================================================================

class NeighborWeightsBuilder:
    """
    Builds contiguity graphs and row-standardised weights from area polygons.

    Args:
        key: Area id column
        rule: Default contiguity rule ("queen" or "rook"); from params.yml
            `contiguity.rule` when not given
        diagnostics: Optional collector for DisconnectedArea conditions
        logger: Optional JSONL logger
    """

    def __init__(
        self,
        key: str = DEFAULT_CANONICAL_KEY,
        rule: Optional[str] = None,
        diagnostics: Optional[Diagnostics] = None,
        logger=None,
    ):
        if rule is None:
            rule = _load_contiguity_config().get("rule", "queen")
        self.key = key
        self.rule = _check_rule(rule)
        self.diagnostics = diagnostics
        self.logger = logger

    def build_contiguity(self, areas: gpd.GeoDataFrame, rule: Optional[str] = None) -> NeighborGraph:
        """
        Contiguity graph over every row of `areas`.

        Args:
            areas: Area polygons with the key column (planar CRS)
            rule: "queen" or "rook"; defaults to the builder's rule

        Returns:
            NeighborGraph keyed by area id, in the row order of `areas`
        """
        rule = _check_rule(rule or self.rule)
        ids = areas[self.key].astype(str).tolist()
        if len(set(ids)) != len(ids):
            raise ValueError(f"Duplicate area ids in '{self.key}'")

        geoms = np.asarray(areas.geometry.values, dtype=object)
        left, right = areas.sindex.query(areas.geometry, predicate="intersects")
        distinct = left < right
        left, right = left[distinct], right[distinct]

        if rule == "rook" and len(left):
            shared = shapely.length(
                shapely.intersection(shapely.boundary(geoms[left]), shapely.boundary(geoms[right]))
            )
            keep = shared > ROOK_MIN_SHARED_LENGTH
            left, right = left[keep], right[keep]

        graph = NeighborGraph.from_pairs(
            ids, ((ids[i], ids[j]) for i, j in zip(left, right)), rule=rule
        )

        islands = graph.islands
        if islands:
            if self.diagnostics is not None:
                self.diagnostics.record_disconnected(islands)
            if self.logger:
                for area_id in islands[:5]:
                    self.logger.warning(str(DisconnectedArea(area_id)))
        log_weights_stats(weights_stats(graph), self.logger)
        return graph

    def to_row_standardized_weights(self, graph: NeighborGraph) -> RowStandardizedWeights:
        """Weight 1/k for each of an area's k neighbours; islands get an empty row."""
        rows = {}
        for area_id, adjacent in graph.neighbors.items():
            k = len(adjacent)
            rows[area_id] = {other: 1.0 / k for other in sorted(adjacent)} if k else {}
        return RowStandardizedWeights(rows, islands=tuple(graph.islands))


def _check_rule(rule: str) -> str:
    rule = str(rule).lower()
    if rule not in CONTIGUITY_RULES:
        raise ValueError(f"Unknown contiguity rule '{rule}'. Expected one of {CONTIGUITY_RULES}")
    return rule


def weights_stats(graph: NeighborGraph) -> Dict:
    """Summary of a neighbour graph for logging."""
    counts = np.array(list(graph.cardinalities.values()), dtype=float)
    return {
        "rule": graph.rule,
        "n": len(graph),
        "n_links": graph.n_links,
        "mean_neighbors": float(counts.mean()) if len(counts) else 0.0,
        "min_neighbors": int(counts.min()) if len(counts) else 0,
        "max_neighbors": int(counts.max()) if len(counts) else 0,
        "n_islands": len(graph.islands),
        "islands": graph.islands[:10],
        "n_components": len(graph.components()),
    }


def log_weights_stats(stats: Mapping, logger=None) -> None:
    """Log neighbour graph statistics (prints if no logger is given)."""
    msg = (
        f"{stats['rule']} contiguity: {stats['n']} areas, {stats['n_links']} links, "
        f"mean {stats['mean_neighbors']:.2f} neighbours, "
        f"{stats['n_islands']} islands, {stats['n_components']} components"
    )
    if logger:
        logger.info(msg)
        logger.log_weights_stats(dict(stats))
    else:
        print(msg)
