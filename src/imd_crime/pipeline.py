"""
End-to-end deprivation / crime analysis.

    raw sources -> key resolution + area selection -> joined areal table
    -> event counts -> recomputed index -> contiguity weights
    -> spatial error regressions

The pipeline holds immutable inputs and owns one Diagnostics object; every
component receives what it needs explicitly. Recoverable conditions are
recorded and the run continues; a FitFailure ends only its own regression.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple

import geopandas as gpd
import pandas as pd

from imd_crime.contiguity import NeighborGraph, NeighborWeightsBuilder, RowStandardizedWeights
from imd_crime.diagnostics import Diagnostics, FitFailure
from imd_crime.events import EventAggregator
from imd_crime.index import IndexRecomputer, ReferenceComparison
from imd_crime.io_utils import load_params
from imd_crime.joins import ArealJoinEngine, incomplete_area_ids, locate_events, log_join_stats
from imd_crime.keys import AreaKeyIndex, JoinPlan, KeyMapping
from imd_crime.periods import filter_period_window
from imd_crime.regression import RegressionResult, SpatialErrorRegressor
from imd_crime.schemas import validate_joined

WGS84_EPSG = 4326


@dataclass(frozen=True)
class PipelineInputs:
    """
    Raw sources, with their own column names.

    Attributes:
        boundaries: Area polygons (the anchor source)
        outer_boundary: Outer region the areas are selected within
        attribute_tables: Source name -> table, joined in `join_order`
        events: Street-level crime records (optional)
    """
    boundaries: gpd.GeoDataFrame
    outer_boundary: gpd.GeoDataFrame
    attribute_tables: Mapping[str, pd.DataFrame]
    events: Optional[pd.DataFrame] = None


@dataclass(frozen=True)
class PipelineResult:
    joined: gpd.GeoDataFrame
    graph: NeighborGraph
    weights: RowStandardizedWeights
    regressions: Dict[str, RegressionResult]
    failures: List[FitFailure]
    diagnostics: Diagnostics
    join_plan: JoinPlan
    reference_summary: Optional[Dict[str, Any]] = None
    event_stats: Dict[str, Any] = field(default_factory=dict)
    selection: Dict[str, Any] = field(default_factory=dict)

    def regressions_frame(self) -> pd.DataFrame:
        """One row per fitted model."""
        return pd.DataFrame([r.to_dict() for r in self.regressions.values()])

    def summary(self) -> Dict[str, Any]:
        return {
            "n_areas": len(self.joined),
            "n_complete": int(self.joined["is_complete"].sum()),
            "selection": self.selection,
            "join_plan": self.join_plan.to_dict(),
            "reference": self.reference_summary,
            "events": self.event_stats,
            "n_islands": len(self.weights.islands),
            "models": {name: r.to_dict() for name, r in self.regressions.items()},
            "diagnostics": self.diagnostics.to_dict(),
        }


def model_name(outcome: str, predictor: str) -> str:
    return f"{outcome}~{predictor}"


class DeprivationCrimePipeline:
    """
    Explicit pipeline object: inputs and parameters in, PipelineResult out.

    Args:
        inputs: Raw sources
        params: Parameters (configs/params.yml when not given)
        logger: Optional JSONL logger
    """

    def __init__(self, inputs: PipelineInputs, params: Optional[dict] = None, logger=None):
        self.inputs = inputs
        self.params = params if params is not None else load_params()
        self.logger = logger
        self.diagnostics = Diagnostics()

        self.key_mapping = KeyMapping.from_config(self.params)
        self.key = self.key_mapping.canonical

        self.join_engine = ArealJoinEngine(
            key=self.key,
            planar_epsg=self.params.get("crs", {}).get("planar_epsg", 27700),
            buffer_distance=self.params.get("area_selection", {}).get("buffer_distance", 300),
            logger=logger,
        )
        self.recomputer = IndexRecomputer.from_config(self.params, logger=logger)
        self.weights_builder = NeighborWeightsBuilder(
            key=self.key,
            rule=self.params.get("contiguity", {}).get("rule", "queen"),
            diagnostics=self.diagnostics,
            logger=logger,
        )
        self.regressor = SpatialErrorRegressor.from_config(self.params, logger=logger)

    # -------------------------------------------------------------------------
    # Stages
    # -------------------------------------------------------------------------

    def build_joined_table(self) -> Tuple[gpd.GeoDataFrame, JoinPlan, Dict[str, Any]]:
        """Select areas, resolve keys, join attributes and event counts."""
        anchor = self.key_mapping.anchor
        boundaries = self.key_mapping.canonicalize(self.inputs.boundaries, anchor)
        areas = self.join_engine.select_areas(boundaries, self.inputs.outer_boundary)

        tables = []
        for source in self.params.get("join_order", list(self.inputs.attribute_tables)):
            if source not in self.inputs.attribute_tables:
                raise KeyError(f"No table supplied for source '{source}'")
            tables.append((source, self.key_mapping.canonicalize(self.inputs.attribute_tables[source], source)))

        # Keys are checked against the whole geometry source; the selection
        # only decides which areas are analysed.
        full_index = AreaKeyIndex.from_frame(boundaries, self.key, anchor)
        join_plan = full_index.resolve(self.key, dict(tables), self.diagnostics, self.logger)

        joined = self.join_engine.attach_attributes(areas, tables, key=self.key)

        event_stats: Dict[str, Any] = {}
        if self.inputs.events is not None:
            selected_index = AreaKeyIndex.from_frame(areas, self.key, anchor)
            counts, event_stats = self.count_events(selected_index, areas)
            joined = self.join_engine.attach_counts(joined, counts, key=self.key)

        incomplete = incomplete_area_ids(joined, self.key)
        if incomplete:
            self.diagnostics.record_incomplete(incomplete)
            if self.logger:
                self.logger.warning(
                    f"{len(incomplete)} areas lack one or more sub-scores",
                    extra={"examples": incomplete[:5]},
                )

        validate_joined(joined)
        return joined, join_plan, event_stats

    def count_events(self, key_index: AreaKeyIndex, areas: gpd.GeoDataFrame) -> Tuple[pd.DataFrame, Dict[str, Any]]:
        """Per-area counts for every configured category in the period window."""
        config = self.params.get("events", {})
        events = self.key_mapping.canonicalize(self.inputs.events, "crime")

        stats: Dict[str, Any] = {}
        period = config.get("period") or {}
        if period.get("start") or period.get("end"):
            events, stats["period"] = filter_period_window(events, period.get("start"), period.get("end"))

        uncoded = events[self.key].isna()
        if uncoded.any() and {"longitude", "latitude"} <= set(events.columns):
            events, stats["located"] = self._locate_uncoded(events, areas)

        aggregator = EventAggregator(key_index, area_col=self.key, diagnostics=self.diagnostics)
        counts = aggregator.aggregate_all(
            events,
            config.get("categories", []),
            include_all=config.get("include_all_crime", False),
        )
        stats.update(aggregator.summary())
        if self.logger:
            self.logger.info("Event counts built", extra=stats)
        return counts, stats

    def _locate_uncoded(self, events: pd.DataFrame, areas: gpd.GeoDataFrame) -> Tuple[pd.DataFrame, Dict[str, Any]]:
        """Assign an area to events that have coordinates but no area code."""
        events = events.copy()
        mask = events[self.key].isna() & events["longitude"].notna() & events["latitude"].notna()
        if not mask.any():
            return events, {"total_points": 0}

        points = gpd.GeoDataFrame(
            events.loc[mask, ["longitude", "latitude"]],
            geometry=gpd.points_from_xy(events.loc[mask, "longitude"], events.loc[mask, "latitude"]),
            crs=f"EPSG:{WGS84_EPSG}",
        )
        # Points outside the selected region stay unmatched and are dropped
        # by the aggregator.
        located, join_stats = locate_events(
            points,
            areas,
            area_id_col=self.key,
            max_distance=self.params.get("spatial_join", {}).get("max_distance_m", 500),
            max_unmatched_rate=1.0,
            planar_epsg=self.join_engine.planar_epsg,
        )
        events.loc[mask, self.key] = located[self.key].to_numpy()
        log_join_stats(join_stats, self.logger)
        return events, join_stats

    def recompute_indices(self, joined: gpd.GeoDataFrame) -> Tuple[gpd.GeoDataFrame, Optional[Dict[str, Any]]]:
        """Add recomputed index columns and compare the full index with the reference."""
        index_config = self.params.get("index", {})
        reference_column = index_config.get("reference_column", "imd_score")

        result = self.recomputer.recompute_frame(
            joined,
            exclude=index_config.get("exclude_domains", ["crime"]),
            key=self.key,
            diagnostics=self.diagnostics,
        )
        if reference_column not in result.columns:
            if self.logger:
                self.logger.warning(f"No reference column '{reference_column}'; comparison skipped")
            return result, None

        comparison = self.recomputer.compare_frame(
            result, "imd_recomputed", reference_column, key=self.key,
        )
        deltas = comparison.set_index(self.key)["reference_delta"]
        result["reference_delta"] = result[self.key].map(deltas).astype("float64")

        summary = self.recomputer.summarize_reference(
            [ReferenceComparison(bool(m), float(d))
             for m, d in zip(comparison["reference_match"], comparison["reference_delta"])],
            column="imd_recomputed",
            diagnostics=self.diagnostics,
        )
        return result, summary

    def build_weights(self, joined: gpd.GeoDataFrame) -> Tuple[NeighborGraph, RowStandardizedWeights]:
        graph = self.weights_builder.build_contiguity(joined)
        return graph, self.weights_builder.to_row_standardized_weights(graph)

    def fit_regressions(
        self,
        joined: pd.DataFrame,
        weights: RowStandardizedWeights,
    ) -> Tuple[Dict[str, RegressionResult], List[FitFailure]]:
        """Fit every configured outcome/predictor pair; failures are collected."""
        table = joined.set_index(joined[self.key].astype(str))
        results: Dict[str, RegressionResult] = {}
        failures: List[FitFailure] = []

        for spec in self.params.get("regression", {}).get("models", []):
            outcome, predictor = spec["outcome"], spec["predictor"]
            try:
                missing = [c for c in (outcome, predictor) if c not in table.columns]
                if missing:
                    raise FitFailure(outcome, predictor, f"columns not in joined table: {missing}")
                results[model_name(outcome, predictor)] = self.regressor.fit(
                    table[outcome], table[predictor], weights,
                    outcome=outcome, predictor=predictor,
                )
            except FitFailure as failure:
                failures.append(failure)
                self.diagnostics.record_fit_failure(failure)
                if self.logger:
                    self.logger.warning(str(failure), extra=failure.to_dict())

        return results, failures

    def run(self) -> PipelineResult:
        joined, join_plan, event_stats = self.build_joined_table()
        joined, reference_summary = self.recompute_indices(joined)
        graph, weights = self.build_weights(joined)
        regressions, failures = self.fit_regressions(joined, weights)

        result = PipelineResult(
            joined=joined,
            graph=graph,
            weights=weights,
            regressions=regressions,
            failures=failures,
            diagnostics=self.diagnostics,
            join_plan=join_plan,
            reference_summary=reference_summary,
            event_stats=event_stats,
            selection=self.join_engine.last_selection.to_dict(),
        )
        if self.logger:
            self.logger.log_metrics({
                "n_areas": len(joined),
                "n_models": len(regressions),
                "n_failures": len(failures),
                "n_islands": len(weights.islands),
            })
        return result
