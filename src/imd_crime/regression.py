"""
Spatial error regression of crime counts on the recomputed deprivation index.

Model:
    y = a + b*x + u,    u = lambda * W u + e

fitted by maximum likelihood (spreg.ML_Error) on row-standardised contiguity
weights. A naive OLS fit (statsmodels) of the same y on x is reported next
to it for comparison.

The estimator never sees the joined table directly: build_regression_inputs
adapts {outcome, predictor, weights} into aligned numeric arrays and a
restricted weights structure.

Excluded areas:
    no_neighbors                 empty weight row in the full graph
    missing_outcome              null outcome count
    missing_predictor            null predictor score
    isolated_after_restriction   every neighbour was itself excluded
"""

from dataclasses import asdict, dataclass, field
from typing import Dict, List, Optional, Tuple

import numpy as np
import pandas as pd
import spreg
import statsmodels.api as sm

from imd_crime.contiguity import RowStandardizedWeights
from imd_crime.diagnostics import FitFailure
from imd_crime.io_utils import load_params

DEFAULT_METHOD = "full"
DEFAULT_ALPHA = 0.05
DEFAULT_MIN_OBSERVATIONS = 10


def _load_regression_config() -> dict:
    return load_params().get("regression", {})


# =============================================================================
# Adapter
# =============================================================================

@dataclass(frozen=True)
class RegressionInputs:
    """Aligned outcome/predictor arrays and the weights restricted to them."""
    ids: Tuple[str, ...]
    y: np.ndarray
    x: np.ndarray
    weights: RowStandardizedWeights
    excluded: Dict[str, str] = field(default_factory=dict)

    @property
    def n(self) -> int:
        return len(self.ids)

    def exclusion_counts(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for reason in self.excluded.values():
            counts[reason] = counts.get(reason, 0) + 1
        return counts


def _as_float_series(values, name: str) -> pd.Series:
    series = pd.Series(values)
    series.index = series.index.astype(str)
    if series.index.duplicated().any():
        raise ValueError(f"Duplicate area ids in {name}")
    return pd.to_numeric(series, errors="coerce").astype("float64")


def build_regression_inputs(
    outcome_counts: pd.Series,
    predictor_scores: pd.Series,
    weights: RowStandardizedWeights,
) -> RegressionInputs:
    """
    Align outcome and predictor on the weights' area order and drop the
    areas the model cannot use.

    Args:
        outcome_counts: Outcome per area (indexed by area id)
        predictor_scores: Predictor per area (indexed by area id)
        weights: Row-standardised weights over the joined areas

    Returns:
        RegressionInputs; the surviving rows are re-standardised
    """
    y = _as_float_series(outcome_counts, "outcome").reindex(weights.ids)
    x = _as_float_series(predictor_scores, "predictor").reindex(weights.ids)

    excluded: Dict[str, str] = {}
    for area_id in weights.ids:
        if not weights.rows[area_id]:
            excluded[area_id] = "no_neighbors"
        elif np.isnan(y[area_id]):
            excluded[area_id] = "missing_outcome"
        elif np.isnan(x[area_id]):
            excluded[area_id] = "missing_predictor"

    kept: List[str] = [a for a in weights.ids if a not in excluded]
    restricted = weights.restrict(kept)
    while restricted.islands:
        for area_id in restricted.islands:
            excluded[area_id] = "isolated_after_restriction"
        kept = [a for a in kept if a not in excluded]
        restricted = weights.restrict(kept)

    return RegressionInputs(
        ids=tuple(kept),
        y=y[kept].to_numpy(dtype=float),
        x=x[kept].to_numpy(dtype=float),
        weights=restricted,
        excluded=excluded,
    )


# =============================================================================
# Result
# =============================================================================

@dataclass(frozen=True)
class RegressionResult:
    """Spatial error model estimates for one outcome/predictor pair."""
    outcome: str
    predictor: str
    coefficient: float
    standard_error: float
    p_value: float
    intercept: float
    spatial_lambda: float
    lambda_standard_error: float
    lambda_p_value: float
    lambda_significant: bool
    log_likelihood: float
    aic: float
    n_observations: int
    n_excluded: int
    ols_coefficient: float
    ols_standard_error: float
    method: str = DEFAULT_METHOD

    def to_dict(self) -> dict:
        return asdict(self)


# =============================================================================
# Estimator
# =============================================================================

class SpatialErrorRegressor:
    """
    Maximum-likelihood spatial error model, one outcome/predictor pair per fit.

    Args:
        method: spreg ML_Error log-determinant method ("full", "lu" or "ord")
        alpha: Significance level for lambda
        min_observations: Fewest usable areas a fit accepts
        logger: Optional JSONL logger
    """

    def __init__(
        self,
        method: Optional[str] = None,
        alpha: Optional[float] = None,
        min_observations: Optional[int] = None,
        logger=None,
    ):
        config = _load_regression_config() if None in (method, alpha, min_observations) else {}
        self.method = method or config.get("method", DEFAULT_METHOD)
        self.alpha = float(alpha if alpha is not None else config.get("alpha", DEFAULT_ALPHA))
        self.min_observations = int(
            min_observations if min_observations is not None
            else config.get("min_observations", DEFAULT_MIN_OBSERVATIONS)
        )
        self.logger = logger

    @classmethod
    def from_config(cls, params: dict, logger=None) -> "SpatialErrorRegressor":
        config = params.get("regression", {})
        return cls(
            method=config.get("method", DEFAULT_METHOD),
            alpha=config.get("alpha", DEFAULT_ALPHA),
            min_observations=config.get("min_observations", DEFAULT_MIN_OBSERVATIONS),
            logger=logger,
        )

    def fit(
        self,
        outcome_counts: pd.Series,
        predictor_scores: pd.Series,
        weights: RowStandardizedWeights,
        outcome: str = "outcome",
        predictor: str = "predictor",
    ) -> RegressionResult:
        """
        Fit y = a + b*x + u, u = lambda*W*u + e.

        Raises:
            FitFailure: Too few usable areas, a constant predictor, a
                numerical error in the estimator, or non-finite estimates
        """
        inputs = build_regression_inputs(outcome_counts, predictor_scores, weights)

        if inputs.n < self.min_observations:
            raise FitFailure(
                outcome, predictor,
                f"{inputs.n} usable areas, at least {self.min_observations} required",
            )
        if np.ptp(inputs.x) == 0:
            raise FitFailure(outcome, predictor, "predictor has no variance")

        w = inputs.weights.to_libpysal(inputs.ids)
        try:
            model = spreg.ML_Error(
                inputs.y.reshape(-1, 1),
                inputs.x.reshape(-1, 1),
                w=w,
                method=self.method,
                name_y=outcome,
                name_x=[predictor],
                name_w=f"row-standardised contiguity ({inputs.n})",
            )
            naive = sm.OLS(inputs.y, sm.add_constant(inputs.x)).fit()
        except (np.linalg.LinAlgError, ValueError, FloatingPointError) as e:
            raise FitFailure(outcome, predictor, f"estimator error: {e}") from e

        # betas/std_err: [constant, predictor, lambda]; z_stat rows are (z, p)
        betas = np.asarray(model.betas, dtype=float).flatten()
        std_err = np.asarray(model.std_err, dtype=float).flatten()
        z_stat = np.asarray(model.z_stat, dtype=float)

        result = RegressionResult(
            outcome=outcome,
            predictor=predictor,
            coefficient=float(betas[1]),
            standard_error=float(std_err[1]),
            p_value=float(z_stat[1, 1]),
            intercept=float(betas[0]),
            spatial_lambda=float(np.asarray(model.lam, dtype=float).flatten()[0]),
            lambda_standard_error=float(std_err[-1]),
            lambda_p_value=float(z_stat[-1, 1]),
            lambda_significant=bool(z_stat[-1, 1] < self.alpha),
            log_likelihood=float(np.asarray(model.logll, dtype=float).flatten()[0]),
            aic=float(np.asarray(model.aic, dtype=float).flatten()[0]),
            n_observations=int(model.n),
            n_excluded=len(inputs.excluded),
            ols_coefficient=float(naive.params[1]),
            ols_standard_error=float(naive.bse[1]),
            method=self.method,
        )

        numeric = [v for v in result.to_dict().values() if isinstance(v, float)]
        if not np.all(np.isfinite(numeric)):
            raise FitFailure(outcome, predictor, "non-finite estimates")

        if self.logger:
            self.logger.info(
                f"Spatial error fit: {outcome} ~ {predictor}",
                extra={
                    "coefficient": result.coefficient,
                    "lambda": result.spatial_lambda,
                    "n_observations": result.n_observations,
                    "excluded": inputs.exclusion_counts(),
                },
            )
            self.logger.log_fit_stats(result.to_dict())
        return result
