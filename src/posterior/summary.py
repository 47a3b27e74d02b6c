"""
Posterior summaries, predictions and in-sample fit statistics.

All functions are pure: they read an immutable FittedModel and return new
tables or arrays, so calling them twice gives identical results.

Predictions use the posterior-mean linear predictor:

    ŷ = E[α] + Σ_g E[β_g[level]] + Σ_c E[γ_c] x_c

where a reference level contributes zero.
"""

import logging
from dataclasses import dataclass
from typing import Any, Iterable, List, Mapping, Optional, Sequence, Union

import numpy as np
import pandas as pd
from numpy.typing import NDArray

from delays.dataset import DelayDataset, parse_hour
from inference.diagnostics import RHAT_THRESHOLD, rhat
from inference.model_builder import INTERCEPT, CategoricalTerm, coefficient_name
from inference.sampler import FittedModel

logger = logging.getLogger(__name__)

Rows = Union[pd.DataFrame, DelayDataset, Sequence[Mapping[str, Any]]]


def summarize(
    fitted: FittedModel,
    ci: float = 0.95,
    rhat_threshold: float = RHAT_THRESHOLD,
) -> pd.DataFrame:
    """
    Posterior summary per parameter from pooled post-warm-up draws.

    Parameters
    ----------
    fitted : FittedModel
        Fitted model.
    ci : float
        Mass of the equal-tailed credible interval. Default 0.95.
    rhat_threshold : float
        Rhat above this value sets ``flagged``. Default 1.1.

    Returns
    -------
    summary : pd.DataFrame
        Indexed by parameter, columns mean, sd, median, ci_lower, ci_upper,
        r_hat, flagged.
    """
    if not (0.0 < ci < 1.0):
        raise ValueError(f"ci must be in (0, 1). Got {ci}")

    lower_q = (1.0 - ci) / 2.0
    upper_q = 1.0 - lower_q
    rhats = rhat(fitted.draws)

    records = []
    for name in fitted.draws.parameters:
        pooled = fitted.draws.pooled(name)
        records.append(
            {
                "parameter": name,
                "mean": float(np.mean(pooled)),
                "sd": float(np.std(pooled, ddof=1)) if pooled.size > 1 else 0.0,
                "median": float(np.median(pooled)),
                "ci_lower": float(np.quantile(pooled, lower_q)),
                "ci_upper": float(np.quantile(pooled, upper_q)),
                "r_hat": rhats[name],
                "flagged": bool(rhats[name] > rhat_threshold),
            }
        )

    summary = pd.DataFrame.from_records(records).set_index("parameter")
    n_flagged = int(summary["flagged"].sum())
    if n_flagged:
        logger.warning(f"{n_flagged} parameter(s) above Rhat {rhat_threshold} in summary")
    return summary


def _as_records(rows: Rows) -> List[Mapping[str, Any]]:
    if isinstance(rows, DelayDataset):
        return rows.to_frame().to_dict(orient="records")
    if isinstance(rows, pd.DataFrame):
        return rows.to_dict(orient="records")
    return list(rows)


def _row_value(row: Mapping[str, Any], column: str) -> Any:
    if column in row:
        return row[column]
    # Hour can be derived from a time string
    if column == "hour" and "time" in row:
        return parse_hour(row["time"])
    raise KeyError(f"Row is missing column {column!r}: {dict(row)}")


def linear_predictor(fitted: FittedModel, rows: Rows, coefficients: Mapping[str, float]) -> NDArray[np.float64]:
    """
    Evaluate the linear predictor at given coefficient values.

    Raises
    ------
    ValueError
        If a row holds a categorical level the model was not fitted on.
    """
    records = _as_records(rows)
    levels = fitted.levels
    predictions = np.full(len(records), coefficients[INTERCEPT], dtype=np.float64)

    for term in fitted.spec.terms:
        column = term.column
        if isinstance(term, CategoricalTerm):
            if column not in levels:
                # Term without recorded levels contributes nothing
                continue
            known = levels[column]
            reference = known[0]
            for i, row in enumerate(records):
                value = _row_value(row, column)
                if value not in known:
                    raise ValueError(
                        f"Level {value!r} of {column!r} was not seen in training; "
                        f"known levels: {known}"
                    )
                level = known[known.index(value)]
                if level != reference:
                    predictions[i] += coefficients[coefficient_name(column, level)]
        else:
            slope = coefficients[column]
            for i, row in enumerate(records):
                predictions[i] += slope * float(_row_value(row, column))

    return predictions


def predict(fitted: FittedModel, rows: Rows) -> NDArray[np.float64]:
    """
    Predicted mean delay per row from posterior-mean coefficients.

    Parameters
    ----------
    fitted : FittedModel
        Fitted model.
    rows : DataFrame, DelayDataset or sequence of mappings
        Covariate rows. Each needs every predictor column; ``hour`` may be
        given through a ``time`` string instead.

    Returns
    -------
    predictions : NDArray[np.float64]
        Shape (n_rows,).
    """
    return linear_predictor(fitted, rows, fitted.draws.means())


@dataclass(frozen=True)
class GoodnessOfFit:
    """
    In-sample fit statistics.

    Computed on the training data itself. No held-out split is made, so these
    numbers describe how well the posterior mean reproduces the data it was
    fitted on and overstate out-of-sample accuracy.
    """

    r2: float
    rmse: float
    n_obs: int

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame(
            {"metric": ["R2", "RMSE", "n_obs"], "value": [self.r2, self.rmse, float(self.n_obs)]}
        )


def fit_statistics(y: NDArray[np.float64], y_hat: NDArray[np.float64]) -> GoodnessOfFit:
    """
    R² and RMSE of predictions against observations.

    R² = 1 - SS_res / SS_tot. For a constant outcome (SS_tot = 0) R² is 1
    when the predictions are exact and -inf otherwise.
    """
    y = np.asarray(y, dtype=np.float64)
    y_hat = np.asarray(y_hat, dtype=np.float64)
    if y.shape != y_hat.shape:
        raise ValueError(f"Shape mismatch: y {y.shape} vs y_hat {y_hat.shape}")
    if y.size == 0:
        raise ValueError("Cannot compute fit statistics on zero observations")

    residuals = y - y_hat
    ss_res = float(np.sum(residuals**2))
    ss_tot = float(np.sum((y - np.mean(y)) ** 2))

    if ss_tot > 0:
        r2 = 1.0 - ss_res / ss_tot
    else:
        r2 = 1.0 if ss_res == 0 else -np.inf

    rmse = float(np.sqrt(np.mean(residuals**2)))
    return GoodnessOfFit(r2=float(r2), rmse=rmse, n_obs=int(y.size))


def goodness_of_fit(fitted: FittedModel, dataset: DelayDataset) -> GoodnessOfFit:
    """In-sample R² and RMSE of the posterior-mean predictions on ``dataset``."""
    y = np.asarray(dataset.column(fitted.spec.outcome), dtype=np.float64)
    gof = fit_statistics(y, predict(fitted, dataset))
    logger.info(f"In-sample fit: R2={gof.r2:.3f}, RMSE={gof.rmse:.3f} (n={gof.n_obs})")
    return gof


def predicted_delay_by_hour(
    fitted: FittedModel,
    modes: Optional[Iterable[str]] = None,
    hours: Optional[Iterable[int]] = None,
) -> pd.DataFrame:
    """
    Predicted average delay for each mode and hour of day.

    Day-of-week effects are averaged uniformly over the fitted day levels.

    Parameters
    ----------
    fitted : FittedModel
        Model fitted with categorical mode and hour terms.
    modes : iterable of str, optional
        Modes to include. Default: every fitted mode.
    hours : iterable of int, optional
        Hours to include. Default: every fitted hour.

    Returns
    -------
    table : pd.DataFrame
        Columns mode, hour, predicted_delay; one row per (mode, hour).
    """
    levels = fitted.levels
    term_columns = {t.column for t in fitted.spec.terms}
    for column in ("mode", "hour"):
        if column not in term_columns:
            raise ValueError(f"Model has no {column!r} term")
    if any(not isinstance(t, CategoricalTerm) for t in fitted.spec.terms):
        raise ValueError("predicted_delay_by_hour needs a model with categorical terms only")

    modes = list(modes) if modes is not None else list(levels.get("mode", []))
    hours = list(hours) if hours is not None else list(levels.get("hour", []))
    days = list(levels["day"]) if "day" in levels else [None]

    rows = []
    for mode in modes:
        for hour in hours:
            for day in days:
                row = {"mode": mode, "hour": hour}
                if day is not None:
                    row["day"] = day
                rows.append(row)

    if not rows:
        return pd.DataFrame(columns=["mode", "hour", "predicted_delay"])

    values = predict(fitted, rows)
    table = pd.DataFrame(rows)
    table["predicted_delay"] = values
    return (
        table.groupby(["mode", "hour"], sort=False)["predicted_delay"]
        .mean()
        .reset_index()
    )

