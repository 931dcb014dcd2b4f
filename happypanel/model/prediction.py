"""
Out-of-sample prediction and scale-free error scoring.
"""

from __future__ import annotations

import logging
import warnings
from typing import Literal, Sequence

import numpy as np
import pandas as pd

from happypanel.data.panel_frame import PanelFrame
from happypanel.errors import UnknownEntityError, ZeroActualWarning
from happypanel.model.estimator import EstimatorKind, FittedModel

logger = logging.getLogger(__name__)

UnknownEntityPolicy = Literal["raise", "global_mean"]


def predict(
    model: FittedModel,
    frame: PanelFrame,
    unknown_entity: UnknownEntityPolicy = "raise",
) -> pd.Series:
    """
    Apply a fitted model to every observation of a panel.

    Args:
        model: Fitted pooled, within or random model
        frame: Panel holding the model's predictor columns
        unknown_entity: For within models, "raise" on entities without a
            training intercept, or "global_mean" to use the mean intercept

    Returns:
        Predictions indexed by (entity, time), in the frame's row order

    Raises:
        UnknownEntityError: Within model, unseen entity, policy "raise"
        ValueError: Unrecognised ``unknown_entity`` policy
    """
    if unknown_entity not in ("raise", "global_mean"):
        raise ValueError(
            f"Unknown unknown_entity policy '{unknown_entity}'; expected 'raise' or 'global_mean'"
        )

    missing = [p for p in model.predictors if p not in frame.columns]
    if missing:
        raise KeyError(f"Predictor columns not in panel: {missing}")

    data = frame.data
    index = pd.MultiIndex.from_frame(data[[frame.entity_column, frame.time_column]])
    slopes = np.array([model.coefficients[p] for p in model.predictors])
    linear = data[list(model.predictors)].astype(float).to_numpy() @ slopes

    if model.kind is EstimatorKind.WITHIN:
        intercepts = data[frame.entity_column].map(dict(model.entity_intercepts))
        unseen = list(pd.unique(data.loc[intercepts.isna(), frame.entity_column]))
        if unseen:
            if unknown_entity == "raise":
                raise UnknownEntityError(unseen)
            fallback = float(np.mean(list(model.entity_intercepts.values())))
            logger.warning(
                f"Using global mean intercept {fallback:.4f} for unseen entities: {unseen}"
            )
            intercepts = intercepts.fillna(fallback)
        offset = intercepts.to_numpy(dtype=float)
    else:
        offset = model.intercept

    return pd.Series(linear + offset, index=index, name=f"{model.target}_pred")


def mape(predicted: Sequence[float], actual: Sequence[float]) -> float:
    """
    Mean absolute percentage error, as a fraction.

        MAPE = mean(|p_i - a_i| / |a_i|) over i with a_i != 0

    Zero actuals make their term undefined: they are skipped with a
    ZeroActualWarning. Returns NaN if no term remains.
    """
    predicted = np.asarray(predicted, dtype=float)
    actual = np.asarray(actual, dtype=float)
    if predicted.shape != actual.shape:
        raise ValueError(
            f"predicted and actual differ in shape: {predicted.shape} vs {actual.shape}"
        )

    nonzero = actual != 0
    n_zero = int((~nonzero).sum())
    if n_zero:
        message = f"Skipped {n_zero} of {actual.size} MAPE terms with zero actual value"
        logger.warning(message)
        warnings.warn(message, ZeroActualWarning, stacklevel=2)

    if not nonzero.any():
        return float("nan")

    errors = np.abs(predicted[nonzero] - actual[nonzero]) / np.abs(actual[nonzero])
    return float(errors.mean())
