"""
Per-entity imputation of missing panel values.

Endpoint-extension interpolation, applied to each entity's time-ordered
sequence independently:

    leading gap   -> first observed value
    trailing gap  -> last observed value
    interior gap  -> linear interpolation between the bounding observations

Interpolation is positional along the entity's ordered periods, so time
labels need not be numeric or evenly spaced.
"""

from __future__ import annotations

import logging
from typing import Iterable

import numpy as np
import pandas as pd

from happypanel.data.panel_frame import PanelFrame
from happypanel.errors import AllMissingError

logger = logging.getLogger(__name__)


def _check_columns(frame: PanelFrame, columns: Iterable[str]) -> list[str]:
    columns = list(columns)
    missing = [c for c in columns if c not in frame.columns]
    if missing:
        raise KeyError(f"Columns not in panel: {missing}")
    keys = {frame.entity_column, frame.time_column}
    if keys & set(columns):
        raise ValueError("Key columns cannot be imputed")
    return columns


def extend_and_interpolate(values: pd.Series) -> pd.Series:
    """Fill one time-ordered sequence; the sequence must have an observed value."""
    values = values.astype(float)
    interior = values.interpolate(method="linear", limit_area="inside")
    return interior.bfill().ffill()


def impute_endpoint_extend(frame: PanelFrame, columns: Iterable[str]) -> PanelFrame:
    """
    Impute missing values per entity and column.

    Args:
        frame: Panel with NaN marking missing cells
        columns: Numeric columns to impute

    Returns:
        New PanelFrame with the listed columns fully observed

    Raises:
        AllMissingError: If an entity has no observed value in a column
    """
    columns = _check_columns(frame, columns)
    data = frame.data
    entity_col = frame.entity_column

    n_filled = 0
    for col in columns:
        if not (pd.api.types.is_numeric_dtype(data[col]) or data[col].isna().all()):
            raise ValueError(f"Column '{col}' is not numeric and cannot be interpolated")

        filled = data[col].astype(float)
        for entity, idx in data.groupby(entity_col, sort=False).groups.items():
            series = filled.loc[idx]
            n_missing = int(series.isna().sum())
            if n_missing == 0:
                continue
            if n_missing == len(series):
                raise AllMissingError(entity, col)
            filled.loc[idx] = extend_and_interpolate(series).values
            n_filled += n_missing
        data[col] = filled

    logger.info(f"Imputed {n_filled} missing cells across {len(columns)} columns")
    return frame.with_values(data)


def any_missing(frame: PanelFrame, columns: Iterable[str]) -> bool:
    columns = _check_columns(frame, columns)
    return bool(frame.data[columns].isna().any().any())


def missing_fraction(frame: PanelFrame, columns: Iterable[str]) -> dict[str, float]:
    """Share of rows missing in each column."""
    columns = _check_columns(frame, columns)
    if len(frame) == 0:
        return {c: 0.0 for c in columns}
    fractions = frame.data[columns].isna().mean()
    return {c: float(fractions[c]) for c in columns}


def flag_sparse_columns(
    frame: PanelFrame,
    columns: Iterable[str],
    threshold: float = 1 / 7,
) -> dict[str, float]:
    """
    Flag columns too sparse to impute.

    The Imputer never enforces this; the pipeline driver decides whether
    flagged columns are dropped.

    Args:
        frame: Panel after balancing
        columns: Candidate columns
        threshold: Maximum tolerated missing fraction

    Returns:
        Mapping of flagged column -> missing fraction
    """
    if not 0 <= threshold <= 1:
        raise ValueError(f"threshold must be within [0, 1], got {threshold}")

    flagged = {
        col: frac for col, frac in missing_fraction(frame, columns).items()
        if frac > threshold and not np.isclose(frac, threshold)
    }
    for col, frac in flagged.items():
        logger.warning(f"Column '{col}' is {frac:.1%} missing (threshold {threshold:.1%})")
    return flagged
