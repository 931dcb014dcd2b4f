"""
Pipeline orchestration.

Runs the full panel workflow on raw rows:

    rows -> PanelFrame -> balance -> screen sparse predictors -> impute
         -> split by time -> fit pooled/within/random on train
         -> select estimator -> residual diagnostics -> predict test, MAPE

Each stage consumes one immutable value and returns a new one. Only the
recoverable degeneracies are handled here: random effects are skipped
when underidentified, and unseen test entities follow the configured
policy. Structural errors propagate to the caller.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, Mapping

import numpy as np
import pandas as pd

from config.settings import get_settings
from happypanel.data.balancing import BalanceStrategy, balance
from happypanel.data.imputation import flag_sparse_columns, impute_endpoint_extend
from happypanel.data.panel_frame import PanelFrame, split_by_time
from happypanel.errors import UnderidentifiedError, UnknownEntityError
from happypanel.model.diagnostics import DiagnosticSuite, run_residual_diagnostics
from happypanel.model.estimator import EstimatorKind, FittedModel, PanelEstimator
from happypanel.model.prediction import mape, predict
from happypanel.model.selection import ModelSelection, select_model

logger = logging.getLogger(__name__)


@dataclass
class PipelineConfig:
    """Driver-level choices for one pipeline run."""

    entity_column: str
    time_column: str
    target: str
    predictors: list[str]
    balance_strategy: str = "fill"
    missing_threshold: float = 1 / 7
    test_periods: int = 2
    significance_level: float = 0.05
    ljung_box_lags: int = 1
    cov_type: str = "unadjusted"
    unknown_entity_policy: str = "exclude"
    region_column: str | None = None
    region_filter_value: str | None = None

    def __post_init__(self):
        BalanceStrategy(self.balance_strategy)
        if self.unknown_entity_policy not in ("exclude", "global_mean", "raise"):
            raise ValueError(f"Unknown unknown_entity_policy '{self.unknown_entity_policy}'")

    @classmethod
    def from_settings(cls, **overrides: Any) -> PipelineConfig:
        """Build a config from application settings, with explicit overrides."""
        settings = get_settings()
        values: dict[str, Any] = {
            "entity_column": settings.entity_column,
            "time_column": settings.time_column,
            "target": settings.target,
            "predictors": list(settings.predictors),
            "balance_strategy": settings.balance_strategy,
            "missing_threshold": settings.missing_threshold,
            "test_periods": settings.test_periods,
            "significance_level": settings.significance_level,
            "ljung_box_lags": settings.ljung_box_lags,
            "cov_type": settings.cov_type,
            "unknown_entity_policy": settings.unknown_entity_policy,
            "region_column": settings.region_column,
            "region_filter_value": settings.region_filter_value,
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)


@dataclass
class PipelineResult:
    """Every intermediate value of a pipeline run."""

    config: PipelineConfig
    raw: PanelFrame
    balanced: PanelFrame
    imputed: PanelFrame
    train: PanelFrame
    test: PanelFrame
    predictors: list[str]
    excluded_predictors: dict[str, float]
    models: dict[EstimatorKind, FittedModel]
    selection: ModelSelection
    diagnostics: DiagnosticSuite
    predictions: pd.Series
    mape: float
    excluded_entities: list[Any] = field(default_factory=list)

    @property
    def chosen_model(self) -> FittedModel:
        return self.models[self.selection.chosen]

    def summary(self) -> str:
        dims = self.balanced.dimensions()
        lines = [
            "=" * 60,
            "PANEL PIPELINE SUMMARY",
            "=" * 60,
            f"Raw panel: {self.raw!r}",
            f"Balanced ({self.config.balance_strategy}): {dims.entity_count} entities, "
            f"{dims.total_observations} rows",
            f"Train periods: {len(self.train.time_labels)}, test periods: {len(self.test.time_labels)}",
            f"Predictors: {', '.join(self.predictors)}",
        ]
        if self.excluded_predictors:
            lines.append(
                "Excluded (too sparse): "
                + ", ".join(f"{c} ({f:.1%})" for c, f in self.excluded_predictors.items())
            )
        if EstimatorKind.RANDOM not in self.models:
            lines.append("Random effects skipped (underidentified)")
        lines.append("")
        lines.append(self.selection.summary())
        lines.append("")
        lines.append(self.chosen_model.summary())
        lines.append("")
        lines.append(self.diagnostics.summary(self.config.significance_level))
        lines.append("")
        lines.append(f"Test MAPE ({self.selection.chosen.value}): {self.mape:.4%}")
        if self.excluded_entities:
            lines.append(f"Entities excluded from prediction: {self.excluded_entities}")
        return "\n".join(lines)

    def to_dict(self) -> dict[str, Any]:
        return {
            "predictors": self.predictors,
            "excluded_predictors": self.excluded_predictors,
            "models": {k.value: m.to_dict() for k, m in self.models.items()},
            "selection": self.selection.to_dict(),
            "diagnostics": self.diagnostics.to_dict(),
            "mape": self.mape,
            "excluded_entities": [str(e) for e in self.excluded_entities],
        }

    def save(self, output_dir: Path) -> list[Path]:
        """Write coefficient tables (CSV) and a JSON summary."""
        output_dir = Path(output_dir)
        output_dir.mkdir(parents=True, exist_ok=True)
        paths = []

        for kind, model in self.models.items():
            path = output_dir / f"coefficients_{kind.value}.csv"
            model.coefficient_table().to_csv(path, index_label="parameter")
            paths.append(path)

        predictions_path = output_dir / "predictions.csv"
        self.predictions.to_frame().to_csv(predictions_path)
        paths.append(predictions_path)

        summary_path = output_dir / "summary.json"
        with open(summary_path, "w") as f:
            json.dump(self.to_dict(), f, indent=2, default=_json_default)
        paths.append(summary_path)

        logger.info(f"Saved {len(paths)} files to {output_dir}")
        return paths


def _json_default(value: Any) -> Any:
    if isinstance(value, (np.integer, np.floating)):
        return value.item()
    return str(value)


def _to_frame(rows: Iterable[Mapping[str, Any]] | pd.DataFrame) -> pd.DataFrame:
    if isinstance(rows, pd.DataFrame):
        return rows.copy()
    return pd.DataFrame.from_records(list(rows))


def apply_region_filter(
    data: pd.DataFrame, region_column: str | None, value: str | None
) -> pd.DataFrame:
    """Keep rows of one region/category before the panel is built."""
    if value is None or region_column is None:
        return data
    if region_column not in data.columns:
        raise KeyError(f"Region column '{region_column}' not in data")
    filtered = data[data[region_column] == value]
    logger.info(f"Region filter {region_column} == {value!r}: {len(filtered)}/{len(data)} rows")
    return filtered


def run_pipeline(
    rows: Iterable[Mapping[str, Any]] | pd.DataFrame,
    config: PipelineConfig | None = None,
) -> PipelineResult:
    """
    Run the panel workflow end to end.

    Args:
        rows: Raw observation rows
        config: Pipeline configuration (defaults from settings)

    Returns:
        PipelineResult
    """
    config = config or PipelineConfig.from_settings()

    data = apply_region_filter(_to_frame(rows), config.region_column, config.region_filter_value)
    columns = [config.entity_column, config.time_column, config.target, *config.predictors]
    missing_cols = [c for c in columns if c not in data.columns]
    if missing_cols:
        raise KeyError(f"Columns not in data: {missing_cols}")

    raw = PanelFrame(data[columns], config.entity_column, config.time_column)
    logger.info(f"Built panel: {raw!r}")

    balanced = balance(raw, config.balance_strategy)

    # Sparse predictors are excluded rather than imputed
    excluded = flag_sparse_columns(balanced, config.predictors, config.missing_threshold)
    predictors = [p for p in config.predictors if p not in excluded]
    if not predictors:
        raise ValueError("Every predictor exceeds the missing threshold")
    prepared = balanced
    for col in excluded:
        prepared = prepared.drop_column(col)

    imputed = impute_endpoint_extend(prepared, [config.target, *predictors])
    train, test = split_by_time(imputed, config.test_periods)

    estimator = PanelEstimator(cov_type=config.cov_type)
    models: dict[EstimatorKind, FittedModel] = {
        EstimatorKind.POOLED: estimator.fit(train, config.target, predictors, EstimatorKind.POOLED),
        EstimatorKind.WITHIN: estimator.fit(train, config.target, predictors, EstimatorKind.WITHIN),
    }
    try:
        models[EstimatorKind.RANDOM] = estimator.fit(
            train, config.target, predictors, EstimatorKind.RANDOM
        )
    except UnderidentifiedError as e:
        logger.warning(f"Skipping random effects: {e}")

    selection = select_model(
        models[EstimatorKind.POOLED],
        models[EstimatorKind.WITHIN],
        models.get(EstimatorKind.RANDOM),
        significance=config.significance_level,
    )
    chosen = models[selection.chosen]
    diagnostics = run_residual_diagnostics(chosen, lags=config.ljung_box_lags)

    predictions, excluded_entities, scored = _predict_test(chosen, test, config)
    actual = scored.column(config.target).reindex(predictions.index)
    error = mape(predictions.to_numpy(), actual.to_numpy())
    logger.info(f"Test MAPE ({selection.chosen.value}): {error:.4%}")

    return PipelineResult(
        config=config,
        raw=raw,
        balanced=balanced,
        imputed=imputed,
        train=train,
        test=test,
        predictors=predictors,
        excluded_predictors=excluded,
        models=models,
        selection=selection,
        diagnostics=diagnostics,
        predictions=predictions,
        mape=error,
        excluded_entities=excluded_entities,
    )


def _predict_test(
    model: FittedModel, test: PanelFrame, config: PipelineConfig
) -> tuple[pd.Series, list[Any], PanelFrame]:
    """Predict the test panel, applying the unseen-entity policy."""
    policy = config.unknown_entity_policy
    try:
        return predict(model, test, unknown_entity="raise"), [], test
    except UnknownEntityError as e:
        if policy == "raise":
            raise
        if policy == "global_mean":
            return predict(model, test, unknown_entity="global_mean"), [], test
        logger.warning(f"Excluding entities from prediction: {e.entities}")
        kept = test.select_entities([x for x in test.entities if x not in set(e.entities)])
        return predict(model, kept), list(e.entities), kept
