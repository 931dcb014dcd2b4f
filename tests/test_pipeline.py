"""
End-to-end tests for the panel pipeline.
"""

import json

import pytest
import pandas as pd
import numpy as np

from happypanel.data.panel_frame import PanelFrame, split_by_time
from happypanel.engine.pipeline import (
    PipelineConfig,
    _predict_test,
    apply_region_filter,
    run_pipeline,
)
from happypanel.errors import UnknownEntityError
from happypanel.model.estimator import EstimatorKind, fit_panel_model
from tests.fixtures.synthetic_dgp import ENTITY, TIME, TARGET, PRED_A, PRED_B, make_fe_panel


def _config(**kwargs):
    values = dict(
        entity_column=ENTITY,
        time_column=TIME,
        target=TARGET,
        predictors=[PRED_A, PRED_B],
    )
    values.update(kwargs)
    return PipelineConfig(**values)


class TestExactScenario:
    """4 entities x 18 periods, target = 2*A + B + alpha_i, no noise."""

    @pytest.fixture
    def result(self):
        df, _ = make_fe_panel(n_entities=4, n_periods=18, noise=0.0)
        return run_pipeline(df, _config(test_periods=2))

    def test_split(self, result):
        assert len(result.train.time_labels) == 16
        assert len(result.test.time_labels) == 2

    def test_within_recovers_slopes(self, result):
        within = result.models[EstimatorKind.WITHIN]
        assert within.coefficients[PRED_A] == pytest.approx(2.0, abs=1e-6)
        assert within.coefficients[PRED_B] == pytest.approx(1.0, abs=1e-6)

    def test_pooling_rejected(self, result):
        assert result.selection.pooling.reject(0.05)
        assert result.selection.chosen is not EstimatorKind.POOLED

    def test_pipeline_mape_is_zero(self, result):
        assert result.selection.chosen is EstimatorKind.WITHIN
        assert result.mape == pytest.approx(0.0, abs=1e-9)
        assert len(result.predictions) == 4 * 2

    def test_random_effects_skipped(self, result):
        # No idiosyncratic noise leaves the random-effects intercept unidentified
        assert EstimatorKind.RANDOM not in result.models
        assert result.selection.hausman is None

    def test_no_missing_values(self, result):
        assert not result.imputed.data.isna().any().any()


class TestNoisyPipeline:
    """Unbalanced rows with gaps and a sparse predictor."""

    @pytest.fixture
    def rows(self):
        df, _ = make_fe_panel(n_entities=5, n_periods=18, noise=0.05, seed=21)
        rng = np.random.default_rng(0)
        df["Generosity"] = rng.normal(size=len(df))
        # Generosity is mostly missing and must be excluded
        df.loc[df.index % 3 == 0, "Generosity"] = np.nan
        # Drop interior rows of Denmark and Finland so the panel needs balancing
        return df.drop(index=[3, 20]).reset_index(drop=True)

    def test_runs_end_to_end(self, rows):
        result = run_pipeline(rows, _config(predictors=[PRED_A, PRED_B, "Generosity"]))

        assert not result.raw.is_balanced()
        assert result.balanced.is_balanced()
        assert "Generosity" in result.excluded_predictors
        assert result.predictors == [PRED_A, PRED_B]
        assert set(result.models) == {
            EstimatorKind.POOLED, EstimatorKind.WITHIN, EstimatorKind.RANDOM
        }
        assert np.isfinite(result.mape)
        assert 0.0 <= result.mape < 0.5
        assert len(result.predictions) == 5 * 2
        assert result.diagnostics.model_kind == result.selection.chosen.value

    def test_within_close_to_truth(self, rows):
        result = run_pipeline(rows, _config())
        within = result.models[EstimatorKind.WITHIN]
        assert within.coefficients[PRED_A] == pytest.approx(2.0, abs=0.15)
        assert within.coefficients[PRED_B] == pytest.approx(1.0, abs=0.3)

    @pytest.mark.parametrize("strategy", ["shared_times", "shared_individuals"])
    def test_subset_strategies(self, rows, strategy):
        result = run_pipeline(rows, _config(balance_strategy=strategy))
        assert result.balanced.is_balanced()
        assert len(result.balanced) < 5 * 18

    def test_all_predictors_sparse(self, rows):
        with pytest.raises(ValueError, match="missing threshold"):
            run_pipeline(rows, _config(predictors=["Generosity"]))

    def test_save(self, rows, tmp_path):
        result = run_pipeline(rows, _config())
        paths = result.save(tmp_path)

        assert (tmp_path / "coefficients_within.csv").exists()
        assert (tmp_path / "predictions.csv").exists()
        with open(tmp_path / "summary.json") as f:
            summary = json.load(f)
        assert summary["selection"]["chosen"] == result.selection.chosen.value
        assert len(paths) == len(result.models) + 2

    def test_summary_text(self, rows):
        text = run_pipeline(rows, _config()).summary()
        assert "PANEL PIPELINE SUMMARY" in text
        assert "Test MAPE" in text


class TestUnseenEntityPolicy:
    """Test-period entities without a fixed-effects intercept."""

    @pytest.fixture
    def model_and_test(self):
        df, _ = make_fe_panel(n_entities=4, n_periods=10, noise=0.05, seed=4)
        train, test = split_by_time(PanelFrame(df, ENTITY, TIME), 2)
        seen = train.select_entities(["Denmark", "Finland", "Norway"])
        model = fit_panel_model(seen, TARGET, [PRED_A, PRED_B], "within")
        return model, test

    def test_exclude(self, model_and_test):
        model, test = model_and_test
        predictions, excluded, scored = _predict_test(model, test, _config())

        assert excluded == ["Sweden"]
        assert "Sweden" not in predictions.index.get_level_values(0)
        assert scored.entities == ["Denmark", "Finland", "Norway"]

    def test_global_mean(self, model_and_test):
        model, test = model_and_test
        predictions, excluded, _ = _predict_test(
            model, test, _config(unknown_entity_policy="global_mean")
        )
        assert excluded == []
        assert len(predictions) == len(test)

    def test_raise(self, model_and_test):
        model, test = model_and_test
        with pytest.raises(UnknownEntityError):
            _predict_test(model, test, _config(unknown_entity_policy="raise"))


class TestConfig:
    """Test pipeline configuration."""

    def test_invalid_strategy(self):
        with pytest.raises(ValueError):
            _config(balance_strategy="interpolate")

    def test_invalid_policy(self):
        with pytest.raises(ValueError):
            _config(unknown_entity_policy="ignore")

    def test_from_settings_defaults(self):
        config = PipelineConfig.from_settings(test_periods=3)
        assert config.entity_column == "Country.name"
        assert config.time_column == "Year"
        assert config.test_periods == 3
        assert len(config.predictors) == 8

    def test_region_filter(self):
        data = pd.DataFrame({"region": ["a", "b", "a"], "x": [1, 2, 3]})
        assert apply_region_filter(data, "region", "a")["x"].tolist() == [1, 3]
        assert len(apply_region_filter(data, "region", None)) == 3
        with pytest.raises(KeyError):
            apply_region_filter(data, "missing", "a")
