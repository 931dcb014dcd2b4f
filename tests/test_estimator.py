"""
Tests for pooled, within and random-effects estimators.
"""

import pytest
import pandas as pd
import numpy as np

from happypanel.data.panel_frame import PanelFrame
from happypanel.errors import UnderidentifiedError
from happypanel.model.estimator import CONST, EstimatorKind, PanelEstimator, fit_panel_model
from tests.fixtures.synthetic_dgp import ENTITY, TIME, TARGET, PRED_A, PRED_B, make_fe_panel

PREDICTORS = [PRED_A, PRED_B]


@pytest.fixture
def exact_panel():
    df, truth = make_fe_panel(n_entities=4, n_periods=16)
    return PanelFrame(df, ENTITY, TIME), truth


@pytest.fixture
def noisy_panel():
    df, truth = make_fe_panel(n_entities=6, n_periods=20, noise=0.2, seed=1)
    return PanelFrame(df, ENTITY, TIME), truth


class TestWithinEstimator:
    """Test fixed-effects (within) estimation."""

    def test_recovers_exact_slopes(self, exact_panel):
        panel, truth = exact_panel
        model = fit_panel_model(panel, TARGET, PREDICTORS, "within")

        assert model.kind is EstimatorKind.WITHIN
        assert model.coefficients[PRED_A] == pytest.approx(2.0, abs=1e-6)
        assert model.coefficients[PRED_B] == pytest.approx(1.0, abs=1e-6)
        assert model.rss == pytest.approx(0.0, abs=1e-12)

    def test_recovers_entity_intercepts(self, exact_panel):
        panel, truth = exact_panel
        model = fit_panel_model(panel, TARGET, PREDICTORS, "within")

        assert model.intercept is None
        for entity, alpha in truth["intercepts"].items():
            assert model.entity_intercepts[entity] == pytest.approx(alpha, abs=1e-6)

    def test_slopes_invariant_to_entity_shift(self, noisy_panel):
        panel, _ = noisy_panel
        base = fit_panel_model(panel, TARGET, PREDICTORS, "within")

        shifted_data = panel.data
        mask = shifted_data[ENTITY] == "Denmark"
        shifted_data.loc[mask, TARGET] += 25.0
        shifted = fit_panel_model(panel.with_values(shifted_data), TARGET, PREDICTORS, "within")

        for p in PREDICTORS:
            assert shifted.coefficients[p] == pytest.approx(base.coefficients[p], abs=1e-9)
        assert shifted.entity_intercepts["Denmark"] == pytest.approx(
            base.entity_intercepts["Denmark"] + 25.0
        )
        assert shifted.entity_intercepts["Finland"] == pytest.approx(
            base.entity_intercepts["Finland"]
        )

    def test_degrees_of_freedom(self, noisy_panel):
        panel, _ = noisy_panel
        model = fit_panel_model(panel, TARGET, PREDICTORS, "within")

        assert model.n_obs == 120
        assert model.n_entities == 6
        assert model.df_resid == 120 - 6 - 2
        assert model.sigma2 == pytest.approx(model.rss / model.df_resid)

    def test_residuals_indexed_by_keys(self, noisy_panel):
        panel, _ = noisy_panel
        model = fit_panel_model(panel, TARGET, PREDICTORS, "within")

        assert len(model.residuals) == model.n_obs
        assert model.residuals.index.names == [ENTITY, TIME]
        # Within residuals sum to zero per entity
        sums = model.residuals.groupby(level=0).sum()
        assert np.allclose(sums, 0.0, atol=1e-8)

    def test_standard_errors_positive(self, noisy_panel):
        panel, _ = noisy_panel
        model = fit_panel_model(panel, TARGET, PREDICTORS, "within")

        table = model.coefficient_table()
        assert list(table.columns) == ["coef", "std_error", "t_stat", "p_value"]
        assert (table["std_error"] > 0).all()
        assert (table["p_value"] < 1e-6).all()


class TestPooledEstimator:
    """Test pooled OLS."""

    def test_matches_lstsq(self, noisy_panel):
        panel, _ = noisy_panel
        model = fit_panel_model(panel, TARGET, PREDICTORS, "pooled")

        data = panel.data
        X = np.column_stack([np.ones(len(data)), data[PREDICTORS].to_numpy()])
        expected, *_ = np.linalg.lstsq(X, data[TARGET].to_numpy(), rcond=None)

        assert model.intercept == pytest.approx(expected[0])
        assert model.coefficients[PRED_A] == pytest.approx(expected[1])
        assert model.coefficients[PRED_B] == pytest.approx(expected[2])
        assert model.df_resid == model.n_obs - 3
        assert CONST in model.std_errors

    def test_pooled_rss_at_least_within(self, noisy_panel):
        panel, _ = noisy_panel
        pooled = fit_panel_model(panel, TARGET, PREDICTORS, "pooled")
        within = fit_panel_model(panel, TARGET, PREDICTORS, "within")
        assert pooled.rss >= within.rss


class TestRandomEstimator:
    """Test Swamy-Arora random effects."""

    def test_variance_components(self, noisy_panel):
        panel, _ = noisy_panel
        model = fit_panel_model(panel, TARGET, PREDICTORS, "random")

        assert model.kind is EstimatorKind.RANDOM
        assert 0.0 <= model.theta <= 1.0
        assert model.sigma2_entity >= 0.0
        assert model.sigma2_idiosyncratic == pytest.approx(0.04, rel=0.5)
        assert model.intercept is not None

    def test_slopes_close_to_truth(self, noisy_panel):
        panel, truth = noisy_panel
        model = fit_panel_model(panel, TARGET, PREDICTORS, "random")

        assert model.coefficients[PRED_A] == pytest.approx(truth["beta"][0], abs=0.2)
        assert model.coefficients[PRED_B] == pytest.approx(truth["beta"][1], abs=0.3)

    def test_underidentified(self):
        rng = np.random.default_rng(0)
        rows = []
        for i in range(4):
            for t in range(10):
                row = {ENTITY: f"E{i}", TIME: t, TARGET: rng.normal()}
                row.update({f"x{j}": rng.normal() for j in range(5)})
                rows.append(row)
        panel = PanelFrame(pd.DataFrame(rows), ENTITY, TIME)

        with pytest.raises(UnderidentifiedError) as exc:
            fit_panel_model(panel, TARGET, [f"x{j}" for j in range(5)], "random")
        assert exc.value.n_predictors == 5
        assert exc.value.n_entities == 4


class TestEstimatorValidation:
    """Test input checks."""

    def test_missing_values_rejected(self, exact_panel):
        panel, _ = exact_panel
        data = panel.data
        data.loc[0, PRED_A] = np.nan
        with pytest.raises(ValueError, match="missing values"):
            fit_panel_model(panel.with_values(data), TARGET, PREDICTORS)

    def test_unknown_column(self, exact_panel):
        panel, _ = exact_panel
        with pytest.raises(KeyError):
            fit_panel_model(panel, TARGET, ["Generosity"])

    def test_no_predictors(self, exact_panel):
        panel, _ = exact_panel
        with pytest.raises(ValueError):
            fit_panel_model(panel, TARGET, [])

    def test_unknown_kind(self, exact_panel):
        panel, _ = exact_panel
        with pytest.raises(ValueError, match="Unknown estimator kind"):
            fit_panel_model(panel, TARGET, PREDICTORS, "between")

    def test_unknown_cov_type(self):
        with pytest.raises(ValueError):
            PanelEstimator(cov_type="bootstrap")


class TestRobustCovariance:
    """Test linearmodels-backed standard errors for the within model."""

    @pytest.mark.parametrize("cov_type", ["robust", "clustered"])
    def test_point_estimates_unchanged(self, noisy_panel, cov_type):
        panel, _ = noisy_panel
        base = fit_panel_model(panel, TARGET, PREDICTORS, "within")
        robust = fit_panel_model(panel, TARGET, PREDICTORS, "within", cov_type=cov_type)

        assert robust.cov_type == cov_type
        for p in PREDICTORS:
            assert robust.coefficients[p] == pytest.approx(base.coefficients[p], abs=1e-10)
            assert np.isfinite(robust.std_errors[p])
            assert robust.std_errors[p] > 0


class TestSerialization:
    """Test summary output."""

    def test_to_dict(self, noisy_panel):
        panel, _ = noisy_panel
        record = fit_panel_model(panel, TARGET, PREDICTORS, "random").to_dict()

        assert record["kind"] == "random"
        assert set(record["coefficients"]) == set(PREDICTORS)
        assert "theta" in record

    def test_summary_mentions_predictors(self, noisy_panel):
        panel, _ = noisy_panel
        text = fit_panel_model(panel, TARGET, PREDICTORS, "within").summary()
        assert "WITHIN" in text
        assert PRED_A in text


class TestRankDeficiency:
    """Test that absorbed or collinear predictors are reported by name."""

    def test_entity_constant_predictor_absorbed_by_within(self, noisy_panel):
        panel, _ = noisy_panel
        data = panel.data
        data["Population"] = data[ENTITY].map({e: 5.0 + i for i, e in enumerate(panel.entities)})

        with pytest.raises(ValueError, match="Population") as exc:
            fit_panel_model(panel.with_values(data), TARGET, [PRED_A, "Population"], "within")
        assert "absorbed" in str(exc.value)
        assert PRED_A not in str(exc.value)

    def test_entity_constant_predictor_fine_for_pooled(self, noisy_panel):
        panel, _ = noisy_panel
        data = panel.data
        data["Population"] = data[ENTITY].map({e: 5.0 + i for i, e in enumerate(panel.entities)})

        model = fit_panel_model(panel.with_values(data), TARGET, [PRED_A, "Population"], "pooled")
        assert np.isfinite(model.std_errors["Population"])
        assert model.std_errors["Population"] > 0

    def test_collinear_predictor_pooled(self, noisy_panel):
        panel, _ = noisy_panel
        data = panel.data
        data["GDP.Doubled"] = 2.0 * data[PRED_A]

        with pytest.raises(ValueError, match="GDP.Doubled"):
            fit_panel_model(panel.with_values(data), TARGET, [PRED_A, "GDP.Doubled"], "pooled")

    def test_constant_predictor_pooled(self, noisy_panel):
        panel, _ = noisy_panel
        data = panel.data
        data["Flat"] = 3.0

        with pytest.raises(ValueError, match="Flat"):
            fit_panel_model(panel.with_values(data), TARGET, [PRED_A, "Flat"], "pooled")


class TestRandomDegeneracies:
    """Test random-effects cases that cannot identify the variance components."""

    def test_between_regression_without_residual_df(self):
        # 3 entities, 2 predictors + intercept leaves no between residual df
        df, _ = make_fe_panel(n_entities=3, n_periods=12, noise=0.3, seed=4)
        panel = PanelFrame(df, ENTITY, TIME)

        with pytest.raises(UnderidentifiedError) as exc:
            fit_panel_model(panel, TARGET, PREDICTORS, "random")
        assert exc.value.n_predictors == 2
        assert exc.value.n_entities == 3

    def test_noise_free_panel(self, exact_panel):
        panel, _ = exact_panel
        with pytest.raises(UnderidentifiedError, match="theta = 1"):
            fit_panel_model(panel, TARGET, PREDICTORS, "random")

    def test_within_still_fits_noise_free_panel(self, exact_panel):
        panel, _ = exact_panel
        model = fit_panel_model(panel, TARGET, PREDICTORS, "within")
        assert model.rss == pytest.approx(0.0, abs=1e-12)


class TestImmutability:
    """Test that fitted models cannot be changed through their accessors."""

    def test_mappings_read_only(self, noisy_panel):
        panel, _ = noisy_panel
        model = fit_panel_model(panel, TARGET, PREDICTORS, "within")

        with pytest.raises(TypeError):
            model.coefficients[PRED_A] = 0.0
        with pytest.raises(TypeError):
            model.std_errors[PRED_A] = 0.0
        with pytest.raises(TypeError):
            model.entity_intercepts["Denmark"] = 0.0

    def test_frames_returned_as_copies(self, noisy_panel):
        panel, _ = noisy_panel
        model = fit_panel_model(panel, TARGET, PREDICTORS, "pooled")
        residuals = model.residuals.copy()
        cov = model.cov.copy()

        model.residuals.iloc[0] = 1e6
        model.cov.iloc[0, 0] = -1.0
        model.exog.iloc[0, 0] = 1e6

        pd.testing.assert_series_equal(model.residuals, residuals)
        pd.testing.assert_frame_equal(model.cov, cov)
        assert model.exog.iloc[0, 0] == panel.data[PRED_A].iloc[0]
