"""
Residual diagnostics for fitted panel models.

Implements:
- Shapiro-Wilk normality test
- Breusch-Pagan heteroscedasticity test (squared residuals on predictors)
- Ljung-Box autocorrelation test on residuals ordered by entity then time

All tests are read-only and advisory: the driver decides whether to
proceed, transform or reject the model.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

import numpy as np
import statsmodels.api as sm
from scipy import stats
from statsmodels.stats.diagnostic import acorr_ljungbox, het_breuschpagan

from happypanel.model.estimator import FittedModel
from happypanel.model.results import HypothesisResult

logger = logging.getLogger(__name__)


def _ordered_residuals(model: FittedModel) -> np.ndarray:
    return model.residuals.sort_index(level=[0, 1], sort_remaining=False).to_numpy()


def normality_test(model: FittedModel) -> HypothesisResult:
    """Shapiro-Wilk test; H0: residuals are normally distributed."""
    resid = model.residuals.to_numpy()
    if len(resid) < 3:
        raise ValueError("Shapiro-Wilk needs at least 3 residuals")

    statistic, p_value = stats.shapiro(resid)
    return HypothesisResult(
        name="Shapiro-Wilk",
        statistic=float(statistic),
        p_value=float(p_value),
        null_hypothesis="Residuals are normally distributed",
    )


def heteroscedasticity_test(model: FittedModel, studentize: bool = True) -> HypothesisResult:
    """
    Breusch-Pagan test; H0: constant residual variance.

    Args:
        model: Fitted model whose residuals are tested
        studentize: Use Koenker's studentized LM statistic

    Returns:
        HypothesisResult with the LM statistic
    """
    resid = model.residuals.to_numpy()
    exog = sm.add_constant(model.exog.to_numpy(), has_constant="add")

    lm, lm_pvalue, _, _ = het_breuschpagan(resid, exog, robust=studentize)
    return HypothesisResult(
        name="Breusch-Pagan",
        statistic=float(lm),
        p_value=float(lm_pvalue),
        df=(exog.shape[1] - 1,),
        null_hypothesis="Residual variance is constant",
    )


def autocorrelation_test(model: FittedModel, lags: int = 1) -> HypothesisResult:
    """
    Ljung-Box test; H0: no serial correlation up to ``lags``.

    Residuals are ordered by time within entity and the entity blocks
    concatenated.
    """
    resid = _ordered_residuals(model)
    if lags < 1 or lags >= len(resid):
        raise ValueError(f"lags must be between 1 and {len(resid) - 1}, got {lags}")

    table = acorr_ljungbox(resid, lags=[lags])
    row = table.iloc[-1]
    return HypothesisResult(
        name="Ljung-Box",
        statistic=float(row["lb_stat"]),
        p_value=float(row["lb_pvalue"]),
        df=(lags,),
        null_hypothesis=f"No residual autocorrelation up to lag {lags}",
    )


@dataclass
class DiagnosticSuite:
    """Complete suite of residual diagnostic results."""

    model_kind: str
    normality: HypothesisResult
    heteroscedasticity: HypothesisResult
    autocorrelation: HypothesisResult

    def results(self) -> list[HypothesisResult]:
        return [self.normality, self.heteroscedasticity, self.autocorrelation]

    def all_pass(self, significance: float = 0.05) -> bool:
        """True if no test rejects its null at the given level."""
        return not any(r.reject(significance) for r in self.results())

    def to_dict(self) -> dict[str, Any]:
        return {
            "model_kind": self.model_kind,
            "normality": self.normality.to_dict(),
            "heteroscedasticity": self.heteroscedasticity.to_dict(),
            "autocorrelation": self.autocorrelation.to_dict(),
        }

    def summary(self, significance: float = 0.05) -> str:
        lines = ["=" * 60, f"RESIDUAL DIAGNOSTICS ({self.model_kind})", "=" * 60]
        for result in self.results():
            status = "FAIL" if result.reject(significance) else "PASS"
            lines.append(f"{result} [{status}]")
            lines.append(f"  H0: {result.null_hypothesis}")
        overall = "ALL DIAGNOSTICS PASS" if self.all_pass(significance) else "SOME DIAGNOSTICS FAIL"
        lines.append(f"Overall: {overall}")
        return "\n".join(lines)


def run_residual_diagnostics(model: FittedModel, lags: int = 1) -> DiagnosticSuite:
    """Run all three residual tests on a fitted model."""
    logger.info("Running residual normality test...")
    normality = normality_test(model)

    logger.info("Running heteroscedasticity test...")
    heteroscedasticity = heteroscedasticity_test(model)

    logger.info("Running autocorrelation test...")
    autocorrelation = autocorrelation_test(model, lags=lags)

    return DiagnosticSuite(
        model_kind=model.kind.value,
        normality=normality,
        heteroscedasticity=heteroscedasticity,
        autocorrelation=autocorrelation,
    )
