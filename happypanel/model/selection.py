"""
Hypothesis tests for choosing among panel estimators.

Implements:
- Pooling (Chow) F-test: pooled OLS vs fixed effects
- Hausman test: fixed vs random effects
- Breusch-Pagan LM test: pooled OLS vs random effects
- A selection rule chaining the above
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

import numpy as np
from scipy import stats

from happypanel.model.estimator import EstimatorKind, FittedModel
from happypanel.model.results import HypothesisResult

logger = logging.getLogger(__name__)

# Smallest eigenvalue of V_fe - V_re, relative to V_fe, that still carries information
_HAUSMAN_TOL = 1e-10


def _require_kind(model: FittedModel, kind: EstimatorKind, role: str) -> None:
    if model.kind is not kind:
        raise ValueError(f"{role} must be a {kind.value} model, got {model.kind.value}")


def pooling_test(pooled: FittedModel, fixed: FittedModel) -> HypothesisResult:
    """
    F-test for entity effects (pooled vs within).

        F = ((RSS_pooled - RSS_fe) / (N - 1)) / (RSS_fe / (n - N - k))

    Args:
        pooled: Pooled OLS fit
        fixed: Within fit on the same observations

    Returns:
        HypothesisResult with F statistic and p-value
    """
    _require_kind(pooled, EstimatorKind.POOLED, "pooled")
    _require_kind(fixed, EstimatorKind.WITHIN, "fixed")
    if pooled.n_obs != fixed.n_obs:
        raise ValueError(
            f"Models were fitted on different samples ({pooled.n_obs} vs {fixed.n_obs} obs)"
        )

    n_entities = fixed.n_entities
    k = len(fixed.predictors)
    df1 = n_entities - 1
    df2 = fixed.n_obs - n_entities - k
    if df1 < 1 or df2 < 1:
        raise ValueError(f"Pooling test needs positive degrees of freedom, got ({df1}, {df2})")

    numerator = max(pooled.rss - fixed.rss, 0.0) / df1
    denominator = fixed.rss / df2

    if numerator == 0:
        statistic = 0.0
    elif denominator == 0:
        statistic = np.inf
    else:
        statistic = numerator / denominator
    p_value = float(stats.f.sf(statistic, df1, df2))

    result = HypothesisResult(
        name="Pooling F-test",
        statistic=float(statistic),
        p_value=p_value,
        df=(df1, df2),
        null_hypothesis="No entity effects (pooled OLS is adequate)",
    )
    logger.info(str(result))
    return result


def hausman_test(fixed: FittedModel, random: FittedModel) -> HypothesisResult:
    """
    Hausman specification test on the common slope coefficients.

        H = (b_fe - b_re)' [V_fe - V_re]^-1 (b_fe - b_re) ~ chi2(k)

    V_re is rescaled to the within residual variance so that both
    covariances share one estimate of s2_e and the difference stays
    positive semi-definite. When the difference is numerically singular
    (for example, random effects collapsed onto fixed effects) the test
    carries no information: the statistic and p-value are NaN and the
    result logs a warning.
    """
    _require_kind(fixed, EstimatorKind.WITHIN, "fixed")
    _require_kind(random, EstimatorKind.RANDOM, "random")

    common = [p for p in fixed.predictors if p in random.coefficients]
    if not common:
        raise ValueError("Models share no slope coefficients")
    df = len(common)

    diff = np.array([fixed.coefficients[p] - random.coefficients[p] for p in common])
    v_fe = fixed.cov.loc[common, common].to_numpy()
    v_re = random.cov.loc[common, common].to_numpy()
    if random.sigma2 > 0:
        v_re = v_re * (fixed.sigma2 / random.sigma2)
    v_diff = v_fe - v_re
    v_diff = (v_diff + v_diff.T) / 2

    informative = bool(np.isfinite(diff).all() and np.isfinite(v_diff).all())
    if informative:
        scale = float(np.abs(np.linalg.eigvalsh(v_fe)).max())
        informative = scale > 0 and float(np.linalg.eigvalsh(v_diff).min()) > _HAUSMAN_TOL * scale

    if informative:
        statistic = float(max(diff @ np.linalg.inv(v_diff) @ diff, 0.0))
        p_value = float(stats.chi2.sf(statistic, df))
    else:
        logger.warning(
            "Hausman test uninformative: V_fe - V_re is not positive definite"
        )
        statistic = p_value = float("nan")

    result = HypothesisResult(
        name="Hausman test",
        statistic=statistic,
        p_value=p_value,
        df=(df,),
        null_hypothesis="Entity effects uncorrelated with regressors (random effects consistent)",
    )
    logger.info(str(result))
    return result


def breusch_pagan_lm_test(pooled: FittedModel) -> HypothesisResult:
    """
    Breusch-Pagan Lagrange multiplier test for a random entity effect.

    Uses pooled OLS residuals; the unbalanced form reduces to
    nT / (2(T-1)) [sum_i (sum_t e_it)^2 / sum e_it^2 - 1]^2 when balanced.
    """
    _require_kind(pooled, EstimatorKind.POOLED, "pooled")

    resid = pooled.residuals
    grouped = resid.groupby(level=0, sort=False)
    t_i = grouped.size()
    scale = float((t_i * (t_i - 1)).sum())
    if scale == 0:
        raise ValueError("Breusch-Pagan LM test needs entities observed more than once")

    total_ss = float((resid ** 2).sum())
    n = len(resid)
    if total_ss == 0:
        statistic = 0.0
    else:
        ratio = float((grouped.sum() ** 2).sum()) / total_ss
        statistic = n ** 2 / (2 * scale) * (ratio - 1) ** 2

    result = HypothesisResult(
        name="Breusch-Pagan LM test",
        statistic=statistic,
        p_value=float(stats.chi2.sf(statistic, 1)),
        df=(1,),
        null_hypothesis="No random entity effect (pooled OLS is adequate)",
    )
    logger.info(str(result))
    return result


@dataclass
class ModelSelection:
    """Outcome of the estimator selection sequence."""

    chosen: EstimatorKind
    significance: float
    pooling: HypothesisResult
    hausman: HypothesisResult | None = None
    lagrange_multiplier: HypothesisResult | None = None
    notes: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "chosen": self.chosen.value,
            "significance": self.significance,
            "pooling": self.pooling.to_dict(),
            "hausman": self.hausman.to_dict() if self.hausman else None,
            "lagrange_multiplier": (
                self.lagrange_multiplier.to_dict() if self.lagrange_multiplier else None
            ),
            "notes": list(self.notes),
        }

    def summary(self) -> str:
        lines = ["=" * 60, "MODEL SELECTION", "=" * 60]
        for test in (self.pooling, self.lagrange_multiplier, self.hausman):
            if test is None:
                continue
            verdict = "reject H0" if test.reject(self.significance) else "keep H0"
            lines.append(f"{test} [{verdict}]")
        lines.extend(f"  - {note}" for note in self.notes)
        lines.append(f"Chosen estimator: {self.chosen.value}")
        return "\n".join(lines)


def select_model(
    pooled: FittedModel,
    fixed: FittedModel,
    random: FittedModel | None = None,
    significance: float = 0.05,
) -> ModelSelection:
    """
    Choose between pooled, within and random-effects fits.

    The pooling test decides pooled vs within. When it rejects and a
    random-effects fit is available, the Hausman test decides within vs
    random.
    """
    pooling = pooling_test(pooled, fixed)
    lm = breusch_pagan_lm_test(pooled)
    notes: list[str] = []

    if not pooling.reject(significance):
        notes.append("Pooling test does not reject: entity effects not significant")
        chosen = EstimatorKind.POOLED
        return ModelSelection(chosen, significance, pooling, None, lm, notes)

    notes.append("Pooling test rejects pooled OLS in favour of entity effects")
    if random is None:
        notes.append("Random effects unavailable; keeping fixed effects")
        return ModelSelection(EstimatorKind.WITHIN, significance, pooling, None, lm, notes)

    hausman = hausman_test(fixed, random)
    if not np.isfinite(hausman.p_value):
        notes.append("Hausman test uninformative; keeping fixed effects")
        chosen = EstimatorKind.WITHIN
    elif hausman.reject(significance):
        notes.append("Hausman test rejects random effects; fixed effects are consistent")
        chosen = EstimatorKind.WITHIN
    else:
        notes.append("Hausman test does not reject; random effects are efficient")
        chosen = EstimatorKind.RANDOM

    logger.info(f"Selected {chosen.value} estimator")
    return ModelSelection(chosen, significance, pooling, hausman, lm, notes)
