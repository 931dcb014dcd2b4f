"""
Linear panel estimators: pooled OLS, within (fixed effects), random effects.

All three share one OLS core. Coefficient covariance is the residual
variance times the inverse Gram matrix of the (transformed) design:

    pooled:  y_it = a + x_it'b + e_it
    within:  (y_it - ybar_i) = (x_it - xbar_i)'b + e_it
             a_i = ybar_i - xbar_i'b
    random:  (y_it - th_i ybar_i) = (1 - th_i) a + (x_it - th_i xbar_i)'b + e_it
             th_i = 1 - sqrt(s2_e / (T_i s2_u + s2_e))

Random-effects variance components follow Swamy-Arora: s2_e from the
within regression, s2_u from the between regression on entity means.
Random effects is underidentified when the between regression has no
residual degrees of freedom or when s2_e is numerically zero (th_i = 1).

Designs are rank-checked before inversion; constant, collinear or
entity-absorbed predictors raise ValueError by name.

The within estimator optionally delegates standard errors to
linearmodels.PanelOLS (robust, entity-clustered or Driscoll-Kraay);
point estimates are unaffected.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from enum import Enum
from types import MappingProxyType
from typing import Any, Hashable, Literal, Mapping, Sequence

import numpy as np
import pandas as pd
from scipy import stats

from happypanel.data.panel_frame import PanelFrame
from happypanel.errors import UnderidentifiedError

logger = logging.getLogger(__name__)

CONST = "const"

CovType = Literal["unadjusted", "robust", "clustered", "kernel"]

# Singular-value cutoff on norm-scaled design columns
_RANK_TOL = 1e-10

# Below this 1 - theta the random-effects constant column vanishes
_THETA_TOL = 1e-8


class EstimatorKind(Enum):
    """Which linear panel estimator to fit."""

    POOLED = "pooled"
    WITHIN = "within"
    RANDOM = "random"


@dataclass(frozen=True)
class FittedModel:
    """Immutable result of a panel regression."""

    kind: EstimatorKind
    target: str
    predictors: tuple[str, ...]
    entity_column: str
    time_column: str

    # Slopes only; the intercept lives in ``intercept`` or ``entity_intercepts``
    coefficients: Mapping[str, float]
    intercept: float | None
    entity_intercepts: Mapping[Hashable, float] | None

    # Keyed by parameter name; includes "const" for pooled and random
    std_errors: Mapping[str, float]
    t_stats: Mapping[str, float]
    p_values: Mapping[str, float]
    _cov: pd.DataFrame = field(repr=False)

    # One per training observation, indexed by (entity, time)
    _residuals: pd.Series = field(repr=False)
    _exog: pd.DataFrame = field(repr=False)

    n_obs: int
    n_entities: int
    n_periods: int
    df_resid: int
    rss: float
    sigma2: float
    r_squared: float
    cov_type: str = "unadjusted"

    # Random effects only
    theta: float | None = None
    sigma2_entity: float | None = None
    sigma2_idiosyncratic: float | None = None

    def __post_init__(self):
        for name in ("coefficients", "std_errors", "t_stats", "p_values", "entity_intercepts"):
            value = getattr(self, name)
            if value is not None:
                object.__setattr__(self, name, MappingProxyType(dict(value)))
        for name in ("_cov", "_residuals", "_exog"):
            object.__setattr__(self, name, getattr(self, name).copy())

    @property
    def cov(self) -> pd.DataFrame:
        """Parameter covariance matrix (copy)."""
        return self._cov.copy()

    @property
    def residuals(self) -> pd.Series:
        """Training residuals indexed by (entity, time) (copy)."""
        return self._residuals.copy()

    @property
    def exog(self) -> pd.DataFrame:
        """Untransformed training predictors indexed by (entity, time) (copy)."""
        return self._exog.copy()

    @property
    def params(self) -> pd.Series:
        """All estimated parameters, intercept first when present."""
        values = {}
        if self.intercept is not None:
            values[CONST] = self.intercept
        values.update(self.coefficients)
        return pd.Series(values, dtype=float)

    def coefficient_table(self) -> pd.DataFrame:
        params = self.params
        return pd.DataFrame(
            {
                "coef": params,
                "std_error": pd.Series(dict(self.std_errors)).reindex(params.index),
                "t_stat": pd.Series(dict(self.t_stats)).reindex(params.index),
                "p_value": pd.Series(dict(self.p_values)).reindex(params.index),
            }
        )

    def to_dict(self) -> dict[str, Any]:
        """JSON-serialisable summary (residuals omitted)."""
        record: dict[str, Any] = {
            "kind": self.kind.value,
            "target": self.target,
            "predictors": list(self.predictors),
            "coefficients": dict(self.coefficients),
            "intercept": self.intercept,
            "std_errors": dict(self.std_errors),
            "t_stats": dict(self.t_stats),
            "p_values": dict(self.p_values),
            "n_obs": self.n_obs,
            "n_entities": self.n_entities,
            "n_periods": self.n_periods,
            "df_resid": self.df_resid,
            "rss": self.rss,
            "sigma2": self.sigma2,
            "r_squared": self.r_squared,
            "cov_type": self.cov_type,
        }
        if self.entity_intercepts is not None:
            record["entity_intercepts"] = {str(k): v for k, v in self.entity_intercepts.items()}
        if self.kind is EstimatorKind.RANDOM:
            record["theta"] = self.theta
            record["sigma2_entity"] = self.sigma2_entity
            record["sigma2_idiosyncratic"] = self.sigma2_idiosyncratic
        return record

    def summary(self) -> str:
        lines = [
            f"{self.kind.value.upper()} model: {self.target} ~ {' + '.join(self.predictors)}",
            f"  n_obs={self.n_obs}, entities={self.n_entities}, periods={self.n_periods}, "
            f"df_resid={self.df_resid}",
            f"  RSS={self.rss:.4f}, R^2={self.r_squared:.4f}, cov={self.cov_type}",
        ]
        if self.kind is EstimatorKind.RANDOM:
            lines.append(
                f"  theta={self.theta:.4f}, sigma2_u={self.sigma2_entity:.4f}, "
                f"sigma2_e={self.sigma2_idiosyncratic:.4f}"
            )
        lines.append(self.coefficient_table().round(4).to_string())
        return "\n".join(lines)


@dataclass
class _OLSFit:
    params: np.ndarray
    cov: np.ndarray
    resid: np.ndarray
    rss: float
    sigma2: float
    df_resid: int


def _collinear_columns(
    X: np.ndarray, names: Sequence[str], reference: np.ndarray | None = None
) -> list[str]:
    """
    Names of design columns spanned by the columns before them.

    Columns are scaled by the norms of ``reference`` (the untransformed
    design) so that a predictor wiped out by demeaning counts as absorbed
    rather than merely small.
    """
    norms = np.linalg.norm(X if reference is None else reference, axis=0)
    scaled = X / np.where(norms > 0, norms, 1.0)

    kept: list[int] = []
    absorbed = []
    for j, name in enumerate(names):
        if np.linalg.matrix_rank(scaled[:, kept + [j]], tol=_RANK_TOL) > len(kept):
            kept.append(j)
        else:
            absorbed.append(name)
    return absorbed


def _require_full_rank(
    X: np.ndarray,
    names: Sequence[str],
    reason: str,
    reference: np.ndarray | None = None,
) -> None:
    absorbed = _collinear_columns(X, names, reference)
    if absorbed:
        raise ValueError(
            f"Design matrix is rank deficient; predictors {absorbed} are {reason}"
        )


def _ols(X: np.ndarray, y: np.ndarray, df_resid: int) -> _OLSFit:
    gram_inv = np.linalg.inv(X.T @ X)
    params = gram_inv @ X.T @ y
    resid = y - X @ params
    rss = float(resid @ resid)
    sigma2 = rss / df_resid if df_resid > 0 else np.nan
    return _OLSFit(params, sigma2 * gram_inv, resid, rss, sigma2, df_resid)


def _inference(
    names: list[str], params: np.ndarray, cov: np.ndarray, df_resid: int
) -> tuple[dict[str, float], dict[str, float], dict[str, float]]:
    se = np.sqrt(np.clip(np.diag(cov), 0, None))
    with np.errstate(divide="ignore", invalid="ignore"):
        t = params / se
    p = 2 * stats.t.sf(np.abs(t), df_resid) if df_resid > 0 else np.full_like(t, np.nan)
    return (
        dict(zip(names, se.astype(float))),
        dict(zip(names, t.astype(float))),
        dict(zip(names, p.astype(float))),
    )


def _r_squared(y: np.ndarray, rss: float, centered: bool = True) -> float:
    tss = float(((y - y.mean()) ** 2).sum()) if centered else float((y ** 2).sum())
    return 1.0 - rss / tss if tss > 0 else np.nan


class PanelEstimator:
    """Fits pooled, within and random-effects models on a panel."""

    def __init__(self, cov_type: CovType = "unadjusted"):
        if cov_type not in ("unadjusted", "robust", "clustered", "kernel"):
            raise ValueError(f"Unknown cov_type '{cov_type}'")
        self.cov_type = cov_type

    def fit(
        self,
        frame: PanelFrame,
        target: str,
        predictors: Sequence[str],
        kind: EstimatorKind | str = EstimatorKind.WITHIN,
    ) -> FittedModel:
        """
        Fit a linear panel model.

        Args:
            frame: Panel without missing values in target/predictors
            target: Dependent variable column
            predictors: Regressor columns
            kind: "pooled", "within" or "random"

        Returns:
            FittedModel

        Raises:
            UnderidentifiedError: For random effects when predictors >= entities
        """
        try:
            kind = EstimatorKind(kind)
        except ValueError:
            raise ValueError(
                f"Unknown estimator kind '{kind}'. "
                f"Expected one of {[k.value for k in EstimatorKind]}"
            ) from None

        predictors = list(predictors)
        data = self._prepare(frame, target, predictors)

        if kind is EstimatorKind.POOLED:
            model = self._fit_pooled(frame, data, target, predictors)
        elif kind is EstimatorKind.WITHIN:
            model = self._fit_within(frame, data, target, predictors)
        else:
            model = self._fit_random(frame, data, target, predictors)

        logger.info(
            f"Fitted {kind.value} model on {model.n_obs} obs "
            f"({model.n_entities} entities): RSS={model.rss:.4f}"
        )
        return model

    # ------------------------------------------------------------------
    # Preparation
    # ------------------------------------------------------------------

    @staticmethod
    def _prepare(frame: PanelFrame, target: str, predictors: list[str]) -> pd.DataFrame:
        if not predictors:
            raise ValueError("At least one predictor is required")
        missing = [c for c in [target, *predictors] if c not in frame.columns]
        if missing:
            raise KeyError(f"Columns not in panel: {missing}")
        if len(frame) == 0:
            raise ValueError("Cannot fit a model on an empty panel")

        data = frame.data[[frame.entity_column, frame.time_column, target, *predictors]]
        if data[[target, *predictors]].isna().any().any():
            raise ValueError(
                "Target/predictors contain missing values; impute or drop them before fitting"
            )
        data = data.copy()
        data[[target, *predictors]] = data[[target, *predictors]].astype(float)
        return data

    @staticmethod
    def _index(frame: PanelFrame, data: pd.DataFrame) -> pd.MultiIndex:
        return pd.MultiIndex.from_frame(data[[frame.entity_column, frame.time_column]])

    def _build(
        self,
        kind: EstimatorKind,
        frame: PanelFrame,
        data: pd.DataFrame,
        target: str,
        predictors: list[str],
        names: list[str],
        fit: _OLSFit,
        r_squared: float,
        **extra: Any,
    ) -> FittedModel:
        se, t, p = _inference(names, fit.params, fit.cov, fit.df_resid)
        index = self._index(frame, data)
        params = dict(zip(names, fit.params.astype(float)))
        intercept = params.pop(CONST, None)
        return FittedModel(
            kind=kind,
            target=target,
            predictors=tuple(predictors),
            entity_column=frame.entity_column,
            time_column=frame.time_column,
            coefficients=params,
            intercept=intercept,
            std_errors=se,
            t_stats=t,
            p_values=p,
            _cov=pd.DataFrame(fit.cov, index=names, columns=names),
            _residuals=pd.Series(fit.resid, index=index, name="residual"),
            _exog=pd.DataFrame(data[predictors].values, index=index, columns=predictors),
            n_obs=len(data),
            n_entities=int(data[frame.entity_column].nunique()),
            n_periods=int(data[frame.time_column].nunique()),
            df_resid=fit.df_resid,
            rss=fit.rss,
            sigma2=fit.sigma2,
            r_squared=r_squared,
            **extra,
        )

    # ------------------------------------------------------------------
    # Estimators
    # ------------------------------------------------------------------

    def _fit_pooled(
        self, frame: PanelFrame, data: pd.DataFrame, target: str, predictors: list[str]
    ) -> FittedModel:
        n, k = len(data), len(predictors)
        y = data[target].to_numpy()
        X = np.column_stack([np.ones(n), data[predictors].to_numpy()])
        _require_full_rank(X, [CONST, *predictors], "constant or collinear")
        fit = _ols(X, y, n - k - 1)
        return self._build(
            EstimatorKind.POOLED, frame, data, target, predictors,
            [CONST, *predictors], fit, _r_squared(y, fit.rss),
            entity_intercepts=None,
        )

    def _within_transform(
        self, frame: PanelFrame, data: pd.DataFrame, cols: list[str]
    ) -> tuple[pd.DataFrame, pd.DataFrame]:
        means = data.groupby(frame.entity_column, sort=False)[cols].transform("mean")
        return data[cols] - means, data.groupby(frame.entity_column, sort=False)[cols].mean()

    def _fit_within(
        self, frame: PanelFrame, data: pd.DataFrame, target: str, predictors: list[str]
    ) -> FittedModel:
        n, k = len(data), len(predictors)
        n_entities = int(data[frame.entity_column].nunique())
        demeaned, entity_means = self._within_transform(frame, data, [target, *predictors])

        y_dm = demeaned[target].to_numpy()
        X_dm = demeaned[predictors].to_numpy()
        _require_full_rank(
            X_dm, predictors, "absorbed by the entity effects or collinear",
            reference=data[predictors].to_numpy(),
        )
        fit = _ols(X_dm, y_dm, n - n_entities - k)

        intercepts = entity_means[target] - entity_means[predictors].to_numpy() @ fit.params
        model = self._build(
            EstimatorKind.WITHIN, frame, data, target, predictors,
            predictors, fit, _r_squared(y_dm, fit.rss, centered=False),
            entity_intercepts={e: float(v) for e, v in intercepts.items()},
            cov_type=self.cov_type,
        )
        if self.cov_type != "unadjusted":
            model = self._with_linearmodels_errors(model, frame, data, target, predictors)
        return model

    def _fit_random(
        self, frame: PanelFrame, data: pd.DataFrame, target: str, predictors: list[str]
    ) -> FittedModel:
        n, k = len(data), len(predictors)
        entity_col = frame.entity_column
        n_entities = int(data[entity_col].nunique())
        df_between = n_entities - k - 1
        if df_between < 1:
            raise UnderidentifiedError(k, n_entities)

        cols = [target, *predictors]
        demeaned, entity_means = self._within_transform(frame, data, cols)

        # Idiosyncratic variance from the within regression
        X_within = demeaned[predictors].to_numpy()
        _require_full_rank(
            X_within, predictors, "absorbed by the entity effects or collinear",
            reference=data[predictors].to_numpy(),
        )
        within = _ols(X_within, demeaned[target].to_numpy(), n - n_entities - k)
        sigma2_e = within.sigma2 if np.isfinite(within.sigma2) else 0.0

        # Between regression on entity means
        Xb = np.column_stack([np.ones(n_entities), entity_means[predictors].to_numpy()])
        absorbed = _collinear_columns(Xb, [CONST, *predictors])
        if absorbed:
            raise UnderidentifiedError(
                k, n_entities,
                reason=f"predictors {absorbed} do not vary across entity means",
            )
        between = _ols(Xb, entity_means[target].to_numpy(), df_between)

        t_i = data.groupby(entity_col, sort=False).size()
        t_bar = n_entities / float((1.0 / t_i).sum())
        sigma2_u = max(between.sigma2 - sigma2_e / t_bar, 0.0)

        denom = t_i * sigma2_u + sigma2_e
        theta_i = pd.Series(
            np.where(denom > 0, 1 - np.sqrt(sigma2_e / denom.where(denom > 0, 1.0)), 0.0),
            index=t_i.index,
        )
        if float((1 - theta_i).min()) < _THETA_TOL:
            raise UnderidentifiedError(
                k, n_entities,
                reason=(
                    "idiosyncratic variance is numerically zero (theta = 1); "
                    "the random-effects intercept is not identified"
                ),
            )
        theta_obs = data[entity_col].map(theta_i).to_numpy()

        means_obs = data[[entity_col]].join(entity_means, on=entity_col)
        y_star = data[target].to_numpy() - theta_obs * means_obs[target].to_numpy()
        X_star = np.column_stack(
            [
                1 - theta_obs,
                data[predictors].to_numpy()
                - theta_obs[:, None] * means_obs[predictors].to_numpy(),
            ]
        )
        fit = _ols(X_star, y_star, n - k - 1)

        theta = float(theta_i.mean())
        logger.info(
            f"Random effects variance components: sigma2_u={sigma2_u:.4f}, "
            f"sigma2_e={sigma2_e:.4f}, theta={theta:.4f}"
        )
        return self._build(
            EstimatorKind.RANDOM, frame, data, target, predictors,
            [CONST, *predictors], fit, _r_squared(y_star, fit.rss),
            entity_intercepts=None,
            theta=theta,
            sigma2_entity=float(sigma2_u),
            sigma2_idiosyncratic=float(sigma2_e),
        )

    def _with_linearmodels_errors(
        self,
        model: FittedModel,
        frame: PanelFrame,
        data: pd.DataFrame,
        target: str,
        predictors: list[str],
    ) -> FittedModel:
        """Replace within standard errors with linearmodels' robust variants."""
        from linearmodels.panel import PanelOLS

        panel = data.copy()
        # linearmodels needs a numeric or date-like time index
        panel["_period"] = pd.factorize(panel[frame.time_column], sort=True)[0]
        panel = panel.set_index([frame.entity_column, "_period"])

        lm = PanelOLS(panel[target], panel[predictors], entity_effects=True)
        if self.cov_type == "clustered":
            result = lm.fit(cov_type="clustered", cluster_entity=True)
        else:
            result = lm.fit(cov_type=self.cov_type)

        cov = result.cov.reindex(index=predictors, columns=predictors)
        return replace(
            model,
            std_errors={p: float(result.std_errors[p]) for p in predictors},
            t_stats={p: float(result.tstats[p]) for p in predictors},
            p_values={p: float(result.pvalues[p]) for p in predictors},
            _cov=cov.astype(float),
        )


def fit_panel_model(
    frame: PanelFrame,
    target: str,
    predictors: Sequence[str],
    kind: EstimatorKind | str = EstimatorKind.WITHIN,
    cov_type: CovType = "unadjusted",
) -> FittedModel:
    """Convenience wrapper around PanelEstimator.fit."""
    return PanelEstimator(cov_type=cov_type).fit(frame, target, predictors, kind)
