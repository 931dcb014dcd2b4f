"""
Panel estimators and model assessment.

Contains:
- estimator.py: pooled, within and random-effects fits
- selection.py: pooling F, Hausman and Breusch-Pagan LM tests
- diagnostics.py: normality, heteroscedasticity, autocorrelation
- prediction.py: out-of-sample prediction and MAPE
"""

from happypanel.errors import (
    PanelDataError,
    DuplicateKeyError,
    AllMissingError,
    UnderidentifiedError,
    UnknownEntityError,
    ZeroActualWarning,
)
from happypanel.model.estimator import EstimatorKind, FittedModel, PanelEstimator, fit_panel_model
from happypanel.model.results import HypothesisResult
from happypanel.model.selection import (
    ModelSelection,
    pooling_test,
    hausman_test,
    breusch_pagan_lm_test,
    select_model,
)
from happypanel.model.diagnostics import (
    DiagnosticSuite,
    normality_test,
    heteroscedasticity_test,
    autocorrelation_test,
    run_residual_diagnostics,
)
from happypanel.model.prediction import predict, mape

__all__ = [
    "PanelDataError",
    "DuplicateKeyError",
    "AllMissingError",
    "UnderidentifiedError",
    "UnknownEntityError",
    "ZeroActualWarning",
    "EstimatorKind",
    "FittedModel",
    "PanelEstimator",
    "fit_panel_model",
    "HypothesisResult",
    "ModelSelection",
    "pooling_test",
    "hausman_test",
    "breusch_pagan_lm_test",
    "select_model",
    "DiagnosticSuite",
    "normality_test",
    "heteroscedasticity_test",
    "autocorrelation_test",
    "run_residual_diagnostics",
    "predict",
    "mape",
]
