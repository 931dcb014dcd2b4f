"""
Shared result record for hypothesis tests.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import numpy as np


@dataclass(frozen=True)
class HypothesisResult:
    """Statistic and p-value of a single hypothesis test."""

    name: str
    statistic: float
    p_value: float
    df: tuple[float, ...] = ()
    null_hypothesis: str = ""

    def reject(self, significance: float = 0.05) -> bool:
        """True when the null is rejected at the given level."""
        return bool(np.isfinite(self.p_value) and self.p_value < significance)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "statistic": float(self.statistic),
            "p_value": float(self.p_value),
            "df": list(self.df),
            "null_hypothesis": self.null_hypothesis,
        }

    def __str__(self) -> str:
        df = f", df={self.df}" if self.df else ""
        return f"{self.name}: stat={self.statistic:.4f}, p={self.p_value:.4f}{df}"
