"""
Panel construction, balancing and imputation.
"""

from happypanel.data.panel_frame import PanelFrame, PanelDimensions, split_by_time
from happypanel.data.balancing import BalanceStrategy, balance
from happypanel.data.imputation import (
    impute_endpoint_extend,
    any_missing,
    missing_fraction,
    flag_sparse_columns,
)

__all__ = [
    "PanelFrame",
    "PanelDimensions",
    "split_by_time",
    "BalanceStrategy",
    "balance",
    "impute_endpoint_extend",
    "any_missing",
    "missing_fraction",
    "flag_sparse_columns",
]
