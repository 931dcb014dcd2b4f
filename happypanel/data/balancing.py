"""
Balancing strategies for unbalanced panels.

- fill: keep every entity, expand to the union of time labels and insert
  missing-valued rows for unobserved cells
- shared_times: keep only the time labels observed for every entity
- shared_individuals: keep only entities observed at every time label

Only ``fill`` can add rows. The other two strictly subset the input.
"""

from __future__ import annotations

import logging
from enum import Enum

import pandas as pd

from happypanel.data.panel_frame import PanelFrame

logger = logging.getLogger(__name__)


class BalanceStrategy(Enum):
    """How to turn an unbalanced panel into a balanced one."""

    FILL = "fill"
    SHARED_TIMES = "shared_times"
    SHARED_INDIVIDUALS = "shared_individuals"


def _fill(frame: PanelFrame) -> PanelFrame:
    entity, time = frame.entity_column, frame.time_column
    full_index = pd.MultiIndex.from_product(
        [frame.entities, frame.time_labels], names=[entity, time]
    )
    data = frame.data.set_index([entity, time])
    expanded = data.reindex(full_index).reset_index()

    inserted = len(expanded) - len(data)
    logger.info(
        f"fill: inserted {inserted} missing-valued rows "
        f"({len(frame.entities)} entities x {len(frame.time_labels)} periods)"
    )
    return frame.with_values(expanded)


def _shared_times(frame: PanelFrame) -> PanelFrame:
    shared = frame.shared_time_labels()
    dropped = [t for t in frame.time_labels if t not in set(shared)]
    result = frame.select_times(shared)
    logger.info(
        f"shared_times: kept {len(shared)} periods, dropped {len(dropped)} "
        f"({len(frame) - len(result)} rows)"
    )
    if not shared:
        logger.warning("shared_times: no time label is common to all entities; panel is empty")
    return result


def _shared_individuals(frame: PanelFrame) -> PanelFrame:
    universe = set(frame.time_labels)
    complete = [e for e, times in frame.entity_times().items() if times == universe]
    dropped = [e for e in frame.entities if e not in set(complete)]
    result = frame.select_entities(complete)
    logger.info(
        f"shared_individuals: kept {len(complete)} entities, dropped {len(dropped)}"
        + (f": {dropped}" if dropped else "")
    )
    if not complete:
        logger.warning("shared_individuals: no entity covers every period; panel is empty")
    return result


_STRATEGIES = {
    BalanceStrategy.FILL: _fill,
    BalanceStrategy.SHARED_TIMES: _shared_times,
    BalanceStrategy.SHARED_INDIVIDUALS: _shared_individuals,
}


def balance(frame: PanelFrame, strategy: BalanceStrategy | str = BalanceStrategy.FILL) -> PanelFrame:
    """
    Balance a panel.

    Args:
        frame: Possibly unbalanced panel
        strategy: One of "fill", "shared_times", "shared_individuals"

    Returns:
        New balanced PanelFrame
    """
    try:
        strategy = BalanceStrategy(strategy)
    except ValueError:
        valid = [s.value for s in BalanceStrategy]
        raise ValueError(f"Unknown balance strategy '{strategy}'. Expected one of {valid}") from None

    if frame.is_balanced():
        logger.debug("Panel already balanced; returning an unchanged copy")
        return frame.with_values(frame.data)

    return _STRATEGIES[strategy](frame)
