"""
Indexed panel table keyed by (entity, time).

A PanelFrame wraps a pandas DataFrame whose rows are unique on the
(entity, time) pair. Rows are kept sorted by entity then time so that
per-entity sequences are always time ordered. Frames are never mutated
in place: every transformation returns a new PanelFrame.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Hashable, Iterable, Mapping

import numpy as np
import pandas as pd

from happypanel.errors import DuplicateKeyError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PanelDimensions:
    """Shape summary of a panel."""

    entity_count: int
    min_periods_per_entity: int
    max_periods_per_entity: int
    total_observations: int

    @property
    def is_rectangular(self) -> bool:
        return self.min_periods_per_entity == self.max_periods_per_entity


class PanelFrame:
    """Immutable (entity, time) keyed table."""

    def __init__(self, data: pd.DataFrame, entity_column: str, time_column: str):
        """
        Build a panel from a DataFrame.

        Args:
            data: Table with one row per observation
            entity_column: Column holding the cross-sectional unit label
            time_column: Column holding the period label

        Raises:
            KeyError: If a key column is absent
            ValueError: If a key column holds missing labels
            DuplicateKeyError: If any (entity, time) pair repeats
        """
        for col in (entity_column, time_column):
            if col not in data.columns:
                raise KeyError(f"Key column '{col}' not in data. Found: {list(data.columns)}")
            if data[col].isna().any():
                raise ValueError(f"Key column '{col}' contains missing labels")

        dup_mask = data.duplicated([entity_column, time_column], keep="first")
        if dup_mask.any():
            duplicates = list(
                data.loc[dup_mask, [entity_column, time_column]]
                .drop_duplicates()
                .itertuples(index=False, name=None)
            )
            raise DuplicateKeyError(duplicates)

        self.entity_column = entity_column
        self.time_column = time_column
        self._data = (
            data.sort_values([entity_column, time_column], kind="mergesort")
            .reset_index(drop=True)
        )

    @classmethod
    def from_rows(
        cls,
        rows: Iterable[Mapping[str, Any]] | pd.DataFrame,
        entity_column: str,
        time_column: str,
    ) -> PanelFrame:
        """Construct a panel from raw rows of named fields."""
        if isinstance(rows, pd.DataFrame):
            data = rows.copy()
        else:
            data = pd.DataFrame.from_records(list(rows))
        return cls(data, entity_column, time_column)

    def _derive(self, data: pd.DataFrame) -> PanelFrame:
        return PanelFrame(data, self.entity_column, self.time_column)

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def data(self) -> pd.DataFrame:
        """Copy of the underlying table."""
        return self._data.copy()

    @property
    def columns(self) -> list[str]:
        return list(self._data.columns)

    @property
    def value_columns(self) -> list[str]:
        """All non-key columns."""
        keys = {self.entity_column, self.time_column}
        return [c for c in self._data.columns if c not in keys]

    @property
    def entities(self) -> list[Hashable]:
        return list(pd.unique(self._data[self.entity_column]))

    @property
    def time_labels(self) -> list[Hashable]:
        """Sorted union of all entities' time labels."""
        return sorted(pd.unique(self._data[self.time_column]))

    def entity_times(self) -> dict[Hashable, set]:
        """Map each entity to the set of time labels it is observed at."""
        return {
            entity: set(group)
            for entity, group in self._data.groupby(self.entity_column, sort=True)[
                self.time_column
            ]
        }

    def shared_time_labels(self) -> list[Hashable]:
        """Time labels present for every entity."""
        sets = list(self.entity_times().values())
        if not sets:
            return []
        return sorted(set.intersection(*sets))

    def column(self, name: str) -> pd.Series:
        """Column values indexed by (entity, time)."""
        if name not in self._data.columns:
            raise KeyError(f"Column '{name}' not in panel")
        return self._data.set_index([self.entity_column, self.time_column])[name]

    def __len__(self) -> int:
        return len(self._data)

    def __repr__(self) -> str:
        dims = self.dimensions()
        return (
            f"PanelFrame(entities={dims.entity_count}, periods={len(self.time_labels)}, "
            f"rows={dims.total_observations}, balanced={self.is_balanced()})"
        )

    # ------------------------------------------------------------------
    # Balance queries
    # ------------------------------------------------------------------

    def is_balanced(self) -> bool:
        """True iff every entity is observed at every time label in the panel."""
        universe = set(self.time_labels)
        return all(times == universe for times in self.entity_times().values())

    def dimensions(self) -> PanelDimensions:
        counts = self._data.groupby(self.entity_column, sort=False).size()
        if counts.empty:
            return PanelDimensions(0, 0, 0, 0)
        return PanelDimensions(
            entity_count=int(counts.size),
            min_periods_per_entity=int(counts.min()),
            max_periods_per_entity=int(counts.max()),
            total_observations=int(len(self._data)),
        )

    # ------------------------------------------------------------------
    # Transformations
    # ------------------------------------------------------------------

    def filter(
        self,
        predicate: Callable[[pd.Series], bool] | pd.Series | np.ndarray,
    ) -> PanelFrame:
        """
        Keep rows matching a predicate.

        Args:
            predicate: Callable taking a row and returning bool, or a
                boolean mask aligned with the frame's rows

        Returns:
            New PanelFrame with the matching rows
        """
        if callable(predicate):
            mask = self._data.apply(predicate, axis=1)
            if mask.empty:
                mask = pd.Series(dtype=bool)
        else:
            mask = pd.Series(np.asarray(predicate, dtype=bool), index=self._data.index)
        return self._derive(self._data.loc[mask.astype(bool)])

    def drop_column(self, name: str) -> PanelFrame:
        if name in (self.entity_column, self.time_column):
            raise ValueError(f"Cannot drop key column '{name}'")
        if name not in self._data.columns:
            raise KeyError(f"Column '{name}' not in panel")
        return self._derive(self._data.drop(columns=[name]))

    def select_entities(self, entities: Iterable[Hashable]) -> PanelFrame:
        keep = set(entities)
        return self._derive(self._data[self._data[self.entity_column].isin(keep)])

    def select_times(self, time_labels: Iterable[Hashable]) -> PanelFrame:
        keep = set(time_labels)
        return self._derive(self._data[self._data[self.time_column].isin(keep)])

    def with_values(self, data: pd.DataFrame) -> PanelFrame:
        """New panel over replacement data sharing this panel's key columns."""
        return self._derive(data)


def split_by_time(frame: PanelFrame, test_periods: int) -> tuple[PanelFrame, PanelFrame]:
    """
    Split a panel into train and test sets along the time axis.

    The last ``test_periods`` time labels (in sorted order) form the test
    panel; everything earlier is training data.

    Args:
        frame: Panel to split
        test_periods: Number of trailing time labels to hold out

    Returns:
        Tuple of (train, test) panels
    """
    labels = frame.time_labels
    if test_periods < 1 or test_periods >= len(labels):
        raise ValueError(
            f"test_periods must be between 1 and {len(labels) - 1}, got {test_periods}"
        )

    train_labels = labels[:-test_periods]
    test_labels = labels[-test_periods:]
    logger.info(
        f"Split panel by time: train {train_labels[0]}..{train_labels[-1]} "
        f"({len(train_labels)} periods), test {test_labels[0]}..{test_labels[-1]}"
    )
    return frame.select_times(train_labels), frame.select_times(test_labels)
