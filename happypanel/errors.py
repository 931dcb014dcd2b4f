"""
Error taxonomy for panel preparation, estimation and prediction.

Structural errors (duplicate keys, unimputable columns) abort the stage
that detects them. Statistical degeneracies (underidentified random
effects, unseen entities at prediction time) are expected and the
pipeline driver branches around them.
"""

from __future__ import annotations

from typing import Any, Hashable


class PanelDataError(Exception):
    """Base class for all panel pipeline errors."""


class DuplicateKeyError(PanelDataError):
    """Raised when an (entity, time) pair occurs more than once."""

    def __init__(self, duplicates: list[tuple[Hashable, Hashable]]):
        self.duplicates = duplicates
        shown = ", ".join(f"({e!r}, {t!r})" for e, t in duplicates[:10])
        more = f" and {len(duplicates) - 10} more" if len(duplicates) > 10 else ""
        super().__init__(
            f"Panel has {len(duplicates)} duplicated (entity, time) keys: {shown}{more}"
        )


class AllMissingError(PanelDataError):
    """Raised when an entity has no observed value in a column."""

    def __init__(self, entity: Hashable, column: str):
        self.entity = entity
        self.column = column
        super().__init__(
            f"Column '{column}' is entirely missing for entity {entity!r}; "
            "nothing to extend or interpolate from"
        )


class UnderidentifiedError(PanelDataError):
    """Raised when random effects cannot estimate the between variance."""

    def __init__(self, n_predictors: int, n_entities: int, reason: str | None = None):
        self.n_predictors = n_predictors
        self.n_entities = n_entities
        self.reason = reason
        if reason is None:
            reason = (
                f"between regression has no residual degrees of freedom: "
                f"{n_predictors} predictors + intercept >= {n_entities} entities"
            )
        super().__init__(f"Random effects is underidentified: {reason}")


class UnknownEntityError(PanelDataError):
    """Raised when fixed-effects prediction meets entities without an intercept."""

    def __init__(self, entities: list[Any]):
        self.entities = entities
        super().__init__(
            f"No fixed-effects intercept for entities absent from training: {entities}"
        )


class ZeroActualWarning(RuntimeWarning):
    """Emitted when MAPE skips observations whose actual value is zero."""
