"""
End-to-end pipeline driver.
"""

from happypanel.engine.pipeline import (
    PipelineConfig,
    PipelineResult,
    apply_region_filter,
    run_pipeline,
)

__all__ = [
    "PipelineConfig",
    "PipelineResult",
    "apply_region_filter",
    "run_pipeline",
]
