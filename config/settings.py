"""
happypanel settings.
"""

from pathlib import Path
from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# World Happiness Report indicators used as regressors
HAPPINESS_PREDICTORS = [
    "Log.GDP.per.capita",
    "Social.support",
    "Healthy.life.expectancy.at.birth",
    "Freedom.to.make.life.choices",
    "Generosity",
    "Perceptions.of.corruption",
    "Positive.affect",
    "Negative.affect",
]


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="HAPPYPANEL_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Panel keys and row filter
    entity_column: str = Field(default="Country.name", description="Entity (cross-section) column")
    time_column: str = Field(default="Year", description="Time period column")
    region_column: str = Field(default="Regional.indicator", description="Region/category column")
    region_filter_value: str | None = Field(
        default=None, description="Keep only rows whose region column equals this value"
    )

    # Model variables
    target: str = Field(default="Life.Ladder", description="Dependent variable")
    predictors: list[str] = Field(
        default_factory=lambda: list(HAPPINESS_PREDICTORS),
        description="Regressor columns",
    )

    # Pipeline policy
    balance_strategy: str = Field(
        default="fill", description="Balancing: fill | shared_times | shared_individuals"
    )
    missing_threshold: float = Field(
        default=1 / 7, description="Predictors missing above this share are excluded"
    )
    test_periods: int = Field(default=2, description="Trailing periods held out for testing")
    significance_level: float = Field(default=0.05, description="Test significance level")
    ljung_box_lags: int = Field(default=1, description="Lag order for the Ljung-Box test")
    cov_type: str = Field(
        default="unadjusted",
        description="Within-model covariance: unadjusted | robust | clustered | kernel",
    )
    unknown_entity_policy: str = Field(
        default="exclude",
        description="Unseen entities at prediction: exclude | global_mean | raise",
    )

    # Logging
    log_level: str = Field(default="INFO", description="Logging level")

    # Directories
    data_dir: Path = Field(default=Path("data"), description="Data directory")
    output_dir: Path = Field(default=Path("outputs"), description="Output directory")


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
