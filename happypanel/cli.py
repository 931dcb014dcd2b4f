"""
CLI for happiness panel modelling.
"""

import logging
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

app = typer.Typer(
    name="happypanel",
    help="Panel-data preparation and fixed/random-effects model selection",
)
console = Console()


def setup_logging(level: str = "INFO") -> None:
    """Configure logging with rich output."""
    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[RichHandler(console=console, rich_tracebacks=True)],
        force=True,
    )


def _read_table(path: Path):
    import pandas as pd

    if not path.exists():
        console.print(f"[red]File not found: {path}[/red]")
        raise typer.Exit(1)
    if path.suffix == ".parquet":
        return pd.read_parquet(path)
    return pd.read_csv(path)


@app.command()
def run(
    data_path: Path = typer.Argument(..., help="CSV (or parquet) of raw observation rows"),
    region: Optional[str] = typer.Option(None, help="Keep only rows of this region"),
    strategy: Optional[str] = typer.Option(
        None, help="Balancing: fill, shared_times, shared_individuals"
    ),
    test_periods: Optional[int] = typer.Option(None, help="Trailing periods held out"),
    cov_type: Optional[str] = typer.Option(None, help="Within covariance type"),
    output: Optional[Path] = typer.Option(None, help="Directory for coefficient tables"),
):
    """Run balancing, imputation, estimation, selection and scoring."""
    from config.settings import get_settings
    from happypanel.engine.pipeline import PipelineConfig, run_pipeline

    settings = get_settings()
    setup_logging(settings.log_level)

    try:
        config = PipelineConfig.from_settings(
            region_filter_value=region,
            balance_strategy=strategy,
            test_periods=test_periods,
            cov_type=cov_type,
        )
    except ValueError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)

    data = _read_table(data_path)
    console.print(f"[bold]Running panel pipeline on {data_path} ({len(data)} rows)...[/bold]")

    result = run_pipeline(data, config)
    console.print(result.summary())

    if output:
        paths = result.save(output)
        console.print(f"\nSaved {len(paths)} files to {output}")


@app.command()
def inspect(
    data_path: Path = typer.Argument(..., help="CSV (or parquet) of raw observation rows"),
    region: Optional[str] = typer.Option(None, help="Keep only rows of this region"),
):
    """Show balance state and dimensions under each balancing strategy."""
    from config.settings import get_settings
    from happypanel.data.balancing import BalanceStrategy, balance
    from happypanel.data.imputation import missing_fraction
    from happypanel.data.panel_frame import PanelFrame
    from happypanel.engine.pipeline import apply_region_filter

    settings = get_settings()
    setup_logging(settings.log_level)

    data = _read_table(data_path)
    data = apply_region_filter(data, settings.region_column, region)
    panel = PanelFrame(data, settings.entity_column, settings.time_column)

    table = Table(title="Panel dimensions")
    table.add_column("Panel")
    table.add_column("Balanced")
    table.add_column("Entities", justify="right")
    table.add_column("Periods", justify="right")
    table.add_column("Min T", justify="right")
    table.add_column("Max T", justify="right")
    table.add_column("Rows", justify="right")

    variants = [("raw", panel)] + [(s.value, balance(panel, s)) for s in BalanceStrategy]
    for name, frame in variants:
        dims = frame.dimensions()
        table.add_row(
            name,
            "yes" if frame.is_balanced() else "no",
            str(dims.entity_count),
            str(len(frame.time_labels)),
            str(dims.min_periods_per_entity),
            str(dims.max_periods_per_entity),
            str(dims.total_observations),
        )
    console.print(table)

    filled = dict(variants)[BalanceStrategy.FILL.value]
    columns = [c for c in [settings.target, *settings.predictors] if c in filled.columns]
    console.print("\nMissing share after fill:")
    for col, frac in missing_fraction(filled, columns).items():
        flag = " [red](above threshold)[/red]" if frac > settings.missing_threshold else ""
        console.print(f"  {col}: {frac:.1%}{flag}")


if __name__ == "__main__":
    app()
