"""
CLI for the NUTS 2 regional panel pipeline.
"""

import logging
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from config.settings import Settings, get_settings
from nutspanel.errors import PipelineError

app = typer.Typer(
    name="nutspanel",
    help="Regional NUTS 2 panel construction for cohesion-fund event studies",
)
console = Console()


def setup_logging(level: str = "INFO") -> None:
    """Configure logging with rich output."""
    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[RichHandler(console=console, rich_tracebacks=True)],
    )


def _pipeline(data_dir: Optional[Path], clear_cache: bool = False):
    from nutspanel.data.data_pipeline import DataPipeline

    settings = Settings(data_dir=data_dir) if data_dir else get_settings()
    setup_logging(settings.log_level)
    pipeline = DataPipeline(settings)
    if clear_cache:
        pipeline.clear_caches()
        console.print("Cleared cached raw files")
    return pipeline


def _run_stage(pipeline, stage: str, save_lineage: bool = True):
    """Run one pipeline stage, turning pipeline errors into exit code 1."""
    try:
        result = getattr(pipeline, stage)()
    except PipelineError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)
    if save_lineage:
        json_path, _ = pipeline.save_lineage()
        console.print(f"Lineage written to {json_path}")
    return result


def _print_quality(pipeline) -> None:
    for report in pipeline.get_quality_reports():
        console.print(f"\n[bold]{report.source}[/bold]: {report.total_rows:,} rows, years {report.year_range}")
        for warning in report.warnings:
            console.print(f"  [yellow]! {warning}[/yellow]")


DataDirOption = typer.Option(None, help="Override the data directory")
ClearCacheOption = typer.Option(False, "--clear-cache", help="Re-read raw files instead of using the cache")


@app.command()
def build_crosswalk(
    data_dir: Optional[Path] = DataDirOption,
    clear_cache: bool = ClearCacheOption,
):
    """Build the forward and reverse vintage crosswalk."""
    pipeline = _pipeline(data_dir, clear_cache)
    crosswalk = _run_stage(pipeline, "build_crosswalk", save_lineage=False)
    console.print(
        f"Crosswalk: {len(crosswalk.old_codes)} old codes, "
        f"{len(crosswalk.new_codes)} new codes, {len(crosswalk.forward)} edges"
    )


@app.command()
def clean_sources(
    data_dir: Optional[Path] = DataDirOption,
    clear_cache: bool = ClearCacheOption,
):
    """Clean every declared source onto the target vintage."""
    pipeline = _pipeline(data_dir, clear_cache)
    cleaned = _run_stage(pipeline, "clean_sources")
    console.print(f"Cleaned {len(cleaned)} sources")
    _print_quality(pipeline)


@app.command()
def build_panel(data_dir: Optional[Path] = DataDirOption):
    """Assemble the base region-year panel."""
    pipeline = _pipeline(data_dir)
    panel = _run_stage(pipeline, "assemble_panel")
    console.print(f"Panel shape: {panel.shape}")
    _print_quality(pipeline)


@app.command()
def build_treatment(data_dir: Optional[Path] = DataDirOption):
    """Add baseline exposure, event timing and event-time dummies."""
    pipeline = _pipeline(data_dir)
    panel = _run_stage(pipeline, "build_treatment")
    console.print(f"Treated regions: {panel.loc[panel['treated'], 'region'].nunique()}")


@app.command()
def build_analysis(data_dir: Optional[Path] = DataDirOption):
    """Add sample flags and write the analysis panel."""
    pipeline = _pipeline(data_dir)
    panel = _run_stage(pipeline, "build_analysis_panel")
    console.print(
        f"sample_main: {int(panel['sample_main'].sum())} rows, "
        f"sample_did: {int(panel['sample_did'].sum())} rows"
    )


@app.command()
def run(
    data_dir: Optional[Path] = DataDirOption,
    clear_cache: bool = ClearCacheOption,
):
    """Run every stage from crosswalk to analysis panel."""
    pipeline = _pipeline(data_dir, clear_cache)
    console.print("[bold]Running full pipeline...[/bold]")
    panel = _run_stage(pipeline, "run", save_lineage=False)
    console.print(f"Analysis panel shape: {panel.shape}")
    _print_quality(pipeline)
    console.print(pipeline.tracker.generate_report())


@app.command()
def estimate(
    data_dir: Optional[Path] = DataDirOption,
    output: Optional[Path] = typer.Option(None, help="CSV path for the coefficient table"),
):
    """Fit the default fixed-effects regressions."""
    from nutspanel.model.estimation import default_specs, fit_all

    pipeline = _pipeline(data_dir)
    panel = _run_stage(pipeline, "load_analysis_panel", save_lineage=False)

    specs = default_specs(pipeline.settings, pipeline.event_columns)
    console.print(f"[bold]Estimating {len(specs)} regressions...[/bold]")
    try:
        results = fit_all(panel, specs)
    except ValueError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)

    table = Table(title="Estimates (SE clustered by region)")
    for col in ["spec", "term", "coefficient", "std_error", "pvalue", "n_obs"]:
        table.add_column(col)
    for row in results.itertuples(index=False):
        table.add_row(
            row.spec, row.term, f"{row.coefficient:.4f}", f"{row.std_error:.4f}",
            f"{row.pvalue:.3f}", str(row.n_obs),
        )
    console.print(table)

    output = output or pipeline.settings.resolve(pipeline.settings.output_dir) / "estimates.csv"
    output.parent.mkdir(parents=True, exist_ok=True)
    results.to_csv(output, index=False)
    console.print(f"Saved estimates to {output}")


@app.command()
def quality(
    panel_path: Optional[Path] = typer.Option(None, help="Path to panel data"),
    data_dir: Optional[Path] = DataDirOption,
):
    """Print missingness and coverage of the analysis panel."""
    import pandas as pd

    pipeline = _pipeline(data_dir)
    if panel_path:
        panel = pd.read_parquet(panel_path)
    else:
        panel = _run_stage(pipeline, "load_analysis_panel", save_lineage=False)

    console.print("[bold]Data Quality Report[/bold]")
    console.print(f"\nPanel shape: {panel.shape}")

    console.print("\nMissing Values:")
    missing = panel.isna().sum()
    for col, count in missing[missing > 0].items():
        pct = count / len(panel) * 100
        console.print(f"  {col}: {count} ({pct:.1f}%)")

    console.print(f"\nYears: {panel['year'].min()} to {panel['year'].max()}")
    console.print(f"Regions: {panel['region'].nunique()}")
    if "treated" in panel.columns:
        console.print(f"Treated regions: {panel.loc[panel['treated'], 'region'].nunique()}")


if __name__ == "__main__":
    app()
