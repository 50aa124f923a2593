"""
Command-line interface for dereport.

    dereport run CONFIG          build the report
    dereport validate CONFIG     check inputs only (mapping, samples, metadata)
    dereport init-config PATH    write a template configuration
"""

from pathlib import Path
from typing import Optional

import typer
from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from dereport.config.report_config import ReportConfig, ReportConfigError
from dereport.config.settings import get_settings
from dereport.core.exceptions import InputIntegrityError
from dereport.utils.logger import configure_cli_logging, get_logger
from dereport.version import __version__

console = Console()
logger = get_logger(__name__)

app = typer.Typer(
    name="dereport",
    help="Differential expression and pathway enrichment report for bulk RNA-seq",
    add_completion=False,
    rich_markup_mode="rich",
)


def _version_callback(value: bool):
    if value:
        console.print(f"dereport {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    log_level: Optional[str] = typer.Option(
        None, "--log-level", "-l", help="Logging level (default: DEREPORT_LOG_LEVEL or INFO)"
    ),
    version: bool = typer.Option(
        False, "--version", callback=_version_callback, is_eager=True, help="Show version and exit"
    ),
):
    """Differential expression and pathway enrichment report for bulk RNA-seq."""
    configure_cli_logging(level=log_level or get_settings().LOG_LEVEL, console=console)


def _load_config(config_path: Path, output: Optional[Path] = None) -> ReportConfig:
    try:
        config = ReportConfig.load(config_path)
    except ReportConfigError as e:
        console.print(f"[red]Configuration error:[/red] {e}")
        raise typer.Exit(code=2)
    if output is not None:
        config = config.model_copy(update={"output_path": output.resolve()})
    return config


def _integrity_failure(error: InputIntegrityError) -> None:
    console.print(
        Panel.fit(
            f"[bold red]{type(error).__name__}[/bold red]\n{error.message}",
            title="Input check failed",
            border_style="red",
        )
    )
    for key, value in error.details.items():
        console.print(f"  [dim]{key}:[/dim] {value}")


@app.command()
def run(
    config_path: Path = typer.Argument(..., exists=True, dir_okay=False, help="Report configuration (JSON)"),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Override the report output path"),
):
    """Run the full pipeline and write the HTML report."""
    from dereport.services.orchestration.report_pipeline import ReportPipeline

    config = _load_config(config_path, output)
    try:
        result = ReportPipeline(config).run()
    except InputIntegrityError as e:
        _integrity_failure(e)
        raise typer.Exit(code=1)

    table = Table(title="Differential expression", box=box.ROUNDED)
    table.add_column("Cell line", style="cyan")
    table.add_column("Tested", justify="right")
    table.add_column("Significant", justify="right")
    table.add_column("Up", justify="right", style="red")
    table.add_column("Down", justify="right", style="blue")
    table.add_column("Enriched terms", justify="right")
    for cell_line, de_stats in result.stats["differential_expression"].items():
        enrichment = result.stats["enrichment"].get(cell_line, {})
        table.add_row(
            cell_line,
            str(de_stats["n_tested"]),
            str(de_stats["n_significant"]),
            str(de_stats["n_up"]),
            str(de_stats["n_down"]),
            "failed" if enrichment.get("failed") else str(enrichment.get("n_terms_significant", 0)),
        )
    console.print(table)
    console.print(f"[green]Report written to[/green] {result.output_path}")


@app.command()
def validate(
    config_path: Path = typer.Argument(..., exists=True, dir_okay=False, help="Report configuration (JSON)"),
):
    """Check the inputs (mapping table, quantifications, metadata) without analysis."""
    from dereport.services.orchestration.report_pipeline import ReportPipeline

    config = _load_config(config_path)
    try:
        dataset, stats, _ = ReportPipeline(config).load_inputs()
    except InputIntegrityError as e:
        _integrity_failure(e)
        raise typer.Exit(code=1)

    quant = stats["quantification"]
    console.print(
        Panel.fit(
            f"Tool: {quant['quantification_tool']}\n"
            f"Samples: {stats['n_samples']}  Genes: {stats['n_genes']}\n"
            f"Cell lines: {', '.join(stats['cell_lines'])}\n"
            f"Conditions: {', '.join(stats['conditions'])}\n"
            f"Unmapped transcripts excluded: {quant['n_transcripts_unmapped']}",
            title="Inputs OK",
            border_style="green",
        )
    )


@app.command("init-config")
def init_config(
    path: Path = typer.Argument(Path("dereport.json"), help="Where to write the template"),
    force: bool = typer.Option(False, "--force", "-f", help="Overwrite an existing file"),
):
    """Write a template configuration with default parameters."""
    if path.exists() and not force:
        console.print(f"[yellow]{path} exists; use --force to overwrite[/yellow]")
        raise typer.Exit(code=1)
    ReportConfig.template().save(path)
    console.print(f"[green]Template written to[/green] {path}")


if __name__ == "__main__":
    app()
