#!/usr/bin/env python3
"""
Command line interface for gdsdiff.

Runs the two-group differential expression pipeline on a GEO accession and
renders the ranked genes, the significance counts and an optional gene of
interest in the terminal.
"""

import logging
from pathlib import Path
from typing import TYPE_CHECKING, Optional

import typer
from rich import box
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from gdsdiff.version import __version__

# Heavy imports are deferred to the command bodies for fast startup
if TYPE_CHECKING:
    import pandas as pd

console = Console()

app = typer.Typer(
    name="gdsdiff",
    help="Two-group differential expression for GEO microarray datasets",
    add_completion=False,
    rich_markup_mode="rich",
)

NUMBER_COLUMNS = ("log_fc", "ave_expr", "t", "p_value", "adj_p_value", "b")


def _configure_logging(verbose: bool) -> None:
    """Route library logs through Rich before any gdsdiff module is imported."""
    root = logging.getLogger()
    if not any(isinstance(h, RichHandler) for h in root.handlers):
        root.addHandler(
            RichHandler(console=Console(stderr=True), show_path=False, markup=False)
        )
    # Third-party loggers inherit root; gdsdiff modules inherit the package logger
    root.setLevel(logging.WARNING)
    logging.getLogger("gdsdiff").setLevel(logging.DEBUG if verbose else logging.WARNING)


def _results_table(frame: "pd.DataFrame", title: str) -> Table:
    table = Table(title=title, box=box.ROUNDED)
    table.add_column("gene_id", style="cyan", no_wrap=True)
    for column in frame.columns:
        justify = "right" if column in NUMBER_COLUMNS else "left"
        table.add_column(column, justify=justify, overflow="fold")

    for gene_id, row in frame.iterrows():
        cells = [str(gene_id)]
        for column in frame.columns:
            value = row[column]
            if column in ("p_value", "adj_p_value"):
                cells.append(f"{value:.3g}")
            elif column in NUMBER_COLUMNS:
                cells.append(f"{value:.3f}")
            else:
                cells.append(str(value))
        table.add_row(*cells)
    return table


def _counts_table(counts: dict) -> Table:
    table = Table(title="Significance counts", box=box.ROUNDED)
    for column, style in (("down", "blue"), ("unchanged", "white"), ("up", "red")):
        table.add_column(column, justify="right", style=style)
    table.add_row(str(counts["down"]), str(counts["unchanged"]), str(counts["up"]))
    return table


@app.command()
def run(
    accession: str = typer.Argument(..., help="GEO series or dataset (GSE/GDS)"),
    cache_dir: Optional[Path] = typer.Option(
        None, "--cache-dir", help="Download cache (default: GDSDIFF_CACHE_DIR)"
    ),
    min_samples: Optional[int] = typer.Option(
        None, "--min-samples", "-k", help="Samples a gene must be expressed in"
    ),
    p_value: Optional[float] = typer.Option(
        None, "--p-value", help="Significance threshold on the adjusted p-value"
    ),
    lfc: Optional[float] = typer.Option(
        None, "--lfc", help="Absolute log fold change threshold"
    ),
    raw_p_value: bool = typer.Option(
        False, "--raw-p-value", help="Threshold unadjusted p-values instead"
    ),
    group_column: str = typer.Option(
        "characteristics_ch1",
        "--group-column",
        help="Sample field holding the group label (GDS: e.g. 'disease state')",
    ),
    levels: Optional[str] = typer.Option(
        None, "--levels", help="Design column order, e.g. 'Normal,Tumor'"
    ),
    gene: Optional[str] = typer.Option(
        None, "--gene", help="Accession to look up in the results (e.g. NM_000784)"
    ),
    no_array_weights: bool = typer.Option(
        False, "--no-array-weights", help="Fit with equal sample weights"
    ),
    output_dir: Optional[Path] = typer.Option(
        None, "--output-dir", "-o", help="Write tables and HTML figures here"
    ),
    top: int = typer.Option(
        20, "--top", "-n", min=0, help="Rows of the top table to show"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show debug logs"),
):
    """Run the differential expression pipeline on ACCESSION."""
    _configure_logging(verbose)

    from gdsdiff.core.exceptions import GdsDiffError
    from gdsdiff.core.pipeline import (
        PipelineConfig,
        parse_levels,
        run_pipeline,
        write_report,
    )
    from gdsdiff.services.analysis.differential_expression_service import (
        ArrayWeightsConfig,
    )
    from gdsdiff.services.reporting.report_tables import head_table

    try:
        config = PipelineConfig(
            accession=accession,
            cache_dir=cache_dir,
            min_samples=min_samples,
            p_value_threshold=p_value,
            lfc_threshold=lfc,
            p_value_column="p_value" if raw_p_value else "adj_p_value",
            group_levels=parse_levels(levels),
            group_column=group_column,
            gene_of_interest=gene,
            array_weights=ArrayWeightsConfig(enabled=not no_array_weights),
        )
        with console.status(f"[bold]Analysing {accession}..."):
            result = run_pipeline(config)
            written = write_report(result, output_dir) if output_dir else []
    except (GdsDiffError, ValueError) as e:
        details = getattr(e, "details", None) or {}
        body = f"[bold]{e}[/bold]"
        if details:
            body += "\n" + "\n".join(f"{k}: {v}" for k, v in details.items())
        console.print(
            Panel(body, title=f"[red]{type(e).__name__}[/red]", border_style="red")
        )
        raise typer.Exit(code=1)

    filtered = result.filtered
    console.print(
        f"[green]{accession}[/green]: {filtered.n_retained} of "
        f"{filtered.n_retained + filtered.n_removed} genes passed the expression "
        f"filter (k={filtered.min_samples})"
    )
    console.print(_results_table(head_table(result.flagged, top), "Top genes"))
    console.print(_counts_table(result.counts))

    if gene:
        if result.gene_of_interest is None or result.gene_of_interest.empty:
            console.print(f"[yellow]{gene} was not among the tested genes[/yellow]")
        else:
            console.print(_results_table(result.gene_of_interest, gene))

    if written:
        console.print(f"Wrote {len(written)} files to [cyan]{output_dir}[/cyan]")


@app.command()
def version():
    """Show the gdsdiff version."""
    console.print(f"gdsdiff version {__version__}")


if __name__ == "__main__":
    app()
