"""
End-to-end two-group differential expression pipeline.

``run_pipeline`` composes the stages explicitly:

    load -> prepare -> filter -> differential expression -> tables

Each stage takes the previous stage's immutable output and returns a new
one. Any stage error propagates unchanged; no partial result is returned.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple, Union

import pandas as pd
import plotly.graph_objects as go

from gdsdiff.config.settings import get_settings
from gdsdiff.services.analysis.differential_expression_service import (
    ArrayWeightsConfig,
    DifferentialExpressionResult,
    DifferentialExpressionService,
)
from gdsdiff.services.analysis.empirical_bayes import DEFAULT_PROPORTION
from gdsdiff.services.analysis.expression_filter_service import (
    ExpressionFilterService,
    FilterResult,
)
from gdsdiff.services.analysis.preprocessing_service import (
    PreparedDataset,
    PreprocessingService,
)
from gdsdiff.services.data_access.geo_loader import GEODatasetLoader, RawDataset
from gdsdiff.services.reporting.report_tables import (
    flag_significant,
    lookup_accession,
    summarize_significance,
)
from gdsdiff.services.reporting.report_writer import ReportWriter
from gdsdiff.services.visualization.expression_visualization_service import (
    ExpressionVisualizationService,
)
from gdsdiff.utils.logger import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class PipelineConfig:
    """
    Parameters of one pipeline run.

    Defaults for the cache directory, timeout and thresholds come from
    ``Settings`` when not given explicitly.
    """

    accession: str
    cache_dir: Optional[Union[str, Path]] = None
    min_samples: Optional[int] = None
    p_value_threshold: Optional[float] = None
    lfc_threshold: Optional[float] = None
    p_value_column: str = "adj_p_value"
    group_levels: Optional[Tuple[str, ...]] = None
    gene_of_interest: Optional[str] = None
    timeout_seconds: Optional[float] = None
    array_weights: ArrayWeightsConfig = field(default_factory=ArrayWeightsConfig)
    proportion: float = DEFAULT_PROPORTION
    group_column: str = "characteristics_ch1"
    gene_id_column: str = "ID"
    accession_column: str = "GB_ACC"
    title_column: str = "Gene Title"

    def resolved(self) -> "PipelineConfig":
        """Copy with every unset default filled in from settings."""
        settings = get_settings()
        return PipelineConfig(
            accession=self.accession,
            cache_dir=Path(
                self.cache_dir if self.cache_dir is not None else settings.CACHE_DIR
            ).expanduser(),
            min_samples=(
                self.min_samples
                if self.min_samples is not None
                else settings.MIN_SAMPLES
            ),
            p_value_threshold=(
                self.p_value_threshold
                if self.p_value_threshold is not None
                else settings.P_VALUE_THRESHOLD
            ),
            lfc_threshold=(
                self.lfc_threshold
                if self.lfc_threshold is not None
                else settings.LFC_THRESHOLD
            ),
            p_value_column=self.p_value_column,
            group_levels=tuple(self.group_levels) if self.group_levels else None,
            gene_of_interest=self.gene_of_interest,
            timeout_seconds=(
                self.timeout_seconds
                if self.timeout_seconds is not None
                else settings.DOWNLOAD_TIMEOUT
            ),
            array_weights=self.array_weights,
            proportion=self.proportion,
            group_column=self.group_column,
            gene_id_column=self.gene_id_column,
            accession_column=self.accession_column,
            title_column=self.title_column,
        )


@dataclass(frozen=True)
class PipelineResult:
    """All intermediate and final outputs of one run."""

    config: PipelineConfig
    raw: RawDataset
    prepared: PreparedDataset
    filtered: FilterResult
    differential: DifferentialExpressionResult
    counts: Dict[str, int]
    flagged: pd.DataFrame
    gene_of_interest: Optional[pd.DataFrame] = None

    @property
    def top_table(self) -> pd.DataFrame:
        return self.differential.table


def run_pipeline(
    config: PipelineConfig, loader: Optional[GEODatasetLoader] = None
) -> PipelineResult:
    """
    Run the full analysis for one GEO accession.

    Args:
        config: Run parameters
        loader: Dataset loader to use (built from the config when None)

    Returns:
        PipelineResult

    Raises:
        DownloadError, SchemaError, LabelError, EmptyInputError,
        SingularDesignError: From the stage that failed
    """
    config = config.resolved()
    loader = loader or GEODatasetLoader(
        cache_dir=config.cache_dir, timeout_seconds=config.timeout_seconds
    )

    logger.info(f"[1/5] Loading {config.accession}")
    raw = loader.load(config.accession)

    logger.info("[2/5] Preparing aligned tables")
    prepared = PreprocessingService(
        group_column=config.group_column,
        gene_id_column=config.gene_id_column,
        accession_column=config.accession_column,
        title_column=config.title_column,
    ).prepare(raw)

    logger.info(f"[3/5] Filtering genes expressed in < {config.min_samples} samples")
    filtered = ExpressionFilterService().filter_by_expression(
        prepared.adata, min_samples=config.min_samples
    )

    logger.info("[4/5] Fitting the differential expression model")
    differential = DifferentialExpressionService(
        array_weights=config.array_weights, proportion=config.proportion
    ).run_differential_expression(filtered.adata, levels=config.group_levels)

    logger.info("[5/5] Summarizing results")
    counts = summarize_significance(
        differential.table,
        config.p_value_threshold,
        config.lfc_threshold,
        config.p_value_column,
    )
    flagged = flag_significant(
        differential.table,
        config.p_value_threshold,
        config.lfc_threshold,
        config.p_value_column,
    )

    gene_rows = None
    if config.gene_of_interest:
        gene_rows = lookup_accession(flagged, config.gene_of_interest)
        if gene_rows.empty:
            logger.warning(
                f"{config.gene_of_interest} is not among the {len(flagged)} tested genes"
            )

    return PipelineResult(
        config=config,
        raw=raw,
        prepared=prepared,
        filtered=filtered,
        differential=differential,
        counts=counts,
        flagged=flagged,
        gene_of_interest=gene_rows,
    )


def build_figures(
    result: PipelineResult, top_n_genes: int = 10
) -> Dict[str, go.Figure]:
    """Exploratory and result figures for a finished run, keyed by file stem."""
    viz = ExpressionVisualizationService()
    config = result.config
    adata = result.filtered.adata

    figures = {
        "sample_boxplot": viz.create_sample_boxplot(result.prepared.adata)[0],
        "correlation_heatmap": viz.create_correlation_heatmap(adata)[0],
        "pca": viz.create_pca_plot(adata)[0],
        "volcano": viz.create_volcano_plot(
            result.top_table,
            config.p_value_threshold,
            config.lfc_threshold,
            config.p_value_column,
            top_n_genes=top_n_genes,
        )[0],
    }
    return figures


def write_report(
    result: PipelineResult,
    output_dir: Union[str, Path],
    include_figures: bool = True,
) -> List[Path]:
    """Write tables (and figures) of a finished run into ``output_dir``."""
    figures = build_figures(result) if include_figures else None
    return ReportWriter(output_dir).write_results(
        top_table=result.flagged,
        counts=result.counts,
        filter_mask=result.filtered.mask,
        array_weights=result.differential.array_weights.weights,
        figures=figures,
    )


def parse_levels(value: Optional[str]) -> Optional[Sequence[str]]:
    """Split a comma separated level list ("Normal,Tumor")."""
    if not value:
        return None
    levels = [v.strip() for v in value.split(",") if v.strip()]
    if len(levels) != 2:
        raise ValueError(f"Expected two comma separated levels, got '{value}'")
    return tuple(levels)
