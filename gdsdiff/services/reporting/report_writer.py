"""
Write pipeline artifacts to an output directory.

Tables are tab-separated text; figures are standalone Plotly HTML files.
"""

from pathlib import Path
from typing import Dict, List, Optional, Union

import pandas as pd
import plotly.graph_objects as go

from gdsdiff.core.exceptions import ReportingError
from gdsdiff.services.reporting.report_tables import summary_counts_frame
from gdsdiff.utils.logger import get_logger

logger = get_logger(__name__)


class ReportWriter:
    """
    Persist top table, counts, filter mask, array weights and figures.

    Example:
        writer = ReportWriter("results/GSE10072")
        paths = writer.write_results(top_table, counts, filter_mask, array_weights)
    """

    def __init__(self, output_dir: Union[str, Path]):
        self.output_dir = Path(output_dir).expanduser()

    def _prepare(self) -> None:
        try:
            self.output_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise ReportingError(
                f"Cannot create output directory {self.output_dir}: {e}",
                details={"output_dir": str(self.output_dir)},
            ) from e

    def write_table(self, table: pd.DataFrame, filename: str, index: bool = True) -> Path:
        """Write one table as TSV and return its path."""
        self._prepare()
        path = self.output_dir / filename
        try:
            table.to_csv(path, sep="\t", index=index, na_rep="NA")
        except OSError as e:
            raise ReportingError(
                f"Cannot write table {path}: {e}", details={"path": str(path)}
            ) from e
        logger.debug(f"Wrote {path}")
        return path

    def write_figure(self, figure: go.Figure, name: str) -> Path:
        """Write a figure as a self-contained HTML file."""
        self._prepare()
        path = self.output_dir / f"{name}.html"
        try:
            figure.write_html(str(path), include_plotlyjs="cdn")
        except OSError as e:
            raise ReportingError(
                f"Cannot write figure {path}: {e}", details={"path": str(path)}
            ) from e
        logger.debug(f"Wrote {path}")
        return path

    def write_results(
        self,
        top_table: pd.DataFrame,
        counts: Dict[str, int],
        filter_mask: pd.Series,
        array_weights: pd.Series,
        figures: Optional[Dict[str, go.Figure]] = None,
    ) -> List[Path]:
        """
        Write every artifact of one pipeline run.

        Args:
            top_table: Ranked differential expression table
            counts: Output of ``summarize_significance``
            filter_mask: Per-gene keep flags of the expression filter
            array_weights: Per-sample quality weights
            figures: Named figures to store as HTML

        Returns:
            List of written paths
        """
        paths = [
            self.write_table(top_table, "top_table.tsv"),
            self.write_table(summary_counts_frame(counts), "summary_counts.tsv", index=False),
            self.write_table(
                filter_mask.rename("keep").rename_axis("gene_id").to_frame(),
                "filter_mask.tsv",
            ),
            self.write_table(
                array_weights.rename("weight").rename_axis("sample_id").to_frame(),
                "array_weights.tsv",
            ),
        ]
        for name, figure in (figures or {}).items():
            paths.append(self.write_figure(figure, name))

        logger.info(f"Wrote {len(paths)} files to {self.output_dir}")
        return paths
