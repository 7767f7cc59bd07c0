"""
Summary tables derived from the differential expression top table.

Significance is decided from a caller-supplied p-value threshold (applied to
adjusted p-values unless another column is named) together with an absolute
log fold change threshold.
"""

from typing import Dict, Optional

import numpy as np
import pandas as pd

from gdsdiff.core.schemas.expression import ACCESSION_KEY
from gdsdiff.utils.logger import get_logger

logger = get_logger(__name__)

SIGNIFICANCE_COLUMN = "significant"
UP, DOWN, NOT_SIGNIFICANT = "Up", "Down", "NotSig"


def classify_significance(
    results: pd.DataFrame,
    p_value_threshold: float,
    lfc_threshold: float,
    p_value_column: str = "adj_p_value",
) -> pd.Series:
    """
    Label every gene Up, Down or NotSig.

    A gene is Up when its p-value is below the threshold and its log fold
    change is above ``lfc_threshold``; Down is the mirror image. Missing
    p-values are never significant.
    """
    for column in (p_value_column, "log_fc"):
        if column not in results.columns:
            raise KeyError(
                f"Result table has no column '{column}'. "
                f"Available columns: {list(results.columns)}"
            )
    if lfc_threshold < 0:
        raise ValueError(f"lfc_threshold must be >= 0, got {lfc_threshold}")

    p_values = results[p_value_column].to_numpy(dtype=np.float64)
    log_fc = results["log_fc"].to_numpy(dtype=np.float64)

    with np.errstate(invalid="ignore"):
        passes = np.isfinite(p_values) & (p_values < p_value_threshold)
        up = passes & (log_fc > lfc_threshold)
        down = passes & (log_fc < -lfc_threshold)

    labels = np.where(up, UP, np.where(down, DOWN, NOT_SIGNIFICANT))
    return pd.Series(labels, index=results.index, name=SIGNIFICANCE_COLUMN)


def flag_significant(
    results: pd.DataFrame,
    p_value_threshold: float,
    lfc_threshold: float,
    p_value_column: str = "adj_p_value",
) -> pd.DataFrame:
    """Return a copy of ``results`` with a ``significant`` column added."""
    flagged = results.copy()
    flagged[SIGNIFICANCE_COLUMN] = classify_significance(
        results, p_value_threshold, lfc_threshold, p_value_column
    )
    return flagged


def summarize_significance(
    results: pd.DataFrame,
    p_value_threshold: float,
    lfc_threshold: float,
    p_value_column: str = "adj_p_value",
) -> Dict[str, int]:
    """
    Count down-regulated, unchanged and up-regulated genes.

    Args:
        results: Top table with ``log_fc`` and the p-value column
        p_value_threshold: Genes need a p-value strictly below this
        lfc_threshold: Genes need an absolute log fold change strictly above this
        p_value_column: Which p-value to threshold (adjusted by default)

    Returns:
        dict: {"down": n, "unchanged": n, "up": n}, summing to the row count
    """
    labels = classify_significance(
        results, p_value_threshold, lfc_threshold, p_value_column
    )
    counts = {
        "down": int((labels == DOWN).sum()),
        "unchanged": int((labels == NOT_SIGNIFICANT).sum()),
        "up": int((labels == UP).sum()),
    }
    logger.info(
        f"Significance at {p_value_column} < {p_value_threshold}, "
        f"|log_fc| > {lfc_threshold}: {counts}"
    )
    return counts


def summary_counts_frame(counts: Dict[str, int]) -> pd.DataFrame:
    """One-row table of the significance counts, in down/unchanged/up order."""
    return pd.DataFrame(
        [[counts["down"], counts["unchanged"], counts["up"]]],
        columns=["down", "unchanged", "up"],
        index=pd.Index(["count"]),
    )


def lookup_accession(results: pd.DataFrame, accession: str) -> pd.DataFrame:
    """
    Rows of the top table whose accession matches exactly.

    Returns an empty frame with the same columns when nothing matches.
    """
    if ACCESSION_KEY not in results.columns:
        raise KeyError(f"Result table has no '{ACCESSION_KEY}' column")
    accession = accession.strip()
    return results[results[ACCESSION_KEY].astype(str) == accession]


def head_table(results: pd.DataFrame, n: Optional[int] = 10) -> pd.DataFrame:
    """First ``n`` rows of the ranked table (all rows for None)."""
    if n is None:
        return results
    if n < 0:
        raise ValueError(f"n must be >= 0, got {n}")
    return results.head(n)
