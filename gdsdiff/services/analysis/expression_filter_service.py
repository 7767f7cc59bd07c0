"""
Expression breadth filter.

Drops probes that are not expressed in enough samples before model fitting.
A probe counts as expressed in a sample when its value exceeds the median of
the whole matrix.
"""

from dataclasses import dataclass

import anndata
import numpy as np
import pandas as pd

from gdsdiff.utils.logger import get_logger

logger = get_logger(__name__)

DEFAULT_MIN_SAMPLES = 3


@dataclass(frozen=True)
class FilterResult:
    """Filtered dataset together with the mask that produced it."""

    adata: anndata.AnnData
    mask: pd.Series
    median: float
    min_samples: int

    @property
    def n_retained(self) -> int:
        return int(self.mask.sum())

    @property
    def n_removed(self) -> int:
        return int((~self.mask).sum())


class ExpressionFilterService:
    """Stateless filter for weakly expressed genes."""

    def filter_by_expression(
        self, adata: anndata.AnnData, min_samples: int = DEFAULT_MIN_SAMPLES
    ) -> FilterResult:
        """
        Keep genes above the global median in at least ``min_samples`` samples.

        Missing values are ignored when computing the median and never count
        as expressed. When ``min_samples`` exceeds the number of samples the
        mask is all-false; the differential expression engine refuses such
        an empty input.

        Args:
            adata: Prepared dataset (samples x genes)
            min_samples: Minimum number of samples a gene must be expressed in

        Returns:
            FilterResult with the filtered AnnData and the per-gene mask

        Raises:
            ValueError: If min_samples is negative or not an integer
        """
        if isinstance(min_samples, bool) or not isinstance(
            min_samples, (int, np.integer)
        ):
            raise ValueError(f"min_samples must be an integer, got {min_samples!r}")
        if min_samples < 0:
            raise ValueError(f"min_samples must be >= 0, got {min_samples}")

        X = np.asarray(adata.X, dtype=np.float64)
        finite = np.isfinite(X)
        median = float(np.median(X[finite])) if finite.any() else float("nan")

        with np.errstate(invalid="ignore"):
            expressed = finite & (X > median)
        n_expressed = expressed.sum(axis=0)

        mask = pd.Series(
            n_expressed >= int(min_samples), index=adata.var_names.copy(), name="keep"
        )
        filtered = adata[:, mask.to_numpy()].copy()

        logger.info(
            f"Expression filter (median={median:.4g}, min_samples={min_samples}): "
            f"kept {int(mask.sum())} of {adata.n_vars} genes"
        )
        return FilterResult(
            adata=filtered, mask=mask, median=median, min_samples=int(min_samples)
        )
