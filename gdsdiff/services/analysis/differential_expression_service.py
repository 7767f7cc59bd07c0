"""
Differential expression engine for two-group microarray comparisons.

Follows the limma workflow on log-scale intensities:

1. one-hot group design (one column per group, no intercept)
2. array quality weights that down-weight noisy samples
3. weighted least squares fit per gene
4. a single group contrast
5. empirical Bayes variance moderation and a ranked top table

Column order of the design is alphabetical unless levels are supplied, and
the default contrast is first level minus second level. With the labels
"Normal" and "Tumor" a positive log fold change therefore means higher
expression in normal tissue.
"""

from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

import anndata
import numpy as np
import pandas as pd

from gdsdiff.core.exceptions import EmptyInputError, SingularDesignError
from gdsdiff.core.schemas.expression import ACCESSION_KEY, GENE_TITLE_KEY, GROUP_KEY
from gdsdiff.services.analysis.empirical_bayes import (
    DEFAULT_PROPORTION,
    DEFAULT_STDEV_COEF_LIM,
    ModeratedStatistics,
    adjust_p_values,
    moderate_statistics,
)
from gdsdiff.utils.logger import get_logger

logger = get_logger(__name__)

TOP_TABLE_COLUMNS = [
    ACCESSION_KEY,
    GENE_TITLE_KEY,
    "log_fc",
    "ave_expr",
    "t",
    "p_value",
    "adj_p_value",
    "b",
]


@dataclass(frozen=True)
class ArrayWeightsConfig:
    """Settings for the iterative array quality weight estimation."""

    enabled: bool = True
    floor: float = 1e-2
    ceiling: float = 1e2
    max_iter: int = 50
    tol: float = 1e-6

    def __post_init__(self):
        if not 0 < self.floor <= 1 <= self.ceiling or not np.isfinite(self.ceiling):
            raise ValueError(
                f"Array weight bounds must satisfy 0 < floor <= 1 <= ceiling < inf, "
                f"got floor={self.floor}, ceiling={self.ceiling}"
            )
        if self.max_iter < 1:
            raise ValueError(f"max_iter must be >= 1, got {self.max_iter}")


@dataclass(frozen=True)
class ArrayWeights:
    """Per-sample quality weights (geometric mean 1 before clamping)."""

    weights: pd.Series
    n_iter: int
    converged: bool


@dataclass(frozen=True)
class LinearModelFit:
    """Per-gene weighted least squares fit."""

    coefficients: pd.DataFrame
    cov_unscaled: np.ndarray
    sigma: pd.Series
    df_residual: pd.Series
    amean: pd.Series
    design: pd.DataFrame
    weights: pd.Series

    @property
    def stdev_unscaled(self) -> pd.DataFrame:
        return pd.DataFrame(
            np.sqrt(np.diagonal(self.cov_unscaled, axis1=1, axis2=2)),
            index=self.coefficients.index,
            columns=self.coefficients.columns,
        )


@dataclass(frozen=True)
class ContrastFit:
    """A fit reduced to a single contrast of its coefficients."""

    name: str
    vector: pd.Series
    coefficient: pd.Series
    stdev_unscaled: pd.Series
    sigma: pd.Series
    df_residual: pd.Series
    amean: pd.Series


@dataclass(frozen=True)
class DifferentialExpressionResult:
    """Everything the engine produced for one comparison."""

    table: pd.DataFrame
    design: pd.DataFrame
    array_weights: ArrayWeights
    fit: LinearModelFit
    contrast: ContrastFit
    moderated: ModeratedStatistics = field(repr=False)

    @property
    def n_genes(self) -> int:
        return len(self.table)


class DifferentialExpressionService:
    """
    Stateless service for weighted linear model differential expression.

    Example:
        service = DifferentialExpressionService()
        result = service.run_differential_expression(filtered.adata)
        print(result.table.head())
    """

    def __init__(
        self,
        array_weights: Optional[ArrayWeightsConfig] = None,
        proportion: float = DEFAULT_PROPORTION,
        stdev_coef_lim: Tuple[float, float] = DEFAULT_STDEV_COEF_LIM,
    ):
        self.array_weights_config = array_weights or ArrayWeightsConfig()
        self.proportion = proportion
        self.stdev_coef_lim = stdev_coef_lim

    # ------------------------------------------------------------------
    # Design
    # ------------------------------------------------------------------

    def build_design_matrix(
        self,
        groups: Sequence[str],
        levels: Optional[Sequence[str]] = None,
        sample_ids: Optional[Sequence[str]] = None,
    ) -> pd.DataFrame:
        """
        One-hot design matrix with one column per group.

        Args:
            groups: Group label of every sample
            levels: Column order; alphabetical order of the labels if None
            sample_ids: Row index (defaults to 0..n-1)

        Returns:
            DataFrame of 0/1 floats, samples x levels

        Raises:
            SingularDesignError: If a sample's label is not a level or the
                design is not of full column rank
        """
        groups = [str(g) for g in groups]
        levels = list(levels) if levels is not None else sorted(set(groups))
        if len(levels) != 2 or levels[0] == levels[1]:
            raise SingularDesignError(
                f"A two-group design needs two distinct levels, got {levels}",
                details={"levels": levels, "rank": len(set(levels))},
            )

        unknown = sorted(set(groups) - set(levels))
        if unknown:
            raise SingularDesignError(
                f"Samples carry labels outside the design levels: {unknown}",
                details={"levels": levels, "unknown_labels": unknown},
            )

        design = pd.DataFrame(
            [[1.0 if g == level else 0.0 for level in levels] for g in groups],
            columns=levels,
            index=list(sample_ids) if sample_ids is not None else None,
        )
        self._check_full_rank(design)
        return design

    def _check_full_rank(self, design: pd.DataFrame) -> None:
        rank = int(np.linalg.matrix_rank(design.to_numpy())) if len(design) else 0
        if rank < design.shape[1] or design.shape[0] <= design.shape[1]:
            raise SingularDesignError(
                f"Design matrix is rank deficient (rank {rank}, "
                f"{design.shape[1]} columns, {design.shape[0]} samples)",
                details={
                    "design_shape": tuple(design.shape),
                    "rank": rank,
                    "group_sizes": {
                        str(c): int(design[c].sum()) for c in design.columns
                    },
                },
            )

    # ------------------------------------------------------------------
    # Array weights
    # ------------------------------------------------------------------

    def estimate_array_weights(
        self, matrix: pd.DataFrame, design: pd.DataFrame
    ) -> ArrayWeights:
        """
        Estimate per-sample quality weights by iterative reweighting.

        Each round fits the weighted model, measures how much larger each
        sample's leverage-adjusted residuals are than the gene-wise residual
        variance predicts, divides the weight by that ratio and rescales to
        geometric mean one. Weights are clamped to the configured bounds.
        Only genes without missing values and with non-zero residual variance
        take part.

        Args:
            matrix: Expression, genes x samples (columns aligned with design rows)
            design: Design matrix, samples x columns

        Returns:
            ArrayWeights
        """
        config = self.array_weights_config
        n_samples = design.shape[0]
        weights = np.ones(n_samples)
        index = pd.Index(matrix.columns, name="sample_id")

        if not config.enabled:
            return ArrayWeights(pd.Series(weights, index=index), 0, True)

        X = design.to_numpy(dtype=np.float64)
        Y = matrix.to_numpy(dtype=np.float64)
        Y = Y[np.all(np.isfinite(Y), axis=1)]
        df = n_samples - X.shape[1]

        if Y.shape[0] == 0 or df < 1:
            logger.warning(
                "Array weights not estimable (no complete genes or no residual "
                "degrees of freedom); using equal weights"
            )
            return ArrayWeights(pd.Series(weights, index=index), 0, False)

        converged = False
        n_iter = 0
        for n_iter in range(1, config.max_iter + 1):
            cov = np.linalg.inv(X.T @ (weights[:, None] * X))
            beta = (Y * weights) @ X @ cov
            resid = Y - beta @ X.T
            s2 = (weights * resid**2).sum(axis=1) / df

            usable = np.isfinite(s2) & (s2 > 1e-12 * max(np.nanmedian(s2), 1e-300))
            if not np.any(usable):
                break

            leverage = weights * np.einsum("ij,jk,ik->i", X, cov, X)
            room = 1.0 - leverage
            estimable = room > 1e-8

            ratio = np.ones(n_samples)
            scaled = (
                weights[estimable]
                * resid[usable][:, estimable] ** 2
                / (s2[usable][:, None] * room[estimable])
            )
            ratio[estimable] = scaled.mean(axis=0)
            ratio = np.where(ratio > 0, ratio, 1.0)

            updated = weights / ratio
            updated = updated / np.exp(np.mean(np.log(updated)))
            updated = np.clip(updated, config.floor, config.ceiling)

            change = float(np.max(np.abs(updated - weights) / weights))
            weights = updated
            if change < config.tol:
                converged = True
                break

        if not converged:
            logger.warning(
                f"Array weights did not converge after {n_iter} iterations"
            )
        logger.info(
            f"Array weights: min={weights.min():.3f}, max={weights.max():.3f} "
            f"({n_iter} iterations)"
        )
        return ArrayWeights(pd.Series(weights, index=index), n_iter, converged)

    # ------------------------------------------------------------------
    # Linear model
    # ------------------------------------------------------------------

    def fit_linear_model(
        self,
        matrix: pd.DataFrame,
        design: pd.DataFrame,
        weights: Optional[pd.Series] = None,
    ) -> LinearModelFit:
        """
        Weighted least squares fit of every gene on the design.

        Genes without missing values are solved together; genes with missing
        values are fitted on their observed samples, so their residual
        degrees of freedom are smaller. Genes that cannot be estimated get
        NaN coefficients.

        Args:
            matrix: Expression, genes x samples
            design: Design matrix, samples x columns
            weights: Per-sample weights (equal weights if None)

        Returns:
            LinearModelFit
        """
        X = design.to_numpy(dtype=np.float64)
        Y = matrix.to_numpy(dtype=np.float64)
        n_genes, n_samples = Y.shape
        n_coef = X.shape[1]
        w = (
            np.ones(n_samples)
            if weights is None
            else np.asarray(weights, dtype=np.float64)
        )
        if np.any(~np.isfinite(w)) or np.any(w <= 0):
            raise ValueError("Sample weights must be finite and positive")

        coef = np.full((n_genes, n_coef), np.nan)
        cov_unscaled = np.full((n_genes, n_coef, n_coef), np.nan)
        sigma = np.full(n_genes, np.nan)
        df_residual = np.zeros(n_genes)

        complete = np.all(np.isfinite(Y), axis=1)
        if np.any(complete):
            try:
                cov = np.linalg.inv(X.T @ (w[:, None] * X))
            except np.linalg.LinAlgError as e:
                raise SingularDesignError(
                    "Weighted design matrix is singular",
                    details={"design_shape": tuple(design.shape)},
                ) from e
            Yc = Y[complete]
            beta = (Yc * w) @ X @ cov
            resid = Yc - beta @ X.T
            df = n_samples - n_coef
            coef[complete] = beta
            cov_unscaled[complete] = cov
            df_residual[complete] = df
            if df > 0:
                sigma[complete] = np.sqrt((w * resid**2).sum(axis=1) / df)

        for i in np.flatnonzero(~complete):
            observed = np.isfinite(Y[i])
            Xo = X[observed]
            if Xo.shape[0] == 0 or np.linalg.matrix_rank(Xo) < n_coef:
                continue
            wo = w[observed]
            cov = np.linalg.inv(Xo.T @ (wo[:, None] * Xo))
            beta = (Y[i, observed] * wo) @ Xo @ cov
            resid = Y[i, observed] - Xo @ beta
            df = int(observed.sum()) - n_coef
            coef[i] = beta
            cov_unscaled[i] = cov
            df_residual[i] = df
            if df > 0:
                sigma[i] = np.sqrt(float((wo * resid**2).sum()) / df)

        with np.errstate(invalid="ignore"):
            amean = np.nanmean(np.where(np.isfinite(Y), Y, np.nan), axis=1)

        genes = matrix.index
        n_incomplete = int((~complete).sum())
        if n_incomplete:
            logger.info(f"Fitted {n_incomplete} genes with missing values individually")

        return LinearModelFit(
            coefficients=pd.DataFrame(coef, index=genes, columns=design.columns),
            cov_unscaled=cov_unscaled,
            sigma=pd.Series(sigma, index=genes, name="sigma"),
            df_residual=pd.Series(df_residual, index=genes, name="df_residual"),
            amean=pd.Series(amean, index=genes, name="amean"),
            design=design,
            weights=pd.Series(w, index=matrix.columns, name="weight"),
        )

    def apply_contrast(
        self, fit: LinearModelFit, contrast: Tuple[str, str]
    ) -> ContrastFit:
        """
        Reduce the fit to ``contrast[0] - contrast[1]``.

        Args:
            fit: Linear model fit
            contrast: Pair of design columns (minuend, subtrahend)

        Returns:
            ContrastFit
        """
        first, second = contrast
        columns = list(fit.coefficients.columns)
        missing = [c for c in (first, second) if c not in columns]
        if missing or first == second:
            raise ValueError(
                f"Contrast {first} - {second} is not valid for design columns {columns}"
            )

        vector = pd.Series(0.0, index=columns, name=f"{first}-{second}")
        vector[first] = 1.0
        vector[second] = -1.0
        c = vector.to_numpy()

        coefficient = fit.coefficients.to_numpy() @ c
        variance = np.einsum("i,gij,j->g", c, fit.cov_unscaled, c)

        genes = fit.coefficients.index
        return ContrastFit(
            name=vector.name,
            vector=vector,
            coefficient=pd.Series(coefficient, index=genes, name="log_fc"),
            stdev_unscaled=pd.Series(np.sqrt(variance), index=genes),
            sigma=fit.sigma,
            df_residual=fit.df_residual,
            amean=fit.amean,
        )

    def empirical_bayes(self, contrast_fit: ContrastFit) -> ModeratedStatistics:
        """Moderate the contrast statistics across all genes."""
        moderated = moderate_statistics(
            contrast_fit.coefficient.to_numpy(),
            contrast_fit.stdev_unscaled.to_numpy(),
            contrast_fit.sigma.to_numpy(),
            contrast_fit.df_residual.to_numpy(),
            proportion=self.proportion,
            stdev_coef_lim=self.stdev_coef_lim,
        )
        logger.info(
            f"Variance prior: s0^2={moderated.s2_prior:.4g}, d0={moderated.df_prior:.4g}"
        )
        return moderated

    def top_table(
        self,
        contrast_fit: ContrastFit,
        moderated: ModeratedStatistics,
        gene_annotation: Optional[pd.DataFrame] = None,
    ) -> pd.DataFrame:
        """
        Ranked result table, ascending by p-value (missing p-values last).

        Args:
            contrast_fit: Contrast the statistics belong to
            moderated: Moderated statistics for that contrast
            gene_annotation: Frame with accession and title, indexed by gene id

        Returns:
            DataFrame indexed by gene_id with TOP_TABLE_COLUMNS
        """
        genes = contrast_fit.coefficient.index
        table = pd.DataFrame(
            {
                "log_fc": contrast_fit.coefficient.to_numpy(),
                "ave_expr": contrast_fit.amean.to_numpy(),
                "t": moderated.t,
                "p_value": moderated.p_value,
                "adj_p_value": adjust_p_values(moderated.p_value),
                "b": moderated.lods,
            },
            index=pd.Index(genes, name="gene_id"),
        )

        annotation = (
            gene_annotation.reindex(genes)
            if gene_annotation is not None
            else pd.DataFrame(index=genes)
        )
        for key in (ACCESSION_KEY, GENE_TITLE_KEY):
            values = annotation[key] if key in annotation else pd.Series("", index=genes)
            table.insert(0 if key == ACCESSION_KEY else 1, key, values.fillna("").to_numpy())

        return table.sort_values("p_value", kind="mergesort", na_position="last")[
            TOP_TABLE_COLUMNS
        ]

    # ------------------------------------------------------------------
    # End to end
    # ------------------------------------------------------------------

    def run_differential_expression(
        self,
        adata: anndata.AnnData,
        groupby: str = GROUP_KEY,
        levels: Optional[Sequence[str]] = None,
        contrast: Optional[Tuple[str, str]] = None,
    ) -> DifferentialExpressionResult:
        """
        Run design, weighting, fit, contrast and moderation on a filtered dataset.

        Args:
            adata: Filtered dataset (samples x genes) with group labels in obs
            groupby: obs column holding the group labels
            levels: Design column order (alphabetical if None)
            contrast: (minuend, subtrahend); defaults to (levels[0], levels[1])

        Returns:
            DifferentialExpressionResult whose table has one row per gene

        Raises:
            EmptyInputError: If the dataset has no genes
            SingularDesignError: If the design is rank deficient
        """
        if adata.n_vars == 0:
            raise EmptyInputError(
                "No genes left to test after filtering",
                details={"n_samples": int(adata.n_obs), "n_genes": 0},
            )
        if adata.n_obs == 0:
            raise EmptyInputError(
                "No samples to test",
                details={"n_samples": 0, "n_genes": int(adata.n_vars)},
            )

        groups: List[str] = [str(g) for g in adata.obs[groupby]]
        if levels is None and hasattr(adata.obs[groupby], "cat"):
            categories = [str(c) for c in adata.obs[groupby].cat.categories]
            levels = sorted(categories)
        design = self.build_design_matrix(
            groups, levels=levels, sample_ids=adata.obs_names
        )
        if contrast is None:
            contrast = (design.columns[0], design.columns[1])

        logger.info(
            f"Differential expression: {contrast[0]} - {contrast[1]} on "
            f"{adata.n_vars} genes x {adata.n_obs} samples"
        )

        matrix = pd.DataFrame(
            np.asarray(adata.X, dtype=np.float64).T,
            index=adata.var_names,
            columns=adata.obs_names,
        )

        array_weights = self.estimate_array_weights(matrix, design)
        fit = self.fit_linear_model(matrix, design, array_weights.weights)
        contrast_fit = self.apply_contrast(fit, contrast)
        moderated = self.empirical_bayes(contrast_fit)
        table = self.top_table(contrast_fit, moderated, adata.var)

        return DifferentialExpressionResult(
            table=table,
            design=design,
            array_weights=array_weights,
            fit=fit,
            contrast=contrast_fit,
            moderated=moderated,
        )
