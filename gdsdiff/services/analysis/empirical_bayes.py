"""
Empirical Bayes moderation of per-gene linear model statistics.

Implements the variance shrinkage of Smyth (2004) as used by limma's eBayes:
per-gene residual variances are modelled as scaled F draws around a common
prior, the prior (s0^2, d0) is estimated by the method of moments, and each
gene's variance is squeezed towards it before t-statistics are recomputed.
The B statistic is the log posterior odds of differential expression.

References:
    - Smyth GK (2004) Linear models and empirical Bayes methods for assessing
      differential expression in microarray experiments. SAGMB 3(1):3.
    - Ritchie ME et al. (2015) limma powers differential expression analyses
      for RNA-sequencing and microarray studies. NAR 43(7):e47.
"""

import math
from dataclasses import dataclass
from typing import Optional, Sequence, Tuple

import numpy as np
from numpy.typing import NDArray
from scipy import special
from scipy import stats as scipy_stats
from statsmodels.stats.multitest import multipletests

# Prior proportion of differentially expressed genes used for B
DEFAULT_PROPORTION = 0.01
# Limits on the prior standard deviation of log fold changes
DEFAULT_STDEV_COEF_LIM = (0.1, 4.0)


@dataclass(frozen=True)
class ModeratedStatistics:
    """Per-gene moderated statistics and the estimated variance prior."""

    t: NDArray[np.float64]
    p_value: NDArray[np.float64]
    lods: NDArray[np.float64]
    s2_post: NDArray[np.float64]
    df_total: NDArray[np.float64]
    s2_prior: float
    df_prior: float
    var_prior: float


def trigamma_inverse(x: NDArray[np.float64]) -> NDArray[np.float64]:
    """
    Solve trigamma(y) = x for y by Newton iteration.

    Args:
        x: Positive values

    Returns:
        Array y with trigamma(y) == x (NaN for negative input)
    """
    x = np.atleast_1d(np.asarray(x, dtype=np.float64))
    y = np.full_like(x, np.nan)

    y[x == 0] = np.inf
    large = x > 1e7
    y[large] = 1.0 / np.sqrt(x[large])
    small = (x > 0) & (x < 1e-6)
    y[small] = 1.0 / x[small]

    todo = (x >= 1e-6) & (x <= 1e7)
    if np.any(todo):
        xt = x[todo]
        yt = 0.5 + 1.0 / xt
        for _ in range(50):
            tri = special.polygamma(1, yt)
            dif = tri * (1.0 - tri / xt) / special.polygamma(2, yt)
            yt = yt + dif
            if np.max(-dif / yt) < 1e-8:
                break
        y[todo] = yt

    return y


def fit_f_dist(
    x: NDArray[np.float64], df1: NDArray[np.float64]
) -> Tuple[float, float]:
    """
    Moment estimation of a scaled F distribution for sample variances.

    Args:
        x: Per-gene residual variances
        df1: Residual degrees of freedom (scalar or per gene)

    Returns:
        Tuple of (scale s0^2, prior degrees of freedom d0). d0 is infinite
        when the variances are no more dispersed than sampling error alone.
    """
    x = np.asarray(x, dtype=np.float64)
    df1 = np.broadcast_to(np.asarray(df1, dtype=np.float64), x.shape)

    ok = np.isfinite(x) & np.isfinite(df1) & (df1 > 1e-15) & (x > -1e-15)
    n = int(ok.sum())
    if n == 0:
        return float("nan"), float("nan")
    if n == 1:
        return float(max(x[ok][0], 0.0)), 0.0

    x = np.maximum(x[ok], 0.0)
    df1 = df1[ok]

    m = float(np.median(x))
    if m == 0:
        m = 1.0
    x = np.maximum(x, 1e-5 * m)

    z = np.log(x)
    e = z - special.digamma(df1 / 2) + np.log(df1 / 2)
    emean = float(np.mean(e))
    evar = float(np.sum((e - emean) ** 2) / (n - 1))
    evar -= float(np.mean(special.polygamma(1, df1 / 2)))

    if evar > 0:
        df2 = float(2 * trigamma_inverse(evar)[0])
        s20 = math.exp(emean + special.digamma(df2 / 2) - math.log(df2 / 2))
    else:
        # Pooled variance is the scale MLE when the prior df is infinite
        df2 = float("inf")
        s20 = float(np.mean(x))
    return s20, df2


def squeeze_var(
    var: NDArray[np.float64],
    df: NDArray[np.float64],
    s2_prior: float,
    df_prior: float,
) -> NDArray[np.float64]:
    """
    Posterior variances: weighted average of each gene's variance and the prior.

    Genes without residual degrees of freedom take the prior variance.
    """
    var = np.asarray(var, dtype=np.float64)
    df = np.broadcast_to(np.asarray(df, dtype=np.float64), var.shape)

    if not np.isfinite(df_prior):
        return np.full_like(var, s2_prior)

    no_df = ~(df > 0) | ~np.isfinite(var)
    with np.errstate(invalid="ignore"):
        post = (df * np.where(no_df, 0.0, var) + df_prior * s2_prior) / (df + df_prior)
    post[no_df] = s2_prior
    return post


def tmixture_vector(
    tstat: NDArray[np.float64],
    stdev_unscaled: NDArray[np.float64],
    df: NDArray[np.float64],
    proportion: float,
    v0_lim: Optional[Sequence[float]] = None,
) -> float:
    """
    Estimate the prior variance of non-zero coefficients from the top t-statistics.

    Returns NaN when there are too few genes to estimate it.
    """
    tstat = np.asarray(tstat, dtype=np.float64)
    stdev_unscaled = np.asarray(stdev_unscaled, dtype=np.float64)
    df = np.broadcast_to(np.asarray(df, dtype=np.float64), tstat.shape)

    ok = np.isfinite(tstat) & np.isfinite(stdev_unscaled)
    tstat = np.abs(tstat[ok])
    stdev_unscaled = stdev_unscaled[ok]
    df = df[ok].copy()

    ngenes = len(tstat)
    ntarget = int(math.ceil(proportion / 2 * ngenes))
    if ntarget < 1:
        return float("nan")
    p = max(ntarget / ngenes, proportion)

    max_df = float(np.max(df))
    lower = df < max_df
    if np.any(lower):
        # Put every statistic on the same degrees of freedom
        log_tail = scipy_stats.t.logsf(tstat[lower], df[lower])
        tstat[lower] = scipy_stats.t.isf(np.exp(log_tail), max_df)
        df[lower] = max_df

    order = np.argsort(-tstat, kind="stable")[:ntarget]
    tstat = tstat[order]
    v1 = stdev_unscaled[order] ** 2

    r = np.arange(1, ntarget + 1)
    p0 = 2 * scipy_stats.t.sf(tstat, max_df)
    ptarget = ((r - 0.5) / ngenes - (1 - p) * p0) / p

    v0 = np.zeros(ntarget)
    pos = ptarget > p0
    if np.any(pos):
        qtarget = scipy_stats.t.isf(ptarget[pos] / 2, max_df)
        v0[pos] = v1[pos] * ((tstat[pos] / qtarget) ** 2 - 1)

    if v0_lim is not None:
        v0 = np.clip(v0, v0_lim[0], v0_lim[1])
    return float(np.mean(v0))


def moderate_statistics(
    coefficient: NDArray[np.float64],
    stdev_unscaled: NDArray[np.float64],
    sigma: NDArray[np.float64],
    df_residual: NDArray[np.float64],
    proportion: float = DEFAULT_PROPORTION,
    stdev_coef_lim: Tuple[float, float] = DEFAULT_STDEV_COEF_LIM,
) -> ModeratedStatistics:
    """
    Empirical Bayes moderated t-statistics, p-values and B log-odds.

    Args:
        coefficient: Contrast estimate per gene
        stdev_unscaled: Unscaled standard deviation of the contrast per gene
        sigma: Residual standard deviation per gene
        df_residual: Residual degrees of freedom per gene
        proportion: Assumed proportion of differentially expressed genes
        stdev_coef_lim: Bounds on the prior standard deviation of the contrast

    Returns:
        ModeratedStatistics
    """
    coefficient = np.asarray(coefficient, dtype=np.float64)
    stdev_unscaled = np.asarray(stdev_unscaled, dtype=np.float64)
    df_residual = np.asarray(df_residual, dtype=np.float64)
    s2 = np.asarray(sigma, dtype=np.float64) ** 2

    s2_prior, df_prior = fit_f_dist(s2, df_residual)
    if not np.isfinite(s2_prior):
        # No gene has a usable variance; fall back to the unmoderated statistics
        finite_s2 = s2[np.isfinite(s2)]
        s2_prior = float(np.mean(finite_s2)) if finite_s2.size else 1.0
        df_prior = 0.0

    s2_post = squeeze_var(s2, df_residual, s2_prior, df_prior)

    df_pooled = float(np.nansum(df_residual))
    df_total = np.minimum(df_residual + df_prior, df_pooled)

    with np.errstate(divide="ignore", invalid="ignore"):
        t = coefficient / stdev_unscaled / np.sqrt(s2_post)
    p_value = 2 * scipy_stats.t.sf(np.abs(t), df_total)

    var_prior_lim = np.asarray(stdev_coef_lim, dtype=np.float64) ** 2 / s2_prior
    var_prior = tmixture_vector(t, stdev_unscaled, df_total, proportion, var_prior_lim)
    if not np.isfinite(var_prior):
        var_prior = 1.0 / s2_prior

    r = (stdev_unscaled**2 + var_prior) / stdev_unscaled**2
    t2 = t**2
    with np.errstate(divide="ignore", invalid="ignore"):
        if df_prior > 1e6:
            kernel = t2 * (1 - 1 / r) / 2
        else:
            kernel = (1 + df_total) / 2 * np.log((t2 + df_total) / (t2 / r + df_total))
        lods = math.log(proportion / (1 - proportion)) - np.log(r) / 2 + kernel

    return ModeratedStatistics(
        t=t,
        p_value=p_value,
        lods=lods,
        s2_post=s2_post,
        df_total=df_total,
        s2_prior=float(s2_prior),
        df_prior=float(df_prior),
        var_prior=float(var_prior),
    )


def adjust_p_values(
    p_values: NDArray[np.float64], method: str = "fdr_bh"
) -> NDArray[np.float64]:
    """
    Multiple testing correction ignoring missing p-values.

    Args:
        p_values: Raw p-values (NaN allowed)
        method: Any statsmodels ``multipletests`` method (default Benjamini-Hochberg)

    Returns:
        Adjusted p-values, NaN where the input was NaN
    """
    p_values = np.asarray(p_values, dtype=np.float64)
    adjusted = np.full_like(p_values, np.nan)
    valid = np.isfinite(p_values)
    if np.any(valid):
        _, adjusted[valid], _, _ = multipletests(p_values[valid], method=method)
    return adjusted
