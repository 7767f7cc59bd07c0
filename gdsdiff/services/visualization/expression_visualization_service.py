"""
Expression visualization service.

Interactive Plotly figures for the exploratory and the differential
expression parts of a two-group microarray analysis: per-sample intensity
boxplots, a sample correlation heatmap, a PCA scatter and a volcano plot.
Every method returns the figure together with a small dict of statistics.
"""

from typing import Any, Dict, Optional, Tuple

import anndata
import numpy as np
import pandas as pd
import plotly.express as px
import plotly.graph_objects as go
from sklearn.decomposition import PCA

from gdsdiff.core.exceptions import ReportingError
from gdsdiff.core.schemas.expression import ACCESSION_KEY, GROUP_KEY
from gdsdiff.services.reporting.report_tables import (
    DOWN,
    NOT_SIGNIFICANT,
    UP,
    classify_significance,
)
from gdsdiff.utils.logger import get_logger

logger = get_logger(__name__)


class ExpressionVisualizationService:
    """
    Plotly figures for prepared datasets and differential expression results.

    Example:
        viz = ExpressionVisualizationService()
        fig, stats = viz.create_volcano_plot(result.table, 0.01, 1.0)
        fig.write_html("volcano.html")
    """

    def __init__(self):
        self.significance_colors = {
            UP: "red",
            DOWN: "blue",
            NOT_SIGNIFICANT: "lightgray",
        }
        self.group_colors = px.colors.qualitative.Set1
        self.diverging_colors = px.colors.diverging.RdBu_r

        self.default_width = 900
        self.default_height = 700
        self.default_marker_size = 5
        self.default_opacity = 0.7

    def _group_color_map(self, adata: anndata.AnnData) -> Dict[str, str]:
        levels = [str(g) for g in adata.obs[GROUP_KEY].cat.categories]
        return {
            level: self.group_colors[i % len(self.group_colors)]
            for i, level in enumerate(levels)
        }

    def create_sample_boxplot(
        self, adata: anndata.AnnData, title: Optional[str] = None
    ) -> Tuple[go.Figure, Dict[str, Any]]:
        """
        One box of intensities per sample, coloured by group.

        Args:
            adata: Prepared dataset (samples x genes)
            title: Plot title

        Returns:
            Tuple of the figure and per-plot statistics
        """
        logger.info(f"Creating sample boxplot for {adata.n_obs} samples")
        X = np.asarray(adata.X, dtype=np.float64)
        colors = self._group_color_map(adata)

        fig = go.Figure()
        shown = set()
        for i, sample_id in enumerate(adata.obs_names):
            group = str(adata.obs[GROUP_KEY].iloc[i])
            values = X[i][np.isfinite(X[i])]
            fig.add_trace(
                go.Box(
                    y=values,
                    name=str(sample_id),
                    legendgroup=group,
                    showlegend=group not in shown,
                    marker_color=colors[group],
                    boxpoints=False,
                )
            )
            shown.add(group)

        fig.update_layout(
            title=title or "Expression distribution per sample",
            xaxis_title="Sample",
            yaxis_title="log2 intensity",
            width=max(self.default_width, 12 * adata.n_obs),
            height=self.default_height,
            plot_bgcolor="white",
            boxmode="overlay",
        )
        fig.update_yaxes(showgrid=True, gridcolor="lightgray")

        medians = np.nanmedian(np.where(np.isfinite(X), X, np.nan), axis=1)
        stats = {
            "plot_type": "sample_boxplot",
            "n_samples": int(adata.n_obs),
            "median_min": float(np.nanmin(medians)) if medians.size else float("nan"),
            "median_max": float(np.nanmax(medians)) if medians.size else float("nan"),
        }
        return fig, stats

    def create_correlation_heatmap(
        self, adata: anndata.AnnData, title: Optional[str] = None
    ) -> Tuple[go.Figure, Dict[str, Any]]:
        """
        Pearson correlation between samples, ordered by group.

        Correlations use pairwise-complete observations, so missing values
        in individual genes do not drop a sample pair.
        """
        logger.info(f"Creating correlation heatmap for {adata.n_obs} samples")
        order = np.argsort(adata.obs[GROUP_KEY].cat.codes.to_numpy(), kind="stable")
        expression = pd.DataFrame(
            np.asarray(adata.X, dtype=np.float64).T,
            index=adata.var_names,
            columns=adata.obs_names,
        ).iloc[:, order]
        correlation = expression.corr(method="pearson", min_periods=2)

        groups = adata.obs[GROUP_KEY].astype(str).iloc[order].to_numpy()
        labels = [f"{s} ({g})" for s, g in zip(correlation.columns, groups)]

        fig = go.Figure(
            data=go.Heatmap(
                z=correlation.to_numpy(),
                x=labels,
                y=labels,
                colorscale=self.diverging_colors,
                zmid=float(np.nanmean(correlation.to_numpy())),
                colorbar=dict(title="Pearson r"),
            )
        )
        fig.update_layout(
            title=title or "Sample correlation",
            width=self.default_width,
            height=self.default_height,
            xaxis=dict(showticklabels=adata.n_obs <= 60),
            yaxis=dict(showticklabels=adata.n_obs <= 60, autorange="reversed"),
        )

        off_diagonal = correlation.to_numpy()[~np.eye(len(correlation), dtype=bool)]
        stats = {
            "plot_type": "correlation_heatmap",
            "n_samples": int(adata.n_obs),
            "min_correlation": float(np.nanmin(off_diagonal))
            if off_diagonal.size
            else float("nan"),
        }
        return fig, stats

    def create_pca_plot(
        self,
        adata: anndata.AnnData,
        n_components: int = 2,
        title: Optional[str] = None,
    ) -> Tuple[go.Figure, Dict[str, Any]]:
        """
        Scatter of samples on the first two principal components.

        Only genes measured in every sample enter the PCA; the data are
        centred per gene by scikit-learn.

        Raises:
            ReportingError: If fewer than two samples or no complete gene remain
        """
        X = np.asarray(adata.X, dtype=np.float64)
        complete = np.all(np.isfinite(X), axis=0)
        X = X[:, complete]
        if X.shape[0] < 2 or X.shape[1] < 1:
            raise ReportingError(
                "PCA needs at least two samples and one gene without missing values",
                details={"n_samples": int(X.shape[0]), "n_complete_genes": int(X.shape[1])},
            )

        n_components = max(1, min(n_components, X.shape[0], X.shape[1]))
        logger.info(f"Running PCA on {X.shape[1]} complete genes")
        pca = PCA(n_components=n_components)
        scores = pca.fit_transform(X)
        if scores.shape[1] == 1:
            scores = np.column_stack([scores, np.zeros(len(scores))])
        explained = list(pca.explained_variance_ratio_) + [0.0]

        frame = pd.DataFrame(
            {
                "PC1": scores[:, 0],
                "PC2": scores[:, 1],
                "sample_id": adata.obs_names.to_numpy(),
                GROUP_KEY: adata.obs[GROUP_KEY].astype(str).to_numpy(),
            }
        )
        fig = px.scatter(
            frame,
            x="PC1",
            y="PC2",
            color=GROUP_KEY,
            hover_name="sample_id",
            color_discrete_map=self._group_color_map(adata),
        )
        fig.update_traces(marker=dict(size=9, opacity=0.85))
        fig.update_layout(
            title=title or "PCA of samples",
            xaxis_title=f"PC1 ({explained[0]:.1%} variance)",
            yaxis_title=f"PC2 ({explained[1]:.1%} variance)",
            width=self.default_width,
            height=self.default_height,
            plot_bgcolor="white",
        )

        stats = {
            "plot_type": "pca",
            "n_samples": int(X.shape[0]),
            "n_genes_used": int(X.shape[1]),
            "explained_variance_ratio": [float(v) for v in pca.explained_variance_ratio_],
        }
        return fig, stats

    def create_volcano_plot(
        self,
        results: pd.DataFrame,
        p_value_threshold: float,
        lfc_threshold: float,
        p_value_column: str = "adj_p_value",
        top_n_genes: int = 10,
        title: Optional[str] = None,
    ) -> Tuple[go.Figure, Dict[str, Any]]:
        """
        Log fold change against -log10 p-value, coloured by significance.

        Args:
            results: Top table of the differential expression engine
            p_value_threshold: Significance threshold on ``p_value_column``
            lfc_threshold: Absolute log fold change threshold
            p_value_column: p-value column to plot and threshold
            top_n_genes: Number of significant genes to label by accession
            title: Plot title

        Returns:
            Tuple of the figure and per-plot statistics
        """
        labels = classify_significance(
            results, p_value_threshold, lfc_threshold, p_value_column
        ).to_numpy()
        log_fc = results["log_fc"].to_numpy(dtype=np.float64)
        p_values = results[p_value_column].fillna(1.0).to_numpy(dtype=np.float64)
        neg_log_p = -np.log10(p_values + 1e-300)

        names = (
            results[ACCESSION_KEY].astype(str).to_numpy()
            if ACCESSION_KEY in results.columns
            else results.index.astype(str).to_numpy()
        )
        names = np.where(names == "", results.index.astype(str).to_numpy(), names)

        counts = {label: int((labels == label).sum()) for label in (UP, DOWN, NOT_SIGNIFICANT)}
        display = {UP: "Up", DOWN: "Down", NOT_SIGNIFICANT: "Not significant"}
        hover = (
            "Gene: %{text}<br>log FC: %{x:.2f}<br>-log10(p): %{y:.2f}<extra></extra>"
        )

        fig = go.Figure()
        for label in (NOT_SIGNIFICANT, UP, DOWN):
            selected = labels == label
            if label != NOT_SIGNIFICANT and not selected.any():
                continue
            fig.add_trace(
                go.Scatter(
                    x=log_fc[selected],
                    y=neg_log_p[selected],
                    mode="markers",
                    name=f"{display[label]} ({counts[label]})",
                    marker=dict(
                        color=self.significance_colors[label],
                        size=self.default_marker_size
                        + (0 if label == NOT_SIGNIFICANT else 1),
                        opacity=0.4 if label == NOT_SIGNIFICANT else self.default_opacity,
                    ),
                    text=names[selected],
                    hovertemplate=hover,
                )
            )

        if top_n_genes > 0:
            significant = np.flatnonzero(labels != NOT_SIGNIFICANT)
            score = np.abs(log_fc[significant]) * neg_log_p[significant]
            for idx in significant[np.argsort(-score, kind="stable")[:top_n_genes]]:
                fig.add_annotation(
                    x=log_fc[idx],
                    y=neg_log_p[idx],
                    text=names[idx],
                    showarrow=True,
                    arrowhead=2,
                    ax=20 if log_fc[idx] > 0 else -20,
                    ay=-20,
                    font=dict(size=9, color="black"),
                    bgcolor="rgba(255,255,255,0.8)",
                )

        fig.add_hline(
            y=-np.log10(p_value_threshold),
            line_dash="dash",
            line_color="darkgray",
            annotation_text=f"{p_value_column} = {p_value_threshold}",
            annotation_position="right",
        )
        for x in (lfc_threshold, -lfc_threshold):
            fig.add_vline(x=x, line_dash="dash", line_color="darkgray")

        fig.update_layout(
            title=title
            or f"Volcano plot ({counts[UP]} up, {counts[DOWN]} down)",
            xaxis_title="log2 fold change",
            yaxis_title=f"-log10({p_value_column})",
            width=self.default_width,
            height=self.default_height,
            plot_bgcolor="white",
            hovermode="closest",
        )
        fig.update_xaxes(showgrid=True, gridcolor="lightgray", zeroline=True)
        fig.update_yaxes(showgrid=True, gridcolor="lightgray", zeroline=True)

        stats = {
            "plot_type": "volcano_plot",
            "n_genes_total": int(len(results)),
            "n_genes_up": counts[UP],
            "n_genes_down": counts[DOWN],
            "n_genes_not_significant": counts[NOT_SIGNIFICANT],
            "p_value_threshold": p_value_threshold,
            "lfc_threshold": lfc_threshold,
        }
        logger.info(f"Volcano plot created: {counts[UP]} up, {counts[DOWN]} down genes")
        return fig, stats
