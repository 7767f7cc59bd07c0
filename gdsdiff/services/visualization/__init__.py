"""Plotly figures for expression data and results."""

from gdsdiff.services.visualization.expression_visualization_service import (
    ExpressionVisualizationService,
)

__all__ = ["ExpressionVisualizationService"]
