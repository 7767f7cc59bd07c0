"""Preprocessing, filtering and differential expression services."""

from gdsdiff.services.analysis.differential_expression_service import (
    ArrayWeightsConfig,
    DifferentialExpressionResult,
    DifferentialExpressionService,
)
from gdsdiff.services.analysis.expression_filter_service import (
    ExpressionFilterService,
    FilterResult,
)
from gdsdiff.services.analysis.preprocessing_service import (
    PreparedDataset,
    PreprocessingService,
    normalize_group_label,
)

__all__ = [
    "ArrayWeightsConfig",
    "DifferentialExpressionResult",
    "DifferentialExpressionService",
    "ExpressionFilterService",
    "FilterResult",
    "PreparedDataset",
    "PreprocessingService",
    "normalize_group_label",
]
