"""
gdsdiff core module with the exception hierarchy, record schemas and the
pipeline that composes the individual stages.
"""

from gdsdiff.core.exceptions import (
    DownloadError,
    EmptyInputError,
    GdsDiffError,
    LabelError,
    ReportingError,
    SchemaError,
    SingularDesignError,
)

__all__ = [
    "GdsDiffError",
    "DownloadError",
    "SchemaError",
    "LabelError",
    "EmptyInputError",
    "SingularDesignError",
    "ReportingError",
]
