"""
Core exceptions for the gdsdiff pipeline.

Every stage of the pipeline fails loudly: nothing is recovered internally and
no partial result is returned. Each exception carries a ``details`` dict with
at least the ``stage`` that failed plus whatever dimensions or values the
caller needs to diagnose the problem.
"""

from typing import Any, Dict, Optional


class GdsDiffError(Exception):
    """Base exception for all gdsdiff errors."""

    stage: str = "pipeline"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = {"stage": self.stage}
        self.details.update(details or {})
        super().__init__(self.message)

    def __str__(self):
        return self.message


class DownloadError(GdsDiffError):
    """
    Raised when the remote lookup or the download of a dataset fails.

    Covers network failures, timeouts, unknown accessions and unreadable
    cached SOFT files. Never retried automatically.

    Attributes:
        details: Contains:
            - stage: "download"
            - accession: The requested GEO accession
            - cache_dir: Local cache directory used for the attempt
            - timeout_seconds: Socket timeout in effect (when applicable)

    Example:
        try:
            raw = loader.load("GSE10072")
        except DownloadError as e:
            print(f"Could not fetch {e.details['accession']}: {e.message}")
    """

    stage = "download"


class SchemaError(GdsDiffError):
    """
    Raised when the dataset does not have the expected shape.

    Attributes:
        details: Contains:
            - stage: "preprocess"
            - missing_columns / table: When an expected column is absent
            - expression_shape, n_samples, n_genes: When dimensions disagree
    """

    stage = "preprocess"


class LabelError(GdsDiffError):
    """
    Raised when group label normalization does not yield exactly two groups.

    Attributes:
        details: Contains:
            - stage: "preprocess"
            - labels: Sorted distinct labels observed after normalization
            - column: Sample metadata column the labels came from
    """

    stage = "preprocess"


class EmptyInputError(GdsDiffError):
    """Raised when the expression filter leaves no gene to test."""

    stage = "differential_expression"


class SingularDesignError(GdsDiffError):
    """
    Raised when the design matrix is not of full column rank.

    Typically one of the two groups has no sample left.

    Attributes:
        details: Contains:
            - stage: "differential_expression"
            - design_shape: (n_samples, n_columns)
            - rank: Numerical rank of the design
            - group_sizes: Samples per design column
    """

    stage = "differential_expression"


class ReportingError(GdsDiffError):
    """Raised when a table or figure cannot be produced from the results."""

    stage = "reporting"
