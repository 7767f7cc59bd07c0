"""Result tables and on-disk reports."""

from gdsdiff.services.reporting.report_tables import (
    flag_significant,
    lookup_accession,
    summarize_significance,
)
from gdsdiff.services.reporting.report_writer import ReportWriter

__all__ = [
    "ReportWriter",
    "flag_significant",
    "lookup_accession",
    "summarize_significance",
]
