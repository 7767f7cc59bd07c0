"""Schema definitions for the prepared expression dataset."""

from gdsdiff.core.schemas.expression import (
    ACCESSION_KEY,
    GENE_TITLE_KEY,
    GROUP_KEY,
    LABEL_PREFIX,
    SAMPLE_DESCRIPTION_KEY,
    SAMPLE_TITLE_KEY,
    GeneRecord,
    SampleRecord,
)

__all__ = [
    "ACCESSION_KEY",
    "GENE_TITLE_KEY",
    "GROUP_KEY",
    "LABEL_PREFIX",
    "SAMPLE_DESCRIPTION_KEY",
    "SAMPLE_TITLE_KEY",
    "GeneRecord",
    "SampleRecord",
]
