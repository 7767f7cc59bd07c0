"""
Record schemas for the aligned expression dataset.

The preprocessor turns the loosely typed GEO tables into an ``AnnData``
object whose ``obs`` and ``var`` frames follow the column layout defined
here. Every sample and gene row is validated once through the pydantic
records below; downstream stages read the typed columns and never look
up raw GEO field names again.

Layout of the prepared AnnData:

    X    samples x genes, float64 log-scale intensities (NaN allowed)
    obs  index = sample id (GSM), columns: group (categorical, two levels),
         title, description
    var  index = gene id (probe ID), columns: accession, title
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

# obs / var column names used by every stage after preprocessing
GROUP_KEY = "group"
SAMPLE_TITLE_KEY = "title"
SAMPLE_DESCRIPTION_KEY = "description"
ACCESSION_KEY = "accession"
GENE_TITLE_KEY = "title"

# Literal prefix GEO puts in front of the characteristic value
LABEL_PREFIX = "sample: "


class SampleRecord(BaseModel):
    """
    One sample of the dataset after label normalization.

    Attributes:
        sample_id: GEO sample accession (e.g. GSM254625)
        group: Normalized group label (e.g. "Normal" or "Tumor")
        title: Free-text sample title, unused by the engine
        description: Free-text sample description, unused by the engine
    """

    model_config = ConfigDict(frozen=True)

    sample_id: str = Field(..., description="Unique sample identifier", min_length=1)
    group: str = Field(..., description="Normalized two-level group label")
    title: Optional[str] = Field(None, description="Sample title")
    description: Optional[str] = Field(None, description="Sample description")

    @field_validator("sample_id", "group")
    @classmethod
    def validate_not_blank(cls, v: str) -> str:
        """Ensure identifiers and labels are not empty after stripping."""
        if not v or not v.strip():
            raise ValueError("value cannot be empty")
        return v.strip()


class GeneRecord(BaseModel):
    """
    One gene (array probe) of the dataset.

    Attributes:
        gene_id: Probe identifier, unique within the platform
        accession: Sequence accession the probe was designed from (e.g. NM_000784)
        title: Descriptive gene title
    """

    model_config = ConfigDict(frozen=True)

    gene_id: str = Field(..., description="Unique gene identifier", min_length=1)
    accession: str = Field("", description="GenBank / RefSeq accession")
    title: str = Field("", description="Descriptive gene title")

    @field_validator("gene_id")
    @classmethod
    def validate_gene_id(cls, v: str) -> str:
        """Ensure gene_id is not empty and has no surrounding whitespace."""
        if not v or not v.strip():
            raise ValueError("gene_id cannot be empty")
        return v.strip()

    @field_validator("accession", "title", mode="before")
    @classmethod
    def coerce_missing(cls, v) -> str:
        """Platform tables leave many annotations blank; store them as ''."""
        if v is None:
            return ""
        if isinstance(v, float) and v != v:
            return ""
        return str(v).strip()
