"""
Mock data generation utilities for the gdsdiff test suite.

This module provides reproducible synthetic two-group microarray datasets
and GEOparse stand-ins so no test needs network access.
"""

from .base import (
    MEDIUM_DATASET_CONFIG,
    MISSING_VALUES_CONFIG,
    NOISY_ARRAY_CONFIG,
    SMALL_DATASET_CONFIG,
    MockDataConfig,
)
from .factories import (
    GENE_OF_INTEREST,
    GEODatasetStub,
    GEOPlatformStub,
    GEOSeriesStub,
    PreparedDataFactory,
    RawDatasetFactory,
    probe_id,
)

__all__ = [
    # Factories
    "RawDatasetFactory",
    "PreparedDataFactory",
    # GEOparse stand-ins
    "GEOSeriesStub",
    "GEODatasetStub",
    "GEOPlatformStub",
    # Configuration
    "MockDataConfig",
    "SMALL_DATASET_CONFIG",
    "MEDIUM_DATASET_CONFIG",
    "MISSING_VALUES_CONFIG",
    "NOISY_ARRAY_CONFIG",
    "GENE_OF_INTEREST",
    "probe_id",
]
