"""Access to remote expression datasets."""

from gdsdiff.services.data_access.geo_loader import GEODatasetLoader, RawDataset

__all__ = ["GEODatasetLoader", "RawDataset"]
