"""
Pytest configuration and shared fixtures for the gdsdiff test suite.

Provides markers, isolated cache/output directories, environment isolation
and synthetic datasets. GEOparse is always patched; no test touches the
network.
"""

import logging
import shutil
import tempfile
from pathlib import Path
from typing import Any, Dict, Generator

import anndata as ad
import pytest
from gdsdiff.services.data_access.geo_loader import RawDataset
from tests.mock_data.base import MEDIUM_DATASET_CONFIG, SMALL_DATASET_CONFIG
from tests.mock_data.factories import (
    GEOSeriesStub,
    PreparedDataFactory,
    RawDatasetFactory,
)

# Suppress warnings during testing
logging.getLogger("anndata").setLevel(logging.ERROR)
logging.getLogger("GEOparse").setLevel(logging.ERROR)

# Test constants
TEST_WORKSPACE_PREFIX = "gdsdiff_test_"


# ==============================================================================
# Pytest Configuration Hooks
# ==============================================================================


def pytest_configure(config):
    """Configure pytest with custom markers and settings."""
    config.addinivalue_line("markers", "unit: mark test as a unit test")
    config.addinivalue_line(
        "markers", "integration: mark test as an integration test"
    )


def pytest_collection_modifyitems(config, items):
    """Automatically mark tests based on their location."""
    for item in items:
        if "unit" in str(item.fspath):
            item.add_marker(pytest.mark.unit)
        elif "integration" in str(item.fspath):
            item.add_marker(pytest.mark.integration)


# ==============================================================================
# Core Infrastructure Fixtures
# ==============================================================================


@pytest.fixture(scope="session")
def test_config() -> Dict[str, Any]:
    """Global test configuration."""
    return {
        "workspace_prefix": TEST_WORKSPACE_PREFIX,
        "cleanup_workspaces": True,
        "synthetic_data_seed": 42,
    }


@pytest.fixture(scope="function")
def temp_workspace(test_config: Dict[str, Any]) -> Generator[Path, None, None]:
    """Create isolated temporary workspace with cache and output directories."""
    workspace_path = Path(tempfile.mkdtemp(prefix=test_config["workspace_prefix"]))
    (workspace_path / "cache").mkdir(exist_ok=True)
    (workspace_path / "output").mkdir(exist_ok=True)

    try:
        yield workspace_path
    finally:
        if test_config["cleanup_workspaces"] and workspace_path.exists():
            shutil.rmtree(workspace_path, ignore_errors=True)


@pytest.fixture(scope="function")
def isolated_environment(temp_workspace: Path, monkeypatch):
    """Point every GDSDIFF_* setting at the temporary workspace."""
    monkeypatch.chdir(temp_workspace)

    test_env = {
        "GDSDIFF_CACHE_DIR": str(temp_workspace / "cache"),
        "GDSDIFF_DOWNLOAD_TIMEOUT": "5",
        "GDSDIFF_LOG_LEVEL": "WARNING",
    }
    for key, value in test_env.items():
        monkeypatch.setenv(key, value)

    yield temp_workspace


# ==============================================================================
# Mock Data Fixtures
# ==============================================================================


@pytest.fixture
def raw_dataset() -> RawDataset:
    """Synthetic GEO series with 6 Normal and 6 Tumor samples."""
    return RawDatasetFactory(config=MEDIUM_DATASET_CONFIG, accession="GSE10072")


@pytest.fixture
def small_raw_dataset() -> RawDataset:
    """Synthetic GEO series with 4 Normal and 4 Tumor samples."""
    return RawDatasetFactory(config=SMALL_DATASET_CONFIG, accession="GSE10072")


@pytest.fixture
def prepared_adata() -> ad.AnnData:
    """Aligned samples x genes AnnData with Normal/Tumor groups."""
    return PreparedDataFactory(config=MEDIUM_DATASET_CONFIG, accession="GSE10072")


@pytest.fixture
def mock_get_geo(mocker, raw_dataset: RawDataset):
    """Patch GEOparse.get_GEO to return a stub series built from raw_dataset."""
    return mocker.patch(
        "gdsdiff.services.data_access.geo_loader.GEOparse.get_GEO",
        return_value=GEOSeriesStub(raw_dataset),
    )
