"""
Unit tests for the expression breadth filter.
"""

import anndata as ad
import numpy as np
import pandas as pd
import pytest

from gdsdiff.services.analysis.expression_filter_service import (
    ExpressionFilterService,
    FilterResult,
)
from tests.mock_data.base import MISSING_VALUES_CONFIG
from tests.mock_data.factories import PreparedDataFactory, probe_id


@pytest.fixture
def service():
    return ExpressionFilterService()


@pytest.fixture
def tiny_adata():
    """4 samples x 4 genes with a known median of 4.5."""
    X = np.array(
        [
            [9.0, 1.0, 5.0, 2.0],
            [8.0, 1.0, 5.0, 7.0],
            [9.0, 2.0, 4.0, 3.0],
            [8.0, 2.0, 6.0, 4.0],
        ]
    )
    obs = pd.DataFrame(
        {"group": pd.Categorical(["Normal", "Normal", "Tumor", "Tumor"])},
        index=[f"GSM{i}" for i in range(4)],
    )
    var = pd.DataFrame(
        {"accession": ["A", "B", "C", "D"], "title": ["", "", "", ""]},
        index=["g1", "g2", "g3", "g4"],
    )
    return ad.AnnData(X=X, obs=obs, var=var)


@pytest.mark.unit
class TestFilterByExpression:
    """Global-median breadth filter."""

    def test_known_mask(self, service, tiny_adata):
        result = service.filter_by_expression(tiny_adata, min_samples=3)

        assert isinstance(result, FilterResult)
        assert result.median == pytest.approx(4.5)
        assert result.mask.to_dict() == {"g1": True, "g2": False, "g3": True, "g4": False}
        assert list(result.adata.var_names) == ["g1", "g3"]
        assert result.n_retained == 2
        assert result.n_removed == 2

    def test_mask_indexed_by_gene(self, service, prepared_adata):
        result = service.filter_by_expression(prepared_adata)

        assert result.mask.dtype == bool
        assert list(result.mask.index) == list(prepared_adata.var_names)
        assert result.adata.n_vars == int(result.mask.sum())

    def test_reduces_but_keeps_genes(self, service, prepared_adata):
        result = service.filter_by_expression(prepared_adata, min_samples=3)
        assert 0 < result.adata.n_vars < prepared_adata.n_vars

    def test_planted_genes_survive(self, service, prepared_adata):
        result = service.filter_by_expression(prepared_adata, min_samples=3)
        assert all(result.mask[probe_id(i)] for i in range(20))

    def test_monotonic_in_k(self, service, prepared_adata):
        retained = [
            service.filter_by_expression(prepared_adata, min_samples=k).n_retained
            for k in range(0, prepared_adata.n_obs + 2)
        ]
        assert all(a >= b for a, b in zip(retained, retained[1:]))

    def test_k_zero_keeps_everything(self, service, tiny_adata):
        result = service.filter_by_expression(tiny_adata, min_samples=0)
        assert result.mask.all()

    def test_k_above_sample_count_removes_everything(self, service, tiny_adata):
        result = service.filter_by_expression(tiny_adata, min_samples=5)
        assert not result.mask.any()
        assert result.adata.n_vars == 0
        assert result.adata.n_obs == tiny_adata.n_obs

    def test_input_not_modified(self, service, tiny_adata):
        before = tiny_adata.X.copy()
        service.filter_by_expression(tiny_adata)
        np.testing.assert_array_equal(tiny_adata.X, before)
        assert tiny_adata.n_vars == 4

    def test_missing_values_never_expressed(self, service, tiny_adata):
        tiny_adata.X[0, 0] = np.nan
        tiny_adata.X[1, 0] = np.nan
        result = service.filter_by_expression(tiny_adata, min_samples=3)

        assert not result.mask["g1"]
        assert np.isfinite(result.median)

    def test_missing_values_dataset(self, service):
        adata = PreparedDataFactory(config=MISSING_VALUES_CONFIG)
        assert np.isnan(adata.X).any()

        result = service.filter_by_expression(adata, min_samples=3)
        assert result.n_retained > 0

    @pytest.mark.parametrize("bad_k", [-1, 2.5, "3", True, None])
    def test_invalid_k(self, service, tiny_adata, bad_k):
        with pytest.raises(ValueError):
            service.filter_by_expression(tiny_adata, min_samples=bad_k)

    def test_numpy_integer_k(self, service, tiny_adata):
        result = service.filter_by_expression(tiny_adata, min_samples=np.int64(3))
        assert result.min_samples == 3
