"""
Unit tests for the result summary tables.
"""

import numpy as np
import pandas as pd
import pytest

from gdsdiff.services.reporting.report_tables import (
    classify_significance,
    flag_significant,
    head_table,
    lookup_accession,
    summarize_significance,
    summary_counts_frame,
)


@pytest.fixture
def results():
    return pd.DataFrame(
        {
            "accession": ["NM_000784", "NM_000001", "NM_000002", "NM_000003", ""],
            "title": ["CYP27A1", "A", "B", "C", ""],
            "log_fc": [2.5, -1.5, 0.4, 3.0, -2.0],
            "p_value": [1e-8, 1e-6, 1e-9, 0.2, np.nan],
            "adj_p_value": [1e-6, 5e-3, 1e-7, 0.4, np.nan],
        },
        index=pd.Index(["p1", "p2", "p3", "p4", "p5"], name="gene_id"),
    )


@pytest.mark.unit
class TestSignificance:
    """Up / Down / NotSig classification and counts."""

    def test_classification(self, results):
        labels = classify_significance(results, 0.01, 1.0)
        assert labels.tolist() == ["Up", "Down", "NotSig", "NotSig", "NotSig"]

    def test_counts(self, results):
        counts = summarize_significance(results, 0.01, 1.0)
        assert counts == {"down": 1, "unchanged": 3, "up": 1}
        assert sum(counts.values()) == len(results)

    def test_looser_threshold(self, results):
        counts = summarize_significance(results, 0.5, 1.0)
        assert counts == {"down": 1, "unchanged": 2, "up": 2}

    def test_lfc_threshold_is_strict(self, results):
        counts = summarize_significance(results, 0.01, 2.5)
        assert counts["up"] == 0

    def test_raw_p_value_column(self, results):
        labels = classify_significance(results, 1e-5, 0.0, p_value_column="p_value")
        assert labels.tolist() == ["Up", "Down", "Up", "NotSig", "NotSig"]

    def test_flag_adds_column(self, results):
        flagged = flag_significant(results, 0.01, 1.0)
        assert "significant" in flagged.columns
        assert "significant" not in results.columns
        assert flagged.loc["p1", "significant"] == "Up"

    def test_unknown_column(self, results):
        with pytest.raises(KeyError, match="q_value"):
            summarize_significance(results, 0.01, 1.0, p_value_column="q_value")

    def test_negative_lfc_threshold(self, results):
        with pytest.raises(ValueError):
            summarize_significance(results, 0.01, -1.0)

    def test_counts_frame(self):
        frame = summary_counts_frame({"up": 3, "down": 1, "unchanged": 10})
        assert frame.columns.tolist() == ["down", "unchanged", "up"]
        assert frame.iloc[0].tolist() == [1, 10, 3]


@pytest.mark.unit
class TestLookup:
    """Accession lookup of the gene of interest."""

    def test_present(self, results):
        rows = lookup_accession(results, "NM_000784")
        assert len(rows) == 1
        assert rows.index[0] == "p1"

    def test_absent(self, results):
        rows = lookup_accession(results, "NM_999999")
        assert rows.empty
        assert list(rows.columns) == list(results.columns)

    def test_whitespace_ignored(self, results):
        assert len(lookup_accession(results, " NM_000784 ")) == 1

    def test_no_partial_match(self, results):
        assert lookup_accession(results, "NM_00078").empty


@pytest.mark.unit
class TestHeadTable:
    def test_head(self, results):
        assert head_table(results, 2).index.tolist() == ["p1", "p2"]

    def test_all_rows(self, results):
        assert len(head_table(results, None)) == len(results)

    def test_negative(self, results):
        with pytest.raises(ValueError):
            head_table(results, -1)
