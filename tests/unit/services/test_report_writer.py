"""
Unit tests for the report writer.
"""

import pandas as pd
import plotly.graph_objects as go
import pytest

from gdsdiff.core.exceptions import ReportingError
from gdsdiff.services.reporting.report_writer import ReportWriter


@pytest.fixture
def artifacts():
    top_table = pd.DataFrame(
        {"accession": ["NM_000784", "NM_000001"], "log_fc": [2.0, float("nan")]},
        index=pd.Index(["p1", "p2"], name="gene_id"),
    )
    return dict(
        top_table=top_table,
        counts={"down": 0, "unchanged": 1, "up": 1},
        filter_mask=pd.Series([True, True, False], index=["p1", "p2", "p3"]),
        array_weights=pd.Series([0.8, 1.25], index=["GSM1", "GSM2"]),
    )


@pytest.mark.unit
class TestReportWriter:
    def test_writes_tables(self, temp_workspace, artifacts):
        out = temp_workspace / "output" / "GSE10072"
        paths = ReportWriter(out).write_results(**artifacts)

        assert {p.name for p in paths} == {
            "top_table.tsv",
            "summary_counts.tsv",
            "filter_mask.tsv",
            "array_weights.tsv",
        }
        assert all(p.exists() for p in paths)

    def test_top_table_round_trip(self, temp_workspace, artifacts):
        ReportWriter(temp_workspace).write_results(**artifacts)
        table = pd.read_csv(temp_workspace / "top_table.tsv", sep="\t", index_col=0)

        assert table.index.name == "gene_id"
        assert table.loc["p1", "accession"] == "NM_000784"
        assert pd.isna(table.loc["p2", "log_fc"])

    def test_counts_and_mask_layout(self, temp_workspace, artifacts):
        ReportWriter(temp_workspace).write_results(**artifacts)

        counts = pd.read_csv(temp_workspace / "summary_counts.tsv", sep="\t")
        assert counts.columns.tolist() == ["down", "unchanged", "up"]
        assert counts.iloc[0].tolist() == [0, 1, 1]

        mask = pd.read_csv(temp_workspace / "filter_mask.tsv", sep="\t", index_col=0)
        assert mask.index.name == "gene_id"
        assert mask["keep"].tolist() == [True, True, False]

        weights = pd.read_csv(temp_workspace / "array_weights.tsv", sep="\t", index_col=0)
        assert weights.index.name == "sample_id"
        assert weights["weight"].tolist() == [0.8, 1.25]

    def test_writes_figures(self, temp_workspace, artifacts):
        figure = go.Figure(go.Scatter(x=[1, 2], y=[3, 4]))
        paths = ReportWriter(temp_workspace).write_results(
            figures={"volcano": figure}, **artifacts
        )

        html = temp_workspace / "volcano.html"
        assert html in paths
        assert "plotly" in html.read_text().lower()

    def test_unwritable_directory(self, temp_workspace, artifacts):
        blocker = temp_workspace / "file"
        blocker.write_text("x")
        with pytest.raises(ReportingError):
            ReportWriter(blocker / "sub").write_results(**artifacts)

    def test_table_write_failure(self, temp_workspace, artifacts, mocker):
        mocker.patch.object(pd.DataFrame, "to_csv", side_effect=OSError("disk full"))
        with pytest.raises(ReportingError, match="disk full") as excinfo:
            ReportWriter(temp_workspace).write_results(**artifacts)
        assert excinfo.value.details["stage"] == "reporting"
        assert excinfo.value.details["path"].endswith("top_table.tsv")

    def test_figure_write_failure(self, temp_workspace, artifacts, mocker):
        mocker.patch.object(go.Figure, "write_html", side_effect=OSError("read-only"))
        figure = go.Figure(go.Scatter(x=[1, 2], y=[3, 4]))

        with pytest.raises(ReportingError, match="read-only"):
            ReportWriter(temp_workspace).write_results(
                figures={"volcano": figure}, **artifacts
            )
