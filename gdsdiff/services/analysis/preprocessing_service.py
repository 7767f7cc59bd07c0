"""
Matrix preprocessing service.

Turns the raw GEO tables into one aligned ``AnnData`` object: samples x genes
expression, typed sample metadata with a two-level group factor and gene
metadata with accession and title. All shape and label checks happen here so
later stages can rely on a consistent dataset.
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple

import anndata
import numpy as np
import pandas as pd
from pydantic import ValidationError

from gdsdiff.core.exceptions import LabelError, SchemaError
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
from gdsdiff.services.data_access.geo_loader import RawDataset
from gdsdiff.utils.logger import get_logger

logger = get_logger(__name__)


def normalize_group_label(label: str, prefix: str = LABEL_PREFIX) -> str:
    """
    Strip the GEO characteristic prefix from a group label.

    The prefix is removed as long as it is present, so applying the function
    to its own output is a no-op.

    Args:
        label: Raw characteristic string (e.g. "sample: Tumor")
        prefix: Literal prefix to remove

    Returns:
        str: Normalized label (e.g. "Tumor")
    """
    label = label.strip()
    while prefix and label.startswith(prefix):
        label = label[len(prefix) :].strip()
    return label


@dataclass(frozen=True)
class PreparedDataset:
    """Aligned expression dataset with its validated records."""

    adata: anndata.AnnData
    samples: Tuple[SampleRecord, ...]
    genes: Tuple[GeneRecord, ...]

    @property
    def expression(self) -> pd.DataFrame:
        """Expression matrix as genes x samples."""
        return pd.DataFrame(
            self.adata.X.T, index=self.adata.var_names, columns=self.adata.obs_names
        )


class PreprocessingService:
    """
    Stateless service that validates and aligns raw GEO tables.

    Column names default to what GEO series SOFT files and Affymetrix platform
    annotation tables provide; pass others for datasets that differ.
    """

    def __init__(
        self,
        group_column: str = "characteristics_ch1",
        gene_id_column: str = "ID",
        accession_column: str = "GB_ACC",
        title_column: str = "Gene Title",
        label_prefix: str = LABEL_PREFIX,
    ):
        self.group_column = group_column
        self.gene_id_column = gene_id_column
        self.accession_column = accession_column
        self.title_column = title_column
        self.label_prefix = label_prefix

    def prepare(self, raw: RawDataset) -> PreparedDataset:
        """
        Validate the raw tables and build the aligned dataset.

        Args:
            raw: Tables returned by the dataset loader

        Returns:
            PreparedDataset whose AnnData has matching sample and gene counts

        Raises:
            SchemaError: If a required column is missing or dimensions disagree
            LabelError: If normalized labels do not form exactly two groups
        """
        logger.info(f"Preprocessing {raw.accession}")

        self._require_columns(raw.samples, [self.group_column], "samples")
        self._require_columns(
            raw.genes, [self.gene_id_column, self.accession_column], "genes"
        )

        samples = raw.samples.copy()
        samples.index = samples.index.astype(str)

        expression = self._align_samples(raw.expression, samples)
        genes = self._align_genes(expression, raw.genes)

        sample_records = self._build_sample_records(samples.loc[expression.columns])
        gene_records = self._build_gene_records(genes)

        adata = self._build_anndata(expression, sample_records, gene_records)
        logger.info(
            f"Prepared dataset: {adata.n_obs} samples x {adata.n_vars} genes, "
            f"groups {self._group_sizes(adata)}"
        )
        return PreparedDataset(
            adata=adata, samples=tuple(sample_records), genes=tuple(gene_records)
        )

    def _require_columns(
        self, table: pd.DataFrame, columns: Sequence[str], name: str
    ) -> None:
        missing = [c for c in columns if c not in table.columns]
        if missing:
            raise SchemaError(
                f"Missing required columns in {name} table: {missing}. "
                f"Available columns: {list(table.columns)}",
                details={
                    "table": name,
                    "missing_columns": missing,
                    "available_columns": list(table.columns),
                },
            )

    def _align_samples(
        self, expression: pd.DataFrame, samples: pd.DataFrame
    ) -> pd.DataFrame:
        """Order expression columns like the sample table; counts must agree."""
        expr_ids = [str(c) for c in expression.columns]
        sample_ids = [str(s) for s in samples.index]

        if len(expr_ids) != len(sample_ids) or set(expr_ids) != set(sample_ids):
            raise SchemaError(
                f"Expression matrix has {len(expr_ids)} samples but sample "
                f"metadata has {len(sample_ids)}",
                details={
                    "expression_shape": tuple(expression.shape),
                    "n_samples": len(sample_ids),
                    "only_in_expression": sorted(set(expr_ids) - set(sample_ids))[:10],
                    "only_in_metadata": sorted(set(sample_ids) - set(expr_ids))[:10],
                },
            )
        if len(set(sample_ids)) != len(sample_ids):
            raise SchemaError(
                "Sample identifiers are not unique",
                details={"n_samples": len(sample_ids)},
            )

        expression = expression.copy()
        expression.columns = expr_ids
        return expression[sample_ids]

    def _align_genes(
        self, expression: pd.DataFrame, genes: pd.DataFrame
    ) -> pd.DataFrame:
        """Index the gene table by id and order it like the expression rows."""
        genes = genes.copy()
        genes[self.gene_id_column] = genes[self.gene_id_column].astype(str)
        expr_ids = expression.index.astype(str)

        if genes[self.gene_id_column].duplicated().any():
            raise SchemaError(
                "Gene identifiers are not unique in the gene table",
                details={"n_genes": len(genes)},
            )
        if expr_ids.duplicated().any():
            raise SchemaError(
                "Gene identifiers are not unique in the expression matrix",
                details={"expression_shape": tuple(expression.shape)},
            )
        if len(genes) != len(expr_ids) or set(genes[self.gene_id_column]) != set(
            expr_ids
        ):
            raise SchemaError(
                f"Expression matrix has {len(expr_ids)} genes but gene "
                f"metadata has {len(genes)}",
                details={
                    "expression_shape": tuple(expression.shape),
                    "n_genes": len(genes),
                },
            )

        return genes.set_index(self.gene_id_column).loc[list(expr_ids)]

    def _build_sample_records(self, samples: pd.DataFrame) -> List[SampleRecord]:
        raw_labels = samples[self.group_column]
        unlabeled = [str(s) for s, v in raw_labels.items() if not _present(v)]
        if unlabeled:
            raise SchemaError(
                f"{len(unlabeled)} samples have no value in '{self.group_column}'",
                details={"column": self.group_column, "samples": unlabeled[:10]},
            )

        labels = {
            str(s): normalize_group_label(str(v), self.label_prefix)
            for s, v in raw_labels.items()
        }
        distinct = sorted(set(labels.values()))
        if len(distinct) != 2:
            raise LabelError(
                f"Expected exactly two groups after normalization, found "
                f"{len(distinct)}: {distinct}",
                details={"labels": distinct, "column": self.group_column},
            )

        records = []
        for sample_id, row in samples.iterrows():
            try:
                records.append(
                    SampleRecord(
                        sample_id=str(sample_id),
                        group=labels[str(sample_id)],
                        title=_optional_str(row.get("title")),
                        description=_optional_str(row.get("description")),
                    )
                )
            except ValidationError as e:
                raise SchemaError(
                    f"Invalid sample record {sample_id}: {e}",
                    details={"sample_id": str(sample_id)},
                ) from e
        return records

    def _build_gene_records(self, genes: pd.DataFrame) -> List[GeneRecord]:
        has_title = self.title_column in genes.columns
        records = []
        for gene_id, row in genes.iterrows():
            try:
                records.append(
                    GeneRecord(
                        gene_id=str(gene_id),
                        accession=row[self.accession_column],
                        title=row[self.title_column] if has_title else "",
                    )
                )
            except ValidationError as e:
                raise SchemaError(
                    f"Invalid gene record {gene_id}: {e}",
                    details={"gene_id": str(gene_id)},
                ) from e
        return records

    def _build_anndata(
        self,
        expression: pd.DataFrame,
        samples: List[SampleRecord],
        genes: List[GeneRecord],
    ) -> anndata.AnnData:
        values = expression.apply(pd.to_numeric, errors="coerce").to_numpy(
            dtype=np.float64
        )

        obs = pd.DataFrame(
            {
                GROUP_KEY: pd.Categorical(
                    [s.group for s in samples],
                    categories=sorted({s.group for s in samples}),
                ),
                SAMPLE_TITLE_KEY: [s.title or "" for s in samples],
                SAMPLE_DESCRIPTION_KEY: [s.description or "" for s in samples],
            },
            index=pd.Index([s.sample_id for s in samples], name="sample_id"),
        )
        var = pd.DataFrame(
            {
                ACCESSION_KEY: [g.accession for g in genes],
                GENE_TITLE_KEY: [g.title for g in genes],
            },
            index=pd.Index([g.gene_id for g in genes], name="gene_id"),
        )

        adata = anndata.AnnData(X=values.T, obs=obs, var=var)
        if adata.n_obs != len(samples) or adata.n_vars != len(genes):
            raise SchemaError(
                "Aligned dataset dimensions disagree with metadata",
                details={
                    "expression_shape": tuple(expression.shape),
                    "n_samples": len(samples),
                    "n_genes": len(genes),
                },
            )
        return adata

    @staticmethod
    def _group_sizes(adata: anndata.AnnData) -> Dict[str, int]:
        return {
            str(k): int(v)
            for k, v in adata.obs[GROUP_KEY].value_counts(sort=False).items()
        }


def _present(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, float) and np.isnan(value):
        return False
    return bool(str(value).strip())


def _optional_str(value: Any) -> Optional[str]:
    return str(value) if _present(value) else None
