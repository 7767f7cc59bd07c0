"""
GEO dataset loader backed by GEOparse.

Fetches a GEO series (GSE) or curated dataset (GDS) into a local cache
directory and flattens it into three raw tables: the expression values
(genes x samples), the per-sample GEO fields and the platform annotation.
A SOFT file already present in the cache is parsed in place and never
downloaded again.
"""

import re
import socket
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import GEOparse
import pandas as pd

from gdsdiff.core.exceptions import DownloadError, SchemaError
from gdsdiff.utils.logger import get_logger

logger = get_logger(__name__)

ACCESSION_PATTERN = re.compile(r"^(GSE|GDS|GPL)\d+$")

# Sample fields copied verbatim from GSM metadata; characteristics keep only
# their first entry, which is where GEO submitters put the group label.
SAMPLE_FIELDS = ["title", "source_name_ch1", "description", "characteristics_ch1"]


@dataclass(frozen=True)
class RawDataset:
    """Raw tables of one GEO record, as parsed from its SOFT file."""

    accession: str
    expression: pd.DataFrame
    samples: pd.DataFrame
    genes: pd.DataFrame
    platform: str
    soft_path: Optional[Path] = None

    @property
    def shape(self):
        """(n_genes, n_samples) of the expression table."""
        return self.expression.shape


def soft_filename(accession: str) -> str:
    """
    Name of the file GEOparse writes for an accession.

    GEOparse stores series as ``<GSE>_family.soft.gz``, curated datasets as
    ``<GDS>.soft.gz`` and platform annotation as ``<GPL>.txt``.
    """
    prefix = accession[:3].upper()
    if prefix == "GSE":
        return f"{accession}_family.soft.gz"
    if prefix == "GDS":
        return f"{accession}.soft.gz"
    return f"{accession}.txt"


class GEODatasetLoader:
    """
    Download and cache GEO records, returning them as ``RawDataset`` tables.

    Example:
        loader = GEODatasetLoader(cache_dir="~/.gdsdiff/cache", timeout_seconds=120)
        raw = loader.load("GSE10072")
        print(raw.shape)
    """

    def __init__(
        self,
        cache_dir: Union[str, Path],
        timeout_seconds: Optional[float] = 300.0,
    ):
        """
        Initialize the loader.

        Args:
            cache_dir: Directory holding downloaded SOFT files
            timeout_seconds: Socket timeout applied while downloading
                (None blocks indefinitely)
        """
        self.cache_dir = Path(cache_dir).expanduser()
        self.timeout_seconds = timeout_seconds

    def cached_path(self, accession: str) -> Optional[Path]:
        """Return the cached SOFT file for ``accession`` if a usable one exists."""
        path = self.cache_dir / soft_filename(accession)
        if path.is_file() and path.stat().st_size > 0:
            return path
        return None

    def load(self, accession: str) -> RawDataset:
        """
        Fetch ``accession`` (from cache when possible) and flatten it.

        Args:
            accession: GEO series or dataset accession (GSE/GDS)

        Returns:
            RawDataset with expression, sample and gene tables

        Raises:
            ValueError: If the accession is not a GSE or GDS identifier
            DownloadError: If the record cannot be fetched or parsed
            SchemaError: If a series spans several platforms
        """
        accession = accession.strip().upper()
        if not ACCESSION_PATTERN.match(accession) or accession.startswith("GPL"):
            raise ValueError(
                f"Unsupported accession '{accession}'. Expected a GSE or GDS identifier."
            )

        geo = self._fetch(accession)

        if accession.startswith("GDS"):
            raw = self._from_gds(accession, geo)
        else:
            raw = self._from_gse(accession, geo)

        logger.info(
            f"Loaded {accession}: {raw.expression.shape[0]} genes x "
            f"{raw.expression.shape[1]} samples on {raw.platform}"
        )
        return raw

    def _fetch(self, accession: str) -> Any:
        """Parse the cached SOFT file or download it with GEOparse."""
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        details: Dict[str, Any] = {
            "accession": accession,
            "cache_dir": str(self.cache_dir),
        }

        cached = self.cached_path(accession)
        if cached is not None:
            logger.info(f"Using cached copy of {accession}: {cached}")
            try:
                return GEOparse.get_GEO(filepath=str(cached), silent=True)
            except Exception as e:
                raise DownloadError(
                    f"Cached file for {accession} could not be parsed: {e}",
                    details={**details, "path": str(cached)},
                ) from e

        logger.info(f"Downloading {accession} into {self.cache_dir}")
        previous_timeout = socket.getdefaulttimeout()
        socket.setdefaulttimeout(self.timeout_seconds)
        try:
            return GEOparse.get_GEO(
                geo=accession, destdir=str(self.cache_dir), silent=True
            )
        except socket.timeout as e:
            raise DownloadError(
                f"Download of {accession} timed out after {self.timeout_seconds}s",
                details={**details, "timeout_seconds": self.timeout_seconds},
            ) from e
        except Exception as e:
            raise DownloadError(
                f"Failed to download {accession}: {e}",
                details={**details, "timeout_seconds": self.timeout_seconds},
            ) from e
        finally:
            socket.setdefaulttimeout(previous_timeout)

    def _from_gse(self, accession: str, gse: Any) -> RawDataset:
        """Flatten a GEOparse GSE object."""
        platforms = sorted(gse.gpls.keys())
        if len(platforms) != 1:
            raise SchemaError(
                f"{accession} spans {len(platforms)} platforms; exactly one is supported",
                details={
                    "stage": "download",
                    "accession": accession,
                    "platforms": platforms,
                },
            )
        platform = platforms[0]

        if not gse.gsms:
            raise SchemaError(
                f"{accession} contains no samples",
                details={"stage": "download", "accession": accession},
            )

        expression = gse.pivot_samples("VALUE")
        expression.index = expression.index.astype(str)
        expression.columns = [str(c) for c in expression.columns]

        rows: List[Dict[str, Any]] = []
        for gsm_name, gsm in gse.gsms.items():
            row = {"sample_id": gsm_name}
            for field in SAMPLE_FIELDS:
                row[field] = _first_value(gsm.metadata, field)
            rows.append(row)
        samples = pd.DataFrame(rows).set_index("sample_id")

        genes = gse.gpls[platform].table.copy()

        return RawDataset(
            accession=accession,
            expression=expression,
            samples=samples,
            genes=genes,
            platform=platform,
            soft_path=self.cached_path(accession),
        )

    def _from_gds(self, accession: str, gds: Any) -> RawDataset:
        """Flatten a GEOparse GDS object, fetching its platform annotation."""
        platform = _first_value(gds.metadata, "platform")
        if not platform:
            raise SchemaError(
                f"{accession} does not declare a platform",
                details={"stage": "download", "accession": accession},
            )

        table = gds.table.copy()
        table["ID_REF"] = table["ID_REF"].astype(str)
        expression = table.set_index("ID_REF").drop(
            columns=["IDENTIFIER"], errors="ignore"
        )

        # gds.columns: one row per sample, one column per subset type
        samples = gds.columns.copy()
        samples.index = samples.index.astype(str)
        samples.index.name = "sample_id"

        gpl = self._fetch(platform)

        return RawDataset(
            accession=accession,
            expression=expression,
            samples=samples,
            genes=gpl.table.copy(),
            platform=platform,
            soft_path=self.cached_path(accession),
        )


def _first_value(metadata: Dict[str, List[str]], key: str) -> Optional[str]:
    """First entry of a GEOparse metadata field, or None when absent."""
    values = metadata.get(key) or []
    return values[0] if values else None
