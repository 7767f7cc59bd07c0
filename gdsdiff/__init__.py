"""
gdsdiff - two-group differential expression for public GEO expression datasets.

Downloads a GEO series or curated dataset, aligns the expression matrix with
its sample and probe annotation, filters weakly expressed probes, fits
weighted linear models with empirical Bayes moderation and reports the
resulting ranked gene table.
"""

from gdsdiff.version import __version__

__all__ = ["__version__"]
