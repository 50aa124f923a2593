"""
dereport: differential expression and pathway enrichment report for bulk RNA-seq.

Quantification files are summarized to genes, each cell line is tested
treated vs control independently, results are annotated and tested for
GO Biological Process enrichment, and everything is written to one HTML report.
"""

from dereport.version import __version__

__all__ = ["__version__"]
