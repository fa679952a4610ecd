"""readprep: pre-processing of aligned sequencing reads into analysis-ready form.

Duplicate marking, base quality score recalibration, indel realignment and
sorting over a partitioned, lazily evaluated read collection, persisted to
Parquet with column projection and predicate pushdown.

Most users should use the CLI:

    readprep transform --input sample.bam --output sample.parquet --outdir qc/

"""

from __future__ import annotations

__all__ = ["__version__"]

__version__ = "0.3.0"
