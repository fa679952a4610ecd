"""End-to-end transform: ingest, sort, mark duplicates, recalibrate, realign, sort, store.

Stage order is fixed; :class:`~readprep.config.TransformConfig` only selects
which stages run. Each stage is fully materialized before the next one starts,
and any failure inside a stage is reported as a
:class:`~readprep.errors.StageError` naming the stage and, when known, the
record. Nothing is written to the output path unless every stage succeeds.
"""

from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

import numpy as np

from . import __version__
from .bam import write_alignments
from .bqsr import apply_recalibration, build_recalibration_table
from .collection import ReadCollection
from .config import TransformConfig
from .context import ExecutionContext
from .errors import ConfigurationError, IngestionError, SchemaError, StageError, TransformError
from .flagstat import flagstat
from .ingest import PARQUET_SUFFIXES, Source, load_alignments
from .markdups import mark_duplicates
from .models import AlignmentRecord
from .plotting import plot_quality_hist, plot_recalibration_curve, plot_stage_counts
from .predicates import Predicate, check_fields
from .realign import find_targets, realign_indels
from .reference import ReferenceGenome, load_known_sites
from .report import render_report
from .schema import FIELD_NAMES
from .sorting import sort_reads
from .store import save_reads
from .utils import ensure_outdir, file_suffix, write_json

logger = logging.getLogger(__name__)

BAM_OUTPUT_SUFFIXES = {".bam", ".sam"}

MAX_QUALITY = 93


def _record_label(item: Any) -> Optional[str]:
    if item is None:
        return None
    if isinstance(item, AlignmentRecord):
        return item.record_id
    if isinstance(item, tuple) and item:
        head = item[0]
        if isinstance(head, AlignmentRecord):
            return head.record_id
        return repr(head)[:200]
    return repr(item)[:200]


class StageRunner:
    """Times stages, records their results, and attributes failures to a stage."""

    def __init__(self) -> None:
        self.stages: List[Dict[str, Any]] = []

    @contextmanager
    def stage(self, name: str) -> Iterator[Dict[str, Any]]:
        info: Dict[str, Any] = {"name": name, "reads": 0, "details": {}}
        t0 = time.time()
        logger.info("Stage %s: started", name)
        try:
            yield info
        except (StageError, IngestionError, SchemaError):
            raise
        except TransformError as e:
            raise StageError(str(e), stage=name, record=_record_label(e.item)) from e
        except Exception as e:
            raise StageError(f"{e.__class__.__name__}: {e}", stage=name) from e
        info["runtime_seconds"] = float(time.time() - t0)
        self.stages.append(info)
        logger.info(
            "Stage %s: finished with %d reads in %.2fs", name, info["reads"], info["runtime_seconds"]
        )


def quality_histogram(reads: ReadCollection[AlignmentRecord]) -> List[int]:
    """Base count per quality value (index = phred score)."""

    def hist(part: List[AlignmentRecord]) -> List[np.ndarray]:
        h = np.zeros(MAX_QUALITY + 1, dtype=np.int64)
        for r in part:
            if r.quality_scores:
                q = np.minimum(np.asarray(r.quality_scores, dtype=np.int64), MAX_QUALITY)
                h += np.bincount(q, minlength=MAX_QUALITY + 1)
        return [h]

    total = reads.map_partitions(hist).reduce(np.add, np.zeros(MAX_QUALITY + 1, dtype=np.int64))
    counts = [int(x) for x in total]
    while counts and counts[-1] == 0:
        counts.pop()
    return counts


def output_kind(output: str | Path) -> str:
    suffix = file_suffix(output)
    if suffix in PARQUET_SUFFIXES:
        return "parquet"
    if suffix in BAM_OUTPUT_SUFFIXES:
        return "alignments"
    raise ConfigurationError(
        f"Unsupported output format for {output} (expected .parquet/.adam/.bam/.sam)", option="output"
    )


def run_transform(
    source: Source,
    output: str | Path,
    *,
    config: TransformConfig,
    context: ExecutionContext,
    outdir: Optional[str | Path] = None,
    predicate: Optional[Predicate] = None,
) -> Dict[str, Any]:
    """Run the enabled stages over ``source`` and store the result at ``output``.

    Parameters
    ----------
    source:
        Records or a path accepted by :func:`~readprep.ingest.load_alignments`.
    output:
        ``.parquet``/``.adam`` (columnar store) or ``.bam``/``.sam``.
    outdir:
        If given, ``summary.json``, plots and ``report.html`` are written here.
    predicate:
        Optional filter applied at load time (pushed down for Parquet inputs).

    Raises
    ------
    ConfigurationError
        Before anything runs, for invalid options, output format or filter fields.
    IngestionError, SchemaError
        Unreadable input.
    StageError
        A stage failed; the output path is left untouched.
    """
    config.validate()
    if predicate is not None:
        check_fields(predicate, FIELD_NAMES)
    kind = output_kind(output)
    n = config.num_partitions or context.default_partitions
    t_start = time.time()

    reference = ReferenceGenome.from_fasta(config.reference_fasta) if config.reference_fasta else None
    known_sites = load_known_sites(config.known_sites) if config.known_sites else frozenset()

    dataset = load_alignments(source, context=context, predicate=predicate, num_partitions=config.num_partitions)
    references = dataset.references or (reference.references if reference is not None else ())
    read_groups = dataset.read_groups

    runner = StageRunner()
    summary: Dict[str, Any] = {}

    with runner.stage("load") as st:
        reads = dataset.reads.cache()
        st["reads"] = reads.count()
        quality_before = quality_histogram(reads)
    summary["reads_in"] = runner.stages[-1]["reads"]

    if not read_groups and reads.filter(lambda r: r.read_group_id is not None).count() == 0:
        logger.warning("No read groups found; all reads share one calibration and realignment context")
    if reference is None and (config.enable_recalibration or config.enable_realignment):
        with_md = reads.filter(lambda r: r.read_mapped and r.mismatching_positions is not None).count()
        if with_md == 0:
            logger.warning("No MD tags and no reference FASTA; mismatches cannot be observed")

    if config.enable_sort:
        with runner.stage("sort") as st:
            reads = sort_reads(reads, references, num_partitions=n).cache()
            st["reads"] = reads.count()

    if config.enable_duplicate_marking:
        with runner.stage("mark_duplicates") as st:
            reads = mark_duplicates(
                reads,
                policy=config.duplicate_policy,
                pool_read_groups=config.pool_read_groups,
                num_partitions=n,
            ).cache()
            st["reads"] = reads.count()
            st["details"]["duplicates"] = reads.filter(lambda r: r.duplicate_read).count()

    table = None
    if config.enable_recalibration:
        with runner.stage("recalibration_table") as st:
            table = build_recalibration_table(
                reads,
                covariates=config.covariates,
                min_observations=config.min_observations_for_bucket,
                pool_read_groups=config.pool_read_groups,
                reference=reference,
                known_sites=known_sites,
                num_partitions=n,
            )
            st["reads"] = reads.count()
            st["details"].update(
                buckets=len(table),
                observations=table.total_observations,
                mismatches=table.total_mismatches,
            )
            if config.dump_recalibration_table:
                table.write_tsv(config.dump_recalibration_table)
        with runner.stage("recalibrate") as st:
            reads = apply_recalibration(reads, table).cache()
            st["reads"] = reads.count()

    if config.enable_realignment:
        with runner.stage("realign") as st:
            targets = find_targets(
                reads,
                reference=reference,
                min_mismatch_reads=config.min_mismatch_reads,
                merge_distance=config.target_merge_distance,
                max_target_size=config.max_target_size,
                num_partitions=n,
            )
            reads = realign_indels(
                reads,
                targets=targets,
                reference=reference,
                min_improvement=config.min_improvement,
                pool_read_groups=config.pool_read_groups,
                num_partitions=n,
            ).cache()
            st["reads"] = reads.count()
            st["details"]["targets"] = len(targets)

    if config.enable_sort:
        with runner.stage("final_sort") as st:
            reads = sort_reads(reads, references, num_partitions=n).cache()
            st["reads"] = reads.count()

    with runner.stage("store") as st:
        if kind == "parquet":
            stored = save_reads(reads, output, references=references, read_groups=read_groups)
            st["reads"] = stored["reads"]
            st["details"]["row_groups"] = stored["row_groups"]
        else:
            st["reads"] = write_alignments(
                reads.collect(),
                output,
                references=references,
                read_groups=read_groups,
                sort_order="coordinate" if config.enable_sort else "unsorted",
            )

    passed, _failed = flagstat(reads)
    summary.update(
        {
            "input": str(source) if isinstance(source, (str, Path)) else "<records>",
            "output": str(output),
            "version": __version__,
            "config": config.to_dict(),
            "context": {"parallelism": context.parallelism, "partitions": n},
            "stages": runner.stages,
            "reads_out": runner.stages[-1]["reads"],
            "flagstat": passed.to_dict(),
            "quality_hist": {"before": quality_before, "after": quality_histogram(reads)},
            "runtime_seconds": float(time.time() - t_start),
        }
    )
    if table is not None:
        summary["recalibration_curve"] = table.quality_curve()

    if outdir is not None:
        write_outputs(summary, outdir)

    logger.info("Transform finished: %d reads written to %s", summary["reads_out"], output)
    return summary


def write_outputs(summary: Dict[str, Any], outdir: str | Path) -> Path:
    """Write summary.json, plots and report.html; returns the report path."""
    out = ensure_outdir(outdir)
    write_json(out / "summary.json", summary)

    plots_dir = out / "plots"
    plots_dir.mkdir(parents=True, exist_ok=True)
    stage_png = plots_dir / "stage_counts.png"
    quality_png = plots_dir / "quality_hist.png"
    plot_stage_counts(stage_counts={s["name"]: s["reads"] for s in summary["stages"]}, out_png=stage_png)
    plot_quality_hist(
        before=summary["quality_hist"]["before"],
        after=summary["quality_hist"]["after"],
        out_png=quality_png,
    )
    plots = {
        "stage_counts": str(Path("plots") / stage_png.name),
        "quality_hist": str(Path("plots") / quality_png.name),
    }
    if summary.get("recalibration_curve"):
        curve_png = plots_dir / "recalibration_curve.png"
        plot_recalibration_curve(curve=summary["recalibration_curve"], out_png=curve_png)
        plots["recalibration_curve"] = str(Path("plots") / curve_png.name)

    return render_report(outdir=out, version=__version__, summary=summary, plots=plots)
