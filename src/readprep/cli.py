from __future__ import annotations

import argparse
import dataclasses
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, Optional

from . import __version__
from .cigar import cigar_to_string
from .compare import compare_reads
from .config import TransformConfig
from .context import ExecutionContext
from .covariates import parse_covariates
from .errors import ConfigurationError
from .flagstat import flagstat, format_flagstat
from .ingest import load_alignments
from .markdups import SCORING_POLICIES
from .models import RECORD_FIELDS
from .pipeline import output_kind, run_transform
from .predicates import check_fields, parse_predicate
from .store import resolve_projection
from .toy_data import make_toy_data
from .utils import ensure_outdir


def _setup_logging(verbosity: int, *, logfile: Optional[Path] = None) -> None:
    level = logging.WARNING
    if verbosity == 1:
        level = logging.INFO
    elif verbosity >= 2:
        level = logging.DEBUG

    log_fmt = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
    logging.basicConfig(level=level, format=log_fmt, stream=sys.stderr)

    if logfile is not None:
        logfile.parent.mkdir(parents=True, exist_ok=True)
        fh = logging.FileHandler(logfile)
        fh.setLevel(level)
        fh.setFormatter(logging.Formatter(log_fmt))
        logging.getLogger().addHandler(fh)


def _path_exists(p: str) -> str:
    if not Path(p).exists():
        raise argparse.ArgumentTypeError(f"Path does not exist: {p}")
    return p


def _positive_int(v: str) -> int:
    try:
        n = int(v)
    except ValueError:
        raise argparse.ArgumentTypeError(f"Expected an integer, got {v!r}")
    if n < 1:
        raise argparse.ArgumentTypeError(f"Expected a positive integer, got {n}")
    return n


def _log_path(outdir: Path, name: str) -> Path:
    return outdir / "logs" / name


def _handle_error(err: Exception, *, log_path: Optional[Path] = None) -> int:
    msg = f"{err.__class__.__name__}: {err}"
    sys.stderr.write(msg + "\n")
    if log_path is not None:
        sys.stderr.write(f"See log: {log_path}\n")
    return 2


def _add_common(sp: argparse.ArgumentParser) -> None:
    sp.add_argument("--threads", type=_positive_int, default=4, help="Partitions processed concurrently.")
    sp.add_argument(
        "--partitions",
        type=_positive_int,
        default=8,
        help="Number of partitions for loading and shuffles.",
    )
    sp.add_argument("--progress", action="store_true", help="Show progress bars over partitions.")
    sp.add_argument("--dry-run", action="store_true", help="Validate inputs and options without running.")
    sp.add_argument("-v", "--verbose", action="count", default=0, help="Increase verbosity (-v/-vv).")


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="readprep",
        description=(
            "readprep: duplicate marking, base quality recalibration, indel realignment and sorting "
            "of aligned reads, stored as Parquet with column projection and predicate pushdown."
        ),
    )
    p.add_argument("--version", action="version", version=f"readprep {__version__}")

    sub = p.add_subparsers(dest="cmd", required=True)

    # -----------------
    # quickstart
    # -----------------
    sub.add_parser(
        "quickstart",
        help="Print ready-to-run recipes for common scenarios.",
    )

    # -----------------
    # make-toy-data
    # -----------------
    t = sub.add_parser(
        "make-toy-data",
        help="Generate a tiny reference, BAM, and known-sites VCF for demos/tests.",
    )
    t.add_argument("--outdir", required=True, help="Output directory for toy data.")
    t.add_argument("--dry-run", action="store_true", help="Validate paths without writing files.")

    # -----------------
    # transform
    # -----------------
    x = sub.add_parser(
        "transform",
        help="Sort, mark duplicates, recalibrate and realign reads, then store them.",
    )
    x.add_argument("--input", required=True, type=_path_exists, help="Input BAM/SAM/CRAM or Parquet.")
    x.add_argument("--output", required=True, help="Output .parquet/.adam or .bam/.sam path.")
    x.add_argument(
        "--outdir",
        default=None,
        help="Directory for summary.json, plots, report.html and logs (default: next to --output).",
    )
    x.add_argument("--config", type=_path_exists, default=None, help="JSON file with transform options.")
    x.add_argument("--filter", default=None, help="Predicate applied at load, e.g. 'mapping_quality >= 20'.")

    # Stage switches
    x.add_argument("--no-sort", action="store_true", help="Skip both sort stages.")
    x.add_argument("--no-markdups", action="store_true", help="Skip duplicate marking.")
    x.add_argument("--no-bqsr", action="store_true", help="Skip base quality recalibration.")
    x.add_argument("--no-realign", action="store_true", help="Skip indel realignment.")

    # Duplicate marking
    x.add_argument(
        "--duplicate-policy",
        choices=sorted(SCORING_POLICIES),
        default=None,
        help="How the representative of a duplicate set is chosen.",
    )
    x.add_argument(
        "--pool-read-groups",
        action="store_true",
        help="Treat all read groups as one context in every stage.",
    )

    # Recalibration
    x.add_argument(
        "--covariates",
        default=None,
        help="Comma-separated covariates (quality_score,cycle,context).",
    )
    x.add_argument("--min-observations", type=int, default=None, help="Minimum observations per bucket.")
    x.add_argument("--known-sites", type=_path_exists, default=None, help="VCF of sites excluded from the table.")
    x.add_argument("--dump-recalibration-table", default=None, help="Write the recalibration table as TSV.")

    # Realignment
    x.add_argument("--reference", type=_path_exists, default=None, help="Reference FASTA (else MD tags are used).")
    x.add_argument("--max-target-size", type=int, default=None, help="Drop realignment targets larger than this.")
    x.add_argument("--target-merge-distance", type=int, default=None, help="Merge targets closer than this.")
    x.add_argument("--min-mismatch-reads", type=int, default=None, help="Reads needed for a mismatch target.")
    x.add_argument("--min-improvement", type=int, default=None, help="Mismatches a consensus must save.")
    _add_common(x)

    # -----------------
    # flagstat
    # -----------------
    f = sub.add_parser("flagstat", help="Print samtools-style flag statistics.")
    f.add_argument("--input", required=True, type=_path_exists, help="Input BAM/SAM/CRAM or Parquet.")
    f.add_argument("--filter", default=None, help="Predicate applied at load.")
    f.add_argument("--json", action="store_true", help="Emit JSON instead of text.")
    _add_common(f)

    # -----------------
    # compare
    # -----------------
    c = sub.add_parser("compare", help="Compare two read sets, matching reads by name and pair member.")
    c.add_argument("--a", required=True, type=_path_exists, help="First input.")
    c.add_argument("--b", required=True, type=_path_exists, help="Second input.")
    c.add_argument("--json", action="store_true", help="Emit JSON instead of text.")
    _add_common(c)

    # -----------------
    # view
    # -----------------
    w = sub.add_parser("view", help="Print records after projection and filtering.")
    w.add_argument("--input", required=True, type=_path_exists, help="Input BAM/SAM/CRAM or Parquet.")
    w.add_argument(
        "--fields",
        default=None,
        help="Comma-separated fields to load and print (default: every field).",
    )
    w.add_argument("--filter", default=None, help="Predicate, e.g. 'read_mapped and not duplicate_read'.")
    w.add_argument("--limit", type=int, default=None, help="Print at most this many records.")
    w.add_argument("--count", action="store_true", help="Only print the number of matching records.")
    w.add_argument("--format", choices=["tsv", "json"], default="tsv", help="Output format.")
    _add_common(w)

    return p


# -----------------
# Command handlers
# -----------------

def cmd_quickstart() -> int:
    lines = [
        "readprep quickstart (copy/paste):",
        "",
        "1) Try it on toy data:",
        "   readprep make-toy-data --outdir toy/",
        "   readprep transform \\",
        "     --input toy/reads.bam \\",
        "     --output toy/reads.parquet \\",
        "     --reference toy/toy_ref.fa \\",
        "     --known-sites toy/known_sites.vcf.gz \\",
        "     --outdir toy/qc/",
        "   Outputs: toy/reads.parquet, toy/qc/report.html, toy/qc/summary.json",
        "",
        "2) Duplicate marking and sort only, BAM in and out:",
        "   readprep transform --input sample.bam --output sample.md.bam --no-bqsr --no-realign",
        "",
        "3) Query the stored reads without loading every column:",
        "   readprep view --input toy/reads.parquet --fields read_name,start,cigar \\",
        "     --filter 'mapping_quality >= 30 and not duplicate_read' --limit 10",
        "   readprep flagstat --input toy/reads.parquet",
        "",
        "Tip: use --dry-run to validate inputs and options without running anything.",
    ]
    print("\n".join(lines))
    return 0


def cmd_make_toy_data(args: argparse.Namespace) -> int:
    outdir = Path(args.outdir).expanduser().resolve()
    if args.dry_run:
        print(f"Would write toy data into: {outdir}")
        return 0

    try:
        summary = make_toy_data(outdir=outdir)
    except Exception as e:
        return _handle_error(e)
    print(json.dumps(summary, indent=2))
    return 0


def _context(args: argparse.Namespace) -> ExecutionContext:
    return ExecutionContext(
        parallelism=int(args.threads),
        default_partitions=int(args.partitions),
        progress=bool(args.progress),
    )


def _transform_config(args: argparse.Namespace) -> TransformConfig:
    """JSON config (if any) first, then explicitly given CLI flags on top."""
    base = TransformConfig.from_json(args.config) if args.config else TransformConfig()
    overrides: Dict[str, Any] = {}
    if args.no_sort:
        overrides["enable_sort"] = False
    if args.no_markdups:
        overrides["enable_duplicate_marking"] = False
    if args.no_bqsr:
        overrides["enable_recalibration"] = False
    if args.no_realign:
        overrides["enable_realignment"] = False
    if args.pool_read_groups:
        overrides["pool_read_groups"] = True
    if args.covariates is not None:
        try:
            overrides["covariates"] = parse_covariates(n for n in args.covariates.split(",") if n.strip())
        except ValueError as e:
            raise ConfigurationError(str(e), option="covariates") from e

    simple = {
        "duplicate_policy": args.duplicate_policy,
        "min_observations_for_bucket": args.min_observations,
        "known_sites": args.known_sites,
        "dump_recalibration_table": args.dump_recalibration_table,
        "reference_fasta": args.reference,
        "max_target_size": args.max_target_size,
        "target_merge_distance": args.target_merge_distance,
        "min_mismatch_reads": args.min_mismatch_reads,
        "min_improvement": args.min_improvement,
    }
    overrides.update({k: v for k, v in simple.items() if v is not None})
    return dataclasses.replace(base, **overrides)


def cmd_transform(args: argparse.Namespace) -> int:
    output = Path(args.output).expanduser().resolve()
    outdir = Path(args.outdir).expanduser().resolve() if args.outdir else output.parent
    log_path = _log_path(outdir, "transform.log")
    _setup_logging(args.verbose, logfile=None if args.dry_run else log_path)

    logger = logging.getLogger("readprep")
    logger.info("readprep %s", __version__)

    try:
        config = _transform_config(args).validate()
        output_kind(output)
        predicate = parse_predicate(args.filter) if args.filter else None
        if predicate is not None:
            check_fields(predicate, frozenset(RECORD_FIELDS))
        context = _context(args)

        if args.dry_run:
            stages = ["load"]
            if config.enable_sort:
                stages.append("sort")
            if config.enable_duplicate_marking:
                stages.append("mark_duplicates")
            if config.enable_recalibration:
                stages += ["recalibration_table", "recalibrate"]
            if config.enable_realignment:
                stages.append("realign")
            if config.enable_sort:
                stages.append("final_sort")
            stages.append("store")
            print("Dry-run: inputs and options look OK.")
            print(f"Stages: {' -> '.join(stages)}")
            print("Planned outputs:")
            print(f"  reads -> {output}")
            print(f"  report.html -> {outdir / 'report.html'}")
            print(f"  summary.json -> {outdir / 'summary.json'}")
            return 0

        ensure_outdir(outdir)
        summary = run_transform(
            args.input,
            output,
            config=config,
            context=context,
            outdir=outdir,
            predicate=predicate,
        )
        logger.info("Summary: %s", json.dumps({k: summary[k] for k in ("reads_in", "reads_out")}))
        print(str(outdir / "report.html"))
        return 0
    except Exception as e:
        return _handle_error(e, log_path=None if args.dry_run else log_path)


def cmd_flagstat(args: argparse.Namespace) -> int:
    _setup_logging(args.verbose, logfile=None)
    try:
        predicate = parse_predicate(args.filter) if args.filter else None
        if args.dry_run:
            print("Dry-run: inputs and options look OK.")
            return 0
        dataset = load_alignments(args.input, context=_context(args), predicate=predicate)
        passed, failed = flagstat(dataset.reads)
        if args.json:
            print(json.dumps({"qc_passed": passed.to_dict(), "qc_failed": failed.to_dict()}, indent=2))
        else:
            print(format_flagstat(passed, failed))
        return 0
    except Exception as e:
        return _handle_error(e)


def cmd_compare(args: argparse.Namespace) -> int:
    _setup_logging(args.verbose, logfile=None)
    try:
        if args.dry_run:
            print("Dry-run: inputs and options look OK.")
            return 0
        context = _context(args)
        a = load_alignments(args.a, context=context)
        b = load_alignments(args.b, context=context)
        report = compare_reads(a.reads, b.reads)
        if args.json:
            print(json.dumps(report.to_dict(), indent=2))
        else:
            print(report.format())
        return 0
    except Exception as e:
        return _handle_error(e)


def _format_value(v: Any) -> str:
    if v is None:
        return "."
    if isinstance(v, tuple):
        if v and isinstance(v[0], tuple):
            return cigar_to_string(v)
        return ",".join(str(x) for x in v)
    return str(v)


def cmd_view(args: argparse.Namespace) -> int:
    _setup_logging(args.verbose, logfile=None)
    try:
        fields = [s.strip() for s in args.fields.split(",") if s.strip()] if args.fields else list(RECORD_FIELDS)
        resolve_projection(fields)
        predicate = parse_predicate(args.filter) if args.filter else None
        if args.dry_run:
            print("Dry-run: inputs and options look OK.")
            return 0

        dataset = load_alignments(args.input, context=_context(args), projection=fields, predicate=predicate)
        if args.count:
            print(dataset.reads.count())
            return 0
        records = dataset.reads.collect()
        if args.limit is not None:
            records = records[: args.limit]

        if args.format == "json":
            for r in records:
                print(json.dumps({name: getattr(r, name) for name in fields}))
        else:
            print("\t".join(fields))
            for r in records:
                print("\t".join(_format_value(getattr(r, name)) for name in fields))
        return 0
    except Exception as e:
        return _handle_error(e)


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.cmd == "quickstart":
        return cmd_quickstart()
    if args.cmd == "make-toy-data":
        return cmd_make_toy_data(args)
    if args.cmd == "transform":
        return cmd_transform(args)
    if args.cmd == "flagstat":
        return cmd_flagstat(args)
    if args.cmd == "compare":
        return cmd_compare(args)
    if args.cmd == "view":
        return cmd_view(args)

    parser.error(f"Unknown command: {args.cmd}")
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
