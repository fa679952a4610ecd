import json
import subprocess
import sys
from pathlib import Path


def run_cli(*args: str) -> subprocess.CompletedProcess:
    return subprocess.run(
        [sys.executable, "-m", "readprep", *args],
        capture_output=True,
        text=True,
    )


def test_cli_help() -> None:
    cp = run_cli("--help")
    assert cp.returncode == 0
    assert "readprep" in cp.stdout.lower()
    for cmd in ("transform", "flagstat", "compare", "view", "make-toy-data", "quickstart"):
        assert cmd in cp.stdout


def test_quickstart_prints_recipes() -> None:
    cp = run_cli("quickstart")
    assert cp.returncode == 0
    assert "make-toy-data" in cp.stdout
    assert "readprep transform" in cp.stdout


def test_toy_data_end_to_end(tmp_path: Path) -> None:
    toy = tmp_path / "toy"
    cp = run_cli("make-toy-data", "--outdir", str(toy))
    assert cp.returncode == 0, cp.stderr
    info = json.loads(cp.stdout)
    assert Path(info["reads_bam"]).exists()

    out = tmp_path / "reads.parquet"
    qc = tmp_path / "qc"
    cp = run_cli(
        "transform",
        "--input",
        info["reads_bam"],
        "--output",
        str(out),
        "--outdir",
        str(qc),
        "--reference",
        info["ref_fa"],
        "--known-sites",
        info["known_sites_vcf"],
        "--min-observations",
        "20",
        "--threads",
        "2",
        "--partitions",
        "3",
    )
    assert cp.returncode == 0, cp.stderr
    assert cp.stdout.strip().endswith("report.html")
    assert out.exists()
    assert (qc / "summary.json").exists()
    assert (qc / "logs" / "transform.log").exists()

    cp = run_cli("view", "--input", str(out), "--count", "--filter", "duplicate_read")
    assert cp.returncode == 0, cp.stderr
    assert int(cp.stdout.strip()) >= 10

    cp = run_cli(
        "view",
        "--input",
        str(out),
        "--fields",
        "read_name,start,cigar",
        "--filter",
        'read_name == "indel_m0"',
    )
    assert cp.returncode == 0, cp.stderr
    lines = cp.stdout.strip().splitlines()
    assert lines[0] == "read_name\tstart\tcigar"
    assert lines[1].split("\t")[2] == "30M2D20M"

    cp = run_cli("view", "--input", str(out), "--fields", "read_name,mapping_quality", "--limit", "2", "--format", "json")
    assert cp.returncode == 0, cp.stderr
    rows = [json.loads(line) for line in cp.stdout.strip().splitlines()]
    assert len(rows) == 2
    assert set(rows[0]) == {"read_name", "mapping_quality"}

    cp = run_cli("flagstat", "--input", str(out), "--json")
    assert cp.returncode == 0, cp.stderr
    stats = json.loads(cp.stdout)
    assert stats["qc_passed"]["total"] == int(info["reads"])

    cp = run_cli("compare", "--a", info["reads_bam"], "--b", str(out), "--json")
    assert cp.returncode == 0, cp.stderr
    report = json.loads(cp.stdout)
    assert report["shared"] == int(info["reads"])
    assert report["differing"]["base_qualities"] > 0


def test_transform_dry_run_and_errors(tmp_path: Path) -> None:
    toy = tmp_path / "toy"
    assert run_cli("make-toy-data", "--outdir", str(toy)).returncode == 0
    bam = str(toy / "reads.bam")
    out = tmp_path / "out.parquet"

    cp = run_cli("transform", "--input", bam, "--output", str(out), "--dry-run", "--no-realign")
    assert cp.returncode == 0, cp.stderr
    assert "load -> sort -> mark_duplicates -> recalibration_table -> recalibrate -> final_sort -> store" in cp.stdout
    assert not out.exists()

    cp = run_cli("transform", "--input", bam, "--output", str(out), "--no-sort")
    assert cp.returncode == 2
    assert "ConfigurationError" in cp.stderr
    assert not out.exists()

    cp = run_cli("transform", "--input", bam, "--output", str(out), "--filter", "mapping_quality >=")
    assert cp.returncode == 2

    cp = run_cli("transform", "--input", bam, "--output", str(out), "--dry-run", "--filter", "nope == 1")
    assert cp.returncode == 2
    assert "ConfigurationError" in cp.stderr and "nope" in cp.stderr

    cp = run_cli("transform", "--input", bam, "--output", str(tmp_path / "out.txt"))
    assert cp.returncode == 2

    cp = run_cli("view", "--input", bam, "--fields", "not_a_field")
    assert cp.returncode == 2
    assert "not_a_field" in cp.stderr


def test_transform_with_json_config(tmp_path: Path) -> None:
    toy = tmp_path / "toy"
    assert run_cli("make-toy-data", "--outdir", str(toy)).returncode == 0
    cfg = tmp_path / "cfg.json"
    cfg.write_text(json.dumps({"enable_recalibration": False, "enable_realignment": False}))
    out = tmp_path / "out.bam"
    cp = run_cli("transform", "--input", str(toy / "reads.bam"), "--output", str(out), "--config", str(cfg))
    assert cp.returncode == 0, cp.stderr
    summary = json.loads((tmp_path / "summary.json").read_text())
    assert [s["name"] for s in summary["stages"]] == ["load", "sort", "mark_duplicates", "final_sort", "store"]
