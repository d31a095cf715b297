import json
import subprocess
import sys
from pathlib import Path

import pysam

from polishcons.toy_data import HAPLO_CONTIG, make_toy_data


def _run_cli(args: list[str]) -> subprocess.CompletedProcess:
    return subprocess.run(
        [sys.executable, "-m", "polishcons"] + args,
        check=False,
        capture_output=True,
        text=True,
    )


def _read_fastq(path: Path) -> dict:
    lines = path.read_text(encoding="utf-8").splitlines()
    out = {}
    for i in range(0, len(lines), 4):
        name, *comment = lines[i][1:].split(" ")
        out[name] = {"seq": lines[i + 1], "qual": lines[i + 3], "comment": comment}
    return out


def test_quickstart_output() -> None:
    cp = _run_cli(["quickstart"])
    assert cp.returncode == 0
    assert "polishcons polish" in cp.stdout
    assert "polishcons make-toy-data" in cp.stdout


def test_polish_dry_run_does_not_write_outputs(tmp_path: Path) -> None:
    toy = make_toy_data(outdir=tmp_path / "toy")
    outdir = tmp_path / "out"
    cp = _run_cli(["polish", "--bam", toy["bam"], "--ref", toy["ref_fa"], "--outdir", str(outdir), "--dry-run"])
    assert cp.returncode == 0
    assert "Dry-run" in cp.stdout
    assert not (outdir / "summary.json").exists()


def test_make_toy_data_and_polish(tmp_path: Path) -> None:
    toy_dir = tmp_path / "toy"
    cp = _run_cli(["make-toy-data", "--outdir", str(toy_dir)])
    assert cp.returncode == 0
    toy = json.loads((toy_dir / "toy_summary.json").read_text(encoding="utf-8"))

    outdir = tmp_path / "out"
    cp = _run_cli(
        [
            "polish",
            "--bam",
            str(toy_dir / "toy.bam"),
            "--ref",
            str(toy_dir / "toy_ref.fa"),
            "--outdir",
            str(outdir),
            "--no-progress",
        ]
    )
    assert cp.returncode == 0, cp.stderr
    for name in ["report.html", "summary.json", "consensus.fq", "chimeras.tsv"]:
        assert (outdir / name).exists()
    assert not (outdir / "retained.bam").exists()

    summary = json.loads((outdir / "summary.json").read_text(encoding="utf-8"))
    counts = summary["counts"]
    assert counts["reads_unmapped"] == 1
    assert counts["reads_skipped_secondary"] == 1
    assert counts["reads_skipped_duplicates"] == 1
    assert summary["mode"] == "consensus"

    records = _read_fastq(outdir / "consensus.fq")
    assert set(records) == {"haplo", "chimera"}
    con = records[HAPLO_CONTIG]
    assert len(con["seq"]) == len(con["qual"])
    assert con["comment"][0].startswith("cov=")

    with pysam.FastxFile(toy["truth_fa"]) as fh:
        truth = str(next(iter(fh)).sequence)
    assert len(con["seq"]) == len(truth)
    # the draft errors and the missing base are all corrected
    for p in toy["error_positions"]:
        q = p + 1 if p >= toy["insertion_before"] else p
        assert con["seq"][q] == truth[q]
    assert con["seq"][toy["insertion_before"]] == truth[toy["insertion_before"]]

    header = (outdir / "chimeras.tsv").read_text(encoding="utf-8").splitlines()[0]
    assert header.split("\t") == ["contig", "start0", "end0", "score", "n_columns"]


def test_haplo_mode_writes_retained_bam_and_resumes(tmp_path: Path) -> None:
    toy = make_toy_data(outdir=tmp_path / "toy")
    outdir = tmp_path / "haplo"
    args = ["polish", "--bam", toy["bam"], "--ref", toy["ref_fa"], "--outdir", str(outdir), "--no-progress"]

    cp = _run_cli(args + ["--haplo", "--write-bam", "-v"])
    assert cp.returncode == 0, cp.stderr
    assert (outdir / "logs" / "polish.log").exists()

    summary = json.loads((outdir / "summary.json").read_text(encoding="utf-8"))
    assert summary["mode"] == "haplo"
    assert "haplotype" in summary["contigs"][HAPLO_CONTIG]

    with pysam.AlignmentFile(str(outdir / "retained.bam"), "rb") as bam:
        starts = [(r.reference_id, r.reference_start) for r in bam.fetch(until_eof=True)]
    assert len(starts) == summary["retained_written"] > 0
    assert starts == sorted(starts)

    cp = _run_cli(args + ["--resume"])
    assert cp.returncode == 0
    assert cp.stdout.strip().endswith("report.html")


def test_config_file_and_invalid_values(tmp_path: Path) -> None:
    toy = make_toy_data(outdir=tmp_path / "toy")
    cfg = tmp_path / "cfg.json"
    cfg.write_text(json.dumps({"bin_size": 0}), encoding="utf-8")

    cp = _run_cli(
        ["polish", "--bam", toy["bam"], "--ref", toy["ref_fa"], "--outdir", str(tmp_path / "o"), "--config", str(cfg)]
    )
    assert cp.returncode == 2
    assert "ValueError" in cp.stderr

    cfg.write_text(json.dumps({"bin_sise": 10}), encoding="utf-8")
    cp = _run_cli(
        ["polish", "--bam", toy["bam"], "--ref", toy["ref_fa"], "--outdir", str(tmp_path / "o"), "--config", str(cfg)]
    )
    assert cp.returncode == 2
    assert "Unknown config key" in cp.stderr


def test_contig_mismatch_message(tmp_path: Path) -> None:
    toy = make_toy_data(outdir=tmp_path / "toy")
    other = tmp_path / "other.fa"
    other.write_text(">unrelated\nACGTACGTACGT\n", encoding="utf-8")

    cp = _run_cli(["polish", "--bam", toy["bam"], "--ref", str(other), "--outdir", str(tmp_path / "out")])
    assert cp.returncode != 0
    assert "Contig mismatch" in cp.stderr
