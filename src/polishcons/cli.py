from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, Optional

import pysam

from . import __version__
from .bamio import load_references
from .config import ConsensusConfig, load_config
from .pipeline import polish_bam
from .plotting import plot_chimera_scores, plot_coverage_profile, plot_read_counts
from .report import render_report
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


def _log_path(outdir: Path, name: str) -> Path:
    return outdir / "logs" / name


def _handle_error(err: Exception, *, log_path: Optional[Path] = None) -> int:
    sys.stderr.write(f"{err.__class__.__name__}: {err}\n")
    if log_path is not None:
        sys.stderr.write(f"See log: {log_path}\n")
    return 2


def _bam_contigs(bam_path: str) -> list[str]:
    with pysam.AlignmentFile(bam_path, "rb") as bam:
        return list(bam.header.references)


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="polishcons",
        description=(
            "polishcons: consensus polishing of draft sequences from BAM alignments, "
            "with minority haplotype separation and chimera detection."
        ),
    )
    p.add_argument("--version", action="version", version=f"polishcons {__version__}")

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
        help="Generate a tiny draft reference and BAM for demos/tests.",
    )
    t.add_argument("--outdir", required=True, help="Output directory for toy data.")
    t.add_argument("--seed", type=int, default=7, help="Random seed.")
    t.add_argument("--dry-run", action="store_true", help="Validate paths without writing files.")

    # -----------------
    # polish
    # -----------------
    a = sub.add_parser(
        "polish",
        help="Call a consensus for every reference contig from the alignments in a BAM.",
    )
    a.add_argument("--bam", required=True, type=_path_exists, help="Input BAM (reads aligned to --ref).")
    a.add_argument("--ref", required=True, type=_path_exists, help="Draft reference FASTA or FASTQ.")
    a.add_argument("--outdir", required=True, help="Output directory.")
    a.add_argument("--config", type=_path_exists, default=None, help="JSON file with configuration values.")

    a.add_argument(
        "--haplo",
        action="store_true",
        help="Separate a minority haplotype and call the reference-supporting consensus.",
    )
    a.add_argument("--no-chimeras", action="store_true", help="Skip chimera detection.")
    a.add_argument("--write-bam", action="store_true", help="Write retained alignments to retained.bam.")

    # Retention
    a.add_argument("--bin-size", type=int, default=None, help="Bin width in bases (default 20).")
    a.add_argument("--max-coverage", type=int, default=None, help="Retained coverage per bin (default 50).")
    a.add_argument("--invert-scores", action="store_const", const=True, default=None, help="Lower AS is better.")
    a.add_argument("--min-score", type=float, default=None, help="Drop alignments with score below this.")
    a.add_argument("--min-nscore", type=float, default=None, help="Drop alignments with score/length below this.")
    a.add_argument(
        "--min-ncscore",
        type=float,
        default=None,
        help="Drop alignments with length corrected normalized score below this.",
    )
    a.add_argument(
        "--rep-coverage",
        type=int,
        default=None,
        help="Drop alignments inside windows with coverage >= this (0 = off).",
    )

    # Decoding
    a.add_argument(
        "--no-trim",
        dest="trim",
        action="store_const",
        const=False,
        default=None,
        help="Do not trim indels near alignment ends.",
    )
    a.add_argument("--indel-taboo", type=float, default=None, help="Trim fraction at each end (default 0.1).")
    a.add_argument("--indel-taboo-length", type=int, default=None, help="Fixed trim length (overrides fraction).")
    a.add_argument(
        "--qual-weighted",
        action="store_const",
        const=True,
        default=None,
        help="Weight observations by base quality.",
    )
    a.add_argument(
        "--use-ref-qual",
        action="store_const",
        const=True,
        default=None,
        help="Seed columns from reference qualities (FASTQ reference).",
    )

    # Calling
    a.add_argument("--max-ins-length", type=int, default=None, help="Longest insertion allowed to win (0 = off).")
    a.add_argument("--phred-offset", type=int, default=None, help="Phred ASCII offset for outputs (default 33).")
    a.add_argument("--variant-min-freq", type=float, default=None, help="Variant frequency cut-off (default 4).")
    a.add_argument("--haplo-min-freq", type=float, default=None, help="Final haplotype call frequency cut-off.")
    a.add_argument("--haplo-min-prob", type=float, default=None, help="Final haplotype call probability cut-off.")
    a.add_argument(
        "--haplo-ref-preference",
        choices=["tie", "candidate"],
        default=None,
        help="How the reference allele is preferred in the haplotype consensus.",
    )

    # Read filters
    a.add_argument("--keep-duplicates", action="store_true", help="Do not skip duplicate reads.")
    a.add_argument("--include-secondary", action="store_true", help="Include secondary alignments.")
    a.add_argument(
        "--include-supplementary", action="store_true", help="Include supplementary alignments."
    )

    a.add_argument("--no-progress", action="store_true", help="Disable the progress bar.")
    a.add_argument("--dry-run", action="store_true", help="Validate inputs and print planned outputs.")
    a.add_argument("--resume", action="store_true", help="Skip if outputs already exist.")
    a.add_argument("-v", "--verbose", action="count", default=0, help="Increase verbosity (-v/-vv).")

    return p


_CONFIG_FLAGS = (
    "bin_size",
    "max_coverage",
    "invert_scores",
    "min_score",
    "min_nscore",
    "min_ncscore",
    "rep_coverage",
    "trim",
    "indel_taboo",
    "indel_taboo_length",
    "qual_weighted",
    "use_ref_qual",
    "max_ins_length",
    "phred_offset",
    "variant_min_freq",
    "haplo_min_freq",
    "haplo_min_prob",
    "haplo_ref_preference",
)


def config_from_args(args: argparse.Namespace) -> ConsensusConfig:
    overrides: Dict[str, Any] = {name: getattr(args, name) for name in _CONFIG_FLAGS}
    return load_config(args.config, **overrides)


# -----------------
# Command handlers
# -----------------


def cmd_quickstart() -> int:
    lines = [
        "polishcons quickstart (copy/paste):",
        "",
        "1) Polish a draft with reads aligned to it:",
        "   polishcons polish \\",
        "     --bam reads_vs_draft.bam \\",
        "     --ref draft.fa \\",
        "     --outdir results/",
        "   Outputs: results/consensus.fq, results/chimeras.tsv, results/report.html, results/summary.json",
        "",
        "2) Separate a minority haplotype (e.g. allelic reads) and keep retained alignments:",
        "   polishcons polish \\",
        "     --bam reads_vs_draft.bam \\",
        "     --ref draft.fa \\",
        "     --outdir haplo/ \\",
        "     --haplo --write-bam",
        "   Outputs: haplo/consensus.fq and haplo/retained.bam",
        "",
        "3) Try it on synthetic data:",
        "   polishcons make-toy-data --outdir toy/",
        "   polishcons polish --bam toy/toy.bam --ref toy/toy_ref.fa --outdir toy_out/",
        "",
        "Tip: use --dry-run to validate inputs, and --config settings.json to keep tunables in a file.",
    ]
    print("\n".join(lines))
    return 0


def cmd_make_toy_data(args: argparse.Namespace) -> int:
    outdir = Path(args.outdir).expanduser().resolve()
    if args.dry_run:
        print(f"Would write toy data into: {outdir}")
        return 0

    summary = make_toy_data(outdir=outdir, seed=int(args.seed))
    print(json.dumps(summary, indent=2))
    return 0


def _write_plots(outdir: Path, run: Dict[str, Any]) -> Dict[str, Any]:
    plots_dir = outdir / "plots"
    plots_dir.mkdir(parents=True, exist_ok=True)

    read_counts_png = plots_dir / "read_counts.png"
    plot_read_counts(counts=run["counts"], out_png=read_counts_png)
    plots: Dict[str, Any] = {"read_counts": str(Path("plots") / read_counts_png.name), "coverage": {}}

    bin_size = int(run["config"]["bin_size"])
    scores = []
    for name, info in run["contigs"].items():
        safe = "".join(ch if ch.isalnum() or ch in "-_." else "_" for ch in name)
        png = plots_dir / f"coverage_{safe}.png"
        plot_coverage_profile(
            profile=info["coverage_profile"],
            bin_size=bin_size,
            chimeras=info["chimera_regions"],
            out_png=png,
            title=f"Coverage: {name}",
        )
        plots["coverage"][name] = str(Path("plots") / png.name)
        scores.extend(r["score"] for r in info["chimera_regions"])

    if scores:
        chimera_png = plots_dir / "chimera_scores.png"
        plot_chimera_scores(scores=scores, out_png=chimera_png)
        plots["chimera_scores"] = str(Path("plots") / chimera_png.name)

    return plots


def cmd_polish(args: argparse.Namespace) -> int:
    outdir = Path(args.outdir).expanduser().resolve()
    log_path = _log_path(outdir, "polish.log")
    _setup_logging(args.verbose, logfile=None if args.dry_run else log_path)

    logger = logging.getLogger("polishcons")
    logger.info("polishcons %s", __version__)

    try:
        config = config_from_args(args)

        bam_contigs = _bam_contigs(args.bam)
        refs = load_references(args.ref)
        overlap = [c for c in bam_contigs if c in refs]
        if not overlap:
            raise ValueError(
                "Contig mismatch between BAM and reference: no BAM contig is present in "
                f"{args.ref}. Align the reads against the same draft you polish."
            )

        if args.dry_run:
            print("Dry-run: inputs look OK.")
            print(f"Contigs to polish: {len(overlap)} of {len(bam_contigs)} in BAM")
            print(f"Mode: {'haplo' if args.haplo else 'consensus'}")
            print("Planned outputs:")
            print(f"  consensus.fq -> {outdir / 'consensus.fq'}")
            print(f"  chimeras.tsv -> {outdir / 'chimeras.tsv'}")
            if args.write_bam:
                print(f"  retained.bam -> {outdir / 'retained.bam'}")
            print(f"  report.html -> {outdir / 'report.html'}")
            print(f"  summary.json -> {outdir / 'summary.json'}")
            return 0

        outdir = ensure_outdir(outdir)

        if args.resume and (outdir / "summary.json").exists():
            logger.info("Resume enabled: summary.json already exists in %s", outdir)
            print(str(outdir / "report.html"))
            return 0

        run = polish_bam(
            bam_path=args.bam,
            ref_path=args.ref,
            outdir=outdir,
            config=config,
            haplo=bool(args.haplo),
            chimeras=not bool(args.no_chimeras),
            write_bam=bool(args.write_bam),
            skip_duplicates=not bool(args.keep_duplicates),
            include_secondary=bool(args.include_secondary),
            include_supplementary=bool(args.include_supplementary),
            progress=not bool(args.no_progress),
        )

        plots = _write_plots(outdir, run)
        report_path = render_report(outdir=outdir, version=__version__, run=run, plots=plots)

        logger.info("Report written: %s", report_path)
        print(str(report_path))
        return 0
    except Exception as e:
        return _handle_error(e, log_path=log_path)


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.cmd == "quickstart":
        return cmd_quickstart()
    if args.cmd == "make-toy-data":
        return cmd_make_toy_data(args)
    if args.cmd == "polish":
        return cmd_polish(args)

    parser.error(f"Unknown command: {args.cmd}")
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
