from __future__ import annotations

import logging
import time
from dataclasses import asdict
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

import numpy as np
import pysam
from tqdm import tqdm

from .bamio import (
    load_references,
    record_from_segment,
    write_chimeras_tsv,
    write_consensus_fastq,
    write_retained_bam,
)
from .config import ConsensusConfig
from .context import ReferenceContext
from .models import AdmitOutcome, ChimeraRegion, ConsensusResult
from .utils import ensure_outdir, freqs_to_phreds, write_json

logger = logging.getLogger(__name__)


def coverage_profile(coverages: List[float], bin_size: int) -> List[float]:
    """Mean column coverage per ``bin_size`` window (keeps summary.json small)."""
    if not coverages:
        return []
    x = np.asarray(coverages, dtype=float)
    n_bins = -(-len(x) // bin_size)
    padded = np.full(n_bins * bin_size, np.nan)
    padded[: len(x)] = x
    return [round(float(v), 3) for v in np.nanmean(padded.reshape(n_bins, bin_size), axis=1)]


def load_contexts(
    bam: pysam.AlignmentFile,
    contexts: Dict[str, ReferenceContext],
    *,
    skip_duplicates: bool = True,
    include_secondary: bool = False,
    include_supplementary: bool = False,
    progress: bool = True,
) -> Dict[str, int]:
    """Stream ``bam`` into the per-contig contexts and return read counts."""
    counts = {
        "reads_total": 0,
        "reads_unmapped": 0,
        "reads_skipped_secondary": 0,
        "reads_skipped_supplementary": 0,
        "reads_skipped_duplicates": 0,
        "reads_no_reference": 0,
        "reads_admitted": 0,
        "reads_rejected": 0,
        "reads_unscored": 0,
    }

    it: Iterable[pysam.AlignedSegment] = bam.fetch(until_eof=True)
    if progress:
        it = tqdm(it, unit="read", desc="Loading alignments")

    for read in it:
        counts["reads_total"] += 1

        if read.is_unmapped:
            counts["reads_unmapped"] += 1
            continue
        if read.is_secondary and not include_secondary:
            counts["reads_skipped_secondary"] += 1
            continue
        if read.is_supplementary and not include_supplementary:
            counts["reads_skipped_supplementary"] += 1
            continue
        if skip_duplicates and read.is_duplicate:
            counts["reads_skipped_duplicates"] += 1
            continue

        ctx = contexts.get(read.reference_name)
        if ctx is None:
            counts["reads_no_reference"] += 1
            continue

        outcome = ctx.admit(record_from_segment(read))
        if outcome is AdmitOutcome.ADMITTED:
            counts["reads_admitted"] += 1
        elif outcome is AdmitOutcome.REJECTED:
            counts["reads_rejected"] += 1
        else:
            counts["reads_unscored"] += 1

    return counts


def polish_context(
    ctx: ReferenceContext,
    *,
    haplo: bool = False,
    chimeras: bool = True,
) -> Tuple[ConsensusResult, List[ChimeraRegion], Dict[str, object]]:
    """Filter, optionally detect chimeras, and call the consensus of one context."""
    filtered = {
        "score": ctx.filter_by_score(),
        "nscore": ctx.filter_by_nscore(),
        "ncscore": ctx.filter_by_ncscore(),
        "repeats": ctx.filter_rep_regions(),
    }

    regions = ctx.chimeras() if chimeras else []

    info: Dict[str, object] = {"filtered": filtered}
    if haplo:
        sep = ctx.haplo_consensus()
        result = sep.consensus
        info["haplotype"] = {
            "penalty": asdict(sep.penalty),
            "coverage": asdict(sep.coverage),
            "evicted": sep.evicted,
        }
    else:
        result = ctx.consensus()

    assert ctx.matrix is not None
    phreds = freqs_to_phreds(result.freqs)
    info.update(
        {
            "length": ctx.length,
            "retained": len(ctx.store),
            "consensus_length": len(result),
            "consensus_cigar": result.cigar,
            "mean_confidence": float(np.mean(phreds)) if phreds else 0.0,
            "uncovered_columns": sum(1 for c in ctx.matrix.coverages() if c <= 0),
            "chimeras": len(regions),
            "chimera_regions": [
                {"start0": r.start0, "end0": r.end0, "score": round(r.score, 4)} for r in regions
            ],
            "store_stats": asdict(ctx.store.stats),
            "matrix_stats": asdict(ctx.matrix.stats),
            "coverage_profile": coverage_profile(ctx.matrix.coverages(), ctx.config.bin_size),
        }
    )
    return result, regions, info


def polish_bam(
    *,
    bam_path: str,
    ref_path: str,
    outdir: str | Path,
    config: Optional[ConsensusConfig] = None,
    haplo: bool = False,
    chimeras: bool = True,
    write_bam: bool = False,
    skip_duplicates: bool = True,
    include_secondary: bool = False,
    include_supplementary: bool = False,
    progress: bool = True,
) -> Dict[str, object]:
    """Main workhorse: load alignments per contig, polish, write outputs, return summary dict."""
    t0 = time.time()
    outdir_path = ensure_outdir(outdir)
    config = config or ConsensusConfig()

    refs = load_references(ref_path)
    if not refs:
        raise ValueError(f"No sequences found in reference file: {ref_path}")

    with pysam.AlignmentFile(bam_path, "rb") as bam:
        header = bam.header.to_dict()
        bam_contigs = list(bam.header.references)
        overlap = [c for c in bam_contigs if c in refs]
        if not overlap:
            raise ValueError(
                "Contig mismatch between BAM and reference: none of the BAM contigs "
                f"({', '.join(bam_contigs[:5])}) are present in {ref_path}"
            )
        for name in overlap:
            if bam.get_reference_length(name) != len(refs[name]):
                logger.warning(
                    "%s: BAM header length %d differs from reference length %d",
                    name,
                    bam.get_reference_length(name),
                    len(refs[name]),
                )

        contexts = {name: ReferenceContext.from_reference(refs[name], config) for name in overlap}
        counts = load_contexts(
            bam,
            contexts,
            skip_duplicates=skip_duplicates,
            include_secondary=include_secondary,
            include_supplementary=include_supplementary,
            progress=progress,
        )

    consensus_fq = outdir_path / "consensus.fq"
    chimeras_tsv = outdir_path / "chimeras.tsv"
    retained_bam = outdir_path / "retained.bam" if write_bam else None

    per_contig: Dict[str, Dict[str, object]] = {}
    chimera_rows: List[Tuple[str, ChimeraRegion]] = []
    skipped_empty: List[str] = []

    with open(consensus_fq, "wt", encoding="utf-8") as fq:
        for name, ctx in contexts.items():
            if not len(ctx.store):
                skipped_empty.append(name)
                logger.info("%s: no retained alignments; skipped", name)
                continue
            result, regions, info = polish_context(ctx, haplo=haplo, chimeras=chimeras)
            write_consensus_fastq(fq, result, phred_offset=config.phred_offset)
            chimera_rows.extend((name, r) for r in regions)
            per_contig[name] = info
            logger.info(
                "%s: consensus %d bp from %d alignments, %d chimera candidate(s)",
                name,
                len(result),
                len(ctx.store),
                len(regions),
            )

    with open(chimeras_tsv, "wt", encoding="utf-8") as fh:
        n_chimeras = write_chimeras_tsv(fh, chimera_rows)

    n_written = 0
    if retained_bam is not None:
        n_written = write_retained_bam(
            retained_bam,
            header,
            {name: ctx.alignments(sorted_by_pos=True) for name, ctx in contexts.items()},
        )

    dt = time.time() - t0

    summary = {
        "bam_path": bam_path,
        "ref_path": ref_path,
        "mode": "haplo" if haplo else "consensus",
        "chimera_detection": bool(chimeras),
        "skip_duplicates": bool(skip_duplicates),
        "include_secondary": bool(include_secondary),
        "include_supplementary": bool(include_supplementary),
        "config": config.to_dict(),
        "counts": counts,
        "contigs": per_contig,
        "contigs_without_alignments": skipped_empty,
        "chimeras_total": n_chimeras,
        "consensus_fq": str(consensus_fq),
        "chimeras_tsv": str(chimeras_tsv),
        "retained_bam": str(retained_bam) if retained_bam is not None else None,
        "retained_written": n_written,
        "runtime_seconds": float(dt),
    }

    write_json(outdir_path / "summary.json", summary)
    return summary
