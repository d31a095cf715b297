from __future__ import annotations

import random
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

import pysam

from .utils import ensure_outdir, write_json

HAPLO_CONTIG = "haplo"
CHIMERA_CONTIG = "chimera"

READ_LENGTH = 120


def _write_fasta(path: Path, records: Sequence[Tuple[str, str]]) -> None:
    lines: List[str] = []
    for name, seq in records:
        lines.append(f">{name}")
        for i in range(0, len(seq), 60):
            lines.append(seq[i : i + 60])
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")


def _random_seq(rng: random.Random, n: int) -> str:
    return "".join(rng.choice("ACGT") for _ in range(n))


def _mutate_base(base: str) -> str:
    for alt in ["A", "C", "G", "T"]:
        if alt != base:
            return alt
    return "A"


def _make_read(
    name: str,
    tid: int,
    start0: int,
    seq: str,
    cigar: List[Tuple[int, int]],
    score: int,
    *,
    flag: int = 0,
    rng: Optional[random.Random] = None,
) -> pysam.AlignedSegment:
    a = pysam.AlignedSegment()
    a.query_name = name
    a.query_sequence = seq
    a.flag = flag
    a.reference_id = tid
    a.reference_start = start0
    a.mapping_quality = 60
    a.cigartuples = cigar
    quals = "".join("5" if rng is not None and rng.random() < 0.05 else "I" for _ in seq)
    a.query_qualities = pysam.qualitystring_to_array(quals)
    a.set_tag("AS", score, value_type="i")
    return a


def _aligned_read(
    draft: str,
    haplotype: List[str],
    start0: int,
    span: int,
    ins_at: int,
    ins_base: str,
) -> Tuple[str, List[Tuple[int, int]], int]:
    """Lay a haplotype read over ``draft[start0:start0+span]``.

    ``haplotype`` holds one base per draft column; the haplotype carries an
    extra base before draft column ``ins_at``. Score is 2/match, -4/mismatch,
    -6/inserted base.
    """
    bases = haplotype[start0 : start0 + span]
    mism = sum(1 for i, b in enumerate(bases) if b != draft[start0 + i])
    score = 2 * (len(bases) - mism) - 4 * mism
    if start0 < ins_at < start0 + len(bases):
        k = ins_at - start0
        seq = "".join(bases[:k]) + ins_base + "".join(bases[k:])
        return seq, [(0, k), (1, 1), (0, len(bases) - k)], score - 6
    return "".join(bases), [(0, len(bases))], score


def make_toy_data(*, outdir: str | Path, seed: int = 7) -> Dict[str, object]:
    """Create a small draft reference and BAM suitable for quick demos/tests.

    Two contigs:

    - ``haplo``: draft with substitution errors and one missing base; 70% of
      reads come from the corrected majority sequence, 30% from a minority
      haplotype carrying extra SNPs.
    - ``chimera``: left and right halves come from unrelated sequences and no
      read starts close to the join, leaving a coverage dip.

    The outputs include:
    - toy_ref.fa (+ .fai)
    - toy.bam (+ .bai)
    - toy_truth.fa (majority sequence of ``haplo``)

    Returns
    -------
    dict
        Paths to the generated files and the planted positions.
    """
    outdir_p = ensure_outdir(outdir)
    rng = random.Random(seed)

    # haplo contig
    draft_len = 800
    draft = _random_seq(rng, draft_len)
    error_positions = [150, 333, 612]
    ins_at, ins_base = 400, "G"
    snp_positions = [90, 210, 470, 555, 700]

    major = list(draft)
    for p in error_positions:
        major[p] = _mutate_base(draft[p])
    minor = list(major)
    for p in snp_positions:
        minor[p] = _mutate_base(major[p])
    truth = "".join(major[:ins_at]) + ins_base + "".join(major[ins_at:])

    # chimera contig
    chim_len, join = 600, 300
    left_src = _random_seq(rng, chim_len)
    right_src = _random_seq(rng, chim_len)
    chimera_ref = left_src[:join] + right_src[join:]

    ref_fa = outdir_p / "toy_ref.fa"
    _write_fasta(ref_fa, [(HAPLO_CONTIG, draft), (CHIMERA_CONTIG, chimera_ref)])
    pysam.faidx(str(ref_fa))

    truth_fa = outdir_p / "toy_truth.fa"
    _write_fasta(truth_fa, [(HAPLO_CONTIG, truth)])

    reads: List[pysam.AlignedSegment] = []

    n_minor = 0
    for i, start0 in enumerate(range(0, draft_len - READ_LENGTH + 1, 4)):
        from_minor = rng.random() < 0.3
        n_minor += from_minor
        hap = minor if from_minor else major
        seq, cigar, score = _aligned_read(draft, hap, start0, READ_LENGTH, ins_at, ins_base)
        reads.append(_make_read(f"h{i}", 0, start0, seq, cigar, score, rng=rng))

    def _plain(src: str, start0: int, name: str) -> pysam.AlignedSegment:
        seq = src[start0 : start0 + READ_LENGTH]
        mism = sum(1 for j, b in enumerate(seq) if b != chimera_ref[start0 + j])
        score = 2 * (len(seq) - mism) - 4 * mism
        return _make_read(name, 1, start0, seq, [(0, len(seq))], score, rng=rng)

    for i, start0 in enumerate(range(0, join, 3)):
        reads.append(_plain(left_src, start0, f"cl{i}"))
    for i, start0 in enumerate(range(join + 20, chim_len - READ_LENGTH + 1, 2)):
        reads.append(_plain(right_src, start0, f"cr{i}"))

    # reads the loader must skip
    first = reads[0]
    reads.append(
        _make_read("secondary", 0, first.reference_start, first.query_sequence, first.cigartuples, 0, flag=256)
    )
    reads.append(
        _make_read("duplicate", 0, first.reference_start, first.query_sequence, first.cigartuples, 0, flag=1024)
    )

    reads.sort(key=lambda r: (r.reference_id, r.reference_start))

    unmapped = pysam.AlignedSegment()
    unmapped.query_name = "unmapped"
    unmapped.query_sequence = draft[:50]
    unmapped.flag = 4
    unmapped.reference_id = -1
    unmapped.reference_start = -1
    unmapped.query_qualities = pysam.qualitystring_to_array("I" * 50)
    reads.append(unmapped)

    bam_path = outdir_p / "toy.bam"
    header = {
        "HD": {"VN": "1.6", "SO": "coordinate"},
        "SQ": [
            {"SN": HAPLO_CONTIG, "LN": draft_len},
            {"SN": CHIMERA_CONTIG, "LN": chim_len},
        ],
    }
    with pysam.AlignmentFile(str(bam_path), "wb", header=header) as bam:
        for r in reads:
            bam.write(r)

    pysam.index(str(bam_path))

    summary = {
        "ref_fa": str(ref_fa),
        "bam": str(bam_path),
        "truth_fa": str(truth_fa),
        "outdir": str(outdir_p),
        "error_positions": error_positions,
        "insertion_before": ins_at,
        "snp_positions": snp_positions,
        "minority_reads": n_minor,
        "chimera_join": join,
    }

    write_json(outdir_p / "toy_summary.json", summary)
    return summary
