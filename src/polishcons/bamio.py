"""pysam-backed reading and writing.

The core never touches files; this module turns BAM records into
:class:`~polishcons.models.AlignmentRecord` values and writes results back out.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, TextIO

import pysam

from .models import AlignmentRecord, ChimeraRegion, ConsensusResult, ReferenceSeq
from .utils import freqs_to_phreds, phreds_to_string

logger = logging.getLogger(__name__)

SCORE_TAG = "AS"


def record_from_segment(read: pysam.AlignedSegment, *, score_tag: str = SCORE_TAG) -> AlignmentRecord:
    """Convert a mapped pysam read into an immutable AlignmentRecord."""
    score: Optional[float] = None
    if read.has_tag(score_tag):
        score = float(read.get_tag(score_tag))
    quals = read.query_qualities
    return AlignmentRecord(
        qname=str(read.query_name),
        rname=read.reference_name if read.reference_name is not None else "*",
        pos0=int(read.reference_start),
        cigar=tuple((int(op), int(n)) for op, n in (read.cigartuples or ())),
        seq=read.query_sequence or "",
        quals=tuple(int(q) for q in quals) if quals is not None else None,
        raw_score=score,
        flag=int(read.flag),
        tags=dict(read.get_tags()),
    )


def segment_from_record(
    record: AlignmentRecord,
    header: pysam.AlignmentHeader,
    *,
    score_tag: str = SCORE_TAG,
) -> pysam.AlignedSegment:
    a = pysam.AlignedSegment(header)
    a.query_name = record.qname
    a.query_sequence = record.seq
    a.flag = record.flag
    a.reference_id = header.get_tid(record.rname)
    a.reference_start = record.pos0
    a.mapping_quality = 255
    a.cigartuples = list(record.cigar)
    if record.quals is not None:
        a.query_qualities = pysam.qualitystring_to_array("".join(chr(q + 33) for q in record.quals))
    for tag, value in record.tags.items():
        if tag != score_tag:
            a.set_tag(tag, value)
    if record.raw_score is not None:
        # penalized scores are written back as they were used for ranking
        a.set_tag(score_tag, int(round(record.raw_score)), value_type="i")
    return a


def load_references(path: str | Path) -> Dict[str, ReferenceSeq]:
    """Read a FASTA or FASTQ file; FASTQ qualities become reference phreds."""
    refs: Dict[str, ReferenceSeq] = {}
    with pysam.FastxFile(str(path)) as fh:
        for entry in fh:
            phreds = None
            if entry.quality:
                phreds = tuple(entry.get_quality_array())
            refs[entry.name] = ReferenceSeq(id=entry.name, seq=entry.sequence, phreds=phreds)
    logger.info("Loaded %d reference sequence(s) from %s", len(refs), path)
    return refs


def write_consensus_fastq(
    fh: TextIO,
    result: ConsensusResult,
    *,
    phred_offset: int = 33,
) -> None:
    """Write one consensus record.

    Quality holds the phred-encoded confidence; the per-base coverage string
    (raw frequencies, same offset) goes into the header comment.
    """
    qual = phreds_to_string(freqs_to_phreds(result.freqs), phred_offset)
    cov = phreds_to_string(result.freqs, phred_offset)
    fh.write(f"@{result.id} cov={cov} cigar={result.cigar or '*'}\n{result.seq}\n+\n{qual}\n")


CHIMERA_COLUMNS = ["contig", "start0", "end0", "score", "n_columns"]


def write_chimeras_tsv(fh: TextIO, rows: Iterable[tuple[str, ChimeraRegion]]) -> int:
    fh.write("\t".join(CHIMERA_COLUMNS) + "\n")
    n = 0
    for contig, region in rows:
        fh.write(f"{contig}\t{region.start0}\t{region.end0}\t{region.score:.4f}\t{len(region.deltas)}\n")
        n += 1
    return n


def write_retained_bam(
    path: str | Path,
    header: Dict[str, object],
    records_by_contig: Dict[str, Sequence[AlignmentRecord]],
) -> int:
    """Write retained alignments, position-sorted per contig, in header order."""
    n = 0
    with pysam.AlignmentFile(str(path), "wb", header=header) as out:
        for contig in out.header.references:
            records: List[AlignmentRecord] = sorted(records_by_contig.get(contig, ()), key=lambda r: r.pos0)
            for record in records:
                out.write(segment_from_record(record, out.header))
                n += 1
    pysam.index(str(path))
    return n
