from __future__ import annotations

import enum
from dataclasses import dataclass, field, replace
from functools import cached_property
from typing import Dict, List, Optional, Tuple

# SAM/BAM CIGAR operation codes (same integers as pysam cigartuples).
CIGAR_MATCH = 0
CIGAR_INS = 1
CIGAR_DEL = 2
CIGAR_SOFT_CLIP = 4
CIGAR_HARD_CLIP = 5

CIGAR_CHARS = "MIDNSHP=XB"

GAP = "-"
UNKNOWN = "n"


class PolishError(Exception):
    """Base class for polishcons errors."""


class CigarError(PolishError, ValueError):
    """Raised when a single alignment cannot be decoded."""


class VariantsNotCalledError(PolishError, RuntimeError):
    """Raised when a variant-dependent step runs before variants were computed."""


class AdmitOutcome(enum.Enum):
    ADMITTED = "admitted"
    REJECTED = "rejected"
    UNSCORED = "unscored"


@dataclass(frozen=True)
class AlignmentRecord:
    """One alignment of a query read against a reference.

    Coordinates are 0-based. ``cigar`` holds ``(opcode, length)`` pairs using the
    SAM integer codes, exactly like ``pysam.AlignedSegment.cigartuples``.

    Attributes
    ----------
    qname:
        Query (read) name.
    rname:
        Reference name the read is aligned to.
    pos0:
        0-based reference position of the first aligned (non-clipped) base.
    cigar:
        Tuple of ``(opcode, length)`` operations.
    seq:
        Query sequence; hard clipped bases are absent, soft clipped ones present.
    quals:
        Per-base phred qualities, or None if the record carries none.
    raw_score:
        Alignment score (``AS`` tag), or None if unavailable.
    """

    qname: str
    rname: str
    pos0: int
    cigar: Tuple[Tuple[int, int], ...]
    seq: str
    quals: Optional[Tuple[int, ...]] = None
    raw_score: Optional[float] = None
    flag: int = 0
    tags: Dict[str, object] = field(default_factory=dict, compare=False)

    @cached_property
    def length(self) -> int:
        """Number of aligned query bases (M + I)."""
        return sum(n for op, n in self.cigar if op in (CIGAR_MATCH, CIGAR_INS))

    @cached_property
    def full_length(self) -> int:
        """Query length including soft and hard clipped bases."""
        return sum(
            n
            for op, n in self.cigar
            if op in (CIGAR_MATCH, CIGAR_INS, CIGAR_SOFT_CLIP, CIGAR_HARD_CLIP)
        )

    @cached_property
    def reference_length(self) -> int:
        return sum(n for op, n in self.cigar if op in (CIGAR_MATCH, CIGAR_DEL))

    @property
    def end0(self) -> int:
        return self.pos0 + self.reference_length

    @property
    def cigar_string(self) -> str:
        return "".join(f"{n}{CIGAR_CHARS[op]}" for op, n in self.cigar) or "*"

    def score(self, *, invert: bool = False) -> Optional[float]:
        if self.raw_score is None:
            return None
        return -self.raw_score if invert else self.raw_score

    def nscore(self, *, invert: bool = False) -> Optional[float]:
        score = self.score(invert=invert)
        if score is None or self.length == 0:
            return None
        return score / self.length

    def ncscore(self, constant: float = 40.0, *, invert: bool = False) -> Optional[float]:
        """Length corrected normalized score.

        Approaches ``nscore`` for long alignments and discounts short ones:
        ``cf = length / (constant + length)`` is 0.56 at 50bp and 0.96 at 1kb
        for the default constant.
        """
        nscore = self.nscore(invert=invert)
        if nscore is None:
            return None
        return nscore * (self.length / (constant + self.length))

    def with_score(self, raw_score: float) -> "AlignmentRecord":
        return replace(self, raw_score=raw_score)

    def aligned_sequence(self) -> str:
        """Query bases laid out on the reference: M bases, '-' per deleted base.

        Clipped and inserted bases are dropped, so index ``i`` corresponds to
        reference column ``pos0 + i``.
        """
        out: List[str] = []
        qpos = 0
        for op, n in self.cigar:
            if op == CIGAR_MATCH:
                out.append(self.seq[qpos : qpos + n])
                qpos += n
            elif op == CIGAR_DEL:
                out.append(GAP * n)
            elif op in (CIGAR_INS, CIGAR_SOFT_CLIP):
                qpos += n
        return "".join(out)


@dataclass(frozen=True)
class ReferenceSeq:
    """Reference (or draft) sequence with optional per-base phred qualities."""

    id: str
    seq: str
    phreds: Optional[Tuple[int, ...]] = None

    def __len__(self) -> int:
        return len(self.seq)

    def base(self, i: int) -> str:
        return self.seq[i].upper()


@dataclass(frozen=True)
class VariantColumn:
    """Candidate states of one column, sorted by descending frequency."""

    states: Tuple[str, ...]
    freqs: Tuple[float, ...]
    probs: Tuple[float, ...]
    coverage: float

    @property
    def is_covered(self) -> bool:
        return self.coverage > 0

    def is_snp(self) -> bool:
        """True for >= 2 candidates that are all plain A/C/G/T bases."""
        return len(self.states) >= 2 and all(
            len(s) == 1 and s in "ATGC" for s in self.states
        )

    def freq_of(self, state: str) -> Optional[float]:
        for s, f in zip(self.states, self.freqs):
            if s == state:
                return f
        return None


@dataclass(frozen=True)
class ConsensusResult:
    """Consensus sequence with per-symbol frequency (later phred encoded)."""

    id: str
    seq: str
    freqs: Tuple[float, ...]
    trace: str = ""
    cigar: str = ""

    def __len__(self) -> int:
        return len(self.seq)


@dataclass(frozen=True)
class ChimeraRegion:
    """Suspected chimeric join over reference columns [start0, end0)."""

    start0: int
    end0: int
    deltas: Tuple[float, ...]
    score: float
