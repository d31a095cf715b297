"""Bounded, score-ranked retention of alignments.

The reference is split into fixed-width bins over alignment *centers*. Each bin
keeps the ids, ncscores and aligned lengths of its alignments co-indexed and
sorted by descending score. Once a bin holds more than ``bin_size *
max_coverage`` aligned bases it is full, and a new alignment only gets in by
beating (and evicting) the current lowest-scoring one.
"""

from __future__ import annotations

import bisect
import logging
import math
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional

from .models import AdmitOutcome, AlignmentRecord

logger = logging.getLogger(__name__)


@dataclass
class Bin:
    iids: List[int] = field(default_factory=list)
    scores: List[float] = field(default_factory=list)
    lengths: List[int] = field(default_factory=list)
    bases: int = 0

    def __len__(self) -> int:
        return len(self.iids)

    def insert(self, iid: int, score: float, length: int) -> None:
        # scores are descending; insert after any equal score (stable)
        neg = [-s for s in self.scores]
        i = bisect.bisect_right(neg, -score)
        self.iids.insert(i, iid)
        self.scores.insert(i, score)
        self.lengths.insert(i, length)
        self.bases += length

    def pop_index(self, i: int) -> int:
        iid = self.iids.pop(i)
        self.scores.pop(i)
        self.bases -= self.lengths.pop(i)
        return iid


@dataclass
class StoreStats:
    admitted: int = 0
    rejected: int = 0
    unscored: int = 0
    evicted: int = 0
    removed: int = 0


class AlignmentStore:
    """Per-reference alignment retention partitioned into genomic bins.

    Parameters
    ----------
    ref_length:
        Length of the reference the alignments are mapped to.
    bin_size:
        Bin width in reference bases.
    max_coverage:
        Target coverage; a bin is full above ``bin_size * max_coverage`` bases.
    ncscore_constant:
        Short-alignment correction constant used for ranking.
    invert_scores:
        Treat smaller raw scores as better (e.g. blasr-style scores).
    """

    def __init__(
        self,
        ref_length: int,
        *,
        bin_size: int = 20,
        max_coverage: float = 50,
        ncscore_constant: float = 40.0,
        invert_scores: bool = False,
    ) -> None:
        if ref_length <= 0:
            raise ValueError("ref_length must be > 0")
        self.ref_length = int(ref_length)
        self.bin_size = int(bin_size)
        self.max_coverage = max_coverage
        self.ncscore_constant = float(ncscore_constant)
        self.invert_scores = bool(invert_scores)
        self.bins: List[Bin] = [Bin() for _ in range(math.ceil(self.ref_length / self.bin_size))]
        self.stats = StoreStats()
        self._alns: Dict[int, AlignmentRecord] = {}
        self._next_iid = 0

    @property
    def bin_max_bases(self) -> float:
        return self.bin_size * self.max_coverage

    def __len__(self) -> int:
        return len(self._alns)

    def __contains__(self, iid: object) -> bool:
        return iid in self._alns

    def score_of(self, record: AlignmentRecord) -> Optional[float]:
        return record.ncscore(self.ncscore_constant, invert=self.invert_scores)

    def bin_of(self, record: AlignmentRecord) -> int:
        """Bin index of the alignment center, clamped to the reference."""
        b = int((record.pos0 + record.length / 2) // self.bin_size)
        return min(max(b, 0), len(self.bins) - 1)

    def admit(self, record: AlignmentRecord) -> AdmitOutcome:
        score = self.score_of(record)
        if score is None:
            self.stats.unscored += 1
            return AdmitOutcome.UNSCORED

        b = self.bin_of(record)
        bin_ = self.bins[b]
        if bin_.bases > self.bin_max_bases:
            if score <= bin_.scores[-1]:
                self.stats.rejected += 1
                return AdmitOutcome.REJECTED
            self._evict_lowest(b)

        self._next_iid += 1
        iid = self._next_iid
        self._alns[iid] = record
        bin_.insert(iid, score, record.length)
        self.stats.admitted += 1
        return AdmitOutcome.ADMITTED

    def remove(self, iid: int) -> Optional[AlignmentRecord]:
        """Remove an alignment by internal id; returns it, or None if unknown."""
        record = self._alns.pop(iid, None)
        if record is None:
            return None
        bin_ = self.bins[self.bin_of(record)]
        try:
            bin_.pop_index(bin_.iids.index(iid))
        except ValueError:
            logger.debug("Alignment %d (%s) was not indexed in its bin", iid, record.qname)
        self.stats.removed += 1
        return record

    def set_capacity(self, max_coverage: float) -> int:
        """Change the per-bin coverage cap and evict surplus low scorers.

        Every bin keeps at least one alignment. Returns the number evicted.
        """
        if max_coverage <= 0:
            raise ValueError("max_coverage must be > 0")
        self.max_coverage = max_coverage
        evicted = 0
        for b, bin_ in enumerate(self.bins):
            while len(bin_) > 1 and bin_.bases > self.bin_max_bases:
                self._evict_lowest(b)
                evicted += 1
        logger.debug(
            "Capacity set to %.2fx (%.0f bases/bin); evicted %d alignments",
            max_coverage,
            self.bin_max_bases,
            evicted,
        )
        return evicted

    def _evict_lowest(self, b: int) -> None:
        iid = self.bins[b].pop_index(-1)
        record = self._alns.pop(iid)
        self.stats.evicted += 1
        logger.debug("Evicted %s from bin %d", record.qname, b)

    def get(self, iid: int) -> AlignmentRecord:
        try:
            return self._alns[iid]
        except KeyError:
            raise KeyError(f"Alignment id {iid} is not retained") from None

    def iids(self, *, sorted_by_pos: bool = False) -> List[int]:
        ids = list(self._alns)
        if sorted_by_pos:
            ids.sort(key=lambda i: self._alns[i].pos0)
        return ids

    def records(self, *, sorted_by_pos: bool = False) -> List[AlignmentRecord]:
        return [self._alns[i] for i in self.iids(sorted_by_pos=sorted_by_pos)]

    def __iter__(self) -> Iterator[AlignmentRecord]:
        return iter(list(self._alns.values()))

    def bin_bases(self) -> List[int]:
        return [b.bases for b in self.bins]

    def alignments_in_range(
        self, from_bin: int = 0, to_bin: Optional[int] = None
    ) -> List[List[AlignmentRecord]]:
        """Bins ``from_bin..to_bin`` (inclusive), each a score-sorted record list.

        Bin indices outside the reference are clipped.
        """
        if to_bin is None:
            to_bin = len(self.bins) - 1
        lo = max(from_bin, 0)
        hi = min(to_bin, len(self.bins) - 1)
        return [[self._alns[i] for i in self.bins[b].iids] for b in range(lo, hi + 1)]
