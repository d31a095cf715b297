from __future__ import annotations

import logging
from typing import Iterable, List, Optional, Sequence, Tuple

from .caller import consensus, variants
from .chimera import detect_chimeras
from .cigar import TrimSettings
from .config import ConsensusConfig
from .haplotype import (
    CoverageEstimate,
    PenaltyStats,
    SeparationResult,
    haplo_coverage,
    penalize_variants,
    separate,
)
from .matrix import Seed, StateMatrix, build_matrix
from .models import (
    AdmitOutcome,
    AlignmentRecord,
    ChimeraRegion,
    ConsensusResult,
    ReferenceSeq,
    VariantColumn,
    VariantsNotCalledError,
)
from .store import AlignmentStore
from .utils import Range, span_in_ranges

logger = logging.getLogger(__name__)


class ReferenceContext:
    """All state for polishing one reference sequence.

    Owns the alignment store; matrices, variants and consensus results are
    rebuilt on demand and replaced wholesale. Contexts share nothing, so
    separate references can be processed independently.
    """

    def __init__(
        self,
        ref_id: str,
        length: int,
        config: Optional[ConsensusConfig] = None,
        *,
        ref: Optional[ReferenceSeq] = None,
    ) -> None:
        self.id = ref_id
        self.length = int(length)
        self.config = config or ConsensusConfig()
        self.ref = ref
        if ref is not None and len(ref) != self.length:
            raise ValueError(f"{ref_id}: reference length {len(ref)} != {self.length}")
        self.store = AlignmentStore(
            self.length,
            bin_size=self.config.bin_size,
            max_coverage=self.config.max_coverage,
            ncscore_constant=self.config.ncscore_constant,
            invert_scores=self.config.invert_scores,
        )
        self.matrix: Optional[StateMatrix] = None
        self.variants: Optional[List[VariantColumn]] = None
        self.consensus_result: Optional[ConsensusResult] = None

    @classmethod
    def from_reference(cls, ref: ReferenceSeq, config: Optional[ConsensusConfig] = None) -> "ReferenceContext":
        return cls(ref.id, len(ref), config, ref=ref)

    def __repr__(self) -> str:
        return f"ReferenceContext(id={self.id!r}, length={self.length}, alignments={len(self.store)})"

    @property
    def trim_settings(self) -> TrimSettings:
        cfg = self.config
        return TrimSettings(
            enabled=cfg.trim,
            taboo_fraction=cfg.indel_taboo,
            taboo_length=cfg.indel_taboo_length,
            min_length=cfg.min_trimmed_length,
            min_fraction=cfg.min_trimmed_fraction,
        )

    # -----------------
    # retention
    # -----------------

    def admit(self, record: AlignmentRecord) -> AdmitOutcome:
        return self.store.admit(record)

    def admit_all(self, records: Iterable[AlignmentRecord]) -> List[AdmitOutcome]:
        return [self.store.admit(r) for r in records]

    def alignments(self, *, sorted_by_pos: bool = False) -> List[AlignmentRecord]:
        return self.store.records(sorted_by_pos=sorted_by_pos)

    def sam_header(self) -> str:
        return f"@SQ\tSN:{self.id}\tLN:{self.length}\n"

    # -----------------
    # matrix + calling
    # -----------------

    def _seeds(self, precorrected: Optional[Sequence[Seed]]) -> List[Seed]:
        seeds: List[Seed] = []
        if self.config.use_ref_qual and self.ref is not None and self.ref.phreds is not None:
            seeds.append((0, self.ref.seq, self.ref.phreds))
        if precorrected:
            seeds.extend(precorrected)
        return seeds

    def build_matrix(
        self,
        records: Optional[Iterable[AlignmentRecord]] = None,
        start: int = 0,
        end: Optional[int] = None,
        *,
        ignore: Optional[Sequence[Range]] = None,
        precorrected: Optional[Sequence[Seed]] = None,
    ) -> StateMatrix:
        """Build a fresh matrix over ``[start, end)`` from ``records``.

        Defaults to every retained alignment and the whole reference.
        """
        return build_matrix(
            self.store if records is None else records,
            start,
            self.length if end is None else end,
            trim=self.trim_settings,
            qual_weighted=self.config.qual_weighted,
            fallback_phred=self.config.fallback_phred,
            ignore=ignore,
            seeds=self._seeds(precorrected),
        )

    def consensus(
        self,
        *,
        ignore: Optional[Sequence[Range]] = None,
        precorrected: Optional[Sequence[Seed]] = None,
    ) -> ConsensusResult:
        self.matrix = self.build_matrix(ignore=ignore, precorrected=precorrected)
        self.consensus_result = consensus(
            self.matrix,
            ref=self.ref,
            max_ins_length=self.config.max_ins_length,
            seq_id=self.id,
        )
        return self.consensus_result

    def call_variants(
        self,
        *,
        min_freq: Optional[float] = None,
        min_prob: Optional[float] = None,
        reuse_matrix: bool = False,
        ignore: Optional[Sequence[Range]] = None,
        precorrected: Optional[Sequence[Seed]] = None,
    ) -> List[VariantColumn]:
        if not reuse_matrix or self.matrix is None:
            self.matrix = self.build_matrix(ignore=ignore, precorrected=precorrected)
        self.variants = variants(
            self.matrix,
            min_freq=self.config.variant_min_freq if min_freq is None else min_freq,
            min_prob=self.config.variant_min_prob if min_prob is None else min_prob,
        )
        return self.variants

    def coverage(self) -> List[float]:
        """Per-column coverage from a freshly built matrix."""
        self.matrix = self.build_matrix()
        return self.matrix.coverages()

    # -----------------
    # haplotypes + chimeras
    # -----------------

    def penalize_variants(self) -> PenaltyStats:
        if self.variants is None:
            raise VariantsNotCalledError(f"{self.id}: call_variants() must run before penalize_variants()")
        return penalize_variants(self, self.variants)

    def haplo_coverage(self) -> CoverageEstimate:
        if self.variants is None:
            raise VariantsNotCalledError(f"{self.id}: call_variants() must run before haplo_coverage()")
        return haplo_coverage(self, self.variants)

    def haplo_consensus(
        self,
        *,
        ignore: Optional[Sequence[Range]] = None,
        precorrected: Optional[Sequence[Seed]] = None,
    ) -> SeparationResult:
        return separate(self, ignore=ignore, precorrected=precorrected)

    def chimeras(self) -> List[ChimeraRegion]:
        return detect_chimeras(self)

    # -----------------
    # filters
    # -----------------

    def _filter(self, keep, label: str) -> int:
        removed = 0
        for iid in self.store.iids():
            if not keep(self.store.get(iid)):
                self.store.remove(iid)
                removed += 1
        logger.debug("%s: %s removed %d alignments", self.id, label, removed)
        return removed

    def filter_by_score(self, min_score: Optional[float] = None) -> int:
        cutoff = self.config.min_score if min_score is None else min_score
        if cutoff is None:
            return 0
        inv = self.config.invert_scores

        def keep(r: AlignmentRecord) -> bool:
            s = r.score(invert=inv)
            return s is not None and s >= cutoff

        return self._filter(keep, "score filter")

    def filter_by_nscore(self, min_nscore: Optional[float] = None) -> int:
        cutoff = self.config.min_nscore if min_nscore is None else min_nscore
        if cutoff is None:
            return 0
        inv = self.config.invert_scores

        def keep(r: AlignmentRecord) -> bool:
            s = r.nscore(invert=inv)
            return s is not None and s >= cutoff

        return self._filter(keep, "nscore filter")

    def filter_by_ncscore(self, min_ncscore: Optional[float] = None) -> int:
        cutoff = self.config.min_ncscore if min_ncscore is None else min_ncscore
        if cutoff is None:
            return 0
        k, inv = self.config.ncscore_constant, self.config.invert_scores

        def keep(r: AlignmentRecord) -> bool:
            s = r.ncscore(k, invert=inv)
            return s is not None and s >= cutoff

        return self._filter(keep, "ncscore filter")

    def repeat_windows(self, coverage: Optional[Sequence[float]] = None) -> List[Range]:
        """(offset, length) windows of coverage >= rep_coverage, flanked and clamped."""
        cmax = self.config.rep_coverage
        if not cmax:
            return []
        cov = self.coverage() if coverage is None else coverage

        windows: List[Tuple[int, int]] = []
        start: Optional[int] = None
        for i, c in enumerate(cov):
            if c >= cmax and start is None:
                start = i
            elif c < cmax and start is not None:
                windows.append((start, i - start))
                start = None
        if start is not None:
            windows.append((start, len(cov) - start))

        flank = self.config.rep_flank
        out: List[Range] = []
        for off, length in windows:
            off, length = off - flank, length + 2 * flank
            if off < 0:
                length += off
                off = 0
            length = min(length, self.length - off)
            out.append((off, length))
        return out

    def filter_rep_regions(self) -> int:
        """Drop alignments lying entirely inside high-coverage (repetitive) windows."""
        windows = self.repeat_windows()
        if not windows:
            return 0
        return self._filter(
            lambda r: not span_in_ranges(r.pos0, max(r.reference_length, 1), windows),
            "repeat filter",
        )
