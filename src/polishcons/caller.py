from __future__ import annotations

import logging
from typing import List, Optional, Sequence

from .matrix import BASE_STATES, StateMatrix
from .models import GAP, UNKNOWN, ConsensusResult, ReferenceSeq, VariantColumn
from .utils import compress_trace

logger = logging.getLogger(__name__)

UNCOVERED = VariantColumn(states=("?",), freqs=(0.0,), probs=(0.0,), coverage=0.0)


def _fallback(ref: Optional[ReferenceSeq], pos: int) -> str:
    return ref.seq[pos] if ref is not None and pos < len(ref) else UNKNOWN


def consensus(
    matrix: StateMatrix,
    *,
    ref: Optional[ReferenceSeq] = None,
    max_ins_length: int = 0,
    seq_id: str = "",
) -> ConsensusResult:
    """Majority-vote consensus over every column of ``matrix``.

    Ties go to the lowest state index. Insertion states longer than
    ``max_ins_length`` (if > 0) never win; they are typically artefacts of
    cheap gap costs near error-rich read ends. Uncovered columns fall back to
    the reference base with zero confidence, and gap winners emit nothing.
    """
    seq: List[str] = []
    freqs: List[float] = []
    trace: List[str] = []

    for pos in matrix.positions():
        best_idx: Optional[int] = None
        best = 0.0
        for idx, freq in matrix.indexed(pos):
            if freq <= best:
                continue
            if (
                max_ins_length
                and idx >= len(BASE_STATES)
                and len(matrix.state_name(idx)) > max_ins_length
            ):
                continue
            best, best_idx = freq, idx

        if best_idx is None:
            seq.append(_fallback(ref, pos))
            freqs.append(0.0)
            trace.append("M")
            continue

        state = matrix.state_name(best_idx)
        if state == GAP:
            trace.append("I")
            continue

        seq.append(state)
        freqs.extend([best] * len(state))
        trace.append("M" + "D" * (len(state) - 1))

    trace_str = "".join(trace)
    return ConsensusResult(
        id=seq_id,
        seq="".join(seq),
        freqs=tuple(freqs),
        trace=trace_str,
        cigar=compress_trace(trace_str),
    )


def variant_column(
    matrix: StateMatrix, pos: int, *, min_freq: float = 4, min_prob: float = 0.0
) -> VariantColumn:
    pairs = matrix.indexed(pos)
    cov = sum(f for _, f in pairs)
    if not pairs or cov <= 0:
        return UNCOVERED

    # stable sort keeps state-index order among equal frequencies
    pairs.sort(key=lambda p: p[1], reverse=True)
    freqs = [f for _, f in pairs]
    probs = [f / cov for f in freqs]

    k = len(pairs)
    if min_freq:
        k = sum(1 for f in freqs if f >= min_freq)
    if min_prob:
        k = min(k, sum(1 for p in probs if p >= min_prob))
    k = max(k, 1)

    return VariantColumn(
        states=tuple(matrix.state_name(i) for i, _ in pairs[:k]),
        freqs=tuple(freqs[:k]),
        probs=tuple(probs[:k]),
        coverage=cov,
    )


def variants(
    matrix: StateMatrix, *, min_freq: float = 4, min_prob: float = 0.0
) -> List[VariantColumn]:
    """Ranked candidate states for every column of ``matrix``.

    A candidate is kept if it reaches both ``min_freq`` and ``min_prob``
    (thresholds of 0 are off); the top candidate is always kept.
    """
    return [
        variant_column(matrix, pos, min_freq=min_freq, min_prob=min_prob)
        for pos in matrix.positions()
    ]


def haplo_consensus(
    vars_: Sequence[VariantColumn],
    *,
    ref: Optional[ReferenceSeq] = None,
    seq_id: str = "",
    ref_preference: str = "tie",
) -> ConsensusResult:
    """Consensus from called variants, favouring the reference allele at SNPs.

    With ``ref_preference="tie"`` the reference allele only wins at SNP columns
    where it shares the top frequency; with ``"candidate"`` it wins at any
    multi-state column where it was called.
    """
    if ref_preference not in ("tie", "candidate"):
        raise ValueError(f"Unknown ref_preference: {ref_preference}")

    seq: List[str] = []
    freqs: List[float] = []
    trace: List[str] = []

    for pos, var in enumerate(vars_):
        if not var.is_covered:
            seq.append(_fallback(ref, pos))
            freqs.append(0.0)
            trace.append("M")
            continue

        j = 0
        prefer_ref = var.is_snp() if ref_preference == "tie" else len(var.states) > 1
        if ref is not None and prefer_ref:
            r = ref.base(pos)
            for k, (state, freq) in enumerate(zip(var.states, var.freqs)):
                if ref_preference == "tie" and freq < var.freqs[0]:
                    break
                if state == r:
                    j = k
                    break

        state, freq = var.states[j], var.freqs[j]
        if state == GAP:
            trace.append("I")
            continue
        seq.append(state)
        freqs.extend([freq] * len(state))
        trace.append("M" + "D" * (len(state) - 1))

    trace_str = "".join(trace)
    return ConsensusResult(
        id=seq_id,
        seq="".join(seq),
        freqs=tuple(freqs),
        trace=trace_str,
        cigar=compress_trace(trace_str),
    )
