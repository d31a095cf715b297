from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

from .models import (
    CIGAR_DEL,
    CIGAR_HARD_CLIP,
    CIGAR_INS,
    CIGAR_MATCH,
    CIGAR_SOFT_CLIP,
    GAP,
    AlignmentRecord,
    CigarError,
)

logger = logging.getLogger(__name__)

_KNOWN_OPS = (CIGAR_MATCH, CIGAR_INS, CIGAR_DEL, CIGAR_SOFT_CLIP, CIGAR_HARD_CLIP)
_CLIPS = (CIGAR_SOFT_CLIP, CIGAR_HARD_CLIP)

Ops = List[Tuple[int, int]]


@dataclass(frozen=True)
class Observation:
    """State observed by one alignment at one reference column."""

    column: int
    state: str
    quals: Tuple[int, ...] = ()


@dataclass(frozen=True)
class TrimSettings:
    enabled: bool = True
    taboo_fraction: float = 0.1
    taboo_length: Optional[int] = None
    min_length: int = 50
    min_fraction: float = 0.7

    def taboo_for(self, aligned_length: int) -> int:
        if self.taboo_length is not None:
            return self.taboo_length
        return math.ceil(aligned_length * self.taboo_fraction)


def _strip_clips(record: AlignmentRecord, ops: Ops) -> Tuple[Ops, int, int]:
    """Drop leading/trailing S/H ops; return remaining ops and the query window."""
    start, end = 0, len(record.seq)
    while ops and ops[0][0] in _CLIPS:
        op, n = ops.pop(0)
        if op == CIGAR_SOFT_CLIP:
            start += n
    while ops and ops[-1][0] in _CLIPS:
        op, n = ops.pop()
        if op == CIGAR_SOFT_CLIP:
            end -= n
    if any(op in _CLIPS for op, _ in ops):
        raise CigarError(f"{record.qname}: clipping inside alignment ({record.cigar_string})")
    return ops, start, end


def _trim_head(ops: Ops, taboo: int) -> Tuple[Ops, int, int]:
    """Cut everything before the first match run reaching past the taboo zone.

    Returns the trimmed ops, the number of query bases and the number of
    reference bases removed.
    """
    mc = dc = ic = 0
    for i, (op, n) in enumerate(ops):
        if op == CIGAR_MATCH:
            if mc + ic + n > taboo:
                if i:
                    return ops[i:], mc + ic, mc + dc
                break
            mc += n
        elif op == CIGAR_DEL:
            dc += n
        elif op == CIGAR_INS:
            ic += n
    return ops, 0, 0


def _trim_tail(ops: Ops, taboo: int) -> Tuple[Ops, int]:
    """Mirror of :func:`_trim_head`; reference start is unaffected."""
    tail = 0
    for i in range(len(ops) - 1, -1, -1):
        op, n = ops[i]
        if op == CIGAR_MATCH:
            tail += n
            if tail > taboo:
                if i < len(ops) - 1:
                    return ops[: i + 1], tail - n
                break
        elif op == CIGAR_INS:
            tail += n
    return ops, 0


def decode(
    record: AlignmentRecord,
    trim: TrimSettings = TrimSettings(),
    *,
    fallback_phred: int = 1,
) -> Optional[List[Observation]]:
    """Decode an alignment into per-reference-column observations.

    Returns None if the alignment is too short after end trimming.

    Match bases are observed as themselves, deletions as gap states. Inserted
    bases extend the state of the previous observation into a multi-base
    string, except after a gap, where they replace it (mappers emit 1D1I in
    place of a cheaper-looking mismatch).

    Raises
    ------
    CigarError
        Unknown CIGAR opcode or CIGAR inconsistent with the query sequence.
    """
    for op, n in record.cigar:
        if op not in _KNOWN_OPS:
            raise CigarError(f"{record.qname}: unsupported CIGAR operation {op} ({record.cigar_string})")
        if n < 0:
            raise CigarError(f"{record.qname}: negative CIGAR length ({record.cigar_string})")

    quals: Sequence[int]
    if record.quals is None:
        quals = (fallback_phred,) * len(record.seq)
    elif len(record.quals) != len(record.seq):
        raise CigarError(f"{record.qname}: quality length != sequence length")
    else:
        quals = record.quals

    ops, qstart, qend = _strip_clips(record, list(record.cigar))
    if not ops:
        raise CigarError(f"{record.qname}: empty CIGAR")
    seq = record.seq[qstart:qend]
    quals = quals[qstart:qend]

    consumed = sum(n for op, n in ops if op in (CIGAR_MATCH, CIGAR_INS))
    if consumed != len(seq):
        raise CigarError(
            f"{record.qname}: CIGAR consumes {consumed} query bases, sequence has {len(seq)}"
        )

    rpos = record.pos0
    orig_length = len(seq)

    if trim.enabled:
        taboo = trim.taboo_for(orig_length)

        ops, qcut, rcut = _trim_head(ops, taboo)
        rpos += rcut
        seq, quals = seq[qcut:], quals[qcut:]
        if _too_short(len(seq), orig_length, trim):
            logger.debug("%s: too short after head trimming (%d bp)", record.qname, len(seq))
            return None

        ops, qcut = _trim_tail(ops, taboo)
        if qcut:
            seq, quals = seq[: len(seq) - qcut], quals[: len(quals) - qcut]
        if _too_short(len(seq), orig_length, trim):
            logger.debug("%s: too short after tail trimming (%d bp)", record.qname, len(seq))
            return None

    return _emit(ops, seq, quals, rpos, fallback_phred)


def _too_short(length: int, orig_length: int, trim: TrimSettings) -> bool:
    if orig_length == 0:
        return True
    return length < trim.min_length or length / orig_length < trim.min_fraction


def _emit(
    ops: Ops, seq: str, quals: Sequence[int], rpos: int, fallback_phred: int
) -> List[Observation]:
    states: List[str] = []
    squals: List[Tuple[int, ...]] = []
    pending: Optional[Tuple[str, Tuple[int, ...]]] = None
    qpos = 0

    for op, n in ops:
        first = len(states)
        if op == CIGAR_MATCH:
            states.extend(seq[qpos : qpos + n])
            squals.extend((q,) for q in quals[qpos : qpos + n])
            qpos += n
        elif op == CIGAR_DEL:
            if quals:
                before = quals[qpos - 1] if qpos > 0 else quals[qpos]
                after = quals[qpos] if qpos < len(quals) else quals[qpos - 1]
                q = min(before, after)
            else:
                q = fallback_phred
            states.extend(GAP * n)
            squals.extend([(q,)] * n)
        elif op == CIGAR_INS:
            ins, iq = seq[qpos : qpos + n], tuple(quals[qpos : qpos + n])
            qpos += n
            if not states:
                if pending is None:
                    pending = (ins, iq)
                else:
                    pending = (pending[0] + ins, pending[1] + iq)
            elif states[-1] == GAP:
                states[-1], squals[-1] = ins, iq
            else:
                states[-1] += ins
                squals[-1] += iq
            continue

        if pending is not None and len(states) > first:
            ins, iq = pending
            if states[first] == GAP:
                states[first], squals[first] = ins, iq
            else:
                states[first] = ins + states[first]
                squals[first] = iq + squals[first]
            pending = None

    return [Observation(rpos + i, s, q) for i, (s, q) in enumerate(zip(states, squals))]
