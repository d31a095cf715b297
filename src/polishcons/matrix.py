from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from .cigar import TrimSettings, decode
from .models import GAP, AlignmentRecord, CigarError
from .utils import Range, in_ranges, phred_to_freq

logger = logging.getLogger(__name__)

# Fixed states; insertion strings are appended per matrix on first sight.
BASE_STATES = ("A", "T", "G", "C", GAP, "N")

Seed = Tuple[int, str, Sequence[int]]  # (offset, sequence, phreds)


@dataclass
class MatrixStats:
    alignments: int = 0
    used: int = 0
    skipped_trim: int = 0
    malformed: int = 0
    observations: int = 0
    ignored: int = 0
    outside: int = 0


class StateMatrix:
    """Per-column state frequencies over reference columns ``[start, end)``.

    Each column maps state index -> accumulated frequency. State indices are
    allocated per matrix (A, T, G, C, gap, N first, then insertion strings in
    order of discovery), so builds over the same alignments in the same order
    are identical.
    """

    def __init__(self, start: int, end: int) -> None:
        if end < start:
            raise ValueError("end must be >= start")
        self.start = start
        self.end = end
        self._index: Dict[str, int] = {s: i for i, s in enumerate(BASE_STATES)}
        self._names: List[str] = list(BASE_STATES)
        self._cols: List[Dict[int, float]] = [{} for _ in range(end - start)]
        self.stats = MatrixStats()

    def __len__(self) -> int:
        return self.end - self.start

    def __contains__(self, pos: object) -> bool:
        return isinstance(pos, int) and self.start <= pos < self.end

    def positions(self) -> range:
        return range(self.start, self.end)

    def state_index(self, state: str) -> int:
        idx = self._index.get(state)
        if idx is None:
            idx = len(self._names)
            self._index[state] = idx
            self._names.append(state)
        return idx

    def state_name(self, idx: int) -> str:
        return self._names[idx]

    @property
    def n_states(self) -> int:
        return len(self._names)

    def add(self, pos: int, state: str, freq: float = 1.0) -> None:
        col = self._cols[pos - self.start]
        idx = self.state_index(state)
        col[idx] = col.get(idx, 0.0) + freq

    def indexed(self, pos: int) -> List[Tuple[int, float]]:
        """(state index, frequency) pairs of a column in state-index order."""
        return sorted(self._cols[pos - self.start].items())

    def column(self, pos: int) -> Dict[str, float]:
        return {self._names[i]: f for i, f in self.indexed(pos)}

    def is_covered(self, pos: int) -> bool:
        return bool(self._cols[pos - self.start])

    def coverage(self, pos: int) -> float:
        return sum(self._cols[pos - self.start].values())

    def coverages(self) -> List[float]:
        return [sum(c.values()) for c in self._cols]


def seed_matrix(matrix: StateMatrix, seeds: Iterable[Seed]) -> None:
    """Add prior sequence information (reference/pre-corrected) as frequencies.

    Zero frequencies are never added so a seed cannot create a zero-count state.
    """
    for offset, seq, phreds in seeds:
        for i, (base, phred) in enumerate(zip(seq.upper(), phreds)):
            pos = offset + i
            if pos not in matrix:
                continue
            freq = phred_to_freq(phred)
            if freq:
                matrix.add(pos, base, freq)


def build_matrix(
    records: Iterable[AlignmentRecord],
    start: int,
    end: int,
    *,
    trim: TrimSettings = TrimSettings(),
    qual_weighted: bool = False,
    fallback_phred: int = 1,
    ignore: Optional[Sequence[Range]] = None,
    seeds: Optional[Iterable[Seed]] = None,
) -> StateMatrix:
    """Accumulate decoded observations of ``records`` into a new matrix.

    Only columns in ``[start, end)`` are materialised; observations outside are
    dropped. Malformed alignments are logged, counted and skipped.
    """
    matrix = StateMatrix(start, end)
    if seeds:
        seed_matrix(matrix, seeds)

    stats = matrix.stats
    for record in records:
        stats.alignments += 1
        try:
            observations = decode(record, trim, fallback_phred=fallback_phred)
        except CigarError as e:
            stats.malformed += 1
            logger.warning("Skipping malformed alignment: %s", e)
            continue
        if observations is None:
            stats.skipped_trim += 1
            continue

        stats.used += 1
        for obs in observations:
            if obs.column not in matrix:
                stats.outside += 1
                continue
            if in_ranges(obs.column, ignore):
                stats.ignored += 1
                continue
            if qual_weighted:
                freq = min(phred_to_freq(q) for q in obs.quals) if obs.quals else 1.0
            else:
                freq = 1.0
            matrix.add(obs.column, obs.state, freq)
            stats.observations += 1

    logger.debug(
        "Matrix [%d, %d): %d/%d alignments used (%d trimmed away, %d malformed)",
        start,
        end,
        stats.used,
        stats.alignments,
        stats.skipped_trim,
        stats.malformed,
    )
    return matrix
