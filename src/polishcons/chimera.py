from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Dict, List, Sequence, Tuple

from .matrix import StateMatrix
from .models import AlignmentRecord, ChimeraRegion
from .utils import shannon_entropy

if TYPE_CHECKING:
    from .context import ReferenceContext

logger = logging.getLogger(__name__)


def find_coverage_dips(
    bin_bases: Sequence[float],
    threshold: float,
    *,
    edge_bins: int = 5,
    max_bins: int = 4,
) -> List[Tuple[int, int]]:
    """Maximal runs of 1..max_bins low-coverage bins as (first, last) indices.

    The ``edge_bins`` bins at either end of the reference are never considered.
    """
    dips: List[Tuple[int, int]] = []
    run = 0
    for i in range(edge_bins, len(bin_bases) - edge_bins):
        if bin_bases[i] <= threshold:
            run += 1
        elif run:
            if run <= max_bins:
                dips.append((i - run, i - 1))
            run = 0
    return dips


def pooled_column(left: Dict[str, float], right: Dict[str, float]) -> Dict[str, float]:
    pooled = dict(left)
    for state, freq in right.items():
        pooled[state] = pooled.get(state, 0.0) + freq
    return pooled


def entropy_deltas(left: StateMatrix, right: StateMatrix) -> List[float]:
    """Pooled minus larger single-side entropy for columns covered by both."""
    deltas: List[float] = []
    for pos in left.positions():
        if not (left.is_covered(pos) and right.is_covered(pos)):
            continue
        lcol, rcol = left.column(pos), right.column(pos)
        h = max(shannon_entropy(lcol.values()), shannon_entropy(rcol.values()))
        deltas.append(shannon_entropy(pooled_column(lcol, rcol).values()) - h)
    return deltas


def _flatten(bins: List[List[AlignmentRecord]]) -> List[AlignmentRecord]:
    return [rec for b in bins for rec in b]


def detect_chimeras(ctx: "ReferenceContext") -> List[ChimeraRegion]:
    """Score coverage dips for signs of two distinct sequences joined together.

    Around each dip, alignments binned left and right of the window midpoint
    are stacked separately. Where the halves carry different single-mode base
    distributions, pooling them raises column entropy well above either half
    (4:1 mixtures give ~0.72 bits).
    """
    cfg = ctx.config
    store = ctx.store
    bin_bases = store.bin_bases()
    if len(bin_bases) < cfg.chimera_min_bins:
        return []

    bs = store.bin_size
    threshold = store.bin_max_bases * cfg.chimera_dip_fraction
    dips = find_coverage_dips(
        bin_bases,
        threshold,
        edge_bins=cfg.chimera_edge_bins,
        max_bins=cfg.chimera_max_dip_bins,
    )

    regions: List[ChimeraRegion] = []
    for first, last in dips:
        mat_from = max((first - 1) * bs, 0)
        mat_to = min((last + 2) * bs, ctx.length)

        local = [r for r in store if r.pos0 < mat_to and r.end0 > mat_from]
        full = ctx.build_matrix(local, mat_from, mat_to)
        if not all(full.is_covered(pos) for pos in full.positions()):
            # uncovered columns would trivially look heterogeneous
            continue

        fl, tr = first - 4, last + 5
        half = (tr - fl - 1) // 2
        left = ctx.build_matrix(_flatten(store.alignments_in_range(fl, fl + half)), mat_from, mat_to)
        right = ctx.build_matrix(_flatten(store.alignments_in_range(tr - half, tr)), mat_from, mat_to)

        deltas = entropy_deltas(left, right)
        if not deltas:
            continue
        score = sum(1 for d in deltas if d > cfg.chimera_entropy_delta) / len(deltas)
        region = ChimeraRegion(
            start0=first * bs,
            end0=min((last + 1) * bs, ctx.length),
            deltas=tuple(deltas),
            score=score,
        )
        logger.debug("%s: dip bins %d-%d, chimera score %.3f", ctx.id, first, last, score)
        regions.append(region)

    return regions
