"""Minority haplotype separation.

One corrective pass over a reference context:

1. call variants on the full matrix;
2. penalize alignments carrying non-reference bases at SNP columns (every
   second flagged alignment is dropped, the others are re-admitted with a
   lowered score);
3. estimate the coverage of the reference-supporting haplotype from the
   reference allele frequencies at SNP columns;
4. accept the estimate only if SNP columns are frequent enough relative to
   columns with clearly higher coverage;
5. if accepted, cap the store to that coverage; then recall a consensus that
   favours the reference allele at SNP columns.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, List, Optional, Sequence

import numpy as np

from .caller import haplo_consensus
from .models import AdmitOutcome, ConsensusResult, PolishError, VariantColumn, VariantsNotCalledError

if TYPE_CHECKING:
    from .context import ReferenceContext

logger = logging.getLogger(__name__)


@dataclass
class PenaltyStats:
    flagged: int = 0
    discarded: int = 0
    readmitted: int = 0
    rejected: int = 0
    displaced: int = 0
    snp_mismatches: int = 0


@dataclass(frozen=True)
class CoverageEstimate:
    estimate: Optional[float]
    snp_columns: int
    high_coverage_columns: int
    ratio: float
    accepted: bool


@dataclass
class SeparationResult:
    penalty: PenaltyStats
    coverage: CoverageEstimate
    evicted: int
    variants: List[VariantColumn]
    consensus: ConsensusResult


def penalize_variants(ctx: "ReferenceContext", vars_: Optional[Sequence[VariantColumn]]) -> PenaltyStats:
    """Penalize retained alignments that disagree with the reference at SNPs."""
    if not vars_:
        raise VariantsNotCalledError("Variants not yet called")
    if ctx.ref is None:
        raise PolishError(f"{ctx.id}: haplotype separation requires a reference sequence")

    cfg = ctx.config
    store = ctx.store
    ref = ctx.ref
    is_snp = [v.is_snp() for v in vars_]
    # lower effective score; inverted scores grow when worse
    sign = 1.0 if cfg.invert_scores else -1.0

    stats = PenaltyStats()
    for iid in store.iids():
        if iid not in store:
            # displaced by an earlier re-admission
            continue
        record = store.get(iid)
        n_var = 0
        for i, base in enumerate(record.aligned_sequence()):
            col = record.pos0 + i
            if col >= len(is_snp):
                break
            if is_snp[col] and base.upper() != ref.base(col):
                n_var += 1
        if not n_var:
            continue

        stats.flagged += 1
        stats.snp_mismatches += n_var
        store.remove(iid)
        if stats.flagged % cfg.penalize_keep_every:
            stats.discarded += 1
            continue

        assert record.raw_score is not None
        evicted = store.stats.evicted
        outcome = store.admit(record.with_score(record.raw_score + sign * n_var * cfg.snp_penalty))
        if outcome is AdmitOutcome.ADMITTED:
            stats.readmitted += 1
        else:
            stats.rejected += 1
        stats.displaced += store.stats.evicted - evicted

    logger.debug(
        "%s: %d alignments with %d SNP mismatches; %d discarded, %d re-admitted, %d displaced",
        ctx.id,
        stats.flagged,
        stats.snp_mismatches,
        stats.discarded,
        stats.readmitted,
        stats.displaced,
    )
    return stats


def haplo_coverage(ctx: "ReferenceContext", vars_: Optional[Sequence[VariantColumn]]) -> CoverageEstimate:
    """Estimate the coverage of the reference-supporting haplotype."""
    if not vars_:
        raise VariantsNotCalledError("Variants not yet called")
    if ctx.ref is None:
        raise PolishError(f"{ctx.id}: haplotype separation requires a reference sequence")

    cfg = ctx.config
    snp_cols = 0
    ref_freqs: List[float] = []
    for i, var in enumerate(vars_):
        if not var.is_snp():
            continue
        snp_cols += 1
        f = var.freq_of(ctx.ref.base(i))
        if f is not None:
            ref_freqs.append(f)

    if not ref_freqs:
        return CoverageEstimate(None, snp_cols, 0, 0.0, False)

    estimate = float(np.quantile(ref_freqs, cfg.haplo_quantile, method="lower"))
    high = sum(1 for v in vars_ if v.coverage >= estimate * cfg.haplo_high_coverage_factor)
    ratio = snp_cols / high if high else 0.0
    accepted = estimate > 0 and ratio > cfg.haplo_significance
    return CoverageEstimate(estimate, snp_cols, high, ratio, accepted)


def separate(ctx: "ReferenceContext", **build_kwargs) -> SeparationResult:
    """Run one haplotype separation pass and return the final consensus."""
    cfg = ctx.config

    vars_ = ctx.call_variants(min_freq=cfg.variant_min_freq, **build_kwargs)
    penalty = penalize_variants(ctx, vars_)

    vars_ = ctx.call_variants(min_freq=cfg.variant_min_freq, **build_kwargs)
    cov = haplo_coverage(ctx, vars_)

    evicted = 0
    if cov.accepted:
        assert cov.estimate is not None
        if cov.estimate < ctx.store.max_coverage:
            evicted = ctx.store.set_capacity(cov.estimate)
        logger.info(
            "%s: haplotype coverage %.1f accepted (ratio %.5f); %d alignments evicted",
            ctx.id,
            cov.estimate,
            cov.ratio,
            evicted,
        )
    else:
        logger.info("%s: no significant minority haplotype (ratio %.5f)", ctx.id, cov.ratio)

    vars_ = ctx.call_variants(min_freq=cfg.haplo_min_freq, min_prob=cfg.haplo_min_prob, **build_kwargs)
    con = haplo_consensus(
        vars_,
        ref=ctx.ref,
        seq_id=ctx.id,
        ref_preference=cfg.haplo_ref_preference,
    )
    ctx.consensus_result = con
    return SeparationResult(penalty=penalty, coverage=cov, evicted=evicted, variants=vars_, consensus=con)
