from polishcons.config import ConsensusConfig
from polishcons.context import ReferenceContext
from polishcons.models import AlignmentRecord, ReferenceSeq


def make_record(name: str, pos0: int, score: float, length: int = 60) -> AlignmentRecord:
    return AlignmentRecord(
        qname=name,
        rname="ref",
        pos0=pos0,
        cigar=((0, length),),
        seq="A" * length,
        raw_score=score,
    )


def test_score_filters():
    ctx = ReferenceContext("ref", 300)
    ctx.admit_all([make_record("good", 0, 100.0), make_record("poor", 100, 30.0)])

    assert ctx.filter_by_score() == 0  # no cutoff configured
    assert ctx.filter_by_ncscore(0.9) == 1  # 100/60 * 60/100 = 1.0 survives
    assert [r.qname for r in ctx.alignments()] == ["good"]

    ctx.admit(make_record("poor", 100, 30.0))
    assert ctx.filter_by_nscore(1.0) == 1
    assert ctx.filter_by_score(101.0) == 1
    assert len(ctx.store) == 0


def test_repeat_windows_are_flanked_and_clamped():
    ctx = ReferenceContext("ref", 100, ConsensusConfig(rep_coverage=5, rep_flank=10))
    cov = [0.0] * 100
    cov[0:5] = [6.0] * 5
    cov[40:50] = [6.0] * 10
    assert ctx.repeat_windows(cov) == [(0, 15), (30, 30)]

    assert ReferenceContext("ref", 100).repeat_windows(cov) == []


def test_repeat_filter_drops_contained_alignments():
    ctx = ReferenceContext("ref", 300, ConsensusConfig(rep_coverage=3, rep_flank=0))
    ctx.admit_all(make_record(f"rep{i}", 0, 100.0) for i in range(3))
    ctx.admit(make_record("single", 100, 100.0))

    assert ctx.filter_rep_regions() == 3
    assert [r.qname for r in ctx.alignments()] == ["single"]


def test_coverage_and_header():
    ctx = ReferenceContext("ref", 300)
    ctx.admit_all([make_record("a", 0, 100.0), make_record("b", 30, 100.0)])
    cov = ctx.coverage()
    assert (cov[0], cov[45], cov[80], cov[200]) == (1.0, 2.0, 1.0, 0.0)
    assert ctx.sam_header() == "@SQ\tSN:ref\tLN:300\n"


def test_precorrected_sequence_seeds_consensus():
    ctx = ReferenceContext.from_reference(ReferenceSeq(id="ref", seq="TTTT"))
    result = ctx.consensus(precorrected=[(0, "ACG", [40, 40, 40])])
    assert result.seq == "ACGT"
    assert result.freqs == (13.33, 13.33, 13.33, 0.0)
