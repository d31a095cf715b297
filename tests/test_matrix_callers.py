import pytest

from polishcons.caller import consensus, haplo_consensus, variants
from polishcons.cigar import TrimSettings
from polishcons.matrix import StateMatrix, build_matrix
from polishcons.models import AlignmentRecord, ReferenceSeq, VariantColumn
from polishcons.utils import compress_trace, freq_to_phred, phred_to_freq


def matrix_with(column: dict, start: int = 0) -> StateMatrix:
    m = StateMatrix(start, start + 1)
    for state, freq in column.items():
        m.add(start, state, freq)
    return m


def make_record(seq: str, pos0: int = 0, quals=None) -> AlignmentRecord:
    return AlignmentRecord(
        qname="r",
        rname="ref",
        pos0=pos0,
        cigar=((0, len(seq)),),
        seq=seq,
        quals=quals,
        raw_score=2.0 * len(seq),
    )


def test_phred_frequency_transforms():
    assert freq_to_phred(0) == 0
    assert freq_to_phred(10) == 35
    assert freq_to_phred(1000) == 40
    assert phred_to_freq(40) == 13.33
    assert phred_to_freq(20) == 3.33
    assert compress_trace("MMMDMMII") == "3M1D2M2I"


def test_majority_consensus():
    result = consensus(matrix_with({"A": 10, "T": 3}))
    assert result.seq == "A"
    assert result.freqs == (10.0,)
    assert result.trace == "M"


def test_tie_goes_to_lowest_state_index():
    # T is added first, but A has the lower fixed index
    assert consensus(matrix_with({"T": 3, "A": 3})).seq == "A"


def test_long_insertions_can_be_excluded():
    m = matrix_with({"A": 5, "AT": 6})
    assert consensus(m, max_ins_length=1).seq == "A"

    result = consensus(m)
    assert result.seq == "AT"
    assert result.freqs == (6.0, 6.0)
    assert result.cigar == "1M1D"


def test_gap_winner_emits_nothing():
    result = consensus(matrix_with({"-": 5, "A": 1}))
    assert result.seq == ""
    assert result.trace == "I"


def test_uncovered_columns_fall_back():
    m = StateMatrix(0, 3)
    m.add(1, "G", 4)
    ref = ReferenceSeq(id="ref", seq="acT")
    assert consensus(m, ref=ref).seq == "aGT"
    assert consensus(m, ref=ref).freqs == (0.0, 4.0, 0.0)
    assert consensus(m).seq == "nGn"


def test_variant_thresholds():
    m = matrix_with({"A": 20, "G": 5, "T": 1})
    assert variants(m, min_freq=4)[0].states == ("A", "G")
    assert variants(m, min_freq=4, min_prob=0.5)[0].states == ("A",)
    all_states = variants(m, min_freq=0, min_prob=0)[0]
    assert all_states.states == ("A", "G", "T")
    assert all_states.probs[0] == pytest.approx(20 / 26)
    assert all_states.coverage == 26


def test_top_candidate_always_kept_and_uncovered_marked():
    m = StateMatrix(0, 2)
    m.add(0, "C", 1)
    vars_ = variants(m, min_freq=4)
    assert vars_[0].states == ("C",)
    assert not vars_[1].is_covered


def test_is_snp_requires_plain_bases():
    assert VariantColumn(("A", "G"), (5, 4), (0.5, 0.4), 10).is_snp()
    assert not VariantColumn(("A", "-"), (5, 4), (0.5, 0.4), 10).is_snp()
    assert not VariantColumn(("A", "AT"), (5, 4), (0.5, 0.4), 10).is_snp()
    assert not VariantColumn(("A",), (5,), (1.0,), 5).is_snp()


def test_build_matrix_counts_and_quality_weighting():
    seq = "A" * 60
    records = [make_record(seq) for _ in range(3)]
    records.append(make_record("A" * 5 + "G" + "A" * 54, quals=(40,) * 60))

    m = build_matrix(records, 0, 60)
    assert m.column(5) == {"A": 3.0, "G": 1.0}
    assert m.stats.used == 4

    weighted = build_matrix(records, 0, 60, qual_weighted=True, fallback_phred=1)
    # missing qualities fall back to phred 1 -> 0.01
    assert weighted.column(5) == {"A": pytest.approx(0.03), "G": 13.33}


def test_ignore_ranges_and_range_restriction():
    records = [make_record("C" * 60), make_record("C" * 60)]
    m = build_matrix(records, 0, 60, ignore=[(0, 10)])
    assert not m.is_covered(0)
    assert m.is_covered(10)
    assert m.stats.ignored == 20

    window = build_matrix(records, 20, 30)
    assert len(window) == 10
    assert window.stats.outside == 100
    assert window.coverage(25) == 2.0


def test_seeds_add_prior_frequencies():
    m = build_matrix([], 0, 3, trim=TrimSettings(enabled=False), seeds=[(0, "acg", [20, 0, 40])])
    assert m.column(0) == {"A": 3.33}
    assert not m.is_covered(1)
    assert m.column(2) == {"G": 13.33}


def test_haplo_consensus_reference_preference():
    ref = ReferenceSeq(id="ref", seq="AAA")
    vars_ = [
        VariantColumn(("G", "A"), (6, 4), (0.6, 0.4), 10),
        VariantColumn(("G", "A"), (5, 5), (0.5, 0.5), 10),
        VariantColumn(("-", "A"), (6, 1), (0.86, 0.14), 7),
    ]
    assert haplo_consensus(vars_, ref=ref).seq == "GA"
    assert haplo_consensus(vars_, ref=ref, ref_preference="candidate").seq == "AAA"
    with pytest.raises(ValueError):
        haplo_consensus(vars_, ref=ref, ref_preference="other")


def test_reference_only_preferred_at_snp_columns():
    ref = ReferenceSeq(id="ref", seq="AC")
    vars_ = [
        VariantColumn(("AT", "A"), (5, 5), (0.5, 0.5), 10),
        VariantColumn(("G", "C"), (5, 5), (0.5, 0.5), 10),
    ]
    # an insertion tie is not a SNP: the first candidate stands
    assert haplo_consensus(vars_, ref=ref).seq == "ATC"
    assert haplo_consensus(vars_, ref=ref, ref_preference="candidate").seq == "AC"
