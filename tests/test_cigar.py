import pytest

from polishcons.cigar import TrimSettings, decode
from polishcons.matrix import build_matrix
from polishcons.models import AlignmentRecord, CigarError

NO_TRIM = TrimSettings(enabled=False)


def make_record(seq: str, cigar, pos0: int = 100, quals=None) -> AlignmentRecord:
    return AlignmentRecord(
        qname="r1",
        rname="ref",
        pos0=pos0,
        cigar=tuple(cigar),
        seq=seq,
        quals=quals,
        raw_score=100.0,
    )


def test_match_only_round_trip():
    seq = "ACGTTGCAAG" * 6
    obs = decode(make_record(seq, [(0, 60)]))
    assert [o.state for o in obs] == list(seq)
    assert [o.column for o in obs] == list(range(100, 160))


def test_short_alignment_only_dropped_when_trimming():
    seq = "ACGT" * 10
    rec = make_record(seq, [(0, 40)])
    assert decode(rec) is None
    assert len(decode(rec, NO_TRIM)) == 40


def test_insertion_extends_previous_state():
    obs = decode(make_record("ACGTTGCA", [(0, 3), (1, 2), (0, 3)], pos0=0), NO_TRIM)
    assert [o.state for o in obs] == ["A", "C", "GTT", "G", "C", "A"]
    assert [o.column for o in obs] == list(range(6))


def test_insertion_after_deletion_replaces_gap():
    obs = decode(make_record("ACGTGCA", [(0, 3), (2, 1), (1, 1), (0, 3)], pos0=0), NO_TRIM)
    assert [o.state for o in obs] == ["A", "C", "G", "T", "G", "C", "A"]


def test_deletion_quality_is_min_of_flanks():
    obs = decode(make_record("ACGT", [(0, 2), (2, 1), (0, 2)], pos0=0, quals=(30, 20, 10, 40)), NO_TRIM)
    assert obs[2].state == "-"
    assert obs[2].quals == (10,)


def test_leading_insertion_is_prefixed():
    obs = decode(make_record("TTACG", [(1, 2), (0, 3)], pos0=0), NO_TRIM)
    assert [o.state for o in obs] == ["TTA", "C", "G"]
    assert obs[0].column == 0


def test_soft_clips_are_skipped():
    obs = decode(make_record("GGACGTT", [(4, 2), (0, 3), (4, 2)], pos0=10), NO_TRIM)
    assert [(o.column, o.state) for o in obs] == [(10, "A"), (11, "C"), (12, "G")]


def test_unknown_opcode_raises():
    with pytest.raises(CigarError):
        decode(make_record("ACGTA", [(0, 3), (7, 2)]), NO_TRIM)


def test_sequence_length_mismatch_raises():
    with pytest.raises(CigarError):
        decode(make_record("ACGT", [(0, 5)]), NO_TRIM)


def test_malformed_alignment_is_counted_and_skipped():
    good = make_record("A" * 60, [(0, 60)], pos0=0)
    bad = make_record("A" * 60, [(0, 30), (3, 5), (0, 30)], pos0=0)
    matrix = build_matrix([good, bad], 0, 70)
    assert matrix.stats.malformed == 1
    assert matrix.stats.used == 1
    assert matrix.coverage(0) == 1.0


def test_head_indel_in_taboo_zone_is_trimmed():
    seq = "C" * 5 + "G" + "A" * 94
    obs = decode(make_record(seq, [(0, 5), (1, 1), (0, 94)], pos0=0))
    assert len(obs) == 94
    assert obs[0].column == 5
    assert all(o.state == "A" for o in obs)


def test_tail_indel_in_taboo_zone_is_trimmed():
    seq = "A" * 94 + "C" * 6
    obs = decode(make_record(seq, [(0, 94), (2, 2), (0, 6)], pos0=0))
    assert len(obs) == 94
    assert obs[-1].column == 93
    assert all(o.state == "A" for o in obs)


def test_fixed_taboo_length():
    seq = "C" * 5 + "G" + "A" * 94
    obs = decode(make_record(seq, [(0, 5), (1, 1), (0, 94)], pos0=0), TrimSettings(taboo_length=2))
    # indel lies beyond a 2 bp taboo zone and survives
    assert obs[4].state == "CG"
    assert len(obs) == 99


def test_consecutive_leading_insertions_are_joined():
    obs = decode(make_record("TTGGGACG", [(1, 2), (1, 3), (0, 3)], pos0=0), NO_TRIM)
    assert [o.state for o in obs] == ["TTGGGA", "C", "G"]
    assert obs[0].column == 0
