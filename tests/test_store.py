from itertools import permutations

import pytest

from polishcons.models import AdmitOutcome, AlignmentRecord
from polishcons.store import AlignmentStore


def make_record(name: str, pos0: int, length: int = 60, score=None) -> AlignmentRecord:
    return AlignmentRecord(
        qname=name,
        rname="ref",
        pos0=pos0,
        cigar=((0, length),),
        seq="A" * length,
        raw_score=2.0 * length if score is None else score,
    )


def test_unlimited_capacity_keeps_everything():
    store = AlignmentStore(500, bin_size=20, max_coverage=10_000)
    records = [make_record(f"r{i}", pos0) for i, pos0 in enumerate([300, 10, 150, 10, 420])]
    outcomes = [store.admit(r) for r in records]

    assert outcomes == [AdmitOutcome.ADMITTED] * 5
    assert len(store) == 5
    assert [r.pos0 for r in store.records(sorted_by_pos=True)] == [10, 10, 150, 300, 420]
    assert store.stats.admitted == 5


def test_unscored_alignment_is_not_stored():
    store = AlignmentStore(500)
    rec = AlignmentRecord(qname="x", rname="ref", pos0=0, cigar=((0, 60),), seq="A" * 60)
    assert store.admit(rec) is AdmitOutcome.UNSCORED
    assert len(store) == 0
    assert store.stats.unscored == 1


def test_full_bin_retention_is_order_independent():
    # bin_max_bases == 20: one 60 bp alignment fills a bin
    records = [
        make_record("low", 0, score=100),
        make_record("high", 0, score=120),
        make_record("mid", 0, score=110),
    ]
    for order in permutations(records):
        store = AlignmentStore(200, bin_size=20, max_coverage=1)
        for rec in order:
            store.admit(rec)
        assert [r.qname for r in store] == ["high"]


def test_equal_score_does_not_displace():
    store = AlignmentStore(200, bin_size=20, max_coverage=1)
    assert store.admit(make_record("first", 0, score=100)) is AdmitOutcome.ADMITTED
    assert store.admit(make_record("second", 0, score=100)) is AdmitOutcome.REJECTED
    assert [r.qname for r in store] == ["first"]
    assert store.stats.rejected == 1


def test_set_capacity_evicts_lowest_scores_but_keeps_one():
    store = AlignmentStore(200, bin_size=20, max_coverage=1000)
    for i in range(10):
        store.admit(make_record(f"r{i}", 0, score=100 + i))
    assert len(store) == 10

    evicted = store.set_capacity(1)
    assert evicted == 9
    assert [r.qname for r in store] == ["r9"]
    assert store.stats.evicted == 9


def test_remove_get_and_range_queries():
    store = AlignmentStore(100, bin_size=20, max_coverage=50)
    store.admit(make_record("a", 0))
    store.admit(make_record("b", 40))
    iid_a, iid_b = store.iids(sorted_by_pos=True)

    assert store.get(iid_b).qname == "b"
    assert store.remove(iid_a).qname == "a"
    assert store.remove(iid_a) is None
    with pytest.raises(KeyError):
        store.get(iid_a)

    bins = store.alignments_in_range(-5, 100)
    assert len(bins) == len(store.bins) == 5
    assert [r.qname for b in bins for r in b] == ["b"]
    # center of a 60 bp alignment at 40 is 70 -> bin 3
    assert store.bin_bases()[3] == 60


def test_bin_of_is_clamped_to_reference():
    store = AlignmentStore(50, bin_size=20)
    assert store.bin_of(make_record("past-end", 45, length=60)) == len(store.bins) - 1


def _check_bin(store: AlignmentStore, b: int) -> list:
    bin_ = store.bins[b]
    assert len(bin_.iids) == len(bin_.scores) == len(bin_.lengths)
    assert all(s1 >= s2 for s1, s2 in zip(bin_.scores, bin_.scores[1:]))
    for iid, score, length in zip(bin_.iids, bin_.scores, bin_.lengths):
        record = store.get(iid)
        assert store.score_of(record) == score
        assert record.length == length
    assert bin_.bases == sum(bin_.lengths)
    return [store.get(iid).qname for iid in bin_.iids]


def test_bin_scores_descend_and_ties_keep_admission_order():
    store = AlignmentStore(500, bin_size=20, max_coverage=10_000)
    # (name, length, raw score); all centred on column 110 -> bin 5
    specs = [("a", 60, 120), ("b", 60, 200), ("c", 80, 160), ("d", 60, 120), ("e", 40, 80), ("f", 60, 200)]
    for name, length, score in specs:
        store.admit(make_record(name, 110 - length // 2, length=length, score=score))

    assert _check_bin(store, 5) == ["b", "f", "c", "a", "d", "e"]

    iid_c = next(i for i in store.iids() if store.get(i).qname == "c")
    store.remove(iid_c)
    assert _check_bin(store, 5) == ["b", "f", "a", "d", "e"]

    assert store.set_capacity(5) == 4
    assert _check_bin(store, 5) == ["b"]
