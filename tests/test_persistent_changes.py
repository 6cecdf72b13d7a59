import pytest

from splitproxy.dtos import SplitDTO
from splitproxy.persistent import (
    BOLT_IN_MEMORY_MODE,
    BucketNotFoundError,
    KeyNotFoundError,
    open_db,
)
from splitproxy.persistent_changes import (
    SegmentChangesCollection,
    SegmentKey,
    SplitChangesCollection,
)


@pytest.fixture
def db():
    wrapper = open_db(BOLT_IN_MEMORY_MODE)
    yield wrapper
    wrapper.close()


def test_segment_persistent_storage(db):
    segments = SegmentChangesCollection(db)
    segments.update("s1", {"k1", "k2"}, set(), 1)
    for_s1 = segments.fetch("s1")
    assert for_s1.name == "s1"
    assert len(for_s1.keys) == 2
    assert not for_s1.keys["k1"].removed

    with pytest.raises(KeyNotFoundError):
        segments.fetch("s2")

    segments.update("s1", set(), {"k1"}, 2)
    for_s1 = segments.fetch("s1")
    assert for_s1.name == "s1"
    assert len(for_s1.keys) == 2
    assert for_s1.keys["k1"].removed
    assert for_s1.keys["k1"] == SegmentKey(name="k1", change_number=2, removed=True)
    assert for_s1.keys["k2"] == SegmentKey(name="k2", change_number=1, removed=False)


def test_segment_fetch_before_any_update_raises(db):
    with pytest.raises(BucketNotFoundError):
        SegmentChangesCollection(db).fetch("s1")


def test_segment_change_numbers(db):
    segments = SegmentChangesCollection(db)
    assert segments.change_number("s1") == -1
    segments.update("s1", {"k1"}, set(), 5)
    assert segments.change_number("s1") == 5
    segments.set_change_number("s1", 7)
    assert segments.change_number("s1") == 7


def test_segment_skips_non_string_keys(db):
    segments = SegmentChangesCollection(db)
    segments.update("s1", {"k1", 42}, set(), 1)
    assert set(segments.fetch("s1").keys) == {"k1"}


def test_segment_fetch_all(db):
    segments = SegmentChangesCollection(db)
    segments.update("s1", {"k1"}, set(), 1)
    segments.update("s2", {"k2", "k3"}, set(), 2)
    items = {item.name: item for item in segments.fetch_all()}
    assert set(items) == {"s1", "s2"}
    assert set(items["s2"].keys) == {"k2", "k3"}


def test_segment_data_survives_new_collection_instance(db):
    SegmentChangesCollection(db).update("s1", {"k1"}, set(), 1)
    assert set(SegmentChangesCollection(db).fetch("s1").keys) == {"k1"}


def test_split_persistent_storage(db):
    splits = SplitChangesCollection(db)
    splits.update(
        [
            SplitDTO(name="s1", change_number=1, status="ACTIVE"),
            SplitDTO(name="s2", change_number=1, status="ACTIVE"),
        ],
        None,
        1,
    )
    fetched = splits.fetch_all()
    assert len(fetched) == 2
    assert fetched[0].name == "s1"
    assert fetched[1].name == "s2"
    assert splits.change_number() == 1

    splits.update([SplitDTO(name="s1", change_number=2, status="ARCHIVED")], None, 2)
    fetched = splits.fetch_all()
    assert len(fetched) == 2
    assert fetched[0].name == "s1"
    assert fetched[0].status == "ARCHIVED"
    assert splits.change_number() == 2


def test_split_round_trip_keeps_every_field(db):
    split = SplitDTO(
        name="f1",
        change_number=3,
        traffic_type_name="ttt",
        status="ACTIVE",
        default_treatment="off",
        conditions=[{"conditionType": "ROLLOUT"}],
        sets=["s1", "s2"],
    )
    splits = SplitChangesCollection(db)
    splits.update(None, [split], 3)
    assert splits.fetch_all() == [split]


def test_split_change_number_starts_at_zero(db):
    assert SplitChangesCollection(db).change_number() == 0


def test_split_fetch_all_before_any_update_raises(db):
    with pytest.raises(BucketNotFoundError):
        SplitChangesCollection(db).fetch_all()