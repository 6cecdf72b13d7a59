import json
import struct
from dataclasses import dataclass

import pytest

from splitproxy.persistent import (
    BOLT_IN_MEMORY_MODE,
    BucketNotFoundError,
    CollectionWrapper,
    KeyNotFoundError,
    btoi,
    itob,
    open_db,
)


@dataclass
class _Record:
    value: str
    id: int = 0


@pytest.fixture
def db():
    wrapper = open_db(BOLT_IN_MEMORY_MODE)
    yield wrapper
    wrapper.close()


def test_itob():
    assert struct.unpack(">Q", itob(12345))[0] == 12345


def test_btoi():
    assert btoi(struct.pack(">Q", 12345)) == 12345


def test_itob_is_eight_bytes_big_endian():
    assert itob(1) == b"\x00\x00\x00\x00\x00\x00\x00\x01"
    assert len(itob(2**64 - 1)) == 8


@pytest.mark.parametrize("value", [0, 1, 255, 256, 12345, 2**63, 2**64 - 1])
def test_itob_btoi_round_trip(value):
    assert btoi(itob(value)) == value


def test_btoi_rejects_short_buffer():
    with pytest.raises(struct.error):
        btoi(b"\x01\x02")


def test_save_as_and_fetch_by(db):
    coll = CollectionWrapper(db, "C")
    coll.save_as("k1", {"a": 1})
    assert json.loads(coll.fetch_by("k1")) == {"a": 1}
    assert json.loads(coll.fetch_by(b"k1")) == {"a": 1}


def test_save_as_replaces_previous_value(db):
    coll = CollectionWrapper(db, "C")
    coll.save_as("k1", b"first")
    coll.save_as("k1", b"second")
    assert coll.fetch_by("k1") == b"second"


def test_fetch_on_missing_bucket_raises(db):
    coll = CollectionWrapper(db, "MISSING")
    with pytest.raises(BucketNotFoundError):
        coll.fetch_by("k")
    with pytest.raises(BucketNotFoundError):
        coll.fetch_all()


def test_fetch_on_missing_key_raises(db):
    coll = CollectionWrapper(db, "C")
    coll.save_as("k1", b"x")
    with pytest.raises(KeyNotFoundError):
        coll.fetch_by("k2")
    with pytest.raises(KeyNotFoundError):
        coll.fetch(99)


def test_buckets_are_independent(db):
    first = CollectionWrapper(db, "A")
    second = CollectionWrapper(db, "B")
    first.save_as("k", b"from-a")
    second.save_as("k", b"from-b")
    assert first.fetch_by("k") == b"from-a"
    assert second.fetch_by("k") == b"from-b"


def test_save_assigns_sequential_ids(db):
    coll = CollectionWrapper(db, "SEQ")
    first, second = _Record("one"), _Record("two")
    assert coll.save(first) == 1
    assert coll.save(second) == 2
    assert first.id == 1
    assert json.loads(coll.fetch(2)) == {"value": "two", "id": 2}


def test_update_rewrites_item(db):
    coll = CollectionWrapper(db, "SEQ")
    record = _Record("one")
    coll.save(record)
    record.value = "changed"
    coll.update(record)
    assert json.loads(coll.fetch(record.id))["value"] == "changed"


def test_update_rejects_zero_id(db):
    coll = CollectionWrapper(db, "SEQ")
    with pytest.raises(ValueError):
        coll.update(_Record("no id"))


def test_delete_removes_item(db):
    coll = CollectionWrapper(db, "C")
    coll.save_as("k1", b"x")
    coll.delete("k1")
    with pytest.raises(KeyNotFoundError):
        coll.fetch_by("k1")


def test_fetch_all_is_ordered_by_key(db):
    coll = CollectionWrapper(db, "C")
    coll.save_as("b", b"2")
    coll.save_as("c", b"3")
    coll.save_as("a", b"1")
    assert coll.fetch_all() == [b"1", b"2", b"3"]


def test_raw_snapshot_grows_with_content(db):
    before = db.get_raw_snapshot()
    CollectionWrapper(db, "C").save_as("k", b"some data to store")
    after = db.get_raw_snapshot()
    assert len(after) > len(before)
    assert b"items" in after


def test_temporary_database_is_removed_on_close():
    wrapper = open_db(BOLT_IN_MEMORY_MODE)
    path = wrapper.path
    assert path.exists()
    wrapper.close()
    assert not path.exists()


def test_file_database_persists(tmp_path):
    path = tmp_path / "data.db"
    with open_db(path) as wrapper:
        CollectionWrapper(wrapper, "C").save_as("k", b"kept")
    with open_db(path) as wrapper:
        assert CollectionWrapper(wrapper, "C").fetch_by("k") == b"kept"