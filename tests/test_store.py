"""Tests for the in-memory document store and chunked batch writes."""

import pytest

from conftest import FlakyDocumentStore
from lotg.core.errors import ConflictError, InvalidRequestError
from lotg.core.store import BATCH_WRITE_LIMIT, InMemoryDocumentStore, chunked


def _item(pk, created_at, **attrs):
    item = {"PK": pk, "SK": "METADATA", "Type": "BankQuestion", "createdAt": created_at}
    item.update(attrs)
    return item


class TestInMemoryDocumentStore:

    def test_get_missing_is_none(self, store):
        assert store.get("QUESTION#nope") is None

    def test_put_replaces(self, store):
        store.put(_item("A", "1", status="pending_review"))
        store.put(_item("A", "1", status="approved"))
        assert store.get("A")["status"] == "approved"
        assert len(store) == 1

    def test_put_new_conflicts_on_existing_key(self, store):
        store.put_new(_item("A", "1"))
        with pytest.raises(ConflictError):
            store.put_new(_item("A", "2"))
        assert store.get("A")["createdAt"] == "1"

    def test_items_require_keys(self, store):
        with pytest.raises(InvalidRequestError):
            store.put({"PK": "A"})

    def test_update_is_partial_and_keeps_keys(self, store):
        store.put(_item("A", "1", status="pending_review", law="Law 3"))
        updated = store.update("A", "METADATA", {"status": "approved", "PK": "B"})
        assert updated["status"] == "approved"
        assert updated["law"] == "Law 3"
        assert updated["PK"] == "A"
        assert store.get("B") is None

    def test_update_missing_is_none(self, store):
        assert store.update("A", "METADATA", {"status": "approved"}) is None

    def test_returned_items_are_copies(self, store):
        store.put(_item("A", "1", options=["a", "b"]))
        fetched = store.get("A")
        fetched["options"].append("c")
        assert store.get("A")["options"] == ["a", "b"]

    def test_query_orders_by_created_at(self, store):
        store.put(_item("B", "2026-01-02", status="pending_review"))
        store.put(_item("A", "2026-01-03", status="pending_review"))
        store.put(_item("C", "2026-01-01", status="pending_review"))
        store.put(_item("D", "2026-01-04", status="approved"))

        oldest = store.query("status-createdAt", "pending_review")
        newest = store.query("status-createdAt", "pending_review", newest_first=True, limit=2)

        assert [i["PK"] for i in oldest] == ["C", "B", "A"]
        assert [i["PK"] for i in newest] == ["A", "B"]

    def test_query_sort_value_and_filters(self, store):
        store.put(_item("A", "1", law="Law 3", status="approved", jobId="J1"))
        store.put(_item("B", "2", law="Law 3", status="pending_review", jobId="J1"))
        store.put(_item("C", "3", law="Law 3", status="approved", jobId="J2"))

        assert [i["PK"] for i in store.query("law-status", "Law 3", sort_value="approved")] == ["A", "C"]
        assert [i["PK"] for i in store.query("law-status", "Law 3", filters={"jobId": "J1"})] == ["A", "B"]

    def test_unknown_index(self, store):
        with pytest.raises(InvalidRequestError):
            store.query("by-color", "red")


class TestBatchPut:

    def test_chunked(self):
        assert [len(c) for c in chunked(list(range(60)))] == [25, 25, 10]
        assert chunked([]) == []

    def test_writes_in_chunks_of_25(self):
        store = InMemoryDocumentStore()
        items = [_item(f"Q{i:03d}", str(i)) for i in range(60)]

        result = store.batch_put(items)

        assert BATCH_WRITE_LIMIT == 25
        assert result.chunks_total == 3
        assert result.written == result.staged == 60
        assert result.complete
        assert len(store) == 60

    def test_failed_chunk_is_reported_and_later_chunks_still_written(self):
        store = FlakyDocumentStore(failing_chunks={1})
        items = [_item(f"Q{i:03d}", str(i)) for i in range(60)]

        result = store.batch_put(items)

        assert not result.complete
        assert result.failed_chunks == [1]
        assert result.chunks_written == 2
        assert result.written == 35
        assert result.failed_keys == [f"Q{i:03d}" for i in range(25, 50)]
        assert len(store) == 35
        assert store.get("Q055") is not None
