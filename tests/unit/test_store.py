"""
Unit tests for ResultStore.

Tests:
- Append/get round trip
- Filtering, ordering and limits
- Missing ids and store failures
- Concurrent appends
"""

from __future__ import annotations

import threading
from datetime import UTC, datetime, timedelta

import pytest

from conftest import make_descriptor, make_result
from kmatrix.errors import ResultNotFound, StoreError
from kmatrix.matrix.models import Verdict
from kmatrix.store import ResultFilter, ResultStore


@pytest.fixture
def store(tmp_path):
    with ResultStore(tmp_path / "results.db") as store:
        yield store


class TestAppend:
    def test_assigns_increasing_ids(self, store):
        first = store.append(make_result())
        second = store.append(make_result())
        assert first.id is not None
        assert second.id > first.id

    def test_round_trip(self, store):
        original = make_result(Verdict.TEST_FAILED, tag="rt", attempt=3)
        stored = store.append(original)

        fetched = store.get(stored.id)

        assert fetched == stored
        assert fetched.request == original.request
        assert fetched.verdict is Verdict.TEST_FAILED
        assert fetched.reason == "test_failed"
        assert fetched.output == original.output
        assert fetched.started_at == original.started_at

    def test_persists_across_connections(self, tmp_path):
        db_path = tmp_path / "results.db"
        with ResultStore(db_path) as store:
            stored = store.append(make_result(tag="durable"))

        with ResultStore(db_path) as reopened:
            assert reopened.get(stored.id).request.tag == "durable"

    def test_closed_store_raises_store_error(self, tmp_path):
        store = ResultStore(tmp_path / "results.db")
        store.close()
        with pytest.raises(StoreError):
            store.append(make_result())

    def test_concurrent_appends(self, store):
        def _append(worker: int) -> None:
            for attempt in range(10):
                store.append(make_result(tag=f"w{worker}", attempt=attempt))

        threads = [threading.Thread(target=_append, args=(i,)) for i in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        results = store.query()
        assert len(results) == 40
        assert len({r.id for r in results}) == 40


class TestGet:
    def test_missing_id(self, store):
        with pytest.raises(ResultNotFound) as excinfo:
            store.get(42)
        assert excinfo.value.result_id == 42

    def test_missing_id_is_lookup_error(self, store):
        with pytest.raises(LookupError):
            store.get(1)


class TestQuery:
    def test_newest_first_by_default(self, store):
        ids = [store.append(make_result(attempt=i)).id for i in range(3)]
        assert [r.id for r in store.query()] == list(reversed(ids))

    def test_oldest_first(self, store):
        ids = [store.append(make_result(attempt=i)).id for i in range(3)]
        assert [r.id for r in store.query(ResultFilter(newest_first=False))] == ids

    def test_filter_by_tag(self, store):
        store.append(make_result(tag="a"))
        store.append(make_result(tag="b"))
        store.append(make_result(tag="a"))
        assert {r.request.tag for r in store.query(ResultFilter(tag="a"))} == {"a"}
        assert len(store.query(ResultFilter(tag="a"))) == 2

    def test_filter_by_time(self, store):
        base = datetime(2026, 3, 1, tzinfo=UTC)
        for day in range(3):
            store.append(make_result(started_at=base + timedelta(days=day)))

        window = ResultFilter(since=base + timedelta(days=1), until=base + timedelta(days=2))
        results = store.query(window)

        assert [r.started_at for r in results] == [base + timedelta(days=1)]

    def test_limit(self, store):
        for i in range(5):
            store.append(make_result(attempt=i))
        results = store.query(ResultFilter(limit=2))
        assert [r.request.attempt for r in results] == [4, 3]

    def test_limit_oldest_first_keeps_most_recent(self, store):
        for i in range(5):
            store.append(make_result(attempt=i))
        results = store.query(ResultFilter(limit=2, newest_first=False))
        assert [r.request.attempt for r in results] == [3, 4]

    def test_filter_by_artifact(self, store, artifact):
        store.append(make_result(artifact=artifact))
        store.append(make_result())
        results = store.query(ResultFilter(artifact="hello"))
        assert len(results) == 2

    def test_empty(self, store):
        assert store.query(ResultFilter(tag="nothing")) == []

    def test_tags(self, store):
        store.append(make_result(tag="b"))
        store.append(make_result(tag="a", target=make_descriptor(release="x")))
        store.append(make_result(tag="b"))
        assert store.tags() == ["a", "b"]
