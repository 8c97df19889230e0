"""Tests for the in-memory archive cache."""

import itertools
import threading

import pytest

from archive_cache import (
    ArchiveCache,
    CacheNotFoundError,
    CacheRefreshError,
    InvalidKeyError,
    InvalidValueError,
)
from models import Archive


class FakeArchiveSource:
    def __init__(self, archives=None, error=None):
        self.archives = archives or []
        self.error = error

    def get_all_archives(self):
        if self.error is not None:
            raise self.error
        return list(self.archives)


def archive(archive_id, name=None):
    name = name or f'archive-{archive_id}'
    return Archive(id=archive_id, name=name, path=f'/data/{name}')


@pytest.fixture
def cache():
    return ArchiveCache(FakeArchiveSource())


def run_concurrently(count, target):
    barrier = threading.Barrier(count)
    results = [None] * count
    errors = []

    def worker(index):
        barrier.wait()
        try:
            results[index] = target()
        except Exception as e:
            errors.append(e)

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(count)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=10)
    assert not errors
    return results


def test_get_missing_then_put(cache):
    for key in (1, 7, 42):
        with pytest.raises(CacheNotFoundError):
            cache.get(key)

    stored = archive(7)
    cache.put(stored)

    assert cache.get(7) is stored
    assert cache.exists(7)
    assert 7 in cache
    assert len(cache) == 1


def test_zero_key_is_invalid(cache):
    cache.put(archive(1))

    with pytest.raises(InvalidKeyError):
        cache.get(0)
    with pytest.raises(InvalidKeyError):
        cache.delete(0)
    assert cache.exists(0) is False


def test_put_rejects_missing_archive_and_zero_id(cache):
    with pytest.raises(InvalidValueError):
        cache.put(None)
    with pytest.raises(InvalidKeyError):
        cache.put(Archive(name='new', path='/new'))


def test_delete_unknown_id_is_noop(cache):
    cache.put(archive(1))
    cache.delete(99)
    cache.delete(1)
    assert len(cache) == 0


def test_get_all_returns_copy(cache):
    cache.put(archive(1))
    snapshot = cache.get_all()
    snapshot.pop(1)
    snapshot[2] = archive(2)

    assert cache.get(1).id == 1
    with pytest.raises(CacheNotFoundError):
        cache.get(2)


def test_refresh_replaces_contents():
    source = FakeArchiveSource([archive(1), archive(2)])
    cache = ArchiveCache(source)
    cache.refresh()
    assert sorted(cache.get_all()) == [1, 2]

    source.archives = [archive(3)]
    cache.refresh()
    assert sorted(cache.get_all()) == [3]


def test_refresh_failure_leaves_cache_untouched():
    source = FakeArchiveSource([archive(1)])
    cache = ArchiveCache(source)
    cache.refresh()

    source.error = RuntimeError("database is locked")
    with pytest.raises(CacheRefreshError, match="database is locked"):
        cache.refresh()

    assert sorted(cache.get_all()) == [1]


def test_clear_does_not_touch_previous_copies(cache):
    cache.put(archive(1))
    before = cache.get_all()
    cache.clear()

    assert len(cache) == 0
    assert list(before) == [1]


def test_get_or_create_returns_existing_without_creating(cache):
    stored = archive(5)
    cache.put(stored)
    calls = []

    result = cache.get_or_create(5, lambda: calls.append(1) or archive(5))

    assert result is stored
    assert calls == []


def test_get_or_create_rejects_bad_results(cache):
    with pytest.raises(InvalidValueError):
        cache.get_or_create(0, lambda: None)
    with pytest.raises(InvalidKeyError):
        cache.get_or_create(0, lambda: Archive(name='x', path='/x'))
    assert len(cache) == 0


def test_get_or_create_propagates_create_errors(cache):
    def fail():
        raise ValueError("name taken")

    with pytest.raises(ValueError, match="name taken"):
        cache.get_or_create(0, fail)
    assert len(cache) == 0


def test_concurrent_creates_with_zero_key_are_not_coalesced(cache):
    ids = itertools.count(1)
    lock = threading.Lock()
    calls = []

    def create():
        with lock:
            new_id = next(ids)
            calls.append(new_id)
        return archive(new_id)

    count = 16
    results = run_concurrently(count, lambda: cache.get_or_create(0, create))

    assert len(calls) == count
    assert len(cache) == count
    assert sorted(a.id for a in results) == list(range(1, count + 1))


def test_concurrent_creates_for_same_key_agree_on_one_value(cache):
    lock = threading.Lock()
    calls = []

    def create():
        value = archive(9, name=f'candidate-{threading.get_ident()}')
        with lock:
            calls.append(value)
        return value

    count = 16
    results = run_concurrently(count, lambda: cache.get_or_create(9, create))

    assert len(calls) >= 1
    assert len(cache) == 1
    final = cache.get(9)
    assert all(result is final for result in results)


class WritingDuringReadSource(FakeArchiveSource):
    """Runs ``during_read`` after the snapshot is taken, before it is returned."""

    def __init__(self, archives, during_read):
        super().__init__(archives)
        self.during_read = during_read

    def get_all_archives(self):
        snapshot = super().get_all_archives()
        self.during_read()
        return snapshot


def test_writes_during_refresh_survive_the_swap():
    cache = ArchiveCache(FakeArchiveSource())
    cache.put(archive(2))
    created = archive(3)

    def write():
        cache.get_or_create(0, lambda: created)
        cache.put(archive(1, 'renamed'))
        cache.delete(2)

    cache.db_service = WritingDuringReadSource([archive(1), archive(2)], write)
    cache.refresh()

    assert cache.get(3) is created
    assert cache.get(1).name == 'renamed'
    assert not cache.exists(2)


def test_failed_refresh_stops_tracking_writes():
    cache = ArchiveCache(FakeArchiveSource(error=RuntimeError('db gone')))
    with pytest.raises(CacheRefreshError):
        cache.refresh()

    cache.put(archive(1))
    cache.db_service = FakeArchiveSource([archive(2)])
    cache.refresh()

    assert list(cache.get_all()) == [2]
