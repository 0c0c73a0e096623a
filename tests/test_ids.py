from __future__ import annotations

import threading

import pytest

from codex_jsonl_rpc.ids import RequestIdAllocator


def test_ids_start_above_zero_and_strictly_increase() -> None:
    ids = RequestIdAllocator()
    assert ids.last == 0
    values = [ids.next() for _ in range(100)]
    assert values[0] == 1
    assert values == sorted(set(values))
    assert ids.last == 100


def test_ids_are_unique_across_threads() -> None:
    ids = RequestIdAllocator()
    results: list[list[int]] = [[] for _ in range(8)]

    def _worker(bucket: list[int]) -> None:
        for _ in range(500):
            bucket.append(ids.next())

    threads = [threading.Thread(target=_worker, args=(bucket,)) for bucket in results]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    merged = [value for bucket in results for value in bucket]
    assert len(merged) == len(set(merged)) == 4000
    assert set(merged) == set(range(1, 4001))
    for bucket in results:
        assert bucket == sorted(bucket)


def test_allocators_are_independent() -> None:
    first = RequestIdAllocator()
    second = RequestIdAllocator()
    assert first.next() == 1
    assert first.next() == 2
    assert second.next() == 1


def test_allocator_rejects_non_positive_start() -> None:
    with pytest.raises(ValueError):
        RequestIdAllocator(start=0)
    assert RequestIdAllocator(start=10).next() == 10
