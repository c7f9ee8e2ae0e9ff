import threading

import pytest

from furyadapp.collections_cache import CachedCollectionsProvider


def _provider(items):
    provider = CachedCollectionsProvider(lambda: list(items))
    assert provider.refresh() is True
    return provider


def test_empty_before_first_fetch():
    provider = CachedCollectionsProvider(lambda: ["a"])
    assert list(provider.collections(10, 0)) == []


def test_paging_slices_the_cache():
    items = ["a", "b", "c", "d", "e"]
    provider = _provider(items)
    assert list(provider.collections(2, 1)) == items[1:3]
    assert list(provider.collections(10, 3)) == items[3:]
    assert list(provider.collections(len(items), 0)) == items


@pytest.mark.parametrize("offset", [5, 6, 100])
def test_offset_at_or_past_end_yields_nothing(offset):
    provider = _provider(["a", "b", "c", "d", "e"])
    assert list(provider.collections(3, offset)) == []


def test_failed_fetch_keeps_previous_data():
    calls = []

    def fetch():
        calls.append(1)
        if len(calls) > 1:
            raise RuntimeError("upstream down")
        return ["x", "y"]

    provider = CachedCollectionsProvider(fetch)
    assert provider.refresh() is True
    assert provider.refresh() is False
    assert list(provider.collections(10, 0)) == ["x", "y"]


def test_background_refresh_with_context_manager():
    fetched = threading.Event()

    def fetch():
        fetched.set()
        return ["one", "two"]

    provider = CachedCollectionsProvider(fetch, refresh_delay=60)
    with provider:
        assert fetched.wait(5)
    assert provider._thread is None
    assert list(provider.collections(1, 1)) == ["two"]


def test_stop_without_start_is_harmless():
    provider = _provider(["a"])
    provider.stop()
    provider.stop()
    assert list(provider.collections(1, 0)) == ["a"]