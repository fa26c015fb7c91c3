# backend/tests/test_conversion_cache.py

"""
Unit tests for the conversion cache
"""

from conversion_cache import ConversionCache
from conversion_graph import ConversionGraph
from path_resolver import ResolvedPath


class TestConversionCache:

    def test_path_miss_then_hit(self):
        cache = ConversionCache()
        key = (16, 2, ())

        assert cache.lookup_path(key) == (False, None)
        cache.store_path(key, ResolvedPath((16, 2), (None,)), cache.generation)

        assert cache.lookup_path(key) == (True, ResolvedPath((16, 2), (None,)))
        assert cache.info()["path_hits"] == 1
        assert cache.info()["path_misses"] == 1

    def test_negative_path_is_a_hit(self):
        cache = ConversionCache()
        key = (3, 16, ())

        cache.store_path(key, None, cache.generation)

        assert cache.lookup_path(key) == (True, None)
        assert cache.info()["negative_paths_cached"] == 1

    def test_invalidate_drops_everything(self):
        cache = ConversionCache()
        cache.store_graph(None, ConversionGraph(), cache.generation)
        cache.store_path((3, 16, ()), None, cache.generation)

        cache.invalidate("test")

        assert cache.generation == 1
        assert cache.get_graph(None) is None
        assert cache.lookup_path((3, 16, ())) == (False, None)
        info = cache.info()
        assert (info["graphs"], info["paths"], info["invalidations"]) == (0, 0, 1)

    def test_stale_generation_not_stored(self):
        cache = ConversionCache()
        started = cache.generation
        cache.invalidate("concurrent mutation")

        assert cache.store_graph(13, ConversionGraph(), started) is False
        assert cache.store_path((3, 5, (13,)), None, started) is False
        assert cache.get_graph(13) is None
        assert cache.info()["paths"] == 0
