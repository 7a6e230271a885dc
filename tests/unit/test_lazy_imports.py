"""Tests for the lazy RedisCacheStore imports in the package __init__ modules."""

import pytest


class TestTopLevelLazyImports:
    def test_lazy_redis_cache_store_import(self):
        from fhir_batch_query import RedisCacheStore
        from fhir_batch_query.cache.redis import RedisCacheStore as direct

        assert RedisCacheStore is direct

    def test_unknown_attribute_raises_attribute_error(self):
        import fhir_batch_query

        with pytest.raises(
            AttributeError,
            match=r"module 'fhir_batch_query' has no attribute 'FakeClass'",
        ):
            _ = fhir_batch_query.FakeClass


class TestCacheLazyImports:
    def test_lazy_redis_cache_store_import(self):
        from fhir_batch_query.cache import RedisCacheStore

        assert RedisCacheStore.__name__ == "RedisCacheStore"

    def test_unknown_attribute_raises_attribute_error(self):
        import fhir_batch_query.cache

        with pytest.raises(AttributeError, match=r"has no attribute"):
            _ = fhir_batch_query.cache.NonExistentAttribute

    def test_public_exports(self):
        import fhir_batch_query

        for name in fhir_batch_query.__all__:
            assert getattr(fhir_batch_query, name) is not None
