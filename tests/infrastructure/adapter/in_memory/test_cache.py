"""
Tests for the in-memory operation cache.
"""

import threading

import pytest

from flexflow.infrastructure.adapter.in_memory.cache import InMemoryOperationCache


class TestInMemoryOperationCache:
    """Test cases for InMemoryOperationCache."""

    def setup_method(self):
        """Setup test fixtures."""
        self.cache = InMemoryOperationCache()

    def test_set_and_get(self):
        """Test storing and retrieving a value."""
        self.cache.set("k", {"genes": ["BRCA1"]})

        assert self.cache.get("k") == {"genes": ["BRCA1"]}
        assert self.cache.has("k") is True

    def test_missing_key(self):
        """Test a missing key raises KeyError."""
        with pytest.raises(KeyError):
            self.cache.get("missing")
        assert self.cache.has("missing") is False

    def test_values_are_copied(self):
        """Test neither the stored nor the returned value aliases callers."""
        value = {"genes": ["BRCA1"]}
        self.cache.set("k", value)
        value["genes"].append("TP53")
        self.cache.get("k")["genes"].append("EGFR")

        assert self.cache.get("k") == {"genes": ["BRCA1"]}

    def test_clear(self):
        """Test clearing the cache."""
        self.cache.set("a", 1)
        self.cache.set("b", 2)
        self.cache.clear()

        assert len(self.cache) == 0

    def test_concurrent_writes(self):
        """Test concurrent writers do not lose entries."""

        def write(prefix):
            for i in range(200):
                self.cache.set(f"{prefix}-{i}", i)

        threads = [threading.Thread(target=write, args=(p,)) for p in "abcd"]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(self.cache) == 800
