"""
Unit tests for the compiled rule cache.
"""

import pytest

from shared.errors import CompilationError
from service_rules.app.cache.compiled_cache import CompiledRuleCache
from service_rules.app.rules.models import CompiledRule, ConditionGroup


def compiled(rule_id, model_hash="h1") -> CompiledRule:
    return CompiledRule(
        rule_id=rule_id,
        rule_name=f"rule-{rule_id}",
        fact_type="Order",
        predicate=ConditionGroup(),
        effects=(),
        model_hash=model_hash
    )


class TestCompiledRuleCache:
    """Test cases for CompiledRuleCache."""

    @pytest.fixture
    def cache(self):
        """Create cache instance."""
        return CompiledRuleCache(max_rule_sets=2)

    def test_get_and_put(self, cache):
        """Test lookups are keyed by rule-set, rule id and model hash."""
        cache.put(100, compiled(1))

        assert cache.get(100, 1, "h1").rule_name == "rule-1"
        assert cache.get("100", "1", "h1") is not None
        assert cache.get(100, 1, "h2") is None
        assert cache.get(200, 1, "h1") is None

    def test_new_hash_replaces_old(self, cache):
        """Test a recompiled rule drops its stale entry."""
        cache.put(100, compiled(1, "h1"))
        cache.put(100, compiled(1, "h2"))

        assert cache.get(100, 1, "h1") is None
        assert cache.get(100, 1, "h2") is not None
        assert cache.size() == 1

    def test_get_or_compile(self, cache):
        """Test compile is only called on a miss."""
        calls = []

        def compile_fn():
            calls.append(1)
            return compiled(1)

        first = cache.get_or_compile(100, 1, "h1", compile_fn)
        second = cache.get_or_compile(100, 1, "h1", compile_fn)

        assert first is second
        assert len(calls) == 1

    def test_compile_errors_are_not_cached(self, cache):
        """Test failures propagate and leave no entry."""
        def broken():
            raise CompilationError("bad rule")

        with pytest.raises(CompilationError):
            cache.get_or_compile(100, 1, "h1", broken)
        assert cache.size() == 0

    def test_invalidate(self, cache):
        """Test invalidation by rule, by rule-set and globally."""
        cache.put(100, compiled(1))
        cache.put(100, compiled(2))
        cache.put(200, compiled(3))

        assert cache.invalidate(project_id=100, rule_id=1) == 1
        assert cache.get(100, 2, "h1") is not None
        assert cache.invalidate(project_id=100) == 1
        assert cache.invalidate(project_id=100) == 0
        assert cache.invalidate() == 1
        assert cache.size() == 0

    def test_invalidate_rule_across_rule_sets(self, cache):
        """Test invalidating a rule id without a rule-set."""
        cache.put(100, compiled(1))
        cache.put(200, compiled(1))

        assert cache.invalidate(rule_id=1) == 2

    def test_lru_eviction(self, cache):
        """Test least recently used rule-sets are evicted first."""
        cache.put(100, compiled(1))
        cache.put(200, compiled(2))
        cache.get(100, 1, "h1")
        cache.put(300, compiled(3))

        assert cache.get(100, 1, "h1") is not None
        assert cache.get(200, 2, "h1") is None
        assert cache.get(300, 3, "h1") is not None
