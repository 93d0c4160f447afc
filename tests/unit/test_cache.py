"""Unit tests for the result cache and the backoff policy."""

from __future__ import annotations

import pytest

from graphql_authlink.cache import ResultCache
from graphql_authlink.transport.retry import RetryPolicy

# =============================================================================
# ResultCache
# =============================================================================


class TestResultCache:
    """Tests for ResultCache."""

    def test_put_and_get(self) -> None:
        cache = ResultCache()

        assert cache.put("k", {"viewer": {"id": "1"}})
        assert cache.get("k") == {"viewer": {"id": "1"}}
        assert "k" in cache
        assert len(cache) == 1

    def test_get_returns_copy(self) -> None:
        cache = ResultCache()
        cache.put("k", {"items": [1]})

        cache.get("k")["items"].append(2)

        assert cache.get("k") == {"items": [1]}

    def test_clear_bumps_generation(self) -> None:
        cache = ResultCache()
        cache.put("k", {"a": 1})

        cache.clear()

        assert cache.get("k") is None
        assert cache.generation == 1

    def test_stale_generation_write_dropped(self) -> None:
        """A response started before a reset cannot repopulate the cache."""
        cache = ResultCache()
        generation = cache.generation
        cache.clear()

        assert cache.put("k", {"previous_user": True}, generation) is False
        assert "k" not in cache

    def test_invalidate(self) -> None:
        cache = ResultCache()
        cache.put("k", {"a": 1})

        cache.invalidate("k")
        cache.invalidate("missing")

        assert len(cache) == 0


# =============================================================================
# RetryPolicy
# =============================================================================


class TestRetryPolicy:
    """Tests for RetryPolicy."""

    def test_default_delays(self) -> None:
        assert list(RetryPolicy().delays()) == pytest.approx([0.3, 0.6, 1.2, 2.4])

    def test_single_attempt_has_no_delays(self) -> None:
        assert list(RetryPolicy(max_attempts=1).delays()) == []

    def test_max_delay_caps(self) -> None:
        policy = RetryPolicy(initial_delay=1.0, max_delay=3.0, max_attempts=5)

        assert list(policy.delays()) == [1.0, 2.0, 3.0, 3.0]

    def test_jitter_is_additive(self) -> None:
        policy = RetryPolicy(initial_delay=1.0, jitter=(0.3, 3.0))

        for _ in range(20):
            assert 1.3 <= policy.delay_for(0) <= 4.0

    @pytest.mark.parametrize(
        "kwargs", [{"max_attempts": 0}, {"initial_delay": -1.0}]
    )
    def test_invalid(self, kwargs) -> None:
        with pytest.raises(ValueError):
            RetryPolicy(**kwargs)
