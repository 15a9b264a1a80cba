"""
Tests for the context network aggregator and its Redis cache.

The cache tests use an in-memory fake or a MagicMock Redis client, so no
server is needed.
"""

import json
from unittest.mock import MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from contextbank import redis_client
from contextbank.bounded_context import BoundedContextManager
from contextbank.constants import NETWORK_CACHE_GENERATION_KEY, NETWORK_CACHE_KEY
from contextbank.context_network import ContextNetworkAggregator


class TestNetwork:
    """Test the network view and global metrics."""

    def test_empty_network(self, network, clock):
        """An empty network reports zero average complexity."""
        result = network.network()

        assert result.contexts == []
        assert result.relationships == []
        assert result.global_metrics.total_contexts == 0
        assert result.global_metrics.average_complexity == 0.0
        assert result.global_metrics.last_update == clock.now

    def test_metrics(self, contexts, network, clock):
        """Counts, total cost and average complexity cover every context."""
        a = contexts.create("A", "module", initial_payload={"k": 1})
        b = contexts.create("B", "risk", initial_payload={"x": [1, 2, 3]})
        contexts.unlock(a.id, "review", duration=3600)
        clock.advance(minutes=1)
        contexts.link(a.id, b.id, "informs", strength=0.4)

        result = network.network()
        metrics = result.global_metrics

        assert metrics.total_contexts == 2
        assert metrics.unlocked_contexts == 1
        assert metrics.locked_contexts == 1
        assert metrics.total_cost > 0
        expected = sum(c.complexity_score for c in result.contexts) / 2
        assert metrics.average_complexity == expected
        assert metrics.last_update == clock.now
        assert [(r.from_context_id, r.to_context_id) for r in result.relationships] == [(a.id, b.id)]

    def test_reflects_transitions_without_cache(self, contexts, network):
        """Without Redis every call is computed fresh."""
        assert network.network().global_metrics.total_contexts == 0
        contexts.create("A", "file")
        assert network.network().global_metrics.total_contexts == 1


# =============================================================================
# Fake Redis
# =============================================================================


class FakeRedis:
    """In-memory stand-in for the few Redis commands the cache uses."""

    def __init__(self):
        self.data = {}
        self.ttls = {}

    def get(self, key):
        return self.data.get(key)

    def setex(self, key, ttl, value):
        self.data[key] = value
        self.ttls[key] = ttl

    def delete(self, key):
        self.data.pop(key, None)

    def incr(self, key):
        self.data[key] = str(int(self.data.get(key, 0)) + 1)
        return int(self.data[key])


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def cached_contexts(session_factory, knowledge_store, audit, clock, fake_redis):
    """A context manager that invalidates the fake Redis on every transition."""
    return BoundedContextManager(
        session_factory,
        knowledge_store=knowledge_store,
        audit=audit,
        clock=clock,
        cache_client=fake_redis,
    )


@pytest.fixture
def cached_network(session_factory, clock, fake_redis):
    return ContextNetworkAggregator(session_factory, cache_client=fake_redis, clock=clock)


class TestNetworkCache:
    """Test Redis caching of the network view."""

    def test_cache_miss_populates_cache(self, cached_network, fake_redis):
        """A miss computes the view and stores it with the configured TTL."""
        cached_network.network()

        entry = json.loads(fake_redis.data[NETWORK_CACHE_KEY])
        assert fake_redis.ttls[NETWORK_CACHE_KEY] > 0
        assert entry["generation"] == 0
        assert entry["network"]["global_metrics"]["total_contexts"] == 0

    def test_cache_hit_skips_database(self, fake_redis, clock):
        """A cached view is returned without touching the database."""
        cached = {
            "contexts": [],
            "relationships": [],
            "global_metrics": {
                "total_contexts": 7,
                "locked_contexts": 7,
                "unlocked_contexts": 0,
                "total_cost": 0.0,
                "average_complexity": 1.5,
                "last_update": "2024-01-01T12:00:00",
            },
        }
        fake_redis.data[NETWORK_CACHE_KEY] = json.dumps({"generation": 0, "network": cached})
        session_factory = MagicMock()
        aggregator = ContextNetworkAggregator(session_factory, cache_client=fake_redis, clock=clock)

        result = aggregator.network()

        assert result.global_metrics.total_contexts == 7
        session_factory.assert_not_called()

    def test_transition_invalidates_cache(self, cached_contexts, cached_network, fake_redis):
        """Every state-machine transition drops the cached view and bumps the generation."""
        created = cached_contexts.create("A", "module")
        assert cached_network.network().global_metrics.locked_contexts == 1
        assert NETWORK_CACHE_KEY in fake_redis.data

        cached_contexts.unlock(created.id, "review", duration=60)

        assert NETWORK_CACHE_KEY not in fake_redis.data
        assert fake_redis.data[NETWORK_CACHE_GENERATION_KEY] == "2"
        assert cached_network.network().global_metrics.unlocked_contexts == 1

    def test_transition_during_rebuild_is_not_cached(
        self, cached_contexts, cached_network, fake_redis, monkeypatch
    ):
        """A view built before a concurrent transition committed is never served."""
        created = cached_contexts.create("A", "module")
        original_build = cached_network._build

        def build_then_transition():
            view = original_build()
            # Another worker commits a transition before this view is cached
            cached_contexts.unlock(created.id, "review", duration=60)
            return view

        monkeypatch.setattr(cached_network, "_build", build_then_transition)
        stale = cached_network.network()
        monkeypatch.setattr(cached_network, "_build", original_build)

        assert stale.global_metrics.locked_contexts == 1
        assert NETWORK_CACHE_KEY not in fake_redis.data

        fresh = cached_network.network()
        assert fresh.global_metrics.unlocked_contexts == 1
        assert fresh.global_metrics.locked_contexts == 0

    def test_stale_entry_rejected_on_read(self, cached_network, fake_redis):
        """An entry written under an older generation reads as a miss."""
        fake_redis.data[NETWORK_CACHE_KEY] = json.dumps({
            "generation": 0,
            "network": {"contexts": [], "relationships": [], "global_metrics": {}},
        })
        fake_redis.incr(NETWORK_CACHE_GENERATION_KEY)

        assert redis_client.get_cached_network(client=fake_redis) is None
        assert cached_network.network().global_metrics.total_contexts == 0
        assert json.loads(fake_redis.data[NETWORK_CACHE_KEY])["generation"] == 1

    def test_redis_errors_degrade_to_miss(self, session_factory, clock):
        """Redis failures are logged and the view is computed from the database."""
        client = MagicMock()
        client.get.side_effect = RedisConnectionError("down")
        client.setex.side_effect = RedisConnectionError("down")
        aggregator = ContextNetworkAggregator(session_factory, cache_client=client, clock=clock)

        result = aggregator.network()

        assert result.global_metrics.total_contexts == 0
        client.setex.assert_not_called()

    def test_no_client_disables_cache(self):
        """Without a configured client the helpers are no-ops."""
        assert redis_client.redis_client is None
        assert redis_client.network_generation() is None
        assert redis_client.get_cached_network() is None
        assert redis_client.cache_network({"a": 1}, 0) is False
        assert redis_client.invalidate_network() is False
