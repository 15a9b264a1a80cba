"""
Context Network Aggregator.

Read-only view over every bounded context, their relationships and fleet-wide
metrics. Results are cached in Redis when it is configured; bounded-context
transitions invalidate the cache.
"""

import logging
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.orm import sessionmaker

from .database import SessionLocal, get_db_context, translate_storage_errors
from .db_models import DBBoundedContext, DBContextRelationship, utcnow
from .models import BoundedContext, ContextNetwork, ContextRelationship, LockStatus, NetworkMetrics
from . import redis_client

logger = logging.getLogger(__name__)


class ContextNetworkAggregator:
    """Builds the ContextNetwork view."""

    def __init__(
        self,
        session_factory: Optional[sessionmaker] = None,
        cache_client=None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._session_factory = session_factory or SessionLocal
        self._cache_client = cache_client
        self._clock = clock or utcnow

    def network(self, use_cache: bool = True) -> ContextNetwork:
        """All contexts, all relationships and global metrics."""
        if use_cache:
            cached = redis_client.get_cached_network(client=self._cache_client)
            if cached:
                logger.debug("Network view served from cache")
                return ContextNetwork.model_validate(cached)

        # Read before building so a transition committed mid-build voids this view
        generation = redis_client.network_generation(client=self._cache_client) if use_cache else None
        network = self._build()

        if use_cache:
            redis_client.cache_network(
                network.model_dump(mode="json"), generation, client=self._cache_client
            )
        return network

    @translate_storage_errors("context_network")
    def _build(self) -> ContextNetwork:
        with get_db_context(self._session_factory) as db:
            contexts = [
                BoundedContext.model_validate(row)
                for row in db.query(DBBoundedContext).order_by(DBBoundedContext.created_at).all()
            ]
            relationships = [
                ContextRelationship.model_validate(row)
                for row in db.query(DBContextRelationship).order_by(DBContextRelationship.id).all()
            ]

        return ContextNetwork(
            contexts=contexts,
            relationships=relationships,
            global_metrics=compute_metrics(contexts, self._clock()),
        )


def compute_metrics(contexts, now: datetime) -> NetworkMetrics:
    """Aggregate metrics; average complexity of an empty network is 0.0."""
    total = len(contexts)
    locked = sum(1 for c in contexts if c.lock_status == LockStatus.LOCKED)
    return NetworkMetrics(
        total_contexts=total,
        locked_contexts=locked,
        unlocked_contexts=total - locked,
        total_cost=round(sum(c.cost for c in contexts), 6),
        average_complexity=sum(c.complexity_score for c in contexts) / total if total else 0.0,
        last_update=max((c.last_updated for c in contexts), default=now),
    )
