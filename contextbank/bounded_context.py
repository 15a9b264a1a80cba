"""
Bounded-Context State Machine.

A bounded context is a lockable, versioned unit of structured knowledge:

    locked  --unlock(reason, duration)-->  unlocked
    unlocked --lock()-->                   locked

teach() and update() succeed only while the context is "currently
unlockable": lock_status is unlocked AND some unlock window [start, end)
contains now. Every transition persists the payload through the document
chunker, writes an audit entry and invalidates the cached network view.
"""

import json
import logging
import threading
import uuid
import weakref
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from sqlalchemy.orm import Session, sessionmaker

from .audit import AuditSink, DatabaseAuditSink
from .config import settings
from .constants import (
    COMPLEXITY_BYTES_PER_POINT,
    COMPLEXITY_PER_RELATIONSHIP,
    COMPLEXITY_PER_SESSION,
    COST_PER_TEACHING,
    COST_PER_TEACHING_KB,
    COST_PER_UNLOCK,
    COST_PER_UPDATE,
    DEFAULT_TEACHING_CONFIDENCE,
    MAX_STRUCTURE_COMPLEXITY,
    SCHEDULE_PERIOD_SECONDS,
    STRUCTURE_WEIGHT_PER_ITEM,
    STRUCTURE_WEIGHT_PER_KEY,
)
from .database import SessionLocal, get_db_context, translate_storage_errors
from .db_models import (
    DBBoundedContext,
    DBContextRelationship,
    DBTeaching,
    DBTeachingSession,
    DBUnlockWindow,
    utcnow,
)
from .exceptions import BoundedContextNotFound, ContextLocked, TeachingSessionNotFound
from .knowledge_store import KnowledgeDocumentStore
from .models import (
    BoundedContext,
    ContextChange,
    ContextRelationship,
    ContextType,
    LockStatus,
    RelationshipType,
    ScheduleFrequency,
    Teaching,
    TeachingSession,
    TeachingSource,
    TeachResult,
    UnlockWindow,
    find_active_window,
)
from . import redis_client

logger = logging.getLogger(__name__)

Duration = Union[timedelta, int, float]


# =============================================================================
# Complexity
# =============================================================================

def structure_complexity(value: Any) -> float:
    """0.2 per mapping key and 0.1 per list item, recursively."""
    if isinstance(value, dict):
        return sum(STRUCTURE_WEIGHT_PER_KEY + structure_complexity(v) for v in value.values())
    if isinstance(value, list):
        return sum(STRUCTURE_WEIGHT_PER_ITEM + structure_complexity(v) for v in value)
    return 0.0


def compute_complexity(
    payload: Dict[str, Any],
    relationship_count: int = 0,
    session_count: int = 0,
    max_complexity: Optional[float] = None,
) -> float:
    """
    Deterministic complexity score of a context.

    score = bytes / 10000
          + min(5, structure_complexity(payload))
          + 0.5 * relationships
          + 0.25 * teaching sessions

    capped at max_complexity (settings.max_complexity by default).
    """
    size = len(_to_json(payload).encode("utf-8"))
    score = (
        size / COMPLEXITY_BYTES_PER_POINT
        + min(MAX_STRUCTURE_COMPLEXITY, structure_complexity(payload))
        + COMPLEXITY_PER_RELATIONSHIP * relationship_count
        + COMPLEXITY_PER_SESSION * session_count
    )
    return round(min(max_complexity or settings.max_complexity, score), 4)


def teaching_cost(input: Any, learned: Any) -> float:
    """Base teaching cost plus 0.01 per KiB of serialized input and learned payload."""
    size = len(_to_json({"input": input, "learned": learned}).encode("utf-8"))
    return round(COST_PER_TEACHING + COST_PER_TEACHING_KB * size / 1024, 6)


def _to_json(value: Any) -> str:
    return json.dumps(value, sort_keys=True, ensure_ascii=False, default=str)


def _as_timedelta(duration: Optional[Duration]) -> timedelta:
    if duration is None:
        return timedelta(seconds=settings.default_unlock_seconds)
    if not isinstance(duration, timedelta):
        duration = timedelta(seconds=duration)
    if duration <= timedelta(0):
        raise ValueError(f"Unlock duration must be positive, got {duration}")
    return duration


# =============================================================================
# State Machine
# =============================================================================

class BoundedContextManager:
    """
    Lock/unlock/teach/update/schedule transitions over bounded contexts.

    Transitions on one context are serialized by a per-context lock and a
    row lock; transitions on different contexts run concurrently.
    """

    def __init__(
        self,
        session_factory: Optional[sessionmaker] = None,
        knowledge_store: Optional[KnowledgeDocumentStore] = None,
        audit: Optional[AuditSink] = None,
        clock: Optional[Callable[[], datetime]] = None,
        cache_client=None,
    ):
        """
        Args:
            session_factory: SQLAlchemy session factory (defaults to SessionLocal)
            knowledge_store: Where payloads are persisted through the chunker
            audit: Receives one entry per committed transition
            clock: Returns naive-UTC "now" (injectable for tests)
            cache_client: Redis client for network invalidation (module client by default)
        """
        self._session_factory = session_factory or SessionLocal
        self.knowledge_store = knowledge_store or KnowledgeDocumentStore(self._session_factory)
        self.audit = audit or DatabaseAuditSink(self._session_factory)
        self._clock = clock or utcnow
        self._cache_client = cache_client
        # Entries vanish once no caller holds or waits on the lock
        self._context_locks = weakref.WeakValueDictionary()
        self._context_locks_guard = threading.Lock()

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _context_lock(self, context_id: str) -> threading.Lock:
        with self._context_locks_guard:
            return self._context_locks.setdefault(context_id, threading.Lock())

    @staticmethod
    def _load(db: Session, context_id: str, for_update: bool = True) -> DBBoundedContext:
        query = db.query(DBBoundedContext).filter(DBBoundedContext.id == context_id)
        if for_update:
            query = query.with_for_update()
        context = query.first()
        if context is None:
            raise BoundedContextNotFound(context_id)
        return context

    @staticmethod
    def _require_unlockable(context: DBBoundedContext, now: datetime):
        """Return the active window, or raise ContextLocked."""
        if context.lock_status != LockStatus.UNLOCKED.value:
            raise ContextLocked(context.id)
        window = find_active_window(context.unlock_windows, now)
        if window is None:
            raise ContextLocked(context.id, "no unlock window covers the current time")
        return window

    def _persist_payload(self, db: Session, context: DBBoundedContext) -> None:
        self.knowledge_store.put_document(
            f"bounded_context:{context.id}",
            _to_json(context.payload),
            metadata={
                "context_id": context.id,
                "name": context.name,
                "context_type": context.context_type,
                "version": context.version,
            },
            db=db,
        )

    def _ratchet_complexity(self, context: DBBoundedContext) -> None:
        score = compute_complexity(
            context.payload,
            relationship_count=len(context.relationships or []),
            session_count=len(context.teaching_sessions),
        )
        context.complexity_score = max(context.complexity_score or 0.0, score)

    def _after_commit(self, context_id: str, action: str, reason: Optional[str] = None) -> None:
        self.audit.record("bounded_context", context_id, action, reason)
        redis_client.invalidate_network(client=self._cache_client)

    # -------------------------------------------------------------------------
    # Create / Read
    # -------------------------------------------------------------------------

    @translate_storage_errors("create_context")
    def create(
        self,
        name: str,
        context_type: Union[ContextType, str],
        description: Optional[str] = None,
        initial_payload: Optional[Dict[str, Any]] = None,
        relationships: Iterable[str] = (),
    ) -> BoundedContext:
        """Create a locked, version-1, zero-cost context."""
        context_type = ContextType(context_type)
        payload = dict(initial_payload or {})
        relationships = list(dict.fromkeys(relationships))
        now = self._clock()

        with get_db_context(self._session_factory) as db:
            context = DBBoundedContext(
                id=str(uuid.uuid4()),
                name=name,
                context_type=context_type.value,
                description=description,
                lock_status=LockStatus.LOCKED.value,
                version=1,
                cost=0.0,
                complexity_score=compute_complexity(payload, relationship_count=len(relationships)),
                payload=payload,
                relationships=relationships,
                created_at=now,
                last_updated=now,
            )
            db.add(context)
            db.flush()
            self._persist_payload(db, context)
            result = BoundedContext.model_validate(context)

        logger.info(f"Created bounded context {result.id} '{name}' ({context_type.value})")
        self._after_commit(result.id, "create")
        return result

    @translate_storage_errors("get_context")
    def get(self, context_id: str) -> BoundedContext:
        with get_db_context(self._session_factory) as db:
            return BoundedContext.model_validate(self._load(db, context_id, for_update=False))

    @translate_storage_errors("list_contexts")
    def list_contexts(self) -> List[BoundedContext]:
        with get_db_context(self._session_factory) as db:
            rows = db.query(DBBoundedContext).order_by(DBBoundedContext.created_at).all()
            return [BoundedContext.model_validate(r) for r in rows]

    def is_currently_unlockable(self, context_id: str) -> bool:
        return self.get(context_id).is_currently_unlockable(self._clock())

    # -------------------------------------------------------------------------
    # Lock / Unlock
    # -------------------------------------------------------------------------

    @translate_storage_errors("unlock_context")
    def unlock(
        self,
        context_id: str,
        reason: str,
        duration: Optional[Duration] = None,
        authorizer: Optional[str] = None,
    ) -> BoundedContext:
        """
        Open a window [now, now + duration) and mark the context unlocked.

        Unlocking an already-unlocked context appends another window and is
        charged again.
        """
        duration = _as_timedelta(duration)

        with self._context_lock(context_id):
            with get_db_context(self._session_factory) as db:
                context = self._load(db, context_id)
                now = self._clock()
                context.unlock_windows.append(DBUnlockWindow(
                    id=str(uuid.uuid4()),
                    start_at=now,
                    end_at=now + duration,
                    reason=reason,
                    authorizer=authorizer,
                    scheduled=False,
                    cost=COST_PER_UNLOCK,
                    changes=[],
                ))
                context.lock_status = LockStatus.UNLOCKED.value
                context.cost = (context.cost or 0.0) + COST_PER_UNLOCK
                context.last_updated = now
                db.flush()
                self._persist_payload(db, context)
                result = BoundedContext.model_validate(context)

        logger.info(f"Unlocked context {context_id} until {now + duration} by {authorizer}: {reason}")
        self._after_commit(context_id, "unlock", reason)
        return result

    @translate_storage_errors("lock_context")
    def lock(self, context_id: str) -> BoundedContext:
        """Lock the context and close the current window at now. Idempotent."""
        with self._context_lock(context_id):
            with get_db_context(self._session_factory) as db:
                context = self._load(db, context_id)
                if context.lock_status == LockStatus.LOCKED.value:
                    return BoundedContext.model_validate(context)

                now = self._clock()
                window = find_active_window(context.unlock_windows, now)
                if window is not None:
                    window.end_at = now
                context.lock_status = LockStatus.LOCKED.value
                context.last_updated = now
                db.flush()
                self._persist_payload(db, context)
                result = BoundedContext.model_validate(context)

        logger.info(f"Locked context {context_id}")
        self._after_commit(context_id, "lock")
        return result

    # -------------------------------------------------------------------------
    # Teaching
    # -------------------------------------------------------------------------

    @translate_storage_errors("teach_context")
    def teach(
        self,
        context_id: str,
        session_id: Optional[str] = None,
        input: Any = None,
        learned: Any = None,
        source: Union[TeachingSource, str] = TeachingSource.AI,
        confidence: float = DEFAULT_TEACHING_CONFIDENCE,
        teacher_id: Optional[str] = None,
    ) -> TeachResult:
        """
        Start a teaching session and/or append a teaching to one.

        Without ``session_id`` a new session is started. When both ``input``
        and ``learned`` are given a Teaching is appended; a dict ``learned`` is
        shallow-merged into the payload and bumps the version.

        Raises:
            ContextLocked: unless the context is currently unlockable
            TeachingSessionNotFound: if session_id is not a session of this context
        """
        source = TeachingSource(source)
        if not 0.0 <= confidence <= 1.0:
            raise ValueError(f"confidence must be within [0, 1], got {confidence}")

        with self._context_lock(context_id):
            with get_db_context(self._session_factory) as db:
                context = self._load(db, context_id)
                now = self._clock()
                window = self._require_unlockable(context, now)

                if session_id is None:
                    session = DBTeachingSession(
                        id=str(uuid.uuid4()),
                        source=source.value,
                        confidence=confidence,
                        teacher_id=teacher_id,
                        started_at=now,
                        total_cost=0.0,
                    )
                    context.teaching_sessions.append(session)
                    action = "teach_session_start"
                else:
                    session = next((s for s in context.teaching_sessions if s.id == session_id), None)
                    if session is None:
                        raise TeachingSessionNotFound(context_id, session_id)
                    if session.ended_at is not None:
                        raise ValueError(f"Teaching session {session_id} has ended")
                    action = "teach"

                teaching = None
                if input is not None and learned is not None:
                    cost = teaching_cost(input, learned)
                    teaching = DBTeaching(
                        id=str(uuid.uuid4()),
                        position=len(session.teachings),
                        input=input,
                        learned=learned,
                        confidence=confidence,
                        source=source.value,
                        cost=cost,
                        created_at=now,
                    )
                    session.teachings.append(teaching)
                    session.total_cost = (session.total_cost or 0.0) + cost
                    context.cost = (context.cost or 0.0) + cost
                    window.cost = (window.cost or 0.0) + cost

                    if isinstance(learned, dict):
                        context.payload = {**(context.payload or {}), **learned}
                        context.version += 1
                    action = "teach"

                self._ratchet_complexity(context)
                context.last_updated = now
                db.flush()
                self._persist_payload(db, context)

                result = TeachResult(
                    session_id=session.id,
                    teaching=Teaching.model_validate(teaching) if teaching is not None else None,
                    version=context.version,
                    cost=context.cost,
                )

        logger.info(f"Context {context_id} {action} in session {result.session_id} (v{result.version})")
        self._after_commit(context_id, action, f"session {result.session_id}")
        return result

    @translate_storage_errors("end_teaching_session")
    def end_session(self, context_id: str, session_id: str) -> TeachingSession:
        """Stamp the session's end time; ending twice keeps the first stamp."""
        with self._context_lock(context_id):
            with get_db_context(self._session_factory) as db:
                context = self._load(db, context_id)
                session = next((s for s in context.teaching_sessions if s.id == session_id), None)
                if session is None:
                    raise TeachingSessionNotFound(context_id, session_id)
                if session.ended_at is None:
                    session.ended_at = self._clock()
                db.flush()
                result = TeachingSession.model_validate(session)

        self._after_commit(context_id, "teach_session_end", f"session {session_id}")
        return result

    # -------------------------------------------------------------------------
    # Update
    # -------------------------------------------------------------------------

    @translate_storage_errors("update_context")
    def update(self, context_id: str, updates: Dict[str, Any], reason: str) -> BoundedContext:
        """
        Shallow-merge ``updates`` into the payload and bump the version.

        The reason is recorded as a change on the current unlock window.

        Raises:
            ContextLocked: unless the context is currently unlockable
        """
        if not isinstance(updates, dict):
            raise ValueError("updates must be a mapping")

        with self._context_lock(context_id):
            with get_db_context(self._session_factory) as db:
                context = self._load(db, context_id)
                now = self._clock()
                window = self._require_unlockable(context, now)

                change = ContextChange(
                    timestamp=now,
                    type="modification",
                    description=reason,
                    data=updates,
                    cost=COST_PER_UPDATE,
                )
                window.changes = [*(window.changes or []), change.model_dump(mode="json")]
                window.cost = (window.cost or 0.0) + COST_PER_UPDATE

                context.payload = {**(context.payload or {}), **updates}
                context.version += 1
                context.cost = (context.cost or 0.0) + COST_PER_UPDATE
                context.last_updated = now
                self._ratchet_complexity(context)
                db.flush()
                self._persist_payload(db, context)
                result = BoundedContext.model_validate(context)

        logger.info(f"Updated context {context_id} to v{result.version}: {reason}")
        self._after_commit(context_id, "update", reason)
        return result

    # -------------------------------------------------------------------------
    # Scheduling & Relationships
    # -------------------------------------------------------------------------

    def schedule(
        self,
        context_ids: Iterable[str],
        frequency: Union[ScheduleFrequency, str],
        duration: Duration,
        reason: str,
        authorizer: Optional[str] = None,
    ) -> List[UnlockWindow]:
        """
        Append one future window per existing context, one period from now.

        Unknown ids are skipped. Scheduling does not unlock anything.
        """
        frequency = ScheduleFrequency(frequency)
        period = timedelta(seconds=SCHEDULE_PERIOD_SECONDS[frequency.value])
        duration = _as_timedelta(duration)

        windows = []
        for context_id in dict.fromkeys(context_ids):
            try:
                windows.append(self._schedule_one(context_id, period, duration, reason, authorizer))
            except BoundedContextNotFound:
                logger.warning(f"Skipping schedule for unknown context {context_id}")
                continue
            self._after_commit(context_id, "schedule", reason)

        logger.info(f"Scheduled {len(windows)} {frequency.value} unlock window(s)")
        return windows

    @translate_storage_errors("schedule_context")
    def _schedule_one(
        self,
        context_id: str,
        period: timedelta,
        duration: timedelta,
        reason: str,
        authorizer: Optional[str],
    ) -> UnlockWindow:
        with self._context_lock(context_id):
            with get_db_context(self._session_factory) as db:
                context = self._load(db, context_id)
                start = self._clock() + period
                window = DBUnlockWindow(
                    id=str(uuid.uuid4()),
                    start_at=start,
                    end_at=start + duration,
                    reason=reason,
                    authorizer=authorizer,
                    scheduled=True,
                    cost=0.0,
                    changes=[],
                )
                context.unlock_windows.append(window)
                db.flush()
                return UnlockWindow.model_validate(window)

    @translate_storage_errors("link_contexts")
    def link(
        self,
        from_context_id: str,
        to_context_id: str,
        relationship_type: Union[RelationshipType, str],
        strength: float = 1.0,
    ) -> ContextRelationship:
        """Record a directed peer relationship (upserted on from/to/type)."""
        relationship_type = RelationshipType(relationship_type)
        if not 0.0 <= strength <= 1.0:
            raise ValueError(f"strength must be within [0, 1], got {strength}")
        if from_context_id == to_context_id:
            raise ValueError("A context cannot be related to itself")

        with self._context_lock(from_context_id):
            with get_db_context(self._session_factory) as db:
                source = self._load(db, from_context_id)
                self._load(db, to_context_id, for_update=False)
                now = self._clock()

                relationship = db.query(DBContextRelationship).filter(
                    DBContextRelationship.from_context_id == from_context_id,
                    DBContextRelationship.to_context_id == to_context_id,
                    DBContextRelationship.relationship_type == relationship_type.value,
                ).first()
                if relationship is None:
                    relationship = DBContextRelationship(
                        from_context_id=from_context_id,
                        to_context_id=to_context_id,
                        relationship_type=relationship_type.value,
                    )
                    db.add(relationship)
                relationship.strength = strength
                relationship.last_updated = now

                if to_context_id not in (source.relationships or []):
                    source.relationships = [*(source.relationships or []), to_context_id]
                source.last_updated = now
                db.flush()
                result = ContextRelationship.model_validate(relationship)

        logger.info(f"Linked {from_context_id} -{relationship_type.value}-> {to_context_id}")
        self._after_commit(from_context_id, "link", f"{relationship_type.value} {to_context_id}")
        return result
