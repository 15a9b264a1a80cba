"""
SQLAlchemy database models.

Maps the ContextBank domain to SQL tables.
Separate from Pydantic models (models.py) which shape data returned to callers.

All timestamps are naive UTC.
"""

from datetime import datetime, timezone

from sqlalchemy import (
    Boolean, Column, DateTime, Float, ForeignKey, Index, Integer, JSON, String, Text,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


def utcnow() -> datetime:
    """Current time as naive UTC (what the DateTime columns store)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# =============================================================================
# Users & Profiles
# =============================================================================

class DBUser(Base):
    """User row holding the active-profile pointer."""
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=False)  # Issued by the auth layer
    active_profile_id = Column(Integer, default=0, nullable=False)  # 0 = Default Context
    switch_revision = Column(Integer, default=0, nullable=False)  # Bumped by every committed switch
    created_at = Column(DateTime, default=utcnow, nullable=False)

    profiles = relationship("DBProfile", back_populates="user", cascade="all, delete-orphan")

    def __repr__(self):
        return f"<DBUser(id={self.id}, active_profile_id={self.active_profile_id})>"


class DBProfile(Base):
    """Named research context owned by a user."""
    __tablename__ = "context_profiles"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    is_active = Column(Boolean, default=False, nullable=False)  # At most one per user
    is_locked = Column(Boolean, default=False, nullable=False)  # Blocks knowledge updates
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    user = relationship("DBUser", back_populates="profiles")
    knowledge_state = relationship(
        "DBProfileKnowledgeState",
        back_populates="profile",
        uselist=False,
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        UniqueConstraint("user_id", "name", name="uq_profile_user_name"),
        Index("idx_profile_user_active", "user_id", "is_active"),
    )

    def __repr__(self):
        return f"<DBProfile(id={self.id}, user={self.user_id}, name='{self.name}', active={self.is_active})>"


class DBProfileKnowledgeState(Base):
    """Versioned structured knowledge payload of a profile."""
    __tablename__ = "profile_knowledge_states"

    id = Column(Integer, primary_key=True, autoincrement=True)
    profile_id = Column(
        Integer, ForeignKey("context_profiles.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    payload = Column(JSON, nullable=False, default=dict)
    version = Column(Integer, nullable=False, default=1)
    last_updated = Column(DateTime, default=utcnow, nullable=False)

    profile = relationship("DBProfile", back_populates="knowledge_state")

    def __repr__(self):
        return f"<DBProfileKnowledgeState(profile={self.profile_id}, v{self.version})>"


# =============================================================================
# Namespaced Records (reference items and messages)
# =============================================================================

class DBContextRecord(Base):
    """
    Reference item or chat message scoped by (user_id, namespace_id).

    namespace_id is 0 for the working view, -1 for the Default Context's
    archive, or a real profile id. record_key is stable across moves between
    namespaces and is what migration uses to detect already-migrated rows.
    """
    __tablename__ = "context_records"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, nullable=False, index=True)
    namespace_id = Column(Integer, nullable=False)
    kind = Column(String(32), nullable=False)  # reference_item, message
    record_key = Column(String(36), nullable=False)

    # Reference item fields
    url = Column(String(2048), nullable=True)
    title = Column(String(512), nullable=True)
    notes = Column(Text, nullable=True)
    analysis = Column(JSON, nullable=True)

    # Message fields
    role = Column(String(32), nullable=True)  # user, assistant

    # Shared
    content = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("user_id", "namespace_id", "kind", "record_key", name="uq_record_scope_key"),
        Index("idx_record_scope", "user_id", "namespace_id", "kind"),
    )

    def __repr__(self):
        return f"<DBContextRecord(id={self.id}, user={self.user_id}, ns={self.namespace_id}, kind='{self.kind}')>"


# =============================================================================
# Bounded Contexts
# =============================================================================

class DBBoundedContext(Base):
    """Lockable, versioned unit of structured knowledge."""
    __tablename__ = "bounded_contexts"

    id = Column(String(36), primary_key=True)  # UUID
    name = Column(String(255), nullable=False, index=True)
    context_type = Column(String(32), nullable=False)
    description = Column(Text, nullable=True)
    lock_status = Column(String(16), nullable=False, default="locked")
    version = Column(Integer, nullable=False, default=1)
    cost = Column(Float, nullable=False, default=0.0)
    complexity_score = Column(Float, nullable=False, default=0.0)
    payload = Column(JSON, nullable=False, default=dict)
    relationships = Column(JSON, nullable=False, default=list)  # Peer context ids (non-owning)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    last_updated = Column(DateTime, default=utcnow, nullable=False)

    unlock_windows = relationship(
        "DBUnlockWindow",
        back_populates="context",
        cascade="all, delete-orphan",
        order_by="DBUnlockWindow.start_at",
    )
    teaching_sessions = relationship(
        "DBTeachingSession",
        back_populates="context",
        cascade="all, delete-orphan",
        order_by="DBTeachingSession.started_at",
    )

    def __repr__(self):
        return f"<DBBoundedContext(id='{self.id}', name='{self.name}', {self.lock_status}, v{self.version})>"


class DBUnlockWindow(Base):
    """Half-open interval [start_at, end_at) during which a context may be changed."""
    __tablename__ = "unlock_windows"

    id = Column(String(36), primary_key=True)
    context_id = Column(
        String(36), ForeignKey("bounded_contexts.id", ondelete="CASCADE"), nullable=False, index=True
    )
    start_at = Column(DateTime, nullable=False)
    end_at = Column(DateTime, nullable=False)
    reason = Column(Text, nullable=False)
    authorizer = Column(String(255), nullable=True)
    scheduled = Column(Boolean, default=False, nullable=False)
    cost = Column(Float, nullable=False, default=0.0)
    changes = Column(JSON, nullable=False, default=list)

    context = relationship("DBBoundedContext", back_populates="unlock_windows")

    __table_args__ = (
        Index("idx_window_context_range", "context_id", "start_at", "end_at"),
    )


class DBTeachingSession(Base):
    """Bounded interaction adding knowledge to an unlocked context."""
    __tablename__ = "teaching_sessions"

    id = Column(String(36), primary_key=True)
    context_id = Column(
        String(36), ForeignKey("bounded_contexts.id", ondelete="CASCADE"), nullable=False, index=True
    )
    source = Column(String(32), nullable=False, default="ai")
    confidence = Column(Float, nullable=False, default=0.8)
    teacher_id = Column(String(255), nullable=True)
    started_at = Column(DateTime, default=utcnow, nullable=False)
    ended_at = Column(DateTime, nullable=True)
    total_cost = Column(Float, nullable=False, default=0.0)

    context = relationship("DBBoundedContext", back_populates="teaching_sessions")
    teachings = relationship(
        "DBTeaching",
        back_populates="session",
        cascade="all, delete-orphan",
        order_by="DBTeaching.position",
    )


class DBTeaching(Base):
    """Single teaching entry, ordered within its session."""
    __tablename__ = "teachings"

    id = Column(String(36), primary_key=True)
    session_id = Column(
        String(36), ForeignKey("teaching_sessions.id", ondelete="CASCADE"), nullable=False, index=True
    )
    position = Column(Integer, nullable=False)
    input = Column(JSON, nullable=True)
    learned = Column(JSON, nullable=True)
    confidence = Column(Float, nullable=False)
    source = Column(String(32), nullable=False)
    cost = Column(Float, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    session = relationship("DBTeachingSession", back_populates="teachings")


class DBContextRelationship(Base):
    """Directed peer relationship between two bounded contexts."""
    __tablename__ = "context_relationships"

    id = Column(Integer, primary_key=True, autoincrement=True)
    from_context_id = Column(
        String(36), ForeignKey("bounded_contexts.id", ondelete="CASCADE"), nullable=False, index=True
    )
    to_context_id = Column(
        String(36), ForeignKey("bounded_contexts.id", ondelete="CASCADE"), nullable=False, index=True
    )
    relationship_type = Column(String(32), nullable=False)
    strength = Column(Float, nullable=False, default=1.0)
    last_updated = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("from_context_id", "to_context_id", "relationship_type", name="uq_context_relationship"),
    )


# =============================================================================
# Size-Constrained Knowledge Documents
# =============================================================================

class DBKnowledgeChunk(Base):
    """One part of a chunked knowledge document."""
    __tablename__ = "knowledge_chunks"

    id = Column(Integer, primary_key=True, autoincrement=True)
    document_id = Column(String(128), nullable=False, index=True)
    part_index = Column(Integer, nullable=False)
    total_parts = Column(Integer, nullable=False)
    content = Column(Text, nullable=False)
    chunk_metadata = Column("metadata", JSON, nullable=False, default=dict)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("document_id", "part_index", name="uq_chunk_part"),
    )


# =============================================================================
# Audit Trail
# =============================================================================

class DBAuditLog(Base):
    """Transition reasons recorded by the audit sink."""
    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    subject_type = Column(String(32), nullable=False)  # profile, bounded_context
    subject_id = Column(String(64), nullable=False)
    action = Column(String(32), nullable=False)
    reason = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False, index=True)

    __table_args__ = (
        Index("idx_audit_subject", "subject_type", "subject_id"),
    )
