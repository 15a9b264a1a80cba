"""Data models and schemas for ContextBank."""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .constants import MAX_PROFILE_NAME_LENGTH


# =============================================================================
# Enums for validated parameters
# =============================================================================

class RecordKind(str, Enum):
    """Logical record kinds stored per namespace."""
    REFERENCE_ITEM = "reference_item"
    MESSAGE = "message"


class LockStatus(str, Enum):
    """Bounded-context lock state."""
    LOCKED = "locked"
    UNLOCKED = "unlocked"


class ContextType(str, Enum):
    """Domain of a bounded context."""
    METADATA = "metadata"
    ARCHITECTURE = "architecture"
    MODULE = "module"
    FILE = "file"
    QUALITY = "quality"
    RISK = "risk"


class TeachingSource(str, Enum):
    """Where a teaching came from."""
    HUMAN = "human"
    AI = "ai"
    ANALYSIS = "analysis"


class ScheduleFrequency(str, Enum):
    """Recurrence used by scheduled unlock windows."""
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


class RelationshipType(str, Enum):
    """Kinds of peer relationship between bounded contexts."""
    DEPENDS_ON = "depends_on"
    INFORMS = "informs"
    TESTS = "tests"
    DOCUMENTS = "documents"
    EXTENDS = "extends"


# =============================================================================
# Profile Models
# =============================================================================

class ProfileCreate(BaseModel):
    """Schema for creating a profile."""
    name: str = Field(..., min_length=1, max_length=MAX_PROFILE_NAME_LENGTH)
    description: Optional[str] = None

    @field_validator('name')
    @classmethod
    def name_not_blank(cls, v):
        """Reject whitespace-only names."""
        if not v.strip():
            raise ValueError('Profile name cannot be blank')
        return v


class Profile(BaseModel):
    """Public representation of a profile (id 0 is the synthetic Default Context)."""
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: int
    name: str
    description: Optional[str] = None
    is_active: bool = False
    is_locked: bool = False
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class ProfileKnowledgeState(BaseModel):
    """Versioned knowledge payload of a profile."""
    model_config = ConfigDict(from_attributes=True)

    profile_id: int
    payload: Dict[str, Any] = Field(default_factory=dict)
    version: int = Field(default=1, ge=1)
    last_updated: datetime


class ProfileCreated(BaseModel):
    """Result of creating a profile."""
    profile: Profile
    knowledge_state: ProfileKnowledgeState


class ProfileSummary(Profile):
    """Profile entry returned by list(), with its knowledge version."""
    knowledge_version: Optional[int] = None
    knowledge_updated: Optional[datetime] = None


class SwitchResult(BaseModel):
    """Outcome of a profile switch."""
    user_id: int
    previous_profile_id: int
    active_profile_id: int
    active_profile_name: str
    migrated_reference_items: int = 0
    migrated_messages: int = 0
    loaded_reference_items: int = 0
    loaded_messages: int = 0
    switched: bool = True  # False when the target was already active

    @property
    def migrated(self) -> int:
        return self.migrated_reference_items + self.migrated_messages

    @property
    def loaded(self) -> int:
        return self.loaded_reference_items + self.loaded_messages


# =============================================================================
# Record Models
# =============================================================================

class ContextRecord(BaseModel):
    """Reference item or message scoped by (user_id, namespace_id)."""
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: int
    namespace_id: int
    kind: RecordKind
    record_key: str
    url: Optional[str] = None
    title: Optional[str] = None
    notes: Optional[str] = None
    analysis: Optional[Any] = None
    role: Optional[str] = None
    content: Optional[str] = None
    created_at: datetime
    updated_at: Optional[datetime] = None


# =============================================================================
# Bounded Context Models
# =============================================================================

class ContextChange(BaseModel):
    """Change applied to a context during an unlock window."""
    timestamp: datetime
    type: str = "modification"
    description: str
    data: Dict[str, Any] = Field(default_factory=dict)
    cost: float = 0.0


class UnlockWindow(BaseModel):
    """Half-open interval [start_at, end_at) during which a context may change."""
    model_config = ConfigDict(from_attributes=True)

    id: str
    context_id: str
    start_at: datetime
    end_at: datetime
    reason: str
    authorizer: Optional[str] = None
    scheduled: bool = False
    cost: float = 0.0
    changes: List[ContextChange] = Field(default_factory=list)


class Teaching(BaseModel):
    """Single teaching entry."""
    model_config = ConfigDict(from_attributes=True)

    id: str
    position: int
    input: Optional[Any] = None
    learned: Optional[Any] = None
    confidence: float
    source: TeachingSource
    cost: float
    created_at: datetime


class TeachingSession(BaseModel):
    """Teaching session with its ordered entries."""
    model_config = ConfigDict(from_attributes=True)

    id: str
    context_id: str
    source: TeachingSource
    confidence: float
    teacher_id: Optional[str] = None
    started_at: datetime
    ended_at: Optional[datetime] = None
    total_cost: float = 0.0
    teachings: List[Teaching] = Field(default_factory=list)


class BoundedContext(BaseModel):
    """Lockable, versioned unit of structured knowledge."""
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    context_type: ContextType
    description: Optional[str] = None
    lock_status: LockStatus = LockStatus.LOCKED
    version: int = Field(default=1, ge=1)
    cost: float = 0.0
    complexity_score: float = 0.0
    payload: Dict[str, Any] = Field(default_factory=dict)
    relationships: List[str] = Field(default_factory=list)
    created_at: datetime
    last_updated: datetime
    unlock_windows: List[UnlockWindow] = Field(default_factory=list)
    teaching_sessions: List[TeachingSession] = Field(default_factory=list)

    def is_currently_unlockable(self, now: datetime) -> bool:
        """Operator-unlocked AND inside some window."""
        return (
            self.lock_status == LockStatus.UNLOCKED
            and find_active_window(self.unlock_windows, now) is not None
        )


class TeachResult(BaseModel):
    """Outcome of teach(): the session id and the teaching added, if any."""
    session_id: str
    teaching: Optional[Teaching] = None
    version: int
    cost: float


class ContextRelationship(BaseModel):
    """Directed peer relationship between bounded contexts."""
    model_config = ConfigDict(from_attributes=True)

    from_context_id: str
    to_context_id: str
    relationship_type: RelationshipType
    strength: float = Field(default=1.0, ge=0.0, le=1.0)
    last_updated: datetime


class NetworkMetrics(BaseModel):
    """Fleet-wide aggregate metrics."""
    total_contexts: int = 0
    locked_contexts: int = 0
    unlocked_contexts: int = 0
    total_cost: float = 0.0
    average_complexity: float = 0.0
    last_update: datetime


class ContextNetwork(BaseModel):
    """All bounded contexts, their relationships and global metrics."""
    contexts: List[BoundedContext] = Field(default_factory=list)
    relationships: List[ContextRelationship] = Field(default_factory=list)
    global_metrics: NetworkMetrics


# =============================================================================
# Helpers
# =============================================================================

def find_active_window(windows: Iterable[Any], now: datetime):
    """
    Return the first window whose [start_at, end_at) contains ``now``.

    Works for both ORM rows and UnlockWindow models.
    """
    for window in windows:
        if window.start_at <= now < window.end_at:
            return window
    return None
