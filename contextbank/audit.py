"""
Audit sink for profile and bounded-context transitions.

Auditing is fire-and-forget: a sink never raises into the transition that
emitted the entry. Failures are logged as warnings and dropped.
"""

import logging
from abc import ABC, abstractmethod
from typing import Optional

from sqlalchemy.orm import sessionmaker

from .database import SessionLocal, get_db_context
from .db_models import DBAuditLog

logger = logging.getLogger(__name__)


class AuditSink(ABC):
    """Receives one entry per committed transition."""

    @abstractmethod
    def record(self, subject_type: str, subject_id, action: str, reason: Optional[str] = None) -> None:
        pass


class LoggingAuditSink(AuditSink):
    """Writes entries to the log only."""

    def record(self, subject_type, subject_id, action, reason=None):
        logger.info(f"AUDIT {subject_type}:{subject_id} {action} reason={reason!r}")


class DatabaseAuditSink(AuditSink):
    """Logs every entry and persists it to audit_logs in its own transaction."""

    def __init__(self, session_factory: Optional[sessionmaker] = None):
        self._session_factory = session_factory or SessionLocal

    def record(self, subject_type, subject_id, action, reason=None):
        logger.info(f"AUDIT {subject_type}:{subject_id} {action} reason={reason!r}")
        try:
            with get_db_context(self._session_factory) as db:
                db.add(DBAuditLog(
                    subject_type=subject_type,
                    subject_id=str(subject_id),
                    action=action,
                    reason=reason,
                ))
        except Exception as e:
            logger.warning(f"Failed to persist audit entry {subject_type}:{subject_id} {action}: {e}")
