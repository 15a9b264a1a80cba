"""
Context Store Adapter.

CRUD over reference items and chat messages, scoped by (user_id,
namespace_id). Namespace 0 is the working view every other component reads;
real profile ids and the Default Context archive (-1) are storage scopes.

This module is the only writer of context_records. Every public call either
opens its own transaction or joins the caller's session (``db=``), so the
Profile Lifecycle Manager can run a whole switch as one transaction.
"""

import logging
import uuid
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional

from sqlalchemy.orm import Session, sessionmaker

from .constants import RECORD_KIND_MESSAGE, RECORD_KIND_REFERENCE_ITEM, RECORD_KINDS
from .database import SessionLocal, get_db_context, translate_storage_errors
from .db_models import DBContextRecord, utcnow
from .exceptions import NotFound
from .models import ContextRecord

logger = logging.getLogger(__name__)

# Columns carried along when a record moves or is copied between namespaces
_PAYLOAD_FIELDS = ("url", "title", "notes", "analysis", "role", "content", "created_at")


class ContextStore:
    """
    Namespace-scoped record storage.

    Guarantees:
    - A mutation in one (user_id, namespace_id) scope never touches another
    - Deletes are exact-scoped
    - Migration primitives are idempotent (keyed by record_key)
    """

    def __init__(self, session_factory: Optional[sessionmaker] = None):
        self._session_factory = session_factory or SessionLocal

    @contextmanager
    def _session(self, db: Optional[Session]) -> Iterator[Session]:
        """Join the caller's session, or run in a fresh committed transaction."""
        if db is not None:
            yield db
            return
        with get_db_context(self._session_factory) as session:
            yield session

    @staticmethod
    def _scope(db: Session, user_id: int, namespace_id: int, kind: Optional[str] = None):
        query = db.query(DBContextRecord).filter(
            DBContextRecord.user_id == user_id,
            DBContextRecord.namespace_id == namespace_id,
        )
        if kind is not None:
            query = query.filter(DBContextRecord.kind == kind)
        return query

    # -------------------------------------------------------------------------
    # Create
    # -------------------------------------------------------------------------

    @translate_storage_errors("add_reference_item")
    def add_reference_item(
        self,
        user_id: int,
        namespace_id: int,
        url: str,
        title: Optional[str] = None,
        notes: Optional[str] = None,
        content: Optional[str] = None,
        analysis: Optional[Any] = None,
        db: Optional[Session] = None,
    ) -> ContextRecord:
        """Add a reference item (saved URL) to one namespace."""
        with self._session(db) as session:
            row = DBContextRecord(
                user_id=user_id,
                namespace_id=namespace_id,
                kind=RECORD_KIND_REFERENCE_ITEM,
                record_key=str(uuid.uuid4()),
                url=url,
                title=title,
                notes=notes,
                content=content,
                analysis=analysis,
            )
            session.add(row)
            session.flush()
            return ContextRecord.model_validate(row)

    @translate_storage_errors("add_message")
    def add_message(
        self,
        user_id: int,
        namespace_id: int,
        role: str,
        content: str,
        db: Optional[Session] = None,
    ) -> ContextRecord:
        """Append a chat message to one namespace."""
        with self._session(db) as session:
            row = DBContextRecord(
                user_id=user_id,
                namespace_id=namespace_id,
                kind=RECORD_KIND_MESSAGE,
                record_key=str(uuid.uuid4()),
                role=role,
                content=content,
            )
            session.add(row)
            session.flush()
            return ContextRecord.model_validate(row)

    # -------------------------------------------------------------------------
    # Read
    # -------------------------------------------------------------------------

    @translate_storage_errors("get_record")
    def get_record(
        self, user_id: int, namespace_id: int, record_id: int, db: Optional[Session] = None
    ) -> Optional[ContextRecord]:
        """Fetch one record, or None if it is not in this scope."""
        with self._session(db) as session:
            row = self._scope(session, user_id, namespace_id).filter(
                DBContextRecord.id == record_id
            ).first()
            return ContextRecord.model_validate(row) if row else None

    @translate_storage_errors("list_records")
    def list_records(
        self,
        user_id: int,
        namespace_id: int,
        kind: Optional[str] = None,
        db: Optional[Session] = None,
    ) -> List[ContextRecord]:
        """All records in a scope, oldest first."""
        with self._session(db) as session:
            rows = self._scope(session, user_id, namespace_id, kind).order_by(
                DBContextRecord.created_at, DBContextRecord.id
            ).all()
            return [ContextRecord.model_validate(r) for r in rows]

    def list_reference_items(self, user_id: int, namespace_id: int, db: Optional[Session] = None):
        return self.list_records(user_id, namespace_id, RECORD_KIND_REFERENCE_ITEM, db=db)

    def list_messages(self, user_id: int, namespace_id: int, db: Optional[Session] = None):
        return self.list_records(user_id, namespace_id, RECORD_KIND_MESSAGE, db=db)

    @translate_storage_errors("count_records")
    def count_records(
        self,
        user_id: int,
        namespace_id: int,
        kind: Optional[str] = None,
        db: Optional[Session] = None,
    ) -> int:
        with self._session(db) as session:
            return self._scope(session, user_id, namespace_id, kind).count()

    # -------------------------------------------------------------------------
    # Update / Delete
    # -------------------------------------------------------------------------

    @translate_storage_errors("update_record")
    def update_record(
        self,
        user_id: int,
        namespace_id: int,
        record_id: int,
        changes: Dict[str, Any],
        db: Optional[Session] = None,
    ) -> ContextRecord:
        """
        Update payload fields of one record in place.

        Raises:
            NotFound: if the record is not in this scope
            ValueError: on an unknown or immutable field
        """
        editable = set(_PAYLOAD_FIELDS) - {"created_at"}
        unknown = set(changes) - editable
        if unknown:
            raise ValueError(f"Cannot update fields: {sorted(unknown)}")

        with self._session(db) as session:
            row = self._scope(session, user_id, namespace_id).filter(
                DBContextRecord.id == record_id
            ).first()
            if row is None:
                raise NotFound(f"Record {record_id} not found in namespace {namespace_id}")
            for name, value in changes.items():
                setattr(row, name, value)
            row.updated_at = utcnow()
            session.flush()
            return ContextRecord.model_validate(row)

    @translate_storage_errors("delete_record")
    def delete_record(
        self, user_id: int, namespace_id: int, record_id: int, db: Optional[Session] = None
    ) -> bool:
        """Delete one record; False if it is not in this scope."""
        with self._session(db) as session:
            deleted = self._scope(session, user_id, namespace_id).filter(
                DBContextRecord.id == record_id
            ).delete(synchronize_session=False)
            return deleted > 0

    @translate_storage_errors("delete_namespace")
    def delete_namespace(
        self,
        user_id: int,
        namespace_id: int,
        kind: Optional[str] = None,
        db: Optional[Session] = None,
    ) -> int:
        """Delete every record in exactly this scope. Returns rows removed."""
        with self._session(db) as session:
            return self._scope(session, user_id, namespace_id, kind).delete(
                synchronize_session=False
            )

    # -------------------------------------------------------------------------
    # Migration Primitives
    # -------------------------------------------------------------------------

    @translate_storage_errors("sync_namespace")
    def sync_namespace(
        self, user_id: int, source_id: int, target_id: int, db: Optional[Session] = None
    ) -> Dict[str, int]:
        """
        Move every source record into target, making target mirror source.

        Records already in target (same record_key) are overwritten, target
        records absent from source are dropped, and source is emptied.
        Re-running after a failure converges to the same state.

        Returns:
            Records moved, per kind
        """
        if source_id == target_id:
            return {kind: 0 for kind in RECORD_KINDS}

        moved = {}
        with self._session(db) as session:
            for kind in RECORD_KINDS:
                source_rows = self._scope(session, user_id, source_id, kind).all()
                target_rows = {
                    r.record_key: r for r in self._scope(session, user_id, target_id, kind).all()
                }
                source_keys = set()

                for row in source_rows:
                    source_keys.add(row.record_key)
                    existing = target_rows.get(row.record_key)
                    if existing is not None:
                        self._copy_payload(row, existing)
                    else:
                        session.add(self._clone(row, target_id))

                for key, stale in target_rows.items():
                    if key not in source_keys:
                        session.delete(stale)

                for row in source_rows:
                    session.delete(row)

                moved[kind] = len(source_rows)
            session.flush()

        logger.debug(f"Synced user {user_id} namespace {source_id} -> {target_id}: {moved}")
        return moved

    @translate_storage_errors("copy_namespace")
    def copy_namespace(
        self, user_id: int, source_id: int, target_id: int, db: Optional[Session] = None
    ) -> Dict[str, int]:
        """
        Copy every source record into target unless already present there.

        Returns:
            Records present in source, per kind (the loaded view size)
        """
        if source_id == target_id:
            return {kind: 0 for kind in RECORD_KINDS}

        copied = {}
        with self._session(db) as session:
            for kind in RECORD_KINDS:
                source_rows = self._scope(session, user_id, source_id, kind).all()
                present = {
                    key for (key,) in self._scope(session, user_id, target_id, kind).with_entities(
                        DBContextRecord.record_key
                    )
                }
                for row in source_rows:
                    if row.record_key not in present:
                        session.add(self._clone(row, target_id))
                copied[kind] = len(source_rows)
            session.flush()

        logger.debug(f"Copied user {user_id} namespace {source_id} -> {target_id}: {copied}")
        return copied

    @staticmethod
    def _clone(row: DBContextRecord, namespace_id: int) -> DBContextRecord:
        clone = DBContextRecord(
            user_id=row.user_id,
            namespace_id=namespace_id,
            kind=row.kind,
            record_key=row.record_key,
        )
        ContextStore._copy_payload(row, clone)
        return clone

    @staticmethod
    def _copy_payload(source: DBContextRecord, target: DBContextRecord) -> None:
        for name in _PAYLOAD_FIELDS:
            setattr(target, name, getattr(source, name))
        target.updated_at = source.updated_at or utcnow()
