"""
Size-constrained knowledge document store.

Documents are written through the DocumentChunker so every persisted part
respects the store's per-document and per-metadata-value ceilings, and read
back by reassembling the parts in order.
"""

import logging
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional

from sqlalchemy.orm import Session, sessionmaker

from .database import SessionLocal, get_db_context, translate_storage_errors
from .db_models import DBKnowledgeChunk
from .document_chunker import ChunkedDocument, DocumentChunker, reassemble

logger = logging.getLogger(__name__)


class KnowledgeDocumentStore:
    """Chunked document persistence keyed by document id."""

    def __init__(
        self,
        session_factory: Optional[sessionmaker] = None,
        chunker: Optional[DocumentChunker] = None,
    ):
        self._session_factory = session_factory or SessionLocal
        self.chunker = chunker or DocumentChunker()

    @contextmanager
    def _session(self, db: Optional[Session]) -> Iterator[Session]:
        if db is not None:
            yield db
            return
        with get_db_context(self._session_factory) as session:
            yield session

    @translate_storage_errors("put_document")
    def put_document(
        self,
        doc_id: str,
        content: str,
        metadata: Optional[Dict[str, Any]] = None,
        db: Optional[Session] = None,
    ) -> ChunkedDocument:
        """
        Replace every stored part of ``doc_id`` with the chunks of ``content``.

        Raises:
            PayloadTooLarge: if a part cannot fit the document ceiling
        """
        document = self.chunker.chunk_document(content, doc_id, metadata)

        with self._session(db) as session:
            session.query(DBKnowledgeChunk).filter(
                DBKnowledgeChunk.document_id == doc_id
            ).delete(synchronize_session=False)
            for chunk in document.chunks:
                session.add(DBKnowledgeChunk(
                    document_id=doc_id,
                    part_index=chunk.index,
                    total_parts=document.total_parts,
                    content=chunk.content,
                    chunk_metadata=chunk.metadata,
                ))
            session.flush()

        logger.debug(f"Stored {doc_id} in {document.total_parts} part(s)")
        return document

    @translate_storage_errors("get_document")
    def get_document(self, doc_id: str, db: Optional[Session] = None) -> Optional[str]:
        """Reassembled content of ``doc_id``, or None if it was never stored."""
        parts = self.get_parts(doc_id, db=db)
        if not parts:
            return None
        if len(parts) != parts[0].total_parts:
            logger.warning(f"Doc {doc_id}: expected {parts[0].total_parts} parts, found {len(parts)}")
        return reassemble([p.content for p in parts])

    @translate_storage_errors("get_parts")
    def get_parts(self, doc_id: str, db: Optional[Session] = None) -> List[DBKnowledgeChunk]:
        with self._session(db) as session:
            return session.query(DBKnowledgeChunk).filter(
                DBKnowledgeChunk.document_id == doc_id
            ).order_by(DBKnowledgeChunk.part_index).all()

    @translate_storage_errors("delete_document")
    def delete_document(self, doc_id: str, db: Optional[Session] = None) -> int:
        """Remove every part of ``doc_id``. Returns parts removed."""
        with self._session(db) as session:
            return session.query(DBKnowledgeChunk).filter(
                DBKnowledgeChunk.document_id == doc_id
            ).delete(synchronize_session=False)
