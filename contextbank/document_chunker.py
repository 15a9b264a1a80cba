"""
Document Chunker for ContextBank.

Splits oversized text into byte-bounded chunks and truncates oversized
metadata values so knowledge documents fit a size-constrained store
(per-document and per-metadata-value byte ceilings).

Chunks are cut only at single-space separators, so reassembling with single
spaces restores the input exactly. Other whitespace (newlines, tabs) stays
inside its token. A token longer than the chunk size is emitted whole.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .config import settings
from .constants import TRUNCATION_MARKER, TRUNCATION_RATIO
from .exceptions import PayloadTooLarge

logger = logging.getLogger(__name__)

_MARKER_BYTES = len(TRUNCATION_MARKER.encode("utf-8"))


def byte_length(text: str) -> int:
    """UTF-8 size of ``text``."""
    return len(text.encode("utf-8"))


def split(content: str, max_bytes: int) -> List[str]:
    """
    Split content into ordered chunks of at most ``max_bytes`` each.

    Returns [content] when the input already fits. A single token longer
    than max_bytes becomes its own (oversized) chunk.
    """
    if max_bytes <= 0:
        raise ValueError(f"max_bytes must be positive, got {max_bytes}")

    if byte_length(content) <= max_bytes:
        return [content]

    chunks: List[str] = []
    current: List[str] = []
    current_bytes = 0

    for token in content.split(" "):
        token_bytes = byte_length(token)
        # +1 for the joining space
        needed = token_bytes if not current else current_bytes + 1 + token_bytes

        if current and needed > max_bytes:
            chunks.append(" ".join(current))
            current = [token]
            current_bytes = token_bytes
        else:
            current.append(token)
            current_bytes = needed

    chunks.append(" ".join(current))

    oversized = [len(c) for c in chunks if byte_length(c) > max_bytes]
    if oversized:
        logger.warning(f"{len(oversized)} token(s) exceed {max_bytes} bytes and were kept whole")

    return chunks


def reassemble(chunks: List[str]) -> str:
    """Join chunks with single spaces (inverse of split)."""
    return " ".join(chunks)


def truncate_metadata_value(value: str, max_bytes: int) -> str:
    """
    Cap a metadata value at ``max_bytes`` UTF-8 bytes.

    Values within bounds are returned unchanged. Otherwise the largest prefix
    that fits in ~90% of the limit (never splitting a character) is kept and
    " [TRUNCATED]" appended; the result never exceeds max_bytes.
    """
    encoded = value.encode("utf-8")
    if len(encoded) <= max_bytes:
        return value

    if max_bytes <= _MARKER_BYTES:
        raise ValueError(
            f"max_bytes ({max_bytes}) must exceed the truncation marker size ({_MARKER_BYTES})"
        )

    budget = min(int(max_bytes * TRUNCATION_RATIO), max_bytes - _MARKER_BYTES)
    prefix = encoded[:budget].decode("utf-8", errors="ignore")
    return prefix + TRUNCATION_MARKER


def truncate_metadata(metadata: Dict[str, Any], max_value_bytes: int) -> Dict[str, Any]:
    """
    Apply truncate_metadata_value to every value of a metadata mapping.

    None values are dropped; numbers and booleans pass through; anything
    that is not a string is JSON-serialized first.
    """
    processed: Dict[str, Any] = {}

    for key, value in metadata.items():
        if value is None:
            continue
        if isinstance(value, (bool, int, float)):
            processed[key] = value
            continue
        if not isinstance(value, str):
            value = json.dumps(value, ensure_ascii=False, sort_keys=True, default=str)
        processed[key] = truncate_metadata_value(value, max_value_bytes)

    return processed


@dataclass
class Chunk:
    """Represents one part of a chunked document."""
    index: int
    content: str
    byte_count: int
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ChunkedDocument:
    """Ordered chunks sharing one logical document id."""
    doc_id: str
    chunks: List[Chunk]

    @property
    def total_parts(self) -> int:
        return len(self.chunks)

    def reassemble(self) -> str:
        return reassemble([c.content for c in self.chunks])


class DocumentChunker:
    """
    Size-aware chunker configured with the ceilings of a specific store.

    Features:
    - Whitespace-boundary splitting at a target chunk size
    - Hard per-document ceiling (PayloadTooLarge beyond it)
    - Per-value metadata truncation, with part bookkeeping on every chunk
    """

    def __init__(
        self,
        document_max_bytes: Optional[int] = None,
        chunk_max_bytes: Optional[int] = None,
        metadata_value_max_bytes: Optional[int] = None,
    ):
        """
        Args:
            document_max_bytes: Hard per-document ceiling of the store
            chunk_max_bytes: Target chunk size (leaves room for metadata)
            metadata_value_max_bytes: Per-metadata-value ceiling of the store
        """
        self.document_max_bytes = document_max_bytes or settings.document_max_bytes
        self.chunk_max_bytes = min(
            chunk_max_bytes or settings.chunk_max_bytes, self.document_max_bytes
        )
        self.metadata_value_max_bytes = metadata_value_max_bytes or settings.metadata_value_max_bytes

    def chunk_document(
        self,
        content: str,
        doc_id: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> ChunkedDocument:
        """
        Split ``content`` into store-sized chunks with per-part metadata.

        Raises:
            PayloadTooLarge: if an indivisible token exceeds the document ceiling
        """
        parts = split(content, self.chunk_max_bytes)
        base_metadata = truncate_metadata(
            {**(metadata or {}), "doc_id": doc_id, "total_parts": len(parts)},
            self.metadata_value_max_bytes,
        )

        chunks = []
        for index, part in enumerate(parts):
            size = byte_length(part)
            if size > self.document_max_bytes:
                raise PayloadTooLarge(size, self.document_max_bytes, doc_id)
            chunks.append(Chunk(
                index=index,
                content=part,
                byte_count=size,
                metadata={**base_metadata, "part_index": index, "is_part": len(parts) > 1},
            ))

        if len(chunks) > 1:
            logger.info(f"Doc {doc_id}: {byte_length(content)} bytes -> {len(chunks)} chunks")
        return ChunkedDocument(doc_id=doc_id, chunks=chunks)
