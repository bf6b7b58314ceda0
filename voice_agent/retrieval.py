"""
In-memory retrieval index.

Documents are split into sentence-aligned fragments and scored against a
query by lexical overlap. There are no embeddings: a token matches when
either token contains the other.
"""

from __future__ import annotations

import re
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from logging_setup import get_logger, Component
from .event_bus import EventBus, EventType


logger = get_logger(Component.RETRIEVAL)

DEFAULT_CHUNK_SIZE = 500
SENTENCE_JOINER = ". "
_SENTENCE_BOUNDARY = re.compile(r"[.!?]+")


@dataclass(frozen=True)
class DocumentFragment:
    fragment_id: str
    content: str
    metadata: Mapping[str, Any] = field(default_factory=dict)

    @property
    def document_id(self) -> str:
        return self.metadata["document_id"]

    @property
    def chunk_index(self) -> int:
        return self.metadata["chunk_index"]


@dataclass(frozen=True)
class QueryResult:
    fragments: List[DocumentFragment]
    scores: List[float]
    context: str

    @classmethod
    def empty(cls) -> "QueryResult":
        return cls(fragments=[], scores=[], context="")


@dataclass(frozen=True)
class IndexStats:
    document_count: int
    fragment_count: int


def split_sentences(content: str) -> List[str]:
    return [s.strip() for s in _SENTENCE_BOUNDARY.split(content) if s.strip()]


def chunk_content(content: str, chunk_size: int = DEFAULT_CHUNK_SIZE) -> List[str]:
    """
    Group sentences into fragments.

    Sentences are appended to the current fragment until its length reaches
    chunk_size, then the fragment is flushed. The last partial fragment is
    kept. Joining the fragments with ". " gives back the joined sentences.
    """
    sentences = split_sentences(content)
    if not sentences:
        stripped = content.strip()
        return [stripped] if stripped else []

    chunks: List[str] = []
    current = ""
    for sentence in sentences:
        current = f"{current}{SENTENCE_JOINER}{sentence}" if current else sentence
        if len(current) >= chunk_size:
            chunks.append(current)
            current = ""
    if current:
        chunks.append(current)
    return chunks


def _tokenize(text: str) -> List[str]:
    return text.lower().split()


def overlap_score(query_tokens: List[str], fragment_tokens: List[str]) -> float:
    """Matching (query, fragment) token pairs divided by the number of query tokens."""
    if not query_tokens:
        return 0.0
    matches = 0
    for q in query_tokens:
        for f in fragment_tokens:
            if q in f or f in q:
                matches += 1
    return matches / len(query_tokens)


class RetrievalIndex:
    """Append-only fragment store; only clear() removes entries."""

    def __init__(self, *, chunk_size: int = DEFAULT_CHUNK_SIZE, bus: Optional[EventBus] = None):
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        self.chunk_size = chunk_size
        self._bus = bus
        self._fragments: List[DocumentFragment] = []
        self._by_id: Dict[str, DocumentFragment] = {}

    def ingest(self, content: str, metadata: Optional[Mapping[str, Any]] = None) -> str:
        """Split content into fragments and index them. Returns the new document id."""
        chunks = chunk_content(content, self.chunk_size)
        if not chunks:
            raise ValueError("content is empty")

        document_id = f"doc_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"
        base = dict(metadata or {})
        for i, chunk in enumerate(chunks):
            fragment = DocumentFragment(
                fragment_id=f"{document_id}_chunk_{i}",
                content=chunk,
                metadata={
                    **base,
                    "document_id": document_id,
                    "chunk_index": i,
                    "total_chunks": len(chunks),
                },
            )
            self._fragments.append(fragment)
            self._by_id[fragment.fragment_id] = fragment

        logger.info(
            "Document indexed",
            document_id=document_id,
            fragment_count=len(chunks),
            character_count=len(content),
        )
        if self._bus is not None:
            self._bus.publish(EventType.DOCUMENT_INDEXED, document_id=document_id, fragments=len(chunks))
        return document_id

    def query(self, text: str, max_results: int = 5) -> QueryResult:
        """
        Rank fragments by overlap with text.

        Fragments with no overlap are left out; equal scores keep insertion order.
        """
        query_tokens = _tokenize(text)
        if not query_tokens or max_results <= 0:
            return QueryResult.empty()

        scored = []
        for fragment in self._fragments:
            score = overlap_score(query_tokens, _tokenize(fragment.content))
            if score > 0:
                scored.append((fragment, score))

        scored.sort(key=lambda item: item[1], reverse=True)
        top = scored[:max_results]

        logger.debug("Index queried", query_tokens=len(query_tokens), matches=len(scored), returned=len(top))
        return QueryResult(
            fragments=[f for f, _ in top],
            scores=[s for _, s in top],
            context="\n\n".join(f.content for f, _ in top),
        )

    def get_fragment(self, fragment_id: str) -> Optional[DocumentFragment]:
        return self._by_id.get(fragment_id)

    def fragments_for(self, document_id: str) -> List[DocumentFragment]:
        """Fragments of one document in chunk order."""
        matching = [f for f in self._fragments if f.document_id == document_id]
        return sorted(matching, key=lambda f: f.chunk_index)

    def stats(self) -> IndexStats:
        return IndexStats(
            document_count=len({f.document_id for f in self._fragments}),
            fragment_count=len(self._fragments),
        )

    def clear(self) -> None:
        self._fragments = []
        self._by_id.clear()
        logger.info("Index cleared")
        if self._bus is not None:
            self._bus.publish(EventType.INDEX_CLEARED)
