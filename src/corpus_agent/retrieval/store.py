"""Retrieval store contract and concrete adapters."""

from __future__ import annotations

import asyncio
import itertools
import json
import sqlite3
import uuid
from collections.abc import Iterator
from contextlib import closing, contextmanager
from datetime import datetime
from math import sqrt
from pathlib import Path
from typing import Any, Protocol

from corpus_agent.errors import StoreError
from corpus_agent.types import Chunk, Document, SearchHit, utc_now


class RetrievalStore(Protocol):
    """Document and chunk persistence with nearest-neighbour search."""

    async def get_document(self, doc_id: str) -> Document | None: ...

    async def find_document(self, collection_id: str, name: str) -> Document | None: ...

    async def create_document(
        self,
        collection_id: str,
        name: str,
        source_ref: str,
        metadata: dict[str, Any] | None = None,
    ) -> Document: ...

    async def list_documents(self, collection_id: str) -> list[Document]: ...

    async def delete_document(self, doc_id: str) -> None:
        """Delete a document and all of its chunks."""

    async def has_chunks(self, doc_id: str) -> bool: ...

    async def chunk_count(self, doc_id: str) -> int: ...

    async def get_chunks(self, doc_id: str) -> list[Chunk]: ...

    async def generation(self, doc_id: str) -> int: ...

    async def replace_chunks(
        self,
        doc_id: str,
        texts: list[str],
        embeddings: list[list[float]],
        *,
        expected_generation: int | None = None,
    ) -> list[Chunk]:
        """Atomically swap the document's chunk set for a new generation."""

    async def delete_chunks(self, doc_id: str) -> None: ...

    async def search(
        self, collection_id: str, query_vector: list[float], k: int
    ) -> list[SearchHit]:
        """Rank the collection's chunks by cosine similarity."""


def cosine_similarity(a: list[float], b: list[float]) -> float:
    if not a or not b or len(a) != len(b):
        return 0.0
    numerator = sum(x * y for x, y in zip(a, b, strict=True))
    norm_a = sqrt(sum(x * x for x in a))
    norm_b = sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return numerator / (norm_a * norm_b)


def rank_hits(
    rows: list[tuple[Chunk, Document]], query_vector: list[float], k: int
) -> list[SearchHit]:
    """Rank rows already in insertion order; `sorted` keeps ties in that order."""

    if k <= 0:
        return []
    hits = [
        SearchHit(
            chunk=chunk,
            document=document,
            similarity=cosine_similarity(query_vector, chunk.embedding),
        )
        for chunk, document in rows
    ]
    return sorted(hits, key=lambda hit: hit.similarity, reverse=True)[:k]


def _check_batch(texts: list[str], embeddings: list[list[float]]) -> None:
    if len(texts) != len(embeddings):
        raise ValueError("texts and embeddings must have the same length")


class InMemoryRetrievalStore:
    """Deterministic store used for tests and local prototyping."""

    def __init__(self) -> None:
        self._documents: dict[str, Document] = {}
        self._chunks: dict[str, list[Chunk]] = {}
        self._generations: dict[str, int] = {}
        self._sequence: dict[str, int] = {}
        self._counter = itertools.count()
        self._lock = asyncio.Lock()

    async def get_document(self, doc_id: str) -> Document | None:
        return self._documents.get(doc_id)

    async def find_document(self, collection_id: str, name: str) -> Document | None:
        for document in self._documents.values():
            if document.collection_id == collection_id and document.name == name:
                return document
        return None

    async def create_document(
        self,
        collection_id: str,
        name: str,
        source_ref: str,
        metadata: dict[str, Any] | None = None,
    ) -> Document:
        document = Document(
            doc_id=str(uuid.uuid4()),
            collection_id=collection_id,
            name=name,
            source_ref=source_ref,
            metadata=dict(metadata or {}),
        )
        self._documents[document.doc_id] = document
        self._generations[document.doc_id] = 0
        return document

    async def list_documents(self, collection_id: str) -> list[Document]:
        return [d for d in self._documents.values() if d.collection_id == collection_id]

    async def delete_document(self, doc_id: str) -> None:
        async with self._lock:
            self._documents.pop(doc_id, None)
            self._generations.pop(doc_id, None)
            for chunk in self._chunks.pop(doc_id, []):
                self._sequence.pop(chunk.chunk_id, None)

    async def has_chunks(self, doc_id: str) -> bool:
        return bool(self._chunks.get(doc_id))

    async def chunk_count(self, doc_id: str) -> int:
        return len(self._chunks.get(doc_id, []))

    async def get_chunks(self, doc_id: str) -> list[Chunk]:
        return list(self._chunks.get(doc_id, []))

    async def generation(self, doc_id: str) -> int:
        return self._generations.get(doc_id, 0)

    async def replace_chunks(
        self,
        doc_id: str,
        texts: list[str],
        embeddings: list[list[float]],
        *,
        expected_generation: int | None = None,
    ) -> list[Chunk]:
        _check_batch(texts, embeddings)
        async with self._lock:
            if doc_id not in self._documents:
                raise StoreError(f"Document not found: {doc_id}")
            current = self._generations.get(doc_id, 0)
            if expected_generation is not None and expected_generation != current:
                raise StoreError(
                    f"Chunk set of {doc_id} changed concurrently "
                    f"(expected generation {expected_generation}, found {current})"
                )
            generation = current + 1
            chunks = [
                Chunk(
                    chunk_id=str(uuid.uuid4()),
                    doc_id=doc_id,
                    chunk_index=index,
                    text=text,
                    embedding=list(embedding),
                    generation=generation,
                )
                for index, (text, embedding) in enumerate(zip(texts, embeddings, strict=True))
            ]
            for chunk in self._chunks.get(doc_id, []):
                self._sequence.pop(chunk.chunk_id, None)
            for chunk in chunks:
                self._sequence[chunk.chunk_id] = next(self._counter)
            self._chunks[doc_id] = chunks
            self._generations[doc_id] = generation
            return list(chunks)

    async def delete_chunks(self, doc_id: str) -> None:
        async with self._lock:
            for chunk in self._chunks.pop(doc_id, []):
                self._sequence.pop(chunk.chunk_id, None)
            if doc_id in self._generations:
                self._generations[doc_id] += 1

    async def search(
        self, collection_id: str, query_vector: list[float], k: int
    ) -> list[SearchHit]:
        if k <= 0:
            return []
        rows = [
            (chunk, document)
            for document in self._documents.values()
            if document.collection_id == collection_id
            for chunk in self._chunks.get(document.doc_id, [])
        ]
        rows.sort(key=lambda row: self._sequence[row[0].chunk_id])
        return rank_hits(rows, query_vector, k)


_SCHEMA = """
CREATE TABLE IF NOT EXISTS documents (
    doc_id TEXT PRIMARY KEY,
    collection_id TEXT NOT NULL,
    name TEXT NOT NULL,
    source_ref TEXT NOT NULL,
    metadata TEXT NOT NULL DEFAULT '{}',
    generation INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS documents_by_collection ON documents(collection_id, name);
CREATE TABLE IF NOT EXISTS chunks (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    chunk_id TEXT NOT NULL UNIQUE,
    doc_id TEXT NOT NULL REFERENCES documents(doc_id) ON DELETE CASCADE,
    chunk_index INTEGER NOT NULL,
    text TEXT NOT NULL,
    embedding TEXT NOT NULL,
    generation INTEGER NOT NULL,
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS chunks_by_doc ON chunks(doc_id, chunk_index);
"""


class SqliteDatabase:
    """Opens short-lived SQLite connections with foreign keys enforced."""

    def __init__(self, path: str | Path, schema: str) -> None:
        self.path = str(path)
        with self.transaction() as conn:
            conn.executescript(schema)

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        try:
            with closing(sqlite3.connect(self.path)) as conn:
                conn.row_factory = sqlite3.Row
                conn.execute("PRAGMA foreign_keys = ON")
                with conn:
                    yield conn
        except sqlite3.Error as exc:
            raise StoreError(f"SQLite operation failed: {exc}") from exc


def _row_to_document(row: sqlite3.Row) -> Document:
    return Document(
        doc_id=row["doc_id"],
        collection_id=row["collection_id"],
        name=row["name"],
        source_ref=row["source_ref"],
        metadata=json.loads(row["metadata"]),
        created_at=datetime.fromisoformat(row["created_at"]),
    )


def _row_to_chunk(row: sqlite3.Row) -> Chunk:
    return Chunk(
        chunk_id=row["chunk_id"],
        doc_id=row["doc_id"],
        chunk_index=row["chunk_index"],
        text=row["text"],
        embedding=json.loads(row["embedding"]),
        generation=row["generation"],
        created_at=datetime.fromisoformat(row["created_at"]),
    )


class SqliteRetrievalStore:
    """SQLite-backed store; cosine ranking is computed in Python.

    Chunk replacement is a delete-then-insert inside one transaction, so a
    reader never sees two generations of the same document.
    """

    def __init__(self, path: str | Path) -> None:
        self._db = SqliteDatabase(path, _SCHEMA)

    async def get_document(self, doc_id: str) -> Document | None:
        return await asyncio.to_thread(self._get_document, doc_id)

    def _get_document(self, doc_id: str) -> Document | None:
        with self._db.transaction() as conn:
            row = conn.execute("SELECT * FROM documents WHERE doc_id = ?", (doc_id,)).fetchone()
        return _row_to_document(row) if row else None

    async def find_document(self, collection_id: str, name: str) -> Document | None:
        return await asyncio.to_thread(self._find_document, collection_id, name)

    def _find_document(self, collection_id: str, name: str) -> Document | None:
        with self._db.transaction() as conn:
            row = conn.execute(
                "SELECT * FROM documents WHERE collection_id = ? AND name = ? "
                "ORDER BY created_at LIMIT 1",
                (collection_id, name),
            ).fetchone()
        return _row_to_document(row) if row else None

    async def create_document(
        self,
        collection_id: str,
        name: str,
        source_ref: str,
        metadata: dict[str, Any] | None = None,
    ) -> Document:
        document = Document(
            doc_id=str(uuid.uuid4()),
            collection_id=collection_id,
            name=name,
            source_ref=source_ref,
            metadata=dict(metadata or {}),
        )
        await asyncio.to_thread(self._insert_document, document)
        return document

    def _insert_document(self, document: Document) -> None:
        with self._db.transaction() as conn:
            conn.execute(
                "INSERT INTO documents(doc_id, collection_id, name, source_ref, metadata, created_at) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (
                    document.doc_id,
                    document.collection_id,
                    document.name,
                    document.source_ref,
                    json.dumps(document.metadata),
                    document.created_at.isoformat(),
                ),
            )

    async def list_documents(self, collection_id: str) -> list[Document]:
        return await asyncio.to_thread(self._list_documents, collection_id)

    def _list_documents(self, collection_id: str) -> list[Document]:
        with self._db.transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM documents WHERE collection_id = ? ORDER BY rowid",
                (collection_id,),
            ).fetchall()
        return [_row_to_document(row) for row in rows]

    async def delete_document(self, doc_id: str) -> None:
        await asyncio.to_thread(self._execute, "DELETE FROM documents WHERE doc_id = ?", (doc_id,))

    async def has_chunks(self, doc_id: str) -> bool:
        return await self.chunk_count(doc_id) > 0

    async def chunk_count(self, doc_id: str) -> int:
        return await asyncio.to_thread(self._chunk_count, doc_id)

    def _chunk_count(self, doc_id: str) -> int:
        with self._db.transaction() as conn:
            row = conn.execute("SELECT COUNT(*) FROM chunks WHERE doc_id = ?", (doc_id,)).fetchone()
        return int(row[0])

    async def get_chunks(self, doc_id: str) -> list[Chunk]:
        return await asyncio.to_thread(self._get_chunks, doc_id)

    def _get_chunks(self, doc_id: str) -> list[Chunk]:
        with self._db.transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM chunks WHERE doc_id = ? ORDER BY chunk_index", (doc_id,)
            ).fetchall()
        return [_row_to_chunk(row) for row in rows]

    async def generation(self, doc_id: str) -> int:
        return await asyncio.to_thread(self._generation, doc_id)

    def _generation(self, doc_id: str) -> int:
        with self._db.transaction() as conn:
            row = conn.execute(
                "SELECT generation FROM documents WHERE doc_id = ?", (doc_id,)
            ).fetchone()
        return int(row[0]) if row else 0

    async def replace_chunks(
        self,
        doc_id: str,
        texts: list[str],
        embeddings: list[list[float]],
        *,
        expected_generation: int | None = None,
    ) -> list[Chunk]:
        _check_batch(texts, embeddings)
        return await asyncio.to_thread(
            self._replace_chunks, doc_id, texts, embeddings, expected_generation
        )

    def _replace_chunks(
        self,
        doc_id: str,
        texts: list[str],
        embeddings: list[list[float]],
        expected_generation: int | None,
    ) -> list[Chunk]:
        with self._db.transaction() as conn:
            # The UPDATE takes the write lock before the generation is compared.
            if expected_generation is None:
                cursor = conn.execute(
                    "UPDATE documents SET generation = generation + 1 WHERE doc_id = ?",
                    (doc_id,),
                )
            else:
                cursor = conn.execute(
                    "UPDATE documents SET generation = generation + 1 "
                    "WHERE doc_id = ? AND generation = ?",
                    (doc_id, expected_generation),
                )
            if cursor.rowcount == 0:
                row = conn.execute(
                    "SELECT generation FROM documents WHERE doc_id = ?", (doc_id,)
                ).fetchone()
                if row is None:
                    raise StoreError(f"Document not found: {doc_id}")
                raise StoreError(
                    f"Chunk set of {doc_id} changed concurrently "
                    f"(expected generation {expected_generation}, found {row[0]})"
                )
            row = conn.execute(
                "SELECT generation FROM documents WHERE doc_id = ?", (doc_id,)
            ).fetchone()
            generation = int(row[0])
            created_at = utc_now()
            chunks = [
                Chunk(
                    chunk_id=str(uuid.uuid4()),
                    doc_id=doc_id,
                    chunk_index=index,
                    text=text,
                    embedding=list(embedding),
                    generation=generation,
                    created_at=created_at,
                )
                for index, (text, embedding) in enumerate(zip(texts, embeddings, strict=True))
            ]
            conn.execute("DELETE FROM chunks WHERE doc_id = ?", (doc_id,))
            conn.executemany(
                "INSERT INTO chunks(chunk_id, doc_id, chunk_index, text, embedding, generation, created_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?)",
                [
                    (
                        chunk.chunk_id,
                        chunk.doc_id,
                        chunk.chunk_index,
                        chunk.text,
                        json.dumps(chunk.embedding),
                        chunk.generation,
                        created_at.isoformat(),
                    )
                    for chunk in chunks
                ],
            )
        return chunks

    async def delete_chunks(self, doc_id: str) -> None:
        await asyncio.to_thread(self._delete_chunks, doc_id)

    def _delete_chunks(self, doc_id: str) -> None:
        with self._db.transaction() as conn:
            conn.execute("DELETE FROM chunks WHERE doc_id = ?", (doc_id,))
            conn.execute(
                "UPDATE documents SET generation = generation + 1 WHERE doc_id = ?", (doc_id,)
            )

    async def search(
        self, collection_id: str, query_vector: list[float], k: int
    ) -> list[SearchHit]:
        if k <= 0:
            return []
        rows = await asyncio.to_thread(self._collection_rows, collection_id)
        return rank_hits(rows, query_vector, k)

    def _collection_rows(self, collection_id: str) -> list[tuple[Chunk, Document]]:
        with self._db.transaction() as conn:
            rows = conn.execute(
                "SELECT c.*, d.collection_id, d.name, d.source_ref, d.metadata, "
                "d.created_at AS doc_created_at "
                "FROM chunks c JOIN documents d ON c.doc_id = d.doc_id "
                "WHERE d.collection_id = ? ORDER BY c.seq",
                (collection_id,),
            ).fetchall()
        documents: dict[str, Document] = {}
        result: list[tuple[Chunk, Document]] = []
        for row in rows:
            document = documents.get(row["doc_id"])
            if document is None:
                document = Document(
                    doc_id=row["doc_id"],
                    collection_id=row["collection_id"],
                    name=row["name"],
                    source_ref=row["source_ref"],
                    metadata=json.loads(row["metadata"]),
                    created_at=datetime.fromisoformat(row["doc_created_at"]),
                )
                documents[document.doc_id] = document
            result.append((_row_to_chunk(row), document))
        return result

    def _execute(self, sql: str, params: tuple[Any, ...]) -> None:
        with self._db.transaction() as conn:
            conn.execute(sql, params)
