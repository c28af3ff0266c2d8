"""Indexing pipeline: extract -> chunk -> embed -> replace chunk set."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from pathlib import Path

from corpus_agent.config import IndexingConfig
from corpus_agent.errors import EmbeddingError, ExtractionError
from corpus_agent.ingest.chunker import SentenceChunker
from corpus_agent.ingest.embedder import Embedder
from corpus_agent.ingest.extractor import ExtractorRegistry
from corpus_agent.obs.tracing import Timer
from corpus_agent.retrieval.store import RetrievalStore
from corpus_agent.types import Chunk, Document, IndexProgress, SearchHit

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[IndexProgress], None]


class IndexingPipeline:
    """Brings documents' chunk sets up to date and answers similarity queries.

    The pipeline does no locking of its own. Concurrent re-indexing of the
    same document is resolved by the store: the generation read before
    extraction is passed to `replace_chunks`, and the slower writer fails with
    `StoreError` instead of overwriting a newer chunk set.
    """

    def __init__(
        self,
        extractors: ExtractorRegistry,
        chunker: SentenceChunker,
        embedder: Embedder,
        store: RetrievalStore,
        config: IndexingConfig | None = None,
    ) -> None:
        self._extractors = extractors
        self._chunker = chunker
        self._embedder = embedder
        self._store = store
        self.config = config or IndexingConfig()

    @property
    def store(self) -> RetrievalStore:
        return self._store

    async def index_document(self, document: Document, *, force: bool = False) -> list[Chunk]:
        """Index one document and return its current chunk set.

        Without `force`, a document that already has chunks is left untouched
        and no embedding call is made.

        Raises:
            ExtractionError: the source yields no readable text.
            EmbeddingError: the embedding service fails, miscounts vectors or
                returns vectors of the wrong dimension.
            StoreError: the chunk set could not be replaced.
        """

        if not force and await self._store.has_chunks(document.doc_id):
            logger.debug("Skipping %s: already indexed", document.name)
            return await self._store.get_chunks(document.doc_id)

        generation = await self._store.generation(document.doc_id)
        with Timer() as timer:
            text = await self._extractors.extract_text(document.source_ref)
            if not text.strip():
                raise ExtractionError(f"Failed to extract text from {document.name}")

            texts = self._chunker.chunk(text)
            if not texts:
                logger.info("No chunks produced for %s", document.name)
                return []

            embeddings = await self._embedder.embed(texts)
            if len(embeddings) != len(texts):
                raise EmbeddingError(
                    f"Expected {len(texts)} embeddings for {document.name}, got {len(embeddings)}"
                )
            for vector in embeddings:
                self._check_dimension(vector, document.name)

            chunks = await self._store.replace_chunks(
                document.doc_id, texts, embeddings, expected_generation=generation
            )
        logger.info(
            "Indexed %s: %d chunks in %.1f ms", document.name, len(chunks), timer.elapsed_ms
        )
        return chunks

    async def index_file_if_needed(self, collection_id: str, path: str | Path) -> Document | None:
        """Index a single file unless a same-named document already has chunks.

        Returns the document that now holds the file's chunks, or None when the
        file is skipped (unsupported extension or missing on disk).
        """

        file_path = Path(path)
        if not self._extractors.supports(file_path) or not file_path.is_file():
            return None

        existing = await self._store.find_document(collection_id, file_path.name)
        if existing is not None and await self._store.has_chunks(existing.doc_id):
            return existing

        document = existing or await self._create_document(collection_id, file_path)
        await self.index_document(document)
        return document

    async def index_folder_if_needed(
        self,
        collection_id: str,
        folder: str | Path,
        on_progress: ProgressCallback,
    ) -> IndexProgress:
        """Index every matching file under `folder`, reporting progress.

        Files are visited in lexicographic path order. A failure on one file
        is recorded as a progress note and the scan moves on.
        """

        progress = IndexProgress(status="scanning")
        on_progress(_copy(progress))

        try:
            files = await asyncio.to_thread(self._discover, Path(folder))
        except OSError as exc:
            progress.status = "error"
            progress.error = f"Failed to scan {folder}: {exc}"
            logger.error(progress.error)
            on_progress(_copy(progress))
            return progress

        progress.total = len(files)
        if not files:
            progress.status = "done"
            on_progress(_copy(progress))
            return progress

        progress.status = "indexing"
        on_progress(_copy(progress))

        for index, file_path in enumerate(files):
            progress.completed = index
            progress.current_file = file_path.name
            on_progress(_copy(progress))
            try:
                await self._index_discovered(collection_id, file_path)
            except Exception as exc:
                note = f"{file_path.name}: {exc}"
                logger.warning("Failed to index %s", note)
                progress.notes.append(note)
            progress.completed = index + 1
            on_progress(_copy(progress))

        progress.current_file = None
        progress.status = "done"
        on_progress(_copy(progress))
        logger.info(
            "Indexed folder %s: %d files, %d failures", folder, progress.total, len(progress.notes)
        )
        return progress

    async def is_indexed(self, doc_id: str) -> bool:
        return await self._store.has_chunks(doc_id)

    async def delete_index(self, doc_id: str) -> None:
        await self._store.delete_chunks(doc_id)

    async def search(self, collection_id: str, query: str, limit: int = 10) -> list[SearchHit]:
        if limit <= 0:
            return []
        query_vector = await self._embedder.embed_query(query)
        self._check_dimension(query_vector, "query")
        return await self._store.search(collection_id, query_vector, limit)

    def _check_dimension(self, vector: list[float], source: str) -> None:
        expected = self.config.embedding_dimension
        if len(vector) != expected:
            raise EmbeddingError(
                f"Embedding for {source} has dimension {len(vector)}, expected {expected}"
            )

    async def _index_discovered(self, collection_id: str, file_path: Path) -> None:
        existing = await self._store.find_document(collection_id, file_path.name)
        if existing is not None and await self._store.has_chunks(existing.doc_id):
            logger.debug("Skipping %s: already indexed", file_path.name)
            return
        document = existing or await self._create_document(collection_id, file_path)
        await self.index_document(document)

    async def _create_document(self, collection_id: str, file_path: Path) -> Document:
        size = file_path.stat().st_size if file_path.exists() else 0
        return await self._store.create_document(
            collection_id,
            file_path.name,
            str(file_path),
            metadata={"size": size, "suffix": file_path.suffix.lower(), "source": "local"},
        )

    def _discover(self, folder: Path) -> list[Path]:
        if not folder.is_dir():
            raise NotADirectoryError(f"Not a directory: {folder}")
        return sorted(path for path in folder.glob(self.config.file_pattern) if path.is_file())


def _copy(progress: IndexProgress) -> IndexProgress:
    return IndexProgress(
        total=progress.total,
        completed=progress.completed,
        current_file=progress.current_file,
        status=progress.status,
        error=progress.error,
        notes=list(progress.notes),
    )
