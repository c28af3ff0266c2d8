"""Corpus tools exposed to the agent engine."""

from __future__ import annotations

import logging
from pathlib import Path

from pydantic import BaseModel, Field

from corpus_agent.agent.registry import ToolRegistry, ToolSpec
from corpus_agent.errors import CorpusAgentError
from corpus_agent.ingest.pipeline import IndexingPipeline

logger = logging.getLogger(__name__)


class SemanticSearchInput(BaseModel):
    query: str = Field(min_length=1, description="What you are looking for, in plain words")
    limit: int = Field(default=10, ge=1, le=50, description="Maximum number of passages")


class IndexDocumentInput(BaseModel):
    file_path: str = Field(min_length=1, description="Absolute path of the file to index")


class CheckIndexedInput(BaseModel):
    file_name: str = Field(min_length=1, description="File name of the document")


class ListIndexedInput(BaseModel):
    pass


def register_corpus_tools(
    registry: ToolRegistry,
    pipeline: IndexingPipeline,
    collection_id: str,
) -> None:
    """Register the tool set available to the agent for one collection.

    Tools:
    - `semantic_search`: nearest-neighbour passages across indexed documents.
    - `index_document`: index a file so it becomes searchable.
    - `check_indexed`: whether a document has chunks.
    - `list_indexed_documents`: documents in the collection and chunk counts.

    Handlers report failures as text so the agent can recover mid-run.
    """

    store = pipeline.store

    async def _semantic_search(input_data: SemanticSearchInput) -> str:
        try:
            hits = await pipeline.search(collection_id, input_data.query, input_data.limit)
        except CorpusAgentError as exc:
            logger.warning("semantic_search failed: %s", exc)
            return f"Search failed: {exc}"
        if not hits:
            return "No indexed documents found. Use index_document to index files first."
        passages = [
            f"[{i}] {hit.document.name} (chunk {hit.chunk.chunk_index}, "
            f"similarity: {hit.similarity * 100:.1f}%)\n{hit.chunk.text}"
            for i, hit in enumerate(hits, start=1)
        ]
        return f"Found {len(hits)} relevant passages:\n\n" + "\n\n---\n\n".join(passages)

    async def _index_document(input_data: IndexDocumentInput) -> str:
        path = Path(input_data.file_path)
        if not path.is_file():
            return f"File not found: {path}"
        existing = await store.find_document(collection_id, path.name)
        if existing is not None and await store.has_chunks(existing.doc_id):
            return f'Document "{path.name}" is already indexed.'
        try:
            document = await pipeline.index_file_if_needed(collection_id, path)
        except CorpusAgentError as exc:
            logger.warning("index_document failed for %s: %s", path.name, exc)
            return f"Failed to index {path.name}: {exc}"
        if document is None:
            return f"Unsupported file type: {path.suffix or path.name}"
        count = await store.chunk_count(document.doc_id)
        return f'Indexed "{path.name}" into {count} chunks.'

    async def _check_indexed(input_data: CheckIndexedInput) -> str:
        document = await store.find_document(collection_id, input_data.file_name)
        if document is None:
            return f'Document "{input_data.file_name}" is not known in this collection.'
        count = await store.chunk_count(document.doc_id)
        if count == 0:
            return f'Document "{input_data.file_name}" is not indexed yet.'
        return f'Document "{input_data.file_name}" is indexed ({count} chunks).'

    async def _list_indexed(input_data: ListIndexedInput) -> str:
        del input_data
        documents = await store.list_documents(collection_id)
        lines = []
        for document in documents:
            count = await store.chunk_count(document.doc_id)
            status = f"{count} chunks" if count else "not indexed"
            lines.append(f"- {document.name} ({status})")
        if not lines:
            return "No documents in this collection."
        return "\n".join(lines)

    registry.register(
        ToolSpec(
            name="semantic_search",
            description=(
                "Search across all indexed documents by meaning. Returns the most "
                "relevant passages with their source document."
            ),
            args_schema=SemanticSearchInput,
            handler=_semantic_search,
            tags=["retrieval"],
        )
    )
    registry.register(
        ToolSpec(
            name="index_document",
            description="Index a document file so it can be searched semantically.",
            args_schema=IndexDocumentInput,
            handler=_index_document,
            tags=["indexing"],
        )
    )
    registry.register(
        ToolSpec(
            name="check_indexed",
            description="Check whether a document has been indexed.",
            args_schema=CheckIndexedInput,
            handler=_check_indexed,
            tags=["indexing"],
        )
    )
    registry.register(
        ToolSpec(
            name="list_indexed_documents",
            description="List the documents of this collection and their index status.",
            args_schema=ListIndexedInput,
            handler=_list_indexed,
            tags=["indexing"],
        )
    )
