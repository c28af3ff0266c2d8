"""FastAPI entrypoint for indexing, search, conversations and chat."""

from __future__ import annotations

import asyncio
import json
import logging
from collections import OrderedDict
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from corpus_agent.agent.engine import (
    AgentEngine,
    LangChainAgentEngine,
    build_system_prompt,
    open_checkpointer,
)
from corpus_agent.agent.registry import ToolRegistry
from corpus_agent.agent.session import ErrorNotification, SessionStreamCoordinator
from corpus_agent.agent.tools import register_corpus_tools
from corpus_agent.config import Settings
from corpus_agent.errors import CorpusAgentError
from corpus_agent.ingest.chunker import SentenceChunker
from corpus_agent.ingest.embedder import Embedder, OllamaEmbedder
from corpus_agent.ingest.extractor import ExtractorRegistry
from corpus_agent.ingest.pipeline import IndexingPipeline
from corpus_agent.obs.tracing import configure_logging
from corpus_agent.retrieval.conversations import ConversationStore, SqliteConversationStore
from corpus_agent.retrieval.store import RetrievalStore, SqliteRetrievalStore
from corpus_agent.types import IndexProgress

logger = logging.getLogger(__name__)

EngineFactory = Callable[[str], AgentEngine]


class IndexRequest(BaseModel):
    folder: str = Field(min_length=1)


class SearchRequest(BaseModel):
    query: str = Field(min_length=1)
    limit: int | None = Field(default=None, ge=0)


def _create_llm(settings: Settings) -> Any:
    from langchain_openai import ChatOpenAI

    return ChatOpenAI(model=settings.agent.model, temperature=0, streaming=True)


def create_app(
    settings: Settings | None = None,
    *,
    embedder: Embedder | None = None,
    store: RetrievalStore | None = None,
    conversations: ConversationStore | None = None,
    engine_factory: EngineFactory | None = None,
) -> FastAPI:
    """Build the application with explicit collaborators.

    Anything not supplied is created from `settings`: SQLite stores at
    `settings.database_path`, an Ollama embedder and a LangChain engine per
    collection. Default engines share a SQLite checkpointer in the same
    database, opened for the lifetime of the app, so a stored session id
    still resumes after a restart. At most `settings.agent.engine_cache_size`
    engines are kept, least recently used first out.
    """

    settings = settings or Settings.from_env()
    embedder = embedder or OllamaEmbedder(settings.ollama_host, settings.indexing.embedding_model)
    store = store or SqliteRetrievalStore(settings.database_path)
    conversations = conversations or SqliteConversationStore(settings.database_path)
    pipeline = IndexingPipeline(
        ExtractorRegistry(),
        SentenceChunker(settings.chunking),
        embedder,
        store,
        settings.indexing,
    )

    def _default_engine_factory(collection_id: str) -> AgentEngine:
        registry = ToolRegistry()
        register_corpus_tools(registry, pipeline, collection_id)
        return LangChainAgentEngine(
            llm=_create_llm(settings),
            tool_registry=registry,
            system_prompt=build_system_prompt(collection_id),
            checkpointer=app.state.checkpointer,
        )

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        async with open_checkpointer(settings.database_path) as checkpointer:
            app.state.checkpointer = checkpointer
            try:
                yield
            finally:
                app.state.engines.clear()

    app = FastAPI(title="Corpus Agent", version="0.1.0", lifespan=lifespan)
    app.state.settings = settings
    app.state.pipeline = pipeline
    app.state.conversations = conversations
    app.state.engine_factory = engine_factory or _default_engine_factory
    app.state.engines = OrderedDict()

    def _engine_for(collection_id: str) -> AgentEngine:
        engines: OrderedDict[str, AgentEngine] = app.state.engines
        engine = engines.pop(collection_id, None)
        if engine is None:
            engine = app.state.engine_factory(collection_id)
        engines[collection_id] = engine
        while len(engines) > settings.agent.engine_cache_size:
            evicted, _ = engines.popitem(last=False)
            logger.debug("Evicted agent engine for collection %s", evicted)
        return engine

    app.state.engine_for = _engine_for

    @app.get("/health")
    def health() -> dict[str, Any]:
        return {"status": "ok", "embedding_model": settings.indexing.embedding_model}

    @app.post("/collections/{collection_id}/index")
    async def index_folder(collection_id: str, request: IndexRequest) -> StreamingResponse:
        return StreamingResponse(
            _progress_stream(pipeline, collection_id, request.folder),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache"},
        )

    @app.post("/collections/{collection_id}/search")
    async def search(collection_id: str, request: SearchRequest) -> list[dict[str, Any]]:
        limit = request.limit if request.limit is not None else settings.retrieval.default_limit
        limit = min(limit, settings.retrieval.max_limit)
        try:
            hits = await pipeline.search(collection_id, request.query, limit)
        except CorpusAgentError as exc:
            raise HTTPException(status_code=500, detail=str(exc)) from exc
        return [
            {
                "documentId": hit.document.doc_id,
                "documentName": hit.document.name,
                "content": hit.chunk.text,
                "chunkIndex": hit.chunk.chunk_index,
                "similarity": hit.similarity,
            }
            for hit in hits
        ]

    @app.get("/collections/{collection_id}/documents")
    async def documents(collection_id: str) -> list[dict[str, Any]]:
        items = []
        for document in await store.list_documents(collection_id):
            items.append(
                {
                    "id": document.doc_id,
                    "name": document.name,
                    "path": document.source_ref,
                    "chunks": await store.chunk_count(document.doc_id),
                }
            )
        return items

    @app.get("/collections/{collection_id}/conversations")
    async def list_conversations(collection_id: str) -> list[dict[str, Any]]:
        return [c.to_dict() for c in await conversations.list_conversations(collection_id)]

    @app.get("/conversations/{conversation_id}/messages")
    async def conversation_messages(conversation_id: str) -> list[dict[str, Any]]:
        return [m.to_dict() for m in await conversations.get_messages(conversation_id)]

    @app.delete("/conversations/{conversation_id}")
    async def delete_conversation(conversation_id: str) -> dict[str, Any]:
        await conversations.delete_conversation(conversation_id)
        return {"success": True}

    @app.websocket("/ws/{collection_id}")
    async def chat(websocket: WebSocket, collection_id: str) -> None:
        await websocket.accept()
        coordinator = SessionStreamCoordinator(
            engine=_engine_for(collection_id),
            conversations=conversations,
            observer=websocket.send_json,
            collection_id=collection_id,
            config=settings.agent,
            conversation_id=websocket.query_params.get("conversationId"),
            session_id=websocket.query_params.get("sessionId"),
        )
        logger.info("WebSocket opened for collection %s", collection_id)
        tasks: set[asyncio.Task[None]] = set()
        try:
            while True:
                data = await websocket.receive_json()
                kind = data.get("type") if isinstance(data, dict) else None
                if kind == "chat":
                    if coordinator.processing:
                        await websocket.send_json(
                            ErrorNotification(error="A query is already being processed").to_wire()
                        )
                        continue
                    task = asyncio.create_task(
                        _run_turn(coordinator, websocket, str(data.get("content", "")))
                    )
                    tasks.add(task)
                    task.add_done_callback(tasks.discard)
                elif kind == "cancel":
                    coordinator.cancel()
                else:
                    await websocket.send_json(
                        ErrorNotification(error=f"Unknown message type: {kind}").to_wire()
                    )
        except WebSocketDisconnect:
            logger.info("WebSocket closed for collection %s", collection_id)
        finally:
            coordinator.close()
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

    return app


async def _run_turn(coordinator: SessionStreamCoordinator, websocket: WebSocket, content: str) -> None:
    try:
        await coordinator.submit(content)
    except CorpusAgentError as exc:
        logger.warning("Chat turn failed: %s", exc)
        await _report_error(websocket, str(exc))
    except Exception as exc:
        logger.exception("Chat turn crashed")
        await _report_error(websocket, str(exc) or type(exc).__name__)


async def _report_error(websocket: WebSocket, error: str) -> None:
    try:
        await websocket.send_json(ErrorNotification(error=error).to_wire())
    except (RuntimeError, WebSocketDisconnect):
        logger.debug("Could not report error; socket already closed")


async def _progress_stream(
    pipeline: IndexingPipeline, collection_id: str, folder: str
) -> AsyncIterator[str]:
    queue: asyncio.Queue[IndexProgress | None] = asyncio.Queue()

    async def _index() -> None:
        try:
            await pipeline.index_folder_if_needed(collection_id, folder, queue.put_nowait)
        except Exception as exc:
            logger.exception("Indexing %s failed", folder)
            queue.put_nowait(IndexProgress(status="error", error=str(exc)))
        finally:
            queue.put_nowait(None)

    task = asyncio.create_task(_index())
    try:
        while True:
            progress = await queue.get()
            if progress is None:
                break
            yield f"data: {json.dumps(progress.to_dict())}\n\n"
    finally:
        if not task.done():
            task.cancel()


def build_app() -> FastAPI:
    """Factory for `uvicorn --factory corpus_agent.api.main:build_app`."""

    settings = Settings.from_env()
    configure_logging(settings.log_level)
    return create_app(settings)
