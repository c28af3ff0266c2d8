"""Configuration models for the corpus agent."""

from __future__ import annotations

import os

from pydantic import BaseModel, Field

DEFAULT_ALLOWED_TOOLS = [
    "semantic_search",
    "index_document",
    "check_indexed",
    "list_indexed_documents",
]


class ChunkingConfig(BaseModel):
    """Configures sentence-greedy chunking with word overlap."""

    max_chars: int = Field(default=512, ge=1)
    overlap_words: int = Field(default=50, ge=0)
    min_chunk_chars: int = Field(default=20, ge=0)


class IndexingConfig(BaseModel):
    """Configures folder discovery and the embedding model."""

    file_pattern: str = "**/*.pdf"
    embedding_model: str = "nomic-embed-text"
    embedding_dimension: int = Field(default=768, ge=1)


class RetrievalConfig(BaseModel):
    """Configures semantic search limits."""

    default_limit: int = Field(default=10, ge=1)
    max_limit: int = Field(default=50, ge=1)


class AgentConfig(BaseModel):
    """Configures the agent engine and session bookkeeping."""

    model: str = "gpt-4o-mini"
    allowed_tools: list[str] = Field(default_factory=lambda: list(DEFAULT_ALLOWED_TOOLS))
    sub_agent_tools: list[str] = Field(default_factory=lambda: ["Task"])
    title_max_chars: int = Field(default=50, ge=1)
    engine_cache_size: int = Field(default=16, ge=1)


class Settings(BaseModel):
    """Top-level settings assembled from the environment."""

    database_path: str = "corpus_agent.db"
    ollama_host: str = "http://localhost:11434"
    log_level: str = "INFO"
    chunking: ChunkingConfig = Field(default_factory=ChunkingConfig)
    indexing: IndexingConfig = Field(default_factory=IndexingConfig)
    retrieval: RetrievalConfig = Field(default_factory=RetrievalConfig)
    agent: AgentConfig = Field(default_factory=AgentConfig)

    @classmethod
    def from_env(cls) -> "Settings":
        indexing = IndexingConfig(
            embedding_model=os.getenv("EMBEDDING_MODEL", IndexingConfig().embedding_model),
        )
        agent = AgentConfig(model=os.getenv("OPENAI_MODEL", AgentConfig().model))
        return cls(
            database_path=os.getenv("CORPUS_AGENT_DB", "corpus_agent.db"),
            ollama_host=os.getenv("OLLAMA_HOST", "http://localhost:11434"),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            indexing=indexing,
            agent=agent,
        )
