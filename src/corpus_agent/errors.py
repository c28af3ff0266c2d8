"""Error taxonomy shared by the indexing and session layers."""

from __future__ import annotations

from dataclasses import dataclass


class CorpusAgentError(Exception):
    """Base class for errors raised by the corpus agent."""


class ExtractionError(CorpusAgentError):
    """Raised when a document yields no readable text."""


class EmbeddingError(CorpusAgentError):
    """Raised when the embedding service fails or returns a bad batch."""


class StoreError(CorpusAgentError):
    """Raised when the retrieval or conversation store cannot complete a call."""


class AlreadyProcessingError(CorpusAgentError):
    """Raised when a message is submitted while a run is still active."""


@dataclass(frozen=True, slots=True)
class AggregationDrop:
    """An event the activity aggregator could not apply.

    Drops are logged and kept for inspection, never raised.
    """

    kind: str
    tool_use_id: str
    reason: str
