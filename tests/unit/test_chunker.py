from corpus_agent.config import ChunkingConfig
from corpus_agent.ingest.chunker import SentenceChunker, chunk_text


def test_empty_and_whitespace_text_produce_no_chunks() -> None:
    assert chunk_text("", max_chars=100, overlap_words=5) == []
    assert chunk_text("   \n\t  ", max_chars=100, overlap_words=5) == []


def test_chunks_overlap_with_trailing_words_of_previous_chunk() -> None:
    text = (
        "Alpha beta gamma delta epsilon. "
        "Zeta eta theta iota kappa lambda. "
        "Mu nu xi omicron pi."
    )

    chunks = chunk_text(text, max_chars=60, overlap_words=2, min_chars=1)

    assert chunks == [
        "Alpha beta gamma delta epsilon.",
        "delta epsilon. Zeta eta theta iota kappa lambda.",
        "kappa lambda. Mu nu xi omicron pi.",
    ]


def test_overlong_sentence_becomes_its_own_chunk() -> None:
    long_sentence = "This is a much longer sentence than twenty chars."
    text = f"Short one. {long_sentence} End here."

    chunks = chunk_text(text, max_chars=20, overlap_words=0, min_chars=1)

    assert chunks == ["Short one.", long_sentence, "End here."]


def test_joining_space_counts_towards_the_budget() -> None:
    first = "a" * 19 + "."
    second = "b" * 19 + "."
    text = f"{first} {second}"

    assert chunk_text(text, max_chars=41, overlap_words=0, min_chars=1) == [text]
    assert chunk_text(text, max_chars=40, overlap_words=0, min_chars=1) == [first, second]


def test_short_chunks_are_dropped() -> None:
    text = "Hi. This sentence is long enough to survive."

    chunks = chunk_text(text, max_chars=10, overlap_words=0, min_chars=20)

    assert chunks == ["This sentence is long enough to survive."]


def test_sentences_within_budget_share_a_chunk() -> None:
    text = "First sentence here! Second one follows? Third closes it."

    assert chunk_text(text, max_chars=512, overlap_words=50) == [text]


def test_chunker_is_deterministic() -> None:
    text = " ".join(f"Sentence number {i} talks about corpus retrieval." for i in range(200))
    chunker = SentenceChunker(ChunkingConfig(max_chars=300, overlap_words=10))

    first = chunker.chunk(text)
    second = chunker.chunk(text)

    assert first == second
    assert len(first) > 1
    assert all(len(chunk) >= 20 for chunk in first)


def test_default_config_matches_indexing_defaults() -> None:
    config = SentenceChunker().config

    assert config.max_chars == 512
    assert config.overlap_words == 50
    assert config.min_chunk_chars == 20
