import pytest

from src.chunking.chunker import TextChunker, clean_text, estimate_tokens

META = {"resource_id": "res-1", "resource_title": "Thermodynamics notes"}


def _paragraph(n_sentences: int, tag: str = "p") -> str:
    return " ".join(
        f"Sentence {i} of {tag} explains one more idea about entropy and heat." for i in range(n_sentences)
    )


class TestCleanText:
    def test_normalises_line_endings_and_spaces(self):
        assert clean_text("a\r\nb\rc") == "a\nb\nc"
        assert clean_text("a  \t b") == "a b"

    def test_trims_lines_and_collapses_blank_runs(self):
        assert clean_text("  one  \n\n\n\n  two  ") == "one\n\ntwo"

    def test_keeps_paragraph_breaks(self):
        assert clean_text("first\n\nsecond") == "first\n\nsecond"


class TestEstimateTokens:
    def test_rounds_up(self):
        assert estimate_tokens("") == 0
        assert estimate_tokens("abcd") == 1
        assert estimate_tokens("abcde") == 2


class TestTextChunker:
    def test_short_text_is_one_chunk_equal_to_cleaned_input(self):
        chunker = TextChunker(chunk_size=1000, chunk_overlap=200)
        text = "  Entropy   measures disorder.\r\n\r\n\r\nHeat flows downhill.  "
        chunks = chunker.chunk_text(text, META)
        assert len(chunks) == 1
        assert chunks[0].content == clean_text(text)
        assert chunks[0].metadata.chunk_index == 0

    @pytest.mark.parametrize("text", ["", "   \n\n  ", "\t\r\n"])
    def test_blank_text_gives_no_chunks(self, text):
        assert TextChunker().chunk_text(text, META) == []

    def test_indices_are_contiguous_and_metadata_copied(self):
        text = "\n\n".join(_paragraph(6, tag=f"p{i}") for i in range(8))
        chunks = TextChunker(chunk_size=500, chunk_overlap=100).chunk_text(
            text, {**META, "subject_id": "phys-1", "chunk_index": 99}
        )
        assert len(chunks) > 1
        assert [c.metadata.chunk_index for c in chunks] == list(range(len(chunks)))
        for chunk in chunks:
            assert chunk.metadata.resource_id == "res-1"
            assert chunk.metadata.resource_title == "Thermodynamics notes"
            assert chunk.metadata.subject_id == "phys-1"

    def test_overlap_seeds_next_chunk_with_previous_tail(self):
        paragraphs = [f"Paragraph {i} " + "word " * 60 + f"end{i}" for i in range(4)]
        chunks = TextChunker(chunk_size=400, chunk_overlap=80).chunk_text("\n\n".join(paragraphs), META)
        assert len(chunks) >= 2
        seed = chunks[1].content.split("\n\n")[0]
        assert seed.endswith("end0")
        assert len(seed) <= 80
        assert chunks[0].content.endswith(seed)

    @pytest.mark.parametrize(
        "text",
        [
            "x" * 5000,                                        # no boundaries at all
            ("supercalifragilistic" * 80 + " ") * 3,            # words longer than chunk_size
            "word " * 3000,                                    # one giant sentence
            "\n\n".join(_paragraph(40, tag=str(i)) for i in range(3)),
            "Short.\n\n" + "y" * 2500 + "\n\nTail paragraph here.",
        ],
    )
    def test_every_chunk_is_bounded(self, text):
        chunker = TextChunker(chunk_size=300, chunk_overlap=60)
        chunks = chunker.chunk_text(text, META)
        assert chunks
        for chunk in chunks:
            assert len(chunk.content) <= chunker.chunk_size + chunker.chunk_overlap + 2

    def test_no_text_is_lost_for_unbroken_input(self):
        text = "z" * 2500
        chunks = TextChunker(chunk_size=1000, chunk_overlap=200).chunk_text(text, META)
        assert "".join(c.content for c in chunks) == text

    def test_trailing_unpunctuated_sentence_is_kept(self):
        paragraph = _paragraph(30) + " and a trailing clause without a full stop"
        chunks = TextChunker(chunk_size=300, chunk_overlap=50).chunk_text(paragraph, META)
        assert chunks[-1].content.endswith("without a full stop")

    def test_chunks_are_immutable(self):
        chunk = TextChunker().chunk_text("Some short text.", META)[0]
        with pytest.raises(Exception):
            chunk.content = "changed"

    @pytest.mark.parametrize("size,overlap", [(0, 0), (100, 100), (100, -1)])
    def test_invalid_configuration(self, size, overlap):
        with pytest.raises(ValueError):
            TextChunker(chunk_size=size, chunk_overlap=overlap)
