import pytest

from services.material_pipeline.chunker import Chunker, split_text

SAMPLES = [
    "single",
    "two words",
    "  leading and trailing   whitespace  ",
    "line one\nline two\tand a tab",
    "The quick brown fox jumps over the lazy dog. " * 40,
    "short words then a verylongwordthatexceedsthelimit then more",
]


@pytest.mark.parametrize("text", SAMPLES)
@pytest.mark.parametrize("max_size", [1, 5, 12, 80, 4000])
def test_chunks_reproduce_word_sequence(text, max_size):
    chunks = list(split_text(text, max_size))
    assert " ".join(chunks).split() == text.split()


@pytest.mark.parametrize("text", SAMPLES)
@pytest.mark.parametrize("max_size", [1, 5, 12, 80])
def test_chunks_respect_size_bound_except_single_long_words(text, max_size):
    for chunk in split_text(text, max_size):
        if len(chunk) > max_size:
            assert " " not in chunk


def test_long_word_is_placed_alone_and_unshortened():
    chunks = list(split_text("aa bbbbbbbbbb cc", 4))
    assert chunks == ["aa", "bbbbbbbbbb", "cc"]


def test_greedy_accumulation_fills_each_chunk():
    chunks = list(split_text("a b c d e f g", 5))
    assert chunks == ["a b c", "d e f", "g"]


@pytest.mark.parametrize("text", ["", "   ", "\n\t  \n"])
def test_empty_input_yields_no_chunks(text):
    assert list(split_text(text, 10)) == []
    assert len(split_text(text, 10)) == 0


def test_sequence_is_restartable():
    chunks = Chunker(8).split("one two three four five six")
    first = list(chunks)
    second = list(chunks)
    assert first == second
    assert len(chunks) == len(first)


def test_nine_thousand_characters_make_three_chunks():
    text = " ".join(["abcd"] * 1799 + ["abcde"])
    assert len(text) == 9000

    chunks = list(split_text(text, 4000))

    assert len(chunks) == 3
    assert all(len(chunk) <= 4000 for chunk in chunks)
    assert " ".join(chunks) == text


def test_chunker_rejects_non_positive_size():
    with pytest.raises(ValueError):
        Chunker(0)
