from __future__ import annotations

import pytest

from destinyrag.ingestion.chunking import (
    DEFAULT_SECTION,
    SENTENCE_TERMINATORS,
    build_content_chunks,
    find_headings,
    split_into_chunks,
)


SENTENCE = "日主偏旺喜用神为水木需要注意调和。"


def _section(title: str, sentences: int = 35) -> str:
    return f"## {title}\n" + SENTENCE * sentences


def _report() -> str:
    # Three ~600 character sections, roughly 1800 characters in total.
    return "\n\n".join([_section("性格特征"), _section("事业运"), _section("财运")])


def test_split_is_pure() -> None:
    text = _report()
    assert split_into_chunks(text) == split_into_chunks(text)


def test_empty_text_yields_no_chunks() -> None:
    assert split_into_chunks("") == []
    assert split_into_chunks("   \n ") == []
    assert build_content_chunks("") == []


def test_chunks_respect_size_bound_and_end_on_terminators() -> None:
    text = _report()
    chunks = split_into_chunks(text, chunk_size=600, overlap=100, min_chunk=100)
    assert len(chunks) >= 3
    for chunk in chunks:
        assert len(chunk) <= 700
        assert chunk[-1] in SENTENCE_TERMINATORS
        assert chunk in text


def test_consecutive_chunks_overlap() -> None:
    chunks = build_content_chunks(_report())
    for previous, current in zip(chunks, chunks[1:]):
        assert current.start_char < previous.end_char


def test_small_input_is_a_single_chunk() -> None:
    text = "  命主性格温和，做事稳重。  "
    assert split_into_chunks(text) == ["命主性格温和，做事稳重。"]


def test_short_tail_is_merged_into_previous_chunk() -> None:
    sentence = "甲乙丙丁戊己庚辛壬。"
    text = sentence * 10 + "尾。"
    assert split_into_chunks(text, chunk_size=100, overlap=5, min_chunk=10) == [text]


def test_carried_overlap_counts_toward_chunk_size() -> None:
    text = ("甲" * 99 + "。") * 12 + "尾巴。"
    chunks = split_into_chunks(text, chunk_size=600, overlap=50, min_chunk=100)
    assert [len(chunk) for chunk in chunks] == [600, 550, 153]
    assert all(len(chunk) >= 100 for chunk in chunks)
    assert chunks[-1].endswith("尾巴。")


def test_oversized_sentence_is_hard_split() -> None:
    text = "木" * 1500
    chunks = split_into_chunks(text, chunk_size=600, overlap=100, min_chunk=100)
    assert len(chunks) > 1
    assert all(len(chunk) <= 700 for chunk in chunks)


def test_invalid_parameters_are_rejected() -> None:
    with pytest.raises(ValueError):
        split_into_chunks("内容。", chunk_size=0)
    with pytest.raises(ValueError):
        split_into_chunks("内容。", chunk_size=100, overlap=100)


def test_content_chunks_are_exact_slices_with_metadata() -> None:
    text = _report()
    chunks = build_content_chunks(text)
    assert [chunk.chunk_index for chunk in chunks] == list(range(len(chunks)))
    for chunk in chunks:
        assert text[chunk.start_char : chunk.end_char] == chunk.content
        assert chunk.word_count == len(chunk.content)
        assert chunk.metadata() == {
            "section": chunk.section,
            "start_char": chunk.start_char,
            "end_char": chunk.end_char,
            "word_count": chunk.word_count,
        }


def test_sections_follow_nearest_preceding_heading() -> None:
    text = _report()
    headings = find_headings(text)
    assert [name for _, name in headings] == ["性格特征", "事业运", "财运"]

    chunks = build_content_chunks(text)
    assert chunks[0].section == "性格特征"
    assert {chunk.section for chunk in chunks} == {"性格特征", "事业运", "财运"}
    for index, chunk in enumerate(chunks):
        if index == 0:
            own_start = chunk.start_char
        else:
            # Overlap seeds belong to the previous chunk; new content starts after it.
            own_start = chunks[index - 1].end_char
            while text[own_start].isspace():
                own_start += 1
        expected = [name for position, name in headings if position <= own_start][-1]
        assert chunk.section == expected


def test_plain_keyword_lines_act_as_headings() -> None:
    text = "事业运：\n" + SENTENCE * 3 + "\n健康运\n" + SENTENCE * 3
    assert [name for _, name in find_headings(text)] == ["事业运", "健康运"]


def test_sentences_mentioning_keywords_are_not_headings() -> None:
    text = "今年事业运不错。\n" + SENTENCE
    assert find_headings(text) == []


def test_text_without_headings_uses_default_section() -> None:
    chunks = build_content_chunks("今天天气很好。明天也不错。")
    assert [chunk.section for chunk in chunks] == [DEFAULT_SECTION]
