"""Tests for paragraph chunking and chunk-size resolution."""

import math

import pytest

from novel_workbench.models import Paragraph, TextChunk
from novel_workbench.services.chunk_formatter import (
    DEFAULT_TASK_CHUNK_SIZE,
    MAX_TASK_CHUNK_SIZE,
    MIN_TASK_CHUNK_SIZE,
    build_chunks,
    build_formatted_chunks,
    build_original_indices,
    filter_processed_paragraphs,
    get_selected_translation,
    is_only_symbols,
    mark_processed_paragraphs,
    mark_processed_paragraphs_from_map,
    resolve_runtime_task_chunk_size,
    resolve_task_chunk_size,
)

from conftest import make_paragraph


def _fmt(p, i):
    return f"[{i}] [ID: {p.id}]"


@pytest.fixture
def chapter_with_gaps() -> list[Paragraph]:
    return [
        Paragraph(id="p0", text="first"),
        Paragraph(id="p1", text=""),
        Paragraph(id="p2", text="third"),
        Paragraph(id="p3", text="   "),
        Paragraph(id="p4", text="fifth"),
    ]


class TestResolveTaskChunkSize:
    """Tests for resolve_task_chunk_size / resolve_runtime_task_chunk_size."""

    def test_defaults(self):
        assert DEFAULT_TASK_CHUNK_SIZE == 8000
        assert MIN_TASK_CHUNK_SIZE == 1000
        assert MAX_TASK_CHUNK_SIZE == 50000

    @pytest.mark.parametrize("value", [None, math.nan, math.inf, "", "  ", "abc", True, False,
                                       "12_000", "0x10", "nan", "Infinity", object()])
    def test_unusable_values_fall_back_to_default(self, value):
        assert resolve_task_chunk_size(value) == DEFAULT_TASK_CHUNK_SIZE
        assert resolve_runtime_task_chunk_size(value) == DEFAULT_TASK_CHUNK_SIZE

    def test_missing_equals_nan(self):
        assert resolve_task_chunk_size() == resolve_task_chunk_size(math.nan) == DEFAULT_TASK_CHUNK_SIZE

    def test_valid_values_pass_through(self):
        assert resolve_task_chunk_size(4321) == 4321
        assert resolve_task_chunk_size(12000) == 12000

    def test_numeric_strings_and_fractions(self):
        assert resolve_task_chunk_size("12000") == 12000
        assert resolve_task_chunk_size(4321.9) == 4321
        assert resolve_runtime_task_chunk_size(" 250.7 ") == 250
        assert resolve_task_chunk_size("1e4") == 10000
        assert resolve_task_chunk_size("+2500") == 2500

    def test_config_clamps(self):
        assert resolve_task_chunk_size(999) == MIN_TASK_CHUNK_SIZE
        assert resolve_task_chunk_size(-5) == MIN_TASK_CHUNK_SIZE
        assert resolve_task_chunk_size(999999) == MAX_TASK_CHUNK_SIZE

    def test_runtime_clamps(self):
        assert resolve_runtime_task_chunk_size(-100) == 1
        assert resolve_runtime_task_chunk_size(0) == 1
        assert resolve_runtime_task_chunk_size(50) == 50
        assert resolve_runtime_task_chunk_size(999999) == MAX_TASK_CHUNK_SIZE

    @pytest.mark.parametrize("value", [-1e9, -3, 0, 1, 999, 1000, 7777.7, 50000, 50001, 1e12])
    def test_results_within_bounds(self, value):
        assert MIN_TASK_CHUNK_SIZE <= resolve_task_chunk_size(value) <= MAX_TASK_CHUNK_SIZE
        assert 1 <= resolve_runtime_task_chunk_size(value) <= MAX_TASK_CHUNK_SIZE


class TestBuildChunks:
    """Tests for build_chunks."""

    def test_empty_input(self):
        assert build_chunks([], 1000, _fmt) == []

    def test_original_indices_survive_empty_paragraphs(self, chapter_with_gaps):
        chunks = build_chunks(chapter_with_gaps, 10000, _fmt)
        assert len(chunks) == 1
        text = chunks[0].text
        for idx in ("[0]", "[2]", "[4]"):
            assert idx in text
        assert "[1]" not in text
        assert "[3]" not in text

    def test_paragraph_ids_only_non_empty_in_order(self, chapter_with_gaps):
        chunks = build_chunks(chapter_with_gaps, 10000, _fmt)
        assert chunks[0].paragraph_ids == ["p0", "p2", "p4"]

    def test_lines_joined_with_newline(self, chapter_with_gaps):
        chunks = build_chunks(chapter_with_gaps, 10000, _fmt)
        assert chunks[0].text == "[0] [ID: p0]\n[2] [ID: p2]\n[4] [ID: p4]"

    def test_small_bound_keeps_chapter_indices(self, chapter_with_gaps):
        # each line is 12 chars; two lines plus separator would be 25
        chunks = build_chunks(chapter_with_gaps, 20, _fmt)
        assert [c.text for c in chunks] == ["[0] [ID: p0]", "[2] [ID: p2]", "[4] [ID: p4]"]
        assert [c.paragraph_ids for c in chunks] == [["p0"], ["p2"], ["p4"]]

    def test_separator_counts_toward_bound(self):
        units = [Paragraph(id="a", text="x"), Paragraph(id="b", text="y")]
        fmt = lambda p, i: "12345"
        assert len(build_chunks(units, 11, fmt)) == 1
        assert len(build_chunks(units, 10, fmt)) == 2

    def test_chunks_never_exceed_bound(self):
        units = [Paragraph(id=f"p{i}", text="w" * (i % 7 + 1)) for i in range(40)]
        fmt = lambda p, i: f"[{i}] {p.text}"
        for chunk in build_chunks(units, 30, fmt):
            assert len(chunk.text) <= 30

    def test_oversized_paragraph_becomes_own_chunk(self):
        units = [
            Paragraph(id="a", text="short"),
            Paragraph(id="big", text="x" * 100),
            Paragraph(id="b", text="short"),
        ]
        chunks = build_chunks(units, 30, lambda p, i: p.text)
        assert [c.paragraph_ids for c in chunks] == [["a"], ["big"], ["b"]]
        assert chunks[1].text == "x" * 100

    def test_original_indices_map_is_used(self):
        filtered = [Paragraph(id="p2", text="a"), Paragraph(id="p7", text="b")]
        chunks = build_chunks(filtered, 1000, _fmt, {"p2": 2, "p7": 7})
        assert chunks[0].text == "[2] [ID: p2]\n[7] [ID: p7]"

    def test_id_missing_from_map_falls_back_to_position(self):
        filtered = [Paragraph(id="p2", text="a"), Paragraph(id="new", text="b")]
        chunks = build_chunks(filtered, 1000, _fmt, {"p2": 2})
        assert "[1] [ID: new]" in chunks[0].text

    def test_accepts_dict_units(self):
        units = [{"id": "a", "text": "hello"}, {"id": "b", "text": ""}]
        chunks = build_chunks(units, 100, lambda u, i: f"{i}:{u['text']}")
        assert chunks == [TextChunk(text="0:hello", paragraph_ids=["a"])]

    def test_formatter_errors_propagate(self):
        def boom(p, i):
            raise RuntimeError("bad formatter")

        with pytest.raises(RuntimeError):
            build_chunks([Paragraph(id="a", text="x")], 100, boom)

    def test_fresh_call_rebuilds(self, chapter_with_gaps):
        first = build_chunks(chapter_with_gaps, 20, _fmt)
        second = build_chunks(chapter_with_gaps, 20, _fmt)
        assert first == second


class TestBuildFormattedChunks:
    """Tests for build_formatted_chunks and its helpers."""

    def test_formats_selected_translation(self):
        p = make_paragraph("p1", translation="你好")
        chunks = build_formatted_chunks([p], 1000)
        assert chunks[0].text == "[0] [ID: p1] 你好"

    def test_numbering_differs_with_and_without_map(self):
        full = [
            make_paragraph("p0", translation="zero"),
            make_paragraph("p1", text=""),
            make_paragraph("p2", translation="two"),
            make_paragraph("p3", text=""),
            make_paragraph("p4", translation="four"),
        ]
        filtered = [p for p in full if p.text.strip()]

        plain = build_formatted_chunks(filtered, 1000)
        mapped = build_formatted_chunks(filtered, 1000, build_original_indices(full))

        assert plain[0].text == "[0] [ID: p0] zero\n[1] [ID: p2] two\n[2] [ID: p4] four"
        assert mapped[0].text == "[0] [ID: p0] zero\n[2] [ID: p2] two\n[4] [ID: p4] four"
        assert plain[0].text != mapped[0].text

    def test_selected_translation_fallbacks(self):
        p = make_paragraph("p1", translation="first")
        p.translations.append(p.translations[0].model_copy(update={"id": "t2", "translation": "second"}))
        p.selected_translation_id = "t2"
        assert get_selected_translation(p) == "second"
        p.selected_translation_id = "missing"
        assert get_selected_translation(p) == "first"
        assert get_selected_translation(make_paragraph("p2")) == ""

    def test_build_original_indices_keeps_first_position(self):
        paras = [Paragraph(id="a"), Paragraph(id="b"), Paragraph(id="a")]
        assert build_original_indices(paras) == {"a": 0, "b": 1}


class TestChunkProcessingHelpers:
    """Tests for processed-paragraph bookkeeping and symbol detection."""

    def test_is_only_symbols(self):
        assert is_only_symbols("")
        assert is_only_symbols("   ")
        assert is_only_symbols("……！？——")
        assert is_only_symbols("12345 !!")
        assert not is_only_symbols("abc")
        assert not is_only_symbols("「こんにちは」")
        assert not is_only_symbols("漢字")

    def test_filter_processed_paragraphs(self):
        chunk = TextChunk(text="x", paragraph_ids=["a", "b", "c"])
        assert filter_processed_paragraphs(chunk, {"a"}, "test", 0, 1) == ["b", "c"]
        assert filter_processed_paragraphs(chunk, {"a", "b", "c"}, "test", 0, 1) is None

    def test_mark_processed(self):
        processed: set[str] = set()
        mark_processed_paragraphs([{"id": "a"}, Paragraph(id="b"), {"text": "no id"}], processed)
        mark_processed_paragraphs_from_map({"c": "translated"}, processed)
        assert processed == {"a", "b", "c"}
