"""Tests for applying AI task results to chapter content."""

import pytest

from novel_workbench import database as db
from novel_workbench.models import Paragraph, ParagraphTranslation, TextChunk
from novel_workbench.services.chapter_task_service import (
    apply_task_translations,
    end_task,
    find_task,
    get_task,
    missing_paragraph_ids,
    pending_chunks,
)


@pytest.fixture
def content() -> list[Paragraph]:
    paragraphs = [
        Paragraph(id="p0", text="こんにちは"),
        Paragraph(id="p1", text=""),
        Paragraph(id="p2", text="……"),
        Paragraph(id="p3", text="Hello world"),
    ]
    db.save_chapter_content("c1", paragraphs, "b1")
    return paragraphs


class TestApplyTaskTranslations:
    """Tests for apply_task_translations."""

    def test_applies_and_selects_new_translation(self, content):
        result = apply_task_translations("t1", "b1", "c1", content,
                                         [ParagraphTranslation(id="p0", translation="你好")], "m1")

        assert result.applied == ["p0"]
        stored = db.load_chapter_content("c1")
        translation = stored[0].translations[-1]
        assert translation.translation == "你好"
        assert translation.ai_model_id == "m1"
        assert stored[0].selected_translation_id == translation.id
        assert result.missing == ["p3"]

    def test_degraded_translation_rejected_and_not_processed(self, content):
        result = apply_task_translations("t1", "b1", "c1", content,
                                         [{"id": "p3", "translation": "x" * 100}])

        assert result.applied == []
        assert result.degraded == ["p3"]
        assert "p3" in result.missing
        assert db.load_chapter_content("c1")[3].translations == []

    def test_repeated_result_written_once_revision_wins(self, content):
        first = [ParagraphTranslation(id="p0", translation="你好")]
        apply_task_translations("t1", "b1", "c1", content, first)
        content = db.load_chapter_content("c1")

        again = apply_task_translations("t1", "b1", "c1", content, first)
        assert again.applied == []

        revised = apply_task_translations("t1", "b1", "c1", content,
                                          [ParagraphTranslation(id="p0", translation="您好")])
        assert revised.applied == ["p0"]
        assert [t.translation for t in db.load_chapter_content("c1")[0].translations] == ["你好", "您好"]

    def test_map_results_mark_processed(self, content):
        result = apply_task_translations("t1", "b1", "c1", content, {"p0": "你好", "p3": "世界"})

        assert result.applied == ["p0", "p3"]
        assert result.missing == []
        assert find_task("t1").processed_ids == {"p0", "p3"}

    def test_unknown_and_blank_entries_ignored(self, content):
        result = apply_task_translations("t1", "b1", "c1", content,
                                         {"nope": "x", "p0": "   "})
        assert result.applied == []
        assert find_task("t1").processed_ids == set()


class TestTaskState:
    """Tests for task bookkeeping helpers."""

    def test_new_chapter_resets_state(self):
        state = get_task("t1", "b1", "c1")
        state.processed_ids.add("p0")

        assert get_task("t1", "b1", "c1") is state
        assert get_task("t1", "b1", "c2").processed_ids == set()

    def test_end_task(self):
        get_task("t1", "b1", "c1")
        assert end_task("t1")
        assert not end_task("t1")
        assert find_task("t1") is None

    def test_missing_skips_blank_and_symbol_only(self, content):
        assert missing_paragraph_ids(content, {"p0"}) == ["p3"]


class TestPendingChunks:
    """Tests for pending_chunks."""

    def test_drops_done_and_rebuilds_partial(self):
        chunks = [
            TextChunk(text="a\nb", paragraph_ids=["a", "b"]),
            TextChunk(text="c\nd", paragraph_ids=["c", "d"]),
        ]
        rebuilt = []

        def rebuild(ids):
            rebuilt.append(ids)
            return [TextChunk(text="\n".join(ids), paragraph_ids=ids)]

        out = pending_chunks(chunks, {"a", "b", "c"}, "test", rebuild)

        assert out == [TextChunk(text="d", paragraph_ids=["d"])]
        assert rebuilt == [["d"]]

    def test_untouched_chunks_kept_as_built(self):
        chunk = TextChunk(text="a", paragraph_ids=["a"])
        assert pending_chunks([chunk], set(), "test", lambda ids: []) == [chunk]
