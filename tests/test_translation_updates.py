"""Tests for incremental translation write-back."""

from novel_workbench.models import ParagraphTranslation
from novel_workbench.services.translation_updates import select_changed_paragraph_translations


class TestSelectChangedParagraphTranslations:
    """Tests for select_changed_paragraph_translations."""

    def test_first_batch_is_all_new(self):
        last = {}
        changed = select_changed_paragraph_translations(
            [{"id": "p1", "translation": "one"}, {"id": "p2", "translation": "two"}], last,
        )
        assert [c.id for c in changed] == ["p1", "p2"]
        assert last == {"p1": "one", "p2": "two"}

    def test_repeats_are_skipped_but_revisions_win(self):
        last = {"p1": "one", "p2": "two"}
        changed = select_changed_paragraph_translations(
            [ParagraphTranslation(id="p1", translation="one"),
             ParagraphTranslation(id="p2", translation="two (revised)")],
            last,
        )
        assert changed == [ParagraphTranslation(id="p2", translation="two (revised)")]
        assert last["p2"] == "two (revised)"

    def test_blank_and_malformed_entries_dropped(self):
        last = {}
        changed = select_changed_paragraph_translations(
            [{"id": "p1", "translation": "   "}, {"translation": "no id"}, {"id": "p2", "translation": None}],
            last,
        )
        assert changed == []
        assert last == {}
