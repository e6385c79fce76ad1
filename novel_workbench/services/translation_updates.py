"""Incremental write-back of paragraph translations during one AI task.

The model may revise the same paragraph several times in a task. Re-saving an
identical translation is wasted work, but a changed one must always win.
"""
from __future__ import annotations

from typing import Iterable

from ..models import ParagraphTranslation


def select_changed_paragraph_translations(
    incoming: Iterable[ParagraphTranslation | dict],
    last_applied: dict[str, str],
) -> list[ParagraphTranslation]:
    """Translations that differ from what was last applied; updates last_applied.

    Blank translations are dropped. last_applied belongs to a single task and
    must not be shared between tasks working on different chapters.
    """
    changed: list[ParagraphTranslation] = []
    for item in incoming:
        if isinstance(item, dict):
            pid, text = item.get("id"), item.get("translation")
        else:
            pid, text = item.id, item.translation
        if not pid or not isinstance(text, str) or not text.strip():
            continue
        if last_applied.get(pid) == text:
            continue
        last_applied[pid] = text
        changed.append(ParagraphTranslation(id=pid, translation=text))
    return changed
