"""Applying AI task results to a chapter while the task is still running.

Each task (one chapter, one run) keeps the translations it already applied and
the paragraph ids it already processed, so chunk retries skip finished work
and repeated partial results are not written twice.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Iterable, Optional

from .chunk_formatter import (
    filter_processed_paragraphs,
    is_only_symbols,
    mark_processed_paragraphs,
    mark_processed_paragraphs_from_map,
)
from .degradation_detector import DegradationOptions, detect_repeating_characters
from .translation_updates import select_changed_paragraph_translations
from .. import database as db
from ..models import Paragraph, ParagraphTranslation, TextChunk, Translation

log = logging.getLogger(__name__)


@dataclass
class TaskState:
    book_id: str
    chapter_id: str
    last_applied: dict[str, str] = field(default_factory=dict)
    processed_ids: set[str] = field(default_factory=set)


@dataclass
class ApplyResult:
    applied: list[str] = field(default_factory=list)
    degraded: list[str] = field(default_factory=list)
    missing: list[str] = field(default_factory=list)


# ── Task state ──────────────────────────────────────────────────────────

_tasks: dict[str, TaskState] = {}


def find_task(task_id: str) -> Optional[TaskState]:
    return _tasks.get(task_id)


def get_task(task_id: str, book_id: str, chapter_id: str) -> TaskState:
    state = _tasks.get(task_id)
    if state is None or state.chapter_id != chapter_id:
        state = TaskState(book_id=book_id, chapter_id=chapter_id)
        _tasks[task_id] = state
    return state


def end_task(task_id: str) -> bool:
    return _tasks.pop(task_id, None) is not None


def clear_tasks() -> None:
    _tasks.clear()


# ── Chunk bookkeeping ───────────────────────────────────────────────────

def pending_chunks(
    chunks: list[TextChunk],
    processed_ids: set[str],
    log_label: str,
    rebuild: Callable[[list[str]], list[TextChunk]],
) -> list[TextChunk]:
    """Chunks that still hold unprocessed paragraphs.

    Fully processed chunks are dropped; a partly processed one is rebuilt by
    ``rebuild`` from its remaining ids so the text only carries those lines.
    """
    out: list[TextChunk] = []
    for i, chunk in enumerate(chunks):
        remaining = filter_processed_paragraphs(chunk, processed_ids, log_label, i, len(chunks))
        if remaining is None:
            continue
        if len(remaining) < len(chunk.paragraph_ids):
            out.extend(rebuild(remaining))
        else:
            out.append(chunk)
    return out


def missing_paragraph_ids(content: Iterable[Paragraph], processed_ids: set[str]) -> list[str]:
    """Paragraphs with real text the task has not produced a result for yet."""
    return [
        p.id for p in content
        if p.text and p.text.strip() and not is_only_symbols(p.text) and p.id not in processed_ids
    ]


# ── Write-back ──────────────────────────────────────────────────────────

def _as_list(incoming) -> list[dict]:
    if isinstance(incoming, dict):
        return [{"id": pid, "translation": text} for pid, text in incoming.items()]
    return [
        item if isinstance(item, dict) else {"id": item.id, "translation": item.translation}
        for item in incoming
    ]


def apply_task_translations(
    task_id: str,
    book_id: str,
    chapter_id: str,
    content: list[Paragraph],
    incoming: list[ParagraphTranslation] | dict[str, str],
    ai_model_id: str = "",
    degradation: Optional[DegradationOptions] = None,
) -> ApplyResult:
    """Write changed translations of one task into the chapter and save it.

    Degraded translations (runaway repetition not present in the source text)
    are reported and neither applied nor marked processed.
    """
    state = get_task(task_id, book_id, chapter_id)
    by_id = {p.id: p for p in content}
    options = degradation or DegradationOptions(log_label=f"task {task_id}")
    result = ApplyResult()

    accepted = []
    for item in _as_list(incoming):
        paragraph = by_id.get(item.get("id"))
        text = item.get("translation")
        if paragraph is None or not isinstance(text, str) or not text.strip():
            continue
        if detect_repeating_characters(text, paragraph.text, options):
            result.degraded.append(paragraph.id)
            continue
        accepted.append(item)

    if isinstance(incoming, dict):
        mark_processed_paragraphs_from_map(
            {item["id"]: item["translation"] for item in accepted}, state.processed_ids,
        )
    else:
        mark_processed_paragraphs(accepted, state.processed_ids)

    for changed in select_changed_paragraph_translations(accepted, state.last_applied):
        paragraph = by_id[changed.id]
        translation = Translation(translation=changed.translation, ai_model_id=ai_model_id)
        by_id[changed.id] = paragraph.model_copy(update={
            "translations": [*paragraph.translations, translation],
            "selected_translation_id": translation.id,
        })
        result.applied.append(changed.id)

    if result.applied:
        db.save_chapter_content(chapter_id, [by_id[p.id] for p in content], book_id)
        log.info("[task %s] applied %d translation(s) to chapter %s",
                 task_id, len(result.applied), chapter_id)
    if result.degraded:
        log.warning("[task %s] %d degraded translation(s) rejected", task_id, len(result.degraded))

    result.missing = missing_paragraph_ids(content, state.processed_ids)
    return result
