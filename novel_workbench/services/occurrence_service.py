"""Term / character occurrence counts per chapter, refreshed in the background."""
from __future__ import annotations

import asyncio
import logging
import re
from typing import Awaitable, Callable, Iterable

from .. import database as db
from ..models import Chapter, Novel, Occurrence

log = logging.getLogger(__name__)

# Chapters scanned between two yields to the event loop
_BATCH_SIZE = 10

# Keeps fire-and-forget tasks referenced until they finish
_background_tasks: set[asyncio.Task] = set()


def _get_book(book_id: str) -> Novel:
    novel = db.get_novel(book_id)
    if novel is None:
        raise ValueError(f"Book {book_id} not found")
    return novel


def _chapters(novel: Novel) -> list[Chapter]:
    return [c for v in novel.volumes or [] for c in v.chapters or []]


def _count_in_chapter(chapter: Chapter, patterns: list[re.Pattern]) -> int:
    content = chapter.content or db.load_chapter_content(chapter.id) or []
    total = 0
    for pattern in patterns:
        for paragraph in content:
            total += len(pattern.findall(paragraph.text))
        if chapter.original_content:
            total += len(pattern.findall(chapter.original_content))
    return total


async def count_occurrences(novel: Novel, names: Iterable[str]) -> list[Occurrence]:
    """Literal matches of any of ``names`` per chapter; chapters without a match are omitted."""
    patterns = [re.compile(re.escape(n.strip())) for n in names if n and n.strip()]
    if not patterns:
        return []

    occurrences: list[Occurrence] = []
    for i, chapter in enumerate(_chapters(novel)):
        if i and i % _BATCH_SIZE == 0:
            await asyncio.sleep(0)
        count = _count_in_chapter(chapter, patterns)
        if count > 0:
            occurrences.append(Occurrence(chapter_id=chapter.id, count=count))
    return occurrences


# ── Terms ───────────────────────────────────────────────────────────────

async def refresh_all_term_occurrences(book_id: str) -> None:
    novel = _get_book(book_id)
    terms = []
    for term in novel.terminologies or []:
        occurrences = await count_occurrences(novel, [term.name])
        terms.append(term.model_copy(update={"occurrences": occurrences}))
    # Re-read so edits made while counting are not lost
    latest = _get_book(book_id)
    by_id = {t.id: t for t in terms}
    db.put_novel(latest.model_copy(update={
        "terminologies": [by_id.get(t.id, t) for t in latest.terminologies or []],
    }))


async def remove_chapter_term_occurrences(book_id: str, chapter_id: str) -> None:
    novel = _get_book(book_id)
    db.put_novel(novel.model_copy(update={
        "terminologies": [
            t.model_copy(update={"occurrences": [o for o in t.occurrences if o.chapter_id != chapter_id]})
            for t in novel.terminologies or []
        ],
    }))


# ── Characters ──────────────────────────────────────────────────────────

async def refresh_all_character_occurrences(book_id: str) -> None:
    novel = _get_book(book_id)
    characters = []
    for character in novel.character_settings or []:
        names = [character.name] + [a.name for a in character.aliases]
        occurrences = await count_occurrences(novel, names)
        characters.append(character.model_copy(update={"occurrences": occurrences}))
    latest = _get_book(book_id)
    by_id = {c.id: c for c in characters}
    db.put_novel(latest.model_copy(update={
        "character_settings": [by_id.get(c.id, c) for c in latest.character_settings or []],
    }))


async def remove_chapter_character_occurrences(book_id: str, chapter_id: str) -> None:
    novel = _get_book(book_id)
    db.put_novel(novel.model_copy(update={
        "character_settings": [
            c.model_copy(update={"occurrences": [o for o in c.occurrences if o.chapter_id != chapter_id]})
            for c in novel.character_settings or []
        ],
    }))


# ── Background scheduling ───────────────────────────────────────────────

async def _run_isolated(steps: list[tuple[str, Callable[[], Awaitable[None]]]]) -> None:
    for label, step in steps:
        try:
            await step()
            log.info("%s done", label)
        except Exception:
            log.exception("%s failed", label)


def _spawn(coro) -> asyncio.Task:
    task = asyncio.get_running_loop().create_task(coro)
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)
    return task


def refresh_all_occurrences_in_background(book_id: str) -> asyncio.Task:
    """Rescan every chapter of the book for terms, then characters.

    Returns immediately; a failure in one half is logged and does not stop
    the other.
    """
    return _spawn(_run_isolated([
        (f"Refreshing term occurrences of {book_id}",
         lambda: refresh_all_term_occurrences(book_id)),
        (f"Refreshing character occurrences of {book_id}",
         lambda: refresh_all_character_occurrences(book_id)),
    ]))


def remove_chapter_occurrences_in_background(book_id: str, chapter_id: str) -> asyncio.Task:
    """Drop one deleted chapter from every occurrence list, without a rescan."""
    return _spawn(_run_isolated([
        (f"Removing term occurrences of chapter {chapter_id}",
         lambda: remove_chapter_term_occurrences(book_id, chapter_id)),
        (f"Removing character occurrences of chapter {chapter_id}",
         lambda: remove_chapter_character_occurrences(book_id, chapter_id)),
    ]))


async def drain_background_tasks() -> None:
    """Wait for all scheduled occurrence work (shutdown / tests)."""
    while _background_tasks:
        await asyncio.gather(*list(_background_tasks), return_exceptions=True)
