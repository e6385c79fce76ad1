"""API routes for books: listing, occurrence maintenance and task write-back."""
from __future__ import annotations

from fastapi import APIRouter, HTTPException

from .. import database as db
from ..models import Novel, TaskTranslationsOut, TaskTranslationsRequest
from ..services.chapter_task_service import apply_task_translations, end_task
from ..services.occurrence_service import (
    refresh_all_occurrences_in_background,
    remove_chapter_occurrences_in_background,
)

router = APIRouter(prefix="/api/books", tags=["books"])


@router.get("")
async def list_books():
    return [
        {"id": n.id, "title": n.title, "author": n.author, "last_edited": n.last_edited}
        for n in db.list_novels()
    ]


@router.get("/{book_id}")
async def get_book(book_id: str):
    novel = db.get_novel(book_id)
    if not novel:
        raise HTTPException(404, "Book not found")
    return novel.model_dump(mode="json", by_alias=True)


@router.put("/{book_id}")
async def save_book(book_id: str, novel: Novel):
    if novel.id != book_id:
        raise HTTPException(400, "Book id does not match the URL")
    db.put_novel(novel)
    return {"ok": True}


@router.post("/{book_id}/occurrences/refresh", status_code=202)
async def refresh_occurrences(book_id: str):
    if not db.get_novel(book_id):
        raise HTTPException(404, "Book not found")
    refresh_all_occurrences_in_background(book_id)
    return {"ok": True, "message": "Occurrence refresh started"}


@router.delete("/{book_id}/chapters/{chapter_id}/occurrences", status_code=202)
async def remove_chapter_occurrences(book_id: str, chapter_id: str):
    if not db.get_novel(book_id):
        raise HTTPException(404, "Book not found")
    remove_chapter_occurrences_in_background(book_id, chapter_id)
    return {"ok": True}


@router.post("/{book_id}/chapters/{chapter_id}/translations", response_model=TaskTranslationsOut)
async def apply_chapter_translations(book_id: str, chapter_id: str, req: TaskTranslationsRequest):
    if not db.get_novel(book_id):
        raise HTTPException(404, "Book not found")
    content = db.load_chapter_content(chapter_id)
    if content is None:
        raise HTTPException(404, "Chapter content not found")
    result = apply_task_translations(req.task_id, book_id, chapter_id, content,
                                     req.translations, req.ai_model_id)
    return TaskTranslationsOut(applied=result.applied, degraded=result.degraded, missing=result.missing)


@router.delete("/{book_id}/chapters/{chapter_id}/tasks/{task_id}")
async def finish_chapter_task(book_id: str, chapter_id: str, task_id: str):
    if not end_task(task_id):
        raise HTTPException(404, "Task not found")
    return {"ok": True}
