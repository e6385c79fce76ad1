"""Chapter body handling during sync.

Novel rows only carry the chapter skeleton; paragraphs are stored per chapter
(see database.chapter_contents). These helpers make sure a sync decision about
the novel record never drops a chapter body this device already has.
"""
from __future__ import annotations

import logging
from typing import Optional

from .. import database as db
from ..models import Chapter, Novel, Paragraph, Volume

log = logging.getLogger(__name__)


def _local_content(chapter: Chapter) -> Optional[list[Paragraph]]:
    if chapter.content:
        return chapter.content
    return db.load_chapter_content(chapter.id)


def merge_paragraph_translations(
    local_paragraphs: list[Paragraph],
    remote_paragraphs: Optional[list[Paragraph]],
) -> list[Paragraph]:
    """Add remote translations the local paragraphs do not know yet.

    Local paragraphs stay authoritative for text and order. The local selection
    is kept when it still points at a translation; otherwise the remote one,
    then the first translation.
    """
    if not remote_paragraphs:
        return local_paragraphs

    remote_by_id = {p.id: p for p in remote_paragraphs}
    merged: list[Paragraph] = []
    for local in local_paragraphs:
        remote = remote_by_id.get(local.id)
        if remote is None or not remote.translations:
            merged.append(local)
            continue

        known = {t.id for t in local.translations}
        translations = list(local.translations)
        translations.extend(t for t in remote.translations if t.id not in known)
        ids = {t.id for t in translations}

        selected = local.selected_translation_id
        if not selected or selected not in ids:
            if remote.selected_translation_id in ids:
                selected = remote.selected_translation_id
            elif translations:
                selected = translations[0].id

        merged.append(local.model_copy(update={
            "translations": translations,
            "selected_translation_id": selected,
        }))
    return merged


def merge_remote_translations_into_local_novel(local: Novel, remote: Optional[Novel]) -> Novel:
    """Local novel wins, but pick up translations added on the other device."""
    if remote is None or not local.volumes or not remote.volumes:
        return local

    remote_chapters: dict[str, Chapter] = {}
    for volume in remote.volumes:
        for chapter in volume.chapters or []:
            remote_chapters[chapter.id] = chapter

    volumes: list[Volume] = []
    for volume in local.volumes:
        if not volume.chapters:
            volumes.append(volume)
            continue
        chapters: list[Chapter] = []
        for chapter in volume.chapters:
            remote_chapter = remote_chapters.get(chapter.id)
            if remote_chapter is None:
                chapters.append(chapter)
                continue
            content = _local_content(chapter)
            if not content:
                chapters.append(chapter)
                continue
            chapters.append(chapter.model_copy(update={
                "content": merge_paragraph_translations(content, remote_chapter.content),
            }))
        volumes.append(volume.model_copy(update={"chapters": chapters}))
    return local.model_copy(update={"volumes": volumes})


def _with_cached_content(chapter: Chapter) -> Chapter:
    if chapter.content:
        return chapter
    cached = db.load_chapter_content(chapter.id)
    if cached:
        return chapter.model_copy(update={"content": cached})
    return chapter


def merge_novel_with_local_content(remote: Novel, local: Novel) -> Novel:
    """Remote novel wins: take its metadata and structure, keep local chapter bodies."""
    merged = remote.model_copy(update={
        "created_at": remote.created_at or local.created_at,
        "last_edited": remote.last_edited or local.last_edited,
    })
    if not remote.volumes:
        return merged

    local_volumes = {v.id: v for v in local.volumes or []}
    volumes: list[Volume] = []
    for remote_volume in remote.volumes:
        local_volume = local_volumes.get(remote_volume.id)
        if remote_volume.chapters is None:
            volumes.append(remote_volume)
            continue

        local_chapters = {c.id: c for c in (local_volume.chapters or [])} if local_volume else {}
        chapters: list[Chapter] = []
        for remote_chapter in remote_volume.chapters:
            local_chapter = local_chapters.get(remote_chapter.id)
            if local_chapter is not None:
                content = _local_content(local_chapter)
                if content:
                    chapters.append(remote_chapter.model_copy(update={
                        "content": merge_paragraph_translations(content, remote_chapter.content),
                    }))
                    continue
            chapters.append(_with_cached_content(remote_chapter))
        volumes.append(remote_volume.model_copy(update={"chapters": chapters}))

    return merged.model_copy(update={"volumes": volumes})


def ensure_novel_content_loaded(novel: Novel) -> Novel:
    """Fill every unloaded chapter body from the chapter-content table."""
    if not novel.volumes:
        return novel
    volumes = []
    for volume in novel.volumes:
        if volume.chapters is None:
            volumes.append(volume)
            continue
        volumes.append(volume.model_copy(update={
            "chapters": [_with_cached_content(c) for c in volume.chapters],
        }))
    return novel.model_copy(update={"volumes": volumes})
