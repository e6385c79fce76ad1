"""API routes for chunk previews, chunk-size resolution and output checks."""
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, HTTPException

from ..models import ChunkPreviewOut, ChunkPreviewRequest, DegradationCheckRequest, Paragraph
from ..services.chapter_task_service import find_task, pending_chunks
from ..services.chunk_formatter import (
    build_chunks,
    build_formatted_chunks,
    build_original_indices,
    resolve_runtime_task_chunk_size,
    resolve_task_chunk_size,
)
from ..services.degradation_detector import DegradationOptions, detect_repeating_characters

router = APIRouter(prefix="/api/chunks", tags=["chunks"])


def _format_original(paragraph: Paragraph, index: int) -> str:
    return f"[{index}] [ID: {paragraph.id}] {paragraph.text}"


@router.post("/preview", response_model=ChunkPreviewOut)
async def preview_chunks(req: ChunkPreviewRequest):
    size = resolve_runtime_task_chunk_size(req.chunk_size)
    indices = build_original_indices(req.all_chapter_paragraphs or req.paragraphs)

    if req.mode == "translation":
        build = lambda paragraphs: build_chunks(paragraphs, size, _format_original, indices)
    elif req.mode == "proofreading":
        build = lambda paragraphs: build_formatted_chunks(paragraphs, size, indices)
    else:
        raise HTTPException(400, f"Unknown mode: {req.mode}")

    chunks = build(req.paragraphs)
    task = find_task(req.task_id) if req.task_id else None
    if task is not None:
        def rebuild(ids: list[str]):
            keep = set(ids)
            return build([p for p in req.paragraphs if p.id in keep])

        chunks = pending_chunks(chunks, task.processed_ids, f"task {req.task_id}", rebuild)

    return ChunkPreviewOut(chunk_size=size, chunk_count=len(chunks), chunks=chunks)


@router.get("/size")
async def get_chunk_size(value: Optional[str] = None, runtime: bool = False):
    size = resolve_runtime_task_chunk_size(value) if runtime else resolve_task_chunk_size(value)
    return {"chunk_size": size}


@router.post("/degradation")
async def check_degradation(req: DegradationCheckRequest):
    options = DegradationOptions(
        repeat_threshold=req.repeat_threshold,
        repeat_check_window=req.repeat_check_window,
        pattern_repeat_threshold=req.pattern_repeat_threshold,
        log_label="check",
    )
    return {"degraded": detect_repeating_characters(req.text, req.original_text, options)}
