"""Paragraph chunking for batched AI tasks (translation / polish / proofreading).

Indices shown to the model are chapter positions: empty paragraphs are left out
of the payload but still occupy their slot, so "[4]" always means the fifth
paragraph of the chapter no matter how many blanks precede it.
"""
from __future__ import annotations

import logging
import math
import re
from typing import Callable, Iterable, Optional, Sequence, TypeVar

from ..config import settings
from ..models import Paragraph, TextChunk

log = logging.getLogger(__name__)

# Changing these affects translation, polish and proofreading alike.
DEFAULT_TASK_CHUNK_SIZE = settings.default_task_chunk_size
MIN_TASK_CHUNK_SIZE = settings.min_task_chunk_size
MAX_TASK_CHUNK_SIZE = settings.max_task_chunk_size

_LINE_SEPARATOR = "\n"

T = TypeVar("T")


# ── Chunk size ──────────────────────────────────────────────────────────

_DECIMAL_RE = re.compile(r"[+-]?(?:\d+(?:\.\d*)?|\.\d+)(?:[eE][+-]?\d+)?")


def _coerce_size(value) -> int | None:
    """Parse a persisted / user supplied size; None when it is unusable.

    Only real numbers and plain decimal strings count. Booleans, blank
    strings and Python-only spellings such as "12_000" are treated as
    missing, so they resolve to the default rather than to 0, 1 or 12000.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str):
        value = value.strip()
        if not _DECIMAL_RE.fullmatch(value):
            return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number):
        return None
    return math.floor(number)


def resolve_task_chunk_size(value=None) -> int:
    """Chunk size for configuration: clamped into [MIN, MAX]."""
    size = _coerce_size(value)
    if size is None:
        return DEFAULT_TASK_CHUNK_SIZE
    return max(MIN_TASK_CHUNK_SIZE, min(MAX_TASK_CHUNK_SIZE, size))


def resolve_runtime_task_chunk_size(value=None) -> int:
    """Chunk size at call time: clamped into [1, MAX] so small batches stay possible."""
    size = _coerce_size(value)
    if size is None:
        return DEFAULT_TASK_CHUNK_SIZE
    return max(1, min(MAX_TASK_CHUNK_SIZE, size))


# ── Chunk building ──────────────────────────────────────────────────────

def _unit_text(unit) -> str:
    text = unit.get("text") if isinstance(unit, dict) else getattr(unit, "text", "")
    return text if isinstance(text, str) else ""


def _unit_id(unit) -> str:
    return unit.get("id") if isinstance(unit, dict) else unit.id


def build_chunks(
    units: Sequence[T],
    chunk_size: int,
    format_unit: Callable[[T, int], str],
    original_indices: Optional[dict[str, int]] = None,
) -> list[TextChunk]:
    """Split paragraphs into chunks no longer than chunk_size characters.

    format_unit receives the paragraph and its chapter position (looked up in
    original_indices, else the position in ``units``). A single paragraph that
    is longer than chunk_size becomes its own chunk; paragraphs are never cut.
    """
    chunks: list[TextChunk] = []
    current_lines: list[str] = []
    current_ids: list[str] = []
    current_len = 0

    for position, unit in enumerate(units):
        if not _unit_text(unit).strip():
            continue

        unit_id = _unit_id(unit)
        index = position
        if original_indices is not None:
            index = original_indices.get(unit_id, position)

        line = format_unit(unit, index)
        added_len = len(line) + (len(_LINE_SEPARATOR) if current_lines else 0)

        if current_lines and current_len + added_len > chunk_size:
            chunks.append(TextChunk(text=_LINE_SEPARATOR.join(current_lines),
                                    paragraph_ids=current_ids))
            current_lines, current_ids, current_len = [], [], 0
            added_len = len(line)

        current_lines.append(line)
        current_ids.append(unit_id)
        current_len += added_len

    if current_lines:
        chunks.append(TextChunk(text=_LINE_SEPARATOR.join(current_lines),
                                paragraph_ids=current_ids))
    return chunks


def get_selected_translation(paragraph: Paragraph) -> str:
    """Text of the selected translation; first translation or "" as fallbacks."""
    for t in paragraph.translations:
        if t.id == paragraph.selected_translation_id:
            return t.translation
    if paragraph.translations:
        return paragraph.translations[0].translation
    return ""


def _format_translated(paragraph: Paragraph, index: int) -> str:
    return f"[{index}] [ID: {paragraph.id}] {get_selected_translation(paragraph)}"


def build_formatted_chunks(
    paragraphs: Sequence[Paragraph],
    chunk_size: int,
    original_indices: Optional[dict[str, int]] = None,
) -> list[TextChunk]:
    """Chunks of already-translated paragraphs for proofreading / polishing.

    Without original_indices the numbering is the position in ``paragraphs``
    (contiguous from 0); with it, chapter positions including gaps.
    """
    return build_chunks(paragraphs, chunk_size, _format_translated, original_indices)


def build_original_indices(all_paragraphs: Iterable) -> dict[str, int]:
    """Map paragraph id -> position in the full (unfiltered) chapter."""
    indices: dict[str, int] = {}
    for i, paragraph in enumerate(all_paragraphs):
        if paragraph is None:
            continue
        indices.setdefault(_unit_id(paragraph), i)
    return indices


# ── Chunk processing helpers ────────────────────────────────────────────

_CONTENT_CHAR_RE = re.compile(
    r"[\u3040-\u309F\u30A0-\u30FF\u4E00-\u9FAF\u3400-\u4DBF\U00020000-\U0002A6DFa-zA-Z]"
)


def is_only_symbols(text: str) -> bool:
    """True when text has no kana, CJK ideographs or Latin letters."""
    if not text or not text.strip():
        return True
    return _CONTENT_CHAR_RE.search(text) is None


def filter_processed_paragraphs(
    chunk: TextChunk,
    processed_ids: set[str],
    log_label: str,
    chunk_index: int,
    total_chunks: int,
) -> list[str] | None:
    """Ids of the chunk not processed yet; None when the whole chunk is done."""
    remaining = [pid for pid in chunk.paragraph_ids if pid not in processed_ids]
    if not remaining:
        log.info("[%s] chunk %d/%d already fully processed, skipping",
                 log_label, chunk_index + 1, total_chunks)
        return None
    return remaining


def mark_processed_paragraphs(paragraphs: Iterable, processed_ids: set[str]) -> None:
    for p in paragraphs:
        pid = p.get("id") if isinstance(p, dict) else getattr(p, "id", None)
        if pid:
            processed_ids.add(pid)


def mark_processed_paragraphs_from_map(paragraph_map: dict[str, str], processed_ids: set[str]) -> None:
    processed_ids.update(paragraph_map.keys())
