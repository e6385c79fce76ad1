from __future__ import annotations

import json
import sqlite3
from contextlib import contextmanager
from typing import Any, Optional

from .config import settings
from .models import AIModel, AppSettings, CoverHistoryItem, Novel, Paragraph

DB_PATH = settings.db_path

_SCHEMA = """
CREATE TABLE IF NOT EXISTS novels (
    id TEXT PRIMARY KEY,
    data TEXT NOT NULL,
    last_edited INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS chapter_contents (
    chapter_id TEXT PRIMARY KEY,
    novel_id TEXT NOT NULL DEFAULT '',
    content TEXT NOT NULL DEFAULT '[]'
);

CREATE TABLE IF NOT EXISTS ai_models (
    id TEXT PRIMARY KEY,
    data TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS cover_history (
    id TEXT PRIMARY KEY,
    data TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS app_settings (
    id INTEGER PRIMARY KEY CHECK (id = 1),
    data TEXT NOT NULL
);
"""


def init_db() -> None:
    DB_PATH.parent.mkdir(parents=True, exist_ok=True)
    with _connect() as conn:
        conn.executescript(_SCHEMA)


@contextmanager
def _connect():
    conn = sqlite3.connect(str(DB_PATH))
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    try:
        yield conn
        conn.commit()
    finally:
        conn.close()


def _json_loads(val: str | None, default: Any = None) -> Any:
    if not val:
        return default
    try:
        return json.loads(val)
    except json.JSONDecodeError:
        return default


def _dump(model) -> str:
    return json.dumps(model.model_dump(mode="json", by_alias=True), ensure_ascii=False)


# ── Novels ──────────────────────────────────────────────────────────────
# Chapter bodies live in chapter_contents; the novel row keeps the skeleton
# (volumes / chapters with content=None) like the browser store does.

def _split_content(novel: Novel) -> tuple[Novel, list[tuple[str, list[Paragraph]]]]:
    contents: list[tuple[str, list[Paragraph]]] = []
    if not novel.volumes:
        return novel, contents
    volumes = []
    for volume in novel.volumes:
        chapters = []
        for chapter in volume.chapters or []:
            if chapter.content:
                contents.append((chapter.id, chapter.content))
            chapters.append(chapter.model_copy(update={"content": None}))
        volumes.append(volume.model_copy(update={"chapters": chapters if volume.chapters is not None else None}))
    return novel.model_copy(update={"volumes": volumes}), contents


def list_novels() -> list[Novel]:
    with _connect() as conn:
        rows = conn.execute("SELECT data FROM novels ORDER BY rowid").fetchall()
    return [Novel.model_validate(_json_loads(r["data"], {})) for r in rows]


def get_novel(novel_id: str) -> Novel | None:
    with _connect() as conn:
        row = conn.execute("SELECT data FROM novels WHERE id=?", (novel_id,)).fetchone()
    return Novel.model_validate(_json_loads(row["data"], {})) if row else None


def put_novel(novel: Novel) -> None:
    bulk_put_novels([novel])


def bulk_put_novels(novels: list[Novel]) -> None:
    with _connect() as conn:
        for novel in novels:
            skeleton, contents = _split_content(novel)
            conn.execute(
                "INSERT INTO novels (id, data, last_edited) VALUES (?,?,?) "
                "ON CONFLICT(id) DO UPDATE SET data=excluded.data, last_edited=excluded.last_edited",
                (novel.id, _dump(skeleton), novel.last_edited),
            )
            for chapter_id, paragraphs in contents:
                conn.execute(
                    "INSERT OR REPLACE INTO chapter_contents (chapter_id, novel_id, content) VALUES (?,?,?)",
                    (chapter_id, novel.id,
                     json.dumps([p.model_dump(mode="json", by_alias=True) for p in paragraphs],
                                ensure_ascii=False)),
                )


def delete_novel(novel_id: str) -> None:
    with _connect() as conn:
        conn.execute("DELETE FROM chapter_contents WHERE novel_id=?", (novel_id,))
        conn.execute("DELETE FROM novels WHERE id=?", (novel_id,))


def clear_novels() -> None:
    # Chapter bodies are kept: a re-added novel picks its cached content up again.
    with _connect() as conn:
        conn.execute("DELETE FROM novels")


# ── Chapter content ─────────────────────────────────────────────────────

def load_chapter_content(chapter_id: str) -> Optional[list[Paragraph]]:
    with _connect() as conn:
        row = conn.execute(
            "SELECT content FROM chapter_contents WHERE chapter_id=?", (chapter_id,),
        ).fetchone()
    if not row:
        return None
    return [Paragraph.model_validate(p) for p in _json_loads(row["content"], [])]


def save_chapter_content(chapter_id: str, paragraphs: list[Paragraph], novel_id: str = "") -> None:
    with _connect() as conn:
        conn.execute(
            "INSERT OR REPLACE INTO chapter_contents (chapter_id, novel_id, content) VALUES (?,?,?)",
            (chapter_id, novel_id,
             json.dumps([p.model_dump(mode="json", by_alias=True) for p in paragraphs],
                        ensure_ascii=False)),
        )


# ── AI models ───────────────────────────────────────────────────────────

def list_ai_models() -> list[AIModel]:
    with _connect() as conn:
        rows = conn.execute("SELECT data FROM ai_models ORDER BY rowid").fetchall()
    return [AIModel.model_validate(_json_loads(r["data"], {})) for r in rows]


def put_ai_model(model: AIModel) -> None:
    with _connect() as conn:
        conn.execute(
            "INSERT INTO ai_models (id, data) VALUES (?,?) "
            "ON CONFLICT(id) DO UPDATE SET data=excluded.data",
            (model.id, _dump(model)),
        )


def clear_ai_models() -> None:
    with _connect() as conn:
        conn.execute("DELETE FROM ai_models")


# ── Cover history ───────────────────────────────────────────────────────

def list_covers() -> list[CoverHistoryItem]:
    with _connect() as conn:
        rows = conn.execute("SELECT data FROM cover_history ORDER BY rowid").fetchall()
    return [CoverHistoryItem.model_validate(_json_loads(r["data"], {})) for r in rows]


def put_cover(cover: CoverHistoryItem) -> None:
    with _connect() as conn:
        conn.execute(
            "INSERT INTO cover_history (id, data) VALUES (?,?) "
            "ON CONFLICT(id) DO UPDATE SET data=excluded.data",
            (cover.id, _dump(cover)),
        )


def clear_covers() -> None:
    with _connect() as conn:
        conn.execute("DELETE FROM cover_history")


# ── App settings ────────────────────────────────────────────────────────

def get_app_settings() -> AppSettings:
    with _connect() as conn:
        row = conn.execute("SELECT data FROM app_settings WHERE id=1").fetchone()
    if not row:
        return AppSettings()
    return AppSettings.model_validate(_json_loads(row["data"], {}))


def save_app_settings(app_settings: AppSettings) -> None:
    with _connect() as conn:
        conn.execute(
            "INSERT OR REPLACE INTO app_settings (id, data) VALUES (1, ?)",
            (_dump(app_settings),),
        )
