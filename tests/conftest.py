"""Shared test fixtures for novel_workbench tests."""

from typing import Optional

import pytest

from novel_workbench import database as db
from novel_workbench.models import (
    AIModel,
    AppSettings,
    Chapter,
    CoverHistoryItem,
    Novel,
    Paragraph,
    SyncConfig,
    Translation,
    Volume,
)
from novel_workbench.services import chapter_task_service


@pytest.fixture(autouse=True)
def tmp_db(tmp_path, monkeypatch):
    """Point the SQLite module at a fresh database for every test."""
    path = tmp_path / "workbench.db"
    monkeypatch.setattr(db, "DB_PATH", path)
    db.init_db()
    return path


@pytest.fixture(autouse=True)
def clean_tasks():
    yield
    chapter_task_service.clear_tasks()


def make_paragraph(pid: str, text: str = "text", translation: Optional[str] = None,
                   translation_id: Optional[str] = None) -> Paragraph:
    translations = []
    if translation is not None:
        tid = translation_id or f"t-{pid}"
        translations = [Translation(id=tid, translation=translation)]
    return Paragraph(
        id=pid,
        text=text,
        translations=translations,
        selected_translation_id=translations[0].id if translations else "",
    )


def make_novel(nid: str, last_edited: int = 100, title: Optional[str] = None,
               chapters: Optional[list[Chapter]] = None) -> Novel:
    return Novel(
        id=nid,
        title=title or f"Novel {nid}",
        last_edited=last_edited,
        volumes=[Volume(id=f"{nid}-v1", title="Volume 1", chapters=chapters or [])],
    )


@pytest.fixture
def gist_config() -> SyncConfig:
    return SyncConfig(
        enabled=True,
        last_sync_time=10,
        sync_interval=60000,
        sync_params={"gistId": "gist123", "username": "reader"},
        secret="ghp_testtoken",
        last_synced_model_ids=[],
    )


@pytest.fixture
def stored_gist_config(gist_config) -> SyncConfig:
    """Gist config saved in app settings."""
    db.save_app_settings(AppSettings(last_edited=5, syncs=[gist_config]))
    return gist_config


@pytest.fixture
def sample_model() -> AIModel:
    return AIModel(id="m1", name="Model 1", provider="openai", model="gpt", api_key="k1")


@pytest.fixture
def sample_cover() -> CoverHistoryItem:
    return CoverHistoryItem(id="c1", url="https://img.example/c1.png", added_at=100)
