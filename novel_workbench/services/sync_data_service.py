"""Three-way reconciliation of local data, the gist snapshot and the last sync.

Novels and covers carry timestamps and are compared against last_sync_time.
AI models have no reliable timestamp, so a model missing locally is only
treated as a remote addition when its id was not known at the previous sync.
Entities present only locally are always kept.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional

from pydantic import ValidationError

from . import settings_service
from .chapter_content_service import (
    ensure_novel_content_loaded,
    merge_novel_with_local_content,
    merge_remote_translations_into_local_novel,
)
from .. import database as db
from ..models import (
    AIModel,
    AppSettings,
    CoverHistoryItem,
    Novel,
    RestorableItem,
    RestorableType,
    SyncSnapshot,
)

log = logging.getLogger(__name__)


class InvalidRemoteDataError(ValueError):
    """The downloaded snapshot does not have the expected shape."""


def validate_remote_data(remote: SyncSnapshot | dict | None) -> Optional[SyncSnapshot]:
    if remote is None or isinstance(remote, SyncSnapshot):
        return remote
    try:
        return SyncSnapshot.model_validate(remote)
    except ValidationError as e:
        raise InvalidRemoteDataError(f"Invalid remote data: {e.error_count()} error(s)") from e


# ── Per-collection merge ────────────────────────────────────────────────

@dataclass
class _Merged:
    items: list = field(default_factory=list)
    restorable: list[RestorableItem] = field(default_factory=list)


def _merge_novels(
    local: list[Novel],
    remote: list[Novel],
    last_sync_time: int,
    preserve_all_remote: bool,
    for_upload: bool,
) -> _Merged:
    out = _Merged()
    remote_by_id = {n.id: n for n in remote}
    local_ids = {n.id for n in local}

    for novel in local:
        other = remote_by_id.get(novel.id)
        if other is None:
            out.items.append(ensure_novel_content_loaded(novel) if for_upload else novel)
        elif other.last_edited > novel.last_edited:
            out.items.append(merge_novel_with_local_content(other, novel))
        else:
            base = ensure_novel_content_loaded(novel) if for_upload else novel
            out.items.append(merge_remote_translations_into_local_novel(base, other))

    for novel in remote:
        if novel.id in local_ids:
            continue
        if novel.last_edited > last_sync_time:
            out.items.append(novel)
        elif preserve_all_remote:
            out.restorable.append(RestorableItem(
                id=novel.id,
                type=RestorableType.NOVEL,
                title=novel.title or novel.id,
                deleted_at=last_sync_time,
                data=novel.model_dump(mode="json", by_alias=True),
            ))
        else:
            log.info("Novel %s was deleted locally, not restoring it", novel.id)
    return out


def _merge_models(
    local: list[AIModel],
    remote: list[AIModel],
    last_synced_model_ids: Optional[Iterable[str]],
    preserve_all_remote: bool,
    last_sync_time: int,
) -> _Merged:
    out = _Merged()
    known = set(last_synced_model_ids or [])
    remote_by_id = {m.id: m for m in remote}
    local_ids = {m.id for m in local}

    for model in local:
        other = remote_by_id.get(model.id)
        if other is not None and (other.last_edited or 0) > (model.last_edited or 0):
            out.items.append(other)
        else:
            out.items.append(model)

    for model in remote:
        if model.id in local_ids:
            continue
        if model.id not in known:
            out.items.append(model)
        elif preserve_all_remote:
            out.restorable.append(RestorableItem(
                id=model.id,
                type=RestorableType.MODEL,
                title=model.name or model.id,
                deleted_at=last_sync_time,
                data=model.model_dump(mode="json", by_alias=True),
            ))
        else:
            log.info("AI model %s was deleted locally, not restoring it", model.id)
    return out


def _normalize_url(url: Any) -> str:
    return url.strip() if isinstance(url, str) else ""


def dedupe_covers_by_url(covers: Iterable[CoverHistoryItem]) -> list[CoverHistoryItem]:
    """One entry per URL, the newest addedAt wins; covers without a URL are dropped."""
    by_url: dict[str, CoverHistoryItem] = {}
    for cover in covers:
        url = _normalize_url(cover.url)
        if not url:
            continue
        existing = by_url.get(url)
        if existing is None or cover.added_at >= existing.added_at:
            by_url[url] = cover
    return list(by_url.values())


def _merge_covers(
    local: list[CoverHistoryItem],
    remote: list[CoverHistoryItem],
    last_sync_time: int,
    preserve_all_remote: bool,
) -> _Merged:
    out = _Merged()
    remote_by_id = {c.id: c for c in remote}
    remote_by_url = {_normalize_url(c.url): c for c in remote if _normalize_url(c.url)}
    matched: set[str] = set()

    for cover in local:
        other = remote_by_id.get(cover.id) or remote_by_url.get(_normalize_url(cover.url))
        if other is None:
            out.items.append(cover)
            continue
        matched.add(other.id)
        out.items.append(other if other.added_at > cover.added_at else cover)

    for cover in remote:
        if cover.id in matched:
            continue
        if cover.added_at > last_sync_time:
            out.items.append(cover)
        elif preserve_all_remote:
            out.restorable.append(RestorableItem(
                id=cover.id,
                type=RestorableType.COVER,
                title=cover.url or cover.id,
                deleted_at=last_sync_time,
                data=cover.model_dump(mode="json", by_alias=True),
            ))

    out.items = dedupe_covers_by_url(out.items)
    return out


def _remote_settings_win(local: AppSettings, remote: Optional[AppSettings]) -> bool:
    return remote is not None and remote.last_edited > local.last_edited


# ── Public API ──────────────────────────────────────────────────────────

def collect_local_snapshot(load_content: bool = False) -> SyncSnapshot:
    novels = db.list_novels()
    if load_content:
        novels = [ensure_novel_content_loaded(n) for n in novels]
    return SyncSnapshot(
        novels=novels,
        ai_models=db.list_ai_models(),
        app_settings=db.get_app_settings(),
        cover_history=db.list_covers(),
    )


def merge_data_for_upload(
    local: SyncSnapshot,
    remote: SyncSnapshot | dict | None,
    last_sync_time: int,
    last_synced_model_ids: Optional[Iterable[str]] = None,
) -> SyncSnapshot:
    """Snapshot to upload: local data plus remote changes this device has not seen.

    Writes nothing; callers persist the result with save_merged_data before
    uploading it. Chapter bodies are filled in from the chapter-content table
    so the upload carries full novels.
    """
    remote = validate_remote_data(remote)
    if remote is None:
        return collect_upload_copy(local)

    novels = _merge_novels(local.novels, remote.novels, last_sync_time, False, for_upload=True)
    models = _merge_models(local.ai_models, remote.ai_models, last_synced_model_ids, False, last_sync_time)
    covers = _merge_covers(local.cover_history, remote.cover_history, last_sync_time, False)

    local_settings = local.app_settings or AppSettings()
    if _remote_settings_win(local_settings, remote.app_settings):
        app_settings = remote.app_settings.model_copy(update={"syncs": local_settings.syncs})
    else:
        app_settings = local_settings

    return SyncSnapshot(
        novels=novels.items,
        ai_models=models.items,
        app_settings=app_settings,
        cover_history=covers.items,
    )


def collect_upload_copy(local: SyncSnapshot) -> SyncSnapshot:
    return local.model_copy(update={
        "novels": [ensure_novel_content_loaded(n) for n in local.novels],
        "cover_history": dedupe_covers_by_url(local.cover_history),
    })


def _backup() -> dict[str, Any]:
    return {
        "novels": db.list_novels(),
        "ai_models": db.list_ai_models(),
        "covers": db.list_covers(),
        "settings": db.get_app_settings(),
    }


def _restore(backup: dict[str, Any]) -> None:
    _write_collections(backup["novels"], backup["ai_models"], backup["covers"])
    db.save_app_settings(backup["settings"])


def _write_collections(novels: list[Novel], models: list[AIModel], covers: list[CoverHistoryItem]) -> None:
    db.clear_novels()
    db.bulk_put_novels(novels)
    db.clear_ai_models()
    for model in models:
        db.put_ai_model(model)
    db.clear_covers()
    for cover in covers:
        db.put_cover(cover)


def save_merged_data(merged: SyncSnapshot) -> None:
    """Write an upload merge back to the stores so local data matches the gist.

    Local sync configurations are kept. On failure the previous state is
    restored and the error re-raised.
    """
    backup = _backup()
    try:
        _write_collections(merged.novels, merged.ai_models, merged.cover_history)
        if merged.app_settings is not None and merged.app_settings.last_edited != backup["settings"].last_edited:
            settings_service.import_settings(merged.app_settings, preserve_syncs=True)
    except Exception:
        log.exception("Saving merged data failed, rolling back")
        _restore(backup)
        raise
    log.info("Saved merged data: %d novels, %d models, %d covers",
             len(merged.novels), len(merged.ai_models), len(merged.cover_history))


async def apply_downloaded_data(
    remote: SyncSnapshot | dict | None,
    last_synced_model_ids: Optional[Iterable[str]] = None,
    preserve_all_remote: bool = False,
    last_sync_time: Optional[int] = None,
) -> list[RestorableItem]:
    """Merge a downloaded snapshot into the local stores.

    Returns the remote entities that were not applied because they look
    locally deleted; only collected when preserve_all_remote is set (manual
    download), so the user can pick what to bring back.
    """
    remote = validate_remote_data(remote)
    if remote is None:
        return []

    if last_sync_time is None:
        last_sync_time = settings_service.get_gist_sync().last_sync_time

    backup = _backup()
    novels = _merge_novels(backup["novels"], remote.novels, last_sync_time,
                           preserve_all_remote, for_upload=False)
    models = _merge_models(backup["ai_models"], remote.ai_models, last_synced_model_ids,
                           preserve_all_remote, last_sync_time)
    covers = _merge_covers(backup["covers"], remote.cover_history, last_sync_time,
                           preserve_all_remote)

    try:
        _write_collections(novels.items, models.items, covers.items)
        if _remote_settings_win(backup["settings"], remote.app_settings):
            settings_service.import_settings(remote.app_settings, preserve_syncs=True)
    except Exception:
        log.exception("Applying downloaded data failed, rolling back")
        _restore(backup)
        raise

    restorable = novels.restorable + models.restorable + covers.restorable
    log.info("Applied remote data: %d novels, %d models, %d covers (%d restorable)",
             len(novels.items), len(models.items), len(covers.items), len(restorable))
    return restorable


def restore_items(items: Iterable[RestorableItem]) -> int:
    """Write user-selected restorable items back to the stores."""
    count = 0
    for item in items:
        if item.type == RestorableType.NOVEL:
            db.put_novel(Novel.model_validate(item.data))
        elif item.type == RestorableType.MODEL:
            db.put_ai_model(AIModel.model_validate(item.data))
        elif item.type == RestorableType.COVER:
            db.put_cover(CoverHistoryItem.model_validate(item.data))
        else:
            continue
        count += 1
    return count


# ── Change detection ────────────────────────────────────────────────────

def _model_for_compare(model: AIModel) -> dict:
    data = model.model_dump(mode="json", by_alias=True)
    data.pop("apiKey", None)
    data.pop("lastEdited", None)
    return data


def _settings_for_compare(app_settings: Optional[AppSettings]) -> dict:
    if app_settings is None:
        return {}
    data = app_settings.model_dump(mode="json", by_alias=True)
    data.pop("lastEdited", None)
    data["syncs"] = [
        {k: v for k, v in sync.items() if k not in ("lastSyncTime", "lastSyncedModelIds")}
        for sync in data.get("syncs") or []
    ]
    return data


def has_changes_to_upload(local: SyncSnapshot, remote: SyncSnapshot | dict | None) -> bool:
    """Cheap check whether uploading ``local`` would change anything remotely."""
    remote = validate_remote_data(remote)
    if remote is None:
        return True

    if len(local.novels) != len(remote.novels):
        return True
    remote_novels = {n.id: n for n in remote.novels}
    for novel in local.novels:
        other = remote_novels.get(novel.id)
        if other is None or other.last_edited != novel.last_edited:
            return True

    if len(local.ai_models) != len(remote.ai_models):
        return True
    remote_models = {m.id: m for m in remote.ai_models}
    for model in local.ai_models:
        other = remote_models.get(model.id)
        if other is None or _model_for_compare(other) != _model_for_compare(model):
            return True

    local_settings = local.app_settings or AppSettings()
    if remote.app_settings is None or remote.app_settings.last_edited != local_settings.last_edited:
        if _settings_for_compare(local_settings) != _settings_for_compare(remote.app_settings):
            return True

    if len(local.cover_history) != len(remote.cover_history):
        return True
    remote_covers = {c.id: c for c in remote.cover_history}
    for cover in local.cover_history:
        other = remote_covers.get(cover.id)
        if other is None or other.added_at != cover.added_at:
            return True

    return False
