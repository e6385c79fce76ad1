"""App settings and the gist sync configuration stored inside them."""
from __future__ import annotations

import logging
from typing import Any, Optional

from .. import database as db
from ..models import AppSettings, SyncConfig, SyncType, now_millis

log = logging.getLogger(__name__)


def _deep_merge(base: dict, incoming: dict) -> dict:
    out = dict(base)
    for key, value in incoming.items():
        if isinstance(value, dict) and isinstance(out.get(key), dict):
            out[key] = _deep_merge(out[key], value)
        else:
            out[key] = value
    return out


def get_all_settings() -> AppSettings:
    return db.get_app_settings()


def import_settings(incoming: AppSettings | dict, preserve_syncs: bool = True) -> AppSettings:
    """Deep-merge incoming settings over the stored ones and save.

    Keys missing from ``incoming`` keep their local value. With preserve_syncs
    the local sync configurations survive no matter what the incoming side has.
    """
    if isinstance(incoming, AppSettings):
        incoming_data = incoming.model_dump(mode="json", by_alias=True, exclude_unset=True)
    else:
        incoming_data = AppSettings.model_validate(incoming).model_dump(
            mode="json", by_alias=True, exclude_unset=True,
        )

    current = db.get_app_settings()
    current_data = current.model_dump(mode="json", by_alias=True)
    if preserve_syncs:
        incoming_data.pop("syncs", None)

    merged = AppSettings.model_validate(_deep_merge(current_data, incoming_data))
    db.save_app_settings(merged)
    return merged


def update_settings(updates: dict[str, Any]) -> AppSettings:
    """User-facing edit: deep merge and bump lastEdited."""
    current = db.get_app_settings()
    data = _deep_merge(current.model_dump(mode="json", by_alias=True), updates)
    data["lastEdited"] = now_millis()
    merged = AppSettings.model_validate(data)
    db.save_app_settings(merged)
    return merged


# ── Gist sync config ────────────────────────────────────────────────────
# Sync bookkeeping does not count as a settings edit: lastEdited is left alone.

def get_gist_sync() -> SyncConfig:
    return get_all_settings().gist_sync() or SyncConfig(sync_type=SyncType.GIST)


def update_gist_sync(**updates) -> SyncConfig:
    current = get_all_settings()
    syncs = list(current.syncs)
    for i, sync in enumerate(syncs):
        if sync.sync_type == SyncType.GIST:
            syncs[i] = sync.model_copy(update=updates)
            updated = syncs[i]
            break
    else:
        updated = SyncConfig(sync_type=SyncType.GIST).model_copy(update=updates)
        syncs.append(updated)
    db.save_app_settings(current.model_copy(update={"syncs": syncs}))
    return updated


def set_gist_id(gist_id: str) -> SyncConfig:
    params = dict(get_gist_sync().sync_params)
    params["gistId"] = gist_id
    return update_gist_sync(sync_params=params)


def update_last_sync_time(timestamp: Optional[int] = None) -> SyncConfig:
    return update_gist_sync(last_sync_time=timestamp if timestamp is not None else now_millis())


def update_last_synced_model_ids(model_ids: list[str]) -> SyncConfig:
    return update_gist_sync(last_synced_model_ids=list(model_ids))
