"""API routes for gist sync."""
from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request

from ..models import RestorableItem, RestoreRequest, SyncConfig, SyncStatusOut
from ..services import settings_service
from ..services.sync_orchestrator import SyncOrchestrator

log = logging.getLogger(__name__)

router = APIRouter(prefix="/api/sync", tags=["sync"])


def get_orchestrator(request: Request) -> SyncOrchestrator:
    return request.app.state.sync_orchestrator


def _masked(config: SyncConfig) -> dict:
    data = config.model_dump(mode="json", by_alias=True)
    secret = data.get("secret") or ""
    data["secret"] = (secret[:4] + "…" + secret[-4:]) if len(secret) > 8 else ("****" if secret else "")
    data.get("syncParams", {}).pop("token", None)
    return data


@router.get("/status", response_model=SyncStatusOut)
async def get_status(orchestrator: SyncOrchestrator = Depends(get_orchestrator)):
    return orchestrator.status()


@router.get("/config")
async def get_config():
    return _masked(settings_service.get_gist_sync())


@router.put("/config")
async def update_config(config: SyncConfig):
    updates = {name: getattr(config, name) for name in config.model_fields_set
               if name in SyncConfig.model_fields}
    return _masked(settings_service.update_gist_sync(**updates))


@router.post("/upload", response_model=SyncStatusOut)
async def upload(orchestrator: SyncOrchestrator = Depends(get_orchestrator)):
    await orchestrator.upload_to_gist(settings_service.get_gist_sync())
    return orchestrator.status()


@router.post("/download", response_model=list[RestorableItem])
async def download(orchestrator: SyncOrchestrator = Depends(get_orchestrator)):
    return await orchestrator.download_from_gist(settings_service.get_gist_sync())


@router.post("/confirm", response_model=SyncStatusOut)
async def confirm_pending(orchestrator: SyncOrchestrator = Depends(get_orchestrator)):
    await orchestrator.confirm_upload_with_local_data()
    return orchestrator.status()


@router.post("/cancel", response_model=SyncStatusOut)
async def cancel_pending(orchestrator: SyncOrchestrator = Depends(get_orchestrator)):
    orchestrator.cancel_pending_upload()
    return orchestrator.status()


@router.post("/restore")
async def restore(req: RestoreRequest, orchestrator: SyncOrchestrator = Depends(get_orchestrator)):
    count = await orchestrator.restore_deleted_items(req.items)
    return {"restored": count}
