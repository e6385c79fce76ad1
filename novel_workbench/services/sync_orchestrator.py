"""Download → merge → upload sequencing for gist sync, plus the auto-sync loop.

Uploads always try to fetch the remote snapshot first so changes made on
another device are merged instead of overwritten. When that download fails the
upload is parked in a single pending slot until the user confirms (upload local
data as-is) or cancels. A newer failed upload replaces whatever is parked.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, Optional

from . import settings_service
from .gist_sync_service import GistSyncService, SyncResult
from .sync_data_service import (
    apply_downloaded_data,
    collect_local_snapshot,
    collect_upload_copy,
    has_changes_to_upload,
    merge_data_for_upload,
    restore_items,
    save_merged_data,
)
from .. import database as db
from ..config import settings
from ..models import (
    RestorableItem,
    SyncConfig,
    SyncProgress,
    SyncSnapshot,
    SyncStage,
    SyncState,
    SyncStatusOut,
)

log = logging.getLogger(__name__)

# (severity, summary, detail); severity is one of info / success / warn / error
Notifier = Callable[[str, str, str], None]
SetSyncing = Callable[[bool], None]
OnSuccess = Callable[[SyncResult], None]

# Re-check period when auto-sync is configured off
_IDLE_POLL_SECONDS = 60.0

_LOG_LEVELS = {"info": logging.INFO, "success": logging.INFO,
               "warn": logging.WARNING, "error": logging.ERROR}


def log_notifier(severity: str, summary: str, detail: str) -> None:
    log.log(_LOG_LEVELS.get(severity, logging.INFO), "%s: %s", summary, detail)


@dataclass
class PendingUpload:
    config: SyncConfig
    local_data: SyncSnapshot
    set_syncing: SetSyncing
    on_success: Optional[OnSuccess] = None


class SyncOrchestrator:
    def __init__(
        self,
        transport: Optional[GistSyncService] = None,
        notifier: Optional[Notifier] = None,
        auto_sync_enabled: Optional[bool] = None,
    ):
        self.transport = transport or GistSyncService()
        self.notify = notifier or log_notifier
        self.auto_sync_enabled = (settings.auto_sync_enabled if auto_sync_enabled is None
                                  else auto_sync_enabled)
        self._pending: Optional[PendingUpload] = None
        self._awaiting_download = False
        self._busy = False
        self.syncing = False
        self.progress: Optional[SyncProgress] = None
        self._task: Optional[asyncio.Task] = None
        self._ready = asyncio.Event()

    # ── Lifecycle ───────────────────────────────────────────────────────

    def start(self) -> None:
        if self._task is not None and not self._task.done():
            return
        if not self.auto_sync_enabled:
            self._ready.set()
            return
        self._task = asyncio.get_running_loop().create_task(self._auto_sync_loop())

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    def reset(self) -> None:
        self._pending = None
        self._awaiting_download = False
        self._busy = False
        self.syncing = False
        self.progress = None
        self._ready.clear()

    async def wait_ready(self) -> None:
        """Resolve once the first auto-sync cycle has finished (or was skipped)."""
        await self._ready.wait()

    @property
    def is_ready(self) -> bool:
        return self._ready.is_set()

    # ── State ───────────────────────────────────────────────────────────

    @property
    def state(self) -> SyncState:
        if self._pending is not None:
            return SyncState.PENDING_USER_CONFIRMATION
        if self._awaiting_download:
            return SyncState.AWAITING_DOWNLOAD
        return SyncState.IDLE

    def has_pending_upload(self) -> bool:
        return self._pending is not None

    def status(self) -> SyncStatusOut:
        return SyncStatusOut(
            syncing=self.syncing,
            state=self.state,
            has_pending_upload=self.has_pending_upload(),
            progress=self.progress,
            last_sync_time=settings_service.get_gist_sync().last_sync_time,
        )

    def _set_syncing(self, value: bool) -> None:
        self.syncing = value

    def _update_progress(self, stage: Optional[SyncStage] = None, message: Optional[str] = None,
                         current: Optional[int] = None, total: Optional[int] = None) -> None:
        base = self.progress or SyncProgress(stage=stage or SyncStage.DOWNLOADING)
        updates = {k: v for k, v in (("stage", stage), ("message", message),
                                     ("current", current), ("total", total)) if v is not None}
        self.progress = base.model_copy(update=updates)

    def _progress_callback(self, stage: SyncStage):
        def on_progress(current: int, total: int, message: str) -> None:
            self._update_progress(stage, message, current, total)
        return on_progress

    # ── Building blocks ─────────────────────────────────────────────────

    async def _download_remote(self, config: SyncConfig) -> tuple[Optional[SyncSnapshot], Optional[str]]:
        if not config.gist_id:
            return None, None
        self._update_progress(SyncStage.DOWNLOADING, "Downloading remote data", 0, 1)
        result = await self.transport.download(config, self._progress_callback(SyncStage.DOWNLOADING))
        if result.success:
            return result.data, None
        error = result.error or "Unknown error while downloading from gist"
        self.notify("error", "Download failed", error)
        return None, error

    def _record_sync(self, model_ids: list[str], gist_id: Optional[str] = None) -> None:
        if gist_id and gist_id != settings_service.get_gist_sync().gist_id:
            settings_service.set_gist_id(gist_id)
        settings_service.update_last_sync_time()
        settings_service.update_last_synced_model_ids(model_ids)

    async def _perform_upload(self, config: SyncConfig, data: SyncSnapshot,
                              on_success: Optional[OnSuccess] = None) -> SyncResult:
        self._update_progress(SyncStage.UPLOADING, f"Uploading data ({len(data.novels)} novels)", 0, 1)
        result = await self.transport.upload(config, data, self._progress_callback(SyncStage.UPLOADING))
        if not result.success:
            self.notify("error", "Sync failed", result.error or "Unknown error while uploading to gist")
            return result

        self._update_progress(message="Upload finished, updating sync state")
        try:
            self._record_sync([m.id for m in data.ai_models], result.gist_id)
        except Exception:
            log.exception("Updating sync state after upload failed")
        if result.is_recreated:
            self.notify("warn", "Gist recreated",
                        f"The previous gist was gone; data now lives in {result.gist_id}")
        else:
            self.notify("success", "Sync finished", result.message or "Uploaded to gist")
        if on_success:
            on_success(result)
        return result

    # ── Manual upload / download ────────────────────────────────────────

    async def upload_to_gist(
        self,
        config: SyncConfig,
        set_syncing: Optional[SetSyncing] = None,
        on_success: Optional[OnSuccess] = None,
        force_local_only: bool = False,
    ) -> None:
        await self._upload(config, set_syncing or self._set_syncing, on_success, force_local_only)

    async def _upload(
        self,
        config: SyncConfig,
        set_syncing: SetSyncing,
        on_success: Optional[OnSuccess],
        force_local_only: bool,
        local_data: Optional[SyncSnapshot] = None,
    ) -> None:
        if self._busy:
            self.notify("warn", "Sync in progress", "Another sync is running, try again later")
            return
        self._busy = True
        set_syncing(True)
        try:
            local = local_data or collect_local_snapshot()
            to_upload: Optional[SyncSnapshot] = None

            if config.gist_id and not force_local_only:
                self._awaiting_download = True
                remote, error = await self._download_remote(config)
                if error:
                    self._pending = PendingUpload(config, local, set_syncing, on_success)
                    self.notify("warn", "Could not download remote data",
                                "Uploading now may overwrite changes made on other devices. "
                                f"Confirm to upload local data anyway. Error: {error}")
                    return
                if remote is not None:
                    self._update_progress(SyncStage.MERGING, "Merging local and remote data")
                    to_upload = merge_data_for_upload(
                        local, remote, config.last_sync_time, config.last_synced_model_ids,
                    )
                    save_merged_data(to_upload)

            if to_upload is None:
                to_upload = collect_upload_copy(local)
            await self._perform_upload(config, to_upload, on_success)
        except Exception as e:
            log.exception("Upload to gist failed")
            self.notify("error", "Sync failed", str(e))
        finally:
            self._awaiting_download = False
            self._busy = False
            self.progress = None
            set_syncing(False)

    async def confirm_upload_with_local_data(self) -> bool:
        """Upload the parked local data without downloading first."""
        pending = self._pending
        if pending is None:
            log.warning("No pending upload to confirm")
            return False
        if self._busy:
            # The slot stays filled so the user can confirm again afterwards.
            self.notify("warn", "Sync in progress", "Another sync is running, try again later")
            return False
        self._pending = None
        await self._upload(pending.config, pending.set_syncing, pending.on_success,
                           force_local_only=True, local_data=pending.local_data)
        return True

    def cancel_pending_upload(self) -> bool:
        pending = self._pending
        if pending is None:
            return False
        self._pending = None
        pending.set_syncing(False)
        self.notify("info", "Upload cancelled", "The pending upload was discarded")
        return True

    async def download_from_gist(
        self,
        config: SyncConfig,
        set_syncing: Optional[SetSyncing] = None,
    ) -> list[RestorableItem]:
        """Download and apply remote data; returns items that look locally deleted."""
        set_syncing = set_syncing or self._set_syncing
        if self._busy:
            self.notify("warn", "Sync in progress", "Another sync is running, try again later")
            return []
        self._busy = True
        set_syncing(True)
        try:
            remote, error = await self._download_remote(config)
            if error or remote is None:
                return []

            self._update_progress(SyncStage.APPLYING, "Applying downloaded data", 0, 1)
            items = await apply_downloaded_data(
                remote,
                config.last_synced_model_ids,
                preserve_all_remote=True,
                last_sync_time=config.last_sync_time,
            )
            self._update_progress(current=1, message="Applied")
            try:
                self._record_sync([m.id for m in db.list_ai_models()])
            except Exception:
                log.exception("Updating sync state after download failed")

            if not items:
                self.notify("success", "Download finished", "Downloaded data from gist")
            return items
        except Exception as e:
            log.exception("Download from gist failed")
            self.notify("error", "Download failed", str(e))
            return []
        finally:
            self._busy = False
            self.progress = None
            set_syncing(False)

    async def restore_deleted_items(self, items: list[RestorableItem]) -> int:
        count = restore_items(items)
        self.notify("success", "Restored", f"Restored {count} item(s)")
        return count

    # ── Auto sync ───────────────────────────────────────────────────────

    @staticmethod
    def _auto_sync_configured(config: SyncConfig) -> bool:
        return bool(config.enabled and config.gist_id and config.token)

    async def perform_auto_sync(self) -> bool:
        """One background cycle: download, apply, then upload only if something changed."""
        config = settings_service.get_gist_sync()
        if not self._auto_sync_configured(config):
            return False
        if self._busy:
            log.info("Auto sync skipped, another sync is running")
            return False

        self._busy = True
        self.syncing = True
        try:
            self._update_progress(SyncStage.DOWNLOADING, "Downloading remote data", 0, 1)
            result = await self.transport.download(config, self._progress_callback(SyncStage.DOWNLOADING))
            if not result.success or result.data is None:
                log.warning("Auto sync download failed: %s", result.error)
                return False

            self._update_progress(SyncStage.APPLYING, "Applying downloaded data", 0, 1)
            await apply_downloaded_data(result.data, config.last_synced_model_ids,
                                        last_sync_time=config.last_sync_time)
            self._record_sync([m.id for m in db.list_ai_models()])

            local = collect_local_snapshot()
            if not has_changes_to_upload(local, result.data):
                return True

            self._update_progress(SyncStage.UPLOADING, "Uploading local changes", 0, 1)
            upload = await self.transport.upload(
                config, collect_upload_copy(local), self._progress_callback(SyncStage.UPLOADING),
            )
            if not upload.success:
                log.warning("Auto sync upload failed: %s", upload.error)
                return False
            if upload.gist_id and upload.gist_id != config.gist_id:
                settings_service.set_gist_id(upload.gist_id)
            return True
        except Exception:
            log.exception("Auto sync failed")
            return False
        finally:
            self._busy = False
            self.syncing = False
            self.progress = None

    async def _auto_sync_loop(self) -> None:
        while True:
            config = settings_service.get_gist_sync()
            try:
                if config.sync_interval > 0 and self._auto_sync_configured(config):
                    await self.perform_auto_sync()
            finally:
                self._ready.set()
            interval = config.sync_interval / 1000 if config.sync_interval > 0 else _IDLE_POLL_SECONDS
            await asyncio.sleep(interval)
