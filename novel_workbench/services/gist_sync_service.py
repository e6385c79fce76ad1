"""GitHub Gist transport for sync snapshots.

Layout of the gist:
  luna-ai-settings.json   {"aiModels": [...], "appSettings": {...}, "coverHistory": [...]}
  novel-{id}.json         one file per novel, chapter bodies included
"""
from __future__ import annotations

import asyncio
import json
import logging
import random
import re
from dataclasses import dataclass
from typing import Any, Callable, Optional

import httpx

from ..config import settings
from ..models import SyncConfig, SyncSnapshot
from .sync_data_service import InvalidRemoteDataError, validate_remote_data

log = logging.getLogger(__name__)

SETTINGS_FILE = "luna-ai-settings.json"
NOVEL_PREFIX = "novel-"
_NOVEL_FILE_RE = re.compile(r"^novel-(.+)\.json$")
GIST_DESCRIPTION = "Novel Workbench sync data"

ProgressCallback = Callable[[int, int, str], None]


class GistConfigError(ValueError):
    """Token or gist id missing from the sync configuration."""


class GistNotFoundError(Exception):
    pass


@dataclass
class SyncResult:
    success: bool
    message: Optional[str] = None
    error: Optional[str] = None
    gist_id: Optional[str] = None
    gist_url: Optional[str] = None
    is_recreated: bool = False


@dataclass
class DownloadResult:
    success: bool
    data: Optional[SyncSnapshot] = None
    error: Optional[str] = None


def novel_file_name(novel_id: str) -> str:
    return f"{NOVEL_PREFIX}{novel_id}.json"


def _is_retryable(status: int) -> bool:
    return status == 408 or status == 429 or 500 <= status < 600


def _dumps(data: Any) -> str:
    return json.dumps(data, ensure_ascii=False)


class GistSyncService:
    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        max_retries: Optional[int] = None,
        retry_base_delay: Optional[float] = None,
        retry_max_delay: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = (base_url or settings.gist_api_base_url).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.gist_timeout
        self.max_retries = max(1, max_retries if max_retries is not None else settings.gist_max_retries)
        self.retry_base_delay = (retry_base_delay if retry_base_delay is not None
                                 else settings.gist_retry_base_delay)
        self.retry_max_delay = (retry_max_delay if retry_max_delay is not None
                                else settings.gist_retry_max_delay)
        self._transport = transport

    # ── HTTP plumbing ───────────────────────────────────────────────────

    def _client(self, token: str) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout,
            transport=self._transport,
            headers={
                "Authorization": f"Bearer {token}",
                "Accept": "application/vnd.github+json",
                "X-GitHub-Api-Version": "2022-11-28",
            },
        )

    def _delay(self, attempt: int) -> float:
        base = self.retry_base_delay * (2 ** attempt)
        jitter = random.random() * 0.3 * base
        return min(base + jitter, self.retry_max_delay)

    async def _request(self, client: httpx.AsyncClient, method: str, url: str, label: str,
                       **kwargs) -> httpx.Response:
        """Send a request, retrying network errors, 408, 429 and 5xx with backoff."""
        for attempt in range(self.max_retries):
            last = attempt == self.max_retries - 1
            try:
                resp = await client.request(method, url, **kwargs)
            except httpx.TransportError as e:
                if last:
                    raise
                delay = self._delay(attempt)
                log.warning("%s failed (attempt %d/%d), retrying in %.1fs: %s",
                            label, attempt + 1, self.max_retries, delay, e)
                await asyncio.sleep(delay)
                continue

            if _is_retryable(resp.status_code) and not last:
                delay = self._delay(attempt)
                log.warning("%s got HTTP %d (attempt %d/%d), retrying in %.1fs",
                            label, resp.status_code, attempt + 1, self.max_retries, delay)
                await asyncio.sleep(delay)
                continue

            if resp.status_code == 404:
                raise GistNotFoundError(f"{label}: gist not found")
            resp.raise_for_status()
            return resp
        raise RuntimeError(f"{label} failed")  # unreachable with max_retries >= 1

    @staticmethod
    def _check_config(config: SyncConfig, need_gist_id: bool = False) -> str:
        token = (config.token or "").strip()
        if not token:
            raise GistConfigError("GitHub token is required")
        if need_gist_id and not config.gist_id:
            raise GistConfigError("Gist ID is not configured")
        return token

    # ── Upload ──────────────────────────────────────────────────────────

    def build_files(self, snapshot: SyncSnapshot) -> dict[str, dict]:
        payload = snapshot.model_dump(mode="json", by_alias=True)
        files = {
            SETTINGS_FILE: {"content": _dumps({
                "aiModels": payload["aiModels"],
                "appSettings": payload["appSettings"],
                "coverHistory": payload["coverHistory"],
            })},
        }
        for novel in payload["novels"]:
            files[novel_file_name(novel["id"])] = {"content": _dumps(novel)}
        return files

    async def upload(
        self,
        config: SyncConfig,
        snapshot: SyncSnapshot,
        on_progress: Optional[ProgressCallback] = None,
    ) -> SyncResult:
        try:
            token = self._check_config(config)
            files = self.build_files(snapshot)
            total = len(files)
            if on_progress:
                on_progress(0, total, "Preparing upload")

            async with self._client(token) as client:
                gist_id = config.gist_id
                if gist_id:
                    try:
                        result = await self._update_gist(client, gist_id, files)
                    except GistNotFoundError:
                        log.warning("Gist %s no longer exists, creating a new one", gist_id)
                        result = await self._create_gist(client, files)
                        result.is_recreated = True
                else:
                    result = await self._create_gist(client, files)

            if on_progress:
                on_progress(total, total, "Upload finished")
            log.info("Uploaded %d files to gist %s", total, result.gist_id)
            return result
        except (GistConfigError, GistNotFoundError, httpx.HTTPError) as e:
            log.warning("Gist upload failed: %s", e)
            return SyncResult(success=False, error=str(e))

    async def _update_gist(self, client: httpx.AsyncClient, gist_id: str, files: dict) -> SyncResult:
        resp = await self._request(client, "GET", f"/gists/{gist_id}", "Fetch gist")
        existing = resp.json().get("files") or {}
        payload: dict[str, Optional[dict]] = dict(files)
        for name in existing:
            if name.startswith(NOVEL_PREFIX) and name not in files:
                payload[name] = None  # deletes the stale novel file
        resp = await self._request(client, "PATCH", f"/gists/{gist_id}", "Update gist",
                                   json={"description": GIST_DESCRIPTION, "files": payload})
        data = resp.json()
        return SyncResult(success=True, message="Gist updated",
                          gist_id=data.get("id", gist_id), gist_url=data.get("html_url"))

    async def _create_gist(self, client: httpx.AsyncClient, files: dict) -> SyncResult:
        resp = await self._request(client, "POST", "/gists", "Create gist",
                                   json={"description": GIST_DESCRIPTION, "public": False, "files": files})
        data = resp.json()
        return SyncResult(success=True, message="Gist created",
                          gist_id=data.get("id"), gist_url=data.get("html_url"))

    # ── Download ────────────────────────────────────────────────────────

    async def _file_content(self, client: httpx.AsyncClient, name: str, meta: dict) -> Optional[str]:
        if meta.get("truncated") and meta.get("raw_url"):
            resp = await self._request(client, "GET", meta["raw_url"], f"Fetch {name}")
            return resp.text
        return meta.get("content")

    async def download(
        self,
        config: SyncConfig,
        on_progress: Optional[ProgressCallback] = None,
    ) -> DownloadResult:
        try:
            token = self._check_config(config, need_gist_id=True)
            async with self._client(token) as client:
                resp = await self._request(client, "GET", f"/gists/{config.gist_id}", "Download gist")
                gist_files: dict[str, dict] = resp.json().get("files") or {}
                total = len(gist_files)
                if on_progress:
                    on_progress(0, total, "Downloading data")

                raw: dict[str, Any] = {"novels": [], "aiModels": []}
                done = 0
                settings_meta = gist_files.get(SETTINGS_FILE)
                if settings_meta:
                    content = await self._file_content(client, SETTINGS_FILE, settings_meta)
                    try:
                        settings_data = json.loads(content or "{}")
                    except json.JSONDecodeError:
                        log.warning("Ignoring unreadable %s", SETTINGS_FILE)
                        settings_data = {}
                    for key in ("aiModels", "appSettings", "coverHistory"):
                        if settings_data.get(key) is not None:
                            raw[key] = settings_data[key]
                    done += 1

                for name, meta in gist_files.items():
                    if not _NOVEL_FILE_RE.match(name):
                        continue
                    content = await self._file_content(client, name, meta)
                    try:
                        raw["novels"].append(json.loads(content or ""))
                    except json.JSONDecodeError:
                        log.warning("Skipping unreadable novel file %s", name)
                    done += 1
                    if on_progress:
                        on_progress(done, total, f"Downloaded {name}")

            snapshot = validate_remote_data(raw)
            log.info("Downloaded gist %s: %d novels, %d models",
                     config.gist_id, len(snapshot.novels), len(snapshot.ai_models))
            return DownloadResult(success=True, data=snapshot)
        except GistNotFoundError:
            return DownloadResult(success=False, error="Gist not found")
        except (GistConfigError, InvalidRemoteDataError, httpx.HTTPError) as e:
            log.warning("Gist download failed: %s", e)
            return DownloadResult(success=False, error=str(e))
