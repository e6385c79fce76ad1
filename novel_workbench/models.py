from __future__ import annotations

import math
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Optional

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


def _new_id() -> str:
    return uuid.uuid4().hex[:12]


def now_millis() -> int:
    return int(datetime.now(timezone.utc).timestamp() * 1000)


def to_millis(value: Any) -> int:
    """Normalise a timestamp (epoch ms, ISO string or datetime) to epoch ms.

    Unparseable or missing values become 0, i.e. "older than anything".
    """
    if value is None or isinstance(value, bool):
        return 0
    if isinstance(value, (int, float)):
        return int(value) if math.isfinite(value) else 0
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return int(value.timestamp() * 1000)
    if isinstance(value, str):
        s = value.strip()
        if not s:
            return 0
        try:
            return to_millis(float(s))
        except ValueError:
            pass
        try:
            return to_millis(datetime.fromisoformat(s.replace("Z", "+00:00")))
        except ValueError:
            return 0
    return 0


Timestamp = Annotated[int, BeforeValidator(to_millis)]


class CamelModel(BaseModel):
    """Base for everything that travels through the gist JSON (camelCase keys).

    Unknown fields are kept so a round trip through this app never drops data
    written by a newer client.
    """
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")


# ── Enums ───────────────────────────────────────────────────────────────

class SyncType(str, Enum):
    GIST = "gist"


class RestorableType(str, Enum):
    NOVEL = "novel"
    MODEL = "model"
    COVER = "cover"


class SyncState(str, Enum):
    IDLE = "idle"
    AWAITING_DOWNLOAD = "awaiting_download"
    PENDING_USER_CONFIRMATION = "pending_user_confirmation"


class SyncStage(str, Enum):
    DOWNLOADING = "downloading"
    MERGING = "merging"
    UPLOADING = "uploading"
    APPLYING = "applying"


# ── Novel content ───────────────────────────────────────────────────────

class Translation(CamelModel):
    id: str = Field(default_factory=_new_id)
    translation: str = ""
    ai_model_id: str = ""


class Paragraph(CamelModel):
    id: str
    text: str = ""
    selected_translation_id: str = ""
    translations: list[Translation] = []


class Occurrence(CamelModel):
    chapter_id: str
    count: int = 0


class Terminology(CamelModel):
    id: str
    name: str
    description: Optional[str] = None
    occurrences: list[Occurrence] = []


class Alias(CamelModel):
    name: str


class CharacterSetting(CamelModel):
    id: str
    name: str
    description: Optional[str] = None
    aliases: list[Alias] = []
    occurrences: list[Occurrence] = []


class Chapter(CamelModel):
    id: str
    title: Any = ""
    content: Optional[list[Paragraph]] = None
    original_content: Optional[str] = None
    last_edited: Timestamp = 0


class Volume(CamelModel):
    id: str
    title: Any = ""
    chapters: Optional[list[Chapter]] = None


class Novel(CamelModel):
    id: str
    title: str = ""
    author: Optional[str] = None
    volumes: Optional[list[Volume]] = None
    terminologies: Optional[list[Terminology]] = None
    character_settings: Optional[list[CharacterSetting]] = None
    last_edited: Timestamp = 0
    created_at: Timestamp = 0


# ── Syncable side collections ───────────────────────────────────────────

class AIModel(CamelModel):
    id: str
    name: str = ""
    provider: str = ""
    model: str = ""
    api_key: str = ""
    enabled: bool = True
    last_edited: Optional[Timestamp] = None


class CoverHistoryItem(CamelModel):
    id: str
    url: str = ""
    added_at: Timestamp = 0


class SyncConfig(CamelModel):
    enabled: bool = False
    last_sync_time: Timestamp = 0
    sync_interval: int = 0  # milliseconds, 0 disables auto-sync
    sync_type: SyncType = SyncType.GIST
    sync_params: dict[str, str] = {}
    secret: str = ""
    api_endpoint: str = ""
    # Model ids known at the previous successful sync (detects local deletes)
    last_synced_model_ids: Optional[list[str]] = None

    @property
    def gist_id(self) -> str:
        return self.sync_params.get("gistId", "")

    @property
    def username(self) -> str:
        return self.sync_params.get("username", "")

    @property
    def token(self) -> str:
        return self.secret or self.sync_params.get("token", "")


class AppSettings(CamelModel):
    last_edited: Timestamp = 0
    syncs: list[SyncConfig] = []

    def gist_sync(self) -> Optional[SyncConfig]:
        return next((s for s in self.syncs if s.sync_type == SyncType.GIST), None)


class SyncSnapshot(CamelModel):
    """Everything that goes to / comes from the gist, at one point in time."""
    novels: list[Novel] = []
    ai_models: list[AIModel] = []
    app_settings: Optional[AppSettings] = None
    cover_history: list[CoverHistoryItem] = []

    @field_validator("novels", "ai_models", "cover_history", mode="before")
    @classmethod
    def _none_as_empty(cls, v: Any) -> Any:
        return [] if v is None else v


class RestorableItem(CamelModel):
    id: str
    type: RestorableType
    title: str = ""
    deleted_at: int = 0
    data: dict[str, Any] = {}


# ── Chunking ────────────────────────────────────────────────────────────

class TextChunk(BaseModel):
    text: str
    paragraph_ids: list[str] = []


class ParagraphTranslation(BaseModel):
    id: str
    translation: str


# ── API Request / Response Models ───────────────────────────────────────

class ChunkPreviewRequest(BaseModel):
    paragraphs: list[Paragraph]
    all_chapter_paragraphs: Optional[list[Paragraph]] = None
    chunk_size: Optional[Any] = None
    mode: str = "translation"  # "translation" or "proofreading"
    task_id: Optional[str] = None  # skip paragraphs this task already processed


class ChunkPreviewOut(BaseModel):
    chunk_size: int
    chunk_count: int
    chunks: list[TextChunk]


class DegradationCheckRequest(BaseModel):
    text: str
    original_text: Optional[str] = None
    repeat_threshold: int = 80
    repeat_check_window: int = 100
    pattern_repeat_threshold: int = 30


class TaskTranslationsRequest(BaseModel):
    task_id: str
    translations: list[ParagraphTranslation] | dict[str, str]
    ai_model_id: str = ""


class TaskTranslationsOut(BaseModel):
    applied: list[str]
    degraded: list[str]
    missing: list[str]


class SyncProgress(BaseModel):
    stage: SyncStage
    message: str = ""
    current: int = 0
    total: int = 0


class SyncStatusOut(BaseModel):
    syncing: bool
    state: SyncState
    has_pending_upload: bool
    progress: Optional[SyncProgress] = None
    last_sync_time: int = 0


class RestoreRequest(BaseModel):
    items: list[RestorableItem]
