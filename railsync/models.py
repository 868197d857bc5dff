from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import date, datetime, time, timezone
from typing import Any, ClassVar


CALENDAR_TARGETS = ("personal", "shared", "both")
ENTITY_TYPES = ("roadmap_event", "task", "mindmesh_event")
ENTITY_TOGGLE_FIELDS = {
    "roadmap_event": "sync_roadmap_events",
    "task": "sync_tasks_with_dates",
    "mindmesh_event": "sync_mindmesh_events",
}
RESOLUTION_SOURCES = ("event", "subtrack", "track", "project", "global")
EXECUTION_ACTIONS = ("created", "updated", "deleted", "noop")

_ROW_META_FIELDS = ("id", "created_at", "updated_at")


def _ensure_tz(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def parse_iso_datetime(value: str | datetime | None) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return _ensure_tz(value)
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    return _ensure_tz(parsed)


def parse_iso_date(value: str | date | None) -> date | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return _ensure_tz(value).date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    if not text:
        return None
    if "T" in text or " " in text:
        parsed = parse_iso_datetime(text)
        return parsed.date() if parsed else None
    return date.fromisoformat(text)


def serialize_datetime(value: datetime | None) -> str | None:
    if value is None:
        return None
    return _ensure_tz(value).isoformat()


def serialize_date(value: date | None) -> str | None:
    if value is None:
        return None
    return value.isoformat()


def date_to_datetime(value: datetime | date | None, is_end: bool = False) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return _ensure_tz(value)
    if is_end:
        return datetime.combine(value, time.max, tzinfo=timezone.utc)
    return datetime.combine(value, time.min, tzinfo=timezone.utc)


def validate_target_calendar_type(value: str) -> str:
    text = str(value or "").strip().lower()
    if text not in CALENDAR_TARGETS:
        raise ValueError(f"target_calendar_type must be one of {', '.join(CALENDAR_TARGETS)}")
    return text


def validate_entity_type(value: str) -> str:
    text = str(value or "").strip()
    if text not in ENTITY_TYPES:
        raise ValueError(f"entity_type must be one of {', '.join(ENTITY_TYPES)}")
    return text


def _optional_bool(value: Any) -> bool | None:
    if value is None:
        return None
    return bool(value)


def _optional_text(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _settings_row(settings: Any) -> dict[str, Any]:
    payload = asdict(settings)
    for key in _ROW_META_FIELDS:
        payload.pop(key, None)
    return payload


@dataclass
class GlobalSyncSettings:
    user_id: str
    sync_enabled: bool = False
    sync_roadmap_events: bool = True
    sync_tasks_with_dates: bool = True
    sync_mindmesh_events: bool = True
    target_calendar_type: str = "personal"
    target_space_id: str | None = None
    id: str = ""
    created_at: str = ""
    updated_at: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "GlobalSyncSettings":
        return cls(
            user_id=str(data.get("user_id", "")),
            sync_enabled=bool(data.get("sync_enabled", False)),
            sync_roadmap_events=bool(data.get("sync_roadmap_events", True)),
            sync_tasks_with_dates=bool(data.get("sync_tasks_with_dates", True)),
            sync_mindmesh_events=bool(data.get("sync_mindmesh_events", True)),
            target_calendar_type=str(data.get("target_calendar_type") or "personal"),
            target_space_id=_optional_text(data.get("target_space_id")),
            id=str(data.get("id") or ""),
            created_at=str(data.get("created_at") or ""),
            updated_at=str(data.get("updated_at") or ""),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    def to_row(self) -> dict[str, Any]:
        return _settings_row(self)


@dataclass
class ProjectSyncSettings:
    user_id: str
    project_id: str
    sync_enabled: bool = False
    sync_roadmap_events: bool = True
    sync_tasks_with_dates: bool = True
    sync_mindmesh_events: bool = True
    target_calendar_type: str = "personal"
    target_space_id: str | None = None
    inherit_from_global: bool = True
    id: str = ""
    created_at: str = ""
    updated_at: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ProjectSyncSettings":
        return cls(
            user_id=str(data.get("user_id", "")),
            project_id=str(data.get("project_id", "")),
            sync_enabled=bool(data.get("sync_enabled", False)),
            sync_roadmap_events=bool(data.get("sync_roadmap_events", True)),
            sync_tasks_with_dates=bool(data.get("sync_tasks_with_dates", True)),
            sync_mindmesh_events=bool(data.get("sync_mindmesh_events", True)),
            target_calendar_type=str(data.get("target_calendar_type") or "personal"),
            target_space_id=_optional_text(data.get("target_space_id")),
            inherit_from_global=bool(data.get("inherit_from_global", True)),
            id=str(data.get("id") or ""),
            created_at=str(data.get("created_at") or ""),
            updated_at=str(data.get("updated_at") or ""),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    def to_row(self) -> dict[str, Any]:
        return _settings_row(self)


@dataclass
class TrackSyncSettings:
    user_id: str
    project_id: str
    track_id: str
    sync_enabled: bool = False
    sync_roadmap_events: bool = True
    sync_tasks_with_dates: bool = True
    sync_mindmesh_events: bool = True
    target_calendar_type: str = "personal"
    target_space_id: str | None = None
    inherit_from_project: bool = True
    id: str = ""
    created_at: str = ""
    updated_at: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TrackSyncSettings":
        return cls(
            user_id=str(data.get("user_id", "")),
            project_id=str(data.get("project_id", "")),
            track_id=str(data.get("track_id", "")),
            sync_enabled=bool(data.get("sync_enabled", False)),
            sync_roadmap_events=bool(data.get("sync_roadmap_events", True)),
            sync_tasks_with_dates=bool(data.get("sync_tasks_with_dates", True)),
            sync_mindmesh_events=bool(data.get("sync_mindmesh_events", True)),
            target_calendar_type=str(data.get("target_calendar_type") or "personal"),
            target_space_id=_optional_text(data.get("target_space_id")),
            inherit_from_project=bool(data.get("inherit_from_project", True)),
            id=str(data.get("id") or ""),
            created_at=str(data.get("created_at") or ""),
            updated_at=str(data.get("updated_at") or ""),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    def to_row(self) -> dict[str, Any]:
        return _settings_row(self)


@dataclass
class SubtrackSyncSettings:
    user_id: str
    project_id: str
    track_id: str
    subtrack_id: str
    sync_enabled: bool = False
    sync_roadmap_events: bool = True
    sync_tasks_with_dates: bool = True
    sync_mindmesh_events: bool = True
    target_calendar_type: str = "personal"
    target_space_id: str | None = None
    inherit_from_track: bool = True
    id: str = ""
    created_at: str = ""
    updated_at: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SubtrackSyncSettings":
        return cls(
            user_id=str(data.get("user_id", "")),
            project_id=str(data.get("project_id", "")),
            track_id=str(data.get("track_id", "")),
            subtrack_id=str(data.get("subtrack_id", "")),
            sync_enabled=bool(data.get("sync_enabled", False)),
            sync_roadmap_events=bool(data.get("sync_roadmap_events", True)),
            sync_tasks_with_dates=bool(data.get("sync_tasks_with_dates", True)),
            sync_mindmesh_events=bool(data.get("sync_mindmesh_events", True)),
            target_calendar_type=str(data.get("target_calendar_type") or "personal"),
            target_space_id=_optional_text(data.get("target_space_id")),
            inherit_from_track=bool(data.get("inherit_from_track", True)),
            id=str(data.get("id") or ""),
            created_at=str(data.get("created_at") or ""),
            updated_at=str(data.get("updated_at") or ""),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    def to_row(self) -> dict[str, Any]:
        return _settings_row(self)


@dataclass
class EventSyncSettings:
    """Per-event override. Inherit flags are tri-state: None means "look at the
    parent scope", False means "this record wins"."""

    user_id: str
    project_id: str
    event_id: str
    entity_type: str = "roadmap_event"
    track_id: str | None = None
    subtrack_id: str | None = None
    sync_enabled: bool = False
    target_calendar_type: str = "personal"
    target_space_id: str | None = None
    inherit_from_subtrack: bool | None = None
    inherit_from_track: bool | None = None
    inherit_from_project: bool | None = None
    id: str = ""
    created_at: str = ""
    updated_at: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "EventSyncSettings":
        return cls(
            user_id=str(data.get("user_id", "")),
            project_id=str(data.get("project_id", "")),
            event_id=str(data.get("event_id", "")),
            entity_type=str(data.get("entity_type") or "roadmap_event"),
            track_id=_optional_text(data.get("track_id")),
            subtrack_id=_optional_text(data.get("subtrack_id")),
            sync_enabled=bool(data.get("sync_enabled", False)),
            target_calendar_type=str(data.get("target_calendar_type") or "personal"),
            target_space_id=_optional_text(data.get("target_space_id")),
            inherit_from_subtrack=_optional_bool(data.get("inherit_from_subtrack")),
            inherit_from_track=_optional_bool(data.get("inherit_from_track")),
            inherit_from_project=_optional_bool(data.get("inherit_from_project")),
            id=str(data.get("id") or ""),
            created_at=str(data.get("created_at") or ""),
            updated_at=str(data.get("updated_at") or ""),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    def to_row(self) -> dict[str, Any]:
        return _settings_row(self)


@dataclass
class ResolutionContext:
    project_id: str
    track_id: str | None = None
    subtrack_id: str | None = None
    event_id: str | None = None
    entity_type: str = "roadmap_event"

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class ResolutionResult:
    should_sync: bool
    target_calendar: str
    source: str
    target_space_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @property
    def includes_personal(self) -> bool:
        return self.target_calendar in {"personal", "both"}

    @property
    def includes_shared(self) -> bool:
        return self.target_calendar in {"shared", "both"}


@dataclass
class RoadmapItem:
    id: str
    master_project_id: str
    type: str = "task"
    title: str = ""
    description: str = ""
    start_date: date | None = None
    end_date: date | None = None
    track_id: str | None = None
    subtrack_id: str | None = None
    status: str = "pending"
    metadata: dict[str, Any] = field(default_factory=dict)
    parent_item_id: str | None = None

    kind: ClassVar[str] = "legacy"

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["start_date"] = serialize_date(self.start_date)
        payload["end_date"] = serialize_date(self.end_date)
        payload["kind"] = self.kind
        return payload

    def to_row(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["start_date"] = serialize_date(self.start_date)
        payload["end_date"] = serialize_date(self.end_date)
        return payload

    @property
    def is_event(self) -> bool:
        return self.kind == "event"


@dataclass
class RoadmapEvent(RoadmapItem):
    kind: ClassVar[str] = "event"


@dataclass
class RoadmapTask(RoadmapItem):
    kind: ClassVar[str] = "task"


@dataclass
class LegacyRoadmapItem(RoadmapItem):
    kind: ClassVar[str] = "legacy"


@dataclass
class BranchResult:
    executed: bool
    action: str
    reason: str
    error: str | None = None
    calendar_event_id: str | None = None
    projection_id: str | None = None
    context_event_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class ExecutionResult:
    executed: bool
    action: str
    reason: str
    error: str | None = None
    calendar_event_id: str | None = None
    personal: BranchResult | None = None
    shared: BranchResult | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "executed": self.executed,
            "action": self.action,
            "reason": self.reason,
            "error": self.error,
            "calendar_event_id": self.calendar_event_id,
            "personal": self.personal.to_dict() if self.personal else None,
            "shared": self.shared.to_dict() if self.shared else None,
        }

    @classmethod
    def noop(cls, reason: str, error: str | None = None) -> "ExecutionResult":
        return cls(executed=False, action="noop", reason=reason, error=error)


@dataclass
class BulkSyncError:
    event_id: str
    reason: str


@dataclass
class BulkSyncResult:
    scanned_count: int = 0
    synced_count: int = 0
    unsynced_count: int = 0
    skipped_count: int = 0
    errors: list[BulkSyncError] = field(default_factory=list)

    @property
    def errors_count(self) -> int:
        return len(self.errors)

    def to_dict(self) -> dict[str, Any]:
        return {
            "scanned_count": self.scanned_count,
            "synced_count": self.synced_count,
            "unsynced_count": self.unsynced_count,
            "skipped_count": self.skipped_count,
            "errors_count": self.errors_count,
            "errors": [asdict(error) for error in self.errors],
        }


@dataclass
class SyncConfig:
    batch_size: int = 25
    batch_pause_seconds: float = 0.0
    unknown_project_name: str = "Unknown Project"
    default_event_color: str = "blue"
    propagate_on_settings_change: bool = True

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "SyncConfig":
        data = data or {}
        return cls(
            batch_size=max(1, int(data.get("batch_size", 25))),
            batch_pause_seconds=max(0.0, float(data.get("batch_pause_seconds", 0.0))),
            unknown_project_name=str(data.get("unknown_project_name", "Unknown Project")).strip()
            or "Unknown Project",
            default_event_color=str(data.get("default_event_color", "blue")).strip() or "blue",
            propagate_on_settings_change=bool(data.get("propagate_on_settings_change", True)),
        )


@dataclass
class LoggingConfig:
    level: str = "INFO"

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "LoggingConfig":
        data = data or {}
        level = str(data.get("level", "INFO")).strip().upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            level = "INFO"
        return cls(level=level)


@dataclass
class AppConfig:
    sync: SyncConfig = field(default_factory=SyncConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AppConfig":
        data = data or {}
        return cls(
            sync=SyncConfig.from_dict(data.get("sync")),
            logging=LoggingConfig.from_dict(data.get("logging")),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def default_app_config() -> AppConfig:
    return AppConfig()
