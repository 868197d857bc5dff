from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable

from railsync.models import (
    ENTITY_TOGGLE_FIELDS,
    EventSyncSettings,
    ResolutionContext,
    ResolutionResult,
    validate_entity_type,
)
from railsync.settings_store import SettingsStore


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ScopeLevel:
    """One step of the inheritance chain.

    ``overrides_parent`` decides whether an existing setting at this level wins
    instead of deferring to the next, more general level.
    """

    source: str
    applies: Callable[[ResolutionContext], bool]
    lookup: Callable[[SettingsStore, str, ResolutionContext], Any]
    overrides_parent: Callable[[Any], bool]


def _event_overrides(setting: EventSyncSettings) -> bool:
    for flag in (setting.inherit_from_subtrack, setting.inherit_from_track, setting.inherit_from_project):
        if flag is False:
            return True
    return False


SCOPE_CHAIN: tuple[ScopeLevel, ...] = (
    ScopeLevel(
        source="event",
        applies=lambda ctx: bool(ctx.event_id),
        lookup=lambda store, user_id, ctx: store.get_event_settings(
            user_id, ctx.project_id, ctx.event_id, ctx.entity_type
        ),
        overrides_parent=_event_overrides,
    ),
    ScopeLevel(
        source="subtrack",
        applies=lambda ctx: bool(ctx.track_id and ctx.subtrack_id),
        lookup=lambda store, user_id, ctx: store.get_subtrack_settings(
            user_id, ctx.project_id, ctx.track_id, ctx.subtrack_id
        ),
        overrides_parent=lambda setting: setting.inherit_from_track is False,
    ),
    ScopeLevel(
        source="track",
        applies=lambda ctx: bool(ctx.track_id),
        lookup=lambda store, user_id, ctx: store.get_track_settings(user_id, ctx.project_id, ctx.track_id),
        overrides_parent=lambda setting: setting.inherit_from_project is False,
    ),
    ScopeLevel(
        source="project",
        applies=lambda ctx: bool(ctx.project_id),
        lookup=lambda store, user_id, ctx: store.get_project_settings(user_id, ctx.project_id),
        overrides_parent=lambda setting: setting.inherit_from_global is False,
    ),
)


def entity_type_enabled(setting: Any, entity_type: str) -> bool:
    if isinstance(setting, EventSyncSettings):
        # Event records are keyed by entity type, so the lookup already matched it.
        return True
    toggle = ENTITY_TOGGLE_FIELDS[entity_type]
    return bool(getattr(setting, toggle, False))


def _result_from(setting: Any, source: str, entity_type: str) -> ResolutionResult:
    return ResolutionResult(
        should_sync=bool(setting.sync_enabled) and entity_type_enabled(setting, entity_type),
        target_calendar=setting.target_calendar_type,
        target_space_id=setting.target_space_id,
        source=source,
    )


def resolve_effective_calendar_sync(
    settings_store: SettingsStore,
    user_id: str,
    context: ResolutionContext,
    chain: tuple[ScopeLevel, ...] = SCOPE_CHAIN,
) -> ResolutionResult:
    """Return the effective sync intent for ``context``.

    The most specific level whose setting exists and opts out of inheritance
    wins outright; fields are never merged across levels. When no level wins,
    the user's global setting applies, and without one sync is off.
    """
    entity_type = validate_entity_type(context.entity_type)
    for level in chain:
        if not level.applies(context):
            continue
        setting = level.lookup(settings_store, user_id, context)
        if setting is None or not level.overrides_parent(setting):
            continue
        return _result_from(setting, level.source, entity_type)

    global_setting = settings_store.get_global_settings(user_id)
    if global_setting is None:
        logger.debug("No sync settings for user=%s project=%s, defaulting to off", user_id, context.project_id)
        return ResolutionResult(should_sync=False, target_calendar="personal", target_space_id=None, source="global")
    return _result_from(global_setting, "global", entity_type)
