"""Pydantic models for replicated user data and profile-sync payloads."""

from typing import Literal

from pydantic import AliasChoices, Field, model_validator

from p2p.protocol import WireModel


# --- Timestamped per-item fields (updatedAt is Unix ms) ---

class FavoriteData(WireModel):
    value: bool
    updated_at: int = 0


class HiddenData(WireModel):
    value: bool
    updated_at: int = 0


class WatchProgressData(WireModel):
    progress: float = Field(default=0, ge=0, le=100)  # percent
    updated_at: int = 0
    watched: int | None = None  # ms timestamp when marked watched


class TrackSelectionData(WireModel):
    audio: int | None = None
    subtitle: int | None = None
    updated_at: int = 0


def _first_present(data: dict, *keys):
    for key in keys:
        if key in data:
            return key, data[key]
    return None, None


class UserItemData(WireModel):
    """Per-item user state. Every mergeable field carries its own timestamp."""
    favorite: FavoriteData | None = None
    hidden: HiddenData | None = None
    watch_progress: WatchProgressData | None = None
    tracks: TrackSelectionData | None = None
    last_watched_at: int | None = None

    @model_validator(mode="before")
    @classmethod
    def _upgrade_legacy(cls, data):
        """Wrap plain legacy values into the timestamped shape (updatedAt=0)."""
        if not isinstance(data, dict):
            return data
        data = dict(data)

        for key in ("favorite", "hidden"):
            if isinstance(data.get(key), bool):
                data[key] = {"value": data[key], "updatedAt": 0}

        key, progress = _first_present(data, "watchProgress", "watch_progress")
        if isinstance(progress, (int, float)) and not isinstance(progress, bool):
            watched_at = data.get("watchedAt") if data.get("watched") else None
            data[key] = {"progress": progress, "updatedAt": 0, "watched": watched_at}

        if data.get("tracks") is None and ("audioTrack" in data or "subtitleTrack" in data):
            data["tracks"] = {
                "audio": data.get("audioTrack"),
                "subtitle": data.get("subtitleTrack"),
                "updatedAt": 0,
            }

        for legacy in ("watched", "watchedAt", "audioTrack", "subtitleTrack"):
            data.pop(legacy, None)
        return data


class PlayerData(WireModel):
    """Device-local browse preferences. Never merged."""
    sort_by: str = "name"
    sort_order: str = "asc"
    group_by: str = "none"


class LayoutData(WireModel):
    """Device-local panel layout. Never merged."""
    category_browser: int = 200
    content_browser: int = 600


class UserData(WireModel):
    """A user's replicated viewing preferences for one profile."""
    watchables: dict[str, UserItemData] = Field(default_factory=dict)
    hidden_groups: list[str] = Field(default_factory=list)
    sticky_groups: list[str] = Field(default_factory=list)
    player_data: PlayerData = Field(default_factory=PlayerData)
    layout_data: LayoutData = Field(default_factory=LayoutData)


# --- Profiles ---

class Profile(WireModel):
    username: str
    created_at: int = 0
    m3u_refs: list[str] = Field(default_factory=list, alias="m3uRefs")


class CurrentSelection(WireModel):
    username: str
    uuid: str


# --- profile_sync payload ---

class ProfileDescriptor(WireModel):
    username: str
    uuid: str
    source_url: str = Field(
        default="",
        validation_alias=AliasChoices("sourceURL", "url", "source_url"),
        serialization_alias="sourceURL",
    )


class M3UData(WireModel):
    source: str
    update: dict = Field(default_factory=dict)
    stats: dict = Field(default_factory=dict)


class ProfileSyncPayload(WireModel):
    profile: ProfileDescriptor | None = None
    request: Literal["full"] | None = None
    m3u_data: M3UData | None = Field(default=None, alias="m3uData")
    user_data: UserData | None = None
