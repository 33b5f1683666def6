"""
Profile repository: the on-disk layout of profiles, user data and playlists.

    profiles.json              list of profiles
    m3uMap.json                playlist source URL -> uuid
    current.json               selected {username, uuid}
    userData/{username}.json   replicated user data
    m3u/{uuid}/source.m3u      playlist source, stored byte-exact
    m3u/{uuid}/update.json     last update info
    m3u/{uuid}/stats.json      playlist statistics
"""

import json
import logging
import time
import uuid as uuid_lib

from pydantic import ValidationError

from storage.blob import BlobStore
from sync.models import CurrentSelection, M3UData, Profile, ProfileDescriptor, UserData, UserItemData

logger = logging.getLogger(__name__)

PROFILES_KEY = "profiles.json"
M3U_MAP_KEY = "m3uMap.json"
CURRENT_KEY = "current.json"


def user_data_key(username: str) -> str:
    return f"userData/{username}.json"


def m3u_source_key(uuid: str) -> str:
    return f"m3u/{uuid}/source.m3u"


def m3u_update_key(uuid: str) -> str:
    return f"m3u/{uuid}/update.json"


def m3u_stats_key(uuid: str) -> str:
    return f"m3u/{uuid}/stats.json"


def _salvage_user_data(username: str, data: dict) -> UserData:
    """Validate a user-data document field by field and item by item."""
    watchables = data.get("watchables")
    items = {}
    for key, item in (watchables.items() if isinstance(watchables, dict) else []):
        try:
            items[key] = UserItemData.model_validate(item)
        except ValidationError as e:
            logger.warning(f"Dropping invalid user data item {key} for {username}: {e}")

    fields = {}
    for name, value in data.items():
        if name == "watchables":
            continue
        try:
            UserData.model_validate({name: value})
        except ValidationError as e:
            logger.warning(f"Dropping invalid user data field {name} for {username}: {e}")
            continue
        fields[name] = value

    return UserData.model_validate(fields).model_copy(update={"watchables": items})


class ProfileRepository:
    """Reads and writes profile state through a BlobStore."""

    def __init__(self, store: BlobStore):
        self._store = store

    # --- JSON helpers ---

    async def _read_json(self, key: str, default):
        raw = await self._store.read(key)
        if raw is None:
            return default
        try:
            return json.loads(raw)
        except ValueError as e:
            logger.error(f"Corrupt JSON in {key}: {e}")
            return default

    async def _write_json(self, key: str, data) -> None:
        await self._store.write(key, json.dumps(data, indent=2).encode("utf-8"))

    # --- Profiles ---

    async def list_profiles(self) -> list[Profile]:
        data = await self._read_json(PROFILES_KEY, [])
        profiles = []
        for item in data if isinstance(data, list) else []:
            try:
                profiles.append(Profile.model_validate(item))
            except ValidationError as e:
                logger.warning(f"Skipping invalid profile entry: {e}")
        return profiles

    async def get_profile(self, username: str) -> Profile | None:
        return next((p for p in await self.list_profiles() if p.username == username), None)

    async def _save_profiles(self, profiles: list[Profile]) -> None:
        await self._write_json(PROFILES_KEY, [p.to_wire() for p in profiles])

    async def url_for_uuid(self, uuid: str) -> str:
        m3u_map = await self._read_json(M3U_MAP_KEY, {})
        return next((url for url, ref in m3u_map.items() if ref == uuid), "")

    async def ensure_profile(self, descriptor: ProfileDescriptor) -> Profile:
        """Create the profile if missing and link it to the descriptor's playlist."""
        profiles = await self.list_profiles()
        profile = next((p for p in profiles if p.username == descriptor.username), None)
        if profile is None:
            profile = Profile(username=descriptor.username, created_at=int(time.time() * 1000))
            profiles.append(profile)
            logger.info(f"Created profile {descriptor.username}")

        if descriptor.uuid not in profile.m3u_refs:
            profile.m3u_refs.append(descriptor.uuid)
        await self._save_profiles(profiles)

        if descriptor.source_url:
            m3u_map = await self._read_json(M3U_MAP_KEY, {})
            if m3u_map.get(descriptor.source_url) != descriptor.uuid:
                m3u_map[descriptor.source_url] = descriptor.uuid
                await self._write_json(M3U_MAP_KEY, m3u_map)
        return profile

    async def create_profile(self, username: str, source_url: str, source: str | None = None) -> ProfileDescriptor:
        """Operator-created profile. Reuses the uuid already assigned to ``source_url``."""
        m3u_map = await self._read_json(M3U_MAP_KEY, {})
        uuid = m3u_map.get(source_url) or str(uuid_lib.uuid4())
        descriptor = ProfileDescriptor(username=username, uuid=uuid, source_url=source_url)
        await self.ensure_profile(descriptor)
        if source is not None:
            await self.write_m3u(uuid, M3UData(source=source))
        return descriptor

    # --- Selection ---

    async def select(self, username: str, uuid: str | None = None) -> ProfileDescriptor:
        profile = await self.get_profile(username)
        if profile is None:
            raise KeyError(username)
        if uuid is None:
            if not profile.m3u_refs:
                raise ValueError(f"Profile {username} has no playlist")
            uuid = profile.m3u_refs[0]
        await self._write_json(CURRENT_KEY, CurrentSelection(username=username, uuid=uuid).to_wire())
        logger.info(f"Selected profile {username} ({uuid})")
        return ProfileDescriptor(username=username, uuid=uuid, source_url=await self.url_for_uuid(uuid))

    async def current(self) -> ProfileDescriptor | None:
        data = await self._read_json(CURRENT_KEY, None)
        if data is None:
            return None
        try:
            selection = CurrentSelection.model_validate(data)
        except ValidationError as e:
            logger.warning(f"Ignoring invalid profile selection: {e}")
            return None
        return ProfileDescriptor(
            username=selection.username,
            uuid=selection.uuid,
            source_url=await self.url_for_uuid(selection.uuid),
        )

    # --- User data ---

    async def read_user_data(self, username: str) -> UserData:
        """Load a user's data, dropping only the items and fields that fail validation."""
        data = await self._read_json(user_data_key(username), None)
        if data is None:
            return UserData()
        if not isinstance(data, dict):
            logger.error(f"User data for {username} is not an object, starting empty")
            return UserData()
        try:
            return UserData.model_validate(data)
        except ValidationError:
            return _salvage_user_data(username, data)

    async def write_user_data(self, username: str, user_data: UserData) -> None:
        await self._write_json(user_data_key(username), user_data.to_wire())

    # --- Playlists ---

    async def has_source(self, uuid: str) -> bool:
        return await self._store.exists(m3u_source_key(uuid))

    async def read_m3u(self, uuid: str) -> M3UData | None:
        source = await self._store.read(m3u_source_key(uuid))
        if source is None:
            return None
        try:
            text = source.decode("utf-8")
        except UnicodeDecodeError as e:
            logger.warning(f"Playlist {uuid} is not valid UTF-8, replacing bad bytes: {e}")
            text = source.decode("utf-8", errors="replace")
        return M3UData(
            source=text,
            update=await self._read_json(m3u_update_key(uuid), {}),
            stats=await self._read_json(m3u_stats_key(uuid), {}),
        )

    async def write_m3u(self, uuid: str, m3u: M3UData) -> None:
        await self._store.write(m3u_source_key(uuid), m3u.source.encode("utf-8"))
        await self._write_json(m3u_update_key(uuid), m3u.update)
        await self._write_json(m3u_stats_key(uuid), m3u.stats)
        logger.info(f"Stored playlist {uuid} ({len(m3u.source)} chars)")
