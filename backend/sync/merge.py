"""
Last-writer-wins merge of replicated user data.

Each timestamped field of an item is resolved independently: the side with
the larger ``updatedAt`` wins and a tie keeps the local value. Group lists
are unioned. Player and layout preferences are per-device and always stay
local. Neither input is modified.
"""

from sync.models import UserData, UserItemData

TIMESTAMPED_FIELDS = ("favorite", "hidden", "watch_progress", "tracks")


def _pick(local, remote):
    if remote is None:
        return local
    if local is None or remote.updated_at > local.updated_at:
        return remote
    return local


def _max_optional(a: int | None, b: int | None) -> int | None:
    if a is None:
        return b
    if b is None:
        return a
    return max(a, b)


def merge_item(local: UserItemData, remote: UserItemData) -> UserItemData:
    fields = {name: _pick(getattr(local, name), getattr(remote, name)) for name in TIMESTAMPED_FIELDS}
    fields["last_watched_at"] = _max_optional(local.last_watched_at, remote.last_watched_at)
    # Field instances are shared with the inputs until copied
    return UserItemData(**fields).model_copy(deep=True)


def _union(local: list[str], remote: list[str]) -> list[str]:
    return list(dict.fromkeys([*local, *remote]))


def merge_user_data(local: UserData, remote: UserData) -> UserData:
    """Return the merge of ``remote`` into ``local``."""
    watchables: dict[str, UserItemData] = {}
    for url in dict.fromkeys([*local.watchables, *remote.watchables]):
        local_item = local.watchables.get(url)
        remote_item = remote.watchables.get(url)
        if local_item is None:
            watchables[url] = remote_item.model_copy(deep=True)
        elif remote_item is None:
            watchables[url] = local_item.model_copy(deep=True)
        else:
            watchables[url] = merge_item(local_item, remote_item)

    return UserData(
        watchables=watchables,
        hidden_groups=_union(local.hidden_groups, remote.hidden_groups),
        sticky_groups=_union(local.sticky_groups, remote.sticky_groups),
        player_data=local.player_data.model_copy(deep=True),
        layout_data=local.layout_data.model_copy(deep=True),
    )
