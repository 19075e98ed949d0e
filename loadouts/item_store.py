from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from datetime import UTC, datetime
from uuid import UUID, uuid4

import redis

from loadouts.api.models import Container, Item, Loadout

logger = logging.getLogger(__name__)

ITEM_KEY_PREFIX = "loadouts:item:"  # + {item_id}
CONTAINER_KEY_PREFIX = "loadouts:container:"  # + {container.key} -> set of item ids
CHARACTERS_KEY = "loadouts:characters"  # list of character ids, account order
LOADOUTS_SET_KEY = "loadouts:loadouts"
LOADOUT_KEY_PREFIX = "loadouts:loadout:"  # + {uuid}
CHARACTER_LOADOUTS_PREFIX = "loadouts:character-loadouts:"  # + {character_id} -> set of loadout ids


def _now() -> datetime:
    return datetime.now(tz=UTC)


def _item_key(item_id: str) -> str:
    return f"{ITEM_KEY_PREFIX}{item_id}"


def _container_key(container: Container) -> str:
    return f"{CONTAINER_KEY_PREFIX}{container.key}"


def _loadout_key(loadout_id: UUID) -> str:
    return f"{LOADOUT_KEY_PREFIX}{loadout_id}"


def _character_loadouts_key(character_id: str) -> str:
    return f"{CHARACTER_LOADOUTS_PREFIX}{character_id}"


# ---- items ----


def get_item(*, r: redis.Redis, item_id: str) -> Item | None:
    raw = r.get(_item_key(item_id))
    if not raw:
        return None
    return Item.model_validate_json(raw)


def get_items(*, r: redis.Redis, item_ids: Sequence[str]) -> dict[str, Item]:
    """Fetch several cached items; ids with no record are left out."""

    if not item_ids:
        return {}
    out: dict[str, Item] = {}
    for item_id, raw in zip(item_ids, r.mget([_item_key(i) for i in item_ids])):
        if raw:
            out[item_id] = Item.model_validate_json(raw)
    return out


def get_items_by_container(*, r: redis.Redis, container: Container) -> list[Item]:
    ids = sorted(r.smembers(_container_key(container)))
    items = get_items(r=r, item_ids=ids)
    # Index entries whose record moved elsewhere are ignored.
    return [items[i] for i in ids if i in items and items[i].container == container]


def upsert_items(*, r: redis.Redis, items: Iterable[Item]) -> None:
    """Write a batch of item records and their container indexes atomically.

    Runs as one MULTI/EXEC transaction watching the touched item keys, so a
    concurrent writer forces a re-read instead of leaving an item indexed in
    two containers.
    """

    latest: dict[str, Item] = {}
    for item in items:
        latest[item.item_id] = item
    if not latest:
        return

    keys = [_item_key(i) for i in latest]

    def _apply(pipe: redis.client.Pipeline) -> None:
        previous = pipe.mget(keys)
        pipe.multi()
        for item, raw in zip(latest.values(), previous):
            if raw:
                old = Item.model_validate_json(raw)
                if old.container != item.container:
                    pipe.srem(_container_key(old.container), item.item_id)
            pipe.sadd(_container_key(item.container), item.item_id)
            pipe.set(_item_key(item.item_id), item.model_dump_json())

    r.transaction(_apply, *keys)


def replace_snapshot(*, r: redis.Redis, character_ids: Sequence[str], items: Iterable[Item]) -> int:
    """Replace the whole cached item snapshot with a fresh one from the remote."""

    stale = list(r.scan_iter(match=f"{ITEM_KEY_PREFIX}*")) + list(r.scan_iter(match=f"{CONTAINER_KEY_PREFIX}*"))

    count = 0
    pipe = r.pipeline(transaction=True)
    if stale:
        pipe.delete(*stale)
    pipe.delete(CHARACTERS_KEY)
    if character_ids:
        pipe.rpush(CHARACTERS_KEY, *character_ids)
    for item in items:
        pipe.sadd(_container_key(item.container), item.item_id)
        pipe.set(_item_key(item.item_id), item.model_dump_json())
        count += 1
    pipe.execute()
    logger.info("Replaced item snapshot: %d characters, %d items", len(character_ids), count)
    return count


def get_character_ids(*, r: redis.Redis) -> list[str]:
    return list(r.lrange(CHARACTERS_KEY, 0, -1))


# ---- loadouts ----


def save_loadout(*, r: redis.Redis, loadout: Loadout) -> None:
    loadout.updated_at = _now()
    pipe = r.pipeline(transaction=True)
    pipe.set(_loadout_key(loadout.loadout_id), loadout.model_dump_json())
    pipe.sadd(LOADOUTS_SET_KEY, str(loadout.loadout_id))
    pipe.sadd(_character_loadouts_key(loadout.character_id), str(loadout.loadout_id))
    pipe.execute()


def get_loadout(*, r: redis.Redis, loadout_id: UUID) -> Loadout | None:
    raw = r.get(_loadout_key(loadout_id))
    if not raw:
        return None
    return Loadout.model_validate_json(raw)


def require_loadout(*, r: redis.Redis, loadout_id: UUID) -> Loadout:
    loadout = get_loadout(r=r, loadout_id=loadout_id)
    if loadout is None:
        raise ValueError("Loadout not found")
    return loadout


def create_loadout(
    *,
    r: redis.Redis,
    name: str,
    character_id: str,
    item_ids: Sequence[str],
    description: str | None = None,
) -> Loadout:
    now = _now()
    loadout = Loadout(
        loadout_id=uuid4(),
        name=name,
        description=description,
        character_id=character_id,
        item_ids=list(item_ids),
        is_equipped=False,
        created_at=now,
        updated_at=now,
    )
    save_loadout(r=r, loadout=loadout)
    return loadout


def list_loadouts_for_character(*, r: redis.Redis, character_id: str) -> list[Loadout]:
    ids = sorted(r.smembers(_character_loadouts_key(character_id)))
    out: list[Loadout] = []
    for sid in ids:
        try:
            lid = UUID(sid)
        except ValueError:
            continue
        loadout = get_loadout(r=r, loadout_id=lid)
        if loadout is not None:
            out.append(loadout)
    out.sort(key=lambda lo: lo.updated_at, reverse=True)
    return out


def delete_loadout(*, r: redis.Redis, loadout_id: UUID) -> bool:
    loadout = get_loadout(r=r, loadout_id=loadout_id)
    if loadout is None:
        return False
    pipe = r.pipeline(transaction=True)
    pipe.delete(_loadout_key(loadout_id))
    pipe.srem(LOADOUTS_SET_KEY, str(loadout_id))
    pipe.srem(_character_loadouts_key(loadout.character_id), str(loadout_id))
    pipe.execute()
    return True


def set_loadout_equipped(*, r: redis.Redis, loadout_id: UUID, equipped: bool) -> Loadout:
    """Flag a loadout as (un)equipped.

    Equipping one loadout clears the flag on every other loadout of the same
    character.
    """

    loadout = require_loadout(r=r, loadout_id=loadout_id)
    if equipped:
        for other in list_loadouts_for_character(r=r, character_id=loadout.character_id):
            if other.loadout_id != loadout.loadout_id and other.is_equipped:
                other.is_equipped = False
                save_loadout(r=r, loadout=other)
    loadout.is_equipped = equipped
    save_loadout(r=r, loadout=loadout)
    return loadout
