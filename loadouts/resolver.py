from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field

import redis

from loadouts import item_store
from loadouts.api.models import Container, Item


@dataclass(frozen=True, slots=True)
class NotFound:
    item_id: str


@dataclass(frozen=True, slots=True)
class ResolvedItem:
    """Cached record of an item together with the container it was found in."""

    item: Item
    location: Container


@dataclass(slots=True)
class ContainerSnapshot:
    """Last-known contents of every container on the account.

    `character_ids` fixes the order other characters are searched in.
    """

    character_ids: list[str]
    contents: dict[Container, list[Item]] = field(default_factory=dict)

    @classmethod
    def from_items(cls, *, character_ids: Sequence[str], items: Iterable[Item]) -> "ContainerSnapshot":
        snap = cls(character_ids=list(character_ids))
        for item in items:
            snap.add(item)
        return snap

    def add(self, item: Item) -> None:
        self.contents.setdefault(item.container, []).append(item)

    def items_in(self, container: Container) -> list[Item]:
        return self.contents.get(container, [])


def search_order(*, target_character_id: str, character_ids: Sequence[str]) -> list[Container]:
    """Containers in lookup priority: target, other characters, then the vault."""

    order = [Container.equipped_on(target_character_id), Container.inventory_of(target_character_id)]
    for cid in character_ids:
        if cid == target_character_id:
            continue
        order.append(Container.equipped_on(cid))
        order.append(Container.inventory_of(cid))
    order.append(Container.vault())
    return order


def locate(item_id: str, target_character_id: str, snapshot: ContainerSnapshot) -> ResolvedItem | NotFound:
    for container in search_order(target_character_id=target_character_id, character_ids=snapshot.character_ids):
        for item in snapshot.items_in(container):
            if item.item_id == item_id:
                return ResolvedItem(item=item, location=container)
    return NotFound(item_id=item_id)


def resolve(item_id: str, target_character_id: str, snapshot: ContainerSnapshot) -> Container | NotFound:
    hit = locate(item_id, target_character_id, snapshot)
    if isinstance(hit, NotFound):
        return hit
    return hit.location


def resolve_all(
    item_ids: Sequence[str], target_character_id: str, snapshot: ContainerSnapshot
) -> list[ResolvedItem | NotFound]:
    return [locate(item_id, target_character_id, snapshot) for item_id in item_ids]


def snapshot_from_store(*, r: redis.Redis, target_character_id: str) -> ContainerSnapshot:
    """Build a snapshot from the local cache.

    The target is always searched even if the last resync did not list it.
    """

    character_ids = item_store.get_character_ids(r=r)
    if target_character_id not in character_ids:
        character_ids.insert(0, target_character_id)

    snap = ContainerSnapshot(character_ids=character_ids)
    for container in search_order(target_character_id=target_character_id, character_ids=character_ids):
        snap.contents[container] = item_store.get_items_by_container(r=r, container=container)
    return snap
