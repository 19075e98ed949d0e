from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass

import redis

from loadouts import item_store
from loadouts.api.models import Container, Item
from loadouts.outcomes import OperationOutcome, PlatformErrorCode, Success
from loadouts.planner import TransferStep
from loadouts.remote_client import InventoryClient

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ReconcileReport:
    updated_item_ids: tuple[str, ...]
    cache_write_failed: bool = False


class ResyncError(RuntimeError):
    def __init__(self, what: str, outcome: OperationOutcome) -> None:
        super().__init__(f"Resync failed while fetching {what}: {outcome}")
        self.outcome = outcome


def _build_batch(
    *,
    r: redis.Redis,
    character_id: str,
    applied_steps: Sequence[TransferStep],
    equip_results: Mapping[str, int],
) -> list[Item]:
    ids = list(dict.fromkeys([s.item_id for s in applied_steps] + list(equip_results)))
    cached = item_store.get_items(r=r, item_ids=ids)

    for item_id in ids:
        if item_id not in cached:
            logger.warning("Item %s moved remotely but has no cache record; left for next resync", item_id)

    for step in applied_steps:
        item = cached.get(step.item_id)
        if item is not None:
            cached[step.item_id] = item.model_copy(update={"container": step.destination})

    equipped_on = Container.equipped_on(character_id)
    equipped_ids = [i for i, status in equip_results.items() if status == PlatformErrorCode.success and i in cached]
    swapped_buckets: set[int] = set()
    for item_id in equipped_ids:
        cached[item_id] = cached[item_id].model_copy(update={"container": equipped_on})
        swapped_buckets.add(cached[item_id].bucket_hash)

    # Whatever sat in those slots before went back to the character's inventory.
    inventory = Container.inventory_of(character_id)
    for item in item_store.get_items_by_container(r=r, container=equipped_on):
        if item.item_id in equipped_ids or item.bucket_hash not in swapped_buckets:
            continue
        cached[item.item_id] = item.model_copy(update={"container": inventory})

    return list(cached.values())


def reconcile(
    *,
    r: redis.Redis,
    character_id: str,
    applied_steps: Sequence[TransferStep],
    equip_results: Mapping[str, int] | None = None,
) -> ReconcileReport:
    """Bring cached container placement in line with what actually happened remotely.

    Only completed steps and successfully equipped items are applied, so a
    partial failure never marks an item as somewhere it did not reach. The batch
    is retried once; after that the cache is left for the next full resync.
    """

    results = dict(equip_results or {})
    if not applied_steps and not results:
        return ReconcileReport(updated_item_ids=())

    for attempt in (1, 2):
        try:
            batch = _build_batch(r=r, character_id=character_id, applied_steps=applied_steps, equip_results=results)
            item_store.upsert_items(r=r, items=batch)
            return ReconcileReport(updated_item_ids=tuple(i.item_id for i in batch))
        except redis.RedisError as e:
            if attempt == 1:
                logger.warning("Cache reconcile for character %s failed (%s); retrying once", character_id, e)
                continue
            logger.error(
                "Cache consistency error for character %s: %d steps / %d equip results not written: %s",
                character_id,
                len(applied_steps),
                len(results),
                e,
            )
    return ReconcileReport(updated_item_ids=(), cache_write_failed=True)


async def resync_from_remote(*, r: redis.Redis, client: InventoryClient) -> tuple[list[str], int]:
    """Pull characters, equipment, inventories and the vault and replace the cache with them."""

    outcome = await client.get_characters()
    if not isinstance(outcome, Success):
        raise ResyncError("characters", outcome)
    character_ids = [c.character_id for c in outcome.payload]

    items: list[Item] = []
    for cid in character_ids:
        for what, fetch in (("equipment", client.get_equipment), ("inventory", client.get_inventory)):
            listed = await fetch(cid)
            if not isinstance(listed, Success):
                raise ResyncError(f"{what} of {cid}", listed)
            items.extend(listed.payload)

    vault = await client.get_vault()
    if not isinstance(vault, Success):
        raise ResyncError("vault", vault)
    items.extend(vault.payload)

    count = item_store.replace_snapshot(r=r, character_ids=character_ids, items=items)
    return character_ids, count
