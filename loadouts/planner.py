from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass

from loadouts.api.models import Container, Item
from loadouts.resolver import ResolvedItem


@dataclass(frozen=True, slots=True)
class TransferStep:
    item_id: str
    item_hash: int
    source: Container
    destination: Container

    @property
    def from_vault(self) -> bool:
        return self.source.is_vault

    @property
    def character_id(self) -> str:
        """The non-vault side of the move, as the platform's transfer call expects it."""

        side = self.destination if self.from_vault else self.source
        if side.character_id is None:
            raise ValueError(f"Transfer of {self.item_id} has no character side")
        return side.character_id


@dataclass(frozen=True, slots=True)
class EquipStep:
    character_id: str
    item_ids: tuple[str, ...]


@dataclass(frozen=True, slots=True)
class TransferPlan:
    transfers: tuple[TransferStep, ...]
    equip: EquipStep


def plan_item(item: Item, location: Container, target_character_id: str) -> list[TransferStep]:
    """Moves needed to bring one item into the target's inventory.

    Items already on the target need nothing. Anything on another character
    goes through the vault; there is no character-to-character move.
    """

    if location.is_on(target_character_id):
        return []

    vault = Container.vault()
    inventory = Container.inventory_of(target_character_id)
    if location.is_vault:
        return [TransferStep(item_id=item.item_id, item_hash=item.item_hash, source=vault, destination=inventory)]

    return [
        TransferStep(item_id=item.item_id, item_hash=item.item_hash, source=location, destination=vault),
        TransferStep(item_id=item.item_id, item_hash=item.item_hash, source=vault, destination=inventory),
    ]


def plan_loadout(resolved: Sequence[ResolvedItem], target_character_id: str) -> TransferPlan:
    steps: list[TransferStep] = []
    for hit in resolved:
        steps.extend(plan_item(hit.item, hit.location, target_character_id))
    return TransferPlan(
        transfers=tuple(steps),
        equip=EquipStep(character_id=target_character_id, item_ids=tuple(hit.item.item_id for hit in resolved)),
    )


def plan_store_in_vault(resolved: Sequence[ResolvedItem], character_id: str) -> tuple[TransferStep, ...]:
    """Moves that park every item currently on `character_id` in the vault."""

    vault = Container.vault()
    return tuple(
        TransferStep(item_id=hit.item.item_id, item_hash=hit.item.item_hash, source=hit.location, destination=vault)
        for hit in resolved
        if hit.item.owner_character_id == character_id
    )
