from __future__ import annotations

from datetime import datetime
from enum import IntEnum, StrEnum
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, model_validator


class EquipmentBucket(IntEnum):
    """Inventory bucket hashes for the slots a loadout can fill."""

    kinetic = 1498876634
    energy = 2465295065
    power = 953998645
    helmet = 3448274439
    gauntlets = 3551918588
    chest = 14239492
    legs = 20886954
    class_item = 1585787867


LOADOUT_BUCKETS: frozenset[int] = frozenset(int(b) for b in EquipmentBucket)


class ContainerKind(StrEnum):
    equipped = "equipped"
    inventory = "inventory"
    vault = "vault"


class Container(BaseModel):
    """One of the mutually exclusive places an item can be."""

    model_config = ConfigDict(frozen=True)

    kind: ContainerKind
    # None only for the shared vault.
    character_id: str | None = None

    @model_validator(mode="after")
    def _check_owner(self) -> "Container":
        if self.kind == ContainerKind.vault and self.character_id is not None:
            raise ValueError("vault container has no character")
        if self.kind != ContainerKind.vault and not self.character_id:
            raise ValueError(f"{self.kind.value} container requires a character_id")
        return self

    @classmethod
    def equipped_on(cls, character_id: str) -> "Container":
        return cls(kind=ContainerKind.equipped, character_id=character_id)

    @classmethod
    def inventory_of(cls, character_id: str) -> "Container":
        return cls(kind=ContainerKind.inventory, character_id=character_id)

    @classmethod
    def vault(cls) -> "Container":
        return cls(kind=ContainerKind.vault)

    @classmethod
    def from_key(cls, key: str) -> "Container":
        if key == ContainerKind.vault.value:
            return cls.vault()
        kind, _, character_id = key.partition(":")
        return cls(kind=ContainerKind(kind), character_id=character_id)

    @property
    def key(self) -> str:
        if self.kind == ContainerKind.vault:
            return self.kind.value
        return f"{self.kind.value}:{self.character_id}"

    @property
    def is_vault(self) -> bool:
        return self.kind == ContainerKind.vault

    def is_on(self, character_id: str) -> bool:
        return not self.is_vault and self.character_id == character_id


class Item(BaseModel):
    item_id: str
    # Definition hash ("what kind of item").
    item_hash: int
    bucket_hash: int
    container: Container

    transfer_status: int = 0
    lockable: bool = True
    # Bitmask of item state flags (locked, tracked, ...), as reported remotely.
    state: int = 0

    @property
    def owner_character_id(self) -> str | None:
        return self.container.character_id


class Character(BaseModel):
    character_id: str
    class_type: int = 0
    light: int = 0
    date_last_played: datetime | None = None


class Loadout(BaseModel):
    loadout_id: UUID
    name: str
    description: str | None = None
    character_id: str

    # One instance id per equipment slot, in the order they were picked.
    item_ids: list[str] = Field(default_factory=list)

    is_equipped: bool = False
    created_at: datetime
    updated_at: datetime


class LoadoutCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    description: str | None = Field(default=None, max_length=2000)
    character_id: str = Field(..., min_length=1)
    item_ids: list[str] = Field(..., min_length=1)


class LoadoutUpdateRequest(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=200)
    description: str | None = Field(default=None, max_length=2000)
    item_ids: list[str] | None = Field(default=None, min_length=1)


class LoadoutListResponse(BaseModel):
    loadouts: list[Loadout]


class CharacterListResponse(BaseModel):
    character_ids: list[str]


class SyncResponse(BaseModel):
    character_ids: list[str]
    item_count: int


class AppliedStep(BaseModel):
    item_id: str
    source: str
    destination: str


class EquipResultResponse(BaseModel):
    # committed | failed | cancelled | busy
    status: str
    loadout_id: UUID
    character_id: str
    phase: str | None = None
    cause: str | None = None
    message: str | None = None
    remote_code: int | None = None
    step_index: int | None = None
    unresolved_item_id: str | None = None
    applied_steps: list[AppliedStep] = Field(default_factory=list)
    equip_results: dict[str, int] = Field(default_factory=dict)
    cache_write_failed: bool = False
