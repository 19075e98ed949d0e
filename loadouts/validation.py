from __future__ import annotations

from abc import ABC, abstractmethod
from collections import Counter
from collections.abc import Mapping, Sequence
from dataclasses import dataclass

import redis

from loadouts import item_store
from loadouts.api.models import LOADOUT_BUCKETS, EquipmentBucket, Item


@dataclass(frozen=True, slots=True)
class ValidationContext:
    """Inputs available to validators.

    Keep this tight and serializable-ish so we can safely log it.
    """

    character_id: str
    item_ids: tuple[str, ...]
    # Cached records for the requested ids; unknown ids are absent.
    items: Mapping[str, Item]


class LoadoutValidator(ABC):
    """A small, composable check on the items picked for a loadout."""

    @abstractmethod
    def validate(self, *, ctx: ValidationContext) -> None:
        raise NotImplementedError


@dataclass(frozen=True, slots=True)
class NonEmptyValidator(LoadoutValidator):
    def validate(self, *, ctx: ValidationContext) -> None:
        if not ctx.item_ids:
            raise ValueError("A loadout needs at least one item")


@dataclass(frozen=True, slots=True)
class DuplicateItemValidator(LoadoutValidator):
    def validate(self, *, ctx: ValidationContext) -> None:
        dupes = sorted(i for i, n in Counter(ctx.item_ids).items() if n > 1)
        if dupes:
            raise ValueError(f"Duplicate items in loadout: {','.join(dupes)}")


@dataclass(frozen=True, slots=True)
class KnownItemValidator(LoadoutValidator):
    """Every item must be in the local cache; resync first if it is missing."""

    def validate(self, *, ctx: ValidationContext) -> None:
        missing = [i for i in ctx.item_ids if i not in ctx.items]
        if missing:
            raise ValueError(f"Unknown items (not in cache): {','.join(missing)}")


@dataclass(frozen=True, slots=True)
class BucketValidator(LoadoutValidator):
    """Only weapon/armor slots, and at most one item per slot."""

    allowed_buckets: frozenset[int] = LOADOUT_BUCKETS

    def validate(self, *, ctx: ValidationContext) -> None:
        by_bucket: dict[int, str] = {}
        for item_id in ctx.item_ids:
            item = ctx.items.get(item_id)
            if item is None:
                continue
            if item.bucket_hash not in self.allowed_buckets:
                raise ValueError(f"Item {item_id} is not in an equippable weapon/armor slot")
            if item.bucket_hash in by_bucket:
                slot = EquipmentBucket(item.bucket_hash).name
                raise ValueError(f"Items {by_bucket[item.bucket_hash]} and {item_id} both fill the {slot} slot")
            by_bucket[item.bucket_hash] = item_id


@dataclass(frozen=True, slots=True)
class ValidatorPipeline:
    validators: tuple[LoadoutValidator, ...]

    def validate(self, *, ctx: ValidationContext) -> None:
        for v in self.validators:
            v.validate(ctx=ctx)


DEFAULT_PIPELINE = ValidatorPipeline(
    validators=(
        NonEmptyValidator(),
        DuplicateItemValidator(),
        KnownItemValidator(),
        BucketValidator(),
    )
)


def validate_loadout_items(
    *,
    r: redis.Redis,
    character_id: str,
    item_ids: Sequence[str],
    pipeline: ValidatorPipeline = DEFAULT_PIPELINE,
) -> None:
    ctx = ValidationContext(
        character_id=character_id,
        item_ids=tuple(item_ids),
        items=item_store.get_items(r=r, item_ids=list(item_ids)),
    )
    pipeline.validate(ctx=ctx)
