from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Mapping, cast

import redis

from loadouts.results import Busy, Cancelled, EquipResult, Failed, status_of

# Keep the per-character history bounded.
EQUIP_LOG_MAXLEN = 500


@dataclass(frozen=True, slots=True)
class EquipLog:
    character_id: str

    @property
    def key(self) -> str:
        return f"equip-log:{self.character_id}"


def fields_for_result(result: EquipResult) -> dict[str, str]:
    fields = {
        "type": f"equip_{status_of(result)}",
        "loadout_id": result.loadout_id,
        "character_id": result.character_id,
        "ts": datetime.now(tz=UTC).isoformat(),
    }
    if isinstance(result, Busy):
        fields["message"] = result.message
        return fields

    fields["applied_steps"] = ",".join(
        f"{s.item_id}:{s.source.key}>{s.destination.key}" for s in result.applied_steps
    )
    fields["cache_write_failed"] = "1" if result.cache_write_failed else "0"
    if isinstance(result, Failed | Cancelled):
        fields["phase"] = result.phase.value
    if isinstance(result, Failed):
        fields["cause"] = result.cause.value
        fields["message"] = result.message
        if result.step_index is not None:
            fields["step_index"] = str(result.step_index)
        if result.unresolved_item_id:
            fields["unresolved_item_id"] = result.unresolved_item_id
    if not isinstance(result, Cancelled) and result.equip_results:
        fields["equip_results"] = ",".join(f"{k}={v}" for k, v in result.equip_results.items())
    return fields


def publish_to_log(*, r: redis.Redis, log: EquipLog, fields: Mapping[str, str]) -> str:
    """Append an entry to a character's equip log stream."""

    # redis-py stubs expect field/value unions; we only use string fields/values.
    stream_id = r.xadd(log.key, {str(k): str(v) for k, v in fields.items()}, maxlen=EQUIP_LOG_MAXLEN, approximate=True)
    return cast(str, stream_id)


def publish_result(*, r: redis.Redis, result: EquipResult) -> str:
    return publish_to_log(r=r, log=EquipLog(character_id=result.character_id), fields=fields_for_result(result))


def read_log(*, r: redis.Redis, character_id: str, count: int = 20) -> list[tuple[str, dict[str, str]]]:
    """Most recent entries first."""

    return list(r.xrevrange(EquipLog(character_id=character_id).key, count=count))
