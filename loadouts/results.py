"""Terminal results of an equip attempt.

Callers get exactly one of `Committed`, `Failed`, `Cancelled` or `Busy` back;
partial progress (the applied steps) travels with every non-busy result.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum

from loadouts.fsm import EquipPhase
from loadouts.planner import TransferStep


class FailureKind(StrEnum):
    unresolved_item = "unresolved_item"
    remote_rejected = "remote_rejected"
    authentication_failed = "authentication_failed"
    throttled = "throttled"
    service_unavailable = "service_unavailable"
    cancelled = "cancelled"
    busy = "busy"


@dataclass(frozen=True, slots=True)
class Committed:
    loadout_id: str
    character_id: str
    applied_steps: tuple[TransferStep, ...] = ()
    equip_results: dict[str, int] = field(default_factory=dict)
    cache_write_failed: bool = False


@dataclass(frozen=True, slots=True)
class Failed:
    loadout_id: str
    character_id: str
    phase: EquipPhase
    cause: FailureKind
    message: str
    applied_steps: tuple[TransferStep, ...] = ()
    # Index into the planned transfers of the step that failed.
    step_index: int | None = None
    unresolved_item_id: str | None = None
    remote_code: int | None = None
    equip_results: dict[str, int] = field(default_factory=dict)
    cache_write_failed: bool = False


@dataclass(frozen=True, slots=True)
class Cancelled:
    loadout_id: str
    character_id: str
    phase: EquipPhase
    applied_steps: tuple[TransferStep, ...] = ()
    cache_write_failed: bool = False


@dataclass(frozen=True, slots=True)
class Busy:
    loadout_id: str
    character_id: str
    message: str


EquipResult = Committed | Failed | Cancelled | Busy


def status_of(result: EquipResult) -> str:
    if isinstance(result, Committed):
        return "committed"
    if isinstance(result, Failed):
        return "failed"
    if isinstance(result, Cancelled):
        return "cancelled"
    return "busy"
