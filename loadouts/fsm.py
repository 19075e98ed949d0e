from __future__ import annotations

import logging
from enum import StrEnum

from statemachine import State, StateMachine

logger = logging.getLogger(__name__)


class EquipPhase(StrEnum):
    idle = "idle"
    resolving = "resolving"
    transferring = "transferring"
    equipping = "equipping"
    committed = "committed"
    failed = "failed"
    cancelled = "cancelled"


class EquipFSM(StateMachine):
    """Phases of one equip attempt.

    idle -> resolving -> transferring -> equipping -> committed, with a `fail`
    and a `cancel` branch out of every active phase. Vault-only runs (unequip)
    go straight from transferring to committed via `stored`.
    """

    idle = State(EquipPhase.idle.value, value=EquipPhase.idle.value, initial=True)
    resolving = State(EquipPhase.resolving.value, value=EquipPhase.resolving.value)
    transferring = State(EquipPhase.transferring.value, value=EquipPhase.transferring.value)
    equipping = State(EquipPhase.equipping.value, value=EquipPhase.equipping.value)
    committed = State(EquipPhase.committed.value, value=EquipPhase.committed.value, final=True)
    failed = State(EquipPhase.failed.value, value=EquipPhase.failed.value, final=True)
    cancelled = State(EquipPhase.cancelled.value, value=EquipPhase.cancelled.value, final=True)

    begin = idle.to(resolving)
    resolved = resolving.to(transferring)
    transferred = transferring.to(equipping)
    equipped = equipping.to(committed)
    stored = transferring.to(committed)
    fail = resolving.to(failed) | transferring.to(failed) | equipping.to(failed)
    cancel = resolving.to(cancelled) | transferring.to(cancelled) | equipping.to(cancelled)

    def __init__(self, *, loadout_id: str, character_id: str):
        self.loadout_id = loadout_id
        self.character_id = character_id
        super().__init__()

    @property
    def phase(self) -> EquipPhase:
        return EquipPhase(str(self.current_state.value))

    def after_transition(self, event: str, source: State, target: State) -> None:
        logger.info(
            "Loadout %s on character %s: %s -> %s (%s)",
            self.loadout_id,
            self.character_id,
            source.id,
            target.id,
            event,
        )
