from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass

import redis

from loadouts import item_store
from loadouts.api.models import Loadout
from loadouts.config import Settings
from loadouts.fsm import EquipFSM
from loadouts.lock import CharacterBusy, character_lock, extend_lock
from loadouts.outcomes import (
    OperationOutcome,
    PlatformErrorCode,
    RemoteError,
    ServiceUnavailable,
    Success,
    Throttled,
    is_auth_failure,
    is_transient,
)
from loadouts.planner import TransferStep, plan_loadout, plan_store_in_vault
from loadouts.remote_client import InventoryApi
from loadouts.resolver import NotFound, ResolvedItem, resolve_all, snapshot_from_store
from loadouts.results import Busy, Cancelled, Committed, EquipResult, Failed, FailureKind
from loadouts.streams import publish_result
from loadouts.sync import reconcile

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    throttle_max_wait_seconds: float = 60.0
    max_throttle_retries: int = 5
    # Total calls, first one included.
    max_unavailable_attempts: int = 3
    backoff_base_seconds: float = 1.0

    @classmethod
    def from_settings(cls, settings: Settings) -> "RetryPolicy":
        return cls(
            throttle_max_wait_seconds=settings.throttle_max_wait_seconds,
            max_throttle_retries=settings.max_throttle_retries,
            max_unavailable_attempts=settings.max_unavailable_attempts,
            backoff_base_seconds=settings.backoff_base_seconds,
        )

    def backoff_for(self, attempt: int) -> float:
        return self.backoff_base_seconds * 2 ** (attempt - 1)


@dataclass(frozen=True, slots=True)
class _CallResult:
    # None only when the step never ran because the lock was lost.
    outcome: OperationOutcome | None
    # The caller asked to stop; `outcome` is whatever the last call returned.
    cancelled: bool = False
    lock_lost: bool = False


@dataclass(slots=True)
class _LockLease:
    """The character lock held by one attempt, kept alive until the attempt ends."""

    character_id: str
    token: str
    lost: bool = False


def _uncancel_current() -> None:
    task = asyncio.current_task()
    if task is not None:
        task.uncancel()


def _failure_for(outcome: OperationOutcome | None) -> tuple[FailureKind, str, int | None]:
    if isinstance(outcome, Throttled):
        return FailureKind.throttled, f"Still throttled after retries ({outcome.retry_after_seconds}s)", None
    if isinstance(outcome, ServiceUnavailable):
        return FailureKind.service_unavailable, outcome.message, None
    if isinstance(outcome, RemoteError):
        kind = FailureKind.authentication_failed if is_auth_failure(outcome) else FailureKind.remote_rejected
        return kind, outcome.message, outcome.code
    raise ValueError(f"Not a failure outcome: {outcome!r}")


class EquipOrchestrator:
    """Drives one loadout equip attempt from resolution to a terminal result.

    Flow per attempt:
    - take the per-character lock (a held lock yields `Busy` immediately)
    - resolve every item from the cached snapshot; any miss fails before any remote call
    - run the planned transfers strictly in order, retrying throttled and
      unavailable calls per `RetryPolicy`
    - issue one multi-item equip call
    - reconcile the cache with whatever actually happened, then report

    Nothing already applied is rolled back; partial progress is returned instead.
    """

    def __init__(
        self,
        *,
        r: redis.Redis,
        client: InventoryApi,
        policy: RetryPolicy | None = None,
        lock_ttl_ms: int = 600_000,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._r = r
        self._client = client
        self._policy = policy or RetryPolicy()
        self._lock_ttl_ms = lock_ttl_ms
        self._sleep = sleep

    async def equip(self, loadout: Loadout, *, cancel: asyncio.Event | None = None) -> EquipResult:
        return await self._locked(loadout, self._equip_locked, cancel)

    async def unequip_to_vault(self, loadout: Loadout, *, cancel: asyncio.Event | None = None) -> EquipResult:
        """Park every loadout item currently on the character in the vault."""

        return await self._locked(loadout, self._store_locked, cancel)

    async def _locked(
        self,
        loadout: Loadout,
        run: Callable[[Loadout, _LockLease, asyncio.Event | None], Awaitable[EquipResult]],
        cancel: asyncio.Event | None,
    ) -> EquipResult:
        lid = str(loadout.loadout_id)
        try:
            with character_lock(r=self._r, character_id=loadout.character_id, ttl_ms=self._lock_ttl_ms) as token:
                lease = _LockLease(character_id=loadout.character_id, token=token)
                keeper = asyncio.ensure_future(self._keep_alive(lease))
                try:
                    result = await run(loadout, lease, cancel)
                finally:
                    keeper.cancel()
                    await asyncio.wait({keeper})
        except CharacterBusy as e:
            logger.info("Rejecting attempt for loadout %s: %s", lid, e)
            result = Busy(loadout_id=lid, character_id=loadout.character_id, message=str(e))
        self._record(result)
        return result

    async def _keep_alive(self, lease: _LockLease) -> None:
        # Wall clock, not the injected sleep: the TTL runs on Redis time.
        interval = self._lock_ttl_ms / 3000
        while not lease.lost:
            await asyncio.sleep(interval)
            self._renew(lease)

    def _renew(self, lease: _LockLease) -> bool:
        if lease.lost:
            return False
        try:
            held = extend_lock(
                r=self._r, character_id=lease.character_id, token=lease.token, ttl_ms=self._lock_ttl_ms
            )
        except redis.RedisError as e:
            logger.warning("Could not extend lock on character %s: %s", lease.character_id, e)
            return True
        if not held:
            lease.lost = True
            logger.error("Lost the lock on character %s to another attempt", lease.character_id)
        return held

    def _record(self, result: EquipResult) -> None:
        try:
            publish_result(r=self._r, result=result)
        except redis.RedisError:
            logger.exception("Could not append equip log entry for character %s", result.character_id)

    # ---- phases ----

    async def _equip_locked(
        self, loadout: Loadout, lease: _LockLease, cancel: asyncio.Event | None
    ) -> EquipResult:
        cid = loadout.character_id
        fsm = EquipFSM(loadout_id=str(loadout.loadout_id), character_id=cid)
        applied: list[TransferStep] = []

        fsm.begin()
        resolved = self._resolve(fsm, loadout)
        if isinstance(resolved, Failed):
            return resolved

        plan = plan_loadout(resolved, cid)
        logger.info(
            "Loadout %s: %d transfer steps planned for %d items",
            loadout.loadout_id,
            len(plan.transfers),
            len(plan.equip.item_ids),
        )
        fsm.resolved()

        stopped = await self._run_transfers(fsm, loadout, plan.transfers, applied, lease, cancel)
        if stopped is not None:
            return stopped

        fsm.transferred()
        if self._stop_requested(cancel):
            return self._cancelled(fsm, loadout, applied)

        call = await self._execute(
            lambda: self._client.equip_items(item_ids=plan.equip.item_ids, character_id=cid),
            label=f"equip {len(plan.equip.item_ids)} items on {cid}",
            lease=lease,
            cancel=cancel,
        )
        if call.lock_lost:
            return self._lock_lost(fsm, loadout, applied)
        if not isinstance(call.outcome, Success):
            if call.cancelled:
                return self._cancelled(fsm, loadout, applied)
            return self._fail_with_outcome(fsm, loadout, applied, call.outcome)

        equip_results: dict[str, int] = dict(call.outcome.payload)
        not_equipped = [i for i in plan.equip.item_ids if equip_results.get(i) != PlatformErrorCode.success]
        if not_equipped:
            return self._fail(
                fsm,
                loadout,
                applied,
                cause=FailureKind.remote_rejected,
                message=f"{len(not_equipped)} of {len(plan.equip.item_ids)} items could not be equipped: "
                + ", ".join(not_equipped),
                equip_results=equip_results,
            )

        report = reconcile(r=self._r, character_id=cid, applied_steps=applied, equip_results=equip_results)
        cache_failed = report.cache_write_failed or not self._flag_loadout(loadout, equipped=True)
        fsm.equipped()
        return Committed(
            loadout_id=str(loadout.loadout_id),
            character_id=cid,
            applied_steps=tuple(applied),
            equip_results=equip_results,
            cache_write_failed=cache_failed,
        )

    async def _store_locked(
        self, loadout: Loadout, lease: _LockLease, cancel: asyncio.Event | None
    ) -> EquipResult:
        cid = loadout.character_id
        fsm = EquipFSM(loadout_id=str(loadout.loadout_id), character_id=cid)
        applied: list[TransferStep] = []

        fsm.begin()
        resolved = self._resolve(fsm, loadout)
        if isinstance(resolved, Failed):
            return resolved

        steps = plan_store_in_vault(resolved, cid)
        fsm.resolved()

        stopped = await self._run_transfers(fsm, loadout, steps, applied, lease, cancel)
        if stopped is not None:
            return stopped

        report = reconcile(r=self._r, character_id=cid, applied_steps=applied)
        cache_failed = report.cache_write_failed or not self._flag_loadout(loadout, equipped=False)
        fsm.stored()
        return Committed(
            loadout_id=str(loadout.loadout_id),
            character_id=cid,
            applied_steps=tuple(applied),
            cache_write_failed=cache_failed,
        )

    def _resolve(self, fsm: EquipFSM, loadout: Loadout) -> list[ResolvedItem] | Failed:
        snapshot = snapshot_from_store(r=self._r, target_character_id=loadout.character_id)
        resolved: list[ResolvedItem] = []
        for hit in resolve_all(loadout.item_ids, loadout.character_id, snapshot):
            if isinstance(hit, NotFound):
                return self._fail(
                    fsm,
                    loadout,
                    [],
                    cause=FailureKind.unresolved_item,
                    message=f"Item {hit.item_id} was not found in any known container",
                    unresolved_item_id=hit.item_id,
                )
            resolved.append(hit)
        return resolved

    async def _run_transfers(
        self,
        fsm: EquipFSM,
        loadout: Loadout,
        steps: Sequence[TransferStep],
        applied: list[TransferStep],
        lease: _LockLease,
        cancel: asyncio.Event | None,
    ) -> EquipResult | None:
        """Execute transfers in order; returns a terminal result if the run stopped early."""

        for idx, step in enumerate(steps):
            if self._stop_requested(cancel):
                return self._cancelled(fsm, loadout, applied)

            call = await self._execute(
                lambda step=step: self._client.move_item(
                    item_id=step.item_id,
                    item_hash=step.item_hash,
                    from_vault=step.from_vault,
                    character_id=step.character_id,
                ),
                label=f"step {idx} ({step.item_id}: {step.source.key} -> {step.destination.key})",
                lease=lease,
                cancel=cancel,
            )
            if call.lock_lost:
                return self._lock_lost(fsm, loadout, applied, step_index=idx)
            if isinstance(call.outcome, Success):
                applied.append(step)
                if call.cancelled:
                    return self._cancelled(fsm, loadout, applied)
                continue
            if call.cancelled:
                return self._cancelled(fsm, loadout, applied)
            return self._fail_with_outcome(fsm, loadout, applied, call.outcome, step_index=idx)
        return None

    # ---- remote calls ----

    async def _execute(
        self,
        make_call: Callable[[], Awaitable[OperationOutcome]],
        *,
        label: str,
        lease: _LockLease,
        cancel: asyncio.Event | None,
    ) -> _CallResult:
        """Run one remote step, retrying it in place while the outcome is transient."""

        throttled = 0
        unavailable = 0
        outcome: OperationOutcome | None = None
        while True:
            if not self._renew(lease):
                return _CallResult(outcome=outcome, lock_lost=True)

            outcome, interrupted = await self._invoke(make_call, label=label)
            if interrupted:
                return _CallResult(outcome=outcome, cancelled=True)
            if not is_transient(outcome):
                return _CallResult(outcome=outcome)

            if isinstance(outcome, Throttled):
                throttled += 1
                if throttled > self._policy.max_throttle_retries:
                    logger.warning("%s: throttle retry budget exhausted", label)
                    return _CallResult(outcome=outcome)
                delay = min(float(outcome.retry_after_seconds), self._policy.throttle_max_wait_seconds)
                logger.info("%s: throttled, waiting %.1fs before retrying", label, delay)
            else:
                unavailable += 1
                if unavailable >= self._policy.max_unavailable_attempts:
                    logger.warning("%s: service unavailable after %d attempts: %s", label, unavailable, outcome.message)
                    return _CallResult(outcome=outcome)
                delay = self._policy.backoff_for(unavailable)
                logger.info("%s: service unavailable (%s), backing off %.1fs", label, outcome.message, delay)

            if await self._wait(delay, cancel):
                return _CallResult(outcome=outcome, cancelled=True)

    async def _invoke(
        self, make_call: Callable[[], Awaitable[OperationOutcome]], *, label: str
    ) -> tuple[OperationOutcome, bool]:
        task = asyncio.ensure_future(self._guarded(make_call, label=label))
        try:
            return await asyncio.shield(task), False
        except asyncio.CancelledError:
            # The call may already have changed remote state; let it land and report it.
            logger.warning("Attempt cancelled during a remote call; waiting for it to finish")
            _uncancel_current()
            return await task, True

    @staticmethod
    async def _guarded(make_call: Callable[[], Awaitable[OperationOutcome]], *, label: str) -> OperationOutcome:
        """Await one remote call; anything it raises becomes a fatal `RemoteError`."""

        try:
            return await make_call()
        except Exception as e:
            logger.exception("%s raised unexpectedly", label)
            return RemoteError(code=PlatformErrorCode.unhandled_exception, message=f"Unexpected error: {e!r}")

    async def _wait(self, delay: float, cancel: asyncio.Event | None) -> bool:
        """Sleep for `delay`; True if the attempt should stop instead of retrying."""

        try:
            if cancel is None:
                await self._sleep(delay)
                return False
            if cancel.is_set():
                return True
            sleeper = asyncio.ensure_future(self._sleep(delay))
            stopper = asyncio.ensure_future(cancel.wait())
            try:
                await asyncio.wait({sleeper, stopper}, return_when=asyncio.FIRST_COMPLETED)
            finally:
                for t in (sleeper, stopper):
                    if not t.done():
                        t.cancel()
            return cancel.is_set()
        except asyncio.CancelledError:
            _uncancel_current()
            return True

    @staticmethod
    def _stop_requested(cancel: asyncio.Event | None) -> bool:
        return cancel is not None and cancel.is_set()

    # ---- terminal results ----

    def _flag_loadout(self, loadout: Loadout, *, equipped: bool) -> bool:
        try:
            item_store.set_loadout_equipped(r=self._r, loadout_id=loadout.loadout_id, equipped=equipped)
        except redis.RedisError as e:
            logger.error("Could not update equipped flag of loadout %s: %s", loadout.loadout_id, e)
            return False
        return True

    def _fail_with_outcome(
        self,
        fsm: EquipFSM,
        loadout: Loadout,
        applied: list[TransferStep],
        outcome: OperationOutcome | None,
        *,
        step_index: int | None = None,
    ) -> Failed:
        cause, message, code = _failure_for(outcome)
        return self._fail(
            fsm, loadout, applied, cause=cause, message=message, step_index=step_index, remote_code=code
        )

    def _lock_lost(
        self, fsm: EquipFSM, loadout: Loadout, applied: list[TransferStep], *, step_index: int | None = None
    ) -> Failed:
        return self._fail(
            fsm,
            loadout,
            applied,
            cause=FailureKind.busy,
            message=f"Lost the lock on character {loadout.character_id} to another attempt",
            step_index=step_index,
        )

    def _fail(
        self,
        fsm: EquipFSM,
        loadout: Loadout,
        applied: list[TransferStep],
        *,
        cause: FailureKind,
        message: str,
        step_index: int | None = None,
        remote_code: int | None = None,
        unresolved_item_id: str | None = None,
        equip_results: dict[str, int] | None = None,
    ) -> Failed:
        phase = fsm.phase
        report = reconcile(
            r=self._r, character_id=loadout.character_id, applied_steps=applied, equip_results=equip_results
        )
        fsm.fail()
        logger.warning("Loadout %s failed while %s: %s (%s)", loadout.loadout_id, phase.value, cause.value, message)
        return Failed(
            loadout_id=str(loadout.loadout_id),
            character_id=loadout.character_id,
            phase=phase,
            cause=cause,
            message=message,
            applied_steps=tuple(applied),
            step_index=step_index,
            unresolved_item_id=unresolved_item_id,
            remote_code=remote_code,
            equip_results=dict(equip_results or {}),
            cache_write_failed=report.cache_write_failed,
        )

    def _cancelled(self, fsm: EquipFSM, loadout: Loadout, applied: list[TransferStep]) -> Cancelled:
        phase = fsm.phase
        report = reconcile(r=self._r, character_id=loadout.character_id, applied_steps=applied)
        fsm.cancel()
        logger.info("Loadout %s cancelled while %s after %d steps", loadout.loadout_id, phase.value, len(applied))
        return Cancelled(
            loadout_id=str(loadout.loadout_id),
            character_id=loadout.character_id,
            phase=phase,
            applied_steps=tuple(applied),
            cache_write_failed=report.cache_write_failed,
        )
