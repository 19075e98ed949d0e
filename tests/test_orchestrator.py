from __future__ import annotations

import asyncio

import fakeredis
import httpx
import pytest

from loadouts import item_store
from loadouts.api.models import Container, EquipmentBucket, Loadout
from loadouts.config import Settings
from loadouts.fsm import EquipPhase
from loadouts.lock import is_locked
from loadouts.orchestrator import EquipOrchestrator, RetryPolicy
from loadouts.outcomes import RemoteError, ServiceUnavailable, Success, Throttled
from loadouts.remote_client import InventoryClient
from loadouts.results import Busy, Cancelled, Committed, Failed, FailureKind
from loadouts.streams import read_log

K = EquipmentBucket.kinetic
E = EquipmentBucket.energy
H = EquipmentBucket.helmet


def _seed(r: fakeredis.FakeRedis, item_factory, placements) -> None:  # type: ignore[no-untyped-def]
    item_store.replace_snapshot(
        r=r,
        character_ids=["c1", "c2"],
        items=[item_factory(item_id, container, bucket) for item_id, container, bucket in placements],
    )


def _loadout(r: fakeredis.FakeRedis, item_ids: list[str], character_id: str = "c1") -> Loadout:
    return item_store.create_loadout(r=r, name="test", character_id=character_id, item_ids=item_ids)


def _where(r: fakeredis.FakeRedis, item_id: str) -> Container:
    item = item_store.get_item(r=r, item_id=item_id)
    assert item is not None
    return item.container


@pytest.mark.asyncio
async def test_equip_moves_through_vault_and_commits(r, fake_client, orchestrator, item_factory) -> None:  # type: ignore[no-untyped-def]
    _seed(
        r,
        item_factory,
        [
            ("A", Container.vault(), K),
            ("B", Container.inventory_of("c2"), E),
            ("C", Container.inventory_of("c1"), H),
        ],
    )
    lo = _loadout(r, ["A", "B", "C"])

    result = await orchestrator.equip(lo)

    assert isinstance(result, Committed)
    assert fake_client.move_calls == [
        ("move_item", "A", True, "c1"),
        ("move_item", "B", False, "c2"),
        ("move_item", "B", True, "c1"),
    ]
    assert fake_client.equip_calls == [("equip_items", ("A", "B", "C"), "c1")]
    assert [(s.item_id, s.destination) for s in result.applied_steps] == [
        ("A", Container.inventory_of("c1")),
        ("B", Container.vault()),
        ("B", Container.inventory_of("c1")),
    ]
    for item_id in ("A", "B", "C"):
        assert _where(r, item_id) == Container.equipped_on("c1")
    assert item_store.require_loadout(r=r, loadout_id=lo.loadout_id).is_equipped is True
    assert not is_locked(r=r, character_id="c1")

    [(_, fields)] = read_log(r=r, character_id="c1")
    assert fields["type"] == "equip_committed"
    assert fields["loadout_id"] == str(lo.loadout_id)


@pytest.mark.asyncio
async def test_items_already_on_target_only_equip(r, fake_client, orchestrator, item_factory) -> None:  # type: ignore[no-untyped-def]
    _seed(r, item_factory, [("A", Container.equipped_on("c1"), K), ("B", Container.inventory_of("c1"), E)])
    lo = _loadout(r, ["A", "B"])

    result = await orchestrator.equip(lo)

    assert isinstance(result, Committed)
    assert result.applied_steps == ()
    assert fake_client.move_calls == []
    assert len(fake_client.equip_calls) == 1


@pytest.mark.asyncio
async def test_throttled_step_waits_and_retries(r, fake_client, orchestrator, item_factory, sleeps) -> None:  # type: ignore[no-untyped-def]
    _seed(r, item_factory, [("A", Container.vault(), K)])
    fake_client.move_outcomes = [Throttled(retry_after_seconds=5)]

    result = await orchestrator.equip(_loadout(r, ["A"]))

    assert isinstance(result, Committed)
    assert len(fake_client.move_calls) == 2
    assert sleeps == [5.0]


@pytest.mark.asyncio
async def test_throttle_wait_is_capped(r, fake_client, orchestrator, item_factory, sleeps) -> None:  # type: ignore[no-untyped-def]
    _seed(r, item_factory, [("A", Container.vault(), K)])
    fake_client.move_outcomes = [Throttled(retry_after_seconds=600)]

    await orchestrator.equip(_loadout(r, ["A"]))

    assert sleeps == [60.0]


@pytest.mark.asyncio
async def test_throttle_budget_exhausted(r, fake_client, orchestrator, item_factory, sleeps) -> None:  # type: ignore[no-untyped-def]
    _seed(r, item_factory, [("A", Container.vault(), K)])
    fake_client.move_outcomes = [Throttled(retry_after_seconds=1)] * 6

    result = await orchestrator.equip(_loadout(r, ["A"]))

    assert isinstance(result, Failed)
    assert result.cause == FailureKind.throttled
    assert result.step_index == 0
    assert len(fake_client.move_calls) == 6
    assert len(sleeps) == 5
    assert fake_client.equip_calls == []


@pytest.mark.asyncio
async def test_unresolved_item_fails_before_any_remote_call(r, fake_client, orchestrator, item_factory) -> None:  # type: ignore[no-untyped-def]
    _seed(r, item_factory, [("A", Container.vault(), K)])
    lo = _loadout(r, ["A", "Z"])

    result = await orchestrator.equip(lo)

    assert isinstance(result, Failed)
    assert result.phase == EquipPhase.resolving
    assert result.cause == FailureKind.unresolved_item
    assert result.unresolved_item_id == "Z"
    assert result.applied_steps == ()
    assert fake_client.calls == []
    assert _where(r, "A") == Container.vault()


@pytest.mark.asyncio
async def test_remote_error_stops_at_failing_step(r, fake_client, orchestrator, item_factory) -> None:  # type: ignore[no-untyped-def]
    _seed(r, item_factory, [("A", Container.vault(), K), ("B", Container.vault(), E), ("C", Container.vault(), H)])
    fake_client.move_outcomes = [Success(), RemoteError(code=1642, message="DestinyNoRoomInDestination")]

    result = await orchestrator.equip(_loadout(r, ["A", "B", "C"]))

    assert isinstance(result, Failed)
    assert result.phase == EquipPhase.transferring
    assert result.cause == FailureKind.remote_rejected
    assert result.remote_code == 1642
    assert result.step_index == 1
    assert [s.item_id for s in result.applied_steps] == ["A"]
    # Fatal errors are not retried and nothing after the failing step runs.
    assert [c[1] for c in fake_client.move_calls] == ["A", "B"]
    assert fake_client.equip_calls == []
    assert _where(r, "A") == Container.inventory_of("c1")
    assert _where(r, "B") == Container.vault()
    assert _where(r, "C") == Container.vault()


@pytest.mark.asyncio
async def test_auth_error_is_reported_as_authentication_failure(r, fake_client, orchestrator, item_factory) -> None:  # type: ignore[no-untyped-def]
    _seed(r, item_factory, [("A", Container.vault(), K)])
    fake_client.move_outcomes = [RemoteError(code=2110, message="AccessTokenHasExpired")]

    result = await orchestrator.equip(_loadout(r, ["A"]))

    assert isinstance(result, Failed)
    assert result.cause == FailureKind.authentication_failed
    assert len(fake_client.move_calls) == 1


@pytest.mark.asyncio
async def test_service_unavailable_backs_off_then_gives_up(r, fake_client, orchestrator, item_factory, sleeps) -> None:  # type: ignore[no-untyped-def]
    _seed(r, item_factory, [("A", Container.vault(), K)])
    fake_client.move_outcomes = [ServiceUnavailable(message="maintenance")] * 3

    result = await orchestrator.equip(_loadout(r, ["A"]))

    assert isinstance(result, Failed)
    assert result.cause == FailureKind.service_unavailable
    assert len(fake_client.move_calls) == 3
    assert sleeps == [1.0, 2.0]


@pytest.mark.asyncio
async def test_service_unavailable_recovers(r, fake_client, orchestrator, item_factory, sleeps) -> None:  # type: ignore[no-untyped-def]
    _seed(r, item_factory, [("A", Container.vault(), K)])
    fake_client.move_outcomes = [ServiceUnavailable(message="blip")]

    result = await orchestrator.equip(_loadout(r, ["A"]))

    assert isinstance(result, Committed)
    assert sleeps == [1.0]


@pytest.mark.asyncio
async def test_partial_equip_reports_per_item_results(r, fake_client, orchestrator, item_factory) -> None:  # type: ignore[no-untyped-def]
    _seed(r, item_factory, [("A", Container.vault(), K), ("B", Container.vault(), E)])
    fake_client.equip_statuses = {"B": 1625}
    lo = _loadout(r, ["A", "B"])

    result = await orchestrator.equip(lo)

    assert isinstance(result, Failed)
    assert result.phase == EquipPhase.equipping
    assert result.cause == FailureKind.remote_rejected
    assert result.equip_results == {"A": 1, "B": 1625}
    assert len(result.applied_steps) == 2
    assert _where(r, "A") == Container.equipped_on("c1")
    assert _where(r, "B") == Container.inventory_of("c1")
    assert item_store.require_loadout(r=r, loadout_id=lo.loadout_id).is_equipped is False


@pytest.mark.asyncio
async def test_concurrent_attempt_on_same_character_is_busy(r, fake_client, orchestrator, item_factory) -> None:  # type: ignore[no-untyped-def]
    _seed(r, item_factory, [("A", Container.vault(), K), ("B", Container.vault(), E)])
    fake_client.gate = asyncio.Event()

    first = asyncio.create_task(orchestrator.equip(_loadout(r, ["A"])))
    await fake_client.entered.wait()

    second = await orchestrator.equip(_loadout(r, ["B"]))
    assert isinstance(second, Busy)

    fake_client.gate.set()
    assert isinstance(await first, Committed)
    # The rejected attempt made no remote calls of its own.
    assert [c[1] for c in fake_client.move_calls] == ["A"]
    assert not is_locked(r=r, character_id="c1")


@pytest.mark.asyncio
async def test_cancel_token_stops_before_next_step(r, fake_client, item_factory) -> None:  # type: ignore[no-untyped-def]
    _seed(r, item_factory, [("A", Container.vault(), K), ("B", Container.vault(), E)])
    cancel = asyncio.Event()

    async def _sleep(seconds: float) -> None:
        # The caller gives up while we wait out a throttle.
        cancel.set()

    orch = EquipOrchestrator(r=r, client=fake_client, policy=RetryPolicy(), sleep=_sleep)
    fake_client.move_outcomes = [Success(), Throttled(retry_after_seconds=5)]

    result = await orch.equip(_loadout(r, ["A", "B"]), cancel=cancel)

    assert isinstance(result, Cancelled)
    assert result.phase == EquipPhase.transferring
    assert [s.item_id for s in result.applied_steps] == ["A"]
    assert fake_client.equip_calls == []
    assert _where(r, "A") == Container.inventory_of("c1")
    assert _where(r, "B") == Container.vault()


@pytest.mark.asyncio
async def test_task_cancel_lets_in_flight_call_land(r, fake_client, orchestrator, item_factory) -> None:  # type: ignore[no-untyped-def]
    _seed(r, item_factory, [("A", Container.vault(), K), ("B", Container.vault(), E)])
    fake_client.gate = asyncio.Event()

    task = asyncio.create_task(orchestrator.equip(_loadout(r, ["A", "B"])))
    await fake_client.entered.wait()
    task.cancel()
    await asyncio.sleep(0)
    fake_client.gate.set()

    result = await task

    assert isinstance(result, Cancelled)
    assert [s.item_id for s in result.applied_steps] == ["A"]
    assert [c[1] for c in fake_client.move_calls] == ["A"]
    assert _where(r, "A") == Container.inventory_of("c1")
    assert not is_locked(r=r, character_id="c1")

    [(_, fields)] = read_log(r=r, character_id="c1")
    assert fields["type"] == "equip_cancelled"


@pytest.mark.asyncio
async def test_unequip_parks_items_in_vault(r, fake_client, orchestrator, item_factory) -> None:  # type: ignore[no-untyped-def]
    _seed(
        r,
        item_factory,
        [("A", Container.equipped_on("c1"), K), ("B", Container.inventory_of("c1"), E), ("C", Container.vault(), H)],
    )
    lo = _loadout(r, ["A", "B", "C"])
    item_store.set_loadout_equipped(r=r, loadout_id=lo.loadout_id, equipped=True)

    result = await orchestrator.unequip_to_vault(lo)

    assert isinstance(result, Committed)
    assert fake_client.move_calls == [("move_item", "A", False, "c1"), ("move_item", "B", False, "c1")]
    assert fake_client.equip_calls == []
    for item_id in ("A", "B", "C"):
        assert _where(r, item_id) == Container.vault()
    assert item_store.require_loadout(r=r, loadout_id=lo.loadout_id).is_equipped is False


@pytest.mark.asyncio
async def test_equipped_inventory_and_vault_items_commit(r, fake_client, orchestrator, item_factory, sleeps) -> None:  # type: ignore[no-untyped-def]
    _seed(
        r,
        item_factory,
        [("A", Container.equipped_on("c1"), K), ("B", Container.inventory_of("c1"), E), ("C", Container.vault(), H)],
    )

    result = await orchestrator.equip(_loadout(r, ["A", "B", "C"]))

    assert isinstance(result, Committed)
    assert fake_client.move_calls == [("move_item", "C", True, "c1")]
    assert [(s.item_id, s.source, s.destination) for s in result.applied_steps] == [
        ("C", Container.vault(), Container.inventory_of("c1"))
    ]
    assert fake_client.equip_calls == [("equip_items", ("A", "B", "C"), "c1")]
    assert sleeps == []
    for item_id in ("A", "B", "C"):
        assert _where(r, item_id) == Container.equipped_on("c1")


@pytest.mark.asyncio
async def test_equipped_inventory_and_vault_items_commit_after_throttle(r, fake_client, orchestrator, item_factory, sleeps) -> None:  # type: ignore[no-untyped-def]
    _seed(
        r,
        item_factory,
        [("A", Container.equipped_on("c1"), K), ("B", Container.inventory_of("c1"), E), ("C", Container.vault(), H)],
    )
    fake_client.move_outcomes = [Throttled(retry_after_seconds=5)]

    result = await orchestrator.equip(_loadout(r, ["A", "B", "C"]))

    assert isinstance(result, Committed)
    assert fake_client.move_calls == [("move_item", "C", True, "c1")] * 2
    assert sleeps == [5.0]
    assert len(result.applied_steps) == 1
    for item_id in ("A", "B", "C"):
        assert _where(r, item_id) == Container.equipped_on("c1")


@pytest.mark.asyncio
async def test_client_exception_becomes_failure_and_keeps_applied_steps(r, fake_client, orchestrator, item_factory) -> None:  # type: ignore[no-untyped-def]
    _seed(r, item_factory, [("A", Container.vault(), K)])

    async def _boom(*, item_ids, character_id):  # type: ignore[no-untyped-def]
        raise RuntimeError("token store unreachable")

    fake_client.equip_items = _boom

    result = await orchestrator.equip(_loadout(r, ["A"]))

    assert isinstance(result, Failed)
    assert result.phase == EquipPhase.equipping
    assert result.cause == FailureKind.remote_rejected
    assert result.remote_code == 3
    assert [s.item_id for s in result.applied_steps] == ["A"]
    assert _where(r, "A") == Container.inventory_of("c1")
    assert not is_locked(r=r, character_id="c1")

    [(_, fields)] = read_log(r=r, character_id="c1")
    assert fields["type"] == "equip_failed"


@pytest.mark.asyncio
async def test_malformed_equip_response_reconciles_completed_moves(r, fake_platform, item_factory) -> None:  # type: ignore[no-untyped-def]
    _seed(r, item_factory, [("A", Container.vault(), K)])
    fake_platform.add_item("A", Container.vault(), K)

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/Actions/Items/EquipItems/"):
            return httpx.Response(200, json={"ErrorCode": 1, "ThrottleSeconds": 0, "Response": ["x"]})
        return fake_platform.handler(request)

    settings = Settings(
        base_url="https://platform.test/Platform/",
        api_key="k",
        membership_type=fake_platform.membership_type,
        membership_id=fake_platform.membership_id,
    )
    client = InventoryClient.from_settings(
        settings=settings, token_provider=lambda: "tok", transport=httpx.MockTransport(handler)
    )
    try:
        result = await EquipOrchestrator(r=r, client=client).equip(_loadout(r, ["A"]))
    finally:
        await client.aclose()

    assert isinstance(result, Failed)
    assert result.phase == EquipPhase.equipping
    assert result.remote_code == 3
    assert fake_platform.container_of("A") == Container.inventory_of("c1")
    assert _where(r, "A") == Container.inventory_of("c1")


@pytest.mark.asyncio
async def test_lock_is_kept_alive_past_its_ttl(r, fake_client, item_factory) -> None:  # type: ignore[no-untyped-def]
    _seed(r, item_factory, [("A", Container.vault(), K), ("B", Container.vault(), E)])

    async def _slow_sleep(seconds: float) -> None:
        await asyncio.sleep(0.3)

    orch = EquipOrchestrator(r=r, client=fake_client, policy=RetryPolicy(), lock_ttl_ms=100, sleep=_slow_sleep)
    fake_client.move_outcomes = [Throttled(retry_after_seconds=1)]

    first = asyncio.create_task(orch.equip(_loadout(r, ["A"])))
    await fake_client.entered.wait()
    # Past the original TTL while the first attempt waits out the throttle.
    await asyncio.sleep(0.2)

    second = await orch.equip(_loadout(r, ["B"]))

    assert isinstance(second, Busy)
    assert isinstance(await first, Committed)
    assert [c[1] for c in fake_client.move_calls] == ["A", "A"]
    assert not is_locked(r=r, character_id="c1")


@pytest.mark.asyncio
async def test_attempt_stops_when_lock_is_taken_over(r, fake_client, orchestrator, item_factory) -> None:  # type: ignore[no-untyped-def]
    _seed(r, item_factory, [("A", Container.vault(), K)])
    fake_client.gate = asyncio.Event()
    fake_client.move_outcomes = [Throttled(retry_after_seconds=1)]

    task = asyncio.create_task(orchestrator.equip(_loadout(r, ["A"])))
    await fake_client.entered.wait()
    r.set("lock:character:c1", "another-attempt")
    fake_client.gate.set()

    result = await task

    assert isinstance(result, Failed)
    assert result.cause == FailureKind.busy
    assert result.step_index == 0
    assert result.applied_steps == ()
    assert len(fake_client.move_calls) == 1
    # The other holder's lock is left alone.
    assert r.get("lock:character:c1") == "another-attempt"
