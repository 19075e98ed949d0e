from __future__ import annotations

import asyncio
import json
import os
from collections.abc import Sequence
from pathlib import Path
from typing import Any

import fakeredis
import httpx
import pytest

from loadouts.api.models import Container, EquipmentBucket, Item
from loadouts.outcomes import OperationOutcome, Success


@pytest.fixture(scope="session", autouse=True)
def _load_dotenv_for_tests() -> None:
    """Load repo .env for local runs (PyCharm/CLI).

    In CI we don't auto-load `.env` by default.
    Opt-in locally with: LOADOUTS_LOAD_DOTENV_FOR_TESTS=1
    """

    if os.environ.get("CI") and os.environ.get("LOADOUTS_LOAD_DOTENV_FOR_TESTS") != "1":
        return

    env_path = Path(__file__).resolve().parents[1] / ".env"
    if env_path.exists():
        from dotenv import load_dotenv

        load_dotenv(dotenv_path=env_path, override=False)


def make_item(item_id: str, container: Container, bucket: EquipmentBucket = EquipmentBucket.kinetic) -> Item:
    return Item(item_id=item_id, item_hash=1000 + len(item_id), bucket_hash=int(bucket), container=container)


class FakeInventoryClient:
    """Scripted stand-in for InventoryClient.

    Queued outcomes are returned in order; once a queue is empty every call
    succeeds. `equip_statuses` overrides the per-item status of a successful
    equip call. Set `gate` to hold move calls until the test releases it.
    """

    def __init__(self) -> None:
        self.calls: list[tuple[Any, ...]] = []
        self.move_outcomes: list[OperationOutcome] = []
        self.equip_outcomes: list[OperationOutcome] = []
        self.equip_statuses: dict[str, int] = {}
        self.gate: asyncio.Event | None = None
        self.entered = asyncio.Event()

    @property
    def move_calls(self) -> list[tuple[Any, ...]]:
        return [c for c in self.calls if c[0] == "move_item"]

    @property
    def equip_calls(self) -> list[tuple[Any, ...]]:
        return [c for c in self.calls if c[0] == "equip_items"]

    async def move_item(self, *, item_id: str, item_hash: int, from_vault: bool, character_id: str) -> OperationOutcome:
        self.calls.append(("move_item", item_id, from_vault, character_id))
        self.entered.set()
        if self.gate is not None:
            await self.gate.wait()
        if self.move_outcomes:
            return self.move_outcomes.pop(0)
        return Success(payload=0)

    async def equip_items(self, *, item_ids: Sequence[str], character_id: str) -> OperationOutcome:
        self.calls.append(("equip_items", tuple(item_ids), character_id))
        if self.equip_outcomes:
            return self.equip_outcomes.pop(0)
        return Success(payload={i: self.equip_statuses.get(i, 1) for i in item_ids})


class FakePlatform:
    """In-memory platform behind an httpx.MockTransport.

    Holds one account: characters, and raw item components per container key.
    Transfers and equips mutate that state the way the real service does.
    """

    def __init__(self, *, membership_type: int = 3, membership_id: str = "4611") -> None:
        self.membership_type = membership_type
        self.membership_id = membership_id
        self.character_ids: list[str] = []
        self.items: dict[str, dict[str, Any]] = {}
        self.placement: dict[str, str] = {}
        self.requests: list[httpx.Request] = []
        # Envelopes to return (in order) for the next POSTs instead of acting.
        self.scripted: list[dict[str, Any]] = []

    def add_item(self, item_id: str, container: Container, bucket: EquipmentBucket = EquipmentBucket.kinetic) -> None:
        self.items[item_id] = {
            "itemHash": 1000 + len(item_id),
            "itemInstanceId": item_id,
            "quantity": 1,
            "bucketHash": int(bucket),
            "transferStatus": 0,
            "lockable": True,
            "state": 0,
        }
        self.placement[item_id] = container.key

    def container_of(self, item_id: str) -> Container:
        return Container.from_key(self.placement[item_id])

    def _items_in(self, key: str) -> list[dict[str, Any]]:
        return [self.items[i] for i, k in self.placement.items() if k == key]

    @staticmethod
    def _ok(response: Any) -> httpx.Response:
        return httpx.Response(200, json={"Response": response, "ErrorCode": 1, "ThrottleSeconds": 0, "ErrorStatus": "Success"})

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if request.method == "POST" and self.scripted:
            return httpx.Response(200, json=self.scripted.pop(0))

        if path.endswith("/Actions/Items/TransferItem/"):
            body = json.loads(request.content)
            item_id = body["itemId"]
            cid = body["characterId"]
            if body["transferToVault"]:
                self.placement[item_id] = Container.vault().key
            else:
                self.placement[item_id] = Container.inventory_of(cid).key
            return self._ok(0)

        if path.endswith("/Actions/Items/EquipItems/"):
            body = json.loads(request.content)
            cid = body["characterId"]
            results = []
            for item_id in body["itemIds"]:
                if self.placement.get(item_id) not in {Container.inventory_of(cid).key, Container.equipped_on(cid).key}:
                    results.append({"itemInstanceId": item_id, "equipStatus": 1623})
                    continue
                bucket = self.items[item_id]["bucketHash"]
                for other, key in list(self.placement.items()):
                    if key == Container.equipped_on(cid).key and self.items[other]["bucketHash"] == bucket:
                        self.placement[other] = Container.inventory_of(cid).key
                self.placement[item_id] = Container.equipped_on(cid).key
                results.append({"itemInstanceId": item_id, "equipStatus": 1})
            return self._ok({"equipResults": results})

        components = request.url.params.get("components")
        if "/Character/" in path:
            cid = path.rstrip("/").split("/")[-1]
            if components == "205":
                return self._ok({"equipment": {"data": {"items": self._items_in(Container.equipped_on(cid).key)}}})
            return self._ok({"inventory": {"data": {"items": self._items_in(Container.inventory_of(cid).key)}}})

        if components == "200":
            data = {cid: {"characterId": cid, "classType": 0, "light": 1800} for cid in self.character_ids}
            return self._ok({"characters": {"data": data}})
        if components == "102":
            return self._ok({"profileInventory": {"data": {"items": self._items_in(Container.vault().key)}}})

        return httpx.Response(404, json={"ErrorCode": 4, "ErrorStatus": "NotFound", "ThrottleSeconds": 0})


@pytest.fixture()
def r() -> fakeredis.FakeRedis:
    return fakeredis.FakeRedis(decode_responses=True)


@pytest.fixture()
def fake_client() -> FakeInventoryClient:
    return FakeInventoryClient()


@pytest.fixture()
def fake_platform() -> FakePlatform:
    return FakePlatform()


@pytest.fixture()
def item_factory():
    return make_item


@pytest.fixture()
def sleeps() -> list[float]:
    return []


@pytest.fixture()
def orchestrator(r: fakeredis.FakeRedis, fake_client: FakeInventoryClient, sleeps: list[float]):
    from loadouts.orchestrator import EquipOrchestrator, RetryPolicy

    async def _sleep(seconds: float) -> None:
        sleeps.append(seconds)

    return EquipOrchestrator(r=r, client=fake_client, policy=RetryPolicy(), sleep=_sleep)


@pytest.fixture()
def client_and_redis(fake_platform: FakePlatform):
    """FastAPI TestClient wired to fakeredis and the in-memory platform."""

    from collections.abc import AsyncGenerator, Generator

    from fastapi.testclient import TestClient

    from loadouts.api.deps import get_inventory_client, get_redis, get_settings
    from loadouts.config import Settings
    from loadouts.main import app
    from loadouts.remote_client import InventoryClient

    r = fakeredis.FakeRedis(decode_responses=True)
    settings = Settings(
        base_url="https://platform.test/Platform/",
        api_key="test-key",
        membership_type=fake_platform.membership_type,
        membership_id=fake_platform.membership_id,
        backoff_base_seconds=0.0,
        throttle_max_wait_seconds=0.0,
    )

    def _redis_override() -> Generator[fakeredis.FakeRedis, None, None]:
        yield r

    async def _client_override() -> AsyncGenerator[InventoryClient, None]:
        client = InventoryClient.from_settings(
            settings=settings,
            token_provider=lambda: "test-token",
            transport=httpx.MockTransport(fake_platform.handler),
        )
        try:
            yield client
        finally:
            await client.aclose()

    app.dependency_overrides[get_redis] = _redis_override
    app.dependency_overrides[get_inventory_client] = _client_override
    app.dependency_overrides[get_settings] = lambda: settings
    with TestClient(app) as c:
        yield c, r
    app.dependency_overrides.clear()
