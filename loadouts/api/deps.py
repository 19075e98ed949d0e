from __future__ import annotations

from collections.abc import AsyncGenerator, Generator

import redis
from fastapi import Depends

from loadouts.config import Settings, env_token_provider, settings_from_env
from loadouts.infra.redis_client import create_redis
from loadouts.orchestrator import EquipOrchestrator, RetryPolicy
from loadouts.remote_client import InventoryClient


def get_redis() -> Generator[redis.Redis, None, None]:
    client = create_redis()
    try:
        yield client
    finally:
        client.close()


def get_settings() -> Settings:
    return settings_from_env()


async def get_inventory_client(
    settings: Settings = Depends(get_settings),
) -> AsyncGenerator[InventoryClient, None]:
    client = InventoryClient.from_settings(settings=settings, token_provider=env_token_provider())
    try:
        yield client
    finally:
        await client.aclose()


def get_orchestrator(
    r: redis.Redis = Depends(get_redis),
    client: InventoryClient = Depends(get_inventory_client),
    settings: Settings = Depends(get_settings),
) -> EquipOrchestrator:
    return EquipOrchestrator(
        r=r,
        client=client,
        policy=RetryPolicy.from_settings(settings),
        lock_ttl_ms=settings.lock_ttl_ms,
    )
