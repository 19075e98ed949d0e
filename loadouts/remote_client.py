from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from typing import Any, Protocol

import httpx

from loadouts.api.models import LOADOUT_BUCKETS, Character, Container, Item
from loadouts.config import Settings
from loadouts.outcomes import (
    Envelope,
    OperationOutcome,
    PlatformErrorCode,
    RemoteError,
    ServiceUnavailable,
    Success,
    classify_envelope,
)

logger = logging.getLogger(__name__)

TokenProvider = Callable[[], str | None]

# Profile component ids.
COMPONENT_CHARACTERS = "200"
COMPONENT_CHARACTER_INVENTORIES = "201"
COMPONENT_CHARACTER_EQUIPMENT = "205"
COMPONENT_PROFILE_INVENTORIES = "102"


class InventoryApi(Protocol):
    """What the orchestrator needs from the remote service."""

    async def move_item(
        self, *, item_id: str, item_hash: int, from_vault: bool, character_id: str
    ) -> OperationOutcome:  # pragma: no cover
        ...

    async def equip_items(self, *, item_ids: Sequence[str], character_id: str) -> OperationOutcome:  # pragma: no cover
        ...


def parse_items(raw_items: list[dict[str, Any]] | None, *, container: Container) -> list[Item]:
    """Turn platform item components into `Item`s, keeping weapon/armor instances only."""

    items: list[Item] = []
    for raw in raw_items or []:
        instance_id = raw.get("itemInstanceId")
        bucket_hash = int(raw.get("bucketHash", 0))
        if not instance_id or bucket_hash not in LOADOUT_BUCKETS:
            continue
        items.append(
            Item(
                item_id=str(instance_id),
                item_hash=int(raw["itemHash"]),
                bucket_hash=bucket_hash,
                container=container,
                transfer_status=int(raw.get("transferStatus", 0)),
                lockable=bool(raw.get("lockable", True)),
                state=int(raw.get("state", 0)),
            )
        )
    return items


def parse_equip_results(payload: Any, *, item_ids: Sequence[str]) -> dict[str, int]:
    """Map every requested item id to its per-item platform status.

    Items the platform did not report on are recorded as unhandled failures so a
    missing entry never reads as success.
    """

    if not isinstance(payload, dict):
        raise ValueError(f"equip response is not an object: {type(payload).__name__}")

    results: dict[str, int] = {item_id: int(PlatformErrorCode.unhandled_exception) for item_id in item_ids}
    for entry in payload.get("equipResults") or []:
        if not isinstance(entry, dict):
            raise ValueError(f"equip result entry is not an object: {entry!r}")
        item_id = str(entry.get("itemInstanceId"))
        if item_id in results:
            results[item_id] = int(entry.get("equipStatus", PlatformErrorCode.unhandled_exception))
    return results


def _map_success(outcome: OperationOutcome, parse: Callable[[Any], Any]) -> OperationOutcome:
    if not isinstance(outcome, Success):
        return outcome
    try:
        return Success(payload=parse(outcome.payload))
    except (AttributeError, KeyError, TypeError, ValueError) as e:
        logger.warning("Could not parse platform payload: %s", e)
        return RemoteError(code=PlatformErrorCode.unhandled_exception, message=f"Malformed response: {e}")


class InventoryClient:
    """Typed request functions against the platform's inventory endpoints.

    Each call returns an `OperationOutcome`; transport failures are reported as
    `ServiceUnavailable` and a missing bearer token as an auth `RemoteError`
    without touching the network.
    """

    def __init__(
        self,
        *,
        http: httpx.AsyncClient,
        api_key: str | None,
        membership_type: int,
        membership_id: str | None,
        token_provider: TokenProvider,
    ) -> None:
        self._http = http
        self._api_key = api_key
        self._membership_type = membership_type
        self._membership_id = membership_id
        self._token_provider = token_provider

    @classmethod
    def from_settings(
        cls,
        *,
        settings: Settings,
        token_provider: TokenProvider,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> "InventoryClient":
        http = httpx.AsyncClient(
            base_url=settings.base_url,
            timeout=settings.http_timeout_seconds,
            transport=transport,
        )
        return cls(
            http=http,
            api_key=settings.api_key,
            membership_type=settings.membership_type,
            membership_id=settings.membership_id,
            token_provider=token_provider,
        )

    async def aclose(self) -> None:
        await self._http.aclose()

    def _profile_path(self) -> str:
        return f"Destiny2/{self._membership_type}/Profile/{self._membership_id}/"

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, str] | None = None,
        json: dict[str, Any] | None = None,
    ) -> OperationOutcome:
        token = self._token_provider()
        if not token:
            return RemoteError(code=PlatformErrorCode.access_token_required, message="No access token available")

        headers = {"Authorization": f"Bearer {token}"}
        if self._api_key:
            headers["X-API-Key"] = self._api_key

        try:
            resp = await self._http.request(method, path, params=params, json=json, headers=headers)
        except httpx.TransportError as e:
            logger.warning("%s %s failed in transport: %r", method, path, e)
            return ServiceUnavailable(message=str(e) or type(e).__name__)

        try:
            envelope = Envelope.model_validate(resp.json())
        except ValueError:
            if resp.status_code >= 500:
                return ServiceUnavailable(message=f"HTTP {resp.status_code}")
            return RemoteError(
                code=PlatformErrorCode.unhandled_exception,
                message=f"Unexpected response (HTTP {resp.status_code})",
            )

        outcome = classify_envelope(envelope)
        logger.debug("%s %s -> %s", method, path, type(outcome).__name__)
        return outcome

    async def get_characters(self) -> OperationOutcome:
        outcome = await self._request("GET", self._profile_path(), params={"components": COMPONENT_CHARACTERS})

        def _parse(payload: Any) -> list[Character]:
            data = ((payload or {}).get("characters") or {}).get("data") or {}
            return [
                Character(
                    character_id=str(raw.get("characterId", cid)),
                    class_type=int(raw.get("classType", 0)),
                    light=int(raw.get("light", 0)),
                    date_last_played=raw.get("dateLastPlayed"),
                )
                for cid, raw in data.items()
            ]

        return _map_success(outcome, _parse)

    async def _get_items(
        self, path: str, *, component: str, field: str, container: Container
    ) -> OperationOutcome:
        outcome = await self._request("GET", path, params={"components": component})

        def _parse(payload: Any) -> list[Item]:
            data = ((payload or {}).get(field) or {}).get("data") or {}
            return parse_items(data.get("items"), container=container)

        return _map_success(outcome, _parse)

    async def get_equipment(self, character_id: str) -> OperationOutcome:
        return await self._get_items(
            f"{self._profile_path()}Character/{character_id}/",
            component=COMPONENT_CHARACTER_EQUIPMENT,
            field="equipment",
            container=Container.equipped_on(character_id),
        )

    async def get_inventory(self, character_id: str) -> OperationOutcome:
        return await self._get_items(
            f"{self._profile_path()}Character/{character_id}/",
            component=COMPONENT_CHARACTER_INVENTORIES,
            field="inventory",
            container=Container.inventory_of(character_id),
        )

    async def get_vault(self) -> OperationOutcome:
        return await self._get_items(
            self._profile_path(),
            component=COMPONENT_PROFILE_INVENTORIES,
            field="profileInventory",
            container=Container.vault(),
        )

    async def move_item(self, *, item_id: str, item_hash: int, from_vault: bool, character_id: str) -> OperationOutcome:
        """Move one item between a character and the vault.

        `character_id` is the source when moving into the vault and the
        destination when `from_vault` is set.
        """

        body = {
            "itemReferenceHash": item_hash,
            "stackSize": 1,
            "transferToVault": not from_vault,
            "itemId": item_id,
            "characterId": character_id,
            "membershipType": self._membership_type,
        }
        return await self._request("POST", "Destiny2/Actions/Items/TransferItem/", json=body)

    async def equip_items(self, *, item_ids: Sequence[str], character_id: str) -> OperationOutcome:
        body = {
            "itemIds": list(item_ids),
            "characterId": character_id,
            "membershipType": self._membership_type,
        }
        outcome = await self._request("POST", "Destiny2/Actions/Items/EquipItems/", json=body)
        return _map_success(outcome, lambda payload: parse_equip_results(payload, item_ids=item_ids))
