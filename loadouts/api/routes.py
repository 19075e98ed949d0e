from __future__ import annotations

import logging
from uuid import UUID

import redis
from fastapi import APIRouter, Depends, HTTPException, Response, WebSocket, WebSocketDisconnect, status

from loadouts import item_store
from loadouts.api.deps import get_inventory_client, get_orchestrator, get_redis
from loadouts.api.models import (
    AppliedStep,
    CharacterListResponse,
    EquipResultResponse,
    Item,
    Loadout,
    LoadoutCreateRequest,
    LoadoutListResponse,
    LoadoutUpdateRequest,
    SyncResponse,
)
from loadouts.orchestrator import EquipOrchestrator
from loadouts.remote_client import InventoryClient
from loadouts.results import Busy, Cancelled, EquipResult, Failed, FailureKind, status_of
from loadouts.streams import EquipLog, read_log
from loadouts.sync import ResyncError, resync_from_remote
from loadouts.validation import validate_loadout_items
from loadouts.websocket_hub import hub

logger = logging.getLogger(__name__)

router = APIRouter()


def _result_response(result: EquipResult) -> EquipResultResponse:
    out = EquipResultResponse(
        status=status_of(result),
        loadout_id=UUID(result.loadout_id),
        character_id=result.character_id,
    )
    if isinstance(result, Busy):
        out.cause = FailureKind.busy.value
        out.message = result.message
        return out

    out.applied_steps = [
        AppliedStep(item_id=s.item_id, source=s.source.key, destination=s.destination.key) for s in result.applied_steps
    ]
    out.cache_write_failed = result.cache_write_failed
    if isinstance(result, Failed | Cancelled):
        out.phase = result.phase.value
    if isinstance(result, Cancelled):
        out.cause = FailureKind.cancelled.value
        return out
    out.equip_results = dict(result.equip_results)
    if isinstance(result, Failed):
        out.cause = result.cause.value
        out.message = result.message
        out.remote_code = result.remote_code
        out.step_index = result.step_index
        out.unresolved_item_id = result.unresolved_item_id
    return out


@router.websocket("/ws/character/{character_id}")
async def character_updates_ws(websocket: WebSocket, character_id: str) -> None:
    await hub.subscribe(character_id, websocket)

    try:
        # Keep the socket open; client can optionally send pings.
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        await hub.unsubscribe(character_id, websocket)
    except Exception:
        await hub.unsubscribe(character_id, websocket)
        raise


@router.get("/healthcheck")
async def healthcheck() -> dict[str, str]:
    return {"status": "ok"}


@router.post("/sync", response_model=SyncResponse)
async def sync_route(
    r: redis.Redis = Depends(get_redis),
    client: InventoryClient = Depends(get_inventory_client),
) -> SyncResponse:
    try:
        character_ids, count = await resync_from_remote(r=r, client=client)
    except ResyncError as e:
        logger.warning("%s", e)
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e)) from e
    return SyncResponse(character_ids=character_ids, item_count=count)


@router.get("/characters", response_model=CharacterListResponse)
async def list_characters_route(r: redis.Redis = Depends(get_redis)) -> CharacterListResponse:
    return CharacterListResponse(character_ids=item_store.get_character_ids(r=r))


@router.get("/items/{item_id}", response_model=Item)
async def get_item_route(item_id: str, r: redis.Redis = Depends(get_redis)) -> Item:
    item = item_store.get_item(r=r, item_id=item_id)
    if item is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Item not found")
    return item


@router.post("/loadouts", response_model=Loadout, status_code=status.HTTP_201_CREATED)
async def create_loadout_route(payload: LoadoutCreateRequest, r: redis.Redis = Depends(get_redis)) -> Loadout:
    try:
        validate_loadout_items(r=r, character_id=payload.character_id, item_ids=payload.item_ids)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e)) from e

    return item_store.create_loadout(
        r=r,
        name=payload.name,
        description=payload.description,
        character_id=payload.character_id,
        item_ids=payload.item_ids,
    )


@router.get("/loadouts/{loadout_id}", response_model=Loadout)
async def get_loadout_route(loadout_id: UUID, r: redis.Redis = Depends(get_redis)) -> Loadout:
    loadout = item_store.get_loadout(r=r, loadout_id=loadout_id)
    if loadout is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Loadout not found")
    return loadout


@router.put("/loadouts/{loadout_id}", response_model=Loadout)
async def update_loadout_route(
    loadout_id: UUID,
    payload: LoadoutUpdateRequest,
    r: redis.Redis = Depends(get_redis),
) -> Loadout:
    loadout = item_store.get_loadout(r=r, loadout_id=loadout_id)
    if loadout is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Loadout not found")

    if payload.item_ids is not None:
        try:
            validate_loadout_items(r=r, character_id=loadout.character_id, item_ids=payload.item_ids)
        except ValueError as e:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e)) from e
        loadout.item_ids = list(payload.item_ids)
    if payload.name is not None:
        loadout.name = payload.name
    if payload.description is not None:
        loadout.description = payload.description

    item_store.save_loadout(r=r, loadout=loadout)
    return loadout


@router.delete("/loadouts/{loadout_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_loadout_route(loadout_id: UUID, r: redis.Redis = Depends(get_redis)) -> Response:
    if not item_store.delete_loadout(r=r, loadout_id=loadout_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Loadout not found")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/characters/{character_id}/loadouts", response_model=LoadoutListResponse)
async def list_character_loadouts_route(character_id: str, r: redis.Redis = Depends(get_redis)) -> LoadoutListResponse:
    return LoadoutListResponse(loadouts=item_store.list_loadouts_for_character(r=r, character_id=character_id))


@router.post("/loadouts/{loadout_id}/equip", response_model=EquipResultResponse)
async def equip_loadout_route(
    loadout_id: UUID,
    response: Response,
    r: redis.Redis = Depends(get_redis),
    orchestrator: EquipOrchestrator = Depends(get_orchestrator),
) -> EquipResultResponse:
    try:
        loadout = item_store.require_loadout(r=r, loadout_id=loadout_id)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e)) from e

    result = await orchestrator.equip(loadout)
    if isinstance(result, Busy):
        response.status_code = status.HTTP_409_CONFLICT

    await hub.publish_result(result)
    return _result_response(result)


@router.post("/loadouts/{loadout_id}/unequip", response_model=EquipResultResponse)
async def unequip_loadout_route(
    loadout_id: UUID,
    response: Response,
    r: redis.Redis = Depends(get_redis),
    orchestrator: EquipOrchestrator = Depends(get_orchestrator),
) -> EquipResultResponse:
    try:
        loadout = item_store.require_loadout(r=r, loadout_id=loadout_id)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e)) from e

    result = await orchestrator.unequip_to_vault(loadout)
    if isinstance(result, Busy):
        response.status_code = status.HTTP_409_CONFLICT

    await hub.publish_result(result)
    return _result_response(result)


@router.get("/characters/{character_id}/equip-log")
async def get_equip_log_route(
    character_id: str,
    count: int = 20,
    r: redis.Redis = Depends(get_redis),
) -> dict[str, object]:
    """Debug endpoint: read a character's equip log Redis Stream, newest first."""

    if count < 1 or count > 200:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="count must be between 1 and 200")

    entries = read_log(r=r, character_id=character_id, count=count)
    return {
        "character_id": character_id,
        "stream": EquipLog(character_id=character_id).key,
        "entries": [{"id": eid, "fields": fields} for eid, fields in entries],
    }
