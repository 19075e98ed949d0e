from __future__ import annotations

import asyncio
import logging
from collections import defaultdict

from fastapi import WebSocket

from loadouts.results import Busy, Cancelled, Committed, EquipResult, Failed, FailureKind, status_of

logger = logging.getLogger(__name__)


def event_for_result(result: EquipResult) -> dict[str, object]:
    """Small JSON event describing how an equip attempt ended."""

    event: dict[str, object] = {
        "type": "loadout_equip_finished",
        "character_id": result.character_id,
        "loadout_id": result.loadout_id,
        "status": status_of(result),
    }
    if isinstance(result, Committed | Failed | Cancelled):
        event["applied_steps"] = len(result.applied_steps)
    if isinstance(result, Failed):
        event["cause"] = result.cause.value
    elif isinstance(result, Cancelled):
        event["cause"] = FailureKind.cancelled.value
    elif isinstance(result, Busy):
        event["cause"] = FailureKind.busy.value
    return event


class CharacterWebSocketHub:
    """In-process WebSocket fan-out of equip events, keyed by character_id.

    Subscribers get a `subscribed` greeting once registered, then one
    `loadout_equip_finished` event per finished attempt on that character.
    Sockets that fail a send are dropped.

    Note: with multiple API replicas this should move to Redis pub/sub.
    """

    def __init__(self) -> None:
        self._by_character: dict[str, set[WebSocket]] = defaultdict(set)
        self._lock = asyncio.Lock()

    async def subscribe(self, character_id: str, websocket: WebSocket) -> None:
        await websocket.accept()
        async with self._lock:
            self._by_character[character_id].add(websocket)
        await websocket.send_json({"type": "subscribed", "character_id": character_id})

    async def unsubscribe(self, character_id: str, websocket: WebSocket) -> None:
        async with self._lock:
            conns = self._by_character.get(character_id)
            if not conns:
                return
            conns.discard(websocket)
            if not conns:
                self._by_character.pop(character_id, None)

    def subscriber_count(self, character_id: str) -> int:
        return len(self._by_character.get(character_id, ()))

    async def publish_result(self, result: EquipResult) -> int:
        """Send the result event to every subscriber of its character; returns how many got it."""

        cid = result.character_id
        async with self._lock:
            conns = list(self._by_character.get(cid, set()))
        if not conns:
            return 0

        event = event_for_result(result)
        dead: list[WebSocket] = []
        for ws in conns:
            try:
                await ws.send_json(event)
            except Exception as e:
                logger.info("Dropping websocket for character %s: %r", cid, e)
                dead.append(ws)

        if dead:
            async with self._lock:
                for ws in dead:
                    self._by_character.get(cid, set()).discard(ws)
        return len(conns) - len(dead)


hub = CharacterWebSocketHub()
