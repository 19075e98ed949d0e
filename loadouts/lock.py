from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from uuid import uuid4

import redis

logger = logging.getLogger(__name__)


class CharacterBusy(ValueError):
    def __init__(self, character_id: str) -> None:
        super().__init__(f"Character {character_id} is busy")
        self.character_id = character_id


def _lock_key(character_id: str) -> str:
    return f"lock:character:{character_id}"


@contextmanager
def character_lock(*, r: redis.Redis, character_id: str, ttl_ms: int = 600_000) -> Iterator[str]:
    """Per-character exclusion for equip attempts.

    Never waits: a held lock raises `CharacterBusy` right away. Each holder gets
    a unique token and only deletes the key while it still holds that token, so
    a holder whose TTL lapsed cannot release someone else's lock.
    """

    key = _lock_key(character_id)
    token = uuid4().hex
    acquired = r.set(key, token, nx=True, px=ttl_ms)
    if not acquired:
        raise CharacterBusy(character_id)
    try:
        yield token
    finally:
        _release(r=r, key=key, token=token)


def _release(*, r: redis.Redis, key: str, token: str) -> None:
    with r.pipeline() as pipe:
        try:
            pipe.watch(key)
            if pipe.get(key) != token:
                logger.warning("Lock %s expired before release", key)
                pipe.unwatch()
                return
            pipe.multi()
            pipe.delete(key)
            pipe.execute()
        except redis.WatchError:
            logger.warning("Lock %s changed hands during release", key)


def extend_lock(*, r: redis.Redis, character_id: str, token: str, ttl_ms: int) -> bool:
    """Push the lock's expiry out by `ttl_ms` if `token` still holds it.

    A lock that lapsed with nobody else taking it is re-taken. Returns False
    once another holder owns the key.
    """

    key = _lock_key(character_id)
    with r.pipeline() as pipe:
        try:
            pipe.watch(key)
            current = pipe.get(key)
            if current is None:
                pipe.unwatch()
                return bool(r.set(key, token, nx=True, px=ttl_ms))
            if current != token:
                pipe.unwatch()
                return False
            pipe.multi()
            pipe.pexpire(key, ttl_ms)
            pipe.execute()
            return True
        except redis.WatchError:
            logger.warning("Lock %s changed hands during extend", key)
            return False


def is_locked(*, r: redis.Redis, character_id: str) -> bool:
    return bool(r.exists(_lock_key(character_id)))
