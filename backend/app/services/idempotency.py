"""
Idempotency-Key replay cache using Redis.

A mutating request that carries an ``Idempotency-Key`` header has its first
successful response body stored under (actor, route, key). The slot is reserved
with SET NX before the operation runs, so a retry with the same triple either
gets the stored body back without touching the database, or a 409 while the
first request is still running.
"""

import json
import logging
from dataclasses import dataclass
from typing import Any, Optional

from fastapi import Depends, Header, Request
from fastapi.encoders import jsonable_encoder
from redis.exceptions import RedisError

from backend.app.core.config import settings
from backend.app.core.exceptions import IdempotencyInProgressError
from backend.app.core.guards import require_staff
from backend.app.core.redis_client import get_redis

logger = logging.getLogger("aeroledger.idempotency")

# Redis key prefix for stored responses
IDEMPOTENCY_PREFIX = "idempotency:"

# Slot value while the first request is still running
IN_PROGRESS = "__in_progress__"


def build_cache_key(actor_id: Any, route: str, key: str) -> str:
    return f"{IDEMPOTENCY_PREFIX}{actor_id}:{route}:{key}"


@dataclass
class IdempotencyCache:
    """Per-request handle bound to one Redis client and one cache slot."""
    redis: Any
    actor_id: Any
    route: str
    key: Optional[str]
    reserved: bool = False

    @property
    def enabled(self) -> bool:
        return bool(self.key)

    @property
    def cache_key(self) -> str:
        return build_cache_key(self.actor_id, self.route, self.key)

    async def reserve(self) -> Optional[dict]:
        """
        Claim the slot before the operation runs.

        Returns None when this request now owns the slot (or there is no
        key), the stored body when an earlier request already finished, and
        raises IdempotencyInProgressError while that request is still
        running. A Redis outage degrades to "no replay": the domain
        operations are themselves safe to retry.
        """
        if not self.enabled:
            return None
        try:
            claimed = await self.redis.set(
                self.cache_key, IN_PROGRESS, nx=True, ex=settings.idempotency_ttl_seconds
            )
            if claimed:
                self.reserved = True
                return None
            raw = await self.redis.get(self.cache_key)
        except (RedisError, OSError) as exc:
            logger.warning("Idempotency reservation failed for %s: %s", self.cache_key, exc)
            return None

        if isinstance(raw, bytes):
            raw = raw.decode()
        if raw is None:
            # Expired between SET and GET
            return None
        if raw == IN_PROGRESS:
            logger.warning("Concurrent retry rejected for %s", self.cache_key)
            raise IdempotencyInProgressError(self.key)

        logger.info("Replaying stored response for %s", self.cache_key)
        return json.loads(raw)

    async def store(self, body: Any) -> None:
        """Replace the reservation with the finished response body."""
        if not self.enabled:
            return
        payload = json.dumps(jsonable_encoder(body))
        try:
            await self.redis.set(self.cache_key, payload, ex=settings.idempotency_ttl_seconds)
            self.reserved = False
        except (RedisError, OSError) as exc:
            logger.warning("Idempotency store failed for %s: %s", self.cache_key, exc)
            await self.release()

    async def release(self) -> None:
        """Drop an unfinished reservation so the client can retry."""
        if not self.reserved:
            return
        self.reserved = False
        try:
            await self.redis.delete(self.cache_key)
        except (RedisError, OSError) as exc:
            logger.warning("Idempotency release failed for %s: %s", self.cache_key, exc)


async def idempotency_cache(
    request: Request,
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
    current_user: dict = Depends(require_staff),
    redis_conn=Depends(get_redis),
):
    """
    FastAPI dependency scoping the cache slot to the caller and the request path.

    A request that fails after reserving gives its slot back.
    """
    cache = IdempotencyCache(
        redis=redis_conn,
        actor_id=current_user.get("user_id"),
        route=f"{request.method}:{request.url.path}",
        key=idempotency_key,
    )
    try:
        yield cache
    except Exception:
        await cache.release()
        raise
