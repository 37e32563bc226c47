"""
Idempotency-Key slots: reservation, replay and release.
"""

import asyncio
import pytest

from backend.app.core.exceptions import IdempotencyInProgressError
from backend.app.services.idempotency import IN_PROGRESS, IdempotencyCache


def slot(redis, key="pay-91c2"):
    return IdempotencyCache(redis=redis, actor_id=7, route="POST:/v1/invoices/1/payments", key=key)


@pytest.mark.asyncio
async def test_concurrent_requests_with_one_key_get_one_reservation(redis_client_session):
    """Two requests racing on the same key: one runs, the other is told to wait."""
    first, second = slot(redis_client_session), slot(redis_client_session)

    outcomes = await asyncio.gather(first.reserve(), second.reserve(), return_exceptions=True)

    assert outcomes.count(None) == 1
    rejected = [outcome for outcome in outcomes if isinstance(outcome, Exception)]
    assert len(rejected) == 1
    assert isinstance(rejected[0], IdempotencyInProgressError)
    assert rejected[0].status_code == 409
    assert rejected[0].error_code == "ERR_STATE_IN_PROGRESS"
    assert [first.reserved, second.reserved].count(True) == 1


@pytest.mark.asyncio
async def test_finished_request_is_replayed(redis_client_session):
    first = slot(redis_client_session)
    assert await first.reserve() is None

    await first.store({"success": True, "data": {"payment_id": 12}})

    assert await slot(redis_client_session).reserve() == {"success": True, "data": {"payment_id": 12}}
    assert first.reserved is False


@pytest.mark.asyncio
async def test_released_slot_can_be_reserved_again(redis_client_session):
    first = slot(redis_client_session)
    await first.reserve()
    assert await redis_client_session.get(first.cache_key) == IN_PROGRESS

    await first.release()

    assert await redis_client_session.exists(first.cache_key) == 0
    retry = slot(redis_client_session)
    assert await retry.reserve() is None
    assert retry.reserved is True


@pytest.mark.asyncio
async def test_release_leaves_a_stored_response_alone(redis_client_session):
    first = slot(redis_client_session)
    await first.reserve()
    await first.store({"data": 1})

    await first.release()

    assert await slot(redis_client_session).reserve() == {"data": 1}


@pytest.mark.asyncio
async def test_requests_without_a_key_never_touch_redis(mocker):
    redis = mocker.AsyncMock()
    cache = slot(redis, key=None)

    assert await cache.reserve() is None
    await cache.store({"data": 1})
    await cache.release()

    redis.set.assert_not_called()
    redis.get.assert_not_called()
    redis.delete.assert_not_called()
