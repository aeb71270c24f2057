import asyncio

import pytest

from utils.lock_utils import ConversationLockManager


@pytest.mark.asyncio
async def test_same_conversation_is_serialized():
    manager = ConversationLockManager()
    order = []

    async def work(name):
        async with manager.lock("c1"):
            order.append(f"{name}-start")
            await asyncio.sleep(0.01)
            order.append(f"{name}-end")

    await asyncio.gather(work("a"), work("b"))

    assert order == ["a-start", "a-end", "b-start", "b-end"]


@pytest.mark.asyncio
async def test_different_conversations_run_in_parallel():
    manager = ConversationLockManager()
    both_inside = asyncio.Event()
    inside = []

    async def work(conversation_id):
        async with manager.lock(conversation_id):
            inside.append(conversation_id)
            if len(inside) == 2:
                both_inside.set()
            await asyncio.wait_for(both_inside.wait(), timeout=1)

    await asyncio.gather(work("c1"), work("c2"))

    assert sorted(inside) == ["c1", "c2"]


@pytest.mark.asyncio
async def test_locks_are_released_and_dropped():
    manager = ConversationLockManager()

    async with manager.lock("c1"):
        assert manager.is_locked("c1")
        assert manager.active_keys() == 1

    assert not manager.is_locked("c1")
    assert manager.active_keys() == 0


@pytest.mark.asyncio
async def test_lock_is_released_on_error():
    manager = ConversationLockManager()

    with pytest.raises(RuntimeError):
        async with manager.lock("c1"):
            raise RuntimeError("boom")

    assert manager.active_keys() == 0
