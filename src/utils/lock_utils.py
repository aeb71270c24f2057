import asyncio
from contextlib import asynccontextmanager
from typing import Dict, AsyncIterator


class ConversationLockManager:
    """
    Keyed asyncio locks. Work for one conversation is serialized while different
    conversations proceed in parallel. Entries are dropped once nobody holds or
    waits on them.
    """

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._waiters: Dict[str, int] = {}

    @asynccontextmanager
    async def lock(self, conversation_id: str) -> AsyncIterator[None]:
        conversation_lock = self._locks.get(conversation_id)
        if conversation_lock is None:
            conversation_lock = asyncio.Lock()
            self._locks[conversation_id] = conversation_lock
        self._waiters[conversation_id] = self._waiters.get(conversation_id, 0) + 1
        try:
            async with conversation_lock:
                yield
        finally:
            self._waiters[conversation_id] -= 1
            if self._waiters[conversation_id] == 0:
                del self._waiters[conversation_id]
                del self._locks[conversation_id]

    def is_locked(self, conversation_id: str) -> bool:
        conversation_lock = self._locks.get(conversation_id)
        return conversation_lock is not None and conversation_lock.locked()

    def active_keys(self) -> int:
        return len(self._locks)
