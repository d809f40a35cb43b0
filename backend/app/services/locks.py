import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict


class EnrollmentLocks:
    """
    One asyncio.Lock per enrollment id, created on demand and dropped when the
    last holder or waiter leaves. Different enrollments never contend.
    """

    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, enrollment_id: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(enrollment_id, asyncio.Lock())
        self._users[enrollment_id] = self._users.get(enrollment_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[enrollment_id] -= 1
            if self._users[enrollment_id] == 0:
                del self._users[enrollment_id]
                del self._locks[enrollment_id]

    def __len__(self) -> int:
        return len(self._locks)
