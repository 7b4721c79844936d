"""Per-loan mutual exclusion for state transitions"""

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict


class LoanLocks:
    """
    One asyncio.Lock per loan id, created on demand and dropped once no
    task holds or waits for it. Transitions on different loans never block
    each other.
    """

    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, loan_id: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(loan_id, asyncio.Lock())
        self._users[loan_id] = self._users.get(loan_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[loan_id] -= 1
            if self._users[loan_id] == 0:
                del self._users[loan_id]
                del self._locks[loan_id]

    def is_locked(self, loan_id: str) -> bool:
        lock = self._locks.get(loan_id)
        return lock is not None and lock.locked()

    def __len__(self) -> int:
        return len(self._locks)
