import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

class Outcome(str, Enum):
    RESULT = "result"
    ERROR = "error"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"


@dataclass
class Reply:
    """How an outstanding request ended."""

    unique_id: str
    outcome: Outcome
    payload: Dict[str, Any] = field(default_factory=dict)
    error_code: Optional[str] = None
    error_description: Optional[str] = None
    error_details: Any = None

    @property
    def ok(self) -> bool:
        return self.outcome is Outcome.RESULT


@dataclass
class PendingRequest:
    unique_id: str
    action: str
    future: asyncio.Future
    created_at: float = field(default_factory=time.monotonic)


class CorrelationTable:
    """Outstanding CALLs by unique id.

    Each entry is settled exactly once (result, error, timeout or
    cancellation) and removed in the same step.
    """

    def __init__(self, logger: Optional[logging.Logger] = None):
        self._pending: Dict[str, PendingRequest] = {}
        self._lock = asyncio.Lock()
        self.logger = logger or logging.getLogger(__name__)

    def __len__(self) -> int:
        return len(self._pending)

    def __contains__(self, unique_id: str) -> bool:
        return unique_id in self._pending

    async def register(self, unique_id: str, action: str) -> PendingRequest:
        async with self._lock:
            if unique_id in self._pending:
                raise ValueError(f"duplicate unique id {unique_id}")
            pending = PendingRequest(
                unique_id, action, asyncio.get_running_loop().create_future()
            )
            self._pending[unique_id] = pending
            return pending

    async def _settle(self, reply: Reply) -> bool:
        async with self._lock:
            pending = self._pending.pop(reply.unique_id, None)
        if pending is None:
            return False
        if not pending.future.done():
            pending.future.set_result(reply)
        return True

    async def resolve(self, unique_id: str, payload: Any) -> bool:
        if not isinstance(payload, dict):
            payload = {}
        settled = await self._settle(Reply(unique_id, Outcome.RESULT, payload=payload))
        if not settled:
            self.logger.info(f"Discarding CALLRESULT for unknown request {unique_id}")
        return settled

    async def reject(
        self, unique_id: str, code: str, description: str = "", details: Any = None
    ) -> bool:
        settled = await self._settle(
            Reply(
                unique_id,
                Outcome.ERROR,
                error_code=code,
                error_description=description,
                error_details=details,
            )
        )
        if not settled:
            self.logger.info(f"Discarding CALLERROR for unknown request {unique_id}")
        return settled

    async def cancel(self, unique_id: str) -> bool:
        return await self._settle(Reply(unique_id, Outcome.CANCELLED))

    async def cancel_all(self) -> int:
        async with self._lock:
            pending = list(self._pending.values())
            self._pending.clear()
        for entry in pending:
            if not entry.future.done():
                entry.future.set_result(Reply(entry.unique_id, Outcome.CANCELLED))
        if pending:
            self.logger.info(f"Cancelled {len(pending)} pending request(s)")
        return len(pending)

    async def wait(self, pending: PendingRequest, timeout: float) -> Reply:
        """Wait for the reply, or settle the entry as timed out."""
        try:
            return await asyncio.wait_for(asyncio.shield(pending.future), timeout)
        except asyncio.TimeoutError:
            await self._settle(Reply(pending.unique_id, Outcome.TIMEOUT))
            return pending.future.result()
        except asyncio.CancelledError:
            await self._settle(Reply(pending.unique_id, Outcome.CANCELLED))
            raise
