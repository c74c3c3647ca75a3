"""Single-slot approval handshake between the agent loop and the human.

The agent awaits request(); the UI side awaits wait_for_request(), shows the
request, and answers with resolve() or reject(). Only one request may be
outstanding at a time. The gate imposes no timeout: an unanswered request
suspends the turn until someone answers or the awaiting task is cancelled.

All methods must be called from the thread running the event loop.
"""

import asyncio
import logging

from .messages import ConfirmationRequest, ConfirmationResult
from .report import ConfirmationBusyError

logger = logging.getLogger(__name__)


class ConfirmationGate:
    def __init__(self):
        self._pending: tuple[ConfirmationRequest, asyncio.Future] | None = None
        self._waiters: list[asyncio.Future] = []

    @property
    def pending(self) -> ConfirmationRequest | None:
        return self._pending[0] if self._pending else None

    async def request(self, req: ConfirmationRequest) -> ConfirmationResult:
        """Publish req and suspend until the human answers it."""
        if self._pending is not None:
            raise ConfirmationBusyError(
                f"confirmation for {self._pending[0].target!r} is still outstanding"
            )
        fut = asyncio.get_running_loop().create_future()
        self._pending = (req, fut)
        for waiter in self._waiters:
            if not waiter.done():
                waiter.set_result(req)
        self._waiters.clear()
        logger.debug("confirmation requested: %s %s", req.operation, req.target)
        try:
            return await fut
        finally:
            # Frees the slot on cancellation too.
            if self._pending is not None and self._pending[1] is fut:
                self._pending = None

    async def wait_for_request(self) -> ConfirmationRequest:
        """Suspend until a request is outstanding, then return it."""
        if self._pending is not None:
            return self._pending[0]
        fut = asyncio.get_running_loop().create_future()
        self._waiters.append(fut)
        try:
            return await fut
        finally:
            if fut in self._waiters:
                self._waiters.remove(fut)

    def resolve(self, approved: bool = True, dont_ask_again: bool = False) -> bool:
        """Answer the outstanding request. No-op (returns False) if there is none."""
        return self._settle(
            ConfirmationResult(approved=approved, dont_ask_again=dont_ask_again)
        )

    def reject(self, feedback: str | None = None) -> bool:
        """Reject the outstanding request. No-op (returns False) if there is none."""
        return self._settle(ConfirmationResult(approved=False, feedback=feedback or None))

    def _settle(self, result: ConfirmationResult) -> bool:
        if self._pending is None:
            logger.debug("ignoring confirmation answer with nothing pending")
            return False
        _req, fut = self._pending
        self._pending = None
        if fut.done():
            return False
        fut.set_result(result)
        return True


_gate: ConfirmationGate | None = None


def get_gate() -> ConfirmationGate:
    """Return the process-wide gate."""
    global _gate
    if _gate is None:
        _gate = ConfirmationGate()
    return _gate
