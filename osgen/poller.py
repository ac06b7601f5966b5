"""Retry-until-terminal polling for a single workflow stage."""

import asyncio
import logging
from typing import Awaitable, Callable, Optional, TypeVar

from osgen.errors import RunCancelled, StageFailure

logger = logging.getLogger("osgen")

T = TypeVar("T")


class CancellationToken:
    """Cooperative cancellation flag that can also interrupt a pending wait."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason = "Run cancelled."

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def request_cancel(self, reason: Optional[str] = None) -> None:
        if reason:
            self.reason = reason
        self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise RunCancelled(self.reason)

    async def sleep(self, seconds: float) -> None:
        """Wait ``seconds``, raising :class:`RunCancelled` as soon as cancellation is requested."""
        self.raise_if_cancelled()
        if seconds <= 0:
            await asyncio.sleep(0)
        else:
            try:
                await asyncio.wait_for(self._event.wait(), timeout=seconds)
            except asyncio.TimeoutError:
                pass
        self.raise_if_cancelled()


async def poll_until(
    fetch_status: Callable[[], Awaitable[T]],
    is_success: Callable[[T], bool],
    is_failure: Callable[[T], bool],
    interval: float,
    on_progress: Callable[[T], None],
    cancel_token: Optional[CancellationToken] = None,
    phase_of: Callable[[T], Optional[str]] = lambda status: getattr(status, "phase", None),
) -> T:
    """Fetch status until ``is_success`` or ``is_failure`` holds.

    ``on_progress`` sees every observation, the first one included. There is
    no iteration cap: callers bound the wait through ``cancel_token``. An
    exception from ``fetch_status`` aborts the poll immediately.
    """
    token = cancel_token or CancellationToken()
    attempt = 0
    while True:
        token.raise_if_cancelled()
        status = await fetch_status()
        attempt += 1
        # The call may have been in flight when cancellation arrived; discard its result.
        token.raise_if_cancelled()
        on_progress(status)
        if is_success(status):
            logger.debug("Poll succeeded after %d attempt(s)", attempt)
            return status
        if is_failure(status):
            raise StageFailure(phase_of(status) or "unknown")
        await token.sleep(interval)
