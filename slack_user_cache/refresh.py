"""
Refresh coordinator.

Drives fetch-validate-publish cycles against the upstream directory. At most
one refresh attempt runs at a time; triggers that arrive while one is running
are dropped rather than queued. Failures never propagate: the last good
snapshot keeps being served and the next attempt is scheduled with
exponential backoff.
"""

import asyncio
import logging
import time
from contextlib import suppress
from typing import Optional, Protocol

from .errors import SnapshotValidationError, UpstreamTimeoutError, UserCacheError
from .models import RefreshError, Roster
from .store import Snapshot, UserStore
from .timezone_utils import utc_now

logger = logging.getLogger(__name__)


class RosterSource(Protocol):
    """Anything that can produce a complete roster (SlackDirectoryClient in production)."""

    async def fetch_roster(self) -> Roster:
        ...


class RefreshCoordinator:
    """Owns the refresh cycle for a UserStore."""

    def __init__(
        self,
        store: UserStore,
        upstream: RosterSource,
        refresh_interval: float = 300.0,
        refresh_timeout: float = 120.0,
        backoff_base: float = 5.0,
        backoff_max: float = 300.0
    ):
        """
        Initialize the coordinator.

        Args:
            store: Store that receives published snapshots
            upstream: Roster source
            refresh_interval: Seconds between refreshes while healthy
            refresh_timeout: Upper bound on a single refresh attempt
            backoff_base: First retry delay after a failure
            backoff_max: Retry delay ceiling
        """
        self.store = store
        self.upstream = upstream
        self.refresh_interval = refresh_interval
        self.refresh_timeout = refresh_timeout
        self.backoff_base = backoff_base
        self.backoff_max = max(backoff_max, backoff_base)

        self.attempts = 0
        self._refreshing = False
        self._consecutive_failures = 0
        self._wakeup = asyncio.Event()
        self._reschedule = asyncio.Event()
        self._pending_reason: Optional[str] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def refreshing(self) -> bool:
        return self._refreshing

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    @property
    def current_backoff(self) -> float:
        """Retry delay that applies after the current run of failures."""
        if self._consecutive_failures == 0:
            return self.backoff_base
        exponent = min(self._consecutive_failures - 1, 32)
        return min(self.backoff_base * (2 ** exponent), self.backoff_max)

    def next_delay(self) -> float:
        """Seconds the background loop sleeps before the next attempt."""
        if self._consecutive_failures:
            return self.current_backoff
        return self.refresh_interval

    # =================================================================
    # Triggers
    # =================================================================

    async def trigger_refresh(self, reason: str = "on-demand") -> bool:
        """
        Run one refresh attempt unless one is already in flight.

        Returns:
            True if an attempt ran, False if the call was coalesced
        """
        if self._refreshing:
            logger.debug(f"Refresh already running; dropping {reason} trigger")
            return False

        self._refreshing = True
        try:
            await self._attempt(reason)
        finally:
            self._refreshing = False
            # The loop recomputes its sleep after any attempt, including on-demand ones
            self._reschedule.set()
        return True

    def request_refresh(self, reason: str = "on-demand") -> bool:
        """
        Ask the background loop to refresh now, without waiting for it.

        Returns:
            False if a refresh is already running, True otherwise
        """
        if self._refreshing:
            return False

        if not self._wakeup.is_set():
            self._pending_reason = reason
            self._wakeup.set()
        return True

    # =================================================================
    # Refresh attempt
    # =================================================================

    async def _attempt(self, reason: str) -> None:
        self.attempts += 1
        self.store.record_attempt()
        started = time.monotonic()
        logger.info(f"Starting refresh ({reason})")

        try:
            roster = await asyncio.wait_for(self.upstream.fetch_roster(), timeout=self.refresh_timeout)
            snapshot = self._build_snapshot(roster)
            self.store.publish(snapshot)
        except asyncio.TimeoutError:
            self._record_failure(
                UpstreamTimeoutError(f"Refresh timed out after {self.refresh_timeout:g}s")
            )
        except UserCacheError as e:
            self._record_failure(e)
        except Exception as e:
            logger.error(f"Unexpected error during refresh: {e}", exc_info=True)
            self._record_failure(e)
        else:
            self._consecutive_failures = 0
            logger.info(
                f"Refresh ({reason}) completed in {time.monotonic() - started:.1f}s: "
                f"generation {snapshot.generation}, {len(snapshot)} users, {len(snapshot.groups)} groups"
            )

    def _build_snapshot(self, roster: Roster) -> Snapshot:
        """
        Validate a roster and turn it into the next snapshot.

        Raises:
            SnapshotValidationError: On duplicate IDs, or an empty roster
                replacing a non-empty one
        """
        current = self.store.current_snapshot()
        if not roster.users and current is not None and len(current) > 0:
            raise SnapshotValidationError(
                f"Upstream returned an empty roster while {len(current)} users are cached"
            )

        return Snapshot.build(
            roster.users,
            generation=self.store.next_generation(),
            groups=roster.groups
        )

    def _record_failure(self, error: Exception) -> None:
        kind = error.kind if isinstance(error, UserCacheError) else "network"
        self._consecutive_failures += 1
        self.store.record_failure(RefreshError(kind=kind, message=str(error), at=utc_now()))
        logger.error(
            f"Refresh failed ({kind}): {error}. Serving last good snapshot; "
            f"retrying in {self.current_backoff:g}s (failure {self._consecutive_failures})"
        )

    # =================================================================
    # Background loop
    # =================================================================

    async def run(self) -> None:
        """Refresh immediately, then on every interval or wakeup signal."""
        reason = "startup"
        while True:
            await self.trigger_refresh(reason)
            reason = await self._wait_for_next_cycle()

    async def _wait_for_next_cycle(self) -> str:
        """
        Sleep until the next attempt is due or a wakeup signal arrives.

        An on-demand attempt that finishes during the sleep restarts it with a
        fresh next_delay(), so a failure there schedules a backoff retry.
        """
        while True:
            self._reschedule.clear()
            wakeup = asyncio.create_task(self._wakeup.wait())
            reschedule = asyncio.create_task(self._reschedule.wait())
            try:
                done, _ = await asyncio.wait(
                    {wakeup, reschedule},
                    timeout=self.next_delay(),
                    return_when=asyncio.FIRST_COMPLETED
                )
            finally:
                wakeup.cancel()
                reschedule.cancel()

            if wakeup in done:
                break
            if reschedule not in done:
                return "retry" if self._consecutive_failures else "periodic"
            logger.debug(f"Rescheduling next refresh in {self.next_delay():g}s")

        reason = self._pending_reason or "on-demand"
        self._pending_reason = None
        self._wakeup.clear()
        return reason

    def start(self) -> asyncio.Task:
        """Start the background loop on the running event loop."""
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run(), name="user-cache-refresh")
            logger.info(
                f"Refresh loop started (interval {self.refresh_interval:g}s, "
                f"timeout {self.refresh_timeout:g}s)"
            )
        return self._task

    async def stop(self) -> None:
        """Cancel the background loop; an in-flight attempt publishes nothing."""
        if self._task is None:
            return

        self._task.cancel()
        with suppress(asyncio.CancelledError):
            await self._task
        self._task = None
        logger.info("Refresh loop stopped")
