"""
Read-facing lookup API.

Every operation reads the store's state exactly once, so a single call always
answers from one snapshot even if a refresh publishes concurrently.
"""

from typing import Optional

from .models import CacheStatus, LookupResult
from .refresh import RefreshCoordinator
from .store import UserStore
from .timezone_utils import utc_now


class LookupService:
    """Lookups by ID and email, roster listings, and cache status."""

    def __init__(self, store: UserStore, coordinator: Optional[RefreshCoordinator] = None):
        self.store = store
        self.coordinator = coordinator

    def get_by_id(self, user_id: str) -> LookupResult:
        snapshot = self.store.current_snapshot()
        if snapshot is None:
            return LookupResult.not_populated()

        user = snapshot.get_user(user_id)
        if user is None:
            return LookupResult.not_found(snapshot.generation)
        return LookupResult.hit(user, snapshot.generation)

    def get_by_email(self, email: str) -> LookupResult:
        """Case-insensitive lookup through the email index."""
        snapshot = self.store.current_snapshot()
        if snapshot is None:
            return LookupResult.not_populated()

        user = snapshot.get_user_by_email(email)
        if user is None:
            return LookupResult.not_found(snapshot.generation)
        return LookupResult.hit(user, snapshot.generation)

    def list_users(self) -> LookupResult:
        snapshot = self.store.current_snapshot()
        if snapshot is None:
            return LookupResult.not_populated()
        return LookupResult.hit(list(snapshot.users.values()), snapshot.generation)

    def list_user_groups(self) -> LookupResult:
        snapshot = self.store.current_snapshot()
        if snapshot is None:
            return LookupResult.not_populated()
        return LookupResult.hit(list(snapshot.groups.values()), snapshot.generation)

    def get_user_group(self, group_id: str) -> LookupResult:
        snapshot = self.store.current_snapshot()
        if snapshot is None:
            return LookupResult.not_populated()

        group = snapshot.get_group(group_id)
        if group is None:
            return LookupResult.not_found(snapshot.generation)
        return LookupResult.hit(group, snapshot.generation)

    def status(self) -> CacheStatus:
        """Snapshot generation, refresh timestamps and the last error."""
        state = self.store.state
        snapshot = state.snapshot

        status = CacheStatus(
            has_data=snapshot is not None,
            last_success_at=state.last_success_at,
            last_attempt_at=state.last_attempt_at,
            last_error=state.last_error,
        )
        if snapshot is not None:
            status.generation = snapshot.generation
            status.user_count = len(snapshot)
            status.group_count = len(snapshot.groups)
            status.built_at = snapshot.built_at
            status.staleness_seconds = (utc_now() - snapshot.built_at).total_seconds()
        if self.coordinator is not None:
            status.refreshing = self.coordinator.refreshing
            status.consecutive_failures = self.coordinator.consecutive_failures
        return status
