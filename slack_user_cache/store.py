"""
In-memory user store.

Holds the currently published snapshot and the refresh status bundle as one
immutable CacheState. Writers replace the whole state under a lock; readers
take a single reference and never lock.
"""

import logging
import threading
from dataclasses import dataclass, replace
from datetime import datetime
from types import MappingProxyType
from typing import Dict, Iterable, Mapping, Optional

from .errors import SnapshotValidationError
from .models import RefreshError, UserGroup, UserRecord, normalize_email
from .timezone_utils import utc_now

logger = logging.getLogger(__name__)


class Snapshot:
    """
    Immutable, complete point-in-time view of the roster.

    Build with Snapshot.build(); the constructor does no validation.
    """

    __slots__ = ("_users", "_emails", "_groups", "_generation", "_built_at")

    def __init__(
        self,
        users: Mapping[str, UserRecord],
        emails: Mapping[str, str],
        groups: Mapping[str, UserGroup],
        generation: int,
        built_at: datetime
    ):
        self._users = MappingProxyType(dict(users))
        self._emails = MappingProxyType(dict(emails))
        self._groups = MappingProxyType(dict(groups))
        self._generation = generation
        self._built_at = built_at

    @classmethod
    def build(
        cls,
        users: Iterable[UserRecord],
        generation: int,
        groups: Iterable[UserGroup] = (),
        built_at: Optional[datetime] = None
    ) -> "Snapshot":
        """
        Build a snapshot from one full upstream pull.

        Args:
            users: Every user from the pull
            generation: Generation number for the new snapshot
            groups: Every user group from the pull
            built_at: Build time, defaults to now

        Returns:
            The new snapshot

        Raises:
            SnapshotValidationError: If a user or group ID appears twice
        """
        by_id: Dict[str, UserRecord] = {}
        by_email: Dict[str, str] = {}

        for user in users:
            if user.id in by_id:
                raise SnapshotValidationError(f"Duplicate user id in roster: {user.id}")
            by_id[user.id] = user

            if not user.email:
                continue
            key = normalize_email(user.email)
            if key in by_email:
                logger.warning(
                    f"Email {key} shared by {by_email[key]} and {user.id}; keeping {by_email[key]}"
                )
                continue
            by_email[key] = user.id

        by_group: Dict[str, UserGroup] = {}
        for group in groups:
            if group.id in by_group:
                raise SnapshotValidationError(f"Duplicate user group id in roster: {group.id}")
            by_group[group.id] = group

        return cls(by_id, by_email, by_group, generation, built_at or utc_now())

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def built_at(self) -> datetime:
        return self._built_at

    @property
    def users(self) -> Mapping[str, UserRecord]:
        return self._users

    @property
    def email_index(self) -> Mapping[str, str]:
        return self._emails

    @property
    def groups(self) -> Mapping[str, UserGroup]:
        return self._groups

    def get_user(self, user_id: str) -> Optional[UserRecord]:
        return self._users.get(user_id)

    def get_user_by_email(self, email: str) -> Optional[UserRecord]:
        user_id = self._emails.get(normalize_email(email))
        if user_id is None:
            return None
        return self._users[user_id]

    def get_group(self, group_id: str) -> Optional[UserGroup]:
        return self._groups.get(group_id)

    def __len__(self) -> int:
        return len(self._users)

    def __repr__(self) -> str:
        return f"Snapshot(generation={self.generation}, users={len(self._users)}, groups={len(self._groups)})"


@dataclass(frozen=True)
class CacheState:
    """Everything readers can see, swapped as one reference."""
    snapshot: Optional[Snapshot] = None
    last_success_at: Optional[datetime] = None
    last_attempt_at: Optional[datetime] = None
    last_error: Optional[RefreshError] = None


class UserStore:
    """Process-wide holder of the published snapshot and refresh status."""

    def __init__(self):
        self._state = CacheState()
        self._write_lock = threading.Lock()

    @property
    def state(self) -> CacheState:
        """Current state; callers should read it once per operation."""
        return self._state

    def current_snapshot(self) -> Optional[Snapshot]:
        """Published snapshot, or None if no refresh has succeeded yet."""
        return self._state.snapshot

    def next_generation(self) -> int:
        snapshot = self._state.snapshot
        return snapshot.generation + 1 if snapshot else 1

    def publish(self, snapshot: Snapshot) -> None:
        """
        Replace the published snapshot.

        Also records the success time and clears the last error.

        Raises:
            SnapshotValidationError: If the generation does not advance
        """
        with self._write_lock:
            current = self._state.snapshot
            if current is not None and snapshot.generation <= current.generation:
                raise SnapshotValidationError(
                    f"Snapshot generation {snapshot.generation} does not advance past {current.generation}"
                )
            self._state = replace(
                self._state,
                snapshot=snapshot,
                last_success_at=utc_now(),
                last_error=None
            )
        logger.info(f"Published {snapshot!r}")

    def record_attempt(self) -> datetime:
        """Mark the start of a refresh attempt."""
        now = utc_now()
        with self._write_lock:
            self._state = replace(self._state, last_attempt_at=now)
        return now

    def record_failure(self, error: RefreshError) -> None:
        """Record a failed attempt; the published snapshot is untouched."""
        with self._write_lock:
            self._state = replace(self._state, last_error=error)
