"""Shared fixtures for user cache tests."""

import asyncio
from typing import Optional

import pytest

from slack_user_cache.models import Roster, UserGroup, UserRecord


def make_user(user_id: str, email: Optional[str] = None, name: Optional[str] = None, **extra) -> UserRecord:
    return UserRecord(
        id=user_id,
        display_name=name or f"User {user_id}",
        email=email,
        extra=extra
    )


class FakeUpstream:
    """
    Roster source returning queued results in order.

    Each queued item is a Roster, an exception to raise, or "hang" to block
    until cancelled. The last item repeats once the queue runs dry.
    """

    def __init__(self, *results):
        self.results = list(results)
        self.calls = 0
        self.gate: Optional[asyncio.Event] = None

    async def fetch_roster(self) -> Roster:
        self.calls += 1
        if self.gate is not None:
            await self.gate.wait()

        result = self.results.pop(0) if len(self.results) > 1 else self.results[0]
        if isinstance(result, BaseException):
            raise result
        if result == "hang":
            await asyncio.sleep(3600)
        return result


@pytest.fixture
def two_user_roster():
    """The U1/U2 roster used throughout the lookup scenarios."""
    return Roster(
        users=[
            make_user("U1", email="a@x.com"),
            make_user("U2", email="b@x.com"),
        ],
        groups=[
            UserGroup(id="S1", handle="oncall", name="On Call", users=("U1", "U2")),
        ]
    )


@pytest.fixture
def fake_upstream():
    return FakeUpstream


@pytest.fixture
def user_factory():
    return make_user
