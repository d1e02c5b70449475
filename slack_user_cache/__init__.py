"""
Slack User Cache

In-memory caching proxy that mirrors the Slack workspace directory and
serves user lookups over HTTP.
"""

from .models import (
    UserRecord,
    UserGroup,
    Roster,
    RefreshError,
    CacheStatus,
    LookupStatus,
    LookupResult
)
from .store import Snapshot, UserStore
from .refresh import RefreshCoordinator
from .lookup import LookupService

__all__ = [
    'UserRecord',
    'UserGroup',
    'Roster',
    'RefreshError',
    'CacheStatus',
    'LookupStatus',
    'LookupResult',
    'Snapshot',
    'UserStore',
    'RefreshCoordinator',
    'LookupService'
]
