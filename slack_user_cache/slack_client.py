"""
Slack Web API adapter.

Pulls the complete member and user group rosters from Slack and normalizes
them into cache records. Either the whole roster is returned or an
UpstreamError is raised; a partial listing is never returned.
"""

import asyncio
import logging
import random
import time
from typing import Any, Dict, List, Optional, Tuple

import httpx

from .config import Settings
from .errors import (
    UpstreamAuthError,
    UpstreamError,
    UpstreamMalformedResponseError,
    UpstreamNetworkError,
    UpstreamRateLimitedError,
    UpstreamTimeoutError,
)
from .models import Roster, UserGroup, UserRecord
from .timezone_utils import parse_utc_time_string, utc_now

logger = logging.getLogger(__name__)

# Slack "error" codes meaning the token itself is unusable
AUTH_ERROR_CODES = frozenset({
    "not_authed",
    "invalid_auth",
    "account_inactive",
    "token_revoked",
    "token_expired",
    "no_permission",
    "missing_scope",
    "not_allowed_token_type",
    "ekm_access_denied",
})

MAX_RETRY_DELAY_SECONDS = 60.0


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """
    Parse a Retry-After header into seconds.

    Slack sends delta-seconds, but HTTP also allows an HTTP-date.

    Returns:
        Seconds to wait, or None if the header is missing or unparseable
    """
    if not value:
        return None

    try:
        return max(float(value), 0.0)
    except ValueError:
        pass

    try:
        when = parse_utc_time_string(value)
    except (ValueError, OverflowError):
        logger.debug(f"Ignoring unparseable Retry-After header: {value!r}")
        return None

    return max((when - utc_now()).total_seconds(), 0.0)


class SlackDirectoryClient:
    """
    Fetches the workspace directory from Slack.

    Pages through users.list using cursors, pacing requests to stay under the
    method's rate limit tier, and retries individual pages on rate limiting
    and transient failures.
    """

    def __init__(
        self,
        token: str,
        base_url: str = "https://slack.com/api",
        page_size: int = 200,
        page_interval: float = 6.0,
        page_jitter: float = 1.0,
        timeout: float = 30.0,
        max_retries: int = 3,
        retry_base_delay: float = 1.0,
        include_bots: bool = False,
        include_deleted: bool = False,
        fetch_user_groups: bool = True,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        """
        Initialize the Slack client.

        Args:
            token: Bot token with users:read, users:read.email and usergroups:read
            base_url: Slack Web API root
            page_size: Members requested per users.list page
            page_interval: Minimum seconds between requests
            page_jitter: Maximum random delay added when pacing
            timeout: Per-request timeout in seconds
            max_retries: Retries per request on rate limiting or transient errors
            retry_base_delay: First retry delay for transient errors
            include_bots: Keep bot and app users
            include_deleted: Keep deactivated members (served with is_active=False)
            fetch_user_groups: Also pull usergroups.list
            transport: Optional httpx transport, used by tests
        """
        self.page_size = page_size
        self.page_interval = page_interval
        self.page_jitter = page_jitter
        self.max_retries = max_retries
        self.retry_base_delay = retry_base_delay
        self.include_bots = include_bots
        self.include_deleted = include_deleted
        self.fetch_user_groups = fetch_user_groups
        self._last_request_at: Optional[float] = None
        self.client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=timeout,
            headers={"Authorization": f"Bearer {token}"},
            transport=transport
        )

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ) -> "SlackDirectoryClient":
        return cls(
            token=settings.slack_bot_token,
            base_url=settings.slack_api_url,
            page_size=settings.page_size,
            page_interval=settings.page_interval_seconds,
            timeout=settings.request_timeout_seconds,
            max_retries=settings.max_page_retries,
            include_bots=settings.include_bots,
            include_deleted=settings.include_deleted,
            fetch_user_groups=settings.fetch_user_groups,
            page_jitter=settings.page_jitter_seconds,
            transport=transport
        )

    # =================================================================
    # Roster
    # =================================================================

    async def fetch_roster(self) -> Roster:
        """
        Fetch every user (and user group) in the workspace.

        Raises:
            UpstreamError: If any page could not be fetched
        """
        users = await self.list_all_users()
        groups = await self.list_all_user_groups() if self.fetch_user_groups else []
        return Roster(users=users, groups=groups)

    async def list_all_users(self) -> List[UserRecord]:
        """Page through users.list until the cursor runs out."""
        logger.info("Fetching all users from Slack")

        users: List[UserRecord] = []
        cursor: Optional[str] = None
        seen_cursors = set()
        page_number = 0

        while True:
            params: Dict[str, Any] = {"limit": self.page_size}
            if cursor:
                params["cursor"] = cursor

            payload = await self._call("users.list", params)

            members = payload.get("members")
            if not isinstance(members, list):
                raise UpstreamMalformedResponseError(
                    f"users.list page {page_number} has no members list"
                )

            page_users = [
                user for user in (self._normalize_user(member) for member in members)
                if user is not None
            ]
            users.extend(page_users)
            logger.info(f"Fetched {len(page_users)} users from page {page_number}")

            page_number += 1
            cursor = (payload.get("response_metadata") or {}).get("next_cursor")
            if not cursor:
                break
            if cursor in seen_cursors:
                raise UpstreamMalformedResponseError(f"users.list repeated cursor {cursor!r}")
            seen_cursors.add(cursor)

        logger.info(f"Fetched {len(users)} users across {page_number} pages")
        return users

    async def list_all_user_groups(self) -> List[UserGroup]:
        """Fetch enabled user groups with their member IDs."""
        logger.info("Fetching all usergroups")

        payload = await self._call("usergroups.list", {
            "include_users": "true",
            "include_disabled": "false",
            "include_count": "false",
        })

        raw_groups = payload.get("usergroups")
        if not isinstance(raw_groups, list):
            raise UpstreamMalformedResponseError("usergroups.list response has no usergroups list")

        groups = []
        for raw in raw_groups:
            group = self._normalize_group(raw)
            if group is not None:
                groups.append(group)

        logger.info(f"Fetched {len(groups)} user groups")
        return groups

    # =================================================================
    # Normalization
    # =================================================================

    def _normalize_user(self, member: Any) -> Optional[UserRecord]:
        """Convert a users.list member to a UserRecord, or None to skip it."""
        if not isinstance(member, dict):
            logger.warning(f"Skipping non-object member: {member!r}")
            return None

        user_id = member.get("id")
        if not user_id:
            logger.warning("Skipping member with no user id")
            return None

        deleted = bool(member.get("deleted"))
        is_bot = bool(member.get("is_bot")) or bool(member.get("is_app_user"))
        if deleted and not self.include_deleted:
            return None
        if is_bot and not self.include_bots:
            return None

        profile = member.get("profile") or {}
        display_name = (
            profile.get("real_name")
            or member.get("real_name")
            or profile.get("display_name")
            or member.get("name")
        )
        if not display_name:
            logger.warning(f"{user_id}: no name, skipping")
            return None

        extra: Dict[str, str] = {}
        attributes = (
            ("real_name", profile.get("real_name")),
            ("display_name", profile.get("display_name")),
            ("title", profile.get("title")),
            ("avatar", profile.get("image_192") or profile.get("image_72")),
            ("tz", member.get("tz")),
            ("team_id", member.get("team_id") or profile.get("team")),
        )
        for key, value in attributes:
            if isinstance(value, str) and value:
                extra[key] = value
        extra["is_bot"] = "true" if is_bot else "false"

        logger.debug(f"Raw user data: {member}")

        return UserRecord(
            id=user_id,
            display_name=display_name,
            email=profile.get("email"),
            extra=extra,
            is_active=not deleted
        )

    def _normalize_group(self, raw: Any) -> Optional[UserGroup]:
        """Convert a usergroups.list entry to a UserGroup, or None to skip it."""
        if not isinstance(raw, dict) or not raw.get("id"):
            logger.warning(f"Skipping usergroup with no id: {raw!r}")
            return None

        group_id = raw["id"]
        if raw.get("date_delete"):
            logger.debug(f"Skipping disabled usergroup {group_id}")
            return None

        name = raw.get("name")
        if not name:
            logger.warning(f"No name for group {group_id}, skipping")
            return None

        return UserGroup(
            id=group_id,
            handle=raw.get("handle") or "",
            name=name,
            description=raw.get("description") or None,
            users=tuple(user_id for user_id in raw.get("users") or [] if user_id)
        )

    # =================================================================
    # Transport
    # =================================================================

    async def _call(self, method: str, params: Dict[str, Any]) -> Dict[str, Any]:
        """
        Call a Web API method, retrying rate limits and transient failures.

        Returns:
            Decoded payload with ok=true

        Raises:
            UpstreamError: When retries are exhausted or the error is permanent
        """
        attempt = 0

        while True:
            await self._wait_for_slot()

            error: UpstreamError
            try:
                response = await self.client.get(f"/{method}", params=params)
            except httpx.TimeoutException as e:
                error = UpstreamTimeoutError(f"{method} timed out: {e}")
            except httpx.HTTPError as e:
                error = UpstreamNetworkError(f"{method} request failed: {e}")
            else:
                error, payload = self._classify_response(method, response)
                if error is None:
                    return payload

            if isinstance(error, (UpstreamAuthError, UpstreamMalformedResponseError)):
                raise error

            if attempt >= self.max_retries:
                logger.error(f"{method} failed after {attempt + 1} attempts: {error}")
                raise error

            delay = self._retry_delay(error, attempt)
            attempt += 1
            logger.warning(f"{method} failed ({error}); retry {attempt}/{self.max_retries} in {delay:.1f}s")
            await asyncio.sleep(delay)

    def _classify_response(
        self,
        method: str,
        response: httpx.Response
    ) -> Tuple[Optional[UpstreamError], Dict[str, Any]]:
        """
        Map an HTTP response to an UpstreamError.

        Returns:
            (None, payload) on success, (error, {}) otherwise
        """
        status = response.status_code

        if status == 429:
            retry_after = parse_retry_after(response.headers.get("Retry-After"))
            return UpstreamRateLimitedError(f"{method} rate limited", retry_after=retry_after), {}

        if status in (401, 403):
            return UpstreamAuthError(f"{method} returned HTTP {status}"), {}

        if status >= 500:
            return UpstreamNetworkError(f"{method} returned HTTP {status}"), {}

        if status != 200:
            return UpstreamMalformedResponseError(f"{method} returned unexpected HTTP {status}"), {}

        payload = self._decode(method, response)
        if payload.get("ok"):
            return None, payload

        code = payload.get("error") or "unknown_error"
        if code in AUTH_ERROR_CODES:
            return UpstreamAuthError(f"{method} rejected the token: {code}"), {}
        if code == "ratelimited":
            retry_after = parse_retry_after(response.headers.get("Retry-After"))
            return UpstreamRateLimitedError(f"{method} rate limited", retry_after=retry_after), {}
        return UpstreamMalformedResponseError(f"{method} returned error: {code}"), {}

    def _decode(self, method: str, response: httpx.Response) -> Dict[str, Any]:
        try:
            payload = response.json()
        except ValueError as e:
            raise UpstreamMalformedResponseError(f"{method} returned invalid JSON: {e}") from e

        if not isinstance(payload, dict):
            raise UpstreamMalformedResponseError(f"{method} returned a non-object payload")
        return payload

    def _retry_delay(self, error: UpstreamError, attempt: int) -> float:
        if isinstance(error, UpstreamRateLimitedError) and error.retry_after is not None:
            return min(error.retry_after, MAX_RETRY_DELAY_SECONDS)
        return min(self.retry_base_delay * (2 ** attempt), MAX_RETRY_DELAY_SECONDS)

    async def _wait_for_slot(self) -> None:
        """Space requests at least page_interval apart, plus jitter."""
        if self.page_interval <= 0:
            return

        if self._last_request_at is not None:
            wait = self._last_request_at + self.page_interval - time.monotonic()
            if wait > 0:
                await asyncio.sleep(wait + random.uniform(0, self.page_jitter))

        self._last_request_at = time.monotonic()

    async def aclose(self):
        """Close the HTTP client."""
        await self.client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()
