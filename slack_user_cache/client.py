"""
Client interface for the Slack user cache.

Lets other services resolve Slack users through a running cache instead of
calling the Slack API themselves.
"""

import logging
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import httpx

logger = logging.getLogger(__name__)


class UserCacheClient:
    """HTTP client for a Slack user cache server."""

    def __init__(
        self,
        base_url: str = "http://localhost:3000",
        timeout: int = 30,
        transport: Optional[httpx.BaseTransport] = None
    ):
        """
        Initialize the cache client.

        Args:
            base_url: URL of the cache server
            timeout: Request timeout in seconds
            transport: Optional httpx transport, used by tests
        """
        self.base_url = base_url.rstrip("/")
        self.client = httpx.Client(timeout=timeout, transport=transport)

    def get_user_by_id(self, user_id: str) -> Optional[Dict[str, Any]]:
        """
        Look up a user by Slack ID.

        Returns:
            User record, or None if the ID is not in the cache

        Raises:
            httpx.HTTPError: If the cache is unreachable or not yet populated
        """
        return self._get_optional(f"/slack/user/id/{quote(user_id, safe='')}")

    def get_user_by_email(self, email: str) -> Optional[Dict[str, Any]]:
        """
        Look up a user by email (case-insensitive).

        Returns:
            User record, or None if no user has this email

        Raises:
            httpx.HTTPError: If the cache is unreachable or not yet populated
        """
        return self._get_optional(f"/slack/user/email/{quote(email, safe='@')}")

    def list_users(self) -> List[Dict[str, Any]]:
        """
        List every cached user.

        Raises:
            httpx.HTTPError: If the cache is unreachable or not yet populated
        """
        try:
            response = self.client.get(f"{self.base_url}/slack/users")
            response.raise_for_status()
            return response.json()["result"]
        except httpx.HTTPError as e:
            logger.error(f"Failed to list users: {e}")
            raise

    def get_cache_status(self) -> Dict[str, Any]:
        """
        Get the cache's refresh status.

        Returns:
            Status dictionary; an "unavailable" stub if the server can't be reached
        """
        try:
            response = self.client.get(f"{self.base_url}/status")
            response.raise_for_status()
            return response.json()["result"]
        except httpx.HTTPError:
            return {
                "status": "unavailable",
                "has_data": False,
                "error": "Cannot connect to user cache"
            }

    def force_refresh(self, wait: bool = False) -> Dict[str, Any]:
        """
        Ask the cache to refresh from Slack.

        Args:
            wait: Block until the refresh finishes

        Returns:
            Result with status "scheduled", "already_running" or "completed"
        """
        try:
            response = self.client.post(
                f"{self.base_url}/admin/refresh",
                params={"wait": "true" if wait else "false"}
            )
            response.raise_for_status()
            return response.json()["result"]
        except httpx.HTTPError as e:
            logger.error(f"Failed to force refresh: {e}")
            raise

    def _get_optional(self, path: str) -> Optional[Dict[str, Any]]:
        try:
            response = self.client.get(f"{self.base_url}{path}")
            if response.status_code == 404:
                return None
            response.raise_for_status()
            return response.json()["result"]
        except httpx.HTTPError as e:
            logger.error(f"User cache lookup {path} failed: {e}")
            raise

    def close(self):
        """Close the HTTP client."""
        self.client.close()

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.close()
