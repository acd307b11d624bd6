"""HTTP client for the tasksync server API.

This module provides:
- HTTPClient: HTTP client for the push/pull sync endpoints
- The client-side error hierarchy (APIError, AuthenticationError, NetworkError)
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

import httpx

from tasksync.core.config import SCHEMA_VERSION, ServerConfig

logger = logging.getLogger(__name__)


class APIError(Exception):
    """Base exception for API errors."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class AuthenticationError(APIError):
    """Authentication failed."""


class NetworkError(APIError):
    """The server could not be reached (connection failure or timeout)."""


@dataclass
class PullResult:
    """Result of a pull call.

    Attributes:
        changes: Table name -> list of wire changes.
        timestamp: Server clock (ms) to store as the new watermark.
    """

    changes: dict[str, list[dict[str, Any]]] = field(default_factory=dict)
    timestamp: int = 0

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PullResult:
        """Create from API response dictionary."""
        return cls(changes=data.get("changes") or {}, timestamp=int(data["timestamp"]))


class HTTPClient:
    """HTTP client for the tasksync sync API.

    Usage:
        with HTTPClient(ServerConfig(url, token)) as client:
            rejected = client.push(changes, last_pulled_at)
            result = client.pull(last_pulled_at)
    """

    def __init__(self, config: ServerConfig, http_client: httpx.Client | None = None) -> None:
        """Initialize the client.

        Args:
            config: Server URL, token and timeouts.
            http_client: Optional preconfigured httpx client (e.g. a test
                client bound to an app); it is not closed by ``close()``.
        """
        self._config = config
        self._headers = {"Authorization": f"Bearer {config.token}"}
        self._owns_client = http_client is None
        self._client = http_client or httpx.Client(
            base_url=config.server_url,
            timeout=config.timeout,
            verify=config.verify_ssl,
        )

    @property
    def config(self) -> ServerConfig:
        return self._config

    def close(self) -> None:
        """Close the HTTP client."""
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> HTTPClient:
        """Context manager entry."""
        return self

    def __exit__(self, *args: object) -> None:
        """Context manager exit."""
        self.close()

    def _post(self, path: str, body: dict[str, Any]) -> httpx.Response:
        try:
            response = self._client.post(path, json=body, headers=self._headers)
        except httpx.TransportError as e:
            raise NetworkError(f"Cannot reach server: {e}") from e
        return self._handle_response(response)

    def _handle_response(self, response: httpx.Response) -> httpx.Response:
        """Handle API response and raise appropriate exceptions."""
        if response.status_code == 401:
            raise AuthenticationError("Invalid or expired token", 401)
        if response.status_code >= 400:
            try:
                detail = response.json().get("detail", "Unknown error")
            except (ValueError, AttributeError):
                detail = response.text or "Unknown error"
            raise APIError(str(detail), response.status_code)
        return response

    def _json(self, response: httpx.Response) -> dict[str, Any]:
        """Decode a successful response body."""
        try:
            data = response.json()
        except ValueError as e:
            raise APIError("Invalid JSON in server response", response.status_code) from e
        if not isinstance(data, dict):
            raise APIError("Unexpected server response", response.status_code)
        return data

    # === Health check ===

    def health_check(self) -> bool:
        """Check if the server is healthy.

        Returns:
            True if server is healthy.
        """
        try:
            response = self._client.get("/health")
            return response.status_code == 200
        except httpx.TransportError:
            return False

    # === Sync operations ===

    def push(
        self,
        changes: Sequence[dict[str, Any]],
        last_pulled_at: int | None,
    ) -> list[str]:
        """Push local changes.

        Args:
            changes: Wire-format changes, in submission order.
            last_pulled_at: Current watermark (ms), or None before the first pull.

        Returns:
            Ids of the changes the server rejected.

        Raises:
            AuthenticationError: Token missing or invalid.
            NetworkError: Server unreachable.
            APIError: Any other server error.
        """
        response = self._post(
            "/api/sync/push",
            {"changes": list(changes), "lastPulledAt": last_pulled_at},
        )
        data = self._json(response) if response.content else {}
        rejected = [str(record_id) for record_id in data.get("experimentalRejectedIds") or []]
        logger.debug("Pushed %d changes, %d rejected", len(changes), len(rejected))
        return rejected

    def pull(
        self,
        last_pulled_at: int | None,
        schema_version: int = SCHEMA_VERSION,
        migration: dict[str, int] | None = None,
    ) -> PullResult:
        """Pull remote changes since the watermark.

        Args:
            last_pulled_at: Current watermark (ms), or None for a full pull.
            schema_version: Local schema version.
            migration: Optional ``{"from": ..., "to": ...}`` migration range.

        Returns:
            PullResult with the change map and the new watermark.

        Raises:
            AuthenticationError: Token missing or invalid.
            NetworkError: Server unreachable.
            APIError: Any other server error.
        """
        body: dict[str, Any] = {"lastPulledAt": last_pulled_at, "schemaVersion": schema_version}
        if migration is not None:
            body["migration"] = migration
        response = self._post("/api/sync/pull", body)
        try:
            result = PullResult.from_dict(self._json(response))
        except (KeyError, TypeError, ValueError) as e:
            raise APIError("Malformed pull response", response.status_code) from e
        logger.debug(
            "Pulled %d changes (timestamp %d)",
            sum(len(items) for items in result.changes.values()),
            result.timestamp,
        )
        return result
