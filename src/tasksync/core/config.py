"""Shared configuration classes for tasksync.

This module defines configuration classes used by both client and server components.
"""

from __future__ import annotations

from dataclasses import dataclass

# Version of the local schema the client announces on pull
SCHEMA_VERSION = 1


@dataclass
class ServerConfig:
    """Configuration for connecting to a tasksync server.

    Attributes:
        server_url: Base URL of the server (e.g., "https://sync.example.com").
        token: Bearer token resolving to the signed-in user.
        timeout: Request timeout in seconds.
        verify_ssl: Whether to verify SSL certificates (default True).
    """

    server_url: str
    token: str
    timeout: float = 30.0
    verify_ssl: bool = True

    def __post_init__(self) -> None:
        """Normalize server URL."""
        self.server_url = self.server_url.rstrip("/")

    @property
    def is_secure(self) -> bool:
        """Check if using HTTPS."""
        return self.server_url.startswith("https://")
