"""Pydantic schemas for API request/response models."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_serializer

# Keys of a change carrying the operation; exactly one is set
OPERATIONS = ("created", "updated", "deleted")


# === Change schema ===


class SyncChange(BaseModel):
    """One record change as exchanged on the wire.

    ``created`` and ``updated`` carry the record body; ``deleted`` is a flag.
    Unset operation keys are left out when serialized.
    """

    model_config = ConfigDict(extra="ignore")

    table: str
    id: str
    created: dict[str, Any] | None = None
    updated: dict[str, Any] | None = None
    deleted: bool | None = None

    @property
    def operation(self) -> str | None:
        """The operation key, or None unless exactly one is set."""
        present = [
            key
            for key in OPERATIONS
            if getattr(self, key) is not None and getattr(self, key) is not False
        ]
        return present[0] if len(present) == 1 else None

    @property
    def body(self) -> dict[str, Any] | None:
        """Record body of a create or update."""
        return self.created if self.created is not None else self.updated

    @model_serializer(mode="wrap")
    def _drop_unset_operations(self, handler: Any) -> dict[str, Any]:
        data: dict[str, Any] = handler(self)
        return {k: v for k, v in data.items() if not (k in OPERATIONS and v is None)}


# === Push schemas ===


class PushRequest(BaseModel):
    """Request body for pushing local changes.

    Changes are kept as raw objects so one malformed entry is rejected on its
    own instead of failing the whole request.
    """

    model_config = ConfigDict(populate_by_name=True)

    changes: list[Any] = Field(default_factory=list)
    last_pulled_at: int | None = Field(default=None, alias="lastPulledAt")


class PushResponse(BaseModel):
    """Response for a push; the key is absent when nothing was rejected."""

    model_config = ConfigDict(populate_by_name=True)

    experimental_rejected_ids: list[str] | None = Field(
        default=None, alias="experimentalRejectedIds"
    )


# === Pull schemas ===


class Migration(BaseModel):
    """Schema migration range announced by a client."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    from_version: int = Field(alias="from")
    to_version: int = Field(alias="to")


class PullRequest(BaseModel):
    """Request body for pulling remote changes."""

    model_config = ConfigDict(populate_by_name=True)

    last_pulled_at: int | None = Field(default=None, alias="lastPulledAt")
    schema_version: int = Field(default=1, alias="schemaVersion")
    migration: Migration | None = None


class PullResponse(BaseModel):
    """Response for a pull.

    Tables with no changes are absent from ``changes``. ``timestamp`` is the
    server clock in milliseconds, captured before extraction.
    """

    changes: dict[str, list[SyncChange]]
    timestamp: int


# === Health schema ===


class HealthResponse(BaseModel):
    """Health check response.

    ``timestamp`` is the server clock in milliseconds, the same clock pull
    watermarks are read from.
    """

    model_config = ConfigDict(populate_by_name=True)

    status: str
    timestamp: int
    schema_version: int = Field(alias="schemaVersion")
