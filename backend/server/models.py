"""Pydantic models for the connection API requests and responses."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field


class HostSessionRequest(BaseModel):
    """Request body for hosting the local service."""

    port: int | None = Field(
        default=None,
        description="Local service port; omitted to discover it on the LAN",
    )


class GuestSessionRequest(BaseModel):
    """Request body for joining a room."""

    invite_code: str = Field(..., description="Terracotta or Compact invite code")


class StartSessionResponse(BaseModel):
    """Outcome of a start request and the snapshot right after it."""

    started: bool
    snapshot: dict[str, Any]


class InviteValidationResponse(BaseModel):
    kind: str
