"""Pydantic request models for the gateway API."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field


class AddGatewayRequest(BaseModel):
    """User-supplied gateway to add to the catalogue."""

    url: str = Field(..., min_length=1)
    name: str | None = Field(default=None, max_length=60)
    region: Literal["CN", "INTL", "AUTO"] = "AUTO"
    priority: int = Field(default=50, ge=0)
    icon: str = "🌐"


class NetworkProfileRequest(BaseModel):
    """New network-region preference."""

    profile: Literal["AUTO", "CN", "INTL"]


class UploadedFileRequest(BaseModel):
    """A freshly uploaded file to warm and verify."""

    cid: str = Field(..., min_length=1)
    name: str = ""
    hash: str | None = None


class PropagateRequest(BaseModel):
    """Fire-and-forget warming request for one CID."""

    cid: str = Field(..., min_length=1)
    mode: Literal["smart", "aggressive"] = "smart"
    max_gateways: int | None = Field(default=None, ge=1, le=50)
