"""
Data models exchanged with the authentication API, built on Pydantic.

``TokenPair`` is the only model the transport layer itself depends on; the
request/response models describe the payloads of the login and renewal
endpoints so that malformed server responses are rejected at the boundary
instead of leaking ``KeyError`` into calling code.
"""

from __future__ import annotations

from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

HttpMethod = Literal["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"]


class TokenPair(BaseModel):
    """Access/refresh credential pair as held by a credential store."""

    model_config = ConfigDict(frozen=True)

    access: Optional[str] = None
    refresh: Optional[str] = None

    @property
    def is_empty(self) -> bool:
        return not self.access and not self.refresh


class RequestSpec(BaseModel):
    """Description of one outbound call routed through the gateway."""

    method: HttpMethod = "GET"
    path: str = Field(..., description="Path relative to the backend URL, or an absolute URL")
    json_body: Optional[Any] = None
    headers: Dict[str, str] = Field(default_factory=dict)
    params: Dict[str, str] = Field(default_factory=dict)
    authenticated: bool = Field(
        True, description="When false, no credential is attached and no renewal is attempted"
    )


class RefreshResponse(BaseModel):
    """Body returned by the renewal endpoint."""

    access: str = Field(..., min_length=1)


class LoginRequest(BaseModel):
    dni: str
    password: str


class LoginResponse(BaseModel):
    """Body returned by the login endpoint.  Extra user fields are kept."""

    model_config = ConfigDict(extra="allow")

    access: str = Field(..., min_length=1)
    refresh: str = Field(..., min_length=1)
