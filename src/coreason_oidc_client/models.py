# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_identity

"""
Data models for the coreason-oidc-client package.
"""

import math
from collections.abc import Mapping
from enum import StrEnum
from types import MappingProxyType
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr, SecretStr, field_validator

from coreason_oidc_client.exceptions import ProtocolStateError


class ClientAuthMethod(StrEnum):
    NONE = "none"
    CLIENT_SECRET_BASIC = "client_secret_basic"
    CLIENT_SECRET_POST = "client_secret_post"
    PRIVATE_KEY_JWT = "private_key_jwt"
    SELF_SIGNED_TLS_CLIENT_AUTH = "self_signed_tls_client_auth"
    TLS_CLIENT_AUTH = "tls_client_auth"


class DeviceFlowState(StrEnum):
    ISSUED = "issued"
    POLLING = "polling"
    SUCCEEDED = "succeeded"
    EXPIRED = "expired"
    ABORTED = "aborted"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self not in (DeviceFlowState.ISSUED, DeviceFlowState.POLLING)


class ServerMetadata(BaseModel):
    """
    Authorization Server metadata (OpenID Connect Discovery 1.0 / RFC 8414).

    Unknown members are kept so that extension metadata stays reachable through ``model_extra``.
    """

    model_config = ConfigDict(frozen=True, extra="allow")

    issuer: str = Field(..., description="The Issuer Identifier, compared by exact string equality.")
    authorization_endpoint: str | None = None
    token_endpoint: str | None = None
    jwks_uri: str | None = None
    userinfo_endpoint: str | None = None
    device_authorization_endpoint: str | None = None
    pushed_authorization_request_endpoint: str | None = None
    require_pushed_authorization_requests: bool = False
    mtls_endpoint_aliases: dict[str, str] | None = None
    response_types_supported: list[str] | None = None
    token_endpoint_auth_methods_supported: list[str] | None = None
    id_token_signing_alg_values_supported: list[str] | None = None
    authorization_signing_alg_values_supported: list[str] | None = None
    code_challenge_methods_supported: list[str] | None = None
    dpop_signing_alg_values_supported: list[str] | None = None
    authorization_response_iss_parameter_supported: bool = False

    @field_validator("issuer")
    @classmethod
    def issuer_not_empty(cls, v: str) -> str:
        if not v:
            raise ValueError("issuer must be a non-empty string")
        return v


class ClientMetadata(BaseModel):
    """
    Client registration metadata.

    Attributes:
        client_id (str): The client identifier.
        client_secret (SecretStr | None): The shared secret, if the client has one. Protected from logging.
        token_endpoint_auth_method (ClientAuthMethod | None): The registered authentication method.
        id_token_signed_response_alg (str | None): The JWS algorithm expected on ID tokens.
            When unset, any algorithm of the ``allowed_algorithms`` setting is accepted.
        redirect_uri (str | None): Default ``redirect_uri`` for authorization requests.
        use_mtls_endpoint_aliases (bool): Whether to prefer the server's mTLS endpoint aliases.
    """

    model_config = ConfigDict(frozen=True, extra="allow")

    client_id: str = Field(..., min_length=1)
    client_secret: SecretStr | None = None
    token_endpoint_auth_method: ClientAuthMethod | None = None
    id_token_signed_response_alg: str | None = None
    authorization_signed_response_alg: str | None = None
    redirect_uri: str | None = None
    use_mtls_endpoint_aliases: bool = False


class DeviceAuthorizationResponse(BaseModel):
    """
    Response from the Device Authorization Request (RFC 8628, Section 3.2).

    Attributes:
        device_code (str): The device verification code.
        user_code (str): The code the user should enter at the verification URI.
        verification_uri (str): The URI the user should visit to authorize the device.
        verification_uri_complete (str | None): The complete URI including the user code.
        expires_in (float): The lifetime in seconds of the device_code and user_code.
        interval (float): The minimum amount of time in seconds the client should wait between polling requests.
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    device_code: str
    user_code: str
    verification_uri: str
    verification_uri_complete: str | None = None
    expires_in: float
    interval: float = 5

    @field_validator("device_code", "user_code", "verification_uri", mode="before")
    @classmethod
    def non_empty_string(cls, v: Any) -> str:
        if not isinstance(v, str) or not v:
            raise ValueError(f"expected a non-empty string in the Device Authorization Response, got {v!r}")
        return v

    @field_validator("expires_in", mode="before")
    @classmethod
    def positive_number(cls, v: Any) -> float:
        if isinstance(v, bool) or not isinstance(v, (int, float)) or v <= 0:
            raise ValueError(f"expected expires_in to be a positive number, got {v!r}")
        return float(v)

    @field_validator("interval", mode="before")
    @classmethod
    def non_negative_interval(cls, v: Any) -> float:
        if isinstance(v, bool) or not isinstance(v, (int, float)) or v < 0:
            raise ValueError(f"expected interval to be a non-negative number, got {v!r}")
        return float(v)


class TokenEndpointResponse(BaseModel):
    """
    Successful Token Endpoint Response.

    The ID token claims are only reachable through :meth:`claims` once the ID token has been
    validated; until then reading them is a programming error.

    Attributes:
        access_token (str): The access token issued by the authorization server.
        token_type (str | None): The type of the token (e.g. "Bearer" or "DPoP").
        expires_in (int | None): The lifetime in seconds of the access token.
        refresh_token (str | None): The refresh token, if issued.
        id_token (str | None): The raw ID token, if issued.
        scope (str | None): The granted scope, if it differs from the requested one.
    """

    model_config = ConfigDict(frozen=True, extra="allow")

    access_token: str = Field(..., min_length=1)
    token_type: str | None = None
    expires_in: int | None = None
    refresh_token: str | None = None
    id_token: str | None = None
    scope: str | None = None

    _claims: Mapping[str, Any] | None = PrivateAttr(default=None)

    @field_validator("expires_in", mode="before")
    @classmethod
    def coerce_expires_in(cls, v: Any) -> int | None:
        if v is None:
            return None
        if isinstance(v, bool) or not isinstance(v, (int, float, str)):
            raise ValueError("expires_in must be a number")
        value = float(v)
        if not math.isfinite(value):
            raise ValueError("expires_in must be a finite number")
        return int(value)

    @property
    def verified(self) -> bool:
        return self._claims is not None

    def bind_claims(self, claims: Mapping[str, Any]) -> None:
        """Attaches the validated ID token claims. May only happen once."""
        if self._claims is not None:
            raise ProtocolStateError("ID token claims were already bound to this token response")
        self._claims = MappingProxyType(dict(claims))

    def claims(self) -> Mapping[str, Any] | None:
        """
        Returns the validated ID token claims.

        Returns:
            A read-only mapping of claims, or None when the response carried no ID token.

        Raises:
            ProtocolStateError: If an ID token is present but has not been validated yet.
        """
        if self.id_token is None:
            return None
        if self._claims is None:
            raise ProtocolStateError("ID token claims cannot be read before the ID token is validated")
        return self._claims

    def __repr__(self) -> str:
        # Tokens MUST be redacted in __repr__
        return (
            f"TokenEndpointResponse(access_token='<REDACTED>', "
            f"token_type={self.token_type!r}, "
            f"expires_in={self.expires_in!r}, "
            f"refresh_token={'<REDACTED>' if self.refresh_token else None!r}, "
            f"id_token={'<REDACTED>' if self.id_token else None!r}, "
            f"scope={self.scope!r})"
        )

    def __str__(self) -> str:
        return self.__repr__()
