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
Configuration for the coreason-oidc-client package.
"""

from typing import Any

import httpx
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from coreason_oidc_client.client_auth import ClientAuth, resolve_client_auth
from coreason_oidc_client.crypto import CryptoAdapter, JoseCryptoAdapter
from coreason_oidc_client.exceptions import ConfigurationError
from coreason_oidc_client.jwks_provider import JWKSProvider
from coreason_oidc_client.models import ClientMetadata, ServerMetadata
from coreason_oidc_client.models_internal import AuthContribution
from coreason_oidc_client.transport import SafeHTTPTransport
from coreason_oidc_client.utils.logger import logger


class ClientSettings(BaseSettings):
    """
    Runtime settings shared by every flow of a client, loadable from ``COREASON_OIDC_*`` env vars.

    Attributes:
        http_timeout (float): Timeout in seconds for all Authorization Server requests.
        clock_skew (int): Seconds of clock skew tolerated on exp/iat/nbf/auth_time checks.
        min_poll_interval (float): Floor applied to the device flow polling interval.
        allowed_algorithms (list[str]): JWS algorithms accepted on ID tokens and JARM responses.
        max_response_bytes (int): Maximum size of any response body.
        unsafe_local_dev (bool): Permit http:// issuers and private network addresses.
    """

    model_config = SettingsConfigDict(
        env_prefix="COREASON_OIDC_",
        case_sensitive=False,
    )

    http_timeout: float = Field(default=10.0, gt=0)
    clock_skew: int = Field(default=60, ge=0)
    min_poll_interval: float = Field(default=5.0, ge=0)
    allowed_algorithms: list[str] = Field(default_factory=lambda: ["RS256", "PS256", "ES256", "EdDSA"])
    max_response_bytes: int = Field(default=1_000_000, gt=0)
    unsafe_local_dev: bool = False

    @field_validator("allowed_algorithms")
    @classmethod
    def reject_none_algorithm(cls, v: list[str]) -> list[str]:
        """
        Ensures unsigned JWTs can never be accepted.
        """
        if any(alg.lower() == "none" for alg in v):
            raise ValueError('"none" cannot be an allowed JWS algorithm')
        if not v:
            raise ValueError("at least one JWS algorithm must be allowed")
        return v


class ConfigurationOptions(BaseModel):
    """
    Execution options of a client, fixed at construction time.

    Attributes:
        response_type (str): The ``response_type`` used in authorization requests.
        require_jarm (bool): Authorization responses must be JWT Secured (``response_mode=jwt``).
        require_dpop (bool): Token requests must carry a DPoP proof and yield DPoP-bound tokens.
        require_par (bool): Authorization requests must be pushed (PAR) first.
        require_jar (bool): Authorization request parameters must be wrapped in a signed request object.
        non_repudiation (bool): ID tokens and JARM responses must be signed with asymmetric keys.
        detached_signature (bool): Validate the front-channel ID token of ``code id_token`` responses.
        decryption_key (Any): Private key used to decrypt JWE-encrypted ID tokens.
    """

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    response_type: str = "code"
    require_jarm: bool = False
    require_dpop: bool = False
    require_par: bool = False
    require_jar: bool = False
    non_repudiation: bool = False
    detached_signature: bool = False
    decryption_key: Any = Field(default=None, repr=False)

    @model_validator(mode="after")
    def check_response_type(self) -> "ConfigurationOptions":
        if self.detached_signature and "id_token" not in self.response_type.split():
            raise ValueError("detached_signature requires a response_type including id_token")
        if self.require_jarm and "token" in self.response_type.split():
            raise ValueError("JARM cannot be combined with a response_type issuing tokens in the front channel")
        return self


class Configuration:
    """
    Everything one logical client needs: server metadata, client metadata, the resolved client
    authentication strategy, options and collaborators. Immutable after construction.

    Use as an async context manager to close an internally created HTTP client.
    """

    def __init__(
        self,
        server_metadata: ServerMetadata,
        client_metadata: ClientMetadata,
        client_auth: ClientAuth | None = None,
        options: ConfigurationOptions | None = None,
        *,
        settings: ClientSettings | None = None,
        http_client: httpx.AsyncClient | None = None,
        crypto: CryptoAdapter | None = None,
    ) -> None:
        """
        Initialize the Configuration.

        Args:
            server_metadata: Discovered (or statically known) Authorization Server metadata.
            client_metadata: The client registration.
            client_auth: Explicit client authentication strategy. Derived from metadata when omitted.
            options: Execution options. Defaults to plain authorization code flow.
            settings: Runtime settings. Loaded from the environment when omitted.
            http_client: External async client, e.g. one presenting a TLS client certificate.
                If not provided, a `SafeHTTPTransport` client is created and owned by this object.
            crypto: The JOSE implementation. Defaults to `JoseCryptoAdapter`.

        Raises:
            ConfigurationError: If the client authentication strategy cannot be satisfied.
        """
        self._settings = settings or ClientSettings()
        self._server_metadata = server_metadata
        self._client_metadata = client_metadata
        self._options = options or ConfigurationOptions()
        self._client_auth = resolve_client_auth(client_metadata, client_auth)
        self._crypto: CryptoAdapter = crypto or JoseCryptoAdapter()
        self._internal_client = http_client is None

        if http_client is not None:
            self._http_client = http_client
        else:
            transport = None if self._settings.unsafe_local_dev else SafeHTTPTransport()
            self._http_client = httpx.AsyncClient(transport=transport, timeout=self._settings.http_timeout)
            HTTPXClientInstrumentor().instrument_client(self._http_client)

        self._jwks = JWKSProvider(
            server_metadata.jwks_uri,
            self._http_client,
            max_bytes=self._settings.max_response_bytes,
        )
        self._frozen = True
        logger.debug(f"Configuration created for issuer {server_metadata.issuer} using {self._client_auth!r}")

    def __setattr__(self, name: str, value: Any) -> None:
        if getattr(self, "_frozen", False):
            raise AttributeError(f"Configuration is immutable, cannot set {name!r}")
        super().__setattr__(name, value)

    async def __aenter__(self) -> "Configuration":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._internal_client:
            await self._http_client.aclose()

    @property
    def server_metadata(self) -> ServerMetadata:
        return self._server_metadata

    @property
    def client_metadata(self) -> ClientMetadata:
        return self._client_metadata

    @property
    def client_id(self) -> str:
        return self._client_metadata.client_id

    @property
    def client_auth(self) -> ClientAuth:
        return self._client_auth

    @property
    def options(self) -> ConfigurationOptions:
        return self._options

    @property
    def settings(self) -> ClientSettings:
        return self._settings

    @property
    def http_client(self) -> httpx.AsyncClient:
        return self._http_client

    @property
    def crypto(self) -> CryptoAdapter:
        return self._crypto

    @property
    def jwks(self) -> JWKSProvider:
        return self._jwks

    def endpoint(self, name: str) -> str:
        """
        Returns an endpoint URL from the server metadata, preferring its mTLS alias when enabled.

        Raises:
            ConfigurationError: If the server does not advertise the endpoint.
        """
        if self._client_metadata.use_mtls_endpoint_aliases:
            aliases = self._server_metadata.mtls_endpoint_aliases or {}
            if aliases.get(name):
                return aliases[name]

        url = getattr(self._server_metadata, name, None)
        if url is None and self._server_metadata.model_extra:
            url = self._server_metadata.model_extra.get(name)
        if not url or not isinstance(url, str):
            raise ConfigurationError(f"{name} must be configured on the issuer")
        return url

    def auth_contribution(self) -> AuthContribution:
        """Fresh client authentication material for one request to a protected endpoint."""
        return self._client_auth.contribute(
            client_id=self.client_id,
            issuer=self._server_metadata.issuer,
            token_endpoint=self._server_metadata.token_endpoint or self._server_metadata.issuer,
            crypto=self._crypto,
        )

    def __repr__(self) -> str:
        return (
            f"Configuration(issuer={self._server_metadata.issuer!r}, client_id={self.client_id!r}, "
            f"client_auth={self._client_auth!r}, options={self._options!r})"
        )
