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
OIDCClient component: one relying party bound to one Authorization Server.
"""

from collections.abc import Mapping
from typing import Any

import httpx

from coreason_oidc_client.authorization import (
    build_authorization_url,
    build_authorization_url_with_jar,
    build_authorization_url_with_par,
)
from coreason_oidc_client.client_auth import ClientAuth
from coreason_oidc_client.config import ClientSettings, Configuration, ConfigurationOptions
from coreason_oidc_client.device_flow import DeviceAuthorizationHandle, initiate_device_authorization
from coreason_oidc_client.discovery import DiscoveryAlgorithm, discovery
from coreason_oidc_client.dpop import DPoPHandle
from coreason_oidc_client.grants import (
    authorization_code_grant,
    client_credentials_grant,
    fetch_protected_resource,
    fetch_user_info,
    refresh_token_grant,
)
from coreason_oidc_client.models import ClientMetadata, TokenEndpointResponse


class OIDCClient:
    """
    Async facade over the flows of one client. Handles resources via async context manager.

    Every method delegates to the module level operation of the same purpose with the bound Configuration.

    Attributes:
        config (Configuration): The immutable client configuration.
    """

    def __init__(self, config: Configuration) -> None:
        self.config = config

    @classmethod
    async def discover(
        cls,
        issuer: str,
        client_id: str,
        metadata: ClientMetadata | dict[str, object] | str | None = None,
        client_auth: ClientAuth | None = None,
        options: ConfigurationOptions | None = None,
        *,
        settings: ClientSettings | None = None,
        http_client: httpx.AsyncClient | None = None,
        algorithm: DiscoveryAlgorithm = "oidc",
    ) -> "OIDCClient":
        """
        Discovers the Authorization Server and binds a client to it.

        Raises:
            DiscoveryError: If discovery fails or the issuer mismatches.
        """
        config = await discovery(
            issuer,
            client_id,
            metadata,
            client_auth,
            options,
            settings=settings,
            http_client=http_client,
            algorithm=algorithm,
        )
        return cls(config)

    async def __aenter__(self) -> "OIDCClient":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.config.aclose()

    def authorization_url(self, parameters: Mapping[str, str]) -> str:
        return build_authorization_url(self.config, parameters)

    def authorization_url_with_jar(
        self, parameters: Mapping[str, str], signing_key: Any, *, alg: str | None = None, kid: str | None = None
    ) -> str:
        return build_authorization_url_with_jar(self.config, parameters, signing_key, alg=alg, kid=kid)

    async def authorization_url_with_par(
        self,
        parameters: Mapping[str, str],
        *,
        dpop: DPoPHandle | None = None,
        signing_key: Any = None,
        alg: str | None = None,
        kid: str | None = None,
    ) -> str:
        return await build_authorization_url_with_par(
            self.config, parameters, dpop=dpop, signing_key=signing_key, alg=alg, kid=kid
        )

    async def authorization_code_grant(self, current_url: str | httpx.URL, **checks: Any) -> TokenEndpointResponse:
        """
        Validates the callback at ``current_url`` and exchanges its code.

        Args:
            current_url: The redirect URL the user agent arrived at.
            **checks: ``expected_state``, ``expected_nonce``, ``pkce_code_verifier``, ``max_age``,
                ``id_token_expected``, ``dpop``, ``redirect_uri`` and ``extra_params``.
        """
        return await authorization_code_grant(self.config, current_url, **checks)

    async def refresh_token_grant(self, refresh_token: str, *, dpop: DPoPHandle | None = None) -> TokenEndpointResponse:
        return await refresh_token_grant(self.config, refresh_token, dpop=dpop)

    async def client_credentials_grant(
        self, params: Mapping[str, str] | None = None, *, dpop: DPoPHandle | None = None
    ) -> TokenEndpointResponse:
        return await client_credentials_grant(self.config, params, dpop=dpop)

    async def start_device_login(self, parameters: Mapping[str, str] | None = None) -> DeviceAuthorizationHandle:
        """
        Initiates the Device Authorization Flow. Poll the returned handle for the tokens.
        """
        return await initiate_device_authorization(self.config, parameters)

    async def user_info(
        self, access_token: str, expected_subject: str | None, *, dpop: DPoPHandle | None = None
    ) -> dict[str, Any]:
        return await fetch_user_info(self.config, access_token, expected_subject, dpop=dpop)

    async def protected_resource(
        self,
        access_token: str,
        url: str,
        method: str = "GET",
        body: bytes | None = None,
        headers: Mapping[str, str] | None = None,
        *,
        dpop: DPoPHandle | None = None,
    ) -> httpx.Response:
        return await fetch_protected_resource(self.config, access_token, url, method, body, headers, dpop=dpop)
