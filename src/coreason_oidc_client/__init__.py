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
OAuth 2.0 / OpenID Connect relying party engine: discovery, client authentication, authorization
requests (plain, JAR, PAR), response validation, DPoP and the device authorization grant.
"""

__version__ = "0.1.0"
__author__ = "Gowtham A Rao"
__email__ = "gowtham.rao@coreason.ai"

from .authorization import build_authorization_url, build_authorization_url_with_jar, build_authorization_url_with_par
from .client import OIDCClient
from .client_auth import (
    ClientSecretBasic,
    ClientSecretPost,
    NoneAuth,
    PrivateKeyJwt,
    SelfSignedTLSClientAuth,
    TLSClientAuth,
)
from .config import ClientSettings, Configuration, ConfigurationOptions
from .device_flow import DeviceAuthorizationHandle, initiate_device_authorization
from .discovery import discovery
from .dpop import DPoPHandle, random_dpop_keypair
from .exceptions import (
    ConfigurationError,
    CoreasonOIDCError,
    DeviceFlowExpiredError,
    DiscoveryError,
    PollingAbortedError,
    ProtocolStateError,
    ResponseValidationError,
    ServerError,
    ValidationCheck,
)
from .generators import calculate_pkce_code_challenge, random_nonce, random_pkce_code_verifier, random_state
from .grants import (
    authorization_code_grant,
    client_credentials_grant,
    fetch_protected_resource,
    fetch_user_info,
    refresh_token_grant,
)
from .models import ClientAuthMethod, ClientMetadata, DeviceFlowState, ServerMetadata, TokenEndpointResponse

__all__ = [
    "ClientAuthMethod",
    "ClientMetadata",
    "ClientSecretBasic",
    "ClientSecretPost",
    "ClientSettings",
    "Configuration",
    "ConfigurationError",
    "ConfigurationOptions",
    "CoreasonOIDCError",
    "DPoPHandle",
    "DeviceAuthorizationHandle",
    "DeviceFlowExpiredError",
    "DeviceFlowState",
    "DiscoveryError",
    "NoneAuth",
    "OIDCClient",
    "PollingAbortedError",
    "PrivateKeyJwt",
    "ProtocolStateError",
    "ResponseValidationError",
    "SelfSignedTLSClientAuth",
    "ServerError",
    "ServerMetadata",
    "TLSClientAuth",
    "TokenEndpointResponse",
    "ValidationCheck",
    "authorization_code_grant",
    "build_authorization_url",
    "build_authorization_url_with_jar",
    "build_authorization_url_with_par",
    "calculate_pkce_code_challenge",
    "client_credentials_grant",
    "discovery",
    "fetch_protected_resource",
    "fetch_user_info",
    "initiate_device_authorization",
    "random_dpop_keypair",
    "random_nonce",
    "random_pkce_code_verifier",
    "random_state",
    "refresh_token_grant",
]
