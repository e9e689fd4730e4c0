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
Authorization request builder: plain, JWT-Secured (JAR, RFC 9101) and Pushed (PAR, RFC 9126).
"""

import time
from collections.abc import Mapping
from typing import Any

import httpx
from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode

from coreason_oidc_client.client_auth import default_signing_algorithm
from coreason_oidc_client.config import Configuration
from coreason_oidc_client.crypto import b64url
from coreason_oidc_client.dpop import DPoPHandle
from coreason_oidc_client.exceptions import (
    ConfigurationError,
    CoreasonOIDCError,
    ResponseValidationError,
    ServerError,
    ValidationCheck,
)
from coreason_oidc_client.grants import authenticated_post, check_dpop_requirement
from coreason_oidc_client.transport import parse_json_object
from coreason_oidc_client.utils.logger import logger

tracer = trace.get_tracer(__name__)

REQUEST_OBJECT_LIFETIME = 300


def _par_required(config: Configuration) -> bool:
    return config.options.require_par or config.server_metadata.require_pushed_authorization_requests


def _with_defaults(config: Configuration, parameters: Mapping[str, str]) -> dict[str, str]:
    """Completes caller parameters with what the configuration implies and checks the mandatory ones."""
    params = {key: str(value) for key, value in parameters.items()}
    params["client_id"] = config.client_id
    params.setdefault("response_type", config.options.response_type)
    if config.options.require_jarm:
        params.setdefault("response_mode", "jwt")
    if "redirect_uri" not in params and config.client_metadata.redirect_uri:
        params["redirect_uri"] = config.client_metadata.redirect_uri
    if "code_challenge" in params:
        params.setdefault("code_challenge_method", "S256")

    for name in ("redirect_uri", "scope"):
        if not params.get(name):
            raise ConfigurationError(f'authorization request parameter "{name}" is required')
    return params


def _url_with_params(endpoint: str, params: Mapping[str, str]) -> str:
    # Existing query parameters of the endpoint are preserved
    return str(httpx.URL(endpoint).copy_merge_params(dict(params)))


def build_authorization_url(config: Configuration, parameters: Mapping[str, str]) -> str:
    """
    Builds a plain authorization request URL.

    Args:
        config: The client configuration.
        parameters: Authorization request parameters. ``redirect_uri`` (or a registered default)
            and ``scope`` are required; ``client_id`` and ``response_type`` are filled in.

    Returns:
        str: The URL to send the user agent to.

    Raises:
        ConfigurationError: If pushed authorization requests or signed request objects are required,
            or a mandatory parameter is missing.
    """
    if _par_required(config):
        raise ConfigurationError("pushed authorization requests are required, use build_authorization_url_with_par")
    if config.options.require_jar:
        raise ConfigurationError("signed request objects are required, use build_authorization_url_with_jar")
    params = _with_defaults(config, parameters)
    return _url_with_params(config.endpoint("authorization_endpoint"), params)


def request_object_parameters(
    config: Configuration,
    parameters: Mapping[str, str],
    signing_key: Any,
    *,
    alg: str | None = None,
    kid: str | None = None,
) -> dict[str, str]:
    """
    Wraps authorization request parameters into a signed request object.

    Returns:
        dict[str, str]: ``client_id``, ``request`` and ``response_type``, the only parameters sent in clear.

    Raises:
        ConfigurationError: If no signing key is given or a mandatory parameter is missing.
    """
    if signing_key is None:
        raise ConfigurationError("a signing key is required for JWT-Secured Authorization Requests")
    params = _with_defaults(config, parameters)

    now = int(time.time())
    claims: dict[str, Any] = {
        **params,
        "iss": config.client_id,
        "aud": config.server_metadata.issuer,
        "iat": now,
        "nbf": now,
        "exp": now + REQUEST_OBJECT_LIFETIME,
        "jti": b64url(config.crypto.random_bytes(32)),
    }
    if "max_age" in claims:
        claims["max_age"] = int(claims["max_age"])

    header: dict[str, Any] = {"typ": "oauth-authz-req+jwt"}
    if kid is not None:
        header["kid"] = kid
    request = config.crypto.sign(alg or default_signing_algorithm(signing_key), signing_key, header, claims)
    return {"client_id": config.client_id, "request": request, "response_type": params["response_type"]}


def build_authorization_url_with_jar(
    config: Configuration,
    parameters: Mapping[str, str],
    signing_key: Any,
    *,
    alg: str | None = None,
    kid: str | None = None,
) -> str:
    """
    Builds an authorization request URL carrying a signed request object (RFC 9101).

    Raises:
        ConfigurationError: If pushed authorization requests are required, no key is given, or a
            mandatory parameter is missing.
    """
    if _par_required(config):
        raise ConfigurationError("pushed authorization requests are required, use build_authorization_url_with_par")
    params = request_object_parameters(config, parameters, signing_key, alg=alg, kid=kid)
    return _url_with_params(config.endpoint("authorization_endpoint"), params)


async def build_authorization_url_with_par(
    config: Configuration,
    parameters: Mapping[str, str],
    *,
    dpop: DPoPHandle | None = None,
    signing_key: Any = None,
    alg: str | None = None,
    kid: str | None = None,
) -> str:
    """
    Pushes the authorization request (RFC 9126) and builds the URL referencing it.

    The request is first wrapped in a request object when the options require JAR. The push is
    client-authenticated and, with a DPoP handle, sender-constrained.

    Emits an OpenTelemetry span `pushed_authorization_request`.

    Returns:
        str: The URL to send the user agent to, carrying only ``client_id`` and ``request_uri``.

    Raises:
        ConfigurationError: If JAR is required without a signing key, DPoP is required without a
            handle, or the server has no PAR endpoint.
        ServerError: If the server rejects the pushed request.
        ResponseValidationError: If the server response is malformed.
    """
    check_dpop_requirement(config, dpop)
    if config.options.require_jar:
        params = request_object_parameters(config, parameters, signing_key, alg=alg, kid=kid)
    else:
        params = _with_defaults(config, parameters)

    with tracer.start_as_current_span("pushed_authorization_request") as span:
        try:
            response = await authenticated_post(config, "pushed_authorization_request_endpoint", params, dpop=dpop)
            body = parse_json_object(response)
            if response.status_code != 201:
                if isinstance(body.get("error"), str):
                    raise ServerError.from_response(body, response.status_code)
                raise ResponseValidationError(
                    f"unexpected HTTP status code {response.status_code} from the pushed authorization endpoint",
                    check=ValidationCheck.INVALID_RESPONSE,
                )

            request_uri = body.get("request_uri")
            if not isinstance(request_uri, str) or not request_uri:
                raise ResponseValidationError(
                    '"request_uri" missing from the pushed authorization response',
                    check=ValidationCheck.MISSING_PARAMETER,
                    parameter="request_uri",
                )
            expires_in = body.get("expires_in")
            if isinstance(expires_in, bool) or not isinstance(expires_in, (int, float)) or expires_in <= 0:
                raise ResponseValidationError(
                    '"expires_in" must be a positive number in the pushed authorization response',
                    check=ValidationCheck.INVALID_RESPONSE,
                    parameter="expires_in",
                )
        except CoreasonOIDCError as e:
            logger.error(f"Pushed authorization request failed: {e}")
            span.record_exception(e)
            span.set_status(Status(StatusCode.ERROR, str(e)))
            raise

        span.set_status(Status(StatusCode.OK))

    logger.debug(f"Pushed authorization request accepted, expires in {expires_in}s")
    return _url_with_params(
        config.endpoint("authorization_endpoint"),
        {"client_id": config.client_id, "request_uri": request_uri},
    )
