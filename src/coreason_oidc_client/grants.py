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
Token endpoint grants, UserInfo and protected resource access.
"""

import re
from collections.abc import Mapping
from typing import Any
from urllib.parse import urlsplit

import httpx
from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode
from pydantic import ValidationError

from coreason_oidc_client.config import Configuration
from coreason_oidc_client.dpop import DPoPHandle
from coreason_oidc_client.exceptions import (
    ConfigurationError,
    CoreasonOIDCError,
    ResponseValidationError,
    ServerError,
    ValidationCheck,
)
from coreason_oidc_client.models import TokenEndpointResponse
from coreason_oidc_client.transport import parse_json_object, send
from coreason_oidc_client.utils.logger import logger
from coreason_oidc_client.validator import ResponseValidator

tracer = trace.get_tracer(__name__)

_WWW_AUTHENTICATE_PARAM = re.compile(r'(\w+)="([^"]*)"')


def _json_error(response: httpx.Response) -> dict[str, Any] | None:
    """The OAuth 2.0 error object of a response, if its body is one."""
    if "json" not in response.headers.get("Content-Type", ""):
        return None
    body = parse_json_object(response)
    return body if isinstance(body.get("error"), str) else None


def _www_authenticate_error(response: httpx.Response) -> dict[str, Any] | None:
    """The error parameters of a ``WWW-Authenticate`` challenge, if it carries one."""
    challenge = response.headers.get("WWW-Authenticate")
    if not challenge:
        return None
    params = dict(_WWW_AUTHENTICATE_PARAM.findall(challenge))
    return params if "error" in params else None


def _needs_dpop_nonce(response: httpx.Response) -> bool:
    if response.status_code == 400:
        error = _json_error(response)
    elif response.status_code == 401:
        error = _www_authenticate_error(response)
    else:
        return False
    return error is not None and error["error"] == "use_dpop_nonce"


async def authenticated_post(
    config: Configuration,
    endpoint: str,
    params: Mapping[str, str],
    *,
    dpop: DPoPHandle | None = None,
) -> httpx.Response:
    """
    POSTs form parameters to an Authorization Server endpoint with client authentication.

    When a DPoP handle is given, every attempt carries a fresh proof, the server nonce is recorded,
    and a single ``use_dpop_nonce`` challenge is answered by retrying once with the new nonce.

    Args:
        config: The client configuration.
        endpoint: The metadata name of the endpoint, e.g. ``token_endpoint``.
        params: Form parameters of the request.
        dpop: DPoP handle of the flow, if the request must be sender-constrained.

    Returns:
        httpx.Response: The buffered response, whatever its status.

    Raises:
        ConfigurationError: If the server does not advertise the endpoint.
        CoreasonOIDCError: On transport failures.
    """
    url = config.endpoint(endpoint)
    for attempt in range(2):
        # Client assertions and DPoP proofs are single-use, so both are rebuilt per attempt
        contribution = config.auth_contribution()
        body = {**params, **contribution.body}
        headers = {"Content-Type": "application/x-www-form-urlencoded", **contribution.headers}
        if dpop is not None:
            headers["DPoP"] = dpop.proof("POST", url)

        try:
            response = await send(
                config.http_client,
                "POST",
                url,
                headers=headers,
                data=body,
                max_bytes=config.settings.max_response_bytes,
            )
        except httpx.HTTPError as e:
            logger.error(f"Request to {endpoint} failed: {e}")
            raise CoreasonOIDCError(f"Request to {endpoint} failed: {e}") from e

        if dpop is None:
            return response
        fresh_nonce = dpop.observe(response.headers)
        if attempt == 0 and fresh_nonce and _needs_dpop_nonce(response):
            logger.debug(f"Retrying {endpoint} request with the DPoP nonce supplied by the server")
            continue
        return response
    return response  # pragma: no cover


def parse_token_response(response: httpx.Response) -> TokenEndpointResponse:
    """
    Parses a token endpoint response.

    Raises:
        ServerError: If the response is an OAuth 2.0 error, verbatim.
        ResponseValidationError: If the response is not a valid token response.
    """
    if response.status_code != 200:
        error = _json_error(response)
        if error is not None:
            raise ServerError.from_response(error, response.status_code)
        raise ResponseValidationError(
            f"unexpected HTTP status code {response.status_code} from the token endpoint",
            check=ValidationCheck.INVALID_RESPONSE,
        )

    body = parse_json_object(response)
    if isinstance(body.get("error"), str):
        raise ServerError.from_response(body, response.status_code)
    try:
        return TokenEndpointResponse(**body)
    except ValidationError as e:
        raise ResponseValidationError(
            f"invalid token endpoint response: {e}", check=ValidationCheck.INVALID_RESPONSE
        ) from e


async def token_request(
    config: Configuration,
    grant_type: str,
    params: Mapping[str, str],
    *,
    dpop: DPoPHandle | None = None,
) -> TokenEndpointResponse:
    """
    Performs one token endpoint request and parses, but does not validate, the response.

    Raises:
        ServerError: If the server answers with an OAuth 2.0 error.
        ResponseValidationError: If the response is malformed.
    """
    response = await authenticated_post(config, "token_endpoint", {**params, "grant_type": grant_type}, dpop=dpop)
    return parse_token_response(response)


def check_dpop_requirement(config: Configuration, dpop: DPoPHandle | None) -> None:
    if config.options.require_dpop and dpop is None:
        raise ConfigurationError("DPoP is required by the client options but no DPoP handle was given")


async def authorization_code_grant(
    config: Configuration,
    current_url: str | httpx.URL,
    *,
    expected_state: str | None = None,
    expected_nonce: str | None = None,
    pkce_code_verifier: str | None = None,
    max_age: int | None = None,
    id_token_expected: bool = False,
    dpop: DPoPHandle | None = None,
    redirect_uri: str | None = None,
    extra_params: Mapping[str, str] | None = None,
) -> TokenEndpointResponse:
    """
    Validates an authorization response and exchanges its code at the token endpoint.

    The authorization response is fully validated before any token request is made.

    Emits an OpenTelemetry span `authorization_code_grant`.

    Args:
        config: The client configuration.
        current_url: The redirect URL the user agent arrived at.
        expected_state: The state sent in the authorization request, if any.
        expected_nonce: The nonce sent in the authorization request, if any.
        pkce_code_verifier: The PKCE code_verifier, if PKCE was used.
        max_age: The ``max_age`` sent in the authorization request, if any.
        id_token_expected: Fail when no ID token is issued. Implied by ``expected_nonce``.
        dpop: DPoP handle of the flow. Mandatory when the options require DPoP.
        redirect_uri: The ``redirect_uri`` sent. Defaults to ``current_url`` without query and fragment.
        extra_params: Additional token request parameters.

    Returns:
        TokenEndpointResponse: The validated token response with its ID token claims bound.

    Raises:
        ServerError: If the authorization or token endpoint returned an error.
        ResponseValidationError: If any local check fails.
        ConfigurationError: If DPoP is required but not used, or the response type issues no code.
    """
    check_dpop_requirement(config, dpop)
    if "code" not in config.options.response_type.split():
        raise ConfigurationError(
            f'response_type "{config.options.response_type}" issues no authorization code to exchange'
        )
    validator = ResponseValidator(config)

    with tracer.start_as_current_span("authorization_code_grant") as span:
        try:
            auth_response = await validator.validate_authorization_response(
                current_url, expected_state=expected_state, expected_nonce=expected_nonce, max_age=max_age
            )
            if redirect_uri is None:
                redirect_uri = urlsplit(str(current_url))._replace(query="", fragment="").geturl()

            params = {**(extra_params or {}), "code": auth_response.params["code"], "redirect_uri": redirect_uri}
            if pkce_code_verifier is not None:
                params["code_verifier"] = pkce_code_verifier

            response = await token_request(config, "authorization_code", params, dpop=dpop)
            result = await validator.process_token_response(
                response,
                expected_nonce=expected_nonce,
                max_age=max_age,
                id_token_expected=(
                    id_token_expected or expected_nonce is not None or auth_response.id_token_claims is not None
                ),
                front_channel_claims=auth_response.id_token_claims,
                dpop_bound=dpop is not None,
            )
        except CoreasonOIDCError as e:
            span.record_exception(e)
            span.set_status(Status(StatusCode.ERROR, str(e)))
            raise

        span.set_status(Status(StatusCode.OK))
        logger.info("Authorization code exchanged successfully")
        return result


async def refresh_token_grant(
    config: Configuration,
    refresh_token: str,
    *,
    dpop: DPoPHandle | None = None,
    extra_params: Mapping[str, str] | None = None,
) -> TokenEndpointResponse:
    """
    Exchanges a refresh token for fresh tokens.

    A refreshed ID token is validated like any other except for ``nonce``.

    Raises:
        ServerError: If the token endpoint returned an error.
        ResponseValidationError: If any local check fails.
    """
    check_dpop_requirement(config, dpop)
    with tracer.start_as_current_span("refresh_token_grant"):
        response = await token_request(
            config, "refresh_token", {**(extra_params or {}), "refresh_token": refresh_token}, dpop=dpop
        )
        return await ResponseValidator(config).process_token_response(
            response, check_nonce=False, dpop_bound=dpop is not None
        )


async def client_credentials_grant(
    config: Configuration,
    params: Mapping[str, str] | None = None,
    *,
    dpop: DPoPHandle | None = None,
) -> TokenEndpointResponse:
    """
    Requests tokens for the client itself.

    Raises:
        ServerError: If the token endpoint returned an error.
        ResponseValidationError: If any local check fails.
    """
    check_dpop_requirement(config, dpop)
    with tracer.start_as_current_span("client_credentials_grant"):
        response = await token_request(config, "client_credentials", params or {}, dpop=dpop)
        return await ResponseValidator(config).process_token_response(
            response, check_nonce=False, dpop_bound=dpop is not None
        )


async def fetch_protected_resource(
    config: Configuration,
    access_token: str,
    url: str,
    method: str = "GET",
    body: bytes | None = None,
    headers: Mapping[str, str] | None = None,
    *,
    dpop: DPoPHandle | None = None,
) -> httpx.Response:
    """
    Calls a resource server with an access token.

    With a DPoP handle the token is presented with the ``DPoP`` scheme and an ``ath``-bound proof,
    and a single ``use_dpop_nonce`` challenge from the resource server is answered.

    Returns:
        httpx.Response: The buffered response, whatever its status.

    Raises:
        CoreasonOIDCError: On transport failures.
    """
    for attempt in range(2):
        request_headers = dict(headers or {})
        if dpop is not None:
            request_headers["Authorization"] = f"DPoP {access_token}"
            request_headers["DPoP"] = dpop.proof(method, url, access_token=access_token)
        else:
            request_headers["Authorization"] = f"Bearer {access_token}"

        try:
            response = await send(
                config.http_client,
                method,
                url,
                headers=request_headers,
                content=body,
                max_bytes=config.settings.max_response_bytes,
            )
        except httpx.HTTPError as e:
            logger.error(f"Protected resource request to {url} failed: {e}")
            raise CoreasonOIDCError(f"Protected resource request to {url} failed: {e}") from e

        if dpop is None:
            return response
        fresh_nonce = dpop.observe(response.headers)
        if attempt == 0 and fresh_nonce and _needs_dpop_nonce(response):
            logger.debug("Retrying protected resource request with the DPoP nonce supplied by the server")
            continue
        return response
    return response  # pragma: no cover


async def fetch_user_info(
    config: Configuration,
    access_token: str,
    expected_subject: str | None,
    *,
    dpop: DPoPHandle | None = None,
) -> dict[str, Any]:
    """
    Fetches the UserInfo claims for an access token.

    Args:
        config: The client configuration.
        access_token: The access token.
        expected_subject: The ``sub`` of the validated ID token. None skips the subject check.
        dpop: DPoP handle, when the access token is DPoP-bound.

    Returns:
        dict[str, Any]: The UserInfo claims.

    Raises:
        ServerError: If the UserInfo endpoint returned an error.
        ResponseValidationError: If the response is malformed or its ``sub`` mismatches.
    """
    url = config.endpoint("userinfo_endpoint")
    with tracer.start_as_current_span("fetch_user_info") as span:
        try:
            response = await fetch_protected_resource(config, access_token, url, dpop=dpop)
            if response.status_code != 200:
                error = _www_authenticate_error(response) or _json_error(response)
                if error is not None:
                    raise ServerError.from_response(error, response.status_code)
                raise ResponseValidationError(
                    f"unexpected HTTP status code {response.status_code} from the userinfo endpoint",
                    check=ValidationCheck.INVALID_RESPONSE,
                )

            if response.headers.get("Content-Type", "").startswith("application/jwt"):
                alg = (config.client_metadata.model_extra or {}).get("userinfo_signed_response_alg")
                _, claims = await ResponseValidator(config).verify_jws(response.text, alg)
            else:
                claims = parse_json_object(response)

            if not isinstance(claims.get("sub"), str):
                raise ResponseValidationError(
                    'UserInfo response "sub" claim missing', check=ValidationCheck.MISSING_PARAMETER, parameter="sub"
                )
            if expected_subject is not None and claims["sub"] != expected_subject:
                raise ResponseValidationError(
                    'unexpected UserInfo "sub" claim value',
                    check=ValidationCheck.SUBJECT_MISMATCH,
                    parameter="sub",
                )
        except CoreasonOIDCError as e:
            span.record_exception(e)
            span.set_status(Status(StatusCode.ERROR, str(e)))
            raise

        span.set_status(Status(StatusCode.OK))
        return claims
