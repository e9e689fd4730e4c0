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
Authorization Server metadata discovery.
"""

from typing import Literal
from urllib.parse import urlsplit, urlunsplit

import anyio
import httpx
from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode
from pydantic import SecretStr, ValidationError

from coreason_oidc_client.client_auth import ClientAuth
from coreason_oidc_client.config import ClientSettings, Configuration, ConfigurationOptions
from coreason_oidc_client.exceptions import (
    CoreasonOIDCError,
    DiscoveryError,
    OversizedResponseError,
    ResponseValidationError,
)
from coreason_oidc_client.models import ClientMetadata, ServerMetadata
from coreason_oidc_client.transport import SafeHTTPTransport, safe_json_fetch
from coreason_oidc_client.utils.logger import logger

tracer = trace.get_tracer(__name__)

DiscoveryAlgorithm = Literal["oidc", "oauth2"]


def discovery_url(issuer: str, algorithm: DiscoveryAlgorithm = "oidc") -> str:
    """
    Builds the well-known metadata URL for an issuer.

    ``oidc`` appends ``/.well-known/openid-configuration`` to the issuer path; ``oauth2`` inserts
    ``/.well-known/oauth-authorization-server`` before it (RFC 8414, Section 3.1).
    """
    parts = urlsplit(issuer)
    path = parts.path.rstrip("/")
    if algorithm == "oidc":
        well_known = f"{path}/.well-known/openid-configuration"
    else:
        well_known = f"/.well-known/oauth-authorization-server{path}"
    return urlunsplit((parts.scheme, parts.netloc, well_known, "", ""))


async def fetch_server_metadata(
    issuer: str,
    client: httpx.AsyncClient,
    *,
    algorithm: DiscoveryAlgorithm = "oidc",
    max_bytes: int = 1_000_000,
) -> ServerMetadata:
    """
    Fetches and validates the metadata document of ``issuer``.

    Retries on `httpx.HTTPError` up to 3 times with exponential backoff (initial=0.1s, max=1.0s).
    Malformed documents and issuer mismatches are never retried.

    Raises:
        DiscoveryError: If the document is unreachable, malformed, or its ``issuer`` differs from ``issuer``.
    """
    url = discovery_url(issuer, algorithm)
    attempts = 3
    wait_initial = 0.1
    wait_max = 1.0

    for attempt in range(attempts):
        try:
            data = await safe_json_fetch(client, url, max_bytes=max_bytes)
            break
        except (OversizedResponseError, ResponseValidationError) as e:
            raise DiscoveryError(f"Invalid metadata document at {url}: {e}") from e
        except (CoreasonOIDCError, httpx.HTTPError) as e:
            if attempt == attempts - 1:
                raise DiscoveryError(f"Failed to fetch Authorization Server metadata from {url}: {e}") from e
            await anyio.sleep(min(wait_initial * (2**attempt), wait_max))
    else:  # pragma: no cover
        raise DiscoveryError(f"Failed to fetch Authorization Server metadata from {url}")

    try:
        metadata = ServerMetadata(**data)
    except (TypeError, ValidationError) as e:
        raise DiscoveryError(f"Invalid metadata document at {url}: {e}") from e

    # Exact string comparison; a trailing slash difference is a mismatch
    if metadata.issuer != issuer:
        raise DiscoveryError(
            f'"issuer" property does not match the expected value, expected {issuer!r}, got {metadata.issuer!r}'
        )
    return metadata


def _check_auth_method_supported(metadata: ServerMetadata, configuration: Configuration) -> None:
    supported = metadata.token_endpoint_auth_methods_supported
    method = configuration.client_auth.method
    if supported is not None and method not in supported:
        raise DiscoveryError(
            f"client authentication method {method} is not advertised in token_endpoint_auth_methods_supported"
        )


async def discovery(
    issuer: str,
    client_id: str,
    metadata: ClientMetadata | dict[str, object] | str | None = None,
    client_auth: ClientAuth | None = None,
    options: ConfigurationOptions | None = None,
    *,
    settings: ClientSettings | None = None,
    http_client: httpx.AsyncClient | None = None,
    algorithm: DiscoveryAlgorithm = "oidc",
) -> Configuration:
    """
    Discovers the Authorization Server and returns a ready Configuration.

    Args:
        issuer: The Issuer Identifier URL. The discovered ``issuer`` must equal it exactly.
        client_id: The client identifier.
        metadata: Client metadata, a metadata dict, or just the client secret.
        client_auth: Explicit client authentication strategy.
        options: Execution options.
        settings: Runtime settings. Loaded from the environment when omitted.
        http_client: External async client. If not provided, the Configuration owns a `SafeHTTPTransport` client.
        algorithm: ``oidc`` (OpenID Connect Discovery) or ``oauth2`` (RFC 8414).

    Returns:
        Configuration: The immutable client configuration.

    Raises:
        DiscoveryError: If metadata is unreachable or malformed, the issuer mismatches, or the
            client authentication method is not supported by the server.
        ConfigurationError: If the client metadata is inconsistent.
    """
    settings = settings or ClientSettings()

    if issuer.startswith("http://") and not settings.unsafe_local_dev:
        raise DiscoveryError("HTTPS is required for production. Set 'unsafe_local_dev=True' only for local testing.")

    if isinstance(metadata, ClientMetadata):
        client_metadata = metadata
    elif isinstance(metadata, str):
        client_metadata = ClientMetadata(client_id=client_id, client_secret=SecretStr(metadata))
    else:
        try:
            client_metadata = ClientMetadata(**{**(metadata or {}), "client_id": client_id})
        except ValidationError as e:
            raise DiscoveryError(f"Invalid client metadata: {e}") from e

    with tracer.start_as_current_span("discovery") as span:
        span.set_attribute("oauth.issuer", issuer)
        try:
            if http_client is not None:
                server_metadata = await fetch_server_metadata(
                    issuer, http_client, algorithm=algorithm, max_bytes=settings.max_response_bytes
                )
            else:
                transport = None if settings.unsafe_local_dev else SafeHTTPTransport()
                async with httpx.AsyncClient(transport=transport, timeout=settings.http_timeout) as transient:
                    server_metadata = await fetch_server_metadata(
                        issuer, transient, algorithm=algorithm, max_bytes=settings.max_response_bytes
                    )

            configuration = Configuration(
                server_metadata,
                client_metadata,
                client_auth,
                options,
                settings=settings,
                http_client=http_client,
            )
            try:
                _check_auth_method_supported(server_metadata, configuration)
            except DiscoveryError:
                await configuration.aclose()
                raise
        except CoreasonOIDCError as e:
            logger.error(f"Discovery failed for {issuer}: {e}")
            span.record_exception(e)
            span.set_status(Status(StatusCode.ERROR, str(e)))
            raise

        span.set_status(Status(StatusCode.OK))

    logger.info(f"Discovered Authorization Server {issuer}")
    return configuration
