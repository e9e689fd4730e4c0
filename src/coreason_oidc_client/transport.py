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
HTTP transport helpers: SSRF-hardened transport and bounded-size requests.
"""

import ipaddress
import json
import socket
from typing import Any

import anyio
import httpx

from coreason_oidc_client.exceptions import (
    CoreasonOIDCError,
    OversizedResponseError,
    ResponseValidationError,
    ValidationCheck,
)
from coreason_oidc_client.utils.logger import logger

DEFAULT_MAX_RESPONSE_BYTES = 1_000_000


class SecurityError(CoreasonOIDCError):
    """Raised when a request targets a blocked network address."""


def _is_blocked(ip_obj: ipaddress.IPv4Address | ipaddress.IPv6Address) -> bool:
    return (
        ip_obj.is_private
        or ip_obj.is_loopback
        or ip_obj.is_link_local
        or ip_obj.is_reserved
        or ip_obj.is_multicast
    )


class SafeHTTPTransport(httpx.AsyncHTTPTransport):
    """
    Async transport that pins every connection to a validated public IP address.

    The hostname is resolved once, private/loopback/link-local/reserved/multicast addresses are
    refused, and the request is sent to the selected IP with the original Host header and SNI
    name preserved so certificate verification still applies to the hostname.
    """

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        hostname = request.url.host

        try:
            literal = ipaddress.ip_address(hostname)
        except ValueError:
            literal = None

        if literal is not None:
            self._check(literal, hostname)
            return await super().handle_async_request(request)

        try:
            addr_infos = await anyio.to_thread.run_sync(socket.getaddrinfo, hostname, None, 0, socket.SOCK_STREAM)
        except socket.gaierror as e:
            logger.error(f"DNS resolution failed for {hostname}: {e}")
            raise SecurityError(f"DNS resolution failed for {hostname}") from e

        target_ip: str | None = None
        for _, _, _, _, sockaddr in addr_infos:
            try:
                candidate = ipaddress.ip_address(sockaddr[0])
            except ValueError:
                continue
            if not _is_blocked(candidate):
                target_ip = str(candidate)
                break

        if target_ip is None:
            logger.warning(f"Security violation: no public address for {hostname}")
            raise SecurityError(f"Access to {hostname} is blocked: no public address")

        request.extensions["sni_hostname"] = hostname
        if "Host" not in request.headers:
            request.headers["Host"] = request.url.netloc.decode("ascii")
        request.url = request.url.copy_with(host=target_ip)

        logger.debug(f"DNS pinned: {hostname} -> {target_ip}")
        return await super().handle_async_request(request)

    def _check(self, ip_obj: ipaddress.IPv4Address | ipaddress.IPv6Address, hostname: str) -> None:
        if _is_blocked(ip_obj):
            logger.warning(f"Security violation: blocked access to {hostname}")
            raise SecurityError(f"Access to {hostname} ({ip_obj}) is blocked")


async def send(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    *,
    headers: dict[str, str] | None = None,
    data: dict[str, str] | None = None,
    content: bytes | None = None,
    max_bytes: int = DEFAULT_MAX_RESPONSE_BYTES,
) -> httpx.Response:
    """
    Sends a request and buffers the response body, refusing bodies larger than ``max_bytes``.

    Error statuses are returned, not raised, so OAuth error bodies can be inspected by the caller.

    Raises:
        OversizedResponseError: If the body exceeds ``max_bytes``.
        httpx.HTTPError: On transport failures.
    """
    request_headers = {"Accept": "application/json", **(headers or {})}
    async with client.stream(method, url, headers=request_headers, data=data, content=content) as response:
        content_length = response.headers.get("Content-Length")
        if content_length and content_length.isdigit() and int(content_length) > max_bytes:
            raise OversizedResponseError(f"Response from {url} too large")

        body = bytearray()
        async for chunk in response.aiter_bytes():
            body.extend(chunk)
            if len(body) > max_bytes:
                raise OversizedResponseError(f"Response from {url} too large")

        # Body is already decoded, so drop the framing headers describing the wire form
        kept_headers = [
            (name, value)
            for name, value in response.headers.multi_items()
            if name.lower() not in ("content-encoding", "content-length", "transfer-encoding")
        ]
        return httpx.Response(
            status_code=response.status_code,
            headers=kept_headers,
            content=bytes(body),
            request=response.request,
        )


def parse_json_object(response: httpx.Response) -> dict[str, Any]:
    """
    Parses a response body that must be a JSON object.

    Raises:
        ResponseValidationError: If the body is not a JSON object.
    """
    try:
        data = json.loads(response.content)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise ResponseValidationError(
            f"failed to parse response body as JSON (HTTP {response.status_code})",
            check=ValidationCheck.INVALID_RESPONSE,
        ) from e
    if not isinstance(data, dict):
        raise ResponseValidationError(
            "response body must be a top level JSON object", check=ValidationCheck.INVALID_RESPONSE
        )
    return data


async def safe_json_fetch(
    client: httpx.AsyncClient,
    url: str,
    *,
    max_bytes: int = DEFAULT_MAX_RESPONSE_BYTES,
) -> dict[str, Any]:
    """
    GETs a JSON document (metadata, JWKS) with a bounded body size.

    Raises:
        httpx.HTTPStatusError: If the server does not answer 200.
        OversizedResponseError: If the body is too large.
        ResponseValidationError: If the body is not a JSON object.
    """
    response = await send(client, "GET", url, max_bytes=max_bytes)
    if response.status_code != 200:
        response.raise_for_status()
        raise httpx.HTTPStatusError(
            f"Unexpected HTTP status {response.status_code} for {url}", request=response.request, response=response
        )
    return parse_json_object(response)
