# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_identity

import socket
import time
from collections.abc import Callable, Generator
from typing import Any
from unittest.mock import MagicMock, patch

import httpx
import pytest
from authlib.jose import JsonWebKey

from coreason_oidc_client.client_auth import ClientAuth
from coreason_oidc_client.config import ClientSettings, Configuration, ConfigurationOptions
from coreason_oidc_client.crypto import JoseCryptoAdapter
from coreason_oidc_client.models import ClientMetadata, ServerMetadata

ISSUER = "https://op.example.com"
CLIENT_ID = "client-123"
REDIRECT_URI = "https://rp.example.com/cb"

Handler = Callable[[httpx.Request], httpx.Response]


@pytest.fixture(autouse=True)
def mock_dns_resolution() -> Generator[MagicMock, None, None]:
    """
    Globally patches socket.getaddrinfo to return a safe public IP by default.

    Tests that need to verify SSRF logic should explicitly patch socket.getaddrinfo again.
    """
    safe_response = [(socket.AF_INET, socket.SOCK_STREAM, 6, "", ("8.8.8.8", 443))]

    with patch("socket.getaddrinfo", return_value=safe_response) as mock:
        yield mock


def server_metadata(**overrides: Any) -> ServerMetadata:
    data: dict[str, Any] = {
        "issuer": ISSUER,
        "authorization_endpoint": f"{ISSUER}/authorize",
        "token_endpoint": f"{ISSUER}/token",
        "jwks_uri": f"{ISSUER}/jwks",
        "userinfo_endpoint": f"{ISSUER}/userinfo",
        "device_authorization_endpoint": f"{ISSUER}/device",
        "pushed_authorization_request_endpoint": f"{ISSUER}/par",
    }
    data.update(overrides)
    return ServerMetadata(**{k: v for k, v in data.items() if v is not None})


@pytest.fixture(scope="session")
def signing_key() -> Any:
    """The Authorization Server's RSA signing key."""
    return JsonWebKey.generate_key("RSA", 2048, options={"kid": "k1"}, is_private=True)


@pytest.fixture
def jwks(signing_key: Any) -> dict[str, Any]:
    public = signing_key.as_dict(is_private=False)
    public["kid"] = "k1"
    return {"keys": [public]}


def sign(key: Any, claims: dict[str, Any], alg: str = "RS256", kid: str | None = "k1", **header: Any) -> str:
    protected: dict[str, Any] = dict(header)
    if kid is not None:
        protected["kid"] = kid
    return JoseCryptoAdapter().sign(alg, key, protected, claims)


def id_token_claims(**overrides: Any) -> dict[str, Any]:
    now = int(time.time())
    claims: dict[str, Any] = {
        "iss": ISSUER,
        "sub": "user-1",
        "aud": CLIENT_ID,
        "exp": now + 300,
        "iat": now,
    }
    claims.update(overrides)
    return {k: v for k, v in claims.items() if v is not None}


class Recorder:
    """Routes requests to per-path handlers and records every request."""

    def __init__(self, routes: dict[str, Handler | list[httpx.Response] | httpx.Response]) -> None:
        self.routes = routes
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        route = self.routes.get(request.url.path)
        if route is None:
            return httpx.Response(404, json={"error": "not_found"})
        if isinstance(route, httpx.Response):
            # Fresh copy so a route can answer any number of requests
            return httpx.Response(route.status_code, headers=route.headers, content=route.content)
        if isinstance(route, list):
            return route.pop(0)
        return route(request)

    def paths(self) -> list[str]:
        return [r.url.path for r in self.requests]


@pytest.fixture
def make_config() -> Callable[..., Configuration]:
    def factory(
        recorder: Recorder,
        *,
        metadata: ServerMetadata | None = None,
        client: ClientMetadata | None = None,
        client_auth: ClientAuth | None = None,
        options: ConfigurationOptions | None = None,
        settings: ClientSettings | None = None,
    ) -> Configuration:
        return Configuration(
            metadata or server_metadata(),
            client or ClientMetadata(client_id=CLIENT_ID, client_secret="s3cret", redirect_uri=REDIRECT_URI),
            client_auth,
            options,
            settings=settings or ClientSettings(),
            http_client=httpx.AsyncClient(transport=httpx.MockTransport(recorder)),
        )

    return factory
