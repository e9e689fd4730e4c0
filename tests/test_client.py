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
End-to-end tests of the OIDCClient facade against a scripted Authorization Server.
"""

from typing import Any
from urllib.parse import parse_qs

import httpx
import pytest
from conftest import CLIENT_ID, ISSUER, REDIRECT_URI, Recorder, id_token_claims, server_metadata, sign

from coreason_oidc_client import (
    DeviceFlowState,
    DPoPHandle,
    OIDCClient,
    ServerError,
    calculate_pkce_code_challenge,
    random_dpop_keypair,
    random_nonce,
    random_pkce_code_verifier,
    random_state,
)


def discovery_document() -> dict[str, Any]:
    return server_metadata().model_dump(exclude_none=True)


async def no_wait(seconds: float) -> None:
    return None


@pytest.mark.asyncio
async def test_authorization_code_flow(signing_key: Any, jwks: dict[str, Any]) -> None:
    state, nonce, verifier = random_state(), random_nonce(), random_pkce_code_verifier()
    recorder = Recorder(
        {
            "/.well-known/openid-configuration": httpx.Response(200, json=discovery_document()),
            "/jwks": httpx.Response(200, json=jwks),
            "/token": httpx.Response(
                200,
                json={
                    "access_token": "at",
                    "token_type": "Bearer",
                    "refresh_token": "rt",
                    "id_token": sign(signing_key, id_token_claims(nonce=nonce)),
                },
            ),
            "/userinfo": httpx.Response(200, json={"sub": "user-1", "email": "user@example.com"}),
        }
    )

    async with await OIDCClient.discover(
        ISSUER,
        CLIENT_ID,
        {"client_secret": "s3cret", "redirect_uri": REDIRECT_URI},
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(recorder)),
    ) as client:
        url = client.authorization_url(
            {
                "scope": "openid email",
                "state": state,
                "nonce": nonce,
                "code_challenge": calculate_pkce_code_challenge(verifier),
            }
        )
        assert url.startswith(f"{ISSUER}/authorize?")

        tokens = await client.authorization_code_grant(
            f"{REDIRECT_URI}?code=abc&state={state}",
            expected_state=state,
            expected_nonce=nonce,
            pkce_code_verifier=verifier,
        )
        claims = tokens.claims()
        assert claims is not None
        assert claims["sub"] == "user-1"

        info = await client.user_info(tokens.access_token, claims["sub"])
        assert info["email"] == "user@example.com"

    assert recorder.paths() == ["/.well-known/openid-configuration", "/token", "/jwks", "/userinfo"]


@pytest.mark.asyncio
async def test_device_flow_with_dpop() -> None:
    recorder = Recorder(
        {
            "/.well-known/openid-configuration": httpx.Response(200, json=discovery_document()),
            "/device": httpx.Response(
                200,
                json={
                    "device_code": "dc",
                    "user_code": "ABCD-EFGH",
                    "verification_uri": f"{ISSUER}/activate",
                    "expires_in": 600,
                    "interval": 5,
                },
            ),
            "/token": [
                httpx.Response(400, json={"error": "authorization_pending"}),
                httpx.Response(200, json={"access_token": "at", "token_type": "DPoP"}),
            ],
        }
    )
    client = await OIDCClient.discover(
        ISSUER, CLIENT_ID, http_client=httpx.AsyncClient(transport=httpx.MockTransport(recorder))
    )

    handle = await client.start_device_login({"scope": "openid"})
    assert handle.user_code == "ABCD-EFGH"
    tokens = await handle.poll(dpop=DPoPHandle(random_dpop_keypair()), delay=no_wait)

    assert tokens.access_token == "at"
    assert handle.state == DeviceFlowState.SUCCEEDED
    token_requests = [r for r in recorder.requests if r.url.path == "/token"]
    assert len(token_requests) == 2
    assert all("DPoP" in r.headers for r in token_requests)
    assert parse_qs(token_requests[0].content.decode())["device_code"] == ["dc"]


@pytest.mark.asyncio
async def test_client_credentials_error() -> None:
    recorder = Recorder(
        {
            "/.well-known/openid-configuration": httpx.Response(200, json=discovery_document()),
            "/token": httpx.Response(401, json={"error": "invalid_client"}),
        }
    )
    client = await OIDCClient.discover(
        ISSUER, CLIENT_ID, "s3cret", http_client=httpx.AsyncClient(transport=httpx.MockTransport(recorder))
    )

    with pytest.raises(ServerError, match="invalid_client"):
        await client.client_credentials_grant({"scope": "api"})
