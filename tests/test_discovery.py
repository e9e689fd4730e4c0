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
Tests for Authorization Server metadata discovery.
"""

from typing import Any
from unittest.mock import AsyncMock, patch

import httpx
import pytest
from conftest import CLIENT_ID, ISSUER, Recorder

from coreason_oidc_client.client_auth import ClientSecretBasic
from coreason_oidc_client.config import ClientSettings
from coreason_oidc_client.discovery import discovery, discovery_url, fetch_server_metadata
from coreason_oidc_client.exceptions import DiscoveryError
from coreason_oidc_client.models import ClientAuthMethod

WELL_KNOWN = "/.well-known/openid-configuration"


def metadata_document(**overrides: Any) -> dict[str, Any]:
    document: dict[str, Any] = {
        "issuer": ISSUER,
        "authorization_endpoint": f"{ISSUER}/authorize",
        "token_endpoint": f"{ISSUER}/token",
        "jwks_uri": f"{ISSUER}/jwks",
        "token_endpoint_auth_methods_supported": ["client_secret_basic", "client_secret_post"],
        "x_vendor_feature": True,
    }
    document.update(overrides)
    return document


def client_for(recorder: Recorder) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(recorder))


class TestDiscoveryUrl:
    def test_oidc(self) -> None:
        assert discovery_url("https://op.example.com") == "https://op.example.com/.well-known/openid-configuration"
        assert (
            discovery_url("https://op.example.com/tenant/")
            == "https://op.example.com/tenant/.well-known/openid-configuration"
        )

    def test_oauth2(self) -> None:
        assert (
            discovery_url("https://op.example.com/tenant", "oauth2")
            == "https://op.example.com/.well-known/oauth-authorization-server/tenant"
        )


class TestFetchServerMetadata:
    @pytest.mark.asyncio
    async def test_fetch(self) -> None:
        recorder = Recorder({WELL_KNOWN: httpx.Response(200, json=metadata_document())})
        metadata = await fetch_server_metadata(ISSUER, client_for(recorder))

        assert metadata.issuer == ISSUER
        assert metadata.token_endpoint == f"{ISSUER}/token"
        assert metadata.model_extra == {"x_vendor_feature": True}

    @pytest.mark.asyncio
    async def test_trailing_slash_is_a_mismatch(self) -> None:
        recorder = Recorder({WELL_KNOWN: httpx.Response(200, json=metadata_document())})
        with pytest.raises(DiscoveryError, match="issuer"):
            await fetch_server_metadata(f"{ISSUER}/", client_for(recorder))

    @pytest.mark.asyncio
    async def test_retries_server_errors(self) -> None:
        recorder = Recorder(
            {
                WELL_KNOWN: [
                    httpx.Response(503),
                    httpx.Response(502),
                    httpx.Response(200, json=metadata_document()),
                ]
            }
        )
        with patch("anyio.sleep", new_callable=AsyncMock) as mock_sleep:
            metadata = await fetch_server_metadata(ISSUER, client_for(recorder))

        assert metadata.issuer == ISSUER
        assert len(recorder.requests) == 3
        assert [call.args[0] for call in mock_sleep.call_args_list] == [0.1, 0.2]

    @pytest.mark.asyncio
    async def test_gives_up_after_three_attempts(self) -> None:
        recorder = Recorder({WELL_KNOWN: httpx.Response(500)})
        with patch("anyio.sleep", new_callable=AsyncMock), pytest.raises(DiscoveryError, match="Failed to fetch"):
            await fetch_server_metadata(ISSUER, client_for(recorder))
        assert len(recorder.requests) == 3

    @pytest.mark.asyncio
    async def test_malformed_document_not_retried(self) -> None:
        recorder = Recorder({WELL_KNOWN: httpx.Response(200, json=["not", "an", "object"])})
        with pytest.raises(DiscoveryError, match="Invalid metadata"):
            await fetch_server_metadata(ISSUER, client_for(recorder))
        assert len(recorder.requests) == 1

    @pytest.mark.asyncio
    async def test_missing_issuer(self) -> None:
        recorder = Recorder({WELL_KNOWN: httpx.Response(200, json=metadata_document(issuer=None))})
        with pytest.raises(DiscoveryError, match="Invalid metadata"):
            await fetch_server_metadata(ISSUER, client_for(recorder))

    @pytest.mark.asyncio
    async def test_oversized_document(self) -> None:
        recorder = Recorder({WELL_KNOWN: httpx.Response(200, json=metadata_document(padding="x" * 2000))})
        with pytest.raises(DiscoveryError, match="Invalid metadata"):
            await fetch_server_metadata(ISSUER, client_for(recorder), max_bytes=1000)


class TestDiscovery:
    @pytest.mark.asyncio
    async def test_returns_configuration(self) -> None:
        recorder = Recorder({WELL_KNOWN: httpx.Response(200, json=metadata_document())})
        config = await discovery(ISSUER, CLIENT_ID, "s3cret", http_client=client_for(recorder))

        assert config.client_id == CLIENT_ID
        assert config.server_metadata.issuer == ISSUER
        assert config.client_auth.method == ClientAuthMethod.CLIENT_SECRET_POST
        assert config.client_metadata.client_secret is not None
        assert config.client_metadata.client_secret.get_secret_value() == "s3cret"

    @pytest.mark.asyncio
    async def test_metadata_dict(self) -> None:
        recorder = Recorder({WELL_KNOWN: httpx.Response(200, json=metadata_document())})
        config = await discovery(
            ISSUER,
            CLIENT_ID,
            {"client_secret": "s3cret", "token_endpoint_auth_method": "client_secret_basic"},
            http_client=client_for(recorder),
        )
        assert isinstance(config.client_auth, ClientSecretBasic)

    @pytest.mark.asyncio
    async def test_oauth2_algorithm(self) -> None:
        recorder = Recorder(
            {"/.well-known/oauth-authorization-server": httpx.Response(200, json=metadata_document())}
        )
        config = await discovery(ISSUER, CLIENT_ID, http_client=client_for(recorder), algorithm="oauth2")
        assert config.server_metadata.issuer == ISSUER

    @pytest.mark.asyncio
    async def test_http_issuer_requires_unsafe_local_dev(self) -> None:
        with pytest.raises(DiscoveryError, match="HTTPS is required"):
            await discovery("http://localhost:8080", CLIENT_ID, settings=ClientSettings(unsafe_local_dev=False))

    @pytest.mark.asyncio
    async def test_http_issuer_allowed_for_local_dev(self) -> None:
        issuer = "http://localhost:8080"
        recorder = Recorder({WELL_KNOWN: httpx.Response(200, json=metadata_document(issuer=issuer))})
        config = await discovery(
            issuer, CLIENT_ID, settings=ClientSettings(unsafe_local_dev=True), http_client=client_for(recorder)
        )
        assert config.server_metadata.issuer == issuer

    @pytest.mark.asyncio
    async def test_unsupported_auth_method(self) -> None:
        recorder = Recorder(
            {WELL_KNOWN: httpx.Response(200, json=metadata_document(token_endpoint_auth_methods_supported=["none"]))}
        )
        with pytest.raises(DiscoveryError, match="client_secret_post"):
            await discovery(ISSUER, CLIENT_ID, "s3cret", http_client=client_for(recorder))

    @pytest.mark.asyncio
    async def test_auth_methods_not_advertised(self) -> None:
        document = metadata_document(token_endpoint_auth_methods_supported=None)
        recorder = Recorder({WELL_KNOWN: httpx.Response(200, json={k: v for k, v in document.items() if v})})
        config = await discovery(ISSUER, CLIENT_ID, "s3cret", http_client=client_for(recorder))
        assert config.client_auth.method == ClientAuthMethod.CLIENT_SECRET_POST

    @pytest.mark.asyncio
    async def test_invalid_client_metadata(self) -> None:
        recorder = Recorder({WELL_KNOWN: httpx.Response(200, json=metadata_document())})
        with pytest.raises(DiscoveryError, match="Invalid client metadata"):
            await discovery(
                ISSUER, CLIENT_ID, {"token_endpoint_auth_method": "bogus"}, http_client=client_for(recorder)
            )
        assert recorder.requests == []
