# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_identity

from collections.abc import Callable
from typing import Any
from unittest.mock import patch

import httpx
import pytest
from conftest import CLIENT_ID, ISSUER, REDIRECT_URI, Recorder, id_token_claims, server_metadata, sign
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from opentelemetry.trace import StatusCode, Tracer

from coreason_oidc_client.config import Configuration
from coreason_oidc_client.discovery import discovery
from coreason_oidc_client.exceptions import DiscoveryError, ResponseValidationError
from coreason_oidc_client.grants import authorization_code_grant


@pytest.fixture
def telemetry_setup() -> tuple[InMemorySpanExporter, Tracer]:
    """Sets up an OpenTelemetry tracer with an in-memory exporter."""
    exporter = InMemorySpanExporter()
    provider = TracerProvider()
    provider.add_span_processor(SimpleSpanProcessor(exporter))
    return exporter, provider.get_tracer("test_tracer")


@pytest.mark.asyncio
async def test_discovery_span(telemetry_setup: tuple[InMemorySpanExporter, Tracer]) -> None:
    exporter, tracer = telemetry_setup
    document = server_metadata().model_dump(exclude_none=True)
    recorder = Recorder({"/.well-known/openid-configuration": httpx.Response(200, json=document)})

    with patch("coreason_oidc_client.discovery.tracer", tracer):
        await discovery(ISSUER, CLIENT_ID, http_client=httpx.AsyncClient(transport=httpx.MockTransport(recorder)))

    spans = exporter.get_finished_spans()
    assert len(spans) == 1
    assert spans[0].name == "discovery"
    assert spans[0].status.status_code == StatusCode.OK
    assert spans[0].attributes is not None
    assert spans[0].attributes["oauth.issuer"] == ISSUER


@pytest.mark.asyncio
async def test_discovery_failure_span(telemetry_setup: tuple[InMemorySpanExporter, Tracer]) -> None:
    exporter, tracer = telemetry_setup
    document = server_metadata(issuer="https://evil.example.com").model_dump(exclude_none=True)
    recorder = Recorder({"/.well-known/openid-configuration": httpx.Response(200, json=document)})

    with patch("coreason_oidc_client.discovery.tracer", tracer), pytest.raises(DiscoveryError):
        await discovery(ISSUER, CLIENT_ID, http_client=httpx.AsyncClient(transport=httpx.MockTransport(recorder)))

    span = exporter.get_finished_spans()[0]
    assert span.status.status_code == StatusCode.ERROR
    assert span.events[0].name == "exception"


@pytest.mark.asyncio
async def test_code_grant_spans(
    telemetry_setup: tuple[InMemorySpanExporter, Tracer],
    make_config: Callable[..., Configuration],
    signing_key: Any,
    jwks: dict[str, Any],
) -> None:
    exporter, tracer = telemetry_setup
    recorder = Recorder(
        {
            "/jwks": httpx.Response(200, json=jwks),
            "/token": httpx.Response(
                200, json={"access_token": "at", "id_token": sign(signing_key, id_token_claims(nonce="n-1"))}
            ),
        }
    )

    with patch("coreason_oidc_client.grants.tracer", tracer), patch("coreason_oidc_client.validator.tracer", tracer):
        await authorization_code_grant(make_config(recorder), f"{REDIRECT_URI}?code=abc", expected_nonce="n-1")

    names = {span.name: span for span in exporter.get_finished_spans()}
    assert {"authorization_code_grant", "validate_authorization_response", "process_token_response"} <= set(names)
    assert all(span.status.status_code == StatusCode.OK for span in names.values())
    # Subject is recorded as a fingerprint, never verbatim
    attributes = names["process_token_response"].attributes or {}
    assert "user-1" not in [str(value) for value in attributes.values()]


@pytest.mark.asyncio
async def test_rejected_token_response_span(
    telemetry_setup: tuple[InMemorySpanExporter, Tracer],
    make_config: Callable[..., Configuration],
    signing_key: Any,
    jwks: dict[str, Any],
) -> None:
    exporter, tracer = telemetry_setup
    recorder = Recorder(
        {
            "/jwks": httpx.Response(200, json=jwks),
            "/token": httpx.Response(
                200, json={"access_token": "at", "id_token": sign(signing_key, id_token_claims(nonce="other"))}
            ),
        }
    )

    with patch("coreason_oidc_client.validator.tracer", tracer), pytest.raises(ResponseValidationError):
        await authorization_code_grant(make_config(recorder), f"{REDIRECT_URI}?code=abc", expected_nonce="n-1")

    span = next(s for s in exporter.get_finished_spans() if s.name == "process_token_response")
    assert span.status.status_code == StatusCode.ERROR
