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
Tests for DPoP proof issuance.
"""

import base64
import hashlib
import time
from typing import Any

import httpx
import pytest

from coreason_oidc_client.crypto import JoseCryptoAdapter, decode_protected_header
from coreason_oidc_client.dpop import DPoPHandle, random_dpop_keypair
from coreason_oidc_client.exceptions import ConfigurationError


def verify(proof: str) -> tuple[dict[str, Any], dict[str, Any]]:
    header = decode_protected_header(proof)
    claims = JoseCryptoAdapter().verify(proof, header["jwk"], [header["alg"]])
    return header, claims


@pytest.fixture
def handle() -> DPoPHandle:
    return DPoPHandle(random_dpop_keypair())


def test_proof_header_and_claims(handle: DPoPHandle) -> None:
    header, claims = verify(handle.proof("post", "https://op.example.com/token"))

    assert header["typ"] == "dpop+jwt"
    assert header["alg"] == "ES256"
    assert "d" not in header["jwk"]
    assert header["jwk"]["kty"] == "EC"
    assert claims["htm"] == "POST"
    assert claims["htu"] == "https://op.example.com/token"
    assert abs(claims["iat"] - time.time()) < 5
    assert "nonce" not in claims
    assert "ath" not in claims


def test_htu_strips_query_and_fragment(handle: DPoPHandle) -> None:
    _, claims = verify(handle.proof("GET", httpx.URL("https://rs.example.com/data?x=1#frag")))
    assert claims["htu"] == "https://rs.example.com/data"


def test_proofs_are_single_use(handle: DPoPHandle) -> None:
    _, first = verify(handle.proof("GET", "https://rs.example.com/"))
    _, second = verify(handle.proof("GET", "https://rs.example.com/"))
    assert first["jti"] != second["jti"]


def test_access_token_hash(handle: DPoPHandle) -> None:
    _, claims = verify(handle.proof("GET", "https://rs.example.com/", access_token="at-123"))
    expected = base64.urlsafe_b64encode(hashlib.sha256(b"at-123").digest()).rstrip(b"=").decode()
    assert claims["ath"] == expected


def test_nonce_observed_and_sent(handle: DPoPHandle) -> None:
    assert handle.observe(httpx.Headers({"DPoP-Nonce": "n-1"})) is True
    assert handle.nonce == "n-1"
    _, claims = verify(handle.proof("POST", "https://op.example.com/token"))
    assert claims["nonce"] == "n-1"


def test_observe_same_nonce_is_not_new(handle: DPoPHandle) -> None:
    handle.observe({"dpop-nonce": "n-1"})
    assert handle.observe({"DPoP-Nonce": "n-1"}) is False
    assert handle.observe({}) is False
    assert handle.observe({"DPoP-Nonce": "n-2"}) is True
    assert handle.nonce == "n-2"


def test_thumbprint_is_stable(handle: DPoPHandle) -> None:
    assert handle.thumbprint() == handle.thumbprint()
    assert handle.thumbprint() != DPoPHandle(random_dpop_keypair()).thumbprint()
    assert handle.thumbprint() in repr(handle)


@pytest.mark.parametrize("alg", ["ES384", "EdDSA", "PS256"])
def test_other_algorithms(alg: str) -> None:
    handle = DPoPHandle(random_dpop_keypair(alg), alg)
    header, _ = verify(handle.proof("GET", "https://rs.example.com/"))
    assert header["alg"] == alg


def test_unsupported_algorithm() -> None:
    with pytest.raises(ConfigurationError, match="unsupported DPoP algorithm"):
        random_dpop_keypair("HS256")


def test_key_required() -> None:
    with pytest.raises(ConfigurationError):
        DPoPHandle(None)
