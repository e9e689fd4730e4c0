# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_identity

import re

import pytest

from coreason_oidc_client.generators import (
    calculate_pkce_code_challenge,
    random_nonce,
    random_pkce_code_verifier,
    random_state,
)

UNRESERVED = re.compile(r"^[A-Za-z0-9\-._~]+$")


def test_code_challenge_rfc7636_example() -> None:
    """Appendix B of RFC 7636."""
    verifier = "dBjftJeZ4CVP-mB92K27uhbUJU1p1r_wW1gFWFOEjXk"
    assert calculate_pkce_code_challenge(verifier) == "E9Melhoa2OwvFrEMTJguCHaoeK1t8URWbuGJSstw-cM"


def test_random_values_are_unique_and_unreserved() -> None:
    values = {random_pkce_code_verifier() for _ in range(50)} | {random_state(), random_nonce()}
    assert len(values) == 52
    assert all(UNRESERVED.match(value) and len(value) == 43 for value in values)


@pytest.mark.parametrize("verifier", ["short", "a" * 129, "a" * 42 + "!"])
def test_code_challenge_rejects_bad_verifier(verifier: str) -> None:
    with pytest.raises(ValueError, match="code_verifier"):
        calculate_pkce_code_challenge(verifier)
