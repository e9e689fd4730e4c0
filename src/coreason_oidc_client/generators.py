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
Generators for per-request secrets: PKCE verifier/challenge, nonce and state.
"""

import hashlib
import re
import secrets

from coreason_oidc_client.crypto import b64url

_CODE_VERIFIER_PATTERN = re.compile(r"^[A-Za-z0-9\-._~]{43,128}$")


def _random() -> str:
    return b64url(secrets.token_bytes(32))


def random_pkce_code_verifier() -> str:
    """Returns a fresh 43 character PKCE ``code_verifier`` (RFC 7636, Section 4.1)."""
    return _random()


def calculate_pkce_code_challenge(code_verifier: str) -> str:
    """
    Derives the S256 ``code_challenge`` for a verifier.

    Raises:
        ValueError: If the verifier is not 43 to 128 unreserved characters.
    """
    if not _CODE_VERIFIER_PATTERN.match(code_verifier):
        raise ValueError("code_verifier must be 43 to 128 characters from the unreserved set [A-Za-z0-9-._~]")
    return b64url(hashlib.sha256(code_verifier.encode("ascii")).digest())


def random_nonce() -> str:
    return _random()


def random_state() -> str:
    return _random()
