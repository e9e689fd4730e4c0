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
DPoP (RFC 9449) proof issuance for one logical flow.
"""

import hashlib
import threading
import time
from collections.abc import Mapping
from typing import Any
from urllib.parse import urlsplit

import httpx
from authlib.jose import JsonWebKey

from coreason_oidc_client.client_auth import default_signing_algorithm
from coreason_oidc_client.crypto import CryptoAdapter, JoseCryptoAdapter, b64url
from coreason_oidc_client.exceptions import ConfigurationError
from coreason_oidc_client.utils.logger import logger

_KEY_GENERATION = {
    "ES256": ("EC", "P-256"),
    "ES384": ("EC", "P-384"),
    "ES512": ("EC", "P-521"),
    "EdDSA": ("OKP", "Ed25519"),
    "RS256": ("RSA", 2048),
    "PS256": ("RSA", 2048),
}

_PUBLIC_MEMBERS = ("kty", "crv", "x", "y", "n", "e")


def random_dpop_keypair(alg: str = "ES256") -> Any:
    """
    Generates a private key suitable for DPoP proofs with ``alg``.

    Raises:
        ConfigurationError: If the algorithm is not supported for DPoP.
    """
    try:
        kty, crv_or_size = _KEY_GENERATION[alg]
    except KeyError as e:
        raise ConfigurationError(f"unsupported DPoP algorithm: {alg}") from e
    return JsonWebKey.generate_key(kty, crv_or_size, is_private=True)


class DPoPHandle:
    """
    Owns a DPoP signing key and the last ``DPoP-Nonce`` seen from a server.

    One handle belongs to exactly one logical flow and must not be shared across flows.
    The nonce slot is guarded by a lock so concurrent requests within the flow stay consistent.

    Attributes:
        alg (str): The JWS algorithm of the proofs.
        public_jwk (dict[str, Any]): The public key embedded in every proof header.
    """

    def __init__(self, key: Any, alg: str | None = None, crypto: CryptoAdapter | None = None) -> None:
        if key is None:
            raise ConfigurationError("DPoP requires a private key")
        self._key = key
        self.alg = alg or default_signing_algorithm(key)
        self._crypto = crypto or JoseCryptoAdapter()
        jwk = key.as_dict(is_private=False) if not isinstance(key, dict) else key
        self.public_jwk: dict[str, Any] = {k: jwk[k] for k in _PUBLIC_MEMBERS if k in jwk}
        self._nonce: str | None = None
        self._lock = threading.Lock()

    @property
    def nonce(self) -> str | None:
        with self._lock:
            return self._nonce

    def thumbprint(self) -> str:
        """RFC 7638 thumbprint of the public key (``jkt``)."""
        return str(JsonWebKey.import_key(self.public_jwk).thumbprint())

    def proof(self, method: str, url: str | httpx.URL, access_token: str | None = None) -> str:
        """
        Issues a fresh single-use proof JWT for one request.

        Args:
            method: The HTTP method of the request.
            url: The request URL. Query and fragment are stripped for ``htu``.
            access_token: The access token presented alongside, bound through ``ath``.
        """
        htu = urlsplit(str(url))._replace(query="", fragment="").geturl()
        payload: dict[str, Any] = {
            "iat": int(time.time()),
            "jti": b64url(self._crypto.random_bytes(32)),
            "htm": method.upper(),
            "htu": htu,
        }
        nonce = self.nonce
        if nonce is not None:
            payload["nonce"] = nonce
        if access_token is not None:
            payload["ath"] = b64url(hashlib.sha256(access_token.encode("ascii")).digest())

        header = {"typ": "dpop+jwt", "jwk": self.public_jwk}
        return self._crypto.sign(self.alg, self._key, header, payload)

    def observe(self, headers: Mapping[str, str] | httpx.Headers) -> bool:
        """
        Records the ``DPoP-Nonce`` of a response, replacing the stored nonce.

        Returns:
            True if a new nonce value was stored.
        """
        value = headers.get("DPoP-Nonce") if isinstance(headers, httpx.Headers) else _get_header(headers, "dpop-nonce")
        if not value:
            return False
        with self._lock:
            if value == self._nonce:
                return False
            self._nonce = value
        logger.debug("Stored new DPoP nonce from server challenge")
        return True

    def __repr__(self) -> str:
        return f"DPoPHandle(alg={self.alg!r}, jkt={self.thumbprint()!r})"


def _get_header(headers: Mapping[str, str], name: str) -> str | None:
    for key, value in headers.items():
        if key.lower() == name:
            return value
    return None
