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
Client authentication strategies for requests to the token, PAR and device authorization endpoints.
"""

import base64
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from typing import Any, ClassVar
from urllib.parse import quote_plus

from pydantic import SecretStr

from coreason_oidc_client.crypto import CryptoAdapter, b64url, import_key
from coreason_oidc_client.exceptions import ConfigurationError
from coreason_oidc_client.models import ClientAuthMethod, ClientMetadata
from coreason_oidc_client.models_internal import AuthContribution

CLIENT_ASSERTION_TYPE = "urn:ietf:params:oauth:client-assertion-type:jwt-bearer"
ASSERTION_LIFETIME = 60

AssertionModifier = Callable[[dict[str, Any], dict[str, Any]], None]


class ClientAuthBase(ABC):
    """
    A client authentication strategy. Each strategy contributes headers and/or body
    parameters to exactly one outgoing request.
    """

    method: ClassVar[ClientAuthMethod]

    @abstractmethod
    def contribute(
        self,
        *,
        client_id: str,
        issuer: str,
        token_endpoint: str,
        crypto: CryptoAdapter,
    ) -> AuthContribution:
        """Returns the authentication material for one request."""

    def __repr__(self) -> str:
        return f"{type(self).__name__}()"


class NoneAuth(ClientAuthBase):
    """Public client: identifies itself with ``client_id`` only."""

    method = ClientAuthMethod.NONE

    def contribute(
        self, *, client_id: str, issuer: str, token_endpoint: str, crypto: CryptoAdapter
    ) -> AuthContribution:
        return AuthContribution(body={"client_id": client_id})


class ClientSecretBasic(ClientAuthBase):
    """
    HTTP Basic authentication with the shared secret (RFC 6749, Section 2.3.1).

    The client id and secret are form-urlencoded before being joined and base64 encoded.
    """

    method = ClientAuthMethod.CLIENT_SECRET_BASIC

    def __init__(self, client_secret: str | SecretStr) -> None:
        secret = client_secret.get_secret_value() if isinstance(client_secret, SecretStr) else client_secret
        if not secret:
            raise ConfigurationError("client_secret_basic requires a client_secret")
        self._client_secret = SecretStr(secret)

    def contribute(
        self, *, client_id: str, issuer: str, token_endpoint: str, crypto: CryptoAdapter
    ) -> AuthContribution:
        credentials = f"{quote_plus(client_id)}:{quote_plus(self._client_secret.get_secret_value())}"
        encoded = base64.b64encode(credentials.encode("utf-8")).decode("ascii")
        return AuthContribution(headers={"Authorization": f"Basic {encoded}"})


class ClientSecretPost(ClientAuthBase):
    """Shared secret sent as ``client_id`` and ``client_secret`` body parameters."""

    method = ClientAuthMethod.CLIENT_SECRET_POST

    def __init__(self, client_secret: str | SecretStr) -> None:
        secret = client_secret.get_secret_value() if isinstance(client_secret, SecretStr) else client_secret
        if not secret:
            raise ConfigurationError("client_secret_post requires a client_secret")
        self._client_secret = SecretStr(secret)

    def contribute(
        self, *, client_id: str, issuer: str, token_endpoint: str, crypto: CryptoAdapter
    ) -> AuthContribution:
        return AuthContribution(body={"client_id": client_id, "client_secret": self._client_secret.get_secret_value()})


def default_signing_algorithm(key: Any) -> str:
    """Picks the conventional JWS algorithm for a key: RS256 for RSA, ESxxx for EC, EdDSA for OKP."""
    jwk = key if isinstance(key, dict) else import_key(key).as_dict(is_private=False)
    if jwk.get("alg"):
        return str(jwk["alg"])
    kty = jwk.get("kty")
    if kty == "RSA":
        return "RS256"
    if kty == "EC":
        return {"P-256": "ES256", "P-384": "ES384", "P-521": "ES512"}.get(jwk.get("crv", ""), "ES256")
    if kty == "OKP":
        return "EdDSA"
    raise ConfigurationError(f"cannot infer a signing algorithm for key type {kty!r}")


class PrivateKeyJwt(ClientAuthBase):
    """
    Signed JWT assertion (RFC 7523, ``private_key_jwt``).

    Attributes:
        kid (str | None): Key id placed in the assertion header.
        alg (str): JWS algorithm used to sign assertions.
    """

    method = ClientAuthMethod.PRIVATE_KEY_JWT

    def __init__(
        self,
        key: Any,
        kid: str | None = None,
        alg: str | None = None,
        *,
        include_issuer_audience: bool = False,
        modify_assertion: AssertionModifier | None = None,
    ) -> None:
        """
        Args:
            key: The private signing key (JWK dict or authlib key object).
            kid: The key id to advertise. Selects the verification key on the server side.
            alg: The JWS algorithm. Inferred from the key when omitted.
            include_issuer_audience: Also put the issuer identifier in ``aud`` (strict profiles).
            modify_assertion: Hook called with ``(header, payload)`` right before signing.
        """
        if key is None:
            raise ConfigurationError("private_key_jwt requires a signing key")
        self._key = import_key(key)
        self.kid = kid
        self.alg = alg or default_signing_algorithm(key)
        self.include_issuer_audience = include_issuer_audience
        self.modify_assertion = modify_assertion

    def build_assertion(self, *, client_id: str, issuer: str, token_endpoint: str, crypto: CryptoAdapter) -> str:
        now = int(time.time())
        audience: str | list[str] = [issuer, token_endpoint] if self.include_issuer_audience else token_endpoint
        header: dict[str, Any] = {"alg": self.alg}
        if self.kid:
            header["kid"] = self.kid
        payload: dict[str, Any] = {
            "iss": client_id,
            "sub": client_id,
            "aud": audience,
            "jti": b64url(crypto.random_bytes(32)),
            "iat": now,
            "exp": now + ASSERTION_LIFETIME,
        }
        if self.modify_assertion is not None:
            self.modify_assertion(header, payload)
        return crypto.sign(header.get("alg", self.alg), self._key, header, payload)

    def contribute(
        self, *, client_id: str, issuer: str, token_endpoint: str, crypto: CryptoAdapter
    ) -> AuthContribution:
        assertion = self.build_assertion(
            client_id=client_id, issuer=issuer, token_endpoint=token_endpoint, crypto=crypto
        )
        return AuthContribution(
            body={
                "client_id": client_id,
                "client_assertion_type": CLIENT_ASSERTION_TYPE,
                "client_assertion": assertion,
            }
        )

    def __repr__(self) -> str:
        return f"PrivateKeyJwt(kid={self.kid!r}, alg={self.alg!r})"


class TLSClientAuth(ClientAuthBase):
    """
    PKI mutual-TLS authentication (RFC 8705). The certificate is presented by the HTTP
    client's TLS layer; only ``client_id`` is added to the request.
    """

    method = ClientAuthMethod.TLS_CLIENT_AUTH

    def contribute(
        self, *, client_id: str, issuer: str, token_endpoint: str, crypto: CryptoAdapter
    ) -> AuthContribution:
        return AuthContribution(body={"client_id": client_id})


class SelfSignedTLSClientAuth(TLSClientAuth):
    """Self-signed certificate mutual-TLS authentication (RFC 8705, Section 2.2)."""

    method = ClientAuthMethod.SELF_SIGNED_TLS_CLIENT_AUTH


ClientAuth = NoneAuth | ClientSecretBasic | ClientSecretPost | PrivateKeyJwt | TLSClientAuth | SelfSignedTLSClientAuth


def resolve_client_auth(metadata: ClientMetadata, client_auth: ClientAuth | None = None) -> ClientAuth:
    """
    Selects the client authentication strategy for a client.

    An explicit strategy wins but must agree with ``token_endpoint_auth_method`` when the metadata
    names one. Otherwise the strategy is derived from the metadata: the registered method when
    present, ``client_secret_post`` when a secret is known, ``none`` otherwise.

    Raises:
        ConfigurationError: If the required secret or key is absent, or the strategy contradicts the metadata.
    """
    registered = metadata.token_endpoint_auth_method

    if client_auth is not None:
        if registered is not None and client_auth.method != registered:
            raise ConfigurationError(
                f"client authentication {client_auth.method} does not match "
                f"token_endpoint_auth_method {registered}"
            )
        return client_auth

    secret = metadata.client_secret
    if registered is None:
        registered = ClientAuthMethod.CLIENT_SECRET_POST if secret else ClientAuthMethod.NONE

    match registered:
        case ClientAuthMethod.NONE:
            return NoneAuth()
        case ClientAuthMethod.CLIENT_SECRET_BASIC:
            if secret is None:
                raise ConfigurationError("client_secret_basic requires a client_secret")
            return ClientSecretBasic(secret)
        case ClientAuthMethod.CLIENT_SECRET_POST:
            if secret is None:
                raise ConfigurationError("client_secret_post requires a client_secret")
            return ClientSecretPost(secret)
        case ClientAuthMethod.TLS_CLIENT_AUTH:
            return TLSClientAuth()
        case ClientAuthMethod.SELF_SIGNED_TLS_CLIENT_AUTH:
            return SelfSignedTLSClientAuth()
        case ClientAuthMethod.PRIVATE_KEY_JWT:
            raise ConfigurationError("private_key_jwt requires an explicit PrivateKeyJwt strategy with a signing key")

    raise ConfigurationError(f"unsupported token_endpoint_auth_method: {registered}")  # pragma: no cover
