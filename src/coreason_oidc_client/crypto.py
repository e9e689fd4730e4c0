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
Crypto adapter: the only place where JOSE primitives are invoked.
"""

import base64
import hashlib
import json
import secrets
from collections.abc import Iterable
from typing import Any, Protocol

from authlib.jose import JsonWebEncryption, JsonWebKey, JsonWebSignature
from authlib.jose.errors import BadSignatureError, DecodeError, JoseError, UnsupportedAlgorithmError

from coreason_oidc_client.exceptions import (
    ResponseValidationError,
    SignatureVerificationError,
    UnsupportedAlgorithmError as UnsupportedAlgorithmCheckError,
    ValidationCheck,
)

SYMMETRIC_ALGORITHMS = frozenset({"HS256", "HS384", "HS512"})


class CryptoAdapter(Protocol):
    """Operations the client consumes from a JOSE implementation."""

    def sign(self, alg: str, key: Any, header: dict[str, Any], payload: dict[str, Any]) -> str: ...

    def verify(self, jws: str, key: Any, allowed_algorithms: Iterable[str]) -> dict[str, Any]: ...

    def decrypt(self, jwe: str, key: Any) -> str: ...

    def random_bytes(self, n: int) -> bytes: ...


def b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def _b64url_decode(segment: str) -> bytes:
    return base64.urlsafe_b64decode(segment + "=" * (-len(segment) % 4))


def decode_protected_header(token: str) -> dict[str, Any]:
    """
    Reads the protected header of a compact JWS or JWE without verifying anything.

    Raises:
        ResponseValidationError: If the token is not a compact serialization with a JSON object header.
    """
    parts = token.split(".")
    if len(parts) not in (3, 5):
        raise ResponseValidationError("JWT must be a compact JWS or JWE", check=ValidationCheck.INVALID_RESPONSE)
    try:
        header = json.loads(_b64url_decode(parts[0]))
    except (ValueError, UnicodeDecodeError) as e:
        raise ResponseValidationError("failed to parse JWT header", check=ValidationCheck.INVALID_RESPONSE) from e
    if not isinstance(header, dict):
        raise ResponseValidationError("JWT header must be a JSON object", check=ValidationCheck.INVALID_RESPONSE)
    return header


def half_hash(value: str, alg: str) -> str:
    """
    Left-most half of the hash of ``value`` (OIDC ``at_hash``/``c_hash``/``s_hash``).

    The hash function follows the JWS algorithm of the ID token; EdDSA uses SHA-512.
    """
    if alg == "EdDSA":
        digest = hashlib.sha512(value.encode("utf-8")).digest()
    else:
        size = alg[2:]
        if size not in ("256", "384", "512"):
            raise UnsupportedAlgorithmCheckError(f"unsupported JWS algorithm for hash binding: {alg}", parameter="alg")
        digest = hashlib.new(f"sha{size}", value.encode("utf-8")).digest()
    return b64url(digest[: len(digest) // 2])


def import_key(key: Any) -> Any:
    """Imports a JWK dict, PEM or raw key into an authlib key object. Key objects pass through."""
    if isinstance(key, dict):
        return JsonWebKey.import_key(key)
    return key


class JoseCryptoAdapter:
    """
    :class:`CryptoAdapter` implemented with ``authlib.jose``.

    Instances are stateless and may be shared; one is created per Configuration by default.
    """

    def sign(self, alg: str, key: Any, header: dict[str, Any], payload: dict[str, Any]) -> str:
        if alg == "none":
            raise UnsupportedAlgorithmCheckError('refusing to produce an unsigned ("none") JWT', parameter="alg")
        protected = {**header, "alg": alg}
        jws = JsonWebSignature(algorithms=[alg])
        serialized = jws.serialize_compact(protected, json.dumps(payload).encode("utf-8"), import_key(key))
        return serialized.decode("ascii") if isinstance(serialized, bytes) else serialized

    def verify(self, jws: str, key: Any, allowed_algorithms: Iterable[str]) -> dict[str, Any]:
        """
        Verifies a compact JWS and returns its JSON object payload.

        Raises:
            UnsupportedAlgorithmError: If the algorithm is not allowed (``none`` never is).
            SignatureVerificationError: If the signature does not verify.
            ResponseValidationError: If the token or its payload is malformed.
        """
        algorithms = [alg for alg in allowed_algorithms if alg != "none"]
        header = decode_protected_header(jws)
        alg = header.get("alg")
        if alg not in algorithms:
            raise UnsupportedAlgorithmCheckError(
                f"unexpected JWT alg received, expected one of {algorithms}, got: {alg}", parameter="alg"
            )
        try:
            data = JsonWebSignature(algorithms=algorithms).deserialize_compact(jws, import_key(key))
        except BadSignatureError as e:
            raise SignatureVerificationError("JWT signature verification failed", parameter="alg") from e
        except UnsupportedAlgorithmError as e:
            raise UnsupportedAlgorithmCheckError(f"unsupported JWT alg: {alg}", parameter="alg") from e
        except DecodeError as e:
            raise ResponseValidationError("failed to decode JWT", check=ValidationCheck.INVALID_RESPONSE) from e
        except JoseError as e:
            raise SignatureVerificationError(f"JWT verification failed: {e}") from e

        try:
            payload = json.loads(data["payload"])
        except (ValueError, UnicodeDecodeError) as e:
            raise ResponseValidationError("failed to parse JWT payload", check=ValidationCheck.INVALID_RESPONSE) from e
        if not isinstance(payload, dict):
            raise ResponseValidationError("JWT payload must be a JSON object", check=ValidationCheck.INVALID_RESPONSE)
        return payload

    def decrypt(self, jwe: str, key: Any) -> str:
        try:
            data = JsonWebEncryption().deserialize_compact(jwe, import_key(key))
        except (JoseError, ValueError) as e:
            raise ResponseValidationError("failed to decrypt JWE", check=ValidationCheck.DECRYPTION_FAILED) from e
        payload = data["payload"]
        return payload.decode("utf-8") if isinstance(payload, bytes) else str(payload)

    def random_bytes(self, n: int) -> bytes:
        return secrets.token_bytes(n)
