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
JWKSProvider component for fetching, caching and selecting Authorization Server keys.
"""

import time
from typing import Any

import anyio
import httpx

from coreason_oidc_client.exceptions import (
    ConfigurationError,
    CoreasonOIDCError,
    OversizedResponseError,
    ResponseValidationError,
    SignatureVerificationError,
    ValidationCheck,
)
from coreason_oidc_client.transport import DEFAULT_MAX_RESPONSE_BYTES, safe_json_fetch
from coreason_oidc_client.utils.logger import logger

_KTY_FOR_ALG_PREFIX = {"RS": "RSA", "PS": "RSA", "ES": "EC"}
_CRV_FOR_ALG = {"ES256": "P-256", "ES384": "P-384", "ES512": "P-521"}


def _key_applies(jwk: dict[str, Any], alg: str, kid: str | None) -> bool:
    if kid is not None and jwk.get("kid") != kid:
        return False
    if alg == "EdDSA":
        if jwk.get("kty") != "OKP" or jwk.get("crv") not in ("Ed25519", "Ed448"):
            return False
    else:
        if jwk.get("kty") != _KTY_FOR_ALG_PREFIX.get(alg[:2]):
            return False
        if alg in _CRV_FOR_ALG and jwk.get("crv") != _CRV_FOR_ALG[alg]:
            return False
    if jwk.get("alg") not in (None, alg):
        return False
    if jwk.get("use") not in (None, "sig"):
        return False
    key_ops = jwk.get("key_ops")
    if isinstance(key_ops, list) and "verify" not in key_ops:
        return False
    return True


class JWKSProvider:
    """
    Fetches and caches the Authorization Server's JSON Web Key Set.

    Attributes:
        jwks_uri (str | None): The key set URL from the server metadata.
        cache_ttl (int): The cache time-to-live in seconds.
    """

    def __init__(
        self,
        jwks_uri: str | None,
        client: httpx.AsyncClient,
        cache_ttl: int = 3600,
        refresh_cooldown: float = 30.0,
        max_bytes: int = DEFAULT_MAX_RESPONSE_BYTES,
    ) -> None:
        """
        Initialize the JWKSProvider.

        Args:
            jwks_uri: The ``jwks_uri`` advertised by the Authorization Server.
            client: The async HTTP client to use for requests.
            cache_ttl: Time-to-live for the key set cache in seconds. Defaults to 3600 (1 hour).
            refresh_cooldown: Minimum time in seconds between forced refreshes. Defaults to 30.0.
            max_bytes: Maximum accepted size of the key set document.
        """
        self.jwks_uri = jwks_uri
        self.client = client
        self.cache_ttl = cache_ttl
        self.refresh_cooldown = refresh_cooldown
        self.max_bytes = max_bytes
        self._jwks_cache: dict[str, Any] | None = None
        self._last_update: float = 0.0
        self._lock: anyio.Lock | None = None

    async def _fetch_jwks(self) -> dict[str, Any]:
        """
        Fetches the key set.

        Retries on `httpx.HTTPError` up to 3 times with exponential backoff (initial=0.1s, max=1.0s).

        Raises:
            ConfigurationError: If the server has no ``jwks_uri``.
            CoreasonOIDCError: If the request fails after retries or the document is not a key set.
        """
        if not self.jwks_uri:
            raise ConfigurationError("jwks_uri must be configured on the issuer")

        attempts = 3
        wait_initial = 0.1
        wait_max = 1.0

        for attempt in range(attempts):
            try:
                jwks = await safe_json_fetch(self.client, self.jwks_uri, max_bytes=self.max_bytes)
            except OversizedResponseError:
                raise
            except httpx.HTTPError as e:
                if attempt == attempts - 1:
                    raise CoreasonOIDCError(f"Failed to fetch JWKS from {self.jwks_uri}: {e}") from e
                await anyio.sleep(min(wait_initial * (2**attempt), wait_max))
                continue

            if not isinstance(jwks.get("keys"), list):
                raise ResponseValidationError(
                    '"keys" must be a JSON array in the JSON Web Key Set', check=ValidationCheck.INVALID_RESPONSE
                )
            return jwks

        raise CoreasonOIDCError(f"Failed to fetch JWKS from {self.jwks_uri}")  # pragma: no cover

    async def _refresh_jwks_critical_section(self, force_refresh: bool) -> dict[str, Any]:
        """
        Critical section for refreshing the key set.
        Must be called while holding the lock.
        """
        current_time = time.time()
        age = current_time - self._last_update

        if self._jwks_cache is not None:
            if not force_refresh and age < self.cache_ttl:
                return self._jwks_cache
            if force_refresh and age < self.refresh_cooldown:
                logger.warning("JWKS refresh cooldown active. Returning cached keys despite force_refresh request.")
                return self._jwks_cache

        jwks = await self._fetch_jwks()
        self._jwks_cache = jwks
        self._last_update = current_time
        return jwks

    async def get_jwks(self, force_refresh: bool = False) -> dict[str, Any]:
        """
        Returns the key set, using the cache if valid.

        Args:
            force_refresh: If True, bypasses the cache (subject to the refresh cooldown).
        """
        if self._lock is None:
            self._lock = anyio.Lock()

        if not force_refresh and self._jwks_cache is not None and (time.time() - self._last_update) < self.cache_ttl:
            return self._jwks_cache

        async with self._lock:
            return await self._refresh_jwks_critical_section(force_refresh)

    async def select_key(self, header: dict[str, Any]) -> dict[str, Any]:
        """
        Selects the verification key for a JWS header by ``kid`` and algorithm.

        The cached key set is tried first; on a miss the set is refreshed once to follow key rotation.
        Without a ``kid`` exactly one applicable key must exist.

        Raises:
            SignatureVerificationError: If no key, or more than one key without a ``kid``, applies.
        """
        alg = str(header.get("alg"))
        kid = header.get("kid")

        candidates = self._candidates(await self.get_jwks(), alg, kid)
        if not candidates:
            logger.info("No applicable key in cached JWKS, refreshing and retrying...")
            candidates = self._candidates(await self.get_jwks(force_refresh=True), alg, kid)

        if not candidates:
            raise SignatureVerificationError(
                "error when selecting a JWT verification key, no applicable keys found",
                check=ValidationCheck.KEY_SELECTION_FAILED,
                parameter="kid",
            )
        if len(candidates) > 1:
            raise SignatureVerificationError(
                'error when selecting a JWT verification key, multiple applicable keys found, a "kid" JWT Header '
                "Parameter is required",
                check=ValidationCheck.KEY_SELECTION_FAILED,
                parameter="kid",
            )
        return candidates[0]

    @staticmethod
    def _candidates(jwks: dict[str, Any], alg: str, kid: str | None) -> list[dict[str, Any]]:
        return [jwk for jwk in jwks.get("keys", []) if isinstance(jwk, dict) and _key_applies(jwk, alg, kid)]
