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
ResponseValidator component: authorization responses (plain and JARM), ID tokens and token responses.
"""

import time
from collections.abc import Callable, Mapping
from typing import Any
from urllib.parse import parse_qsl, urlsplit

import httpx
from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode

from coreason_oidc_client.config import Configuration
from coreason_oidc_client.crypto import SYMMETRIC_ALGORITHMS, decode_protected_header, half_hash
from coreason_oidc_client.exceptions import (
    ConfigurationError,
    CoreasonOIDCError,
    InvalidAudienceError,
    InvalidIssuerError,
    ResponseValidationError,
    ServerError,
    SignatureVerificationError,
    TimestampCheckError,
    UnsupportedAlgorithmError,
    ValidationCheck,
)
from coreason_oidc_client.models import TokenEndpointResponse
from coreason_oidc_client.models_internal import AuthorizationResponse
from coreason_oidc_client.utils.logger import fingerprint, logger

tracer = trace.get_tracer(__name__)

# Members of a JARM response that describe the JWT itself rather than the authorization response
_JARM_ENVELOPE = frozenset({"iss", "aud", "exp", "iat", "nbf", "jti"})
_REQUIRED_ID_TOKEN_CLAIMS = ("iss", "sub", "aud", "exp", "iat")


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def callback_parameters(current_url: str | httpx.URL, response_type: str = "code") -> dict[str, str]:
    """
    Extracts the authorization response parameters from the URL the user agent was redirected to.

    The query is used for ``response_type=code``; response types issuing tokens from the
    authorization endpoint default to the fragment. Whichever component is non-empty wins
    when the default one is empty.
    """
    parts = urlsplit(str(current_url))
    query, fragment = parts.query, parts.fragment
    prefers_fragment = response_type != "code" and response_type != "none"

    primary, secondary = (fragment, query) if prefers_fragment else (query, fragment)
    raw = primary or secondary
    params: dict[str, str] = {}
    for key, value in parse_qsl(raw, keep_blank_values=True):
        if key in params:
            raise ResponseValidationError(f'parameter "{key}" must not be provided more than once', parameter=key)
        params[key] = value
    return params


class ResponseValidator:
    """
    Validates what the Authorization Server sends back, in a fixed order where every failure is terminal.

    Attributes:
        config (Configuration): The client configuration.
        clock (Callable[[], float]): Source of the current time in seconds since the epoch.
    """

    def __init__(self, config: Configuration, clock: Callable[[], float] | None = None) -> None:
        self.config = config
        self.clock = clock or time.time

    @property
    def _skew(self) -> int:
        return self.config.settings.clock_skew

    def _allowed_algorithms(self, expected: str | None) -> list[str]:
        """JWS algorithms acceptable for a JWT given the registered one, if any."""
        algorithms = [expected] if expected else list(self.config.settings.allowed_algorithms)
        algorithms = [alg for alg in algorithms if alg.lower() != "none"]
        if self.config.options.non_repudiation:
            algorithms = [alg for alg in algorithms if alg not in SYMMETRIC_ALGORITHMS]
        return algorithms

    async def _verification_key(self, header: dict[str, Any]) -> Any:
        alg = header.get("alg")
        if alg in SYMMETRIC_ALGORITHMS:
            secret = self.config.client_metadata.client_secret
            if secret is None:
                raise SignatureVerificationError(
                    f"a client_secret is required to verify {alg} signatures",
                    check=ValidationCheck.KEY_SELECTION_FAILED,
                )
            return secret.get_secret_value().encode("utf-8")
        return await self.config.jwks.select_key(header)

    async def verify_jws(self, token: str, expected_alg: str | None) -> tuple[dict[str, Any], dict[str, Any]]:
        """
        Checks the algorithm allow-list, selects the key and verifies the signature of a compact JWS.

        Returns:
            The protected header and the payload.

        Raises:
            UnsupportedAlgorithmError: If the algorithm is ``none`` or otherwise not allowed.
            SignatureVerificationError: If no key applies or the signature does not verify.
        """
        header = decode_protected_header(token)
        allowed = self._allowed_algorithms(expected_alg)
        alg = header.get("alg")
        if alg not in allowed:
            expected = allowed[0] if len(allowed) == 1 else f"one of {allowed}"
            raise UnsupportedAlgorithmError(
                f"unexpected JWT alg received, expected {expected}, got: {alg}", parameter="alg"
            )
        key = await self._verification_key(header)
        payload = self.config.crypto.verify(token, key, [alg])
        return header, payload

    def _decrypt(self, token: str) -> str:
        if token.count(".") != 4:
            return token
        key = self.config.options.decryption_key
        if key is None:
            raise ConfigurationError("received an encrypted JWT but no decryption_key is configured")
        return self.config.crypto.decrypt(token, key)

    def _check_issuer(self, claims: Mapping[str, Any]) -> None:
        expected = self.config.server_metadata.issuer
        if claims.get("iss") != expected:
            raise InvalidIssuerError(
                f'unexpected JWT "iss" (issuer) claim value, expected {expected!r}, got {claims.get("iss")!r}',
                parameter="iss",
            )

    def _check_aud(self, claims: Mapping[str, Any]) -> list[Any]:
        aud = claims.get("aud")
        audiences = aud if isinstance(aud, list) else [aud]
        if self.config.client_id not in audiences:
            raise InvalidAudienceError('unexpected JWT "aud" (audience) claim value', parameter="aud")
        return audiences

    def _check_audience(self, claims: Mapping[str, Any]) -> None:
        client_id = self.config.client_id
        audiences = self._check_aud(claims)
        azp = claims.get("azp")
        if (len(audiences) > 1 or azp is not None) and azp != client_id:
            raise InvalidAudienceError(
                'unexpected ID Token "azp" (authorized party) claim value',
                check=ValidationCheck.AUTHORIZED_PARTY_MISMATCH,
                parameter="azp",
            )

    def _check_timestamps(self, claims: Mapping[str, Any], now: float, *, exp_required: bool = True) -> None:
        skew = self._skew
        exp = claims.get("exp")
        if exp is None and exp_required:
            raise ResponseValidationError(
                'JWT "exp" (expiration time) claim missing', check=ValidationCheck.MISSING_PARAMETER, parameter="exp"
            )
        if exp is not None:
            if not _is_number(exp):
                raise TimestampCheckError('unexpected JWT "exp" (expiration time) claim type', parameter="exp")
            if exp <= now - skew:
                raise TimestampCheckError(
                    'unexpected JWT "exp" (expiration time) claim value, expiration is past current timestamp',
                    parameter="exp",
                )
        iat = claims.get("iat")
        if iat is not None:
            if not _is_number(iat):
                raise TimestampCheckError('unexpected JWT "iat" (issued at) claim type', parameter="iat")
            if iat > now + skew:
                raise TimestampCheckError(
                    'unexpected JWT "iat" (issued at) claim value, it is in the future', parameter="iat"
                )
        nbf = claims.get("nbf")
        if nbf is not None:
            if not _is_number(nbf):
                raise TimestampCheckError('unexpected JWT "nbf" (not before) claim type', parameter="nbf")
            if nbf > now + skew:
                raise TimestampCheckError(
                    'unexpected JWT "nbf" (not before) claim value, it is in the future', parameter="nbf"
                )

    def _check_hash(self, claims: Mapping[str, Any], claim: str, value: str, alg: str, *, required: bool) -> None:
        received = claims.get(claim)
        if received is None:
            if required:
                raise ResponseValidationError(
                    f'ID Token "{claim}" claim missing', check=ValidationCheck.MISSING_PARAMETER, parameter=claim
                )
            return
        if received != half_hash(value, alg):
            raise ResponseValidationError(
                f'unexpected ID Token "{claim}" claim value', check=ValidationCheck.HASH_MISMATCH, parameter=claim
            )

    async def validate_id_token(
        self,
        id_token: str,
        *,
        expected_nonce: str | None = None,
        check_nonce: bool = True,
        max_age: int | None = None,
    ) -> tuple[dict[str, Any], str]:
        """
        Validates an ID token.

        Order: decryption, algorithm allow-list, key selection, signature, ``iss``, ``aud``/``azp``,
        ``exp``/``iat``/``nbf``, ``nonce``, ``auth_time``.

        Args:
            id_token: The compact ID token (JWS, or JWE wrapping a JWS).
            expected_nonce: The nonce sent in the authorization request.
            check_nonce: When False the ``nonce`` claim is not compared (non-interactive grants).
            max_age: The ``max_age`` sent in the authorization request.

        Returns:
            The validated claims and the JWS algorithm they were signed with.

        Raises:
            ResponseValidationError: Or one of its subclasses, naming the failed check.
        """
        token = self._decrypt(id_token)
        header, claims = await self.verify_jws(token, self.config.client_metadata.id_token_signed_response_alg)

        for claim in _REQUIRED_ID_TOKEN_CLAIMS:
            if claim not in claims:
                raise ResponseValidationError(
                    f'ID Token "{claim}" claim missing', check=ValidationCheck.MISSING_PARAMETER, parameter=claim
                )

        self._check_issuer(claims)
        self._check_audience(claims)
        now = self.clock()
        self._check_timestamps(claims, now)

        if check_nonce and claims.get("nonce") != expected_nonce:
            raise ResponseValidationError(
                'unexpected ID Token "nonce" claim value', check=ValidationCheck.NONCE_MISMATCH, parameter="nonce"
            )

        if max_age is not None:
            auth_time = claims.get("auth_time")
            if not _is_number(auth_time):
                raise ResponseValidationError(
                    'ID Token "auth_time" (authentication time) must be present when max_age is used',
                    check=ValidationCheck.MISSING_PARAMETER,
                    parameter="auth_time",
                )
            if auth_time + max_age < now - self._skew:
                raise TimestampCheckError(
                    "too much time has elapsed since the last End-User authentication", parameter="auth_time"
                )

        logger.debug(f"ID token validated for subject {fingerprint(str(claims['sub']))}")
        return claims, str(header["alg"])

    async def _unwrap_jarm(self, params: Mapping[str, str]) -> dict[str, str]:
        response = params.get("response")
        if not response:
            raise ResponseValidationError(
                '"response" parameter missing from JWT Secured Authorization Response',
                check=ValidationCheck.MISSING_PARAMETER,
                parameter="response",
            )
        token = self._decrypt(response)
        _, claims = await self.verify_jws(token, self.config.client_metadata.authorization_signed_response_alg)
        self._check_issuer(claims)
        self._check_aud(claims)
        self._check_timestamps(claims, self.clock())

        unwrapped: dict[str, str] = {}
        for key, value in claims.items():
            if key in _JARM_ENVELOPE:
                continue
            unwrapped[key] = value if isinstance(value, str) else str(value)
        # iss is also the RFC 9207 authorization response parameter
        unwrapped["iss"] = str(claims["iss"])
        return unwrapped

    async def validate_authorization_response(
        self,
        current_url: str | httpx.URL,
        *,
        expected_state: str | None = None,
        expected_nonce: str | None = None,
        max_age: int | None = None,
    ) -> AuthorizationResponse:
        """
        Validates the redirect back from the authorization endpoint.

        Order: JARM unwrapping, server error, ``state``, ``iss``, required ``code``, then for
        detached signatures the front-channel ID token with its ``c_hash``/``s_hash``.

        Emits an OpenTelemetry span `validate_authorization_response`.

        Args:
            current_url: The full redirect URL including query and/or fragment.
            expected_state: The state sent, or None if none was sent.
            expected_nonce: The nonce sent, needed when a front-channel ID token is returned.
            max_age: The ``max_age`` sent, if any.

        Returns:
            AuthorizationResponse: The validated parameters.

        Raises:
            ServerError: If the response carries an ``error``, verbatim.
            ResponseValidationError: Or one of its subclasses, naming the failed check.
        """
        options = self.config.options
        with tracer.start_as_current_span("validate_authorization_response") as span:
            try:
                params = callback_parameters(current_url, options.response_type)
                if options.require_jarm:
                    params = await self._unwrap_jarm(params)

                if "error" in params:
                    raise ServerError.from_response(dict(params))

                state = params.get("state")
                if expected_state is None and state is not None:
                    raise ResponseValidationError(
                        'unexpected "state" response parameter encountered',
                        check=ValidationCheck.STATE_MISMATCH,
                        parameter="state",
                    )
                if expected_state is not None and state != expected_state:
                    raise ResponseValidationError(
                        'unexpected "state" response parameter value',
                        check=ValidationCheck.STATE_MISMATCH,
                        parameter="state",
                    )

                issuer = self.config.server_metadata.issuer
                if "iss" in params:
                    if params["iss"] != issuer:
                        raise InvalidIssuerError('unexpected "iss" (issuer) response parameter value', parameter="iss")
                elif self.config.server_metadata.authorization_response_iss_parameter_supported:
                    raise ResponseValidationError(
                        'response parameter "iss" (issuer) missing',
                        check=ValidationCheck.MISSING_PARAMETER,
                        parameter="iss",
                    )

                response_types = options.response_type.split()
                code = params.get("code")
                if "code" in response_types and not code:
                    raise ResponseValidationError(
                        'response parameter "code" missing', check=ValidationCheck.MISSING_PARAMETER, parameter="code"
                    )

                id_token_claims = await self._front_channel_id_token(
                    params, expected_nonce=expected_nonce, max_age=max_age
                )
            except CoreasonOIDCError as e:
                logger.warning(f"Authorization response rejected: {e}")
                span.record_exception(e)
                span.set_status(Status(StatusCode.ERROR, str(e)))
                raise

            span.set_status(Status(StatusCode.OK))
            return AuthorizationResponse(params=params, id_token_claims=id_token_claims)

    async def _front_channel_id_token(
        self, params: Mapping[str, str], *, expected_nonce: str | None, max_age: int | None
    ) -> dict[str, Any] | None:
        options = self.config.options
        id_token = params.get("id_token")
        if "id_token" not in options.response_type.split():
            return None
        if not id_token:
            raise ResponseValidationError(
                'response parameter "id_token" missing', check=ValidationCheck.MISSING_PARAMETER, parameter="id_token"
            )

        claims, alg = await self.validate_id_token(id_token, expected_nonce=expected_nonce, max_age=max_age)
        detached = options.detached_signature
        if "code" in params:
            self._check_hash(claims, "c_hash", params["code"], alg, required=detached)
        if "state" in params:
            self._check_hash(claims, "s_hash", params["state"], alg, required=detached)
        if "access_token" in params:
            self._check_hash(claims, "at_hash", params["access_token"], alg, required=True)
        return claims

    async def process_token_response(
        self,
        response: TokenEndpointResponse,
        *,
        expected_nonce: str | None = None,
        check_nonce: bool = True,
        max_age: int | None = None,
        id_token_expected: bool = False,
        front_channel_claims: Mapping[str, Any] | None = None,
        dpop_bound: bool = False,
    ) -> TokenEndpointResponse:
        """
        Validates a token endpoint response and binds the ID token claims to it.

        Emits an OpenTelemetry span `process_token_response`.

        Args:
            response: The parsed token endpoint response.
            expected_nonce: The nonce sent in the authorization request.
            check_nonce: Whether to compare the ``nonce`` claim at all.
            max_age: The ``max_age`` sent in the authorization request.
            id_token_expected: Fail when the response carries no ID token.
            front_channel_claims: Claims of an ID token already validated from the authorization response.
            dpop_bound: The request carried a DPoP proof, so ``token_type`` must be ``DPoP``.

        Returns:
            TokenEndpointResponse: The same response, with its claims now readable.
        """
        with tracer.start_as_current_span("process_token_response") as span:
            try:
                if response.id_token is None:
                    if id_token_expected:
                        raise ResponseValidationError(
                            '"id_token" missing from the token endpoint response',
                            check=ValidationCheck.MISSING_PARAMETER,
                            parameter="id_token",
                        )
                else:
                    claims, alg = await self.validate_id_token(
                        response.id_token, expected_nonce=expected_nonce, check_nonce=check_nonce, max_age=max_age
                    )
                    self._check_hash(claims, "at_hash", response.access_token, alg, required=False)
                    if front_channel_claims is not None:
                        for claim in ("iss", "sub"):
                            if claims.get(claim) != front_channel_claims.get(claim):
                                raise ResponseValidationError(
                                    f'ID Token "{claim}" claim differs from the authorization response ID Token',
                                    check=ValidationCheck.SUBJECT_MISMATCH,
                                    parameter=claim,
                                )
                    response.bind_claims(claims)
                    span.set_attribute("enduser.id", fingerprint(str(claims["sub"])))

                if dpop_bound and (response.token_type or "").lower() != "dpop":
                    raise ResponseValidationError(
                        f'unexpected "token_type" value, expected DPoP, got {response.token_type!r}',
                        check=ValidationCheck.TOKEN_TYPE_MISMATCH,
                        parameter="token_type",
                    )
            except CoreasonOIDCError as e:
                logger.warning(f"Token endpoint response rejected: {e}")
                span.record_exception(e)
                span.set_status(Status(StatusCode.ERROR, str(e)))
                raise

            span.set_status(Status(StatusCode.OK))
            return response
