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
Custom exceptions for the coreason-oidc-client package.
"""

from enum import StrEnum
from typing import Any


class ValidationCheck(StrEnum):
    """Identifiers of the local checks performed on Authorization Server responses."""

    INVALID_RESPONSE = "invalid_response"
    MISSING_PARAMETER = "missing_parameter"
    TIMESTAMP_CHECK_FAILED = "timestamp_check_failed"
    ISSUER_MISMATCH = "issuer_mismatch"
    AUDIENCE_MISMATCH = "audience_mismatch"
    AUTHORIZED_PARTY_MISMATCH = "authorized_party_mismatch"
    SIGNATURE_INVALID = "signature_invalid"
    ALGORITHM_NOT_ALLOWED = "algorithm_not_allowed"
    KEY_SELECTION_FAILED = "key_selection_failed"
    NONCE_MISMATCH = "nonce_mismatch"
    STATE_MISMATCH = "state_mismatch"
    SUBJECT_MISMATCH = "subject_mismatch"
    HASH_MISMATCH = "hash_mismatch"
    TOKEN_TYPE_MISMATCH = "token_type_mismatch"
    DECRYPTION_FAILED = "decryption_failed"


class CoreasonOIDCError(Exception):
    """Base exception for all coreason-oidc-client errors."""


class ConfigurationError(CoreasonOIDCError):
    """Raised when client or server metadata is missing, malformed or inconsistent. Never retried."""


class DiscoveryError(ConfigurationError):
    """Raised when the Authorization Server metadata cannot be fetched or does not match the requested issuer."""


class ServerError(CoreasonOIDCError):
    """
    Raised when the Authorization Server answers with an OAuth 2.0 error.

    The server's ``error``, ``error_description`` and ``error_uri`` are carried verbatim.
    """

    def __init__(
        self,
        error: str,
        error_description: str | None = None,
        error_uri: str | None = None,
        status_code: int | None = None,
        response: dict[str, Any] | None = None,
    ) -> None:
        self.error = error
        self.error_description = error_description
        self.error_uri = error_uri
        self.status_code = status_code
        self.response = response or {}
        message = error if not error_description else f"{error}: {error_description}"
        super().__init__(message)

    @classmethod
    def from_response(cls, body: dict[str, Any], status_code: int | None = None) -> "ServerError":
        return cls(
            error=str(body["error"]),
            error_description=body.get("error_description"),
            error_uri=body.get("error_uri"),
            status_code=status_code,
            response=body,
        )


class ResponseValidationError(CoreasonOIDCError):
    """
    Raised when a local check on a server response fails.

    Attributes:
        check (ValidationCheck): Machine-readable identifier of the failed check.
        parameter (str | None): The parameter, claim or header the check was about.
    """

    default_check = ValidationCheck.INVALID_RESPONSE

    def __init__(
        self,
        message: str,
        check: ValidationCheck | None = None,
        parameter: str | None = None,
    ) -> None:
        super().__init__(message)
        self.check = check or self.default_check
        self.parameter = parameter


class TimestampCheckError(ResponseValidationError):
    """Raised when exp, iat, nbf or auth_time falls outside the accepted window."""

    default_check = ValidationCheck.TIMESTAMP_CHECK_FAILED


class InvalidIssuerError(ResponseValidationError):
    """Raised when the issuer of a response does not match the Authorization Server."""

    default_check = ValidationCheck.ISSUER_MISMATCH


class InvalidAudienceError(ResponseValidationError):
    """Raised when the token's audience does not include the client."""

    default_check = ValidationCheck.AUDIENCE_MISMATCH


class SignatureVerificationError(ResponseValidationError):
    """Raised when a JWS signature cannot be verified or no verification key applies."""

    default_check = ValidationCheck.SIGNATURE_INVALID


class UnsupportedAlgorithmError(ResponseValidationError):
    """Raised when a JWT uses an algorithm outside the allow-list (including "none")."""

    default_check = ValidationCheck.ALGORITHM_NOT_ALLOWED


class ProtocolStateError(CoreasonOIDCError):
    """Raised on caller misuse, e.g. reading unverified claims or polling a finished device flow."""


class DeviceFlowExpiredError(CoreasonOIDCError):
    """Raised when the device code expired before the user completed the authorization."""


class PollingAbortedError(CoreasonOIDCError):
    """Raised when device flow polling was cancelled by the caller."""


class OversizedResponseError(CoreasonOIDCError):
    """Raised when an HTTP response is too large."""
